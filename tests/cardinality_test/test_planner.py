# tests/cardinality_test/test_planner.py
# Drop planner: ranking, smallest sufficient prefix, keep-set filtering, unsatisfiable budgets

from __future__ import annotations

import random
from typing import List

import pytest

from cardinality.errors import BudgetUnsatisfiable
from cardinality.model import MetricCandidate
from cardinality.planner import oversized_metrics, plan_drops, rank_candidates


def cand(metric: str, series: int, cost: float, *, job: str = "api", avg: float = 0.0) -> MetricCandidate:
    return MetricCandidate(job=job, metric=metric, series_count=series, bytes_cost=cost, avg_label_bytes=avg)


@pytest.fixture()
def scenario() -> List[MetricCandidate]:
    # budget 1000, current 1500
    return [cand("m1", 200, 900), cand("m2", 300, 500), cand("m3", 1000, 100)]


def test_scenario_a_drops_two_highest_cost(scenario):
    plan = plan_drops("api", scenario, frozenset(), deficit=500)
    assert plan.metrics == ["m1", "m2"]
    assert plan.covered == 500
    assert not plan.unsatisfiable
    assert plan.condition() is None


def test_scenario_b_skips_protected(scenario):
    plan = plan_drops("api", scenario, frozenset({"m1"}), deficit=500)
    assert set(plan.metrics) == {"m2", "m3"}
    assert plan.metrics == ["m2", "m3"]      # cost order
    assert plan.protected == ("m1",)
    assert plan.covered == 1300


def test_scenario_c_protected_alone_exceed_budget():
    cands = [
        cand("alerted_a", 1200, 5000),
        cand("alerted_b", 800, 4000),
        cand("noise_1", 100, 300),
        cand("noise_2", 50, 200),
    ]
    # total 2150 against a budget of 1000
    plan = plan_drops("api", cands, frozenset({"alerted_a", "alerted_b"}), deficit=1150)
    assert plan.metrics == ["noise_1", "noise_2"]
    assert plan.unsatisfiable
    cond = plan.condition()
    assert isinstance(cond, BudgetUnsatisfiable)
    assert cond.job == "api" and cond.deficit == 1150 and cond.covered == 150 and cond.protected == 2


def test_no_deficit_selects_nothing(scenario):
    for deficit in (0, -10):
        plan = plan_drops("api", scenario, frozenset(), deficit=deficit)
        assert plan.empty and not plan.unsatisfiable and plan.deficit == 0


def test_never_selects_keep_set_names(scenario):
    keep = frozenset({"m1", "m2", "m3"})
    plan = plan_drops("api", scenario, keep, deficit=500)
    assert plan.empty
    assert plan.unsatisfiable


def test_ties_broken_by_name_and_input_order_irrelevant():
    cands = [cand("zeta", 10, 100), cand("alpha", 10, 100), cand("mid", 10, 100), cand("big", 5, 900)]
    expected = plan_drops("api", cands, frozenset(), deficit=20).metrics
    assert expected == ["big", "alpha", "mid"]
    rng = random.Random(7)
    for _ in range(10):
        shuffled = cands[:]
        rng.shuffle(shuffled)
        assert plan_drops("api", shuffled, frozenset(), deficit=20).metrics == expected


def test_selected_prefix_is_minimal(scenario):
    for deficit in range(1, 1501, 37):
        plan = plan_drops("api", scenario, frozenset(), deficit=deficit)
        assert plan.covered >= deficit
        # dropping the last pick would leave the deficit uncovered
        without_last = sum(c.series_count for c in plan.selected[:-1])
        assert without_last < deficit


def test_rank_candidates_cost_desc_then_name():
    ranked = rank_candidates([cand("b", 1, 10), cand("a", 1, 10), cand("c", 1, 50)])
    assert [c.metric for c in ranked] == ["c", "a", "b"]


def test_oversized_metrics_off_by_default_and_respects_keep():
    cands = [cand("wide", 10, 5000, avg=500.0), cand("narrow", 10, 100, avg=10.0), cand("kept_wide", 10, 6000, avg=600.0)]
    assert oversized_metrics(cands, frozenset(), None) == []
    out = oversized_metrics(cands, frozenset({"kept_wide"}), 100)
    assert [c.metric for c in out] == ["wide"]


def test_label_ceiling_puts_wide_metrics_first():
    cands = [cand("bulk", 100, 2600, avg=26.0), cand("wide", 5, 1075, avg=215.0)]
    assert plan_drops("api", cands, frozenset(), 5).metrics == ["bulk"]
    assert plan_drops("api", cands, frozenset(), 5, max_label_bytes=100).metrics == ["wide"]
    # the ceiling orders candidates; it never widens the plan past the deficit
    assert plan_drops("api", cands, frozenset(), 0, max_label_bytes=100).empty
    both = plan_drops("api", cands, frozenset(), 50, max_label_bytes=100)
    assert both.metrics == ["wide", "bulk"]
    assert not both.unsatisfiable

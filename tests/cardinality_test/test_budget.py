# tests/cardinality_test/test_budget.py

from __future__ import annotations

from cardinality.budget import BudgetEvaluator
from cardinality.model import Budget


def test_per_job_deficit_and_exemption():
    ev = BudgetEvaluator(Budget(per_job={"api": 1000}))
    assert ev.is_over_budget("api", 1500)
    assert ev.deficit("api", 1500) == 500
    assert not ev.is_over_budget("api", 1000)
    assert ev.deficit("api", 900) == 0

    assert ev.is_exempt("batch")
    assert not ev.is_over_budget("batch", 10**9)
    assert ev.deficit("batch", 10**9) == 0


def test_global_excess_counts_exempt_jobs():
    ev = BudgetEvaluator(Budget(per_job={"api": 1000}, global_limit=2000))
    totals = {"api": 900, "batch": 1500}
    assert ev.global_total(totals) == 2400
    assert ev.global_excess(totals) == 400
    assert BudgetEvaluator(Budget()).global_excess(totals) == 0

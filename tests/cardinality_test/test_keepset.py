# tests/cardinality_test/test_keepset.py
# Keep-set extraction from PromQL rule expressions

from __future__ import annotations

import pytest

from cardinality.keepset import build_keep_set, extract_metric_names


@pytest.mark.parametrize(
    "expr, expected",
    [
        ('rate(http_requests_total{code="500"}[5m]) > 0', {"http_requests_total"}),
        ("sum by (job, instance) (rate(node_cpu_seconds_total[1m]))", {"node_cpu_seconds_total"}),
        ("sum(rate(api_errors_total[5m])) by (job)", {"api_errors_total"}),
        ("node_memory_free / on(instance) group_left(nodename) node_uname_info", {"node_memory_free", "node_uname_info"}),
        ('{__name__="up", job="api"} == 0', {"up"}),
        ("process_open_fds offset 5m > bool 1e3", {"process_open_fds"}),
        ('label_replace(up, "dst", "$1", "src", "(.*)")', {"up"}),
        ("max_over_time(rate(queue_depth[5m])[1h:1m])", {"queue_depth"}),
        ("histogram_quantile(0.99, sum by (le) (rate(req_duration_seconds_bucket[5m])))", {"req_duration_seconds_bucket"}),
        ("a and b unless c or d", {"a", "b", "c", "d"}),
        ("job:requests:rate5m > 10", {"job:requests:rate5m"}),
        ("vector(1)", set()),
    ],
)
def test_extract_metric_names(expr, expected):
    assert extract_metric_names(expr) == expected


def test_regex_name_matcher_is_not_resolved():
    assert extract_metric_names('{__name__=~"http_.*"}') == set()


def test_label_values_and_comments_are_ignored():
    expr = 'up{job="node_exporter"} # node_cpu_seconds_total is not referenced\n'
    assert extract_metric_names(expr) == {"up"}


def test_build_keep_set_unions_alerts_recordings_and_outputs():
    keep = build_keep_set(
        ["up == 0", 'rate(errors_total[5m]) > 1'],
        ["sum by (job) (rate(requests_total[5m]))"],
        ["job:requests:rate5m"],
    )
    assert keep == frozenset({"up", "errors_total", "requests_total", "job:requests:rate5m"})


def test_build_keep_set_is_deterministic_and_empty_for_no_rules():
    rules = ["a + b", "c"]
    assert build_keep_set(rules, []) == build_keep_set(list(reversed(rules)), [])
    assert build_keep_set([], []) == frozenset()


# tests/cardinality_test/test_events_metrics.py
# Event shapes, the JSONL audit sink, and Instrumentation metrics/emission

from __future__ import annotations

from pathlib import Path

from cardinality.errors import BudgetUnsatisfiable, ConfigInconsistency, QueryFailure
from cardinality.events import (
    EventKind,
    JsonlEventSink,
    make_condition_event,
    make_drop_event,
    to_sink_event,
)
from cardinality.metrics import Instrumentation
from cardinality.model import DropRecord, JobOutcome, JobStatus, PassReport
from cardinality.utils import iter_jsonl


def _value(instr: Instrumentation, name: str, **labels: str) -> float:
    return instr.registry.get_sample_value(name, labels or None)


def test_sink_event_shape():
    ev = make_drop_event(DropRecord(job="api", metric="m1", series_removed=40))
    d = to_sink_event(ev)
    assert d["kind"] == "DropRecorded"
    assert d["source"] == "cardinality"
    assert "src" not in d
    assert (d["job"], d["metric"], d["series_removed"], d["reason"]) == ("api", "m1", 40, "budget")


def test_condition_event_levels():
    sev1 = make_condition_event(BudgetUnsatisfiable("api", deficit=10, covered=4))
    assert (sev1.kind, sev1.level, sev1.severity) == ("BudgetUnsatisfiable", "error", 1)
    sev2 = make_condition_event(QueryFailure("beta", "timed out"))
    assert (sev2.kind, sev2.level, sev2.severity) == ("QueryFailure", "warning", 2)
    assert sev2.message == "timed out"


def test_jsonl_sink_appends(tmp_path: Path):
    path = tmp_path / "events.jsonl"
    instr = Instrumentation(sink=JsonlEventSink(path))
    instr.record_drop(DropRecord(job="api", metric="m1", series_removed=1))
    instr.condition(ConfigInconsistency("ghost", "no such job"))
    rows = list(iter_jsonl(path))
    assert [r["kind"] for r in rows] == ["DropRecorded", "ConfigInconsistency"]
    assert rows[1]["job"] == "ghost"


def test_sink_failure_does_not_escape(caplog):
    def broken(_event):
        raise RuntimeError("disk full")

    instr = Instrumentation(sink=broken)
    instr.record_drop(DropRecord(job="api", metric="m1", series_removed=3))
    assert _value(instr, "tcm_metrics_dropped_total", job="api", metric="m1") == 1.0
    assert "event sink failed" in caplog.text


def test_condition_counters_and_unsatisfiable_gauge(instr, events):
    instr.condition(BudgetUnsatisfiable("api", deficit=10, covered=4))
    instr.condition(QueryFailure("beta", "boom"))
    assert _value(instr, "tcm_job_failures_total", job="api", kind="budget_unsatisfiable") == 1.0
    assert _value(instr, "tcm_job_failures_total", job="beta", kind="query_failure") == 1.0
    assert _value(instr, "tcm_job_budget_unsatisfiable", job="api") == 1.0

    instr.clear_conditions(["api"])
    assert _value(instr, "tcm_job_budget_unsatisfiable", job="api") == 0.0
    assert [e["kind"] for e in events] == ["BudgetUnsatisfiable", "QueryFailure"]


def test_global_budget_and_remote_write(instr, events):
    instr.global_budget(900, 1000)
    assert events == []
    instr.global_budget(1200, 1000)
    assert _value(instr, "tcm_global_excess_series") == 200.0
    assert events[-1]["kind"] == EventKind.GlobalBudgetExceeded.value
    assert events[-1]["excess"] == 200

    instr.global_budget(5000, None)
    assert _value(instr, "tcm_global_excess_series") == 0.0

    instr.remote_write("cortex", 800, 1000)
    assert len(events) == 1
    instr.remote_write("cortex", 1500, 1000, {"api": {"b", "a"}})
    assert events[-1]["restricted"] == {"api": ("a", "b")}
    assert _value(instr, "tcm_remote_write_series", destination="cortex") == 1500.0


def test_pass_lifecycle_and_exposition(instr, events):
    instr.config_loaded(2, 7, 3)
    report = PassReport(outcomes={
        "api": JobOutcome(job="api", status=JobStatus.DROPPED),
        "web": JobOutcome(job="web", status=JobStatus.EXEMPT),
    })
    report.finished_at = report.started_at
    instr.pass_started(2, 2)
    instr.pass_finished(report, 2)

    assert [e["kind"] for e in events] == ["ConfigReloaded", "PassStarted", "PassFinished"]
    assert events[-1]["by_status"] == {"DROPPED": 1, "EXEMPT": 1}
    assert _value(instr, "tcm_passes_total") == 1.0
    assert _value(instr, "tcm_keep_set_size") == 7.0

    text = instr.exposition().decode("utf-8")
    assert "tcm_config_generation 2.0" in text
    assert "tcm_pass_seconds_count 1.0" in text


def test_instances_do_not_share_registries():
    a, b = Instrumentation(), Instrumentation()
    a.job_measured("api", 10, budget=5, deficit=5)
    assert _value(a, "tcm_job_series", job="api") == 10.0
    assert _value(b, "tcm_job_series", job="api") is None

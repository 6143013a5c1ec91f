# tests/cardinality_test/test_config.py
# Config loading, TCM_* overrides, validation, and snapshot building

from __future__ import annotations

import json
from pathlib import Path

import pytest

from cardinality.config import TCMConfig, apply_env, build_snapshot, load_config
from cardinality.errors import ConfigInconsistency
from cardinality.model import DropMode

RAW = {
    "jobs": [
        {"name": "api", "selector": {"env": "prod"}, "drop_list": ["debug_info", "up"]},
        {"job_name": "web"},
    ],
    "alerting_rules": [{"alert": "Down", "expr": "up == 0"}, "rate(errors_total[5m]) > 1"],
    "recording_rules": [{"record": "job:requests:rate5m", "expr": "sum by (job) (rate(requests_total[5m]))"}],
    "job_budgets": {"api": 1000, "ghost": 50},
    "global_budget": 5000,
    "remote_write": {"destination": "cortex", "limit": 3000, "limits_by_job": {"web": 200, "ghost": 1}},
    "drop_mode": "sequential",
    "max_metric_cost_bytes": 512,
}


def test_from_dict_defaults_and_shapes():
    cfg = TCMConfig.from_dict(RAW)
    assert [j.name for j in cfg.jobs] == ["api", "web"]
    assert cfg.recording_rules == {"job:requests:rate5m": "sum by (job) (rate(requests_total[5m]))"}
    assert cfg.alerting_rules == ["up == 0", "rate(errors_total[5m]) > 1"]
    assert cfg.label_sample_size == 20
    assert cfg.interval_seconds == 60.0
    assert cfg.drop_mode == DropMode.SEQUENTIAL
    assert cfg.remote_write.enabled


def test_snapshot_reports_unknown_jobs_and_filters_static_drops():
    snap, issues = build_snapshot(TCMConfig.from_dict(RAW), generation=3)
    assert all(isinstance(i, ConfigInconsistency) for i in issues)
    assert sorted(i.job for i in issues) == ["ghost", "ghost"]
    assert dict(snap.budget.per_job) == {"api": 1000}
    assert dict(snap.budget.remote_write_by_job) == {"web": 200}
    assert snap.budget.remote_write_limit == 3000
    assert snap.keep_set == frozenset({"up", "errors_total", "requests_total", "job:requests:rate5m"})
    # "up" is protected, so it never reaches a drop-list
    assert snap.job("api").drop_list == frozenset({"debug_info"})
    assert snap.job("api").selector_expr() == '{env="prod",job="api"}'
    assert snap.job("nope") is None
    assert snap.generation == 3
    assert snap.max_metric_cost_bytes == 512


def test_snapshot_is_immutable():
    snap, _ = build_snapshot(TCMConfig.from_dict(RAW))
    with pytest.raises(Exception):
        snap.generation = 9  # type: ignore[misc]
    with pytest.raises(TypeError):
        snap.budget.per_job["api"] = 1  # type: ignore[index]


def test_env_overrides():
    cfg = apply_env(TCMConfig.from_dict(RAW), {
        "TCM_INTERVAL": "15",
        "TCM_WORKERS": "8",
        "TCM_QUERY_TIMEOUT": "2.5",
        "TCM_SAMPLE_SIZE": "bogus",
        "TCM_DROP_MODE": "concurrent",
        "TCM_METRICS_PORT": "9464",
        "TCM_BACKEND_URL": "http://prom:9090",
    })
    assert cfg.interval_seconds == 15.0
    assert cfg.workers == 8
    assert cfg.query_timeout == 2.5
    assert cfg.label_sample_size == 20     # unparsable -> default kept
    assert cfg.drop_mode == DropMode.CONCURRENT
    assert cfg.metrics_port == 9464
    assert cfg.backend_url == "http://prom:9090"

    assert apply_env(TCMConfig(), {"TCM_SEQUENTIAL": "yes"}).drop_mode == DropMode.SEQUENTIAL


@pytest.mark.parametrize("patch", [
    {"label_sample_size": 0},
    {"interval_seconds": 0},
    {"workers": -1},
    {"query_timeout": 0},
    {"job_budgets": {"api": -5}},
    {"jobs": ["api", "api"]},
])
def test_invalid_values_raise(patch):
    with pytest.raises(ValueError):
        TCMConfig.from_dict({**RAW, **patch})


def test_load_config_reads_json(tmp_path: Path, monkeypatch):
    p = tmp_path / "tcm.json"
    p.write_text(json.dumps(RAW), encoding="utf-8")
    cfg = load_config(p, env={"TCM_WORKERS": "2"})
    assert cfg.workers == 2

    monkeypatch.setenv("TCM_WORKERS", "5")
    assert load_config(p).workers == 5

    with pytest.raises(ValueError):
        load_config(tmp_path / "missing.json", env={})

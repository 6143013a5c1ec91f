# cardinality/config.py
# Static configuration for the cardinality manager: dataclass defaults, dict/JSON loading, TCM_* env overrides, and immutable pass snapshots.

from __future__ import annotations

import logging
import os
from types import MappingProxyType
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple, Union

from .errors import ConfigInconsistency
from .keepset import build_keep_set
from .model import Budget, DropMode, ScrapeJob
from .utils import read_json

logger = logging.getLogger(__name__)

# ---------- Helpers ----------
def _to_bool(v: Optional[str], default: bool) -> bool:
    if v is None:
        return default
    return str(v).strip().lower() in {"1", "true", "yes", "on", "y", "t"}

def _to_int(v: Optional[str], default: int) -> int:
    try:
        return int(v) if v is not None else default
    except ValueError:
        return default

def _to_float(v: Optional[str], default: float) -> float:
    try:
        return float(v) if v is not None else default
    except ValueError:
        return default

def _opt_int(v: Any) -> Optional[int]:
    if v is None or v == "":
        return None
    return int(v)

# ---------- Config Dataclasses ----------
@dataclass
class JobConfig:
    name: str
    selector: Dict[str, str] = field(default_factory=dict)
    drop_list: List[str] = field(default_factory=list)   # static drops, restored on every reload


@dataclass
class RemoteWriteConfig:
    destination: str = ""
    limit: Optional[int] = None                            # global ceiling on forwarded series
    limits_by_job: Dict[str, int] = field(default_factory=dict)

    @property
    def enabled(self) -> bool:
        return bool(self.destination) and self.limit is not None


@dataclass
class TCMConfig:
    # Parsed scrape/rule configuration
    jobs: List[JobConfig] = field(default_factory=list)
    alerting_rules: List[str] = field(default_factory=list)   # alert expressions
    recording_rules: Dict[str, str] = field(default_factory=dict)  # record name -> expression

    # Budgets
    job_budgets: Dict[str, int] = field(default_factory=dict)
    global_budget: Optional[int] = None
    remote_write: RemoteWriteConfig = field(default_factory=RemoteWriteConfig)

    # Estimation
    label_sample_size: int = 20                # label-sets sampled per metric for byte cost
    max_metric_cost_bytes: Optional[int] = None  # over budget, drop metrics whose avg label-set exceeds this first

    # Loop
    interval_seconds: float = 60.0
    workers: int = 4
    drop_mode: DropMode = DropMode.CONCURRENT
    query_timeout: float = 10.0
    apply_timeout: float = 10.0

    # Wiring (used by bootstrap)
    backend_url: str = "http://localhost:9090"
    state_dir: Optional[str] = None            # FileConfigStore dir; in-memory store when None
    event_log: Optional[str] = None            # JSONL audit log of DropRecords/conditions
    metrics_port: Optional[int] = None         # Prometheus exporter port

    def validate(self) -> "TCMConfig":
        if self.label_sample_size < 1:
            raise ValueError("label_sample_size must be >= 1")
        if self.interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        if self.workers < 0:
            raise ValueError("workers must be >= 0")
        if self.query_timeout <= 0 or self.apply_timeout <= 0:
            raise ValueError("timeouts must be > 0")
        names = [j.name for j in self.jobs]
        dupes = sorted({n for n in names if names.count(n) > 1})
        if dupes:
            raise ValueError(f"duplicate scrape job names: {', '.join(dupes)}")
        for job, b in self.job_budgets.items():
            if int(b) < 0:
                raise ValueError(f"budget for job '{job}' is negative")
        return self

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "TCMConfig":
        jobs = []
        for raw in d.get("jobs") or d.get("scrape_configs") or []:
            if isinstance(raw, str):
                jobs.append(JobConfig(name=raw))
                continue
            jobs.append(JobConfig(
                name=str(raw.get("name") or raw.get("job_name")),
                selector={str(k): str(v) for k, v in (raw.get("selector") or {}).items()},
                drop_list=[str(m) for m in (raw.get("drop_list") or [])],
            ))

        rw = d.get("remote_write") or {}
        remote_write = RemoteWriteConfig(
            destination=str(rw.get("destination") or ""),
            limit=_opt_int(rw.get("limit")),
            limits_by_job={str(k): int(v) for k, v in (rw.get("limits_by_job") or {}).items()},
        )

        recording = d.get("recording_rules") or {}
        if isinstance(recording, list):
            # [{"record": name, "expr": "..."}], as in a Prometheus rule group
            recording = {str(r.get("record") or f"_rule{i}"): str(r.get("expr") or "") for i, r in enumerate(recording)}
        alerting = [
            str(a.get("expr") or "") if isinstance(a, Mapping) else str(a)
            for a in (d.get("alerting_rules") or [])
        ]

        cfg = cls(
            jobs=jobs,
            alerting_rules=alerting,
            recording_rules={str(k): str(v) for k, v in recording.items()},
            job_budgets={str(k): int(v) for k, v in (d.get("job_budgets") or {}).items()},
            global_budget=_opt_int(d.get("global_budget")),
            remote_write=remote_write,
            label_sample_size=int(d.get("label_sample_size", 20)),
            max_metric_cost_bytes=_opt_int(d.get("max_metric_cost_bytes")),
            interval_seconds=float(d.get("interval_seconds", 60.0)),
            workers=int(d.get("workers", 4)),
            drop_mode=DropMode(str(d.get("drop_mode", DropMode.CONCURRENT.value)).lower()),
            query_timeout=float(d.get("query_timeout", 10.0)),
            apply_timeout=float(d.get("apply_timeout", 10.0)),
            backend_url=str(d.get("backend_url", "http://localhost:9090")),
            state_dir=d.get("state_dir"),
            event_log=d.get("event_log"),
            metrics_port=_opt_int(d.get("metrics_port")),
        )
        return cfg.validate()

# ---------- Build config with env overrides ----------
def apply_env(cfg: TCMConfig, env: Optional[Mapping[str, str]] = None) -> TCMConfig:
    env = os.environ if env is None else env
    cfg.interval_seconds = _to_float(env.get("TCM_INTERVAL"), cfg.interval_seconds)
    cfg.workers = _to_int(env.get("TCM_WORKERS"), cfg.workers)
    cfg.query_timeout = _to_float(env.get("TCM_QUERY_TIMEOUT"), cfg.query_timeout)
    cfg.apply_timeout = _to_float(env.get("TCM_APPLY_TIMEOUT"), cfg.apply_timeout)
    cfg.label_sample_size = _to_int(env.get("TCM_SAMPLE_SIZE"), cfg.label_sample_size)
    cfg.backend_url = env.get("TCM_BACKEND_URL", cfg.backend_url)
    cfg.state_dir = env.get("TCM_STATE_DIR", cfg.state_dir)
    cfg.event_log = env.get("TCM_EVENT_LOG", cfg.event_log)
    if env.get("TCM_METRICS_PORT"):
        cfg.metrics_port = _to_int(env.get("TCM_METRICS_PORT"), cfg.metrics_port or 0) or None
    if env.get("TCM_DROP_MODE"):
        cfg.drop_mode = DropMode(env["TCM_DROP_MODE"].strip().lower())
    if _to_bool(env.get("TCM_SEQUENTIAL"), False):
        cfg.drop_mode = DropMode.SEQUENTIAL
    return cfg.validate()


def load_config(path: Union[str, Path], *, env: Optional[Mapping[str, str]] = None) -> TCMConfig:
    """Read a JSON config file, then apply TCM_* overrides."""
    data = read_json(path, default=None)
    if not isinstance(data, dict):
        raise ValueError(f"config file {path} is missing or not a JSON object")
    return apply_env(TCMConfig.from_dict(data), env)

# ---------- Snapshots ----------
@dataclass(frozen=True)
class ConfigSnapshot:
    """
    Everything one pass reads, frozen. Replaced wholesale on reload; a pass
    captures one snapshot at its start and never sees a later one.
    """
    jobs: Tuple[ScrapeJob, ...]
    budget: Budget
    keep_set: FrozenSet[str]
    label_sample_size: int = 20
    max_metric_cost_bytes: Optional[int] = None
    remote_write_destination: str = ""
    query_timeout: float = 10.0
    apply_timeout: float = 10.0
    generation: int = 0

    def job(self, name: str) -> Optional[ScrapeJob]:
        for j in self.jobs:
            if j.name == name:
                return j
        return None

    @property
    def job_names(self) -> List[str]:
        return [j.name for j in self.jobs]


def build_snapshot(cfg: TCMConfig, *, generation: int = 0) -> Tuple[ConfigSnapshot, List[ConfigInconsistency]]:
    """
    Validate cfg and freeze it. Budgets naming unknown jobs come back as
    ConfigInconsistency issues and are left out of the snapshot.
    """
    keep = build_keep_set(cfg.alerting_rules, cfg.recording_rules.values(), cfg.recording_rules.keys())
    known = {j.name for j in cfg.jobs}

    issues: List[ConfigInconsistency] = []
    per_job: Dict[str, int] = {}
    for name, limit in sorted(cfg.job_budgets.items()):
        if name not in known:
            issues.append(ConfigInconsistency(name, f"budget {limit} names no configured scrape job; ignored"))
            continue
        per_job[name] = int(limit)

    rw_by_job: Dict[str, int] = {}
    for name, limit in sorted(cfg.remote_write.limits_by_job.items()):
        if name not in known:
            issues.append(ConfigInconsistency(name, f"remote-write limit {limit} names no configured scrape job; ignored"))
            continue
        rw_by_job[name] = int(limit)

    jobs = []
    for jc in cfg.jobs:
        static = frozenset(jc.drop_list)
        protected = sorted(static & keep)
        if protected:
            logger.warning("job %s: static drop-list names protected metrics %s; keeping them", jc.name, protected)
        jobs.append(ScrapeJob(name=jc.name, selector=MappingProxyType(dict(jc.selector)), drop_list=static - keep))

    snap = ConfigSnapshot(
        jobs=tuple(jobs),
        budget=Budget(
            per_job=MappingProxyType(per_job),
            global_limit=cfg.global_budget,
            remote_write_limit=cfg.remote_write.limit if cfg.remote_write.enabled else None,
            remote_write_by_job=MappingProxyType(rw_by_job),
        ),
        keep_set=keep,
        label_sample_size=cfg.label_sample_size,
        max_metric_cost_bytes=cfg.max_metric_cost_bytes,
        remote_write_destination=cfg.remote_write.destination,
        query_timeout=cfg.query_timeout,
        apply_timeout=cfg.apply_timeout,
        generation=generation,
    )
    return snap, issues


__all__ = [
    "JobConfig",
    "RemoteWriteConfig",
    "TCMConfig",
    "apply_env",
    "load_config",
    "ConfigSnapshot",
    "build_snapshot",
]

# cardinality/model.py
# Core dataclasses and enums for the cardinality manager (ScrapeJob, MetricCandidate, Budget, DropRecord, pass results)

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, FrozenSet, List, Mapping, Optional, Tuple

UTCNOW = lambda: datetime.now(timezone.utc)


class LoopState(str, Enum):
    IDLE = "IDLE"
    RUNNING = "RUNNING"


class JobStatus(str, Enum):
    UNDER_BUDGET = "UNDER_BUDGET"   # measured, nothing to do
    EXEMPT = "EXEMPT"               # no per-job budget configured
    DROPPED = "DROPPED"             # plan applied this pass
    UNSATISFIABLE = "UNSATISFIABLE" # everything droppable dropped, still over budget
    QUERY_FAILED = "QUERY_FAILED"   # skipped, no fresh data
    APPLY_FAILED = "APPLY_FAILED"   # plan discarded
    SKIPPED = "SKIPPED"             # shutdown before the job started


class DropMode(str, Enum):
    CONCURRENT = "concurrent"
    SEQUENTIAL = "sequential"


@dataclass(frozen=True)
class ScrapeJob:
    name: str
    selector: Mapping[str, str] = field(default_factory=dict)
    drop_list: FrozenSet[str] = frozenset()

    def matchers(self) -> Dict[str, str]:
        out = {"job": self.name}
        out.update({str(k): str(v) for k, v in (self.selector or {}).items()})
        return out

    def selector_expr(self) -> str:
        """PromQL selector for every series of this job, e.g. {job="api",env="prod"}."""
        parts = [f'{k}="{_escape(v)}"' for k, v in sorted(self.matchers().items())]
        return "{" + ",".join(parts) + "}"


@dataclass(frozen=True)
class MetricCandidate:
    job: str
    metric: str
    series_count: int
    bytes_cost: float
    avg_label_bytes: float = 0.0


@dataclass(frozen=True)
class Budget:
    per_job: Mapping[str, int] = field(default_factory=dict)
    global_limit: Optional[int] = None
    remote_write_limit: Optional[int] = None
    remote_write_by_job: Mapping[str, int] = field(default_factory=dict)

    def for_job(self, job: str) -> Optional[int]:
        return self.per_job.get(job)


@dataclass(frozen=True)
class DropRecord:
    job: str
    metric: str
    series_removed: int
    ts: datetime = field(default_factory=UTCNOW)
    reason: str = "budget"


@dataclass
class JobOutcome:
    job: str
    status: JobStatus
    total_series: int = 0
    budget: Optional[int] = None
    deficit: int = 0
    dropped: List[str] = field(default_factory=list)
    drop_list: FrozenSet[str] = frozenset()
    candidates: List[MetricCandidate] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def measured(self) -> bool:
        return self.status not in {JobStatus.QUERY_FAILED, JobStatus.SKIPPED}

    def surviving(self) -> List[MetricCandidate]:
        """Candidates still emitted after this pass (not on the drop-list)."""
        return [c for c in self.candidates if c.metric not in self.drop_list]


@dataclass
class PassReport:
    started_at: datetime = field(default_factory=UTCNOW)
    finished_at: Optional[datetime] = None
    outcomes: Dict[str, JobOutcome] = field(default_factory=dict)
    remote_write: Optional[object] = None
    global_excess: int = 0

    @property
    def duration_sec(self) -> float:
        if self.finished_at is None:
            return 0.0
        return max(0.0, (self.finished_at - self.started_at).total_seconds())

    def failed(self) -> List[Tuple[str, str]]:
        return [
            (j, o.error or o.status.value)
            for j, o in sorted(self.outcomes.items())
            if o.status in {JobStatus.QUERY_FAILED, JobStatus.APPLY_FAILED}
        ]


def _escape(v: str) -> str:
    return str(v).replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


__all__ = [
    "LoopState",
    "JobStatus",
    "DropMode",
    "ScrapeJob",
    "MetricCandidate",
    "Budget",
    "DropRecord",
    "JobOutcome",
    "PassReport",
]

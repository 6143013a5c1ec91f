# cardinality/events.py
# Typed instrumentation events (drops, per-job conditions, remote-write, global budget, pass lifecycle) and a JSONL audit sink

from __future__ import annotations

import threading
from dataclasses import dataclass, asdict, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from .errors import CardinalityError, Severity
from .model import DropRecord
from .utils import append_jsonl, iso

UTCNOW = lambda: datetime.now(timezone.utc)
EVENT_VERSION = 1


# ----------- Event kinds -----------

class EventKind(str, Enum):
    # Drops
    DropRecorded          = "DropRecorded"
    RemoteWriteRestricted = "RemoteWriteRestricted"

    # Conditions
    BudgetUnsatisfiable   = "BudgetUnsatisfiable"
    QueryFailure          = "QueryFailure"
    ApplyFailure          = "ApplyFailure"
    ConfigInconsistency   = "ConfigInconsistency"
    GlobalBudgetExceeded  = "GlobalBudgetExceeded"

    # Loop lifecycle
    PassStarted           = "PassStarted"
    PassFinished          = "PassFinished"
    ConfigReloaded        = "ConfigReloaded"


_KIND_BY_ERROR = {
    "query_failure": EventKind.QueryFailure,
    "apply_failure": EventKind.ApplyFailure,
    "budget_unsatisfiable": EventKind.BudgetUnsatisfiable,
    "config_inconsistency": EventKind.ConfigInconsistency,
}


# ----------- Base + typed events -----------

@dataclass
class BaseEvent:
    ts: str = field(default_factory=lambda: UTCNOW().isoformat())
    kind: str = ""
    src: str = "cardinality"
    level: str = "info"
    v: int = EVENT_VERSION
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class DropEvent(BaseEvent):
    job: str = ""
    metric: str = ""
    series_removed: int = 0
    reason: str = "budget"


@dataclass
class ConditionEvent(BaseEvent):
    job: str = ""
    error_kind: str = ""
    message: str = ""
    severity: int = int(Severity.SEV2)


@dataclass
class RemoteWriteEvent(BaseEvent):
    destination: str = ""
    forwarded_series: int = 0
    limit: int = 0
    restricted: Dict[str, Tuple[str, ...]] = field(default_factory=dict)


@dataclass
class GlobalBudgetEvent(BaseEvent):
    total_series: int = 0
    limit: int = 0
    excess: int = 0


@dataclass
class PassEvent(BaseEvent):
    generation: int = 0
    jobs: int = 0
    duration_sec: float = 0.0
    by_status: Dict[str, int] = field(default_factory=dict)


# ----------- Factories -----------

def make_drop_event(rec: DropRecord) -> DropEvent:
    return DropEvent(
        ts=iso(rec.ts) or UTCNOW().isoformat(),
        kind=EventKind.DropRecorded.value,
        job=rec.job,
        metric=rec.metric,
        series_removed=int(rec.series_removed),
        reason=rec.reason,
    )


def make_condition_event(err: CardinalityError, *, extra: Optional[Dict[str, Any]] = None) -> ConditionEvent:
    kind = _KIND_BY_ERROR.get(err.kind.value, EventKind.QueryFailure)
    return ConditionEvent(
        kind=kind.value,
        level="error" if err.severity == Severity.SEV1 else "warning",
        job=err.job,
        error_kind=err.kind.value,
        message=err.message,
        severity=int(err.severity),
        extra=dict(extra or {}),
    )


def make_remote_write_event(destination: str, forwarded: int, limit: int, restricted: Mapping[str, Any]) -> RemoteWriteEvent:
    return RemoteWriteEvent(
        kind=EventKind.RemoteWriteRestricted.value,
        level="warning",
        destination=destination,
        forwarded_series=int(forwarded),
        limit=int(limit),
        restricted={j: tuple(sorted(ms)) for j, ms in sorted(restricted.items())},
    )


def make_global_budget_event(total: int, limit: int) -> GlobalBudgetEvent:
    return GlobalBudgetEvent(
        kind=EventKind.GlobalBudgetExceeded.value,
        level="warning",
        total_series=int(total),
        limit=int(limit),
        excess=max(0, int(total) - int(limit)),
    )


def make_pass_event(kind: Union[str, EventKind], *, generation: int, jobs: int,
                    duration_sec: float = 0.0, by_status: Optional[Dict[str, int]] = None) -> PassEvent:
    return PassEvent(
        kind=str(getattr(kind, "value", kind)),
        level="debug",
        generation=int(generation),
        jobs=int(jobs),
        duration_sec=round(float(duration_sec), 6),
        by_status=dict(by_status or {}),
    )


# ----------- Adapters -----------

def to_sink_event(ev: BaseEvent) -> Dict[str, Any]:
    """Flatten to the dict handed to event sinks."""
    d = asdict(ev)
    d["source"] = d.pop("src")
    return d


class JsonlEventSink:
    """
    Audit sink: appends each event dict as one JSON line.
    Callable, so it can be handed to Instrumentation(sink=...).
    """

    def __init__(self, path: Union[str, Path]) -> None:
        self.path = Path(path)
        self._mu = threading.Lock()

    def __call__(self, event: Dict[str, Any]) -> None:
        with self._mu:
            append_jsonl(self.path, [event])


__all__ = [
    "EventKind",
    "BaseEvent",
    "DropEvent",
    "ConditionEvent",
    "RemoteWriteEvent",
    "GlobalBudgetEvent",
    "PassEvent",
    "make_drop_event",
    "make_condition_event",
    "make_remote_write_event",
    "make_global_budget_event",
    "make_pass_event",
    "to_sink_event",
    "JsonlEventSink",
]

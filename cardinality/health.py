# cardinality/health.py
# JSON-serializable health snapshot for dashboards and the /health probe

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .utils import parse_iso

UTCNOW = lambda: datetime.now(timezone.utc)


def snapshot(
    daemon: Any,
    *,
    now: Optional[datetime] = None,
    max_list: int = 10,
) -> Dict[str, Any]:
    """
    Build a health payload from a CardinalityDaemon-like object.

    Parameters
    ----------
    daemon : CardinalityDaemon-like
        Must expose health() and a `store` with drop_lists()/restrictions().
    now : datetime, optional
        Override the current time (UTC).
    max_list : int
        Maximum number of jobs listed in "largest_drop_lists".
    """
    now = now or UTCNOW()
    h = daemon.health()
    store = daemon.store

    drop_lists = store.drop_lists()
    sizes = sorted(((len(ms), job) for job, ms in drop_lists.items()), reverse=True)
    largest = [{"job": job, "dropped": n} for n, job in sizes[:max_list] if n]

    restrictions = store.restrictions()
    rw = {
        dest: {"jobs": len(by_job), "metrics": sum(len(ms) for ms in by_job.values())}
        for dest, by_job in sorted(restrictions.items())
    }

    last = h.get("last_pass") or {}
    last_at = parse_iso(h.get("last_pass_at"))
    age = max(0.0, (now - last_at).total_seconds()) if last_at else None

    return {
        "ts": now.isoformat(),
        "ok": not h.get("last_error") and not last.get("failed"),
        "loop": {
            "state": h.get("state"),
            "running": h.get("running"),
            "last_pass_age_sec": age,
            "last_error": h.get("last_error"),
        },
        "config": {
            "generation": h.get("generation"),
            "jobs": len(h.get("jobs") or []),
            "keep_set_size": h.get("keep_set_size"),
        },
        "conditions": h.get("conditions") or {},
        "last_pass": last or None,
        "drop_lists": {
            "jobs_with_drops": sum(1 for ms in drop_lists.values() if ms),
            "metrics_dropped": sum(len(ms) for ms in drop_lists.values()),
            "largest_drop_lists": largest,
        },
        "remote_write": rw,
        "runner": h.get("runner") or {},
    }


__all__ = ["snapshot"]

# cardinality/remote_write.py
# Remote-write limiter: secondary budget on series forwarded to one destination; restricts forwarding only, never scraping

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple

from .errors import ApplyFailure, describe
from .locks import JobLocks
from .model import Budget, MetricCandidate
from .planner import plan_drops

logger = logging.getLogger(__name__)


@dataclass
class RemoteWriteDecision:
    destination: str = ""
    limit: Optional[int] = None
    enabled: bool = False
    forwarded_before: int = 0                  # after the existing restriction, before this pass's additions
    forwarded_after: int = 0
    forwarded_by_job: Dict[str, int] = field(default_factory=dict)
    additions: Dict[str, FrozenSet[str]] = field(default_factory=dict)
    unsatisfiable: Tuple[str, ...] = ()        # jobs (or the destination) still over their ceiling
    partial: Tuple[str, ...] = ()              # jobs left out because they had no fresh measurement

    @property
    def restricted(self) -> bool:
        return any(self.additions.values())

    @property
    def over_limit(self) -> bool:
        return self.limit is not None and self.forwarded_after > self.limit


class RemoteWriteLimiter:
    """
    evaluate(surviving_by_job, keep_set) -> RemoteWriteDecision   (pure, reads the store once)
    apply(decision)                      -> destination restriction after the merge

    Forwarded series per job = surviving series minus metrics the destination
    already excludes. A per-job override is enforced first as that job's own
    deficit; then, if the total still exceeds the ceiling, the remaining
    candidates of all jobs are ranked together (cost desc, name asc) and the
    smallest sufficient prefix is added to the restriction. Keep-set metrics
    are never restricted. Restrictions merge like drop-lists and are only
    cleared by a reload.
    """

    def __init__(
        self,
        store: Any,
        instrumentation: Any,
        *,
        locks: Optional[JobLocks] = None,
        timeout: float = 10.0,
    ) -> None:
        self.store = store
        self.instrumentation = instrumentation
        self.locks = locks or JobLocks(default_timeout=timeout)
        self.timeout = float(timeout)

    # ---------------- evaluate ----------------

    def evaluate(
        self,
        surviving_by_job: Mapping[str, Iterable[MetricCandidate]],
        keep_set: FrozenSet[str],
        *,
        budget: Budget,
        destination: str,
        partial: Iterable[str] = (),
    ) -> RemoteWriteDecision:
        limit = budget.remote_write_limit
        overrides = dict(budget.remote_write_by_job or {})
        if not destination or (limit is None and not overrides):
            return RemoteWriteDecision(destination=destination, limit=limit, enabled=False)

        existing = self.store.get_remote_write_restriction(destination)
        keep = frozenset(keep_set)

        forwarding: Dict[str, List[MetricCandidate]] = {}
        for job in sorted(surviving_by_job):
            excluded = existing.get(job, frozenset())
            forwarding[job] = [c for c in surviving_by_job[job] if c.metric not in excluded]

        by_job = {job: sum(int(c.series_count) for c in cands) for job, cands in forwarding.items()}
        before = sum(by_job.values())
        additions: Dict[str, set] = {}
        unsatisfiable: List[str] = []

        # Per-job overrides
        for job, cap in sorted(overrides.items()):
            if job not in forwarding or by_job[job] <= int(cap):
                continue
            plan = plan_drops(job, forwarding[job], keep, by_job[job] - int(cap))
            self._take(plan.selected, forwarding, by_job, additions)
            if plan.unsatisfiable:
                unsatisfiable.append(job)

        # Destination ceiling
        total = sum(by_job.values())
        if limit is not None and total > int(limit):
            pooled = [c for job in sorted(forwarding) for c in forwarding[job]]
            plan = plan_drops(destination, pooled, keep, total - int(limit))
            self._take(plan.selected, forwarding, by_job, additions)
            if plan.unsatisfiable:
                unsatisfiable.append(destination)

        decision = RemoteWriteDecision(
            destination=destination,
            limit=limit,
            enabled=True,
            forwarded_before=before,
            forwarded_after=sum(by_job.values()),
            forwarded_by_job=by_job,
            additions={j: frozenset(ms) for j, ms in sorted(additions.items()) if ms},
            unsatisfiable=tuple(unsatisfiable),
            partial=tuple(sorted(set(partial))),
        )
        if decision.partial:
            logger.debug("remote-write %s evaluated without %s", destination, list(decision.partial))
        return decision

    @staticmethod
    def _take(
        selected: Iterable[MetricCandidate],
        forwarding: Dict[str, List[MetricCandidate]],
        by_job: Dict[str, int],
        additions: Dict[str, set],
    ) -> None:
        for c in selected:
            additions.setdefault(c.job, set()).add(c.metric)
            forwarding[c.job] = [x for x in forwarding[c.job] if x.metric != c.metric]
            by_job[c.job] -= int(c.series_count)

    # ---------------- apply ----------------

    def apply(self, decision: RemoteWriteDecision, *, timeout: Optional[float] = None) -> Dict[str, FrozenSet[str]]:
        if not decision.enabled:
            return {}
        dest = decision.destination
        tmo = self.timeout if timeout is None else float(timeout)
        deadline = time.monotonic() + tmo
        holder = f"remote-write:{threading.current_thread().name}"
        try:
            with self.locks.session(f"remote_write:{dest}", holder, timeout=tmo):
                current = self.store.get_remote_write_restriction(dest)
                if not decision.restricted:
                    merged = current
                else:
                    merged = dict(current)
                    for job, names in decision.additions.items():
                        merged[job] = frozenset(current.get(job, frozenset())) | names
                    remaining = max(0.0, deadline - time.monotonic())
                    merged = self.store.set_remote_write_restriction(dest, merged, timeout=remaining)
        except TimeoutError as e:
            raise ApplyFailure(f"remote_write:{dest}", f"restriction write timed out after {tmo}s", cause=e) from e
        except Exception as e:
            raise ApplyFailure(f"remote_write:{dest}", f"restriction write failed: {describe(e)}", cause=e) from e

        self.instrumentation.remote_write(
            dest,
            decision.forwarded_after,
            int(decision.limit) if decision.limit is not None else decision.forwarded_after,
            decision.additions,
        )
        return merged


__all__ = ["RemoteWriteDecision", "RemoteWriteLimiter"]

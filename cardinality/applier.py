# cardinality/applier.py
# Drop applier: merge a plan into the job's persisted drop-list under the job lock, then record each newly dropped metric

from __future__ import annotations

import threading
import time
from typing import Any, FrozenSet, Iterable, Mapping, Optional

from .errors import ApplyFailure, describe
from .locks import JobLocks
from .model import DropRecord


class DropApplier:
    """
    apply(job, drop_set) -> the job's drop-list after the merge.

    Rules
    -----
    - Set union with what the store already holds; never removes a name.
    - Names in the keep set are refused outright (ApplyFailure, nothing written).
    - Lock wait + store write share one deadline of `timeout` seconds.
    - Only names that were not already dropped produce a DropRecord.
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

    def apply(
        self,
        job: str,
        drop_set: Iterable[str],
        *,
        keep_set: FrozenSet[str] = frozenset(),
        series: Optional[Mapping[str, int]] = None,
        reason: str = "budget",
        timeout: Optional[float] = None,
    ) -> FrozenSet[str]:
        requested = frozenset(drop_set)
        protected = sorted(requested & frozenset(keep_set))
        if protected:
            raise ApplyFailure(job, f"refusing to drop protected metrics {protected}")

        tmo = self.timeout if timeout is None else float(timeout)
        deadline = time.monotonic() + tmo
        holder = f"applier:{threading.current_thread().name}"
        try:
            with self.locks.session(job, holder, timeout=tmo):
                current = frozenset(self.store.get_drop_list(job))
                merged = current | requested
                if merged != current:
                    remaining = max(0.0, deadline - time.monotonic())
                    self.store.set_drop_list(job, merged, timeout=remaining)
        except TimeoutError as e:
            raise ApplyFailure(job, f"drop-list write timed out after {tmo}s", cause=e) from e
        except Exception as e:
            raise ApplyFailure(job, f"drop-list write failed: {describe(e)}", cause=e) from e

        counts = series or {}
        for metric in sorted(merged - current):
            self.instrumentation.record_drop(
                DropRecord(job=job, metric=metric, series_removed=int(counts.get(metric, 0)), reason=reason)
            )
        return merged


__all__ = ["DropApplier"]

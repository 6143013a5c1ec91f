# cardinality/planner.py
# Drop planner: rank a job's unprotected metrics by byte cost and pick the smallest prefix that covers the deficit

from __future__ import annotations

from dataclasses import dataclass
from typing import FrozenSet, Iterable, List, Optional, Tuple

from .errors import BudgetUnsatisfiable
from .model import MetricCandidate


@dataclass(frozen=True)
class DropPlan:
    job: str
    deficit: int
    selected: Tuple[MetricCandidate, ...] = ()
    covered: int = 0                      # series removed by the selected metrics
    protected: Tuple[str, ...] = ()       # candidates filtered out by the keep set
    unsatisfiable: bool = False

    @property
    def metrics(self) -> List[str]:
        """Names in drop order."""
        return [c.metric for c in self.selected]

    @property
    def empty(self) -> bool:
        return not self.selected

    def condition(self) -> Optional[BudgetUnsatisfiable]:
        if not self.unsatisfiable:
            return None
        return BudgetUnsatisfiable(self.job, deficit=self.deficit, covered=self.covered, protected=len(self.protected))


def rank_candidates(candidates: Iterable[MetricCandidate]) -> List[MetricCandidate]:
    """Cost descending, then metric name ascending. Total order, so plans are reproducible."""
    return sorted(candidates, key=lambda c: (-float(c.bytes_cost), c.metric))


def plan_drops(
    job: str,
    candidates: Iterable[MetricCandidate],
    keep_set: FrozenSet[str],
    deficit: int,
    *,
    max_label_bytes: Optional[int] = None,
) -> DropPlan:
    """
    Select the metrics to drop this tick.

    Policy
    ------
    1) Candidates named in keep_set are never eligible.
    2) Remaining candidates are ranked by rank_candidates(). When max_label_bytes
       is set, metrics whose average label-set exceeds it (oversized_metrics())
       come first, so an over-budget job sheds its widest label-sets before
       anything else. The ceiling only orders candidates; it never adds a drop
       on its own.
    3) Walk the ranking, summing series_count, and stop at the first prefix whose
       sum reaches the deficit. Granularity is per metric, so the last pick may
       overshoot; no shorter prefix would have been enough.
    4) If even the whole eligible list falls short, every eligible candidate is
       selected and the plan is marked unsatisfiable (the protected set alone
       exceeds the budget).

    Returns
    -------
    DropPlan. A deficit <= 0 yields an empty, satisfiable plan.
    """
    keep = frozenset(keep_set or ())
    cands = list(candidates)
    protected = tuple(sorted({c.metric for c in cands if c.metric in keep}))
    oversized = oversized_metrics(cands, keep, max_label_bytes)
    wide = {c.metric for c in oversized}
    eligible = oversized + rank_candidates(c for c in cands if c.metric not in keep and c.metric not in wide)

    need = int(deficit)
    if need <= 0:
        return DropPlan(job=job, deficit=max(0, need), protected=protected)

    chosen: List[MetricCandidate] = []
    covered = 0
    for c in eligible:
        if covered >= need:
            break
        chosen.append(c)
        covered += int(c.series_count)

    return DropPlan(
        job=job,
        deficit=need,
        selected=tuple(chosen),
        covered=covered,
        protected=protected,
        unsatisfiable=covered < need,
    )


def oversized_metrics(
    candidates: Iterable[MetricCandidate],
    keep_set: FrozenSet[str],
    max_label_bytes: Optional[int],
) -> List[MetricCandidate]:
    """
    Unprotected metrics whose average label-set is larger than max_label_bytes,
    ranked like rank_candidates(). plan_drops() puts them ahead of every other
    candidate. Empty when the ceiling is unset.
    """
    if max_label_bytes is None:
        return []
    keep = frozenset(keep_set or ())
    return rank_candidates(
        c for c in candidates
        if c.metric not in keep and float(c.avg_label_bytes) > float(max_label_bytes)
    )


__all__ = ["DropPlan", "rank_candidates", "plan_drops", "oversized_metrics"]

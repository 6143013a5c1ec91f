# cardinality/budget.py
# Budget evaluator: per-job over-budget checks and deficits, plus the global ceiling across all measured jobs

from __future__ import annotations

from typing import Mapping, Optional

from .model import Budget


class BudgetEvaluator:
    """
    Pure comparisons against an immutable Budget.

    Jobs without a per-job entry are exempt from per-job enforcement but still
    count toward the global ceiling.
    """

    def __init__(self, budget: Budget) -> None:
        self.budget = budget

    def limit_for(self, job: str) -> Optional[int]:
        return self.budget.for_job(job)

    def is_exempt(self, job: str) -> bool:
        return self.limit_for(job) is None

    def is_over_budget(self, job: str, total_series: int) -> bool:
        limit = self.limit_for(job)
        if limit is None:
            return False
        return int(total_series) > int(limit)

    def deficit(self, job: str, total_series: int) -> int:
        """Series that must go for the job to reach its budget; never negative."""
        limit = self.limit_for(job)
        if limit is None:
            return 0
        return max(0, int(total_series) - int(limit))

    def global_total(self, totals: Mapping[str, int]) -> int:
        return sum(max(0, int(v)) for v in totals.values())

    def global_excess(self, totals: Mapping[str, int]) -> int:
        """How far the measured jobs together sit above the global ceiling (0 when unset or under)."""
        if self.budget.global_limit is None:
            return 0
        return max(0, self.global_total(totals) - int(self.budget.global_limit))


__all__ = ["BudgetEvaluator"]

# cardinality/errors.py
# Failure taxonomy for the control loop: exceptions carrying the job name, plus kind/severity helpers for instrumentation.

from __future__ import annotations

from enum import Enum, IntEnum
from typing import Any, Dict, Optional


class Severity(IntEnum):
    """1 = needs an operator (config must change), 2 = transient, retried next tick."""
    SEV1 = 1
    SEV2 = 2


class ErrorKind(str, Enum):
    QUERY_FAILURE = "query_failure"
    APPLY_FAILURE = "apply_failure"
    BUDGET_UNSATISFIABLE = "budget_unsatisfiable"
    CONFIG_INCONSISTENCY = "config_inconsistency"


SEVERITY_BY_KIND: Dict[ErrorKind, Severity] = {
    ErrorKind.QUERY_FAILURE: Severity.SEV2,
    ErrorKind.APPLY_FAILURE: Severity.SEV2,
    ErrorKind.BUDGET_UNSATISFIABLE: Severity.SEV1,
    ErrorKind.CONFIG_INCONSISTENCY: Severity.SEV1,
}


class CardinalityError(Exception):
    """Base class. Every failure in this package is scoped to a single job (or the config)."""

    kind: ErrorKind = ErrorKind.QUERY_FAILURE

    def __init__(self, job: str, message: str = "", *, cause: Optional[BaseException] = None) -> None:
        self.job = job
        self.message = message or self.kind.value
        self.cause = cause
        super().__init__(f"[{job}] {self.message}")

    @property
    def severity(self) -> Severity:
        return SEVERITY_BY_KIND[self.kind]

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "kind": self.kind.value,
            "job": self.job,
            "message": self.message,
            "severity": int(self.severity),
        }
        if self.cause is not None:
            d["cause"] = f"{type(self.cause).__name__}: {self.cause}"
        return d


class QueryFailure(CardinalityError):
    """Estimator could not get fresh data for the job (error or timeout). Job is skipped this tick."""
    kind = ErrorKind.QUERY_FAILURE


class ApplyFailure(CardinalityError):
    """Config-store write failed or timed out. The plan is discarded, never partially applied."""
    kind = ErrorKind.APPLY_FAILURE


class BudgetUnsatisfiable(CardinalityError):
    """Protected metrics alone exceed the job budget. Standing condition until a reload."""
    kind = ErrorKind.BUDGET_UNSATISFIABLE

    def __init__(self, job: str, *, deficit: int, covered: int, protected: int = 0) -> None:
        self.deficit = int(deficit)
        self.covered = int(covered)
        self.protected = int(protected)
        super().__init__(
            job,
            f"dropping every unprotected metric removes {covered} series, {deficit} needed",
        )


class ConfigInconsistency(CardinalityError):
    """A budgeted job name has no matching scrape job. The budget is ignored."""
    kind = ErrorKind.CONFIG_INCONSISTENCY


def describe(exc: BaseException) -> str:
    return f"{type(exc).__name__}: {exc}"


__all__ = [
    "Severity",
    "ErrorKind",
    "SEVERITY_BY_KIND",
    "CardinalityError",
    "QueryFailure",
    "ApplyFailure",
    "BudgetUnsatisfiable",
    "ConfigInconsistency",
    "describe",
]

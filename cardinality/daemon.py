# cardinality/daemon.py
# Control loop: each tick runs estimate -> budget -> plan -> apply per job, then the remote-write limiter and the global check

from __future__ import annotations

import functools
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, List, Optional

from .applier import DropApplier
from .budget import BudgetEvaluator
from .config import ConfigSnapshot, TCMConfig, build_snapshot
from .errors import ApplyFailure, BudgetUnsatisfiable, QueryFailure, describe
from .estimator import Estimator
from .locks import JobLocks
from .metrics import Instrumentation
from .model import DropMode, JobOutcome, JobStatus, LoopState, PassReport, ScrapeJob
from .planner import plan_drops
from .remote_write import RemoteWriteLimiter
from .runner import PassRunner
from .ticker import IntervalTicker, Ticker

UTCNOW = lambda: datetime.now(timezone.utc)

logger = logging.getLogger(__name__)


class CardinalityDaemon:
    """
    Closed-loop cardinality control.

      - run_pass() does one full pass synchronously and returns a PassReport
      - start()/stop()/join() drive passes from the injected Ticker on a thread
      - reload(config) swaps in a new snapshot + keep set, restores static
        drop-lists, clears remote-write restrictions and standing conditions

    States are IDLE (between passes) and RUNNING (inside one). Per-job failures
    are recorded in the report and never abort a pass.
    """

    def __init__(
        self,
        config: TCMConfig,
        *,
        backend: Any,
        store: Any,
        instrumentation: Optional[Instrumentation] = None,
        ticker: Optional[Ticker] = None,
        locks: Optional[JobLocks] = None,
    ) -> None:
        self.backend = backend
        self.store = store
        self.instrumentation = instrumentation or Instrumentation()
        self.ticker = ticker or IntervalTicker(config.interval_seconds)
        self.locks = locks or JobLocks(default_timeout=config.apply_timeout)

        # Internal coordination
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._pass_mu = threading.Lock()        # one pass at a time; reload waits for it
        self._snap_mu = threading.Lock()
        self._state = LoopState.IDLE

        self._runner = PassRunner(workers=config.workers, stop_event=self._stop)
        self._conditions: Dict[str, BudgetUnsatisfiable] = {}
        self._cond_mu = threading.Lock()
        self._config = config
        self._snapshot: Optional[ConfigSnapshot] = None

        # Health
        self._last_report: Optional[PassReport] = None
        self._last_pass_at: Optional[datetime] = None
        self._last_error: Optional[str] = None

        self._load(config, generation=1, reset=False)

    # ---------------- Lifecycle ----------------

    def start(self) -> None:
        """Run passes on a background thread until stop()."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="CardinalityDaemon", daemon=True)
        self._thread.start()
        logger.info("cardinality daemon started (%d jobs)", len(self.snapshot.jobs))

    def stop(self) -> None:
        """Signal shutdown. Running per-job work finishes; queued jobs are skipped."""
        self._stop.set()
        self.ticker.wake()
        self._runner.stop()

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread:
            self._thread.join(timeout=timeout)
        self._runner.join(timeout=timeout)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block on the loop thread; returns True while it is still running."""
        if self._thread:
            self._thread.join(timeout=timeout)
        return self.is_alive()

    def is_alive(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    @property
    def state(self) -> LoopState:
        return self._state

    @property
    def snapshot(self) -> ConfigSnapshot:
        with self._snap_mu:
            assert self._snapshot is not None
            return self._snapshot

    @property
    def keep_set(self) -> FrozenSet[str]:
        return self.snapshot.keep_set

    @property
    def conditions(self) -> Dict[str, BudgetUnsatisfiable]:
        with self._cond_mu:
            return dict(self._conditions)

    @property
    def last_report(self) -> Optional[PassReport]:
        return self._last_report

    # ---------------- Configuration ----------------

    def reload(self, config: TCMConfig) -> ConfigSnapshot:
        """
        Apply a new configuration. Waits for an in-flight pass to finish, so
        a pass never mixes two snapshots and no drop planned under the old
        keep set lands after the reset.
        """
        with self._pass_mu:
            gen = self.snapshot.generation + 1
            self._load(config, generation=gen, reset=True)
        self.ticker.wake()
        return self.snapshot

    def _load(self, config: TCMConfig, *, generation: int, reset: bool) -> None:
        snap, issues = build_snapshot(config, generation=generation)
        for issue in issues:
            self.instrumentation.condition(issue)

        static = {job.name: job.drop_list for job in snap.jobs}
        if reset:
            self.store.reset(static, timeout=snap.apply_timeout)
        else:
            self._merge_static(snap)

        with self._snap_mu:
            self._snapshot = snap
            self._config = config
        with self._cond_mu:
            cleared = list(self._conditions)
            self._conditions = {}
        self.instrumentation.clear_conditions(cleared)
        self.instrumentation.config_loaded(generation, len(snap.keep_set), len(snap.jobs))

    def _merge_static(self, snap: ConfigSnapshot) -> None:
        """
        First load: keep whatever the store already holds, add the static
        drop-lists, and take out any name the keep set now protects.
        """
        for job in snap.jobs:
            current = frozenset(self.store.get_drop_list(job.name))
            wanted = (current | job.drop_list) - snap.keep_set
            if wanted != current:
                if current - wanted:
                    logger.warning("job %s: reinstating protected metrics %s", job.name, sorted(current - wanted))
                self.store.set_drop_list(job.name, wanted, timeout=snap.apply_timeout)

    # ---------------- Passes ----------------

    def run_pass(self) -> PassReport:
        with self._pass_mu:
            snap = self.snapshot
            self._state = LoopState.RUNNING
            try:
                return self._run_pass(snap)
            finally:
                self._state = LoopState.IDLE

    def _run_pass(self, snap: ConfigSnapshot) -> PassReport:
        report = PassReport(started_at=UTCNOW())
        self.instrumentation.pass_started(snap.generation, len(snap.jobs))

        estimator = Estimator(self.backend, sample_size=snap.label_sample_size, timeout=snap.query_timeout)
        evaluator = BudgetEvaluator(snap.budget)
        applier = DropApplier(self.store, self.instrumentation, locks=self.locks, timeout=snap.apply_timeout)

        tasks = {
            job.name: functools.partial(self._process_job, snap, job, estimator, evaluator, applier)
            for job in snap.jobs
        }
        report.outcomes = self._runner.run(
            tasks,
            on_skip=lambda name: JobOutcome(job=name, status=JobStatus.SKIPPED),
            on_error=lambda name, e: JobOutcome(job=name, status=JobStatus.QUERY_FAILED, error=describe(e)),
            sequential=self._config.drop_mode == DropMode.SEQUENTIAL,
        )

        measured = {j: o for j, o in report.outcomes.items() if o.measured}

        # Remote-write, once, over whatever was measured this pass
        if not self._stop.is_set():
            report.remote_write = self._limit_remote_write(snap, report)

        # Global budget: surfaced, not enforced
        totals = {j: o.total_series for j, o in measured.items()}
        report.global_excess = evaluator.global_excess(totals)
        self.instrumentation.global_budget(evaluator.global_total(totals), snap.budget.global_limit)

        report.finished_at = UTCNOW()
        self._last_report = report
        self._last_pass_at = report.finished_at
        self.instrumentation.pass_finished(report, snap.generation)
        return report

    def _process_job(
        self,
        snap: ConfigSnapshot,
        job: ScrapeJob,
        estimator: Estimator,
        evaluator: BudgetEvaluator,
        applier: DropApplier,
    ) -> JobOutcome:
        budget = evaluator.limit_for(job.name)
        out = JobOutcome(job=job.name, status=JobStatus.UNDER_BUDGET, budget=budget)

        try:
            total, candidates = estimator.estimate(job)
        except QueryFailure as e:
            self.instrumentation.condition(e)
            out.status = JobStatus.QUERY_FAILED
            out.error = e.message
            out.drop_list = frozenset(self.store.get_drop_list(job.name))
            return out

        drop_list = frozenset(self.store.get_drop_list(job.name))
        # Series of metrics already on the drop-list disappear once the scraper re-reads it
        pending = sum(c.series_count for c in candidates if c.metric in drop_list)
        surviving = [c for c in candidates if c.metric not in drop_list]
        out.total_series = total - pending
        out.candidates = candidates
        series = {c.metric: c.series_count for c in candidates}

        out.deficit = evaluator.deficit(job.name, out.total_series)
        try:
            if budget is None:
                out.status = JobStatus.EXEMPT
            elif out.deficit > 0:
                plan = plan_drops(
                    job.name, surviving, snap.keep_set, out.deficit,
                    max_label_bytes=snap.max_metric_cost_bytes,
                )
                if not plan.empty:
                    drop_list = applier.apply(job.name, plan.metrics, keep_set=snap.keep_set, series=series)
                    out.dropped.extend(plan.metrics)
                    out.status = JobStatus.DROPPED
                condition = plan.condition()
                if condition is not None:
                    out.status = JobStatus.UNSATISFIABLE
                    out.error = condition.message
                    self._raise_condition(condition)
        except ApplyFailure as e:
            self.instrumentation.condition(e)
            out.status = JobStatus.APPLY_FAILED
            out.error = e.message
            drop_list = frozenset(self.store.get_drop_list(job.name))

        out.drop_list = drop_list
        self.instrumentation.job_measured(job.name, out.total_series, budget=budget, deficit=out.deficit)
        return out

    def _raise_condition(self, condition: BudgetUnsatisfiable) -> None:
        """Standing condition: reported once, then held until the next reload."""
        with self._cond_mu:
            known = condition.job in self._conditions
            self._conditions[condition.job] = condition
        if not known:
            self.instrumentation.condition(condition)

    def _limit_remote_write(self, snap: ConfigSnapshot, report: PassReport) -> Any:
        limiter = RemoteWriteLimiter(self.store, self.instrumentation, locks=self.locks, timeout=snap.apply_timeout)
        surviving = {j: o.surviving() for j, o in report.outcomes.items() if o.measured}
        partial = [j for j, o in report.outcomes.items() if not o.measured]
        decision = limiter.evaluate(
            surviving,
            snap.keep_set,
            budget=snap.budget,
            destination=snap.remote_write_destination,
            partial=partial,
        )
        try:
            limiter.apply(decision)
        except ApplyFailure as e:
            self.instrumentation.condition(e)
        return decision

    # ---------------- Internal loop ----------------

    def _loop(self) -> None:
        while self.ticker.wait(self._stop):
            try:
                self.run_pass()
                self._last_error = None
            except Exception as e:
                self._last_error = describe(e)
                logger.exception("pass failed")
            finally:
                self.ticker.completed()
        logger.info("cardinality daemon stopped")

    # ---------------- Introspection ----------------

    def health(self) -> Dict[str, Any]:
        snap = self.snapshot
        rep = self._last_report
        last: Optional[Dict[str, Any]] = None
        if rep is not None:
            by_status: Dict[str, List[str]] = {}
            for name, o in sorted(rep.outcomes.items()):
                by_status.setdefault(o.status.value, []).append(name)
            last = {
                "started_at": rep.started_at.isoformat(),
                "duration_sec": round(rep.duration_sec, 6),
                "by_status": by_status,
                "failed": [{"job": j, "error": err} for j, err in rep.failed()],
                "global_excess": rep.global_excess,
            }
        return {
            "state": self._state.value,
            "running": self.is_alive(),
            "generation": snap.generation,
            "jobs": snap.job_names,
            "keep_set_size": len(snap.keep_set),
            "conditions": {j: c.to_dict() for j, c in sorted(self.conditions.items())},
            "last_pass_at": self._last_pass_at.isoformat() if self._last_pass_at else None,
            "last_error": self._last_error,
            "last_pass": last,
            "runner": self._runner.health(),
            "locks": self.locks.health(),
        }


__all__ = ["CardinalityDaemon"]

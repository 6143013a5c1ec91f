# cardinality/metrics.py
# Injected instrumentation: Prometheus metrics on a private registry, an event sink callable, and log lines for each signal

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, Iterable, Mapping, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest, start_http_server

from .errors import CardinalityError, ErrorKind, Severity
from .events import (
    BaseEvent,
    EventKind,
    make_condition_event,
    make_drop_event,
    make_global_budget_event,
    make_pass_event,
    make_remote_write_event,
    to_sink_event,
)
from .model import DropRecord, PassReport

logger = logging.getLogger(__name__)

EventSink = Callable[[Dict[str, Any]], None]


class Instrumentation:
    """
    Everything the loop reports goes through one of these. Each daemon gets its
    own instance (and CollectorRegistry), so tests can build as many as they like.

    Emission never raises: a failing sink is logged and ignored.
    """

    def __init__(self, *, registry: Optional[CollectorRegistry] = None, sink: Optional[EventSink] = None) -> None:
        self.registry = registry or CollectorRegistry()
        self.sink = sink
        self._server_guard = threading.Lock()
        self._server_port: Optional[int] = None
        r = self.registry

        # Counters
        self.metrics_dropped_total = Counter(
            "tcm_metrics_dropped_total",
            "Metrics added to a job's drop-list",
            ["job", "metric"],
            registry=r,
        )
        self.job_failures_total = Counter(
            "tcm_job_failures_total",
            "Per-job failures and conditions by kind",
            ["job", "kind"],
            registry=r,
        )
        self.passes_total = Counter(
            "tcm_passes_total",
            "Control-loop passes completed",
            registry=r,
        )

        # Per-job gauges (set each pass)
        self.job_series = Gauge("tcm_job_series", "Active series per scrape job at last measurement", ["job"], registry=r)
        self.job_budget = Gauge("tcm_job_budget_series", "Configured per-job series budget", ["job"], registry=r)
        self.job_deficit = Gauge("tcm_job_deficit_series", "Series above budget at last measurement", ["job"], registry=r)
        self.job_unsatisfiable = Gauge(
            "tcm_job_budget_unsatisfiable",
            "1 while the protected metrics alone exceed the job budget",
            ["job"],
            registry=r,
        )

        # Remote-write / global
        self.remote_write_series = Gauge(
            "tcm_remote_write_series", "Series forwarded to a remote-write destination", ["destination"], registry=r,
        )
        self.remote_write_limit = Gauge(
            "tcm_remote_write_limit_series", "Remote-write series ceiling", ["destination"], registry=r,
        )
        self.global_series = Gauge("tcm_global_series", "Active series across all measured jobs", registry=r)
        self.global_excess = Gauge("tcm_global_excess_series", "Series above the global budget", registry=r)

        # Config
        self.keep_set_size = Gauge("tcm_keep_set_size", "Metric names protected by alerting/recording rules", registry=r)
        self.config_generation = Gauge("tcm_config_generation", "Configuration snapshots loaded", registry=r)

        self.pass_seconds = Histogram(
            "tcm_pass_seconds",
            "Wall time of one control-loop pass",
            buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30, 60, 120, float("inf")),
            registry=r,
        )

    # ---------------- events ----------------

    def emit(self, ev: BaseEvent) -> None:
        if self.sink is None:
            return
        try:
            self.sink(to_sink_event(ev))
        except Exception as e:
            logger.warning("event sink failed for %s: %s", ev.kind, e)

    # ---------------- signals ----------------

    def record_drop(self, rec: DropRecord) -> None:
        self.metrics_dropped_total.labels(job=rec.job, metric=rec.metric).inc()
        logger.info("job %s: dropped %s (%d series, %s)", rec.job, rec.metric, rec.series_removed, rec.reason)
        self.emit(make_drop_event(rec))

    def job_measured(self, job: str, total: int, *, budget: Optional[int], deficit: int) -> None:
        self.job_series.labels(job=job).set(total)
        self.job_deficit.labels(job=job).set(deficit)
        if budget is not None:
            self.job_budget.labels(job=job).set(budget)

    def condition(self, err: CardinalityError, **extra: Any) -> None:
        self.job_failures_total.labels(job=err.job, kind=err.kind.value).inc()
        if err.kind == ErrorKind.BUDGET_UNSATISFIABLE:
            self.job_unsatisfiable.labels(job=err.job).set(1)
        if err.severity == Severity.SEV1:
            logger.error("%s", err)
        else:
            logger.warning("%s", err)
        self.emit(make_condition_event(err, extra=extra or None))

    def clear_conditions(self, jobs: Iterable[str]) -> None:
        for job in jobs:
            self.job_unsatisfiable.labels(job=job).set(0)

    def remote_write(self, destination: str, forwarded: int, limit: int,
                     restricted: Optional[Mapping[str, Iterable[str]]] = None) -> None:
        self.remote_write_series.labels(destination=destination).set(forwarded)
        self.remote_write_limit.labels(destination=destination).set(limit)
        if restricted:
            n = sum(len(list(ms)) for ms in restricted.values())
            logger.warning("remote-write %s: %d series over %d, restricting %d metrics", destination, forwarded, limit, n)
            self.emit(make_remote_write_event(destination, forwarded, limit, restricted))

    def global_budget(self, total: int, limit: Optional[int]) -> None:
        self.global_series.set(total)
        excess = 0 if limit is None else max(0, int(total) - int(limit))
        self.global_excess.set(excess)
        if excess:
            logger.warning("global budget exceeded: %d series, limit %d", total, limit)
            self.emit(make_global_budget_event(total, int(limit)))

    def config_loaded(self, generation: int, keep_set_size: int, jobs: int) -> None:
        self.config_generation.set(generation)
        self.keep_set_size.set(keep_set_size)
        logger.info("config generation %d: %d jobs, %d protected metrics", generation, jobs, keep_set_size)
        self.emit(make_pass_event(EventKind.ConfigReloaded, generation=generation, jobs=jobs))

    def pass_started(self, generation: int, jobs: int) -> None:
        self.emit(make_pass_event(EventKind.PassStarted, generation=generation, jobs=jobs))

    def pass_finished(self, report: PassReport, generation: int) -> None:
        self.passes_total.inc()
        self.pass_seconds.observe(report.duration_sec)
        counts: Dict[str, int] = {}
        for o in report.outcomes.values():
            counts[o.status.value] = counts.get(o.status.value, 0) + 1
        logger.debug("pass done in %.3fs: %s", report.duration_sec, counts)
        self.emit(make_pass_event(
            EventKind.PassFinished,
            generation=generation,
            jobs=len(report.outcomes),
            duration_sec=report.duration_sec,
            by_status=counts,
        ))

    # ---------------- exposition ----------------

    def serve(self, port: int, addr: str = "0.0.0.0") -> bool:
        """Start the exporter on `port` (idempotent). Returns True once serving."""
        with self._server_guard:
            if self._server_port is not None:
                return True
            start_http_server(int(port), addr=addr, registry=self.registry)
            self._server_port = int(port)
            logger.info("metrics exporter listening on %s:%d", addr, port)
            return True

    def exposition(self) -> bytes:
        return generate_latest(self.registry)


__all__ = ["EventSink", "Instrumentation"]

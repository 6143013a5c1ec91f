# cardinality/estimator.py
# Cardinality estimator: per-job active series and per-metric byte cost (series x average sampled label-set size)

from __future__ import annotations

import functools
import logging
from typing import Any, List, Mapping, Optional, Tuple

import numpy as np

from .errors import QueryFailure, describe
from .model import MetricCandidate, ScrapeJob
from .utils import bounded_call

logger = logging.getLogger(__name__)


def label_set_bytes(label_set: Mapping[str, str], metric: Optional[str] = None) -> int:
    """
    Size of one series identity in exposition form, e.g.
    http_requests_total{code="200",method="GET"} -> 44 bytes (UTF-8).
    """
    name = metric if metric is not None else str(label_set.get("__name__", ""))
    pairs = sorted((str(k), str(v)) for k, v in label_set.items() if k != "__name__")
    body = ",".join(f'{k}="{v}"' for k, v in pairs)
    text = f"{name}{{{body}}}" if body else name
    return len(text.encode("utf-8"))


def average_label_bytes(metric: str, samples: List[Mapping[str, str]]) -> float:
    if not samples:
        return float(len(metric.encode("utf-8")))
    sizes = np.fromiter((label_set_bytes(s, metric) for s in samples), dtype=np.int64, count=len(samples))
    return float(sizes.mean())


class Estimator:
    """
    Estimate(job) -> (total_series, [MetricCandidate]) against a duck-typed backend
    exposing current_series(selector, timeout=) and sample_label_sets(metric, selector, n, timeout=).

    Any backend error or timeout becomes QueryFailure for that job only.
    """

    def __init__(self, backend: Any, *, sample_size: int = 20, timeout: Optional[float] = 10.0) -> None:
        self.backend = backend
        self.sample_size = max(1, int(sample_size))
        self.timeout = timeout

    def estimate(
        self,
        job: ScrapeJob,
        *,
        sample_size: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> Tuple[int, List[MetricCandidate]]:
        n = max(1, int(sample_size or self.sample_size))
        tmo = self.timeout if timeout is None else timeout
        selector = job.selector_expr()

        counts = self._query(job, "current_series", self.backend.current_series, selector, timeout=tmo)

        candidates: List[MetricCandidate] = []
        total = 0
        for metric in sorted(counts):
            series = max(0, int(counts[metric]))
            if series == 0:
                continue
            samples = self._query(
                job, f"sample_label_sets({metric})",
                self.backend.sample_label_sets, metric, selector, n, timeout=tmo,
            )
            avg = average_label_bytes(metric, list(samples or [])[:n])
            candidates.append(MetricCandidate(
                job=job.name,
                metric=metric,
                series_count=series,
                bytes_cost=series * avg,
                avg_label_bytes=avg,
            ))
            total += series

        logger.debug("job %s: %d series across %d metrics", job.name, total, len(candidates))
        return total, candidates

    def _query(self, job: ScrapeJob, what: str, fn: Any, *args: Any, timeout: Optional[float]) -> Any:
        try:
            call = functools.partial(fn, *args, timeout=timeout)
            return bounded_call(call, timeout=timeout, name=f"query:{job.name}")
        except TimeoutError as e:
            raise QueryFailure(job.name, f"{what} timed out after {timeout}s", cause=e) from e
        except Exception as e:
            raise QueryFailure(job.name, f"{what} failed: {describe(e)}", cause=e) from e


__all__ = ["label_set_bytes", "average_label_bytes", "Estimator"]

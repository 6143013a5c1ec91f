# cardinality/backend.py
# Metrics-backend clients: Prometheus HTTP API (requests) and a static in-process backend for dry runs and tests

from __future__ import annotations

import logging
import threading
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import urljoin

import requests

logger = logging.getLogger(__name__)

LabelSet = Dict[str, str]


class BackendError(RuntimeError):
    """The backend answered, but not with usable data."""


class PrometheusBackend:
    """
    Minimal Prometheus HTTP API client.

    current_series(selector)            -> {metric_name: active_series}
    sample_label_sets(metric, sel, n)   -> up to n label-sets (including __name__)

    Every call takes an explicit timeout; no call retries within a tick.
    """

    def __init__(self, url: str, *, timeout: float = 10.0, session: Optional[requests.Session] = None) -> None:
        self.url = url.rstrip("/") + "/"
        self.timeout = float(timeout)
        self.session = session or requests.Session()

    def current_series(self, selector: str, *, timeout: Optional[float] = None) -> Dict[str, int]:
        query = f"count by (__name__) ({selector})"
        data = self._get("api/v1/query", {"query": query}, timeout)
        out: Dict[str, int] = {}
        for item in data.get("result") or []:
            name = (item.get("metric") or {}).get("__name__")
            if not name:
                continue
            try:
                out[str(name)] = int(float(item["value"][1]))
            except (KeyError, IndexError, TypeError, ValueError) as e:
                raise BackendError(f"malformed sample for {name}: {item!r}") from e
        return out

    def sample_label_sets(self, metric: str, selector: str, n: int, *, timeout: Optional[float] = None) -> List[LabelSet]:
        n = max(0, int(n))
        if n == 0:
            return []
        match = f"{metric}{selector}"
        data = self._get("api/v1/series", {"match[]": match, "limit": n}, timeout)
        series = data if isinstance(data, list) else []
        return [{str(k): str(v) for k, v in s.items()} for s in series[:n]]

    def healthy(self, *, timeout: Optional[float] = None) -> bool:
        try:
            r = self.session.get(urljoin(self.url, "-/healthy"), timeout=timeout or self.timeout)
            return r.status_code == 200
        except requests.RequestException as e:
            logger.warning("prometheus health check failed: %s", e)
            return False

    def _get(self, path: str, params: Mapping[str, Any], timeout: Optional[float]) -> Any:
        endpoint = urljoin(self.url, path)
        response = self.session.get(endpoint, params=dict(params), timeout=timeout or self.timeout)
        response.raise_for_status()
        body = response.json()
        if body.get("status") != "success":
            raise BackendError(f"query failed: {body.get('errorType', '')} {body.get('error', 'unknown error')}".strip())
        return body.get("data") if "data" in body else {}


class StaticBackend:
    """
    Serves fixed per-job data: {selector: {metric: [label_set, ...]}}.
    Series count for a metric is the number of label-sets listed, unless
    `counts` overrides it. Thread-safe; update() swaps data between passes.
    """

    def __init__(
        self,
        data: Optional[Mapping[str, Mapping[str, List[LabelSet]]]] = None,
        *,
        counts: Optional[Mapping[str, Mapping[str, int]]] = None,
    ) -> None:
        self._mu = threading.Lock()
        self._data: Dict[str, Dict[str, List[LabelSet]]] = {}
        self._counts: Dict[str, Dict[str, int]] = {}
        self.update(data or {}, counts=counts)

    def update(
        self,
        data: Mapping[str, Mapping[str, List[LabelSet]]],
        *,
        counts: Optional[Mapping[str, Mapping[str, int]]] = None,
    ) -> None:
        with self._mu:
            self._data = {sel: {m: [dict(ls) for ls in sets] for m, sets in by_metric.items()} for sel, by_metric in data.items()}
            self._counts = {sel: dict(c) for sel, c in (counts or {}).items()}

    def current_series(self, selector: str, *, timeout: Optional[float] = None) -> Dict[str, int]:
        with self._mu:
            by_metric = self._data.get(selector, {})
            counts = self._counts.get(selector, {})
            out = {m: len(sets) for m, sets in by_metric.items()}
            out.update(counts)
            return out

    def sample_label_sets(self, metric: str, selector: str, n: int, *, timeout: Optional[float] = None) -> List[LabelSet]:
        with self._mu:
            sets = self._data.get(selector, {}).get(metric, [])
            return [dict(ls) for ls in sets[: max(0, int(n))]]


__all__ = ["LabelSet", "BackendError", "PrometheusBackend", "StaticBackend"]

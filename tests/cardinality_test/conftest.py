# tests/cardinality_test/conftest.py
# Shared fixtures: event capture, instrumentation on a private registry, label-set factories

from __future__ import annotations

from typing import Any, Callable, Dict, List

import pytest

from cardinality.metrics import Instrumentation


@pytest.fixture()
def events() -> List[Dict[str, Any]]:
    return []


@pytest.fixture()
def instr(events: List[Dict[str, Any]]) -> Instrumentation:
    return Instrumentation(sink=events.append)


@pytest.fixture()
def make_series() -> Callable[..., List[Dict[str, str]]]:
    """make_series("m", 3, job="api") -> 3 distinct label-sets for metric m."""
    def _make(metric: str, n: int, **labels: str) -> List[Dict[str, str]]:
        out = []
        for i in range(n):
            ls = {"__name__": metric, "instance": f"host-{i:04d}"}
            ls.update(labels)
            out.append(ls)
        return out
    return _make

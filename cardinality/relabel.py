# cardinality/relabel.py
# Render store contents as Prometheus relabel rules: metric_relabel_configs per scrape job, write_relabel_configs per destination

from __future__ import annotations

import re
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Union

from .utils import write_json


def _alternation(names: Iterable[str]) -> str:
    return "|".join(re.escape(n) for n in sorted(set(names)))


def metric_relabel_configs(drop_list: Iterable[str]) -> List[Dict[str, Any]]:
    """
    Scrape-time drop rule for one job:
      - source_labels: [__name__]
        regex: a|b|c
        action: drop
    Empty drop-list -> no rules.
    """
    names = sorted(set(drop_list))
    if not names:
        return []
    return [{"source_labels": ["__name__"], "regex": _alternation(names), "action": "drop"}]


def write_relabel_configs(restriction: Mapping[str, Iterable[str]]) -> List[Dict[str, Any]]:
    """
    Remote-write rules for one destination, one rule per restricted job:
      - source_labels: [job, __name__]
        regex: api;(a|b)
        action: drop
    Series stay in local storage; only forwarding is affected.
    """
    rules: List[Dict[str, Any]] = []
    for job in sorted(restriction):
        names = sorted(set(restriction[job]))
        if not names:
            continue
        rules.append({
            "source_labels": ["job", "__name__"],
            "separator": ";",
            "regex": f"{re.escape(job)};({_alternation(names)})",
            "action": "drop",
        })
    return rules


def render(store: Any, jobs: Iterable[str] = ()) -> Dict[str, Any]:
    """
    Everything the scraper needs from a store, as one JSON-able document:
      {"scrape_configs": {job: [rules]}, "remote_write": {destination: [rules]}}
    `jobs` adds entries (possibly empty) for jobs that have no drop-list yet.
    """
    drop_lists = dict(store.drop_lists())
    for job in jobs:
        drop_lists.setdefault(job, frozenset())
    return {
        "scrape_configs": {job: metric_relabel_configs(names) for job, names in sorted(drop_lists.items())},
        "remote_write": {dest: write_relabel_configs(r) for dest, r in sorted(store.restrictions().items())},
    }


def export(store: Any, path: Union[str, Path], jobs: Iterable[str] = ()) -> Path:
    """Atomically write render(store) to `path`."""
    return write_json(path, render(store, jobs))


__all__ = ["metric_relabel_configs", "write_relabel_configs", "render", "export"]

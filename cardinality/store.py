# cardinality/store.py
# Key-value config store the scraper re-reads: per-job drop-lists and per-destination remote-write restrictions.
# In-memory and file-backed (atomic state.json + wal.log) implementations.

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, FrozenSet, Iterable, Iterator, Mapping, Optional

from . import wal as WAL
from .utils import ensure_dir, read_json, utcnow, iso, write_json

logger = logging.getLogger(__name__)

RestrictionMap = Dict[str, FrozenSet[str]]


class ConfigStore:
    """
    Base class with the read/write surface the applier and limiter use.

    Keys are last-writer-wins. Every write takes a timeout and raises
    TimeoutError if the store cannot accept it in time; a failed write leaves
    the previous value in place.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._drop_lists: Dict[str, FrozenSet[str]] = {}
        self._restrictions: Dict[str, RestrictionMap] = {}

    # ---------------- reads ----------------

    def get_drop_list(self, job: str) -> FrozenSet[str]:
        with self._lock:
            return self._drop_lists.get(job, frozenset())

    def drop_lists(self) -> Dict[str, FrozenSet[str]]:
        with self._lock:
            return dict(self._drop_lists)

    def get_remote_write_restriction(self, destination: str) -> RestrictionMap:
        with self._lock:
            return dict(self._restrictions.get(destination, {}))

    def restrictions(self) -> Dict[str, RestrictionMap]:
        with self._lock:
            return {d: dict(m) for d, m in self._restrictions.items()}

    # ---------------- writes ----------------

    def set_drop_list(self, job: str, names: Iterable[str], *, timeout: Optional[float] = None) -> FrozenSet[str]:
        new = frozenset(names)
        with self._write(timeout, f"drop-list {job}"):
            self._persist(WAL.drop_list_record(job, new))
            self._drop_lists[job] = new
        return new

    def set_remote_write_restriction(
        self,
        destination: str,
        by_job: Mapping[str, Iterable[str]],
        *,
        timeout: Optional[float] = None,
    ) -> RestrictionMap:
        new = {j: frozenset(ms) for j, ms in by_job.items() if ms}
        with self._write(timeout, f"remote-write restriction {destination}"):
            self._persist(WAL.restriction_record(destination, new))
            self._restrictions[destination] = new
        return dict(new)

    def reset(self, drop_lists: Mapping[str, Iterable[str]], *, timeout: Optional[float] = None) -> None:
        """Replace every drop-list with `drop_lists` and clear all remote-write restrictions."""
        fresh = {j: frozenset(ms) for j, ms in drop_lists.items()}
        with self._write(timeout, "reset"):
            self._persist(WAL.reset_record(fresh))
            self._drop_lists = fresh
            self._restrictions = {}

    # ---------------- internals ----------------

    @contextmanager
    def _write(self, timeout: Optional[float], what: str) -> Iterator[None]:
        ok = self._lock.acquire(timeout=-1 if timeout is None else max(0.0, float(timeout)))
        if not ok:
            raise TimeoutError(f"config store busy; {what} not written within {timeout}s")
        try:
            yield
        finally:
            self._lock.release()

    def _persist(self, record: Dict[str, Any]) -> None:
        """Durably record a write before it becomes visible. No-op in memory."""


class InMemoryConfigStore(ConfigStore):
    """Process-local store; used for dry runs and tests."""

    def __init__(self, drop_lists: Optional[Mapping[str, Iterable[str]]] = None) -> None:
        super().__init__()
        for job, names in (drop_lists or {}).items():
            self._drop_lists[job] = frozenset(names)


class FileConfigStore(ConfigStore):
    """
    File-backed store.

    Directory layout:
      data_dir/
        state.json   # full state, rewritten atomically after every write
        wal.log      # append-only log of writes, each with a sequence number
        wal-rotated/ # gzipped WAL segments already covered by state.json

    A write is committed once its WAL record is appended; only then does it
    become visible in memory. state.json is rewritten afterwards, and a failure
    there is logged, not raised: on start the state file is loaded and any WAL
    records newer than its `seq` are replayed, so the write survives either way.

    Once state.json is current and wal.log holds more than `wal_max_lines`
    lines, everything but the last `wal_keep_lines` is gzipped into
    data_dir/wal-rotated/.
    """

    def __init__(self, data_dir: Path | str, *, wal_max_lines: int = 1000, wal_keep_lines: int = 100) -> None:
        super().__init__()
        self._dir = ensure_dir(Path(data_dir))
        self._state = self._dir / "state.json"
        self._wal = self._dir / "wal.log"
        self._rotated = self._dir / "wal-rotated"
        self._wal.touch(exist_ok=True)
        self.wal_max_lines = max(1, int(wal_max_lines))
        self.wal_keep_lines = max(0, min(int(wal_keep_lines), self.wal_max_lines))
        self._seq = 0
        self._wal_lines = 0
        self._load()

    def paths(self) -> Dict[str, str]:
        return {"dir": str(self._dir), "state": str(self._state), "wal": str(self._wal)}

    @property
    def seq(self) -> int:
        with self._lock:
            return self._seq

    # ---------------- loading ----------------

    def _load(self) -> None:
        base = read_json(self._state, default=None)
        if not isinstance(base, dict):
            base = {}
        after = int(base.get("seq") or 0)
        folded = WAL.replay(self._wal, after_seq=after, base=base)
        if folded["counts"]["skipped"]:
            logger.warning("config store %s: skipped %d unreadable WAL records", self._dir, folded["counts"]["skipped"])
        self._drop_lists = {j: frozenset(ms) for j, ms in folded["drop_lists"].items()}
        self._restrictions = {
            d: {j: frozenset(ms) for j, ms in by_job.items()} for d, by_job in folded["restrictions"].items()
        }
        self._seq = int(folded["seq"])
        with self._wal.open("r", encoding="utf-8") as f:
            self._wal_lines = sum(1 for _ in f)

    # ---------------- persistence ----------------

    def _persist(self, record: Dict[str, Any]) -> None:
        seq = self._seq + 1
        WAL.append(self._wal, dict(record, seq=seq))
        self._seq = seq
        self._wal_lines += 1

    def _snapshot(self) -> bool:
        try:
            write_json(self._state, {
                "seq": self._seq,
                "saved_at": iso(utcnow()),
                "drop_lists": {j: sorted(ms) for j, ms in self._drop_lists.items()},
                "restrictions": {d: {j: sorted(ms) for j, ms in m.items()} for d, m in self._restrictions.items()},
            })
        except OSError as e:
            logger.warning("config store %s: state.json not updated (%s); WAL replay covers seq %d", self._dir, e, self._seq)
            return False
        return True

    def _compact(self) -> None:
        if self._wal_lines <= self.wal_max_lines:
            return
        try:
            rotated = WAL.rotate(self._wal, rotated_dir=self._rotated, keep_tail_lines=self.wal_keep_lines)
        except OSError as e:
            logger.warning("config store %s: WAL rotation failed: %s", self._dir, e)
            return
        if rotated is not None:
            logger.info("config store %s: rotated WAL into %s", self._dir, rotated)
        self._wal_lines = min(self._wal_lines, self.wal_keep_lines)

    @contextmanager
    def _write(self, timeout: Optional[float], what: str) -> Iterator[None]:
        with super()._write(timeout, what):
            yield
            if self._snapshot():
                self._compact()


__all__ = ["RestrictionMap", "ConfigStore", "InMemoryConfigStore", "FileConfigStore"]

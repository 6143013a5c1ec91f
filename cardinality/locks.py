# cardinality/locks.py
# Per-job write locks: at most one drop-list writer per job in flight, bounded waits, holder introspection

from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Iterator, Optional


def _now() -> float:
    return time.monotonic()


@dataclass
class _Holder:
    holder: str
    acquired_at: float


class JobLocks:
    """
    Named exclusive locks keyed by job (or any config-store key).

    Writes to one job are serialized; writes to different jobs never contend.
    Every wait is bounded: session() raises TimeoutError instead of blocking forever.
    Locks are never stolen, so a slow writer finishes before the next one starts.
    """

    def __init__(self, *, default_timeout: Optional[float] = 10.0) -> None:
        self.default_timeout = default_timeout
        self._mu = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}
        self._holders: Dict[str, _Holder] = {}
        self._waiting: Dict[str, int] = {}

    # -------- core ops --------

    def acquire(self, name: str, holder_id: str, *, timeout: Optional[float] = None) -> bool:
        lock = self._lock_for(name)
        tmo = self.default_timeout if timeout is None else timeout
        with self._mu:
            self._waiting[name] = self._waiting.get(name, 0) + 1
        try:
            ok = lock.acquire(timeout=-1 if tmo is None else max(0.0, float(tmo)))
        finally:
            with self._mu:
                self._waiting[name] -= 1
                if self._waiting[name] <= 0:
                    self._waiting.pop(name, None)
        if ok:
            with self._mu:
                self._holders[name] = _Holder(holder=holder_id, acquired_at=_now())
        return ok

    def release(self, name: str, holder_id: str) -> None:
        with self._mu:
            st = self._holders.get(name)
            if st is None or st.holder != holder_id:
                return
            self._holders.pop(name, None)
            lock = self._locks[name]
        lock.release()

    # -------- queries --------

    def health(self) -> Dict[str, Any]:
        now = _now()
        with self._mu:
            active = {n: {"holder": st.holder, "age_sec": round(now - st.acquired_at, 3)} for n, st in self._holders.items()}
            waiters = {n: c for n, c in self._waiting.items() if c > 0}
        return {"active": active, "waiters": waiters, "default_timeout": self.default_timeout}

    # -------- context manager --------

    @contextmanager
    def session(self, name: str, holder_id: str, *, timeout: Optional[float] = None) -> Iterator[None]:
        if not self.acquire(name, holder_id, timeout=timeout):
            tmo = self.default_timeout if timeout is None else timeout
            raise TimeoutError(f"timeout acquiring lock '{name}' for holder '{holder_id}' after {tmo}s")
        try:
            yield
        finally:
            self.release(name, holder_id)

    # -------- internals --------

    def _lock_for(self, name: str) -> threading.Lock:
        with self._mu:
            lock = self._locks.get(name)
            if lock is None:
                lock = self._locks[name] = threading.Lock()
            return lock


__all__ = ["JobLocks"]

# cardinality/runner.py
# Bounded worker pool for per-job work within one pass; queued jobs are skipped once stop is requested

from __future__ import annotations

import logging
import queue
import threading
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, TypeVar

logger = logging.getLogger(__name__)

R = TypeVar("R")


class _Batch:
    """Results of one run() call; done is set when every task has reported."""

    def __init__(self, n: int, on_skip: Callable[[str], Any], on_error: Callable[[str, Exception], Any]) -> None:
        self.remaining = n
        self.results: Dict[str, Any] = {}
        self.on_skip = on_skip
        self.on_error = on_error
        self.done = threading.Event()
        self._mu = threading.Lock()
        if n == 0:
            self.done.set()

    def report(self, name: str, result: Any) -> None:
        with self._mu:
            self.results[name] = result
            self.remaining -= 1
            if self.remaining <= 0:
                self.done.set()


_Item = Tuple[_Batch, str, Callable[[], Any]]


class PassRunner:
    """
    Runs named zero-arg tasks on at most `workers` threads and collects results.

    - workers=0 (or run(..., sequential=True)) executes in the caller's thread.
    - Once `stop_event` is set, tasks that have not started get on_skip(name);
      tasks already running are allowed to finish.
    - A task that raises gets on_error(name, exc); nothing escapes into the pool.
    """

    def __init__(self, *, workers: int = 4, stop_event: Optional[threading.Event] = None, name: str = "tcm-job") -> None:
        self.workers = max(0, int(workers))
        self.name = name
        self._stop_evt = stop_event or threading.Event()
        self._q: "queue.Queue[Optional[_Item]]" = queue.Queue()
        self._threads: List[threading.Thread] = []
        self._stopping = False
        self._start_mu = threading.Lock()
        self._active_mu = threading.Lock()
        self._active_count = 0

    # ----- lifecycle -----

    def start(self) -> None:
        with self._start_mu:
            if self._threads or self._stopping:
                return
            for i in range(self.workers):
                t = threading.Thread(target=self._worker, name=f"{self.name}-{i + 1}", daemon=True)
                t.start()
                self._threads.append(t)

    def stop(self) -> None:
        with self._start_mu:
            if self._stopping:
                return
            self._stopping = True
        self._stop_evt.set()
        # One poison pill per worker
        for _ in self._threads:
            self._q.put(None)

    def join(self, timeout: Optional[float] = None) -> None:
        for t in self._threads:
            t.join(timeout=timeout)

    # ----- execution -----

    def run(
        self,
        tasks: Mapping[str, Callable[[], R]],
        *,
        on_skip: Callable[[str], R],
        on_error: Callable[[str, Exception], R],
        sequential: bool = False,
    ) -> Dict[str, R]:
        batch = _Batch(len(tasks), on_skip, on_error)
        if sequential or self.workers <= 0 or self._stopping:
            for name, fn in tasks.items():
                self._execute(batch, name, fn)
            return dict(batch.results)

        if not self._threads:
            self.start()
        for name, fn in tasks.items():
            self._q.put((batch, name, fn))
        while not batch.done.wait(0.1):
            if self._stopping and not any(t.is_alive() for t in self._threads):
                self._drain()
        return dict(batch.results)

    def _worker(self) -> None:
        while True:
            item = self._q.get()
            if item is None:  # poison
                self._q.task_done()
                break
            batch, name, fn = item
            try:
                self._execute(batch, name, fn)
            finally:
                self._q.task_done()

    def _drain(self) -> None:
        """Skip tasks enqueued after the workers exited."""
        while True:
            try:
                item = self._q.get_nowait()
            except queue.Empty:
                return
            if item is not None:
                batch, name, _fn = item
                batch.report(name, batch.on_skip(name))
            self._q.task_done()

    def _execute(self, batch: _Batch, name: str, fn: Callable[[], Any]) -> None:
        if self._stop_evt.is_set():
            batch.report(name, batch.on_skip(name))
            return
        with self._active_mu:
            self._active_count += 1
        try:
            result = fn()
        except Exception as e:
            logger.exception("task %s raised", name)
            result = batch.on_error(name, e)
        finally:
            with self._active_mu:
                self._active_count -= 1
        batch.report(name, result)

    # ----- introspection -----

    @property
    def active_workers(self) -> int:
        with self._active_mu:
            return self._active_count

    def queue_size(self) -> int:
        return self._q.qsize()

    def health(self) -> Dict[str, Any]:
        return {
            "workers": self.workers,
            "workers_active": self.active_workers,
            "queue_size": self.queue_size(),
            "stopping": self._stopping,
        }


__all__ = ["PassRunner"]

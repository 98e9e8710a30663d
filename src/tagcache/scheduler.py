"""Concurrency primitives for the sync engine (standard library).

`WorkerPool` bounds how many extraction jobs are in flight so a refresh over
a very large library does not open thousands of files at once. `Debouncer`
is a single-shot timer that restarts on every trigger.
"""
from __future__ import annotations

import os
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Any, Callable, Dict, Iterable, Iterator, Optional, Set, Tuple

from loguru import logger


def default_workers() -> int:
    return os.cpu_count() or 1


class WorkerPool:
    def __init__(self, max_workers: Optional[int] = None, *, name: str = "tagcache-worker") -> None:
        workers = default_workers() if max_workers is None else max_workers
        if workers < 1:
            raise ValueError("max_workers must be >= 1")
        self._exe = ThreadPoolExecutor(max_workers=workers, thread_name_prefix=name)
        self._max_workers = workers

    @property
    def max_workers(self) -> int:
        return self._max_workers

    def submit(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Future:
        return self._exe.submit(fn, *args, **kwargs)

    def imap_unordered_bounded(
        self,
        fn: Callable[[Any], Any],
        iterable: Iterable[Any],
        max_pending: Optional[int] = None,
    ) -> Iterator[Tuple[Any, Future]]:
        """Yield (item, settled future) in completion order, <= max_pending in flight.

        Futures are handed back settled rather than unwrapped so that one
        failing item does not abort the iteration; callers inspect
        ``fut.exception()`` per item.
        """
        bound = max_pending or self._max_workers * 4
        if bound < 1:
            raise ValueError("max_pending must be >= 1")
        logger.debug(f"bounded window: bound={bound} (workers={self._max_workers})")

        it = iter(iterable)
        pending: Dict[Future, Any] = {}
        active: Set[Future] = set()

        def try_submit() -> bool:
            try:
                item = next(it)
            except StopIteration:
                return False
            fut = self._exe.submit(fn, item)
            pending[fut] = item
            active.add(fut)
            return True

        while len(active) < bound and try_submit():
            pass

        while active:
            done_set, _ = wait(active, return_when=FIRST_COMPLETED)
            for fut in done_set:
                active.remove(fut)
                yield pending.pop(fut), fut
                if len(active) < bound:
                    try_submit()

    def shutdown(self, wait: bool = True) -> None:
        self._exe.shutdown(wait=wait)


class Debouncer:
    """Run `fn` once, `delay` seconds after the most recent `trigger()`.

    Each trigger cancels the pending timer and starts a new one, so a burst of
    triggers yields a single call. A generation counter guards the window
    where a timer has already fired but has not yet taken the lock: a stale
    timer never calls `fn`.
    """

    def __init__(self, delay: float, fn: Callable[[], Any], *, name: str = "debounce") -> None:
        self.delay = delay
        self._fn = fn
        self._name = name
        self._lock = threading.Lock()
        self._timer: Optional[threading.Timer] = None
        self._generation = 0

    @property
    def pending(self) -> bool:
        with self._lock:
            return self._timer is not None

    def trigger(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._generation += 1
            timer = threading.Timer(self.delay, self._fire, args=(self._generation,))
            timer.name = f"{self._name}-timer"
            timer.daemon = True
            self._timer = timer
            timer.start()

    def cancel(self) -> bool:
        """Drop the pending call, if any. Returns whether one was pending."""
        with self._lock:
            was_pending = self._timer is not None
            if self._timer is not None:
                self._timer.cancel()
            self._timer = None
            self._generation += 1
            return was_pending

    def fire_now(self) -> None:
        """Cancel the pending timer and run `fn` synchronously in the caller's thread."""
        self.cancel()
        self._fn()

    def _fire(self, generation: int) -> None:
        with self._lock:
            if generation != self._generation:
                return
            self._timer = None
        self._fn()


__all__ = ["WorkerPool", "Debouncer", "default_workers"]

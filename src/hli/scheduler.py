"""Worker pool for metadata extraction (standard library).

The bounded, unordered iterator keeps only O(workers) tasks in flight so a
library of any size is streamed without materializing every result.
"""
from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, Future, wait, FIRST_COMPLETED
from typing import Callable, Iterable, Optional, Tuple, Any, Dict, Set, Iterator
import os
import threading

from loguru import logger


def default_workers() -> int:
    return max(1, os.cpu_count() or 1)


class WorkerPool:
    def __init__(self, max_workers: Optional[int] = None) -> None:
        self._max_workers = max_workers or default_workers()
        self._exe = ThreadPoolExecutor(max_workers=self._max_workers, thread_name_prefix="hli-extract")

    @property
    def max_workers(self) -> int:
        return self._max_workers

    def submit(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Future:
        return self._exe.submit(fn, *args, **kwargs)

    def imap_unordered_bounded(
        self,
        fn: Callable[[Any], Any],
        iterable: Iterable[Any],
        max_pending: int,
        *,
        stop_event: Optional[threading.Event] = None,
    ) -> Iterator[Tuple[Any, Any, Optional[BaseException]]]:
        """Yield (item, result, error) as tasks complete, with <= max_pending in flight.

        - error is the exception raised by fn(item), or None; a failing item
          never stops the iteration
        - stop_event: once set, no new items are pulled from the iterable;
          tasks already in flight are drained and still yielded
        """
        if max_pending < 1:
            raise ValueError("max_pending must be >= 1")

        logger.debug(f"bounded window: bound={max_pending} (workers={self._max_workers})")

        it = iter(iterable)
        pending: Dict[Future, Any] = {}
        active: Set[Future] = set()

        def try_submit() -> bool:
            if stop_event is not None and stop_event.is_set():
                return False
            try:
                item = next(it)
            except StopIteration:
                return False
            fut = self._exe.submit(fn, item)
            pending[fut] = item
            active.add(fut)
            return True

        while len(active) < max_pending and try_submit():
            pass

        while active:
            done_set, _ = wait(active, return_when=FIRST_COMPLETED)
            for fut in done_set:
                active.remove(fut)
                item = pending.pop(fut)
                exc = fut.exception()
                yield item, (None if exc is not None else fut.result()), exc
                if len(active) < max_pending:
                    try_submit()

    def shutdown(self, wait: bool = True) -> None:
        self._exe.shutdown(wait=wait)

    def __enter__(self) -> "WorkerPool":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.shutdown(wait=True)


__all__ = ["WorkerPool", "default_workers"]

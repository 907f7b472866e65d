"""Scan progress state machine and the channel that carries its snapshots.

``ScanProgressTracker`` owns the scan state (IDLE -> SCANNING -> COMPLETED |
FAILED | CANCELLED) and the running counters. Every update produces an
immutable ``ScanProgress`` snapshot that is handed to subscribed listeners,
usually a ``ProgressStream``.
"""
from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Deque, Iterator, List, Optional

from loguru import logger

from .errors import ScanInProgressError
from .logging import format_bytes


class ScanState(Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (ScanState.COMPLETED, ScanState.FAILED, ScanState.CANCELLED)


@dataclass(frozen=True)
class ScanProgress:
    state: ScanState = ScanState.IDLE
    current_file: Optional[str] = None
    files_scanned: int = 0
    total_files: int = 0
    is_complete: bool = False
    error: Optional[str] = None
    skipped: int = 0

    @property
    def percentage(self) -> float:
        if self.total_files <= 0:
            return 0.0
        return min(100.0, self.files_scanned * 100.0 / self.total_files)


@dataclass(frozen=True)
class ScanStatistics:
    elapsed_seconds: float
    files_per_second: float
    estimated_remaining_seconds: Optional[float]
    hi_res_found: int
    errors: int
    bytes_processed: int
    percentage: float


Listener = Callable[[ScanProgress], None]


class ScanProgressTracker:
    """Thread-safe scan state and counters."""

    def __init__(self, log_interval: float = 5.0) -> None:
        self._lock = threading.Lock()
        self._listeners: List[Listener] = []
        self.log_interval = log_interval
        self._state = ScanState.IDLE
        self._reset_counters()

    def _reset_counters(self) -> None:
        self._current: Optional[str] = None
        self._scanned = 0
        self._total = 0
        self._skipped = 0
        self._error: Optional[str] = None
        self._hi_res = 0
        self._bytes = 0
        self._started_at = 0.0
        self._finished_at: Optional[float] = None
        self._last_log = 0.0

    # -- listeners -----------------------------------------------------

    def subscribe(self, listener: Listener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def unsubscribe(self, listener: Listener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def _emit(self, snap: ScanProgress) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for fn in listeners:
            try:
                fn(snap)
            except Exception as e:
                logger.warning(f"Progress listener failed: {e}")

    # -- state ---------------------------------------------------------

    @property
    def state(self) -> ScanState:
        with self._lock:
            return self._state

    @property
    def is_scanning(self) -> bool:
        return self.state is ScanState.SCANNING

    def snapshot(self) -> ScanProgress:
        with self._lock:
            return self._snapshot_locked()

    def _snapshot_locked(self) -> ScanProgress:
        return ScanProgress(
            state=self._state,
            current_file=self._current,
            files_scanned=self._scanned,
            total_files=self._total,
            is_complete=self._state.is_terminal,
            error=self._error,
            skipped=self._skipped,
        )

    def _require_scanning(self, op: str) -> None:
        if self._state is not ScanState.SCANNING:
            raise RuntimeError(f"cannot {op} in state {self._state.value}")

    def start(self, total_files: int = 0) -> ScanProgress:
        with self._lock:
            if self._state is ScanState.SCANNING:
                raise ScanInProgressError("a scan is already in progress")
            self._reset_counters()
            self._state = ScanState.SCANNING
            self._total = max(0, total_files)
            self._started_at = time.monotonic()
            self._last_log = self._started_at
            snap = self._snapshot_locked()
        logger.info(f"Scan started ({total_files} files expected)" if total_files else "Scan started")
        self._emit(snap)
        return snap

    def advance(
        self,
        current_file: Optional[str],
        files_scanned: Optional[int] = None,
        *,
        is_hi_res: bool = False,
        file_size: int = 0,
    ) -> ScanProgress:
        """Record one processed file.

        ``files_scanned`` defaults to the current count plus one. A value lower
        than the current count is ignored so the counter never goes backwards.
        """
        with self._lock:
            self._require_scanning("advance")
            target = self._scanned + 1 if files_scanned is None else files_scanned
            if target > self._scanned:
                self._scanned = target
            if self._total and self._scanned > self._total:
                self._total = self._scanned
            self._current = current_file
            # A skip error only describes the file it was reported for
            self._error = None
            if is_hi_res:
                self._hi_res += 1
            self._bytes += max(0, file_size)
            snap = self._snapshot_locked()
            now = time.monotonic()
            due = self.log_interval > 0 and now - self._last_log >= self.log_interval
            if due:
                self._last_log = now
        if due:
            self._log_progress()
        self._emit(snap)
        return snap

    def report_error(self, current_file: Optional[str], message: str) -> ScanProgress:
        """Count a skipped file and expose its error on the next snapshot."""
        with self._lock:
            self._require_scanning("report error")
            self._skipped += 1
            self._scanned += 1
            if self._total and self._scanned > self._total:
                self._total = self._scanned
            self._current = current_file
            self._error = message
            snap = self._snapshot_locked()
        self._emit(snap)
        return snap

    def _finish(self, state: ScanState, error: Optional[str] = None) -> ScanProgress:
        with self._lock:
            self._require_scanning(state.value)
            self._state = state
            self._finished_at = time.monotonic()
            self._error = error if state is ScanState.FAILED else None
            if state is ScanState.COMPLETED:
                self._current = None
            snap = self._snapshot_locked()
        self._log_final()
        self._emit(snap)
        return snap

    def complete(self) -> ScanProgress:
        return self._finish(ScanState.COMPLETED)

    def fail(self, error: str) -> ScanProgress:
        return self._finish(ScanState.FAILED, error)

    def cancel(self) -> ScanProgress:
        return self._finish(ScanState.CANCELLED)

    def reset(self) -> ScanProgress:
        with self._lock:
            if self._state is ScanState.SCANNING:
                raise ScanInProgressError("cannot reset while scanning")
            self._state = ScanState.IDLE
            self._reset_counters()
            snap = self._snapshot_locked()
        self._emit(snap)
        return snap

    # -- statistics ----------------------------------------------------

    def statistics(self) -> ScanStatistics:
        with self._lock:
            if self._started_at == 0.0:
                elapsed = 0.0
            else:
                end = self._finished_at if self._finished_at is not None else time.monotonic()
                elapsed = max(0.0, end - self._started_at)
            rate = self._scanned / elapsed if elapsed > 0 else 0.0
            remaining: Optional[float] = None
            if rate > 0 and self._total > self._scanned and not self._state.is_terminal:
                remaining = (self._total - self._scanned) / rate
            pct = min(100.0, self._scanned * 100.0 / self._total) if self._total > 0 else 0.0
            return ScanStatistics(
                elapsed_seconds=elapsed,
                files_per_second=rate,
                estimated_remaining_seconds=remaining,
                hi_res_found=self._hi_res,
                errors=self._skipped,
                bytes_processed=self._bytes,
                percentage=pct,
            )

    def _log_progress(self) -> None:
        snap = self.snapshot()
        st = self.statistics()
        eta = f", ~{st.estimated_remaining_seconds:.0f}s left" if st.estimated_remaining_seconds else ""
        total = snap.total_files or "?"
        logger.info(
            f"Scan progress: {snap.files_scanned}/{total} files ({st.files_per_second:.1f}/s{eta}), "
            f"{st.hi_res_found} hi-res, {st.errors} errors"
        )

    def _log_final(self) -> None:
        snap = self.snapshot()
        st = self.statistics()
        msg = (
            f"Scan {snap.state.value}: {snap.files_scanned} files in {st.elapsed_seconds:.1f}s "
            f"({st.files_per_second:.1f}/s), {st.hi_res_found} hi-res, {st.errors} errors, "
            f"{format_bytes(st.bytes_processed)} processed"
        )
        if snap.state is ScanState.FAILED:
            logger.error(f"{msg}: {snap.error}")
        else:
            logger.info(msg)


class ProgressStream:
    """Bounded progress channel for one consumer.

    When the buffer is full the oldest non-terminal snapshot is dropped.
    Terminal snapshots are always kept, and iteration ends after one.
    """

    def __init__(self, maxlen: int = 64) -> None:
        if maxlen < 1:
            raise ValueError("maxlen must be >= 1")
        self.maxlen = maxlen
        self._buf: Deque[ScanProgress] = deque()
        self._cond = threading.Condition()
        self._closed = False
        self.dropped = 0

    def __call__(self, snap: ScanProgress) -> None:
        self.put(snap)

    def put(self, snap: ScanProgress) -> None:
        with self._cond:
            if self._closed:
                return
            while len(self._buf) >= self.maxlen:
                victim = next((s for s in self._buf if not s.is_complete), None)
                if victim is None:
                    break
                self._buf.remove(victim)
                self.dropped += 1
            self._buf.append(snap)
            self._cond.notify_all()

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    @property
    def closed(self) -> bool:
        return self._closed

    def get(self, timeout: Optional[float] = None) -> Optional[ScanProgress]:
        """Next snapshot, or None on timeout or when closed and drained."""
        with self._cond:
            if not self._cond.wait_for(lambda: self._buf or self._closed, timeout=timeout):
                return None
            if self._buf:
                return self._buf.popleft()
            return None

    def drain(self) -> List[ScanProgress]:
        with self._cond:
            items = list(self._buf)
            self._buf.clear()
            return items

    def __iter__(self) -> Iterator[ScanProgress]:
        while True:
            snap = self.get()
            if snap is None:
                return
            yield snap
            if snap.is_complete:
                return


__all__ = [
    "ScanState",
    "ScanProgress",
    "ScanStatistics",
    "ScanProgressTracker",
    "ProgressStream",
]

"""Heartbeat pipeline: per-name emitters, the batching coalescer and the expiry sweep."""

import logging
import queue
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

from .config import check_batching
from .registry import SQLStore

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

# Queue marker telling the coalescer to flush and exit.
_STOP = object()


def utcnow() -> datetime:
    """Naive UTC now, matching what the store keeps in last_alive."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def liveness_cutoff(now: datetime, threshold: float) -> datetime:
    """Entries last seen after this instant are alive; at or before it they are stale."""
    return now - timedelta(seconds=threshold)


@dataclass
class CoalescerStats:
    signals_received: int = 0
    signals_applied: int = 0
    signals_dropped: int = 0
    rows_updated: int = 0
    batches_applied: int = 0
    failed_batches: int = 0


class HeartbeatCoalescer:
    """Single consumer that turns queued touch signals into grouped updates.

    A batch is flushed when it holds *max_batch_size* signals or when
    *flush_interval* seconds have passed since its first signal, whichever
    comes first. The queue holds at most *max_batch_size* signals, so
    producers block (rather than drop) when the consumer falls behind.
    """

    def __init__(
        self,
        store: SQLStore,
        max_batch_size: int = 100,
        flush_interval: float = 5.0,
        clock: Clock = utcnow,
    ):
        check_batching(max_batch_size, flush_interval)
        self.store = store
        self.max_batch_size = max_batch_size
        self.flush_interval = flush_interval
        self.clock = clock
        self.stats = CoalescerStats()
        self._queue: "queue.Queue[object]" = queue.Queue(maxsize=max_batch_size)
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._thread = threading.Thread(
            target=self._run, name="rollcall-coalescer", daemon=True,
        )
        self._thread.start()
        logger.info(
            "heartbeat coalescer started (batch=%d, flush=%.1fs)",
            self.max_batch_size, self.flush_interval,
        )

    def stop(self, timeout: float | None = None) -> None:
        """Flush whatever is pending and stop the consumer thread."""
        if not self.running:
            self._thread = None
            return
        self._queue.put(_STOP)
        self._thread.join(timeout)
        self._thread = None
        logger.info("heartbeat coalescer stopped")

    def touch(self, name: str, cancel: threading.Event | None = None,
              poll: float = 0.5) -> bool:
        """Queue one heartbeat for *name*, blocking while the queue is full.

        Returns False without queueing if *cancel* is set before space frees up.
        """
        while cancel is None or not cancel.is_set():
            try:
                self._queue.put(name, timeout=poll)
                return True
            except queue.Full:
                continue
        return False

    def _run(self) -> None:
        pending: dict[str, None] = {}
        signals = 0
        deadline: float | None = None

        while True:
            timeout = None if deadline is None else max(0.0, deadline - time.monotonic())
            try:
                item = self._queue.get(timeout=timeout)
            except queue.Empty:
                item = None

            if item is _STOP:
                if pending:
                    self._flush(pending, signals)
                return

            if item is not None:
                if not pending:
                    deadline = time.monotonic() + self.flush_interval
                pending[item] = None
                signals += 1
                self.stats.signals_received += 1

            full = signals >= self.max_batch_size
            expired = deadline is not None and time.monotonic() >= deadline
            if pending and (full or expired):
                self._flush(pending, signals)
                pending = {}
                signals = 0
                deadline = None

    def _flush(self, pending: dict[str, None], signals: int) -> None:
        names = list(pending)
        try:
            rows = self.store.update_timestamps(names, self.clock())
        except Exception:
            # The batch is lost; the next heartbeat from each emitter retries.
            self.stats.failed_batches += 1
            self.stats.signals_dropped += signals
            logger.exception("heartbeat batch of %d name(s) failed", len(names))
            return

        self.stats.batches_applied += 1
        self.stats.signals_applied += signals
        self.stats.rows_updated += rows
        logger.debug(
            "applied heartbeat batch: %d signal(s), %d name(s), %d row(s)",
            signals, len(names), rows,
        )


class HeartbeatEmitter:
    """Posts a touch for one name every *interval* seconds until cancelled."""

    def __init__(self, name: str, coalescer: HeartbeatCoalescer, interval: float):
        self.name = name
        self.coalescer = coalescer
        self.interval = interval
        self.ticks = 0
        self._cancel = threading.Event()
        self._thread = threading.Thread(
            target=self._run, name=f"rollcall-heartbeat-{name}", daemon=True,
        )

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def is_alive(self) -> bool:
        return self._thread.is_alive()

    def start(self) -> None:
        self._thread.start()

    def cancel(self) -> None:
        self._cancel.set()

    def join(self, timeout: float | None = None) -> None:
        if self._thread.is_alive():
            self._thread.join(timeout)

    def _run(self) -> None:
        while not self._cancel.is_set():
            if not self.coalescer.touch(self.name, cancel=self._cancel):
                break
            self.ticks += 1
            if self._cancel.wait(self.interval):
                break
        logger.debug("heartbeat emitter for %s stopped after %d tick(s)", self.name, self.ticks)


class GarbageCollector:
    """Deletes every entry older than *threshold* seconds, once per *interval*."""

    def __init__(self, store: SQLStore, interval: float, threshold: float,
                 clock: Clock = utcnow):
        self.store = store
        self.interval = interval
        self.threshold = threshold
        self.clock = clock
        self.sweeps = 0
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def sweep(self) -> int:
        """Run one expiry pass. Returns the number of deleted rows."""
        deleted = self.store.delete_where(liveness_cutoff(self.clock(), self.threshold))
        self.sweeps += 1
        if deleted:
            logger.info("gc expired %d stale entr%s", deleted, "y" if deleted == 1 else "ies")
        return deleted

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="rollcall-gc", daemon=True)
        self._thread.start()
        logger.info("gc started (every %.1fs, threshold %.1fs)", self.interval, self.threshold)

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def run_forever(self) -> None:
        """Run the sweep loop in the calling thread until stop() is called."""
        self._run()

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self.sweep()
            except Exception:
                logger.exception("gc sweep failed")

"""Presence registry: registration, liveness queries and the background workers."""

import logging
import threading

from sqlalchemy.engine import Engine

from .config import (
    RollcallConfig,
    check_timing,
    inactive_threshold,
    resolve_dsn,
    validate_config,
)
from .heartbeat import (
    Clock,
    GarbageCollector,
    HeartbeatCoalescer,
    HeartbeatEmitter,
    liveness_cutoff,
    utcnow,
)
from .registry import DuplicateKey, Entry, NameExists, SQLStore, StoreError

logger = logging.getLogger(__name__)


class PresenceRegistry:
    """Owns the store, the heartbeat pipeline and the gc for one registry table.

    Call init() before registering names; it creates the table and starts
    the coalescer and gc threads. Use close() (or a with block) to stop them.
    """

    def __init__(
        self,
        store: SQLStore,
        heartbeat_interval: float = 5.0,
        max_batch_size: int = 100,
        flush_interval: float | None = None,
        gc_interval: float | None = None,
        clock: Clock = utcnow,
    ):
        check_timing(heartbeat_interval, max_batch_size, flush_interval, gc_interval)
        self.store = store
        self.heartbeat_interval = heartbeat_interval
        self.clock = clock
        self.coalescer = HeartbeatCoalescer(
            store,
            max_batch_size=max_batch_size,
            flush_interval=heartbeat_interval if flush_interval is None else flush_interval,
            clock=clock,
        )
        self.gc_worker = GarbageCollector(
            store,
            heartbeat_interval if gc_interval is None else gc_interval,
            self.inactive_threshold,
            clock=clock,
        )
        self._lock = threading.Lock()
        self._emitters: dict[str, HeartbeatEmitter] = {}
        self._initialized = False
        self._closed = False

    @classmethod
    def from_config(cls, config: RollcallConfig, clock: Clock = utcnow,
                    engine: Engine | None = None) -> 'PresenceRegistry':
        validate_config(config)
        store = SQLStore(resolve_dsn(config), config.registry_name, engine=engine)
        return cls(
            store,
            heartbeat_interval=config.heartbeat_interval,
            max_batch_size=config.max_batch_size,
            flush_interval=config.flush_interval,
            clock=clock,
        )

    @property
    def inactive_threshold(self) -> float:
        return inactive_threshold(self.heartbeat_interval)

    @property
    def local_names(self) -> list[str]:
        """Names this registry is currently heartbeating for."""
        with self._lock:
            return sorted(self._emitters)

    def _cutoff(self):
        return liveness_cutoff(self.clock(), self.inactive_threshold)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def init(self, background: bool = True) -> None:
        """Create the table and start the coalescer and gc. Repeat calls are no-ops.

        With background=False only the table is created, which is all that
        read-only callers and one-shot gc runs need.
        """
        with self._lock:
            if self._closed:
                raise RuntimeError("registry is closed")
            if self._initialized:
                return
            self.store.create_table_if_absent()
            if background:
                self.coalescer.start()
                self.gc_worker.start()
            self._initialized = True
        logger.info("registry %s ready", self.store.table.name)

    def close(self, timeout: float | None = 5.0) -> None:
        """Cancel all emitters, stop the gc, flush the coalescer and release the store."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            emitters = list(self._emitters.values())
            self._emitters.clear()

        for emitter in emitters:
            emitter.cancel()
        for emitter in emitters:
            emitter.join(timeout)
        self.gc_worker.stop(timeout)
        self.coalescer.stop(timeout)
        self.store.close()

    def __enter__(self) -> 'PresenceRegistry':
        self.init()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, name: str, content: str = "") -> None:
        """Insert *name* and start heartbeating for it.

        Raises NameExists if *name* is alive (or wins the insert race), and
        StoreError for any other store failure. No heartbeat is started
        unless the insert succeeded.
        """
        if not self.coalescer.running:
            raise RuntimeError("registry not initialised; call init() first")

        now = self.clock()
        cutoff = liveness_cutoff(now, self.inactive_threshold)
        if self.store.select_one_if(name, cutoff) is not None:
            raise NameExists(f"{name!r} is already registered and alive")

        try:
            self.store.insert(name, content, now, stale_before=cutoff)
        except DuplicateKey as exc:
            raise NameExists(f"{name!r} is already registered and alive") from exc

        emitter = HeartbeatEmitter(name, self.coalescer, self.heartbeat_interval)
        with self._lock:
            closed = self._closed
            if not closed:
                previous = self._emitters.get(name)
                self._emitters[name] = emitter
                # Started under the lock so close() always sees and cancels it.
                emitter.start()
        if closed:
            self.store.delete(name)
            raise RuntimeError(f"registry closed while registering {name!r}")
        if previous is not None:
            previous.cancel()
        logger.info("registered %s", name)

    def unregister(self, name: str) -> None:
        """Stop heartbeating for *name* and delete it if alive. Unknown names are a no-op."""
        with self._lock:
            emitter = self._emitters.pop(name, None)
        if emitter is not None:
            emitter.cancel()

        if self.store.select_one_if(name, self._cutoff()) is None:
            return
        self.store.delete(name)
        logger.info("unregistered %s", name)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def is_alive(self, name: str) -> bool:
        """True iff *name* has a row seen within the inactive threshold. Fails closed."""
        try:
            return self.store.select_one_if(name, self._cutoff()) is not None
        except StoreError as exc:
            logger.debug("liveness check for %s failed: %s", name, exc)
            return False

    def get(self, name: str) -> Entry | None:
        """Return the alive entry for *name*, or None."""
        return self.store.select_one_if(name, self._cutoff())

    def list_all(self) -> list[str]:
        """Every stored name, including stale ones the gc has not removed yet."""
        return self.store.select_names()

    def list_alive(self) -> list[str]:
        """Only names seen within the inactive threshold."""
        return self.store.select_names_alive(self._cutoff())

    def gc(self) -> int:
        """Run one expiry sweep now. Returns the number of deleted entries."""
        return self.gc_worker.sweep()


def open_registry(dsn: str, registry_name: str, **options) -> PresenceRegistry:
    """Connect to *dsn*, create the registry table if needed and start the workers."""
    registry = PresenceRegistry(SQLStore(dsn, registry_name), **options)
    registry.init()
    return registry

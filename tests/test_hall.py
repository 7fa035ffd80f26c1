"""Tests for PresenceRegistry: registration, liveness and expiry."""

import threading
from datetime import timedelta

import pytest

from rollcall import open_registry
from rollcall.config import RollcallConfig
from rollcall.hall import PresenceRegistry
from rollcall.registry import NameExists, SQLStore, StoreError


def _heartbeat_threads(name):
    return [t for t in threading.enumerate()
            if t.name == f"rollcall-heartbeat-{name}" and t.is_alive()]


class TestRegistration:

    def test_register_then_alive(self, registry):
        registry.register("svc-a", "10.0.0.1:8000")
        assert registry.is_alive("svc-a")
        assert registry.list_all() == ["svc-a"]
        assert registry.local_names == ["svc-a"]

    def test_register_twice_raises_and_keeps_content(self, registry):
        registry.register("svc-a", "first")
        with pytest.raises(NameExists):
            registry.register("svc-a", "second")
        assert registry.get("svc-a").content == "first"

    def test_expired_name_can_be_taken_over_before_gc(self, registry, clock):
        registry.store.insert("svc-a", "old", clock() - timedelta(seconds=5))
        assert not registry.is_alive("svc-a")

        registry.register("svc-a", "new")
        assert registry.get("svc-a").content == "new"

    def test_failed_insert_starts_no_heartbeat(self, registry, monkeypatch):
        def broken_insert(*args, **kwargs):
            raise StoreError("injected insert failure")

        monkeypatch.setattr(registry.store, "insert", broken_insert)
        with pytest.raises(StoreError):
            registry.register("svc-a", "x")
        assert registry.local_names == []
        assert _heartbeat_threads("svc-a") == []

    def test_register_requires_init(self, dsn, clock):
        reg = PresenceRegistry(SQLStore(dsn, "test"), clock=clock)
        try:
            with pytest.raises(RuntimeError):
                reg.register("svc-a", "x")
        finally:
            reg.close()

    def test_init_is_idempotent(self, registry):
        thread = registry.coalescer._thread
        registry.init()
        assert registry.coalescer._thread is thread
        assert registry.gc_worker.running

    def test_close_during_register_leaves_nothing_behind(self, registry, dsn, monkeypatch):
        real_insert = registry.store.insert

        def insert_then_close(*args, **kwargs):
            real_insert(*args, **kwargs)
            registry.close()

        monkeypatch.setattr(registry.store, "insert", insert_then_close)
        with pytest.raises(RuntimeError):
            registry.register("svc-a", "x")

        assert registry.local_names == []
        assert _heartbeat_threads("svc-a") == []
        other = SQLStore(dsn, "test")
        try:
            assert other.select_names() == []
        finally:
            other.close()


class TestUnregister:

    def test_unregister_alive_name(self, registry, wait_until):
        registry.register("svc-a", "x")
        registry.unregister("svc-a")

        assert not registry.is_alive("svc-a")
        assert registry.list_all() == []
        assert registry.local_names == []
        assert wait_until(lambda: _heartbeat_threads("svc-a") == [])

    def test_unregister_unknown_name_is_noop(self, registry):
        registry.unregister("never-registered")

    def test_unregister_expired_name_is_noop(self, registry, clock):
        registry.store.insert("svc-a", "x", clock() - timedelta(seconds=30))
        registry.unregister("svc-a")
        # Left for the gc to collect.
        assert registry.list_all() == ["svc-a"]

    def test_late_heartbeat_does_not_resurrect(self, registry):
        registry.register("svc-a", "x")
        registry.unregister("svc-a")
        assert registry.store.update_timestamps(["svc-a"], registry.clock()) == 0
        assert registry.list_all() == []


class TestLiveness:

    def test_expiry_is_derived_without_gc(self, registry, clock):
        registry.register("svc-a", "x")
        registry.coalescer.stop(timeout=2)

        clock.advance(2.5)
        assert not registry.is_alive("svc-a")
        assert registry.get("svc-a") is None
        assert registry.list_all() == ["svc-a"]
        assert registry.list_alive() == []

    def test_one_second_interval_scenario(self, registry, clock):
        assert registry.inactive_threshold == 2.0
        registry.register("A", "x")
        # No further heartbeats reach the store.
        registry.coalescer.stop(timeout=2)

        clock.advance(1.9)
        assert registry.is_alive("A")
        clock.advance(0.2)
        assert not registry.is_alive("A")

        assert registry.gc() == 1
        assert "A" not in registry.list_all()

    def test_background_gc_removes_expired(self, dsn, clock, wait_until):
        reg = PresenceRegistry(
            SQLStore(dsn, "test"), heartbeat_interval=1.0,
            flush_interval=0.05, gc_interval=0.02, clock=clock,
        )
        reg.init()
        try:
            reg.register("A", "x")
            reg.coalescer.stop(timeout=2)
            assert reg.list_all() == ["A"]

            clock.advance(2.1)
            assert wait_until(lambda: reg.list_all() == [])
        finally:
            reg.close()

    def test_heartbeats_keep_entry_alive(self, dsn, clock, wait_until):
        reg = PresenceRegistry(
            SQLStore(dsn, "test"), heartbeat_interval=0.05,
            flush_interval=0.01, gc_interval=3600, clock=clock,
        )
        reg.init()
        try:
            reg.register("svc-a", "x")
            registered_at = reg.get("svc-a").last_alive

            clock.advance(5)
            assert wait_until(lambda: reg.is_alive("svc-a"))
            assert reg.get("svc-a").last_alive > registered_at
        finally:
            reg.close()

    def test_is_alive_fails_closed(self, dsn, clock):
        reg = PresenceRegistry(SQLStore(dsn, "missing_table"), clock=clock)
        try:
            assert reg.is_alive("svc-a") is False
            with pytest.raises(StoreError):
                reg.list_all()
        finally:
            reg.close()


class TestBatching:

    def test_many_registrations_all_apply(self, dsn, clock, wait_until):
        reg = PresenceRegistry(
            SQLStore(dsn, "test"), heartbeat_interval=60, max_batch_size=100,
            flush_interval=0.2, gc_interval=3600, clock=clock,
        )
        reg.init()
        try:
            names = [f"svc-{i:03d}" for i in range(150)]
            for name in names:
                reg.register(name, "x")

            stats = reg.coalescer.stats
            assert wait_until(lambda: stats.signals_applied >= 150, timeout=10)
            assert stats.signals_applied == 150
            assert stats.signals_dropped == 0
            assert stats.failed_batches == 0
            assert stats.batches_applied >= 2
            assert stats.rows_updated == 150
            assert reg.list_alive() == names
        finally:
            reg.close()


class TestLifecycle:

    def test_close_stops_all_threads(self, dsn, clock, wait_until):
        reg = PresenceRegistry(SQLStore(dsn, "test"), heartbeat_interval=1.0, clock=clock)
        reg.init()
        reg.register("svc-a", "x")
        reg.register("svc-b", "x")
        reg.close()

        assert not reg.coalescer.running
        assert not reg.gc_worker.running
        assert wait_until(lambda: not _heartbeat_threads("svc-a") and not _heartbeat_threads("svc-b"))
        reg.close()

    def test_context_manager(self, dsn, clock):
        with PresenceRegistry(SQLStore(dsn, "test"), clock=clock) as reg:
            reg.register("svc-a", "x")
            assert reg.is_alive("svc-a")
        assert not reg.coalescer.running
        with pytest.raises(RuntimeError):
            reg.init()

    def test_from_config(self, dsn, clock):
        config = RollcallConfig(dsn=dsn, registry_name="cfg", heartbeat_interval=2.0,
                                max_batch_size=7)
        reg = PresenceRegistry.from_config(config, clock=clock)
        try:
            assert reg.store.table.name == "rollcall_cfg"
            assert reg.inactive_threshold == 4.0
            assert reg.coalescer.max_batch_size == 7
            assert reg.coalescer.flush_interval == 2.0
        finally:
            reg.close()

    def test_from_config_rejects_bad_registry_name(self, dsn):
        with pytest.raises(ValueError):
            PresenceRegistry.from_config(RollcallConfig(dsn=dsn, registry_name="no-dashes"))

    def test_open_registry(self, dsn):
        reg = open_registry(dsn, "opened", heartbeat_interval=1.0)
        try:
            reg.register("svc-a", "x")
            assert reg.is_alive("svc-a")
        finally:
            reg.close()

    @pytest.mark.parametrize("options", [
        {"max_batch_size": 0},
        {"max_batch_size": -5},
        {"heartbeat_interval": 0},
        {"flush_interval": 0},
        {"gc_interval": -1.0},
    ])
    def test_constructor_rejects_bad_timing(self, dsn, options):
        store = SQLStore(dsn, "test")
        try:
            with pytest.raises(ValueError):
                PresenceRegistry(store, **options)
        finally:
            store.close()

    def test_open_registry_rejects_unbounded_batch(self, dsn):
        with pytest.raises(ValueError):
            open_registry(dsn, "opened", max_batch_size=-1)

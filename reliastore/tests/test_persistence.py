"""
Integration Tests: Persistence Engine

Exercises load and save pipelines through ``ReliableStore`` against a
shared in-memory backend, with several stores standing in for several
server processes.

Tests:
    - Fresh load, delta saves, idempotent reload
    - Lease rejection and stale-lease takeover
    - Version conflicts between processes
    - Backend faults on fetch and save
    - Migrations, schema, compression and backups on the load/save path
"""

import asyncio
import logging

import pytest

from reliastore.core.errors import (
    ConflictError,
    ErrorCode,
    LeaseError,
    ReliabilityError,
    SessionError,
)
from reliastore.engine.events import EventKind
from reliastore.engine.persistence import REJECT_REASON, SaveOutcome, apply_deltas
from reliastore.session.state_machine import SessionState
from reliastore.storage.backends import InMemoryBackend
from reliastore.storage.codec import Lz4Compressor, is_wrapped
from reliastore.tests.conftest import EventRecorder


async def stored(backend, key="u:players:1"):
    return (await backend.get(key)).unwrap()


class TestApplyDeltas:
    """Tests for apply_deltas()."""

    def test_only_dirty_paths_change(self):
        stored_record = {"Coins": 1, "Gems": 9, "Inventory": {"Slots": 10, "Bow": 1}}
        snapshot = {"Coins": 100, "Gems": 0, "Inventory": {"Slots": 10, "Sword": 1}}
        written = apply_deltas(stored_record, snapshot, {"Coins", "Inventory.Sword"})
        assert written == {"Coins": 100, "Gems": 9, "Inventory": {"Slots": 10, "Bow": 1, "Sword": 1}}
        assert stored_record["Coins"] == 1

    def test_root_replaces(self):
        written = apply_deltas({"Old": 1}, {"New": 2}, {"__root__", "Coins"})
        assert written == {"New": 2}

    def test_ancestor_replaced_by_scalar(self):
        written = apply_deltas(
            {"Inventory": {"Slots": 10}},
            {"Inventory": 5},
            {"Inventory.Bow", "Inventory"},
        )
        assert written == {"Inventory": 5}

    def test_ancestor_replaced_by_mapping(self):
        written = apply_deltas(
            {"Inventory": {"Slots": 10, "Shield": 1}},
            {"Inventory": {"Slots": 3}},
            {"Inventory.Bow", "Inventory"},
        )
        assert written == {"Inventory": {"Slots": 3}}

    def test_sibling_prefix_is_not_an_ancestor(self):
        written = apply_deltas(
            {},
            {"Inv": 1, "Inventory": {"Bow": 2}},
            {"Inv", "Inventory.Bow"},
        )
        assert written == {"Inv": 1, "Inventory": {"Bow": 2}}


class TestLoad:
    """Tests for the load pipeline."""

    @pytest.mark.asyncio
    async def test_fresh_record(self, store, recorder):
        result = await store.load(1)
        record = result.unwrap()
        assert record["Coins"] == 0
        assert record["Inventory"] == {"Slots": 10}
        assert record["version"] == 1
        assert store.is_loaded(1)
        assert store.engine.sessions.lookup(1).state is SessionState.ACTIVE
        assert recorder[EventKind.LOADED][0].record == record

    @pytest.mark.asyncio
    async def test_existing_record_bumps_version_and_merges(self, store, backend):
        await backend.put("u:players:1", {"Coins": 40, "version": 3, "Extra": True})
        record = (await store.load(1)).unwrap()
        assert record["version"] == 4
        assert record["Coins"] == 40
        assert record["Extra"] is True
        assert record["Inventory"] == {"Slots": 10}

    @pytest.mark.asyncio
    async def test_already_loaded(self, store):
        await store.load(1)
        result = await store.load(1)
        assert isinstance(result.error, SessionError)

    @pytest.mark.asyncio
    async def test_rejected_while_leased(self, make_store):
        kicked = []
        a = make_store("proc-a")
        b = make_store("proc-b", kick=lambda identity, reason: kicked.append((identity, reason)))
        rejected = EventRecorder(b)

        await a.load(1)
        result = await b.load(1)

        assert isinstance(result.error, LeaseError)
        assert result.error.code is ErrorCode.LEASE_HELD_BY_OTHER
        assert not b.is_loaded(1)
        assert kicked == [(1, REJECT_REASON)]
        assert rejected[EventKind.REJECTED][0].reason == REJECT_REASON
        assert b.metrics.rejections.get(store="players") == 1

    @pytest.mark.asyncio
    async def test_async_kick(self, make_store):
        kicked = []

        async def kick(identity, reason):
            kicked.append(identity)

        await make_store("proc-a").load(1)
        await make_store("proc-b", kick=kick).load(1)
        assert kicked == [1]

    @pytest.mark.asyncio
    async def test_stale_lease_takeover(self, make_store, clock, settings):
        a = make_store("proc-a")
        b = make_store("proc-b")
        await a.load(1)
        clock.advance(settings.stale_after_s + 1)
        assert (await b.load(1)).is_ok()
        assert b.metrics.lease_thefts.get(store="players") == 1

    @pytest.mark.asyncio
    async def test_fetch_failure_releases_lease(self, store, backend):
        backend.fail_next(3, "get")
        result = await store.load(1)
        assert isinstance(result.error, ReliabilityError)
        assert not store.is_loaded(1)
        assert "lock:players:1" not in backend.keys()
        assert (await store.load(1)).is_ok()

    @pytest.mark.asyncio
    async def test_lease_backend_failure(self, store, backend):
        backend.fail_next(3, "update")
        result = await store.load(1)
        assert isinstance(result.error, ReliabilityError)
        assert not store.is_loaded(1)

    @pytest.mark.asyncio
    async def test_undecodable_blob_falls_back(self, store, backend):
        await backend.put("u:players:1", {"compressed": True, "codec": "lz4", "payload": "AAAA", "version": 2})
        record = (await store.load(1)).unwrap()
        assert record["Coins"] == 0
        assert record["version"] == 3

    @pytest.mark.asyncio
    async def test_migrations_mark_record_dirty(self, store, backend):
        await backend.put("u:players:1", {"Coins": 120, "version": 2})
        store.register_migration(1, lambda r: {**r, "Gems": r["Coins"] // 10})
        record = (await store.load(1)).unwrap()
        assert record["Gems"] == 12
        assert record["schemaVersion"] == 1

        assert (await store.save(1)).unwrap() is SaveOutcome.WRITTEN
        assert (await stored(backend))["Gems"] == 12

    @pytest.mark.asyncio
    async def test_registered_migrations_reach_the_engine(self, store):
        store.register_migration(1, lambda r: r)
        assert len(store.engine.migrations) == 1

    @pytest.mark.asyncio
    async def test_dedicated_lease_backend(self, make_store, backend, clock):
        leases = InMemoryBackend(clock=clock)
        store = make_store(lease_backend=leases)
        await store.load(1)
        assert leases.keys() == ["lock:players:1"]
        assert "lock:players:1" not in backend.keys()

    @pytest.mark.asyncio
    async def test_stores_sharing_a_backend_keep_separate_records(self, make_store, backend):
        players = make_store()
        pets = make_store(name="pets", defaults={"Species": "cat"})
        await players.load(1)
        players.set(1, "Coins", 100)
        await players.save(1)

        record = (await pets.load(1)).unwrap()

        assert "Coins" not in record
        assert record["Species"] == "cat"
        assert record["version"] == 1
        assert sorted(backend.keys()) == ["lock:pets:1", "lock:players:1", "u:players:1"]

    @pytest.mark.asyncio
    async def test_failing_migration_does_not_fail_load(self, store, backend):
        await backend.put("u:players:1", {"Coins": 1, "version": 1})
        store.register_migration(1, lambda r: r["Missing"])
        record = (await store.load(1)).unwrap()
        assert "schemaVersion" not in record
        assert store.metrics.migration_failures.get(store="players") == 1
        assert not store.engine.sessions.lookup(1).is_dirty

    @pytest.mark.asyncio
    async def test_schema_is_advisory_on_load(self, make_store, backend):
        await backend.put("u:players:1", {"Coins": "broken", "version": 1})
        store = make_store(schema={"Coins": {"type": "integer"}})
        assert (await store.load(1)).unwrap()["Coins"] == "broken"
        assert store.set(1, "Coins", "still broken") is False
        assert store.set(1, "Coins", 5) is True


class TestSave:
    """Tests for the save pipeline."""

    @pytest.mark.asyncio
    async def test_set_and_save(self, store, backend, recorder):
        await store.load(1)
        assert store.set(1, "Coins", 100)
        assert (await store.save(1)).unwrap() is SaveOutcome.WRITTEN

        record = await stored(backend)
        assert record["Coins"] == 100
        assert record["version"] >= 1
        assert recorder[EventKind.SAVED][-1].record["Coins"] == 100
        assert store.get(1, "version") == record["version"]

    @pytest.mark.asyncio
    async def test_only_dirty_paths_written(self, store, backend):
        await backend.put("u:players:1", {"Coins": 1, "Gems": 5, "version": 1})
        await store.load(1)
        # Another writer changes an unrelated field behind our back.
        await backend.put("u:players:1", {"Coins": 1, "Gems": 7, "version": 1})
        store.set(1, "Coins", 2)
        await store.save(1)
        record = await stored(backend)
        assert record["Coins"] == 2
        assert record["Gems"] == 7

    @pytest.mark.asyncio
    async def test_nothing_dirty_skips_backend(self, store, backend, recorder):
        await store.load(1)
        writes = backend.calls["update"]
        assert (await store.save(1)).unwrap() is SaveOutcome.UNCHANGED
        assert backend.calls["update"] == writes
        assert len(recorder[EventKind.SAVED]) == 1
        assert await stored(backend) is None

    @pytest.mark.asyncio
    async def test_forced_empty_write(self, store, backend):
        await backend.put("u:players:1", {"Coins": 3, "version": 2})
        await store.load(1)
        writes = backend.calls["update"]
        assert (await store.save(1, force_write=True)).unwrap() is SaveOutcome.UNCHANGED
        assert backend.calls["update"] == writes + 1
        assert (await stored(backend))["Coins"] == 3

    @pytest.mark.asyncio
    async def test_idempotent_reload(self, store, backend):
        """Load, save and reload without edits keeps the content."""
        await backend.put("u:players:1", {"Coins": 9, "version": 4})
        await store.load(1)
        await store.save(1, release=True)
        assert not store.is_loaded(1)
        record = (await store.load(1)).unwrap()
        assert record["Coins"] == 9
        assert record["version"] == 5

    @pytest.mark.asyncio
    async def test_conflict(self, store, backend, recorder):
        await backend.put("u:players:1", {"Coins": 10, "version": 3})
        assert (await store.load(1)).unwrap()["version"] == 4
        await backend.put("u:players:1", {"Coins": 50, "version": 5})
        store.set(1, "Coins", 20)

        result = await store.save(1)

        assert isinstance(result.error, ConflictError)
        assert result.error.context["stored_version"] == 5
        assert result.error.context["attempted_version"] == 5
        assert await stored(backend) == {"Coins": 50, "version": 5}
        conflict = recorder[EventKind.CONFLICT][0]
        assert conflict.backend_record["Coins"] == 50
        assert conflict.attempted_record["Coins"] == 20
        assert recorder[EventKind.SAVED] == []
        assert store.metrics.conflicts.get(store="players") == 1

    @pytest.mark.asyncio
    async def test_two_processes_one_conflict(self, make_store, backend, clock):
        """Separate lease backends let both load; only one save lands."""
        await backend.put("u:players:1", {"Coins": 0, "version": 1})
        a = make_store("proc-a", lease_backend=InMemoryBackend(clock=clock))
        b = make_store("proc-b", lease_backend=InMemoryBackend(clock=clock))
        await a.load(1)
        await b.load(1)
        a.set(1, "Coins", 10)
        b.set(1, "Coins", 20)

        results = [await a.save(1), await b.save(1)]

        conflicts = [r for r in results if r.is_err()]
        assert len(conflicts) == 1
        assert isinstance(conflicts[0].error, ConflictError)
        assert (await stored(backend))["Coins"] == 10

    @pytest.mark.asyncio
    async def test_retry_exhaustion_keeps_changes(self, store, backend):
        await store.load(1)
        store.set(1, "Coins", 100)
        backend.fail_next(3, "update")

        result = await store.save(1)

        assert isinstance(result.error, ReliabilityError)
        session = store.engine.sessions.lookup(1)
        assert session.dirty == {"Coins"}
        assert store.metrics.save_failures.get(store="players") == 1
        assert (await store.save(1)).unwrap() is SaveOutcome.WRITTEN
        assert (await stored(backend))["Coins"] == 100

    @pytest.mark.asyncio
    async def test_release_on_failure(self, store, backend):
        await store.load(1)
        store.set(1, "Coins", 100)
        backend.fail_next(3, "update")
        result = await store.save(1, release=True)
        assert result.is_err()
        assert not store.is_loaded(1)
        assert "lock:players:1" not in backend.keys()

    @pytest.mark.asyncio
    async def test_not_loaded(self, store):
        result = await store.save(99)
        assert result.error.code is ErrorCode.SESSION_NOT_LOADED

    @pytest.mark.asyncio
    async def test_backups_newest_first(self, store):
        await store.load(1)
        for coins in (1, 2, 3):
            store.set(1, "Coins", coins)
            await store.save(1)
        backups = store.backups(1)
        assert [b["Coins"] for b in backups] == [3, 2]

    @pytest.mark.asyncio
    async def test_compressed_round_trip(self, make_store, backend):
        store = make_store(compressor=Lz4Compressor())
        await store.load(1)
        store.set(1, "Inventory.Sword", 1)
        await store.save(1, release=True)

        blob = await stored(backend)
        assert is_wrapped(blob)
        assert blob["codec"] == "lz4"

        record = (await make_store("proc-b").load(1)).unwrap()
        assert record["Inventory"]["Sword"] == 1

    @pytest.mark.asyncio
    async def test_edits_during_save_survive(self, make_store, clock):
        """Writes made while a save is in flight go to the next save."""
        slow = InMemoryBackend(clock=clock, latency_s=0.01)
        store = make_store(backend=slow)
        await store.load(1)
        store.set(1, "Coins", 1)

        pending = asyncio.ensure_future(store.save(1))
        await asyncio.sleep(0)
        store.set(1, "Gems", 5)
        assert (await pending).is_ok()
        assert store.engine.sessions.lookup(1).dirty == {"Gems"}

        assert (await store.save(1)).unwrap() is SaveOutcome.WRITTEN
        record = (await slow.get("u:players:1")).unwrap()
        assert record["Coins"] == 1
        assert record["Gems"] == 5

    @pytest.mark.asyncio
    @pytest.mark.parametrize("replacement", [5, {"Slots": 3}])
    async def test_parent_overwrite_after_child_edit(self, store, backend, replacement):
        await store.load(1)
        store.set(1, "Inventory.Bow", 1)
        store.set(1, "Inventory", replacement)
        await store.save(1)
        assert (await stored(backend))["Inventory"] == replacement
        assert store.get(1, "Inventory") == replacement

    @pytest.mark.asyncio
    async def test_reconnect_during_release_keeps_lease(self, make_store, clock):
        slow = InMemoryBackend(clock=clock, latency_s=0.01)
        store = make_store(backend=slow)
        await store.client_connected(1)
        store.set(1, "Coins", 7)

        leaving = asyncio.ensure_future(store.client_disconnected(1))
        while store.is_loaded(1):
            await asyncio.sleep(0.001)
        reconnected = await store.client_connected(1)

        assert (await leaving).is_ok()
        assert reconnected.unwrap()["Coins"] == 7
        assert store.is_loaded(1)
        lease = (await slow.get("lock:players:1")).unwrap()
        assert lease == {"owner": "proc-a", "timestamp": clock.time()}

    @pytest.mark.asyncio
    async def test_invalid_transition_is_logged(self, store, caplog):
        await store.load(1)
        store.engine.sessions.lookup(1).lifecycle.transition("EVICT")
        with caplog.at_level(logging.WARNING, logger="reliastore.engine.persistence"):
            result = await store.save(1)
        assert result.unwrap() is SaveOutcome.UNCHANGED
        assert "Ignoring invalid session transition" in caplog.text

    @pytest.mark.asyncio
    async def test_import_json_saves_whole_record(self, store, backend):
        await backend.put("u:players:1", {"Coins": 1, "Legacy": True, "version": 1})
        await store.load(1)
        assert store.import_json(1, '{"Coins": 42}')
        await store.save(1)
        record = await stored(backend)
        assert record["Coins"] == 42
        assert "Legacy" not in record

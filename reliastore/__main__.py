#!/usr/bin/env python3
"""
reliastore demo

Runs two simulated server processes against one in-memory backend and
walks through the consistency protocol: lease rejection, delta saves,
stale-lease recovery, a version conflict and a schema migration.

Usage:
    python -m reliastore

    # Or with custom settings
    RELIASTORE_COMPRESS=true python -m reliastore
"""

from __future__ import annotations

import asyncio
import dataclasses
import sys

from reliastore.core.clock import ManualClock
from reliastore.core.config import StoreSettings
from reliastore.datastore import ReliableStore
from reliastore.engine.events import EventKind
from reliastore.observability.logging import LogLevel, setup_logging
from reliastore.storage.backends import InMemoryBackend
from reliastore.storage.codec import BlobCodec

DEFAULTS = {"Coins": 0, "Inventory": {"Slots": 10}}


async def demo() -> None:
    print("\n" + "=" * 60)
    print("reliastore - Local Demo")
    print("=" * 60 + "\n")

    settings_result = StoreSettings.from_env()
    if settings_result.is_err():
        print(f"Configuration error: {settings_result.error}")
        sys.exit(1)
    settings = dataclasses.replace(settings_result.unwrap(), retry_base_delay_s=0.0)

    validation = settings.validate()
    if validation.is_err():
        print(f"Validation error: {validation.error}")
        sys.exit(1)

    setup_logging(LogLevel.WARNING, json_output=False)

    clock = ManualClock()
    backend = InMemoryBackend(clock=clock)
    kicked: list[str] = []

    def kick(identity, reason: str) -> None:
        kicked.append(f"{identity}: {reason}")

    server_a = ReliableStore("players", DEFAULTS, backend, settings=settings,
                             clock=clock, owner_id="server-a", kick=kick)
    server_b = ReliableStore("players", DEFAULTS, backend, settings=settings,
                             clock=clock, owner_id="server-b", kick=kick)
    for server in (server_a, server_b):
        server.on(EventKind.CONFLICT, lambda e: print(
            f"   conflict: stored v{e.backend_record.get('version')} "
            f"vs attempted v{e.attempted_record.get('version')}"
        ))

    print(f"✓ Settings loaded (lease TTL {settings.lease_ttl_s}s, "
          f"compress={settings.compress})\n")

    # 1. Load and mutate on server A
    loaded = await server_a.load(42)
    print(f"1. Server A loaded player 42: {loaded.unwrap()}")
    server_a.set(42, "Coins", 100)
    server_a.set(42, "Inventory.Sword", 1)
    saved = await server_a.save(42)
    print(f"   saved -> {saved.unwrap().value}, backend: {await _peek(backend, server_a, 42)}")

    # 2. Server B is rejected while A holds the lease
    rejected = await server_b.load(42)
    print(f"2. Server B load while A is live: {type(rejected.error).__name__}")
    print(f"   kicked: {kicked[-1]}")

    # 3. Server A crashes; after 2 x TTL server B takes over
    clock.advance(settings.stale_after_s + 1)
    server_b.register_migration(1, lambda r: {**r, "Gems": r.get("Coins", 0) // 10})
    taken = await server_b.load(42)
    print(f"3. Server B after stale lease: {taken.unwrap()}")
    server_b.set(42, "Coins", 250)
    await server_b.save(42)

    # 4. Server A wakes up and tries to save stale state
    server_a.set(42, "Coins", 1)
    conflict = await server_a.save(42)
    print(f"4. Server A save with stale version: {type(conflict.error).__name__}")
    print(f"   backend still: {await _peek(backend, server_b, 42)}")

    # 5. Flush
    await server_a.engine.evict(42, "demo cleanup")
    results = await server_b.shutdown()
    print(f"\n5. Shutdown flushed {len(results)} session(s); "
          f"backend keys: {sorted(backend.keys())}")

    print("\n" + server_b.metrics.collector.export_prometheus())
    print("✓ Demo complete")
    print("=" * 60 + "\n")


async def _peek(backend: InMemoryBackend, store: ReliableStore, identity) -> dict:
    raw = (await backend.get(store.engine.data_key(identity))).unwrap()
    return BlobCodec().unwrap(raw)


async def main() -> None:
    try:
        await demo()
    except KeyboardInterrupt:
        print("\nInterrupted")


def run() -> None:
    """Synchronous entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()

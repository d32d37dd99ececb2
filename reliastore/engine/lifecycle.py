"""
Lifecycle Scheduler: background loops and host signals

Two cooperative loops run beside foreground load/save calls:

    autosave  every ``autosave_interval_s``: save each active session
    sweep     every ``lease_ttl_s / 2``: for each active session
                - idle longer than ``session_timeout_s`` -> save and release
                - otherwise renew the lease
                - lease now owned elsewhere -> evict without writing
                - renewal failed transiently -> keep, retry next sweep

Both loops iterate a snapshot of the session table, so a session
released mid-iteration is skipped. Errors are logged; a loop never dies
on a single failure.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional

from reliastore.core.clock import Clock
from reliastore.core.config import StoreSettings
from reliastore.core.errors import ReliaStoreError
from reliastore.core.types import Identity, Record, Result
from reliastore.engine.persistence import PersistenceEngine, SaveOutcome

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    """What one renewal/timeout sweep did."""
    renewed: list[Identity] = field(default_factory=list)
    timed_out: list[Identity] = field(default_factory=list)
    evicted: list[Identity] = field(default_factory=list)
    renewal_failures: list[Identity] = field(default_factory=list)


class LifecycleScheduler:
    """
    Drives a ``PersistenceEngine`` on timers and host events.

    Usage:
        scheduler = LifecycleScheduler(engine)
        await scheduler.start()
        await scheduler.client_connected(42)
        ...
        await scheduler.shutting_down()
    """

    __slots__ = ("_engine", "_settings", "_clock", "_tasks", "_running")

    def __init__(
        self,
        engine: PersistenceEngine,
        settings: Optional[StoreSettings] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self._engine = engine
        self._settings = settings or engine.settings
        self._clock = clock or engine.clock
        self._tasks: list[asyncio.Task[None]] = []
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    # -------------------------------------------------------------------------
    # LOOP CONTROL
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        loop = asyncio.get_running_loop()
        self._tasks = [
            loop.create_task(
                self._every(self._settings.autosave_interval_s, self.run_autosave_once),
                name=f"{self._engine.name}-autosave",
            ),
            loop.create_task(
                self._every(self._settings.renew_interval_s, self.run_sweep_once),
                name=f"{self._engine.name}-sweep",
            ),
        ]
        logger.info(
            "Started loops for %s (autosave %.1fs, sweep %.1fs)",
            self._engine.name,
            self._settings.autosave_interval_s,
            self._settings.renew_interval_s,
        )

    async def stop(self) -> None:
        """Cancel the background loops. Sessions stay loaded."""
        self._running = False
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def shutdown(self) -> dict[Identity, Result[SaveOutcome, ReliaStoreError]]:
        """Stop the loops and flush every session, releasing its lease."""
        await self.stop()
        results = await self._engine.save_all(release=True)
        failed = [identity for identity, r in results.items() if r.is_err()]
        if failed:
            logger.error("Shutdown flush failed for %d session(s): %s", len(failed), failed)
        else:
            logger.info("Shutdown flushed %d session(s)", len(results))
        return results

    async def _every(self, interval_s: float, tick) -> None:
        while True:
            await asyncio.sleep(interval_s)
            try:
                await tick()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("%s loop iteration failed", self._engine.name)

    # -------------------------------------------------------------------------
    # ITERATIONS
    # -------------------------------------------------------------------------

    async def run_autosave_once(self) -> dict[Identity, Result[SaveOutcome, ReliaStoreError]]:
        results: dict[Identity, Result[SaveOutcome, ReliaStoreError]] = {}
        for identity, session in self._engine.sessions.snapshot():
            if self._engine.sessions.lookup(identity) is not session:
                continue
            result = await self._engine.save(identity)
            if result.is_err():
                logger.warning("Autosave of %s failed: %s", identity, result.error)
            results[identity] = result
        return results

    async def run_sweep_once(self) -> SweepReport:
        report = SweepReport()
        timeout_s = self._settings.session_timeout_s
        for identity, session in self._engine.sessions.snapshot():
            if self._engine.sessions.lookup(identity) is not session:
                continue

            idle_s = self._clock.monotonic() - session.meta.last_heartbeat
            if idle_s > timeout_s:
                logger.warning(
                    "Session timeout for %s after %.0fs idle; saving and releasing",
                    identity, idle_s,
                )
                await self._engine.save(identity, release=True)
                report.timed_out.append(identity)
                continue

            renewed = await self._engine.leases.renew(session.lease_key)
            if renewed.is_err():
                logger.warning("Lease renewal for %s failed: %s", identity, renewed.error)
                report.renewal_failures.append(identity)
            elif renewed.unwrap():
                report.renewed.append(identity)
            else:
                logger.warning("Lease for %s is held by another process; evicting", identity)
                if await self._engine.evict(identity):
                    report.evicted.append(identity)
        return report

    # -------------------------------------------------------------------------
    # HOST SIGNALS
    # -------------------------------------------------------------------------

    async def client_connected(self, identity: Identity) -> Result[Record, ReliaStoreError]:
        return await self._engine.load(identity)

    async def client_disconnected(
        self,
        identity: Identity,
    ) -> Result[SaveOutcome, ReliaStoreError]:
        return await self._engine.save(identity, release=True)

    async def shutting_down(self) -> dict[Identity, Result[SaveOutcome, ReliaStoreError]]:
        return await self.shutdown()

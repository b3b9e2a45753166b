"""Background dispatcher pool that advances due journey executions."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .config import JourneySettings, settings as default_settings
from .services.dispatch_svc import recover_stale_leases, run_dispatch_cycle

logger = logging.getLogger(__name__)


class DispatchWorkerPool:
    """Runs N polling tasks against the shared execution table."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        machine,
        settings_obj: JourneySettings | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.machine = machine
        self.settings = settings_obj or default_settings
        self._tasks: list[asyncio.Task] = []
        self._stop_event = asyncio.Event()

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    def start(self) -> None:
        if self._tasks or not self.settings.dispatch_worker_enabled:
            return
        self._stop_event.clear()
        for index in range(max(self.settings.dispatch_worker_count, 1)):
            self._tasks.append(
                asyncio.create_task(self._run_loop(index), name=f"journey-dispatch-worker-{index}")
            )
        logger.info("Started %d journey dispatch workers", len(self._tasks))

    async def stop(self) -> None:
        if not self._tasks:
            return
        self._stop_event.set()
        for task in self._tasks:
            task.cancel()
        try:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        finally:
            self._tasks = []

    async def run_once(self) -> int:
        """Single recovery + dispatch pass; used by the loop and by tests."""
        async with self.session_factory() as db:
            await recover_stale_leases(db, settings_obj=self.settings)
        return await run_dispatch_cycle(
            self.session_factory, self.machine, limit=self.settings.dispatch_batch_size
        )

    async def _run_loop(self, index: int) -> None:
        while not self._stop_event.is_set():
            advanced = 0
            try:
                advanced = await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception:  # pragma: no cover - defensive log path
                logger.exception("Dispatch worker %d loop failed", index)

            if not advanced:
                try:
                    await asyncio.wait_for(
                        self._stop_event.wait(), timeout=self.settings.dispatch_poll_interval_seconds
                    )
                except asyncio.TimeoutError:
                    pass

"""Worker wiring for periodic loyalty balance reconciliation sweeps."""

from __future__ import annotations

import asyncio
from typing import Dict

from loguru import logger

from maisuchi_api.core.settings import settings
from maisuchi_api.jobs.loyalty import archive_expired_rewards, run_balance_reconciliation
from maisuchi_api.jobs.sessions import SessionFactory


class LoyaltyReconciliationWorker:
    """Periodically repairs balance drift and archives expired rewards."""

    # meta: worker: loyalty-reconciliation

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        interval_seconds: int | None = None,
    ) -> None:
        self._session_factory = session_factory
        self.interval_seconds = interval_seconds or settings.loyalty_reconciliation_interval_seconds
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None
        self.is_running: bool = False

    def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop())
        self.is_running = True
        logger.info("Loyalty reconciliation worker started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        if not self._task:
            return
        self._stop_event.set()
        await self._task
        self._task = None
        self.is_running = False
        logger.info("Loyalty reconciliation worker stopped")

    async def run_once(self) -> Dict[str, int]:
        """Execute a single sweep and return the combined summary."""

        summary = await run_balance_reconciliation(session_factory=self._session_factory)
        archived = await archive_expired_rewards(session_factory=self._session_factory)
        return {**summary, **archived}

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except Exception as exc:  # pragma: no cover - keep the loop alive
                logger.exception("Loyalty reconciliation iteration failed", error=str(exc))
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue

"""Periodic re-run of the backfill scanner to close gaps left by the watcher."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from erc20_transfer_indexer.ingestor.backfill import BackfillResult, BackfillScanner

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_SECONDS = 30.0


class ReconciliationTimer:
    """Runs ``scanner.run()`` every ``interval_seconds``; runs never overlap."""

    def __init__(self, scanner: BackfillScanner, *, interval_seconds: float = DEFAULT_INTERVAL_SECONDS) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        self._scanner = scanner
        self._interval = interval_seconds
        self._stop_event: asyncio.Event | None = None
        self._task: asyncio.Task[None] | None = None

        self.runs = 0
        self.errors = 0
        self.last_result: BackfillResult | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _loop(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=self._interval)
                    break
                except TimeoutError:
                    pass

                self.last_result = await self._scanner.run()
                self.runs += 1
            except asyncio.CancelledError:
                break
            except Exception as e:
                self.errors += 1
                logger.warning("Error in periodic indexing: %s", e)

    def start(self) -> None:
        if self.is_running:
            raise RuntimeError("Reconciliation timer already running")
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._loop(self._stop_event))
        logger.info("Reconciliation timer started (every %.1fs)", self._interval)

    async def stop(self) -> None:
        """Stop firing. A run in progress is cancelled, not awaited to completion."""
        if self._stop_event is not None:
            self._stop_event.set()
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        logger.info("Reconciliation timer stopped")

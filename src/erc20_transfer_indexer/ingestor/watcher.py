"""Live tailing of new Transfer events.

The watcher keeps one log subscription open. When the subscription
reports an error it is resubscribed with exponential backoff, resuming
from the first block the failed subscription had not fetched yet; anything
still missed is picked up by the reconciliation timer.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING

from erc20_transfer_indexer.ingestor.backfill import store_logs
from erc20_transfer_indexer.ingestor.models import TRANSFER_EVENT_SIGNATURE, RawLog

if TYPE_CHECKING:
    from erc20_transfer_indexer.ingestor.chain import LogSource, LogSubscription
    from erc20_transfer_indexer.storage.ledger import TransferLedger

logger = logging.getLogger(__name__)

DEFAULT_INITIAL_RESUBSCRIBE_DELAY = 1.0  # seconds
DEFAULT_MAX_RESUBSCRIBE_DELAY = 60.0  # seconds


@dataclass
class WatcherStats:
    batches_received: int = 0
    logs_received: int = 0
    inserted: int = 0
    duplicates: int = 0
    record_failures: int = 0
    resubscribe_count: int = 0
    last_batch_time: float | None = None
    last_error: str | None = None


class LiveWatcher:
    """Subscribes to new logs and writes them to the ledger as they arrive."""

    def __init__(
        self,
        source: LogSource,
        ledger: TransferLedger,
        *,
        token_address: str,
        event_signature: str = TRANSFER_EVENT_SIGNATURE,
        initial_resubscribe_delay: float = DEFAULT_INITIAL_RESUBSCRIBE_DELAY,
        max_resubscribe_delay: float = DEFAULT_MAX_RESUBSCRIBE_DELAY,
    ) -> None:
        self._source = source
        self._ledger = ledger
        self._token_address = token_address.lower()
        self._event_signature = event_signature
        self._initial_delay = initial_resubscribe_delay
        self._max_delay = max_resubscribe_delay

        self._stats = WatcherStats()
        self._subscription: LogSubscription | None = None
        self._resume_block: int | None = None
        self._delay = initial_resubscribe_delay
        self._stop_event: asyncio.Event | None = None
        self._task: asyncio.Task[None] | None = None

    @property
    def stats(self) -> WatcherStats:
        return self._stats

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def handle_batch(self, logs: list[RawLog]) -> None:
        """Normalize and insert a delivered batch in delivery order."""
        self._stats.batches_received += 1
        self._stats.logs_received += len(logs)
        self._stats.last_batch_time = time.time()
        logger.info("Received %d new transfer events", len(logs))

        outcome = await store_logs(logs, source=self._source, ledger=self._ledger, origin="watch")
        self._stats.inserted += outcome.inserted
        self._stats.duplicates += outcome.duplicates
        self._stats.record_failures += outcome.malformed + outcome.transient_failures

        self._delay = self._initial_delay

    async def _handle_error(self, error: Exception) -> None:
        self._stats.last_error = str(error)
        logger.warning("Error watching events: %s", error)

    def _subscribe(self) -> LogSubscription:
        return self._source.subscribe_logs(
            self._token_address,
            self._event_signature,
            self.handle_batch,
            self._handle_error,
            from_block=self._resume_block,
        )

    async def _run(self, stop_event: asyncio.Event) -> None:
        logger.info("Starting to watch for new Transfer events on %s", self._token_address)
        while not stop_event.is_set():
            self._subscription = self._subscribe()
            await self._subscription.wait()
            if stop_event.is_set():
                break

            # Ended on its own, i.e. after an error. Blocks before next_block were delivered.
            if self._subscription.next_block is not None:
                self._resume_block = self._subscription.next_block
            self._stats.resubscribe_count += 1
            logger.info("Resubscribing in %.1fs (attempt %d)", self._delay, self._stats.resubscribe_count)
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(stop_event.wait(), timeout=self._delay)
            self._delay = min(self._max_delay, self._delay * 2)

    def start(self) -> None:
        if self.is_running:
            raise RuntimeError("Watcher already running")
        self._stop_event = asyncio.Event()
        self._delay = self._initial_delay
        self._task = asyncio.create_task(self._run(self._stop_event))

    async def stop(self) -> None:
        """Stop watching. In-flight RPC calls are abandoned, not awaited."""
        if self._stop_event is not None:
            self._stop_event.set()
        if self._subscription is not None:
            self._subscription.cancel()
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        logger.info("Watcher stopped")

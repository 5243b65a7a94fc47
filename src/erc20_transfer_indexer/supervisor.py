"""Indexer supervisor.

This module provides the IndexerSupervisor class that owns the lifecycle of
one token's ingestion pipeline: an initial backfill pass, then the live
watcher and the reconciliation timer running side by side.

Pipeline flow:
    Log Source → {Backfill Scanner | Live Watcher} → Event Normalizer → Ledger
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from redis.asyncio import Redis
from sqlalchemy.exc import SQLAlchemyError

from erc20_transfer_indexer.ingestor.backfill import BackfillScanner
from erc20_transfer_indexer.ingestor.chain import ChainClient
from erc20_transfer_indexer.ingestor.reconciler import ReconciliationTimer
from erc20_transfer_indexer.ingestor.watcher import LiveWatcher
from erc20_transfer_indexer.storage.ledger import TransferLedger

if TYPE_CHECKING:
    from erc20_transfer_indexer.config import Settings
    from erc20_transfer_indexer.ingestor.backfill import BackfillResult
    from erc20_transfer_indexer.ingestor.chain import LogSource

logger = logging.getLogger(__name__)


def build_chain_client(settings: Settings) -> ChainClient:
    """Create the web3 log source described by ``settings``."""
    if not settings.chain.rpc_url:
        raise ValueError("RPC_URL is required in environment variables")
    redis = Redis.from_url(settings.redis.url) if settings.redis.url else None
    return ChainClient(
        settings.chain.rpc_url,
        fallback_rpc_url=settings.chain.fallback_rpc_url,
        redis=redis,
        max_requests_per_second=settings.chain.max_requests_per_second,
        max_retries=settings.chain.max_retries,
        poll_interval_seconds=settings.indexer.watch_poll_interval_seconds,
    )


class SupervisorState(str, Enum):
    """Supervisor lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class SupervisorStats:
    """Statistics for the supervisor."""

    started_at: datetime | None = None
    backfill_passes: int = 0
    last_backfill: BackfillResult | None = None
    last_error: str | None = None


class IndexerSupervisor:
    """Owns the scanner, watcher and timer for one token contract.

    Instances are independent: several supervisors (e.g. one per token)
    can run in the same process.

    Example:
        ```python
        supervisor = IndexerSupervisor.from_settings(get_settings())

        await supervisor.start()
        # Indexes until stop() is called
        await supervisor.stop()
        ```
    """

    def __init__(
        self,
        source: LogSource,
        ledger: TransferLedger,
        *,
        token_address: str,
        genesis_block: int = 0,
        batch_size: int = 1000,
        batch_delay_seconds: float = 0.1,
        reconcile_interval_seconds: float = 30.0,
        resubscribe_initial_delay_seconds: float = 1.0,
        resubscribe_max_delay_seconds: float = 60.0,
    ) -> None:
        self._source = source
        self._ledger = ledger
        self._token_address = token_address.lower()

        self._scanner = BackfillScanner(
            source,
            ledger,
            token_address=self._token_address,
            genesis_block=genesis_block,
            batch_size=batch_size,
            batch_delay_seconds=batch_delay_seconds,
        )
        self._watcher = LiveWatcher(
            source,
            ledger,
            token_address=self._token_address,
            initial_resubscribe_delay=resubscribe_initial_delay_seconds,
            max_resubscribe_delay=resubscribe_max_delay_seconds,
        )
        self._timer = ReconciliationTimer(self._scanner, interval_seconds=reconcile_interval_seconds)

        self._state = SupervisorState.STOPPED
        self._stats = SupervisorStats()
        self._initial_passes = 0
        self._released = False
        self._stop_event: asyncio.Event | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> IndexerSupervisor:
        """Wire a supervisor from application settings.

        Raises:
            ValueError: If the token address or RPC URL is not configured.
        """
        settings.validate_requirements(command="run")
        token_address = settings.indexer.token_address
        if not token_address:
            raise ValueError("TOKEN_CONTRACT_ADDRESS is required in environment variables")

        return cls(
            build_chain_client(settings),
            TransferLedger.from_url(settings.database.url),
            token_address=token_address,
            genesis_block=settings.indexer.start_block,
            batch_size=settings.indexer.batch_size,
            batch_delay_seconds=settings.indexer.batch_delay_seconds,
            reconcile_interval_seconds=settings.indexer.reconcile_interval_seconds,
            resubscribe_initial_delay_seconds=settings.indexer.resubscribe_initial_delay_seconds,
            resubscribe_max_delay_seconds=settings.indexer.resubscribe_max_delay_seconds,
        )

    @property
    def state(self) -> SupervisorState:
        """Current supervisor state."""
        return self._state

    @property
    def stats(self) -> SupervisorStats:
        """Current supervisor statistics, including reconciliation passes."""
        if self._timer.last_result is not None:
            self._stats.last_backfill = self._timer.last_result
        self._stats.backfill_passes = self._initial_passes + self._timer.runs
        return self._stats

    @property
    def is_running(self) -> bool:
        """Check if supervisor is running."""
        return self._state == SupervisorState.RUNNING

    @property
    def token_address(self) -> str:
        return self._token_address

    @property
    def ledger(self) -> TransferLedger:
        return self._ledger

    @property
    def scanner(self) -> BackfillScanner:
        return self._scanner

    @property
    def watcher(self) -> LiveWatcher:
        return self._watcher

    @property
    def timer(self) -> ReconciliationTimer:
        return self._timer

    async def start(self) -> None:
        """Start indexing.

        Runs one backfill pass, then starts the live watcher and the
        reconciliation timer. A backfill pass that fails on the chain side is
        logged and left to the timer to retry; only storage failures abort.

        Raises:
            RuntimeError: If the supervisor is already starting or running.
            Exception: If schema setup or a ledger read/write fails.
        """
        if self._state not in (SupervisorState.STOPPED, SupervisorState.ERROR):
            raise RuntimeError(f"Cannot start supervisor in state {self._state}")

        self._state = SupervisorState.STARTING
        self._stop_event = asyncio.Event()
        self._released = False
        self._stats.last_error = None
        logger.info("Starting ERC20 indexer for token %s", self._token_address)

        try:
            await self._ledger.init_schema()
            await self._initial_backfill()
            self._watcher.start()
            self._timer.start()
            self._stats.started_at = datetime.now(UTC)
            self._state = SupervisorState.RUNNING
            logger.info("Indexer started successfully")
        except Exception as e:
            self._state = SupervisorState.ERROR
            self._stats.last_error = str(e)
            logger.error("Failed to start indexer: %s", e)
            await self._halt()
            await self._release()
            raise

    async def _initial_backfill(self) -> None:
        try:
            self._stats.last_backfill = await self._scanner.run()
            self._initial_passes += 1
        except SQLAlchemyError:
            raise
        except Exception as e:
            self._stats.last_error = str(e)
            logger.warning("Initial backfill failed, reconciliation will retry: %s", e)

    async def stop(self, *, release_resources: bool = True) -> None:
        """Stop indexing.

        In-flight network calls are abandoned; writes are idempotent so any
        lost work is redone on the next start.

        Args:
            release_resources: Also close the log source and the ledger. Pass
                False to stop indexing while the ledger keeps serving reads;
                a later ``stop()`` still releases them.
        """
        if self._state in (SupervisorState.STOPPED, SupervisorState.STOPPING):
            if release_resources and self._state == SupervisorState.STOPPED:
                await self._release()
            return

        self._state = SupervisorState.STOPPING
        logger.info("Stopping ERC20 indexer...")

        if self._stop_event:
            self._stop_event.set()

        await self._halt()
        if release_resources:
            await self._release()

        self._state = SupervisorState.STOPPED
        logger.info("Indexer stopped")

    async def _halt(self) -> None:
        await self._watcher.stop()
        await self._timer.stop()

    async def _release(self) -> None:
        if self._released:
            return
        self._released = True

        aclose = getattr(self._source, "aclose", None)
        if callable(aclose):
            try:
                await aclose()
            except Exception as e:
                logger.warning("Failed to close log source: %s", e)

        await self._ledger.close()
        logger.debug("Resources cleaned up")

    async def run(self) -> None:
        """Start the supervisor and run until stop() is called or the task is cancelled."""
        await self.start()

        try:
            if self._stop_event:
                await self._stop_event.wait()
        except asyncio.CancelledError:
            pass
        finally:
            await self.stop()

    def request_stop(self) -> None:
        """Ask a running ``run()`` to return; safe to call from a signal handler."""
        if self._stop_event:
            self._stop_event.set()

    async def __aenter__(self) -> IndexerSupervisor:
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.stop()

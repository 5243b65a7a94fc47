"""Historical backfill of Transfer events in bounded block batches.

Resume point: the scanner keeps a per-token checkpoint ("scanned through
block N") next to the ledger. It only advances across a contiguous run of
fully successful batches, so a batch whose fetch failed is retried on the
next run even after later batches have stored higher blocks. Without a
checkpoint (fresh database or a ledger written elsewhere) the scanner
resumes from the ledger's high-water mark + 1, or the genesis block when
the ledger is empty, and records that choice as the checkpoint before
scanning.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from sqlalchemy.exc import SQLAlchemyError

from erc20_transfer_indexer.ingestor.chain import ChainClientError
from erc20_transfer_indexer.ingestor.models import TRANSFER_EVENT_SIGNATURE, RawLog
from erc20_transfer_indexer.ingestor.normalizer import NormalizationError, normalize_transfer

if TYPE_CHECKING:
    from erc20_transfer_indexer.ingestor.chain import LogSource
    from erc20_transfer_indexer.storage.ledger import TransferLedger

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 1000
DEFAULT_BATCH_DELAY_SECONDS = 0.1


@dataclass
class BatchOutcome:
    """Result of processing one block range."""

    inserted: int = 0
    duplicates: int = 0
    malformed: int = 0
    transient_failures: int = 0

    @property
    def complete(self) -> bool:
        """True when nothing in the batch needs to be fetched again."""
        return self.transient_failures == 0


@dataclass
class BackfillResult:
    """Summary of one scanner run."""

    start_block: int
    end_block: int
    batches: int = 0
    failed_batches: int = 0
    logs_fetched: int = 0
    inserted: int = 0
    duplicates: int = 0
    record_failures: int = 0
    scanned_through: int | None = None

    @property
    def skipped(self) -> bool:
        """True when there was nothing to scan."""
        return self.start_block > self.end_block


async def store_logs(
    logs: list[RawLog],
    *,
    source: LogSource,
    ledger: TransferLedger,
    origin: str,
) -> BatchOutcome:
    """Normalize and insert logs one by one, in the order given.

    Shared by the backfill scanner and the live watcher. A failing record is
    logged and dropped; its siblings are still processed.
    """
    outcome = BatchOutcome()
    timestamps: dict[int, int] = {}
    for log in logs:
        if log.block_number not in timestamps:
            try:
                block = await source.get_block(log.block_number)
                timestamps[log.block_number] = int(block["timestamp"])
            except (ChainClientError, KeyError, TypeError, ValueError) as e:
                outcome.transient_failures += 1
                logger.warning(
                    "[%s] Block timestamp lookup failed for log %s (block %d): %s",
                    origin,
                    log.identity,
                    log.block_number,
                    e,
                )
                continue

        try:
            record = normalize_transfer(log, timestamps[log.block_number])
        except NormalizationError as e:
            outcome.malformed += 1
            logger.warning("[%s] Dropping malformed log %s: %s", origin, log.identity, e.reason)
            continue

        try:
            if await ledger.insert(record):
                outcome.inserted += 1
                logger.debug(
                    "[%s] Indexed transfer %s -> %s, amount %s",
                    origin,
                    record.from_address,
                    record.to_address,
                    record.value,
                )
            else:
                outcome.duplicates += 1
        except SQLAlchemyError as e:
            outcome.transient_failures += 1
            logger.error("[%s] Failed to store log %s: %s", origin, log.identity, e)
    return outcome


class BackfillScanner:
    """Scans ``[start, head]`` in fixed-size batches and writes to the ledger.

    Example:
        ```python
        scanner = BackfillScanner(client, ledger, token_address="0x...", genesis_block=0)
        result = await scanner.run()
        print(result.inserted, result.failed_batches)
        ```
    """

    def __init__(
        self,
        source: LogSource,
        ledger: TransferLedger,
        *,
        token_address: str,
        genesis_block: int = 0,
        batch_size: int = DEFAULT_BATCH_SIZE,
        batch_delay_seconds: float = DEFAULT_BATCH_DELAY_SECONDS,
        event_signature: str = TRANSFER_EVENT_SIGNATURE,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self._source = source
        self._ledger = ledger
        self._token_address = token_address.lower()
        self._genesis_block = genesis_block
        self._batch_size = batch_size
        self._batch_delay = batch_delay_seconds
        self._event_signature = event_signature

    @property
    def token_address(self) -> str:
        return self._token_address

    async def resume_block(self) -> int:
        """First block the next run will scan."""
        checkpoint = await self._ledger.scanned_through(self._token_address)
        if checkpoint is not None:
            return checkpoint + 1
        high_water_mark = await self._ledger.high_water_mark()
        if high_water_mark > 0:
            return high_water_mark + 1
        return self._genesis_block

    def batches(self, start: int, end: int) -> list[tuple[int, int]]:
        """Split the closed range ``[start, end]`` into ascending batches."""
        return [
            (from_block, min(end, from_block + self._batch_size - 1))
            for from_block in range(start, end + 1, self._batch_size)
        ]

    async def run(self) -> BackfillResult:
        """Scan from the resume point to the current head."""
        start = await self.resume_block()
        if await self._ledger.scanned_through(self._token_address) is None:
            # Pin the first resume point so a failed early batch is rescanned
            # even after later batches raise the high-water mark.
            await self._ledger.advance_checkpoint(self._token_address, start - 1)
        end = await self._source.get_current_block_number()
        result = BackfillResult(start_block=start, end_block=end)

        if start > end:
            logger.info("No new blocks to index (next=%d, head=%d)", start, end)
            return result

        logger.info("Indexing historical data from block %d to %d", start, end)
        contiguous = True
        ranges = self.batches(start, end)
        for i, (from_block, to_block) in enumerate(ranges):
            result.batches += 1
            logger.info("Processing blocks %d to %d", from_block, to_block)
            try:
                logs = await self._source.get_logs(
                    self._token_address,
                    self._event_signature,
                    from_block,
                    to_block,
                )
            except ChainClientError as e:
                result.failed_batches += 1
                contiguous = False
                logger.warning(
                    "Skipping blocks %d to %d after fetch failure; they will be rescanned next run: %s",
                    from_block,
                    to_block,
                    e,
                )
            else:
                result.logs_fetched += len(logs)
                outcome = await store_logs(
                    logs,
                    source=self._source,
                    ledger=self._ledger,
                    origin="backfill",
                )
                result.inserted += outcome.inserted
                result.duplicates += outcome.duplicates
                result.record_failures += outcome.malformed + outcome.transient_failures
                if not outcome.complete:
                    contiguous = False
                    logger.warning(
                        "Blocks %d to %d had %d transient record failures; checkpoint held",
                        from_block,
                        to_block,
                        outcome.transient_failures,
                    )
                if contiguous:
                    await self._ledger.advance_checkpoint(self._token_address, to_block)
                    result.scanned_through = to_block

            if self._batch_delay > 0 and i < len(ranges) - 1:
                await asyncio.sleep(self._batch_delay)

        logger.info(
            "Historical data indexing completed: %d batches (%d failed), %d logs, %d new, %d duplicate",
            result.batches,
            result.failed_batches,
            result.logs_fetched,
            result.inserted,
            result.duplicates,
        )
        return result

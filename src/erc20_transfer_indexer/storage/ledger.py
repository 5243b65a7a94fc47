"""Durable, deduplicated ledger of Transfer records.

Every public call runs in its own session and commits before returning, so
a successful ``insert`` is durable. The unique constraint on
``(transaction_hash, log_index)`` is the only concurrency control: the
backfill scanner, the live watcher and the reconciliation timer may all
write the same event and converge on one row.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, or_, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from erc20_transfer_indexer.ingestor.models import TransferRecord
from erc20_transfer_indexer.storage.database import DatabaseManager
from erc20_transfer_indexer.storage.models import ScanCheckpointModel, TransferModel

if TYPE_CHECKING:
    from sqlalchemy.sql.expression import Select

logger = logging.getLogger(__name__)

EMPTY_LEDGER_MARK = 0


def _record_from_model(model: TransferModel) -> TransferRecord:
    return TransferRecord(
        transaction_hash=model.transaction_hash,
        block_number=model.block_number,
        block_timestamp=model.block_timestamp,
        from_address=model.from_address,
        to_address=model.to_address,
        value=model.value,
        token_address=model.token_address,
        log_index=model.log_index,
        transaction_index=model.transaction_index,
        created_at=model.created_at,
        id=model.id,
    )


def _check_page(limit: int, offset: int) -> None:
    if limit < 1:
        raise ValueError("limit must be >= 1")
    if offset < 0:
        raise ValueError("offset must be >= 0")


class TransferLedger:
    """Ledger store for Transfer records.

    Example:
        ```python
        ledger = TransferLedger(DatabaseManager("sqlite+aiosqlite:///./transfers.db"))
        await ledger.init_schema()
        await ledger.insert(record)
        page = await ledger.query_by_address("0xAbC...", limit=100, offset=0)
        ```
    """

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    @classmethod
    def from_url(cls, database_url: str, **kwargs: Any) -> TransferLedger:
        return cls(DatabaseManager(database_url, **kwargs))

    def _insert(self, model: type[Any]) -> Any:
        if self._db.engine.dialect.name == "postgresql":
            return pg_insert(model)
        return sqlite_insert(model)

    async def init_schema(self) -> None:
        """Create tables and indexes if they do not exist."""
        await self._db.init_schema_async()

    async def insert(self, record: TransferRecord) -> bool:
        """Insert a record unless its (transaction_hash, log_index) is already stored.

        Returns:
            True if a new row was created, False if the event was a duplicate.

        Raises:
            SQLAlchemyError: On any storage failure other than the duplicate key.
        """
        values = {
            "transaction_hash": record.transaction_hash.lower(),
            "block_number": record.block_number,
            "block_timestamp": record.block_timestamp,
            "from_address": record.from_address.lower(),
            "to_address": record.to_address.lower(),
            "value": record.value,
            "token_address": record.token_address.lower(),
            "log_index": record.log_index,
            "transaction_index": record.transaction_index,
            "created_at": datetime.now(UTC),
        }
        stmt = self._insert(TransferModel).values(**values)
        stmt = stmt.on_conflict_do_nothing(index_elements=["transaction_hash", "log_index"])
        async with self._db.get_async_session() as session:
            result = await session.execute(stmt)
            inserted = bool(result.rowcount)
        if not inserted:
            logger.debug("Duplicate transfer ignored: %s#%d", values["transaction_hash"], record.log_index)
        return inserted

    def _ordered(self, stmt: Select[Any]) -> Select[Any]:
        return stmt.order_by(
            TransferModel.block_number.desc(),
            TransferModel.transaction_index.desc(),
            TransferModel.log_index.desc(),
        )

    async def query_by_address(self, address: str, limit: int = 100, offset: int = 0) -> list[TransferRecord]:
        """Get transfers sent or received by an address, newest first.

        Args:
            address: Wallet address in any letter case.
            limit: Maximum number of results.
            offset: Number of results to skip.

        Returns:
            Records ordered by block, transaction index and log index, all descending.
        """
        _check_page(limit, offset)
        address = address.lower()
        stmt = self._ordered(
            select(TransferModel).where(
                or_(TransferModel.from_address == address, TransferModel.to_address == address)
            )
        )
        async with self._db.get_async_session() as session:
            result = await session.execute(stmt.limit(limit).offset(offset))
            return [_record_from_model(m) for m in result.scalars().all()]

    async def count_by_address(self, address: str) -> int:
        """Count transfers sent or received by an address."""
        address = address.lower()
        stmt = select(func.count()).select_from(TransferModel).where(
            or_(TransferModel.from_address == address, TransferModel.to_address == address)
        )
        async with self._db.get_async_session() as session:
            result = await session.execute(stmt)
            return int(result.scalar_one())

    async def query_all(self, limit: int = 100, offset: int = 0) -> list[TransferRecord]:
        """Get all transfers, newest first."""
        _check_page(limit, offset)
        stmt = self._ordered(select(TransferModel)).limit(limit).offset(offset)
        async with self._db.get_async_session() as session:
            result = await session.execute(stmt)
            return [_record_from_model(m) for m in result.scalars().all()]

    async def count_all(self) -> int:
        async with self._db.get_async_session() as session:
            result = await session.execute(select(func.count()).select_from(TransferModel))
            return int(result.scalar_one())

    async def high_water_mark(self) -> int:
        """Highest stored block number, or 0 when the ledger is empty."""
        async with self._db.get_async_session() as session:
            result = await session.execute(select(func.max(TransferModel.block_number)))
            value = result.scalar_one_or_none()
        return int(value) if value is not None else EMPTY_LEDGER_MARK

    async def scanned_through(self, token_address: str) -> int | None:
        """Block through which the backfill has fully succeeded, if recorded."""
        async with self._db.get_async_session() as session:
            result = await session.execute(
                select(ScanCheckpointModel.scanned_through_block).where(
                    ScanCheckpointModel.token_address == token_address.lower()
                )
            )
            value = result.scalar_one_or_none()
        return int(value) if value is not None else None

    async def advance_checkpoint(self, token_address: str, block_number: int) -> None:
        """Move the scan checkpoint forward to ``block_number``; never moves it back."""
        now = datetime.now(UTC)
        stmt = self._insert(ScanCheckpointModel).values(
            token_address=token_address.lower(),
            scanned_through_block=block_number,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["token_address"],
            set_={
                "scanned_through_block": stmt.excluded.scanned_through_block,
                "updated_at": stmt.excluded.updated_at,
            },
            where=ScanCheckpointModel.scanned_through_block < stmt.excluded.scanned_through_block,
        )
        async with self._db.get_async_session() as session:
            await session.execute(stmt)

    async def close(self) -> None:
        """Release all database connections."""
        await self._db.dispose_async()

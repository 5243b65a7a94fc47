"""Storage layer - Database schema and the transfer ledger."""

from erc20_transfer_indexer.storage.database import (
    DatabaseManager,
    create_async_db_engine,
    create_async_session_factory,
    init_async_db,
)
from erc20_transfer_indexer.storage.ledger import EMPTY_LEDGER_MARK, TransferLedger
from erc20_transfer_indexer.storage.models import Base, ScanCheckpointModel, TransferModel

__all__ = [
    "Base",
    "DatabaseManager",
    "EMPTY_LEDGER_MARK",
    "ScanCheckpointModel",
    "TransferLedger",
    "TransferModel",
    "create_async_db_engine",
    "create_async_session_factory",
    "init_async_db",
]

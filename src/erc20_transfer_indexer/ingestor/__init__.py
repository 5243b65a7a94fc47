"""Data ingestion layer - Transfer log retrieval, decoding and storage."""

from erc20_transfer_indexer.ingestor.backfill import BackfillResult, BackfillScanner
from erc20_transfer_indexer.ingestor.chain import (
    ChainClient,
    ChainClientError,
    LogSource,
    LogSubscription,
    RPCError,
)
from erc20_transfer_indexer.ingestor.models import TRANSFER_EVENT_SIGNATURE, RawLog, TransferRecord
from erc20_transfer_indexer.ingestor.normalizer import NormalizationError, normalize_transfer
from erc20_transfer_indexer.ingestor.reconciler import ReconciliationTimer
from erc20_transfer_indexer.ingestor.watcher import LiveWatcher

__all__ = [
    "BackfillResult",
    "BackfillScanner",
    "ChainClient",
    "ChainClientError",
    "LiveWatcher",
    "LogSource",
    "LogSubscription",
    "NormalizationError",
    "RPCError",
    "RawLog",
    "ReconciliationTimer",
    "TRANSFER_EVENT_SIGNATURE",
    "TransferRecord",
    "normalize_transfer",
]

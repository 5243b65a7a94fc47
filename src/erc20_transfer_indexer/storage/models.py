"""SQLAlchemy models for persistent storage.

This module defines the database schema for the transfer ledger and the
backfill scan checkpoint.
"""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import BigInteger, DateTime, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class TransferModel(Base):
    """Indexed ERC20 Transfer events, one row per (transaction_hash, log_index)."""

    __tablename__ = "transfers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    transaction_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    block_timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)

    from_address: Mapped[str] = mapped_column(String(42), nullable=False)
    to_address: Mapped[str] = mapped_column(String(42), nullable=False)

    # uint256 as decimal text; 78 digits covers 2**256 - 1.
    value: Mapped[str] = mapped_column(String(78), nullable=False)

    token_address: Mapped[str] = mapped_column(String(42), nullable=False)
    log_index: Mapped[int] = mapped_column(Integer, nullable=False)
    transaction_index: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        UniqueConstraint("transaction_hash", "log_index", name="uq_transfers_tx_log"),
        Index("idx_transfers_from_address", "from_address"),
        Index("idx_transfers_to_address", "to_address"),
        Index("idx_transfers_block_number", "block_number"),
        Index("idx_transfers_token_address", "token_address"),
    )


class ScanCheckpointModel(Base):
    """Highest block through which the backfill scanner has fully succeeded."""

    __tablename__ = "scan_checkpoints"

    token_address: Mapped[str] = mapped_column(String(42), primary_key=True)
    scanned_through_block: Mapped[int] = mapped_column(BigInteger, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

"""Data models for the ingestor module."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

# keccak256("Transfer(address,address,uint256)")
TRANSFER_EVENT_SIGNATURE = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"


def to_hex(value: Any) -> str:
    """Render an RPC field (HexBytes, bytes or str) as lower-case 0x-hex."""
    if isinstance(value, (bytes, bytearray, memoryview)):
        return "0x" + bytes(value).hex()
    text = str(value).lower()
    return text if text.startswith("0x") else "0x" + text


def _to_int(value: Any) -> int:
    if isinstance(value, str):
        return int(value, 16) if value.startswith("0x") else int(value)
    return int(value)


@dataclass(frozen=True)
class RawLog:
    """A chain log as delivered by the log source, before decoding."""

    address: str
    topics: tuple[str, ...]
    data: str
    block_number: int
    transaction_hash: str
    transaction_index: int
    log_index: int

    @classmethod
    def from_rpc(cls, log: Any) -> "RawLog":
        """Create a RawLog from a web3 log entry (AttributeDict or plain dict)."""
        return cls(
            address=to_hex(log["address"]),
            topics=tuple(to_hex(t) for t in log["topics"]),
            data=to_hex(log["data"]),
            block_number=_to_int(log["blockNumber"]),
            transaction_hash=to_hex(log["transactionHash"]),
            transaction_index=_to_int(log["transactionIndex"]),
            log_index=_to_int(log["logIndex"]),
        )

    @property
    def identity(self) -> str:
        """Human-readable identity used in log messages."""
        return f"{self.transaction_hash}#{self.log_index}"


@dataclass(frozen=True)
class TransferRecord:
    """Canonical ERC20 Transfer event as stored in the ledger."""

    transaction_hash: str
    block_number: int
    block_timestamp: int
    from_address: str
    to_address: str
    value: str
    token_address: str
    log_index: int
    transaction_index: int
    created_at: datetime | None = field(default=None, compare=False)
    id: int | None = field(default=None, compare=False)

    def to_dict(self) -> dict[str, Any]:
        """Render the record in the camelCase shape served by the query API."""
        return {
            "id": self.id,
            "transactionHash": self.transaction_hash,
            "blockNumber": self.block_number,
            "blockTimestamp": self.block_timestamp,
            "from": self.from_address,
            "to": self.to_address,
            "value": self.value,
            "tokenAddress": self.token_address,
            "logIndex": self.log_index,
            "transactionIndex": self.transaction_index,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }

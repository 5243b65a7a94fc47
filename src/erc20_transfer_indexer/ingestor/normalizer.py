"""Decoding of raw Transfer logs into canonical ledger records.

All payload interpretation happens here: the topic/data layout of
``Transfer(address indexed from, address indexed to, uint256 value)`` is

- ``topics[0]``: event signature hash
- ``topics[1]``: ``from``, left-padded to 32 bytes
- ``topics[2]``: ``to``, left-padded to 32 bytes
- ``data``: ``value`` as a single big-endian 32-byte word
"""

from __future__ import annotations

from erc20_transfer_indexer.ingestor.models import TRANSFER_EVENT_SIGNATURE, RawLog, TransferRecord

_WORD_HEX_LEN = 64
_ADDRESS_HEX_LEN = 40


class NormalizationError(ValueError):
    """Raised when a raw log does not have the Transfer event shape."""

    def __init__(self, log: RawLog, reason: str) -> None:
        super().__init__(f"Cannot normalize log {log.identity} (block {log.block_number}): {reason}")
        self.log = log
        self.reason = reason


def _word(log: RawLog, hexed: str, what: str) -> str:
    body = hexed[2:] if hexed.startswith("0x") else hexed
    if len(body) != _WORD_HEX_LEN:
        raise NormalizationError(log, f"{what} must be 32 bytes, got {len(body) // 2}")
    try:
        int(body, 16)
    except ValueError as e:
        raise NormalizationError(log, f"{what} is not hex") from e
    return body.lower()


def topic_to_address(log: RawLog, topic: str, what: str = "topic") -> str:
    """Extract the low-order 20 bytes of a 32-byte topic as a lower-case address."""
    body = _word(log, topic, what)
    return "0x" + body[-_ADDRESS_HEX_LEN:]


def normalize_transfer(log: RawLog, block_timestamp: int) -> TransferRecord:
    """Turn a raw Transfer log plus its block timestamp into a TransferRecord.

    Raises:
        NormalizationError: If the log is not a well-formed Transfer event.
    """
    if len(log.topics) != 3:
        raise NormalizationError(log, f"expected 3 topics, got {len(log.topics)}")
    if log.topics[0].lower() != TRANSFER_EVENT_SIGNATURE:
        raise NormalizationError(log, f"unexpected event signature {log.topics[0]}")
    if block_timestamp < 0:
        raise NormalizationError(log, "negative block timestamp")

    # uint256 stays a Python int (arbitrary precision) until rendered as text.
    value = int(_word(log, log.data, "data"), 16)

    return TransferRecord(
        transaction_hash=log.transaction_hash.lower(),
        block_number=log.block_number,
        block_timestamp=int(block_timestamp),
        from_address=topic_to_address(log, log.topics[1], "from topic"),
        to_address=topic_to_address(log, log.topics[2], "to topic"),
        value=str(value),
        token_address=log.address.lower(),
        log_index=log.log_index,
        transaction_index=log.transaction_index,
    )

"""Tests for Transfer log normalization."""

from dataclasses import replace

import pytest

from erc20_transfer_indexer.ingestor.models import TRANSFER_EVENT_SIGNATURE
from erc20_transfer_indexer.ingestor.normalizer import (
    NormalizationError,
    normalize_transfer,
    topic_to_address,
)


class TestNormalizeTransfer:
    """Tests for normalize_transfer."""

    def test_decodes_well_formed_log(self, log_factory) -> None:
        """All fields are decoded into the canonical record."""
        log = log_factory(
            block_number=5,
            log_index=3,
            transaction_index=2,
            from_address="0xAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAA",
            value=10**18,
        )

        record = normalize_transfer(log, 1_700_000_060)

        assert record.transaction_hash == log.transaction_hash
        assert record.block_number == 5
        assert record.block_timestamp == 1_700_000_060
        assert record.from_address == "0x" + "a" * 40
        assert record.to_address == "0x" + "b" * 40
        assert record.value == "1000000000000000000"
        assert record.token_address == log.address
        assert record.log_index == 3
        assert record.transaction_index == 2

    def test_value_keeps_full_uint256_precision(self, log_factory) -> None:
        """Values above 2**53 are not rounded."""
        value = 2**256 - 1
        record = normalize_transfer(log_factory(value=value), 0)
        assert record.value == str(value)

    def test_zero_value(self, log_factory) -> None:
        record = normalize_transfer(log_factory(value=0), 0)
        assert record.value == "0"

    def test_mixed_case_fields_are_lower_cased(self, log_factory) -> None:
        """Token address and transaction hash are canonicalized."""
        log = log_factory()
        log = replace(
            log,
            address=log.address.upper().replace("0X", "0x"),
            transaction_hash="0x" + "AB" * 32,
        )

        record = normalize_transfer(log, 0)

        assert record.token_address == log.address.lower()
        assert record.transaction_hash == "0x" + "ab" * 32

    def test_rejects_wrong_topic_count(self, log_factory) -> None:
        """An ERC721-style or anonymous log is not a Transfer."""
        log = log_factory()
        with pytest.raises(NormalizationError, match="expected 3 topics"):
            normalize_transfer(replace(log, topics=log.topics[:2]), 0)
        with pytest.raises(NormalizationError, match="expected 3 topics"):
            normalize_transfer(replace(log, topics=log.topics + ("0x" + "0" * 64,)), 0)

    def test_rejects_foreign_event_signature(self, log_factory) -> None:
        log = log_factory()
        approval = "0x8c5be1e5ebec7d5bd14f71427d1e84f3dd0314c0f7b2291e5b200ac8c7c3b925"
        with pytest.raises(NormalizationError, match="unexpected event signature"):
            normalize_transfer(replace(log, topics=(approval, *log.topics[1:])), 0)

    def test_accepts_upper_case_signature(self, log_factory) -> None:
        log = log_factory()
        upper = "0x" + TRANSFER_EVENT_SIGNATURE[2:].upper()
        record = normalize_transfer(replace(log, topics=(upper, *log.topics[1:])), 0)
        assert record.value == "1"

    def test_rejects_short_data(self, log_factory) -> None:
        with pytest.raises(NormalizationError, match="data must be 32 bytes"):
            normalize_transfer(replace(log_factory(), data="0x01"), 0)

    def test_rejects_non_hex_data(self, log_factory) -> None:
        with pytest.raises(NormalizationError, match="data is not hex"):
            normalize_transfer(replace(log_factory(), data="0x" + "zz" * 32), 0)

    def test_rejects_negative_timestamp(self, log_factory) -> None:
        with pytest.raises(NormalizationError, match="negative block timestamp"):
            normalize_transfer(log_factory(), -1)

    def test_error_carries_log_and_reason(self, log_factory) -> None:
        log = replace(log_factory(block_number=9), data="0x")
        with pytest.raises(NormalizationError) as exc_info:
            normalize_transfer(log, 0)

        assert exc_info.value.log is log
        assert "block 9" in str(exc_info.value)
        assert isinstance(exc_info.value, ValueError)


class TestTopicToAddress:
    """Tests for topic_to_address."""

    def test_takes_low_order_bytes(self, log_factory) -> None:
        topic = "0x" + "0" * 24 + "De0B295669a9FD93d5F28D9Ec85E40f4cb697BAe"
        assert topic_to_address(log_factory(), topic) == "0xde0b295669a9fd93d5f28d9ec85e40f4cb697bae"

    def test_rejects_short_topic(self, log_factory) -> None:
        with pytest.raises(NormalizationError, match="from topic must be 32 bytes"):
            topic_to_address(log_factory(), "0x" + "a" * 40, "from topic")

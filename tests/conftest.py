"""Pytest configuration and fixtures."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

import pytest

from erc20_transfer_indexer.ingestor.chain import ChainClientError, LogSubscription
from erc20_transfer_indexer.ingestor.models import TRANSFER_EVENT_SIGNATURE, RawLog
from erc20_transfer_indexer.storage.ledger import TransferLedger

TOKEN_ADDRESS = "0x5fbdb2315678afecb367f032d93f642f64180aa3"
ALICE = "0xaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaa"
BOB = "0xbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbb"


def address_topic(address: str) -> str:
    """Left-pad a 20-byte address into a 32-byte topic."""
    return "0x" + "0" * 24 + address.lower().removeprefix("0x")


def make_log(
    *,
    block_number: int = 1,
    log_index: int = 0,
    transaction_index: int = 0,
    tx_hash: str | None = None,
    from_address: str = ALICE,
    to_address: str = BOB,
    value: int = 1,
    token_address: str = TOKEN_ADDRESS,
) -> RawLog:
    """Build a well-formed Transfer log."""
    return RawLog(
        address=token_address,
        topics=(TRANSFER_EVENT_SIGNATURE, address_topic(from_address), address_topic(to_address)),
        data="0x" + format(value, "064x"),
        block_number=block_number,
        transaction_hash=tx_hash or "0x" + format(block_number * 1000 + log_index, "064x"),
        transaction_index=transaction_index,
        log_index=log_index,
    )


class FakeLogSource:
    """In-memory log source.

    ``logs`` is the whole chain history; ``head`` the current block number.
    Block ranges listed in ``failing_ranges`` raise ``ChainClientError`` on
    ``get_logs``.
    """

    def __init__(self, logs: list[RawLog] | None = None, head: int = 0) -> None:
        self.logs = list(logs or [])
        self.head = head
        self.failing_ranges: set[tuple[int, int]] = set()
        self.failing_blocks: set[int] = set()
        self.get_logs_calls: list[tuple[int, int]] = []
        self.subscriptions: list[LogSubscription] = []
        self.poll_interval = 0.01
        self.closed = False

    async def get_current_block_number(self) -> int:
        return self.head

    async def get_logs(
        self,
        contract_address: str,
        event_signature: str,
        from_block: int,
        to_block: int,
    ) -> list[RawLog]:
        self.get_logs_calls.append((from_block, to_block))
        if (from_block, to_block) in self.failing_ranges:
            raise ChainClientError(f"getLogs {from_block}-{to_block} failed")
        return sorted(
            (
                log
                for log in self.logs
                if log.address == contract_address.lower() and from_block <= log.block_number <= to_block
            ),
            key=lambda log: (log.block_number, log.log_index),
        )

    async def get_block(self, block_number: int) -> dict[str, Any]:
        if block_number in self.failing_blocks:
            raise ChainClientError(f"getBlock {block_number} failed")
        return {"number": block_number, "timestamp": 1_700_000_000 + block_number * 12}

    def subscribe_logs(
        self,
        contract_address: str,
        event_signature: str,
        on_batch: Any,
        on_error: Any,
        *,
        from_block: int | None = None,
    ) -> LogSubscription:
        subscription = LogSubscription(
            self,
            contract_address,
            event_signature,
            on_batch,
            on_error,
            from_block=from_block,
            poll_interval=self.poll_interval,
        ).start()
        self.subscriptions.append(subscription)
        return subscription

    async def aclose(self) -> None:
        self.closed = True


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll ``predicate`` until it holds or ``timeout`` expires."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)


@pytest.fixture
def token_address() -> str:
    """Token contract under index."""
    return TOKEN_ADDRESS


@pytest.fixture
def log_factory() -> Callable[..., RawLog]:
    """Factory for well-formed Transfer logs."""
    return make_log


@pytest.fixture
def fake_source() -> FakeLogSource:
    """Empty in-memory log source."""
    return FakeLogSource()


@pytest.fixture
def wait_for() -> Callable[..., Any]:
    return wait_until


@pytest.fixture
async def ledger(tmp_path):
    """File-backed SQLite ledger, so every session sees the same data."""
    ledger = TransferLedger.from_url(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    await ledger.init_schema()
    yield ledger
    await ledger.close()

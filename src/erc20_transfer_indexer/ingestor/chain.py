"""Read-only chain client used as the indexer's log source.

This module provides:
- The ``LogSource`` protocol consumed by the backfill scanner and live watcher
- ``ChainClient``, a web3 implementation with rate limiting, retry with
  exponential backoff, failover to a secondary RPC and optional Redis
  caching of block headers
- ``LogSubscription``, a polling ``eth_getLogs`` subscription handle
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Protocol, cast

import aiohttp
from redis.asyncio import Redis
from web3 import AsyncWeb3
from web3.exceptions import Web3Exception
from web3.middleware import ExtraDataToPOAMiddleware
from web3.providers import AsyncHTTPProvider

from erc20_transfer_indexer.ingestor.models import RawLog

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_BLOCK_CACHE_TTL_SECONDS = 3600  # blocks are immutable
DEFAULT_MAX_REQUESTS_PER_SECOND = 10
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_SECONDS = 1.0
DEFAULT_POLL_INTERVAL_SECONDS = 4.0
DEFAULT_MAX_POLL_RANGE_BLOCKS = 1000

LogBatchCallback = Callable[[list[RawLog]], Awaitable[None]]
ErrorCallback = Callable[[Exception], Awaitable[None]]


class ChainClientError(Exception):
    """Base exception for chain client errors."""


class RPCError(ChainClientError):
    """Raised when an RPC call fails on every configured endpoint."""


class LogSource(Protocol):
    """Read-only view of the chain needed by the ingestion pipeline."""

    async def get_logs(
        self,
        contract_address: str,
        event_signature: str,
        from_block: int,
        to_block: int,
    ) -> list[RawLog]: ...

    async def get_block(self, block_number: int) -> dict[str, Any]: ...

    def subscribe_logs(
        self,
        contract_address: str,
        event_signature: str,
        on_batch: LogBatchCallback,
        on_error: ErrorCallback,
        *,
        from_block: int | None = None,
    ) -> LogSubscription: ...

    async def get_current_block_number(self) -> int: ...


@dataclass
class RateLimiter:
    """Token bucket rate limiter."""

    max_tokens: float
    refill_rate: float  # tokens per second
    tokens: float
    last_refill: float

    @classmethod
    def create(cls, max_requests_per_second: float) -> RateLimiter:
        """Create a rate limiter with specified max requests per second."""
        return cls(
            max_tokens=max_requests_per_second,
            refill_rate=max_requests_per_second,
            tokens=max_requests_per_second,
            last_refill=time.monotonic(),
        )

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.max_tokens, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    async def acquire(self, tokens: float = 1.0) -> None:
        """Acquire tokens, waiting if necessary."""
        while True:
            self._refill()
            if self.tokens >= tokens:
                self.tokens -= tokens
                return
            wait_time = (tokens - self.tokens) / self.refill_rate
            await asyncio.sleep(wait_time)


class LogSubscription:
    """Polling subscription to new logs of one event on one contract.

    Each poll fetches ``[next_block, head]`` (bounded by ``max_range``) and
    hands non-empty results to ``on_batch``. The first error is reported to
    ``on_error`` and ends the subscription; resubscribing is the caller's job.
    """

    def __init__(
        self,
        source: LogSource,
        contract_address: str,
        event_signature: str,
        on_batch: LogBatchCallback,
        on_error: ErrorCallback,
        *,
        from_block: int | None = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        max_range: int = DEFAULT_MAX_POLL_RANGE_BLOCKS,
    ) -> None:
        self._source = source
        self._contract_address = contract_address
        self._event_signature = event_signature
        self._on_batch = on_batch
        self._on_error = on_error
        self._next_block = from_block
        self._poll_interval = poll_interval
        self._max_range = max_range

        self._stop_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    @property
    def next_block(self) -> int | None:
        """First block the next poll will ask for."""
        return self._next_block

    @property
    def done(self) -> bool:
        return self._task is not None and self._task.done()

    def start(self) -> LogSubscription:
        if self._task is None:
            self._task = asyncio.create_task(self._run())
        return self

    def cancel(self) -> None:
        """Stop polling. In-flight calls are abandoned."""
        self._stop_event.set()
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def wait(self) -> None:
        """Wait until the subscription has ended (error or cancel)."""
        if self._task is not None:
            await asyncio.wait({self._task})

    async def _run(self) -> None:
        try:
            if self._next_block is None:
                self._next_block = await self._source.get_current_block_number() + 1
            while not self._stop_event.is_set():
                head = await self._source.get_current_block_number()
                caught_up = True
                if head >= self._next_block:
                    to_block = min(head, self._next_block + self._max_range - 1)
                    logs = await self._source.get_logs(
                        self._contract_address,
                        self._event_signature,
                        self._next_block,
                        to_block,
                    )
                    self._next_block = to_block + 1
                    caught_up = to_block >= head
                    if logs:
                        await self._on_batch(logs)
                if caught_up:
                    with contextlib.suppress(TimeoutError):
                        await asyncio.wait_for(self._stop_event.wait(), timeout=self._poll_interval)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.debug("Log subscription ended with error: %s", e)
            await self._on_error(e)


class ChainClient:
    """Web3-backed log source with caching and rate limiting.

    Example:
        ```python
        client = ChainClient(
            rpc_url="https://ethereum-sepolia-rpc.publicnode.com",
            redis=Redis.from_url("redis://localhost:6379"),
        )
        head = await client.get_current_block_number()
        logs = await client.get_logs(token, TRANSFER_EVENT_SIGNATURE, head - 100, head)
        ```
    """

    def __init__(
        self,
        rpc_url: str,
        *,
        fallback_rpc_url: str | None = None,
        redis: Redis | None = None,
        block_cache_ttl_seconds: int = DEFAULT_BLOCK_CACHE_TTL_SECONDS,
        max_requests_per_second: float = DEFAULT_MAX_REQUESTS_PER_SECOND,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
    ) -> None:
        """Initialize the chain client.

        Args:
            rpc_url: Primary JSON-RPC endpoint URL.
            fallback_rpc_url: Optional fallback RPC URL for failover.
            redis: Optional Redis client for caching block headers.
            block_cache_ttl_seconds: Cache TTL for block headers.
            max_requests_per_second: Rate limit for RPC calls.
            max_retries: Maximum attempts per endpoint.
            retry_delay_seconds: Initial delay between retries.
            poll_interval_seconds: Polling cadence of log subscriptions.
        """
        self._rpc_url = rpc_url
        self._fallback_rpc_url = fallback_rpc_url
        self._redis = redis
        self._block_cache_ttl = block_cache_ttl_seconds
        self._max_retries = max_retries
        self._retry_delay = retry_delay_seconds
        self._poll_interval = poll_interval_seconds

        self._w3 = self._new_web3_client(rpc_url)
        self._w3_fallback: AsyncWeb3[AsyncHTTPProvider] | None = None
        if fallback_rpc_url:
            self._w3_fallback = self._new_web3_client(fallback_rpc_url)

        self._rate_limiter = RateLimiter.create(max_requests_per_second)

        # Track primary RPC health
        self._primary_healthy = True
        self._last_primary_check = 0.0
        self._primary_recovery_interval = 60.0

        self._cache_prefix = "chain:"

    def _new_web3_client(self, rpc_url: str) -> AsyncWeb3[AsyncHTTPProvider]:
        client = AsyncWeb3(AsyncHTTPProvider(rpc_url))
        try:
            client.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
        except Exception as e:
            logger.warning("Failed to inject PoA middleware (rpc=%s): %s", rpc_url, e)
        return client

    async def _get_cached(self, key: str) -> str | None:
        if not self._redis:
            return None
        try:
            value = await self._redis.get(key)
            if isinstance(value, bytes):
                return value.decode()
            return str(value) if value is not None else None
        except Exception as e:
            logger.warning("Cache get failed: %s", e)
            return None

    async def _set_cached(self, key: str, value: str, ttl: int) -> None:
        if not self._redis:
            return
        try:
            await self._redis.set(key, value, ex=ttl)
        except Exception as e:
            logger.warning("Cache set failed: %s", e)

    def _should_try_primary(self) -> bool:
        if self._primary_healthy:
            return True
        now = time.monotonic()
        if now - self._last_primary_check > self._primary_recovery_interval:
            self._last_primary_check = now
            return True
        return False

    async def _call_endpoint(
        self,
        w3: AsyncWeb3[AsyncHTTPProvider],
        label: str,
        func_name: str,
        *args: Any,
    ) -> tuple[bool, Any, Exception | None]:
        delay = self._retry_delay
        last_error: Exception | None = None
        for attempt in range(self._max_retries):
            try:
                method = getattr(w3.eth, func_name)
                return True, await method(*args), None
            except (Web3Exception, aiohttp.ClientError, TimeoutError) as e:
                last_error = e
                logger.warning(
                    "%s RPC %s failed (attempt %d/%d): %s",
                    label,
                    func_name,
                    attempt + 1,
                    self._max_retries,
                    e,
                )
                if attempt < self._max_retries - 1:
                    await asyncio.sleep(delay)
                    delay *= 2  # Exponential backoff
        return False, None, last_error

    async def _execute_with_retry(self, func_name: str, *args: Any) -> Any:
        """Execute an RPC call with retry and failover logic.

        Raises:
            RPCError: If all retries and failover fail.
        """
        await self._rate_limiter.acquire()

        last_error: Exception | None = None

        if self._should_try_primary():
            ok, result, last_error = await self._call_endpoint(self._w3, "Primary", func_name, *args)
            if ok:
                self._primary_healthy = True
                return result
            self._primary_healthy = False
            self._last_primary_check = time.monotonic()

        if self._w3_fallback:
            ok, result, err = await self._call_endpoint(self._w3_fallback, "Fallback", func_name, *args)
            if ok:
                logger.info("Fallback RPC succeeded for %s", func_name)
                return result
            last_error = err

        raise RPCError(f"RPC call {func_name} failed after all retries: {last_error}")

    async def get_current_block_number(self) -> int:
        """Get the current head block number."""
        return int(await self._execute_with_retry("get_block_number"))

    async def get_block(self, block_number: int) -> dict[str, Any]:
        """Get a block header ({"number", "timestamp"}) by number."""
        cache_key = f"{self._cache_prefix}block:{block_number}"
        cached = await self._get_cached(cache_key)
        if cached is not None:
            return cast(dict[str, Any], json.loads(cached))

        block = await self._execute_with_retry("get_block", block_number)
        header = {"number": int(block["number"]), "timestamp": int(block["timestamp"])}
        await self._set_cached(cache_key, json.dumps(header), ttl=self._block_cache_ttl)
        return header

    async def get_logs(
        self,
        contract_address: str,
        event_signature: str,
        from_block: int,
        to_block: int,
    ) -> list[RawLog]:
        """Fetch logs of one event emitted by one contract over a closed block range.

        Returns:
            Logs in ascending (block_number, log_index) order.
        """
        if from_block > to_block:
            return []
        logs = await self._execute_with_retry(
            "get_logs",
            {
                "address": AsyncWeb3.to_checksum_address(contract_address),
                "topics": [event_signature],
                "fromBlock": from_block,
                "toBlock": to_block,
            },
        )
        raw = [RawLog.from_rpc(log) for log in logs]
        raw.sort(key=lambda log: (log.block_number, log.log_index))
        return raw

    def subscribe_logs(
        self,
        contract_address: str,
        event_signature: str,
        on_batch: LogBatchCallback,
        on_error: ErrorCallback,
        *,
        from_block: int | None = None,
    ) -> LogSubscription:
        """Start a polling subscription; see ``LogSubscription``."""
        return LogSubscription(
            self,
            contract_address,
            event_signature,
            on_batch,
            on_error,
            from_block=from_block,
            poll_interval=self._poll_interval,
        ).start()

    async def health_check(self) -> bool:
        """Check if the client can reach an RPC endpoint."""
        try:
            await self.get_current_block_number()
            return True
        except RPCError:
            return False

    async def aclose(self) -> None:
        """Close async HTTP provider sessions and the Redis client."""
        providers = [self._w3.provider]
        if self._w3_fallback is not None:
            providers.append(self._w3_fallback.provider)

        for provider in providers:
            disconnect = getattr(provider, "disconnect", None)
            if not callable(disconnect):
                continue
            try:
                result = disconnect()
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.warning("Failed to close RPC provider session: %s", e)

        if self._redis is not None:
            try:
                await self._redis.aclose()
            except Exception as e:
                logger.warning("Failed to close Redis client: %s", e)
            self._redis = None

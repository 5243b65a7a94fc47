"""HTTP query API over the transfer ledger, with start/stop control of an attached indexer."""

from __future__ import annotations

import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from aiohttp import web

from erc20_transfer_indexer.storage.ledger import TransferLedger
from erc20_transfer_indexer.supervisor import IndexerSupervisor, SupervisorState

logger = logging.getLogger(__name__)

ADDRESS_PATTERN = re.compile(r"^0x[a-fA-F0-9]{40}$")
DEFAULT_PAGE_LIMIT = 100
DEFAULT_MAX_LIMIT = 1000

LEDGER_KEY = web.AppKey("ledger", TransferLedger)
TOKEN_ADDRESS_KEY = web.AppKey("token_address", str)
MAX_LIMIT_KEY = web.AppKey("max_limit", int)
SUPERVISOR_KEY = web.AppKey("supervisor", IndexerSupervisor)

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


class QueryParameterError(ValueError):
    """Raised when paging parameters are malformed or out of range."""


@dataclass(frozen=True)
class Pagination:
    total: int
    limit: int
    offset: int

    @property
    def has_more(self) -> bool:
        return self.offset + self.limit < self.total

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "limit": self.limit,
            "offset": self.offset,
            "hasMore": self.has_more,
        }


def _error(message: str, status: int) -> web.Response:
    return web.json_response({"error": message}, status=status)


def _int_param(request: web.Request, name: str, default: int) -> int:
    raw = request.query.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise QueryParameterError(f"{name} must be an integer") from None


def parse_page(request: web.Request, max_limit: int) -> tuple[int, int]:
    """Read ``limit``/``offset`` from the query string.

    Raises:
        QueryParameterError: If either value is not an integer or is out of range.
    """
    limit = _int_param(request, "limit", DEFAULT_PAGE_LIMIT)
    offset = _int_param(request, "offset", 0)
    if limit > max_limit:
        raise QueryParameterError(f"Limit cannot exceed {max_limit}")
    if limit < 1:
        raise QueryParameterError("Limit must be at least 1")
    if offset < 0:
        raise QueryParameterError("Offset cannot be negative")
    return limit, offset


def _ledger(request: web.Request) -> TransferLedger:
    return request.app[LEDGER_KEY]


async def health_handler(request: web.Request) -> web.Response:
    return web.json_response({"status": "ok", "timestamp": datetime.now(UTC).isoformat()})


async def transfers_by_address_handler(request: web.Request) -> web.Response:
    """Transfers sent or received by one address, newest first."""
    address = request.match_info["address"]
    if not ADDRESS_PATTERN.match(address):
        return _error("Invalid Ethereum address format", 400)
    try:
        limit, offset = parse_page(request, request.app[MAX_LIMIT_KEY])
    except QueryParameterError as e:
        return _error(str(e), 400)

    ledger = _ledger(request)
    transfers = await ledger.query_by_address(address, limit=limit, offset=offset)
    total = await ledger.count_by_address(address)
    return web.json_response(
        {
            "data": [t.to_dict() for t in transfers],
            "pagination": Pagination(total=total, limit=limit, offset=offset).to_dict(),
        }
    )


async def all_transfers_handler(request: web.Request) -> web.Response:
    try:
        limit, offset = parse_page(request, request.app[MAX_LIMIT_KEY])
    except QueryParameterError as e:
        return _error(str(e), 400)

    transfers = await _ledger(request).query_all(limit=limit, offset=offset)
    return web.json_response(
        {
            "data": [t.to_dict() for t in transfers],
            "pagination": {"limit": limit, "offset": offset},
        }
    )


async def status_handler(request: web.Request) -> web.Response:
    ledger = _ledger(request)
    token_address = request.app[TOKEN_ADDRESS_KEY]
    supervisor = request.app.get(SUPERVISOR_KEY)
    return web.json_response(
        {
            "lastIndexedBlock": await ledger.high_water_mark(),
            "scannedThroughBlock": await ledger.scanned_through(token_address) if token_address else None,
            "tokenAddress": token_address or None,
            "indexerRunning": bool(supervisor is not None and supervisor.is_running),
        }
    )


async def start_indexer_handler(request: web.Request) -> web.Response:
    """Start the attached indexer; 400 when it is already starting or running."""
    supervisor = request.app.get(SUPERVISOR_KEY)
    if supervisor is None:
        return _error("Indexer is not available in this mode", 400)
    if supervisor.state not in (SupervisorState.STOPPED, SupervisorState.ERROR):
        return _error("Indexer is already running", 400)
    try:
        await supervisor.start()
    except Exception as e:
        logger.error("Error starting indexer: %s", e)
        return _error("Failed to start indexer", 500)
    return web.json_response({"message": "Indexer started successfully"})


async def stop_indexer_handler(request: web.Request) -> web.Response:
    """Stop the attached indexer; the ledger stays open for queries."""
    supervisor = request.app.get(SUPERVISOR_KEY)
    if supervisor is None or not supervisor.is_running:
        return _error("Indexer is not running", 400)
    try:
        await supervisor.stop(release_resources=False)
    except Exception as e:
        logger.error("Error stopping indexer: %s", e)
        return _error("Failed to stop indexer", 500)
    return web.json_response({"message": "Indexer stopped successfully"})


@web.middleware
async def error_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    """Render unknown routes and unhandled errors as JSON."""
    try:
        return await handler(request)
    except web.HTTPNotFound:
        return _error("Route not found", 404)
    except web.HTTPException:
        raise
    except Exception as e:
        logger.error("Unhandled error serving %s %s: %s", request.method, request.path, e, exc_info=True)
        return _error("Internal server error", 500)


def create_app(
    ledger: TransferLedger,
    *,
    token_address: str | None = None,
    max_limit: int = DEFAULT_MAX_LIMIT,
    supervisor: IndexerSupervisor | None = None,
) -> web.Application:
    """Build the query application.

    Args:
        ledger: Ledger to read from. The app never writes.
        token_address: Indexed token contract, reported by ``/api/status``.
        max_limit: Largest accepted page size.
        supervisor: Attached indexer, if any; drives ``indexerRunning`` and
            the ``/api/indexer/start`` and ``/api/indexer/stop`` routes.
    """
    app = web.Application(middlewares=[error_middleware])
    app[LEDGER_KEY] = ledger
    app[TOKEN_ADDRESS_KEY] = (token_address or "").lower()
    app[MAX_LIMIT_KEY] = max_limit
    if supervisor is not None:
        app[SUPERVISOR_KEY] = supervisor

    app.router.add_get("/health", health_handler)
    app.router.add_get("/api/transfers/{address}", transfers_by_address_handler)
    app.router.add_get("/api/transfers", all_transfers_handler)
    app.router.add_get("/api/status", status_handler)
    app.router.add_post("/api/indexer/start", start_indexer_handler)
    app.router.add_post("/api/indexer/stop", stop_indexer_handler)
    return app


async def start_api_server(app: web.Application, host: str = "0.0.0.0", port: int = 3001) -> web.AppRunner:
    """Serve ``app`` in the background; pass the runner to ``stop_api_server``."""
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    logger.info("Query API listening on http://%s:%d", host, port)
    return runner


async def stop_api_server(runner: web.AppRunner) -> None:
    await runner.cleanup()
    logger.info("Query API stopped")

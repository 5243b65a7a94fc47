"""Command line entry point: ``python -m erc20_transfer_indexer <command>``."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import signal
import sys
from dataclasses import asdict

from erc20_transfer_indexer.api import create_app, start_api_server, stop_api_server
from erc20_transfer_indexer.config import Settings, get_settings
from erc20_transfer_indexer.ingestor.backfill import BackfillScanner
from erc20_transfer_indexer.storage.ledger import TransferLedger
from erc20_transfer_indexer.supervisor import IndexerSupervisor, build_chain_client

logger = logging.getLogger(__name__)

COMMANDS = ("run", "backfill", "serve", "status")


def _install_stop_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop_event.set)


async def run_indexer(settings: Settings) -> None:
    """Index continuously and serve the query API until SIGINT/SIGTERM."""
    supervisor = IndexerSupervisor.from_settings(settings)
    stop_event = asyncio.Event()
    _install_stop_handlers(stop_event)

    await supervisor.start()
    runner = None
    try:
        app = create_app(
            supervisor.ledger,
            token_address=supervisor.token_address,
            max_limit=settings.api.max_limit,
            supervisor=supervisor,
        )
        runner = await start_api_server(app, settings.api.host, settings.api.port)
        await stop_event.wait()
        logger.info("Shutdown signal received")
    finally:
        if runner is not None:
            await stop_api_server(runner)
        await supervisor.stop()


async def run_backfill(settings: Settings) -> dict[str, object]:
    """Run one backfill pass and return its summary."""
    token_address = settings.indexer.token_address
    if not token_address:
        raise ValueError("TOKEN_CONTRACT_ADDRESS is required in environment variables")
    source = build_chain_client(settings)
    ledger = TransferLedger.from_url(settings.database.url)
    try:
        await ledger.init_schema()
        scanner = BackfillScanner(
            source,
            ledger,
            token_address=token_address,
            genesis_block=settings.indexer.start_block,
            batch_size=settings.indexer.batch_size,
            batch_delay_seconds=settings.indexer.batch_delay_seconds,
        )
        result = await scanner.run()
        return asdict(result)
    finally:
        await source.aclose()
        await ledger.close()


async def run_server(settings: Settings) -> None:
    """Serve the query API over an existing ledger, without indexing."""
    ledger = TransferLedger.from_url(settings.database.url)
    stop_event = asyncio.Event()
    _install_stop_handlers(stop_event)
    try:
        await ledger.init_schema()
        app = create_app(
            ledger,
            token_address=settings.indexer.token_address,
            max_limit=settings.api.max_limit,
        )
        runner = await start_api_server(app, settings.api.host, settings.api.port)
        try:
            await stop_event.wait()
        finally:
            await stop_api_server(runner)
    finally:
        await ledger.close()


async def show_status(settings: Settings) -> dict[str, object]:
    """Report the ledger's high-water mark, scan checkpoint and row count."""
    ledger = TransferLedger.from_url(settings.database.url)
    try:
        await ledger.init_schema()
        token_address = settings.indexer.token_address
        return {
            "tokenAddress": token_address,
            "lastIndexedBlock": await ledger.high_water_mark(),
            "scannedThroughBlock": await ledger.scanned_through(token_address) if token_address else None,
            "transferCount": await ledger.count_all(),
        }
    finally:
        await ledger.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="erc20_transfer_indexer",
        description="Index ERC20 Transfer events into a queryable ledger",
    )
    parser.add_argument(
        "command",
        choices=COMMANDS,
        help="run: index + API | backfill: one pass | serve: API only | status: ledger summary",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    logging.basicConfig(
        level=settings.get_logging_level(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        settings.validate_requirements(command=args.command)
    except ValueError as e:
        logger.error("%s", e)
        return 1
    logger.info("Configuration: %s", settings.redacted_summary())

    if args.command == "run":
        asyncio.run(run_indexer(settings))
    elif args.command == "backfill":
        print(json.dumps(asyncio.run(run_backfill(settings)), indent=2))
    elif args.command == "serve":
        asyncio.run(run_server(settings))
    else:
        print(json.dumps(asyncio.run(show_status(settings)), indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())

import argparse
import asyncio
import contextlib
import logging
import signal
import sqlite3
from typing import Any, Awaitable, Callable, Optional

from .backfill import backfill_holders, cleanup_error_cursors, delete_cursor, reset_cursor, sync_tokens
from .config import AppConfig, ConfigError, load_config
from .health import HealthReporter
from .metrics import refresh_metrics
from .processors import IndexerContext
from .reader import ChainLogReader
from .rpc import RPCClient
from .scheduler import Indexer
from .store import Storage

logger = logging.getLogger(__name__)


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


async def run_indexer(cfg: AppConfig, storage: Storage) -> None:
    async with RPCClient(cfg.http_rpc_url, timeout_sec=cfg.rpc_timeout_sec) as rpc:
        indexer = Indexer(cfg, storage, rpc)
        health = HealthReporter(storage, indexer.stats, cfg.unhealthy_error_threshold)
        await health.start(cfg.api_host, cfg.api_port)

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError):
                loop.add_signal_handler(sig, indexer.stop)

        logger.info(
            "indexer started: chain=%d poll=%ss confirmations=%d",
            cfg.chain_id,
            cfg.poll_interval_sec,
            cfg.confirmations,
        )
        try:
            await indexer.run()
        finally:
            await health.stop()
            logger.info("indexer stopped after %d cycles", indexer.stats.cycle_count)


async def with_context(cfg: AppConfig, storage: Storage, fn: Callable[[IndexerContext], Awaitable[Any]]) -> Any:
    async with RPCClient(cfg.http_rpc_url, timeout_sec=cfg.rpc_timeout_sec) as rpc:
        reader = ChainLogReader(
            rpc,
            max_block_span=cfg.max_block_span,
            retry_attempts=cfg.rpc_retry_attempts,
            retry_delay_sec=cfg.rpc_retry_delay_sec,
        )
        return await fn(IndexerContext(cfg=cfg, storage=storage, reader=reader))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Launchpad blockchain event indexer")
    parser.add_argument(
        "--config",
        default="./config.json",
        help="config file path (default: ./config.json)",
    )
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("run", help="poll the chain and keep the projection up to date (default)")

    p = sub.add_parser("backfill-holders", help="rebuild holder balances from Transfer history")
    p.add_argument("--token", help="only this token address (default: every on-chain token)")
    p.add_argument("--reset", action="store_true", help="clear stored holders and transfers first")

    sub.add_parser("sync-tokens", help="create tokens listed by the factory but missing locally, then backfill holders")

    sub.add_parser("cleanup-errors", help="delete every cursor carrying an error")

    p = sub.add_parser("reset-cursor", help="set a stream's last indexed block")
    p.add_argument("--address", required=True)
    p.add_argument("--event", required=True, help="event type, e.g. Transfer or Committed")
    p.add_argument("--block", required=True, type=int, help="last indexed block; polling resumes at block + 1")

    p = sub.add_parser("delete-cursor", help="forget a stream so it restarts from its start block")
    p.add_argument("--address", required=True)
    p.add_argument("--event", required=True)

    sub.add_parser("refresh-metrics", help="recompute price, volume and change for every token")
    return parser


def main(argv: Optional[list] = None) -> None:
    args = build_parser().parse_args(argv)
    command = args.command or "run"

    try:
        cfg = load_config(args.config)
    except ConfigError as e:
        raise SystemExit(f"config error: {e}") from e
    setup_logging(cfg.log_level)

    if command == "run" and not cfg.enabled:
        logger.info("INDEXER_ENABLED is false, nothing to do")
        return

    try:
        storage = Storage(cfg.sqlite_path)
    except (sqlite3.Error, OSError) as e:
        raise SystemExit(f"cannot open database {cfg.sqlite_path}: {e}") from e

    try:
        if command == "run":
            asyncio.run(run_indexer(cfg, storage))
        elif command == "backfill-holders":
            results = asyncio.run(
                with_context(cfg, storage, lambda ctx: backfill_holders(ctx, args.token, reset=args.reset))
            )
            for token, holders in results.items():
                print(f"{token}\t{holders} holders")
        elif command == "sync-tokens":
            results = asyncio.run(with_context(cfg, storage, sync_tokens))
            for token, holders in results.items():
                print(f"{token}\t{holders} holders")
        elif command == "cleanup-errors":
            removed = cleanup_error_cursors(storage)
            print(f"removed {len(removed)} errored cursors")
        elif command == "reset-cursor":
            ctx = IndexerContext(cfg=cfg, storage=storage, reader=None)
            key = reset_cursor(ctx, args.address, args.event, args.block)
            print(f"{key} -> {args.block}")
        elif command == "delete-cursor":
            ctx = IndexerContext(cfg=cfg, storage=storage, reader=None)
            deleted = delete_cursor(ctx, args.address, args.event)
            print("deleted" if deleted else "not found")
        elif command == "refresh-metrics":
            refreshed = refresh_metrics(storage)
            print(f"refreshed {refreshed} tokens")
    except KeyboardInterrupt:
        pass
    except ValueError as e:
        raise SystemExit(str(e)) from e
    finally:
        storage.close()


if __name__ == "__main__":
    main()

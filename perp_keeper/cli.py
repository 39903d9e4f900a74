"""perp-keeper command line entrypoint."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from typing import List, Optional

from solders.pubkey import Pubkey

from perp_keeper import __version__
from perp_keeper.config import KeeperConfig, load_config
from perp_keeper.errors import ConfigurationError, KeeperError
from perp_keeper.logging_config import setup_logging
from perp_keeper.scanner import MarketScanner
from perp_keeper.service import KeeperService
from perp_keeper.solana_execution import LedgerClient

logger = logging.getLogger(__name__)


async def _run_service(config: KeeperConfig) -> None:
    service = KeeperService.from_config(config)
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        stop_event.set()

    if sys.platform != "win32":
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, signal_handler)

    await service.start()
    try:
        await stop_event.wait()
    finally:
        await service.stop()


async def _scan_once(config: KeeperConfig, slab: str) -> List[dict]:
    try:
        address = Pubkey.from_string(slab)
    except ValueError as exc:
        raise ConfigurationError(f"Invalid slab address: {slab}") from exc

    ledger = LedgerClient(config.rpc_url)
    try:
        scanner = MarketScanner(ledger, oracle_staleness_secs=config.oracle_staleness_secs)
        data = await ledger.fetch_account_data(address)
        if data is None:
            raise KeeperError(f"Slab {slab} not found on {config.rpc_url}")
        return [candidate.to_dict() for candidate in scanner.scan_bytes(slab, data)]
    finally:
        await ledger.close()


def cmd_run(config: KeeperConfig, args: argparse.Namespace) -> int:
    setup_logging(log_dir=config.log_dir, level=config.log_level, json_format=config.json_logs)
    try:
        asyncio.run(_run_service(config))
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received")
    return 0


def cmd_scan(config: KeeperConfig, args: argparse.Namespace) -> int:
    logging.basicConfig(level=logging.WARNING, stream=sys.stderr)
    candidates = asyncio.run(_scan_once(config, args.slab))
    print(json.dumps(candidates, indent=2))
    return 0


def cmd_status(config: KeeperConfig, args: argparse.Namespace) -> int:
    print(json.dumps(config.summary(), indent=2))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="perp-keeper", description="Liquidation and crank keeper.")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config-dir", default=None, help="Directory holding keeper.json.")
    parser.add_argument("--env-file", default=None, help="Extra .env file to load.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Run the keeper until interrupted.")
    run_parser.set_defaults(func=cmd_run)

    scan_parser = subparsers.add_parser("scan", help="Scan one market and print candidates as JSON.")
    scan_parser.add_argument("slab", help="Slab account address.")
    scan_parser.set_defaults(func=cmd_scan)

    status_parser = subparsers.add_parser("status", help="Print the resolved configuration.")
    status_parser.set_defaults(func=cmd_status)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        config = load_config(config_dir=args.config_dir, env_file=args.env_file)
        return args.func(config, args)
    except KeeperError as exc:
        print(f"[ERROR] {exc}", file=sys.stderr)
        return 1


def run(argv: Optional[List[str]] = None) -> None:
    raise SystemExit(main(argv))

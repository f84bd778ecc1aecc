"""Operator CLI for the balance cache.

Usage:
    python -m balance_sync lookup 0x5528... --user 42 --network testnet
    python -m balance_sync history 0x5528... --user 42 --limit 10
    python -m balance_sync stats
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import Any

from balance_sync.config import get_settings
from balance_sync.explorer.models import InvalidAddressError
from balance_sync.service import BalanceSyncService

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="balance_sync",
        description="Look up and manage cached AzoreScan balances",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    def add_target(sub: argparse.ArgumentParser) -> None:
        sub.add_argument("address", help="Wallet address (0x...)")
        sub.add_argument("--user", required=True, help="User ID the balances belong to")
        sub.add_argument(
            "--network",
            choices=["mainnet", "testnet"],
            default=None,
            help="Network (default: DEFAULT_NETWORK setting)",
        )

    lookup = subparsers.add_parser("lookup", help="Look up balances (cache first)")
    add_target(lookup)
    lookup.add_argument(
        "--force-refresh",
        action="store_true",
        help="Skip the fast cache tier and query the explorer",
    )

    history = subparsers.add_parser("history", help="Show recorded balance updates")
    add_target(history)
    history.add_argument("--limit", type=int, default=50, help="Maximum entries (default: 50)")

    status = subparsers.add_parser("status", help="Show sync status")
    add_target(status)

    clear = subparsers.add_parser("clear", help="Delete cached balances for a user and address")
    add_target(clear)

    subparsers.add_parser("stats", help="Count cache keys per namespace")
    subparsers.add_parser("health", help="Check Redis and explorer connectivity")
    subparsers.add_parser("config", help="Print the effective settings (secrets redacted)")

    return parser


async def run_command(args: argparse.Namespace, service: BalanceSyncService) -> Any:
    """Run one subcommand against a started service and return its JSON payload."""
    if args.command == "lookup":
        snapshot = await service.lookup_balances(args.user, args.address, args.network, args.force_refresh)
        return snapshot.to_dict()
    if args.command == "history":
        entries = await service.get_history(args.user, args.address, args.network, args.limit)
        return [
            {
                "timestamp": e.timestamp.isoformat(),
                "source": e.source,
                "balances": e.balances,
                "action": e.action,
            }
            for e in entries
        ]
    if args.command == "status":
        return (await service.get_status(args.user, args.address, args.network)).to_dict()
    if args.command == "clear":
        return {"cleared": await service.clear_cache(args.user, args.address, args.network)}
    if args.command == "stats":
        return (await service.get_cache_stats()).to_dict()
    if args.command == "health":
        return await service.health_check()
    raise ValueError(f"Unknown command: {args.command}")


async def _run(args: argparse.Namespace) -> int:
    settings = get_settings()
    if args.command == "config":
        print(json.dumps(settings.redacted_summary(), indent=2))
        return 0

    async with BalanceSyncService(settings) as service:
        try:
            payload = await run_command(args, service)
        except InvalidAddressError as e:
            logger.error("%s", e)
            return 2
    print(json.dumps(payload, indent=2))
    return 0


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=get_settings().get_logging_level(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    return asyncio.run(_run(args))


if __name__ == "__main__":
    sys.exit(main())

"""Limit order CLI — standalone access to the limit order service.

Usage:
    python3 -m cli.limit_orders create --maker-asset <addr> --taker-asset <addr> \\
        --making-amount 100000000 --taking-amount 30000000000000000 --expiration 120
    python3 -m cli.limit_orders submit --file signed_order.json
    python3 -m cli.limit_orders active
    python3 -m cli.limit_orders status <order_hash>
    python3 -m cli.limit_orders cancel <order_hash>
    python3 -m cli.limit_orders balance <token>
    python3 -m cli.limit_orders approve <token> <amount>
    python3 -m cli.limit_orders tokens
    python3 -m cli.limit_orders serve --port 3001

Configuration comes from the environment / ``.env`` (see ``config.settings``).
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any

import structlog

from config.settings import settings
from core.errors import InvalidParameters, LimitOrderError
from core.logger import setup_logging
from execution.order_service import LimitOrderService

logger = structlog.get_logger("cli.limit_orders")


def _print(payload: dict[str, Any]) -> None:
    print(json.dumps(payload, indent=2, default=str))


async def cmd_create(service: LimitOrderService, args: argparse.Namespace) -> dict[str, Any]:
    """Build and sign an order (and submit it with ``--submit``)."""
    created = await service.create_order(
        maker_asset=args.maker_asset,
        taker_asset=args.taker_asset,
        making_amount=args.making_amount,
        taking_amount=args.taking_amount,
        expiration_minutes=args.expiration,
    )
    if not args.submit:
        return created
    submitted = await service.submit_order(
        created["order"], created["signature"], order_hash=created["orderHash"]
    )
    return {**created, "submission": submitted}


async def cmd_submit(service: LimitOrderService, args: argparse.Namespace) -> dict[str, Any]:
    """Submit a signed order saved from ``create``."""
    try:
        signed = json.loads(Path(args.file).read_text())
    except (OSError, ValueError) as exc:
        raise InvalidParameters(f"cannot read signed order from {args.file}: {exc}") from exc
    if not isinstance(signed, dict) or "order" not in signed or "signature" not in signed:
        raise InvalidParameters("signed order file needs 'order' and 'signature'")
    return await service.submit_order(
        signed["order"], signed["signature"], order_hash=signed.get("orderHash")
    )


async def cmd_active(service: LimitOrderService, args: argparse.Namespace) -> dict[str, Any]:
    return await service.get_active_orders(page=args.page, limit=args.limit)


async def cmd_status(service: LimitOrderService, args: argparse.Namespace) -> dict[str, Any]:
    return await service.get_order_status(args.order_hash)


async def cmd_cancel(service: LimitOrderService, args: argparse.Namespace) -> dict[str, Any]:
    return await service.cancel_order(args.order_hash)


async def cmd_balance(service: LimitOrderService, args: argparse.Namespace) -> dict[str, Any]:
    return await service.get_token_balance(args.token)


async def cmd_approve(service: LimitOrderService, args: argparse.Namespace) -> dict[str, Any]:
    return await service.ensure_allowance(args.token, args.amount, spender=args.spender)


async def cmd_tokens(service: LimitOrderService, args: argparse.Namespace) -> dict[str, Any]:
    return service.tokens()


COMMANDS = {
    "create": cmd_create,
    "submit": cmd_submit,
    "active": cmd_active,
    "status": cmd_status,
    "cancel": cmd_cancel,
    "balance": cmd_balance,
    "approve": cmd_approve,
    "tokens": cmd_tokens,
}


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser with all subcommands."""
    parser = argparse.ArgumentParser(
        prog="limit-orders",
        description="Create, sign and manage 1inch limit orders",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub_create = sub.add_parser("create", help="Create and sign a limit order")
    sub_create.add_argument("--maker-asset", required=True, help="Token you sell")
    sub_create.add_argument("--taker-asset", required=True, help="Token you buy")
    sub_create.add_argument(
        "--making-amount", required=True, help="Amount sold, in the token's smallest unit"
    )
    sub_create.add_argument(
        "--taking-amount", required=True, help="Amount bought, in the token's smallest unit"
    )
    sub_create.add_argument(
        "--expiration",
        type=int,
        default=None,
        help=f"Expiration window in minutes (default {settings.DEFAULT_EXPIRATION_MINUTES})",
    )
    sub_create.add_argument("--submit", action="store_true", help="Submit after signing")

    sub_submit = sub.add_parser("submit", help="Submit a signed order from a JSON file")
    sub_submit.add_argument("--file", required=True, help="Output of `create` saved as JSON")

    sub_active = sub.add_parser("active", help="List this wallet's active orders")
    sub_active.add_argument("--page", type=int, default=1)
    sub_active.add_argument("--limit", type=int, default=100)

    sub_status = sub.add_parser("status", help="Show the status of an order")
    sub_status.add_argument("order_hash")

    sub_cancel = sub.add_parser("cancel", help="Cancel an order on-chain")
    sub_cancel.add_argument("order_hash")

    sub_balance = sub.add_parser("balance", help="Wallet balance of a token (0x0 for native)")
    sub_balance.add_argument("token")

    sub_approve = sub.add_parser("approve", help="Approve the router for an amount if needed")
    sub_approve.add_argument("token")
    sub_approve.add_argument("amount")
    sub_approve.add_argument("--spender", default=None, help="Defaults to the router")

    sub.add_parser("tokens", help="Known token addresses for the configured chain")

    sub_serve = sub.add_parser("serve", help="Run the HTTP service")
    sub_serve.add_argument("--host", default=None)
    sub_serve.add_argument("--port", type=int, default=None)

    return parser


async def run_command(args: argparse.Namespace) -> dict[str, Any]:
    """Run one subcommand against a freshly started service."""
    handler = COMMANDS[args.command]
    async with LimitOrderService.from_settings(settings) as service:
        return await handler(service, args)


def main(argv: list[str] | None = None) -> int:
    """Entry point for the CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging()

    try:
        if args.command == "serve":
            import uvloop

            from core.main import serve

            uvloop.run(serve(host=args.host, port=args.port))
            return 0
        payload = asyncio.run(run_command(args))
    except LimitOrderError as exc:
        logger.error("cli.command_failed", command=args.command, error=exc.to_dict())
        _print({"success": False, "message": str(exc), "error": exc.to_dict()})
        return 1

    _print({"success": True, **payload})
    return 0


if __name__ == "__main__":
    sys.exit(main())

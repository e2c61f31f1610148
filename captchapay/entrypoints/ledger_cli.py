"""Ledger client entrypoint.

One-shot command: signs in as an identity, waits for the ledger to load
(cache snapshot, then the authoritative document), applies one operation
and prints the resulting ledger as JSON.

  captchapay-ledger --identity u1 show
  captchapay-ledger --identity u1 solve --reward 10
  captchapay-ledger --identity u1 withdraw 30
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys

import bittensor as bt

from captchapay.base.config import add_args, load_config, load_env
from captchapay.ledger.models import dump_ledger
from captchapay.ledger.session import SessionProvider
from captchapay.ledger.store.filesystem import FilesystemDeviceCache
from captchapay.ledger.store.http_client import HTTPRemoteStore
from captchapay.ledger.synchronizer import LedgerSynchronizer, LedgerView


def _positive_int(value: str) -> int:
    try:
        n = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not an integer: {value}")
    if n <= 0:
        raise argparse.ArgumentTypeError(f"must be positive: {value}")
    return n


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Captchapay ledger client")
    bt.logging.add_args(parser)
    add_args(parser)
    parser.add_argument("--identity", type=str, required=True, help="Identity whose ledger to operate on.")

    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("show", help="Print the ledger.")
    add = commands.add_parser("add", help="Credit points.")
    add.add_argument("amount", type=_positive_int)
    solve = commands.add_parser("solve", help="Record a solved captcha and credit its reward.")
    solve.add_argument("--reward", type=_positive_int, default=10)
    withdraw = commands.add_parser("withdraw", help="Debit points.")
    withdraw.add_argument("amount", type=_positive_int)
    return parser


async def run_command(
    sync: LedgerSynchronizer,
    identity: str,
    command: str,
    amount: int | None = None,
) -> LedgerView:
    """Sign in, wait for the ledger, apply one command. Returns the final view."""
    sync.start()
    sync.provider.sign_in(identity)
    await sync.wait_until_settled()

    if sync.ledger is None:
        return sync.snapshot()

    if command == "add":
        await sync.add_points(amount)
    elif command == "solve":
        if await sync.increment_captchas_solved():
            await sync.add_points(amount)
    elif command == "withdraw":
        await sync.withdraw_points(amount)
    return sync.snapshot()


def render(view: LedgerView) -> str:
    return json.dumps({
        "ledger": dump_ledger(view.ledger) if view.ledger is not None else None,
        "error": view.error,
    }, sort_keys=True)


async def _main(args: argparse.Namespace) -> int:
    config = load_config(args)
    store = HTTPRemoteStore(
        base_url=config.store_url,
        auth_token=config.store_auth_token,
        timeout=config.store_timeout,
    )
    cache = FilesystemDeviceCache(config.cache_dir)
    sync = LedgerSynchronizer(SessionProvider(), store, cache)

    amount = getattr(args, "amount", None)
    if args.command == "solve":
        amount = args.reward

    try:
        view = await run_command(sync, args.identity, args.command, amount)
    finally:
        await sync.close()
        await store.close()

    print(render(view))
    return 1 if view.error else 0


def main() -> None:
    load_env()
    args = build_parser().parse_args()
    bt.logging.info({"ledger_cli": {"identity": args.identity, "command": args.command}})
    sys.exit(asyncio.run(_main(args)))


if __name__ == "__main__":
    main()

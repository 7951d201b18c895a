"""Operator CLI for reconciliation and lifecycle inspection.

Usage:
    python -m invoice_sync.cli serve --port 8080
    python -m invoice_sync.cli init-db
    python -m invoice_sync.cli backfill 18000000 18000500
    python -m invoice_sync.cli poll
    python -m invoice_sync.cli sync-invoice inv_123
    python -m invoice_sync.cli status inv_123
"""

from __future__ import annotations

import argparse
import json
import sys

from invoice_sync.config import get_settings
from invoice_sync.exceptions import InvoiceSyncError
from invoice_sync.lifecycle.synchronizer import LifecycleSynchronizer
from invoice_sync.reconciliation.backfill import BackfillReport, BackfillRunner
from invoice_sync.reconciliation.chain_reader import JsonRpcChainReader
from invoice_sync.serve import build_store, configure_logging
from invoice_sync.webhooks.router import EventRouter


def _build_runner() -> BackfillRunner:
    settings = get_settings()
    store = build_store(settings)
    router = EventRouter(LifecycleSynchronizer(store, settings))
    return BackfillRunner(JsonRpcChainReader(settings), router, settings, store)


def _print_report(report: BackfillReport | None) -> None:
    if report is None:
        print("Nothing to sync")
        return
    print(json.dumps(report.to_dict(), indent=2))


def cmd_serve(args: argparse.Namespace) -> None:
    """Run the webhook service."""
    import uvicorn

    uvicorn.run("invoice_sync.serve:create_app", factory=True, host=args.host, port=args.port)


def cmd_init_db(args: argparse.Namespace) -> None:
    """Create lifecycle tables."""
    build_store(get_settings()).init_tables()
    print("Lifecycle tables ready")


def cmd_backfill(args: argparse.Namespace) -> None:
    """Replay a block range."""
    report = _build_runner().backfill(args.from_block, args.to_block)
    _print_report(report)
    if report.errors:
        sys.exit(2)


def cmd_poll(args: argparse.Namespace) -> None:
    """Run one incremental poll from the configured lookback."""
    _print_report(_build_runner().poll_once())


def cmd_sync_invoice(args: argparse.Namespace) -> None:
    """Replay recent history for one invoice."""
    _print_report(_build_runner().sync_invoice(args.invoice_id))


def cmd_status(args: argparse.Namespace) -> None:
    """Print an invoice's lifecycle status."""
    settings = get_settings()
    view = LifecycleSynchronizer(build_store(settings), settings).get_lifecycle_status(
        args.invoice_id
    )
    if view is None:
        print(f"ERROR: no lifecycle record for {args.invoice_id}", file=sys.stderr)
        sys.exit(1)
    print(json.dumps(view.to_dict(), indent=2))


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="invoice-sync",
        description="Invoice lifecycle sync: reconciliation and inspection",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p_serve = sub.add_parser("serve", help="Run the webhook HTTP service")
    p_serve.add_argument("--host", default="0.0.0.0", help="Bind address")
    p_serve.add_argument("--port", type=int, default=8080, help="Bind port")
    p_serve.set_defaults(func=cmd_serve)

    p_init = sub.add_parser("init-db", help="Create lifecycle tables")
    p_init.set_defaults(func=cmd_init_db)

    p_backfill = sub.add_parser("backfill", help="Replay protocol logs for a block range")
    p_backfill.add_argument("from_block", type=int, help="First block (inclusive)")
    p_backfill.add_argument("to_block", type=int, nargs="?", help="Last block (default: head)")
    p_backfill.set_defaults(func=cmd_backfill)

    p_poll = sub.add_parser("poll", help="Sync recent blocks once")
    p_poll.set_defaults(func=cmd_poll)

    p_sync = sub.add_parser("sync-invoice", help="Replay recent history for one invoice")
    p_sync.add_argument("invoice_id", help="Invoice id")
    p_sync.set_defaults(func=cmd_sync_invoice)

    p_status = sub.add_parser("status", help="Show an invoice's lifecycle status")
    p_status.add_argument("invoice_id", help="Invoice id")
    p_status.set_defaults(func=cmd_status)

    args = parser.parse_args(argv)
    configure_logging(get_settings())
    try:
        args.func(args)
    except InvoiceSyncError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()

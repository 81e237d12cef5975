from __future__ import annotations

import argparse
import sys
import time
from typing import Optional

from backend.app.connections import parse_provider
from backend.app.models import SyncResult, WebhookEventType
from backend.app.observability import configure_logging
from backend.app.runtime import Services, build_services
from backend.app.services.sync_scheduler import RateLimitedError, any_failed
from backend.app.services.webhook_processor import BatchReport
from backend.app.settings import load_settings
from backend.app.store import StoreNotFoundError


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ats-pipeline", description="ATS webhook processing and connection sync."
    )
    commands = parser.add_subparsers(dest="command", required=True)

    webhooks = commands.add_parser("process-webhooks", help="Process pending ATS webhooks.")
    webhooks.add_argument("--connection", type=int, default=None, help="Connection id filter.")
    webhooks.add_argument("--event-type", default=None, help="Only process this event type.")
    mode = webhooks.add_mutually_exclusive_group()
    mode.add_argument("--failed", action="store_true", help="Process failed webhooks in place.")
    mode.add_argument("--retry", action="store_true", help="Reset and retry failed webhooks.")
    webhooks.add_argument("--limit", type=int, default=None, help="Maximum webhooks to claim.")
    webhooks.add_argument("--workers", type=int, default=None, help="Worker threads.")
    webhooks.add_argument(
        "--timeout", type=float, default=None, help="Stop claiming new webhooks after N seconds."
    )

    sync = commands.add_parser("sync-connections", help="Sync data from ATS connections.")
    sync.add_argument("--connection", type=int, default=None, help="Specific connection id.")
    sync.add_argument("--provider", default=None, help="Sync every connection of a provider.")
    sync.add_argument("--location", default=None)
    sync.add_argument("--keywords", default=None)
    sync.add_argument("--department", default=None)
    sync.add_argument("--force", action="store_true", help="Ignore the rate-limit window.")
    return parser


def _print_batch_report(report: BatchReport) -> None:
    if report.mode == "retry":
        print("Webhook retry completed:")
    else:
        print("Webhook processing completed:")
    print(f"  Processed: {report.processed}")
    print(f"  Failed: {report.failed}")
    if report.skipped:
        print(f"  Skipped: {report.skipped}")
    for outcome, count in sorted(report.outcomes.items()):
        print(f"  Outcome {outcome}: {count}")
    for webhook_id, error in sorted(report.errors.items()):
        print(f"  Webhook {webhook_id} failed: {error}")
    if report.cancelled:
        print("  Stopped before the queue was drained.")


def process_webhooks(args: argparse.Namespace, services: Services) -> int:
    print("Starting ATS webhook processing...")
    if args.connection is not None and not services.registry.exists(args.connection):
        print(f"ATS connection with ID {args.connection} not found.", file=sys.stderr)
        return 1
    known_types = {item.value for item in WebhookEventType}
    if args.event_type and args.event_type.strip().lower() not in known_types:
        print(f"Unknown event type: {args.event_type}", file=sys.stderr)
        return 1

    options = {
        "connection_id": args.connection,
        "event_type": args.event_type,
        "limit": args.limit if args.limit is not None else services.settings.webhook_batch_limit,
        "workers": args.workers,
        "deadline": time.monotonic() + args.timeout if args.timeout else None,
    }
    processor = services.processor
    if args.retry:
        report = processor.retry_failed(**options)
    elif args.failed:
        report = processor.process_failed(**options)
    else:
        report = processor.process_pending(**options)

    if not report.attempted:
        print("No failed webhooks to retry." if args.retry else "No webhooks to process.")
        if report.skipped:
            print(f"  Skipped {report.skipped} webhooks that exhausted their retries.")
        return 0
    _print_batch_report(report)
    return 1 if report.has_failures else 0


def _print_sync_result(name: str, result: SyncResult) -> None:
    print(f"Results for {name}:")
    if not result.success:
        print(f"  Failed: {result.error or 'Unknown error'}")
        print("")
        return
    print("  Success")
    for label, counts in (
        ("Jobs", result.jobs),
        ("Candidates", result.candidates),
        ("Applications", result.applications),
    ):
        print(f"  {label} processed: {counts.processed}")
        print(f"     Created: {counts.created}")
        print(f"     Updated: {counts.updated}")
    if result.total_failed:
        print(f"  Total failed: {result.total_failed}")
    print("")


def sync_connections(args: argparse.Namespace, services: Services) -> int:
    print("Starting ATS synchronization...")
    filters = {
        key: value
        for key, value in (
            ("location", args.location),
            ("keywords", args.keywords),
            ("department", args.department),
        )
        if value
    }
    scheduler = services.scheduler

    if args.connection is not None:
        try:
            connection = services.registry.get(args.connection)
        except StoreNotFoundError:
            print(f"ATS connection with ID {args.connection} not found.", file=sys.stderr)
            return 1
        print(f"Syncing connection: {connection.name} ({connection.provider_display_name})")
        try:
            result = scheduler.run_for_connection(connection, filters, force=args.force)
        except RateLimitedError:
            print(
                f"Connection '{connection.name}' cannot sync due to rate limits or inactive status."
            )
            print("Use --force to override rate limiting.")
            return 1
        _print_sync_result(connection.name, result)
        return 0 if result.success else 1

    if args.provider:
        provider = parse_provider(args.provider)
        if provider is None:
            print(f"Unknown provider: {args.provider}", file=sys.stderr)
            return 1
        results = scheduler.run_for_provider(provider, filters, force=args.force)
        if not results:
            print(f"No active connections found for provider: {provider.value}")
            return 0
        print(f"Found {len(results)} connections for provider: {provider.value}")
    else:
        print("Syncing all active ATS connections...")
        results = scheduler.run_for_all(filters, force=args.force)

    for name, result in results.items():
        _print_sync_result(name, result)
    successful = sum(1 for result in results.values() if result.success)
    print(f"ATS sync completed: {successful}/{len(results)} connections successful")
    return 1 if any_failed(results) else 0


def main(argv: Optional[list[str]] = None, services: Optional[Services] = None) -> int:
    args = build_parser().parse_args(argv)
    if services is None:
        settings = load_settings()
        configure_logging(settings.log_level)
        services = build_services(settings)
    if args.command == "process-webhooks":
        return process_webhooks(args, services)
    return sync_connections(args, services)


def main_entry() -> None:
    sys.exit(main())


if __name__ == "__main__":
    main_entry()

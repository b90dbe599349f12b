"""Command-line entry point.

Usage:
    beeylo-sync serve --host 0.0.0.0 --port 8000
    beeylo-sync sync-store --tenant <id> --since 2024-01-01
    beeylo-sync link-customers --batch 100
    beeylo-sync recheck-tracking
    beeylo-sync dead-letters --queue webhooks

Commands other than ``serve`` queue work for a running service; with no
REDIS_URL the queue is process-local and nothing will pick the jobs up.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime, timezone
from typing import Awaitable, Callable

from beeylo_sync.config import Settings, get_settings
from beeylo_sync.errors import NotFoundError
from beeylo_sync.runtime import Runtime

logger = logging.getLogger(__name__)


def _parse_since(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _run(settings: Settings, fn: Callable[[Runtime], Awaitable[int]]) -> int:
    async def go() -> int:
        runtime = Runtime(settings)
        await runtime.start(workers=False)
        try:
            return await fn(runtime)
        finally:
            await runtime.stop()

    return asyncio.run(go())


def _warn_local_queue(settings: Settings) -> None:
    if not settings.redis_url:
        print("WARNING: REDIS_URL not set, queued jobs stay in this process", file=sys.stderr)


def cmd_serve(args: argparse.Namespace, settings: Settings) -> int:
    """Run the HTTP API together with the worker pools."""
    import uvicorn

    from beeylo_sync.app import create_app

    uvicorn.run(create_app(Runtime(settings)), host=args.host, port=args.port, log_level=settings.log_level.lower())
    return 0


def cmd_sync_store(args: argparse.Namespace, settings: Settings) -> int:
    """Queue a manual order sync for one store."""
    _warn_local_queue(settings)
    since = _parse_since(args.since) if args.since else None
    try:
        queued = _run(settings, lambda rt: rt.manual_sync.run(args.tenant, since=since))
    except NotFoundError:
        print(f"ERROR: tenant not found: {args.tenant}", file=sys.stderr)
        return 1
    print(f"Queued {queued} order(s) for {args.tenant}")
    return 0


def cmd_link_customers(args: argparse.Namespace, settings: Settings) -> int:
    """Link unlinked customers to app users by email."""

    async def link(runtime: Runtime) -> int:
        report = await runtime.linker.link_all_unlinked(batch=args.batch)
        print(f"Scanned {report.scanned}: linked {report.linked}, not found {report.not_found}, errors {report.errors}")
        return report.errors

    return 1 if _run(settings, link) else 0


def cmd_recheck_tracking(args: argparse.Namespace, settings: Settings) -> int:
    """Queue tracking refreshes for stale active shipments."""
    _warn_local_queue(settings)
    scheduled = _run(settings, lambda rt: rt.tracking.recheck_active())
    print(f"Scheduled {scheduled} tracking refresh(es)")
    return 0


def cmd_dead_letters(args: argparse.Namespace, settings: Settings) -> int:
    """Print dead-lettered jobs for a queue as JSON lines."""

    async def show(runtime: Runtime) -> int:
        queue = runtime.queues.get(args.queue)
        if queue is None:
            print(f"ERROR: unknown queue: {args.queue}", file=sys.stderr)
            return 1
        for record in await queue.dead_letters(args.limit):
            print(json.dumps(record.summary(), default=str))
        return 0

    return _run(settings, show)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="beeylo-sync",
        description="Shopify order sync, courier tracking and notifications",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    # serve
    p_serve = sub.add_parser("serve", help="Run the API and worker pools")
    p_serve.add_argument("--host", default="0.0.0.0")
    p_serve.add_argument("--port", type=int, default=8000)
    p_serve.set_defaults(func=cmd_serve)

    # sync-store
    p_sync = sub.add_parser("sync-store", help="Queue recent orders for one store")
    p_sync.add_argument("--tenant", required=True, help="Store (tenant) id")
    p_sync.add_argument("--since", help="ISO timestamp; defaults to 30 days ago")
    p_sync.set_defaults(func=cmd_sync_store)

    # link-customers
    p_link = sub.add_parser("link-customers", help="Link customers to app users")
    p_link.add_argument("--batch", type=int, default=100)
    p_link.set_defaults(func=cmd_link_customers)

    # recheck-tracking
    p_recheck = sub.add_parser("recheck-tracking", help="Queue refreshes for stale shipments")
    p_recheck.set_defaults(func=cmd_recheck_tracking)

    # dead-letters
    p_dead = sub.add_parser("dead-letters", help="List dead-lettered jobs")
    p_dead.add_argument("--queue", default="webhooks", help="webhooks or tracking")
    p_dead.add_argument("--limit", type=int, default=50)
    p_dead.set_defaults(func=cmd_dead_letters)

    args = parser.parse_args(argv)
    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return args.func(args, settings)


if __name__ == "__main__":
    sys.exit(main())

"""Application entrypoint — start the API server or run one-off commands."""

from __future__ import annotations

import argparse
import asyncio
import datetime as dt
import sys

import uvicorn

from step_mood.config import get_settings
from step_mood.logger import setup_logging
from step_mood.models import JobStatus


async def _run_hourly(now: dt.datetime | None) -> int:
    from step_mood.scheduler.jobs import HourlyReconciliationJob
    from step_mood.services import build_services
    from step_mood.storage.database import dispose_engine, init_db

    await init_db()
    try:
        services = build_services()
        await services.sync_reconciler((now or dt.datetime.now()).date())
        result = await HourlyReconciliationJob(services).run(now)
    finally:
        await dispose_engine()
    print(
        f"{result.status.value}: date={result.date} hour={result.hour} "
        f"mood {result.previous_mood} -> {result.new_mood} steps={result.steps} total={result.total_steps}"
    )
    return 1 if result.status is JobStatus.FAILED else 0


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="step-mood",
        description="Step-to-mood reconciliation engine.",
    )
    sub = parser.add_subparsers(dest="command")

    # ── serve ─────────────────────────────────────────────────
    serve_parser = sub.add_parser("serve", help="Start the API server.")
    serve_parser.add_argument("--host", default=None)
    serve_parser.add_argument("--port", type=int, default=None)
    serve_parser.add_argument("--reload", action="store_true")

    # ── init-db ───────────────────────────────────────────────
    sub.add_parser("init-db", help="Create database tables.")

    # ── run-hourly ────────────────────────────────────────────
    hourly_parser = sub.add_parser("run-hourly", help="Run one hourly reconciliation.")
    hourly_parser.add_argument(
        "--now",
        type=dt.datetime.fromisoformat,
        default=None,
        help="Local time to reconcile as (ISO 8601, default: now).",
    )

    args = parser.parse_args(argv)
    settings = get_settings()
    setup_logging(settings.log_level)

    if args.command == "serve":
        uvicorn.run(
            "step_mood.api.server:app",
            host=args.host or settings.api_host,
            port=args.port or settings.api_port,
            reload=args.reload,
        )
    elif args.command == "init-db":
        from step_mood.storage.database import init_db

        asyncio.run(init_db())
        print("Database tables created.")
    elif args.command == "run-hourly":
        sys.exit(asyncio.run(_run_hourly(args.now)))
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()

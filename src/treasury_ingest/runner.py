"""Command line entry point for the treasury ingestion jobs."""
from __future__ import annotations

import argparse
import json
import logging
from typing import Any, Iterable

import uvicorn

from .app import create_app
from .config import Settings
from .db import create_db_engine, ensure_schema
from .jobs import create_job
from .jobs.hkex import HkexFilingScan
from .jobs.market_data import MarketDataUpdate
from .jobs.sec import SecFilingScan
from .logging_utils import configure_logging
from .models import STATUS_FAILED, STATUS_SUCCEEDED
from .orchestrator import ScraperOrchestrator

LOGGER = logging.getLogger(__name__)

SCAN_JOBS = {"hkex": HkexFilingScan.name, "sec": SecFilingScan.name}


def _emit(payload: Any) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False, default=str))


def run_job(settings: Settings, job_name: str) -> int:
    """Run one job in-process and return the exit status."""

    engine = create_db_engine(settings.database_url)
    ensure_schema(engine)
    result = create_job(job_name, settings, engine).run()
    _emit(result.to_dict())
    if result.status == STATUS_SUCCEEDED:
        return 0
    # A lock-denied run is not an error for cron callers.
    return 1 if result.status == STATUS_FAILED else 0


def run_all(settings: Settings) -> int:
    engine = create_db_engine(settings.database_url)
    ensure_schema(engine)
    orchestrator = ScraperOrchestrator.from_settings(settings, engine)
    results = orchestrator.run_all_active_scrapers()
    _emit([result.to_dict() for result in results])
    return 0 if all(result.status != STATUS_FAILED for result in results) else 1


def show_health(settings: Settings) -> int:
    engine = create_db_engine(settings.database_url)
    ensure_schema(engine)
    orchestrator = ScraperOrchestrator.from_settings(settings, engine)
    _emit(
        {
            "health": orchestrator.get_system_health(),
            "recommendations": orchestrator.get_recommendations(),
        }
    )
    return 0


def parse_args(args: Iterable[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable debug logging output",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    scan = commands.add_parser("scan", help="Run a filing scan in this process")
    scan.add_argument("source", choices=sorted(SCAN_JOBS))
    commands.add_parser("market-data", help="Refresh market data for tracked entities")
    commands.add_parser("run-all", help="Trigger every enabled job endpoint")
    commands.add_parser("health", help="Print job health and recommendations")
    serve = commands.add_parser("serve", help="Serve the HTTP job endpoints")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)
    return parser.parse_args(args=args)


def main(argv: Iterable[str] | None = None) -> int:
    options = parse_args(argv)
    configure_logging(logging.DEBUG if options.verbose else None)
    settings = Settings.load()

    if options.command == "scan":
        return run_job(settings, SCAN_JOBS[options.source])
    if options.command == "market-data":
        return run_job(settings, MarketDataUpdate.name)
    if options.command == "run-all":
        return run_all(settings)
    if options.command == "serve":
        uvicorn.run(create_app(settings), host=options.host, port=options.port, log_config=None)
        return 0
    return show_health(settings)


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())

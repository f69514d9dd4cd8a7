#!/usr/bin/env python3
"""
runlens CLI - Thin entrypoint for operator commands.

Commands:
- serve       run the read-only dashboard API
- dashboard   print a dashboard snapshot as JSON
- analytics   print the advanced analytics snapshot as JSON
- classify    show the business unit of package names
- seed-demo   create a catalog filled with synthetic history

Design Principles:
==================
- CLI is a dispatcher only
- No analytic logic inside CLI
- Surface errors verbatim from the layers below
- Exit non-zero on failure

Exit Codes:
===========
- 0: Success
- 1: Configuration or validation error
- 2: Data source or computation error
"""

import argparse
import asyncio
import json
import logging
import random
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Optional, Sequence

from pydantic import ValidationError as SettingsValidationError

from runlens.catalog import CatalogWriter
from runlens.config import DashboardSettings
from runlens.errors import (
    ComputationError,
    ConfigurationError,
    DataSourceError,
    ValidationError,
)
from runlens.facade import create_facade
from runlens.models import ExecutionRecord, ExecutionStatus
from runlens.partitions import classify


EXIT_OK = 0
EXIT_INVALID = 1
EXIT_FAILED = 2

DEMO_PACKAGES = (
    "CR_Load_Claims",
    "CR_Extract_Members",
    "CN_Sync_Charts",
    "CN_Export_Notes",
    "EDS_Feed_Eligibility",
    "HIM_Import_Records",
    "Nightly_Cleanup",
)

DEMO_ERRORS = (
    "Connection timeout while accessing DB",
    "Login failed: access denied for service account",
    "Transaction was deadlocked on lock resources",
    "Data validation failed for column MemberId",
    "Insufficient memory to continue the execution",
    "Unexpected termination of data flow task",
)


def _load_settings(args: argparse.Namespace) -> DashboardSettings:
    try:
        settings = DashboardSettings.from_env()
    except (SettingsValidationError, ValueError) as e:
        raise ConfigurationError(f"Invalid RUNLENS_* settings: {e}") from e
    updates = {}
    if getattr(args, "database", None):
        updates["database"] = args.database
    if getattr(args, "timeout", None):
        updates["query_timeout_seconds"] = args.timeout
    return settings.model_copy(update=updates) if updates else settings


def _print_json(payload: object) -> None:
    print(json.dumps(payload, indent=2, sort_keys=False))


def _run_snapshot(args: argparse.Namespace, advanced: bool) -> int:
    try:
        settings = _load_settings(args)
        facade = create_facade(settings)
        try:
            if advanced:
                snapshot = asyncio.run(facade.load_advanced_analytics(settings.source()))
            else:
                snapshot = asyncio.run(
                    facade.load_dashboard(settings.source(), args.business_unit)
                )
        finally:
            facade.shutdown()
    except (ConfigurationError, ValidationError) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return EXIT_INVALID
    except (DataSourceError, ComputationError) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return EXIT_FAILED

    _print_json(snapshot.to_dict())
    return EXIT_OK


def cmd_dashboard(args: argparse.Namespace) -> int:
    """Print the dashboard snapshot."""
    return _run_snapshot(args, advanced=False)


def cmd_analytics(args: argparse.Namespace) -> int:
    """Print the advanced analytics snapshot."""
    return _run_snapshot(args, advanced=True)


def cmd_classify(args: argparse.Namespace) -> int:
    for name in args.names:
        print(f"{name}\t{classify(name)}")
    return EXIT_OK


def cmd_serve(args: argparse.Namespace) -> int:
    from runlens.api import run_dashboard_server

    try:
        settings = _load_settings(args)
    except ConfigurationError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return EXIT_INVALID
    run_dashboard_server(settings=settings, host=args.host, port=args.port)
    return EXIT_OK


def generate_demo_history(
    now: datetime,
    days: int,
    seed: int = 7,
    packages: Sequence[str] = DEMO_PACKAGES,
    first_id: int = 1,
) -> List[ExecutionRecord]:
    """
    Synthetic execution history: a few runs per package per day,
    mostly successful, plus one run per package still in progress.

    Execution ids are consecutive from first_id.
    """
    rng = random.Random(seed)
    records: List[ExecutionRecord] = []
    execution_id = first_id

    for day in range(days, 0, -1):
        day_start = (now - timedelta(days=day)).replace(hour=0, minute=0, second=0, microsecond=0)
        for package in packages:
            for _ in range(rng.randint(1, 4)):
                start = day_start + timedelta(minutes=rng.randint(0, 23 * 60))
                duration = timedelta(seconds=rng.randint(60, 3600))
                status = ExecutionStatus.FAILED if rng.random() < 0.15 else ExecutionStatus.SUCCEEDED
                records.append(ExecutionRecord(
                    execution_id=execution_id,
                    package_name=f"{package}.dtsx",
                    status=status,
                    start_time=start,
                    end_time=start + duration,
                    folder_name=classify(package),
                    project_name=package.split("_")[0],
                    executed_as="svc_etl",
                ))
                execution_id += 1

    for package in packages:
        start = now - timedelta(minutes=rng.randint(1, 90))
        records.append(ExecutionRecord(
            execution_id=execution_id,
            package_name=f"{package}.dtsx",
            status=ExecutionStatus.RUNNING,
            start_time=start,
            folder_name=classify(package),
            project_name=package.split("_")[0],
        ))
        execution_id += 1

    return records


def cmd_seed_demo(args: argparse.Namespace) -> int:
    """Write synthetic history into a new or existing catalog."""
    try:
        writer = CatalogWriter(Path(args.database)).initialize()
        now = datetime.now(timezone.utc)
        records = generate_demo_history(
            now, args.days, seed=args.seed, first_id=writer.next_execution_id()
        )
        writer.add_executions(records)

        rng = random.Random(args.seed)
        failed = [r for r in records if r.status == ExecutionStatus.FAILED]
        for record in failed:
            writer.add_message(
                record.execution_id,
                record.end_time or record.start_time,
                rng.choice(DEMO_ERRORS),
            )
    except DataSourceError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return EXIT_FAILED

    print(f"Seeded {len(records)} executions ({len(failed)} failed) into {args.database}")
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="runlens",
        description="runlens - read-only execution analytics for workflow catalogs",
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity (default: WARNING)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True, help="Command to execute")

    # Shared source options
    source_options = argparse.ArgumentParser(add_help=False)
    source_options.add_argument(
        "--database",
        help="Path to the SQLite execution catalog (default: RUNLENS_DATABASE)",
    )
    source_options.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Query timeout in seconds (default: RUNLENS_QUERY_TIMEOUT or 30)",
    )

    parser_serve = subparsers.add_parser(
        "serve", parents=[source_options], help="Run the read-only dashboard API"
    )
    parser_serve.add_argument("--host", default=None, help="Bind host (default: 127.0.0.1)")
    parser_serve.add_argument("--port", type=int, default=None, help="Bind port")
    parser_serve.set_defaults(func=cmd_serve)

    parser_dashboard = subparsers.add_parser(
        "dashboard", parents=[source_options], help="Print the dashboard snapshot as JSON"
    )
    parser_dashboard.add_argument(
        "--business-unit",
        default=None,
        help="Restrict to one business unit (ClientRepo, ChartNav, EDS, HIM, Uncategorized)",
    )
    parser_dashboard.set_defaults(func=cmd_dashboard)

    parser_analytics = subparsers.add_parser(
        "analytics", parents=[source_options], help="Print advanced analytics as JSON"
    )
    parser_analytics.set_defaults(func=cmd_analytics)

    parser_classify = subparsers.add_parser(
        "classify", help="Show the business unit of package names"
    )
    parser_classify.add_argument("names", nargs="+", help="Package names")
    parser_classify.set_defaults(func=cmd_classify)

    parser_seed = subparsers.add_parser(
        "seed-demo", help="Create a catalog with synthetic execution history"
    )
    parser_seed.add_argument("database", help="Path of the catalog to create or extend")
    parser_seed.add_argument("--days", type=int, default=30, help="Days of history (default: 30)")
    parser_seed.add_argument("--seed", type=int, default=7, help="Random seed (default: 7)")
    parser_seed.set_defaults(func=cmd_seed_demo)

    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    """
    Main CLI entrypoint.

    Parses arguments and dispatches to subcommands.
    """
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())

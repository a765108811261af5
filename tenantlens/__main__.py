"""
TenantLens command line.

Usage:
    # Token and database come from the environment or .env:
    export GRAPH_ACCESS_TOKEN=...

    python -m tenantlens scan
    python -m tenantlens findings --category identity
    python -m tenantlens summary
    python -m tenantlens cache-stats
    python -m tenantlens cache-invalidate --type users
    python -m tenantlens serve --port 8000
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import List, Optional

from dotenv import load_dotenv

from tenantlens.detection import AggregatedRecord
from tenantlens.runtime import TenantLensRuntime
from tenantlens.utils import configure_logging, get_settings

logger = logging.getLogger(__name__)


def _print_records(records: List[AggregatedRecord]):
    if not records:
        print("No findings.")
        return
    for record in records:
        finding = record.finding
        print(
            f"[{finding.severity.value.upper():8}] {record.category:10} {finding.title} "
            f"({len(finding.affected_resources)} affected)"
        )


async def cmd_scan(runtime: TenantLensRuntime, args) -> int:
    records = await runtime.orchestrator.run_all()
    report = runtime.orchestrator.last_run

    print(f"\n{'='*70}")
    print("TENANTLENS SCAN")
    print(f"{'='*70}")
    _print_records(records)
    print(f"{'='*70}")
    print(f"Findings:  {len(records)}")
    print(f"Duration:  {report.duration_seconds:.1f}s")
    if report.failed_categories:
        print(f"Failed:    {', '.join(report.failed_categories)}")
    if not report.persisted:
        print("WARNING: findings could not be saved")
    return 1 if report.failed_categories else 0


async def cmd_findings(runtime: TenantLensRuntime, args) -> int:
    if args.category:
        records = await runtime.orchestrator.get_by_category(args.category)
    else:
        records = await runtime.orchestrator.get_all()
    _print_records(records)
    return 0


async def cmd_summary(runtime: TenantLensRuntime, args) -> int:
    summaries = await runtime.orchestrator.get_summary()
    print(json.dumps({c: s.to_dict() for c, s in summaries.items()}, indent=2))
    return 0


async def cmd_cache_stats(runtime: TenantLensRuntime, args) -> int:
    print(json.dumps(await runtime.cache.stats(), indent=2))
    return 0


async def cmd_cache_invalidate(runtime: TenantLensRuntime, args) -> int:
    count = await runtime.cache.invalidate(key=args.key, cache_type=args.type)
    print(f"Invalidated {count} cache entries")
    return 0


COMMANDS = {
    "scan": cmd_scan,
    "findings": cmd_findings,
    "summary": cmd_summary,
    "cache-stats": cmd_cache_stats,
    "cache-invalidate": cmd_cache_invalidate,
}


async def run_command(args) -> int:
    async with TenantLensRuntime() as runtime:
        return await COMMANDS[args.command](runtime, args)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tenantlens",
        description="Scan a directory tenant for configuration problems",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Logging level (default: LOG_LEVEL setting)"
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("scan", help="Run every detector and save the findings")

    findings = sub.add_parser("findings", help="List saved findings")
    findings.add_argument(
        "--category",
        default=None,
        help="Only this detector category (e.g., identity)"
    )

    sub.add_parser("summary", help="Finding counts per category")
    sub.add_parser("cache-stats", help="Persistent cache statistics")

    invalidate = sub.add_parser("cache-invalidate", help="Delete cached directory reads")
    invalidate.add_argument("--key", default=None, help="Cache key")
    invalidate.add_argument("--type", default=None, help="Cache type (e.g., users, licenses)")

    serve = sub.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default="127.0.0.1", help="Bind address (default: 127.0.0.1)")
    serve.add_argument("--port", type=int, default=8000, help="Port (default: 8000)")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level or get_settings().LOG_LEVEL)

    if args.command == "serve":
        import uvicorn

        uvicorn.run("api:app", host=args.host, port=args.port)
        return 0

    try:
        return asyncio.run(run_command(args))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())

#!/usr/bin/env python3
"""
Report chunks that are candidates for re-indexing.

Reads chunk statistics and prints the problematic set: chunks failing far
more often than they succeed, and chunks unused for too long. Nothing is
modified; re-indexing stays a manual step.

Usage:
    python -m scripts.report_reindex_candidates [--stale-days N] [--limit N] [--json]
"""

import argparse
import asyncio
import sys
from pathlib import Path
from typing import List, Optional

import structlog

from api.learning.chunk_health import ChunkHealthScanner
from api.models import ChunkHealthReport
from libs.caching.redis_client import get_redis_client
from libs.common.errors import JobAlreadyRunningError, PipelineError
from libs.common.log_config import configure_logging
from libs.common.settings import Settings, get_settings
from libs.jobs.lock import JobLock
from libs.resilience.circuit_breaker import CircuitBreaker
from libs.storage.relational_store import RelationalStore

logger = structlog.get_logger(__name__)

JOB_NAME = "report-reindex-candidates"


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="List chunks that should be re-indexed")
    parser.add_argument("--stale-days", type=int, default=None,
                        help="Days without use before a chunk is stale (default: from settings)")
    parser.add_argument("--limit", type=int, default=None, help="Maximum rows per rule")
    parser.add_argument("--json", action="store_true", help="Print the report as JSON")
    return parser.parse_args(argv)


def format_report(report: ChunkHealthReport) -> str:
    lines = [
        "=" * 60,
        "RE-INDEXING CANDIDATES",
        "=" * 60,
        f"Low performance chunks: {len(report.low_performance)}",
    ]
    for stat in report.low_performance:
        lines.append(
            f"  {stat.chunk_id}: success={stat.success_count} fail={stat.fail_count} "
            f"ratio={stat.success_ratio:.0%}"
        )
    lines.append(f"Stale chunks (unused for {report.stale_days}+ days): {len(report.stale)}")
    for stat in report.stale:
        last_used = stat.last_used.isoformat() if stat.last_used else "never"
        lines.append(f"  {stat.chunk_id}: last_used={last_used}")
    lines.append(f"Total problematic chunks: {report.total}")
    return "\n".join(lines)


async def run(settings: Settings, stale_days: int, limit: Optional[int]) -> ChunkHealthReport:
    breaker = CircuitBreaker(
        name="relational-store",
        failure_threshold=settings.breaker_failure_threshold,
        open_timeout_seconds=settings.breaker_open_timeout_seconds,
        half_open_successes=settings.breaker_half_open_successes,
    )
    if not Path(settings.database_path).is_file():
        raise FileNotFoundError(f"Database {settings.database_path} does not exist")
    store = RelationalStore(
        settings.database_path, breaker, timeout_seconds=settings.db_timeout_seconds, read_only=True
    )

    scanner = ChunkHealthScanner(
        store,
        stale_days=stale_days,
        fail_ratio=settings.low_performance_fail_ratio,
        min_samples=settings.low_performance_min_samples,
    )
    redis_client = await get_redis_client()
    async with JobLock(JOB_NAME, redis_client, ttl_seconds=settings.job_lock_ttl_seconds):
        return await scanner.scan(limit=limit)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    settings = get_settings()
    configure_logging(settings.log_level)
    stale_days = args.stale_days if args.stale_days is not None else settings.stale_chunk_days

    try:
        report = asyncio.run(run(settings, stale_days, args.limit))
    except JobAlreadyRunningError as e:
        logger.warning("Skipping run", reason=str(e))
        return 0
    except (PipelineError, OSError) as e:
        logger.error("Re-indexing report failed", error=str(e), error_type=type(e).__name__)
        return 1

    print(report.model_dump_json(indent=2) if args.json else format_report(report))
    return 0


if __name__ == "__main__":
    sys.exit(main())

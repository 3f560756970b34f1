#!/usr/bin/env python3
"""
Nightly feedback learning job.

Folds ratings from recent query logs into learned responses and backs
new learned responses with a semantic cache embedding.

Usage:
    python -m scripts.process_feedback_learning [--hours N]
"""

import argparse
import asyncio
import sys
from typing import List, Optional

import structlog

from api.factory import build_components
from api.learning.feedback_processor import FeedbackProcessor
from api.models import FeedbackRunSummary
from libs.caching.redis_client import get_redis_client
from libs.common.errors import JobAlreadyRunningError, PipelineError
from libs.common.log_config import configure_logging
from libs.common.settings import Settings, get_settings
from libs.jobs.lock import JobLock

logger = structlog.get_logger(__name__)

JOB_NAME = "process-feedback-learning"


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Fold recent ratings into learned responses")
    parser.add_argument("--hours", type=int, default=None,
                        help="Size of the feedback window in hours (default: from settings)")
    return parser.parse_args(argv)


async def run(settings: Settings, hours: int) -> FeedbackRunSummary:
    components = build_components(settings)
    await components.store.initialize()
    processor = FeedbackProcessor(components.store, components.cache, window_hours=hours)

    redis_client = await get_redis_client()
    async with JobLock(JOB_NAME, redis_client, ttl_seconds=settings.job_lock_ttl_seconds):
        return await processor.run()


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    settings = get_settings()
    configure_logging(settings.log_level)
    hours = args.hours if args.hours is not None else settings.feedback_window_hours

    try:
        summary = asyncio.run(run(settings, hours))
    except JobAlreadyRunningError as e:
        logger.warning("Skipping run", reason=str(e))
        return 0
    except (PipelineError, OSError) as e:
        logger.error("Feedback learning failed", error=str(e), error_type=type(e).__name__)
        return 1

    print(summary.model_dump_json(indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())

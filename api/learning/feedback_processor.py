"""
Feedback learning job.

Folds recent 1-5 star ratings into learned responses. Each rating
becomes a quality delta in [-1, 1]; a learned response's quality score is
the running mean of every delta folded into it, so the final score does
not depend on the order ratings arrive in.

Folding is not idempotent: the same rating folded twice counts twice.
Each fold marks its row with ``learning_processed_at`` in the same store
transaction, and only unprocessed rows are read.
"""

import asyncio
from datetime import datetime
from typing import List, Optional, Tuple

import structlog

from api.models import FeedbackRunSummary
from libs.caching.semantic_cache import SemanticCache, embedding_id_for, normalize_query
from libs.common.errors import CircuitOpenError, StoreError, UpstreamUnavailableError
from libs.models.records import LearnedResponseEntry, RatedQuery
from libs.storage.relational_store import RelationalStore

logger = structlog.get_logger(__name__)


def rating_to_quality_delta(rating: int) -> float:
    """Map a 1-5 rating to [-1, 1]: 1 -> -1.0, 3 -> 0.0, 5 -> 1.0."""
    if not 1 <= rating <= 5:
        raise ValueError(f"Rating must be between 1 and 5, got {rating}")
    return (rating - 3) / 2


def fold_rating(quality_score: float, usage_count: int, delta: float) -> Tuple[float, int]:
    """
    Fold one more delta into a running mean.

    Returns:
        (new_quality_score, new_usage_count)
    """
    new_score = (quality_score * usage_count + delta) / (usage_count + 1)
    return max(-1.0, min(1.0, new_score)), usage_count + 1


class FeedbackProcessor:
    """
    Turns rated query logs into learned responses.

    Usage:
        processor = FeedbackProcessor(store, cache)
        summary = await processor.run()
    """

    def __init__(self, store: RelationalStore, cache: SemanticCache, window_hours: int = 24):
        self.store = store
        self.cache = cache
        self.window_hours = window_hours

    async def run(self, now: Optional[datetime] = None) -> FeedbackRunSummary:
        """
        Process ratings from the last ``window_hours``.

        Per-row failures are collected in the summary and do not stop the
        batch. Failing to read the feedback at all, or the breaker opening
        mid-run, propagates.
        """
        summary = FeedbackRunSummary(window_hours=self.window_hours)
        rows = await self.store.get_recent_feedback(self.window_hours, unprocessed_only=True, now=now)
        summary.fetched = len(rows)
        logger.info("Feedback learning started", window_hours=self.window_hours, rows=len(rows))

        save_tasks: List[asyncio.Task] = []
        try:
            for row in rows:
                try:
                    task = await self._process_row(row, summary, now)
                except CircuitOpenError:
                    raise
                except (StoreError, UpstreamUnavailableError, ValueError) as e:
                    summary.errors.append(f"Error processing feedback {row.id}: {e}")
                    logger.error("Failed to process feedback row", query_log_id=row.id, error=str(e))
                    continue
                if task is not None:
                    save_tasks.append(task)
        finally:
            if save_tasks:
                results = await asyncio.gather(*save_tasks)
                summary.embeddings_saved = sum(1 for saved in results if saved)

        logger.info(
            "Feedback learning completed",
            fetched=summary.fetched,
            processed=summary.processed,
            created=summary.created,
            updated=summary.updated,
            embeddings_saved=summary.embeddings_saved,
            errors=len(summary.errors),
        )
        return summary

    async def _process_row(
        self, row: RatedQuery, summary: FeedbackRunSummary, now: Optional[datetime]
    ) -> Optional[asyncio.Task]:
        """Fold one rating; return the pending cache save for new entries."""
        normalized = normalize_query(row.query)
        delta = rating_to_quality_delta(row.feedback_rating)

        def fold(existing: Optional[LearnedResponseEntry]) -> Tuple[float, int]:
            if existing is None:
                return delta, 1
            return fold_rating(existing.quality_score, existing.usage_count, delta)

        result = await self.store.fold_feedback(row.id, normalized, row.response, fold, embedding_id_for, now=now)
        if result is None:
            logger.info("Feedback already folded, skipping", query_log_id=row.id)
            return None

        entry, created = result
        summary.processed += 1
        if not created:
            summary.updated += 1
            logger.debug(
                "Learned response updated", entry_id=entry.id, quality_score=entry.quality_score, usage_count=entry.usage_count
            )
            return None

        summary.created += 1
        logger.debug("Learned response created", entry_id=entry.id, quality_score=entry.quality_score)
        return asyncio.create_task(self.cache.save(entry.embedding_id, normalized))

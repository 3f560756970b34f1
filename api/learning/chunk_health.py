"""Re-indexing candidate scan over chunk statistics."""

from datetime import datetime, timezone
from typing import Optional

import structlog

from api.models import ChunkHealthReport
from libs.storage.relational_store import RelationalStore

logger = structlog.get_logger(__name__)


class ChunkHealthScanner:
    """
    Flags chunks that should be re-processed.

    Two independent rules: chunks failing more than ``fail_ratio`` times
    as often as they succeed (with at least ``min_samples`` ratings), and
    chunks not used for ``stale_days``. The scanner only reports; it never
    touches the vector index.
    """

    def __init__(
        self,
        store: RelationalStore,
        stale_days: int = 60,
        fail_ratio: int = 3,
        min_samples: int = 3,
    ):
        self.store = store
        self.stale_days = stale_days
        self.fail_ratio = fail_ratio
        self.min_samples = min_samples

    async def scan(self, now: Optional[datetime] = None, limit: Optional[int] = None) -> ChunkHealthReport:
        now = now or datetime.now(timezone.utc)
        low_performance = await self.store.get_low_performance_chunks(
            fail_ratio=self.fail_ratio, min_samples=self.min_samples, limit=limit
        )
        stale = await self.store.get_stale_chunks(days=self.stale_days, now=now, limit=limit)

        problematic = list(dict.fromkeys([stat.chunk_id for stat in low_performance] + [stat.chunk_id for stat in stale]))
        logger.info(
            "Chunk health scan completed",
            low_performance=len(low_performance),
            stale=len(stale),
            problematic=len(problematic),
            stale_days=self.stale_days,
        )
        return ChunkHealthReport(
            generated_at=now,
            stale_days=self.stale_days,
            low_performance=low_performance,
            stale=stale,
            problematic_ids=problematic,
        )

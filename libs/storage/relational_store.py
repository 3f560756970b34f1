"""
Relational store for learned responses, chunk statistics and query logs.

SQLite on aiosqlite. Every public operation runs through the injected
``CircuitBreaker`` with a per-call timeout, so an unreachable database
trips the breaker and callers get ``CircuitOpenError`` fast instead of
waiting on each request.

Timestamps are stored as naive UTC strings in a fixed-width format so
that SQL string comparison orders them chronologically.
"""

from __future__ import annotations

import json
import sqlite3
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple, TypeVar

import aiosqlite
import structlog

from libs.common.errors import NotFoundError, StoreError, UpstreamUnavailableError, with_timeout
from libs.models.records import ChunkStat, LearnedResponseEntry, QueryLogEntry, RatedQuery
from libs.resilience.circuit_breaker import CircuitBreaker, is_connection_error

logger = structlog.get_logger(__name__)

T = TypeVar("T")

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%f"

# Ratings at or above this count as a success for every cited chunk
SUCCESS_MIN_RATING = 4
# Ratings at or below this count as a failure
FAILURE_MAX_RATING = 2

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS chunk_stats (
        chunk_id TEXT PRIMARY KEY,
        success_count INTEGER NOT NULL DEFAULT 0 CHECK (success_count >= 0),
        fail_count INTEGER NOT NULL DEFAULT 0 CHECK (fail_count >= 0),
        last_used TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS response_learning (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        query TEXT UNIQUE NOT NULL,
        answer TEXT NOT NULL,
        quality_score REAL NOT NULL DEFAULT 0 CHECK (quality_score BETWEEN -1 AND 1),
        usage_count INTEGER NOT NULL DEFAULT 1 CHECK (usage_count >= 1),
        embedding_id TEXT,
        last_improved_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS query_logs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        query TEXT NOT NULL,
        response TEXT NOT NULL,
        zone TEXT,
        development TEXT,
        sources_used TEXT NOT NULL DEFAULT '[]',
        response_time_ms INTEGER NOT NULL DEFAULT 0,
        feedback_rating INTEGER CHECK (feedback_rating BETWEEN 1 AND 5),
        feedback_comment TEXT,
        learning_processed_at TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS query_logs_chunks (
        query_log_id INTEGER NOT NULL REFERENCES query_logs(id) ON DELETE CASCADE,
        chunk_id TEXT NOT NULL,
        PRIMARY KEY (query_log_id, chunk_id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_response_learning_embedding_id ON response_learning(embedding_id)",
    "CREATE INDEX IF NOT EXISTS idx_query_logs_created_at ON query_logs(created_at)",
    "CREATE INDEX IF NOT EXISTS idx_chunk_stats_last_used ON chunk_stats(last_used)",
)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.strptime(value, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)


def _chunk_stat(row: aiosqlite.Row) -> ChunkStat:
    return ChunkStat(
        chunk_id=row["chunk_id"],
        success_count=row["success_count"],
        fail_count=row["fail_count"],
        last_used=parse_timestamp(row["last_used"]),
    )


def _learned_response(row: aiosqlite.Row) -> LearnedResponseEntry:
    return LearnedResponseEntry(
        id=row["id"],
        query=row["query"],
        answer=row["answer"],
        quality_score=row["quality_score"],
        usage_count=row["usage_count"],
        embedding_id=row["embedding_id"],
        last_improved_at=parse_timestamp(row["last_improved_at"]),
    )


class RelationalStore:
    """
    Async SQLite store guarded by a circuit breaker.

    Usage:
        store = RelationalStore("./data/realty_rag.db", breaker)
        await store.initialize()
        log_id = await store.save_query_log(entry)
    """

    def __init__(
        self,
        db_path: str,
        breaker: CircuitBreaker,
        timeout_seconds: float = 10.0,
        clock: Callable[[], datetime] = utc_now,
        read_only: bool = False,
    ):
        """
        Args:
            db_path: SQLite database file
            breaker: Breaker shared by every caller of this store
            timeout_seconds: Budget for each operation
            clock: Source of the current UTC time, injectable for tests
            read_only: Open an existing database without write access
        """
        self.db_path = db_path
        self.breaker = breaker
        self.timeout_seconds = timeout_seconds
        self._clock = clock
        self.read_only = read_only

    @asynccontextmanager
    async def _connect(self) -> AsyncIterator[aiosqlite.Connection]:
        if self.read_only:
            connection = aiosqlite.connect(f"{Path(self.db_path).resolve().as_uri()}?mode=ro", uri=True)
        else:
            connection = aiosqlite.connect(self.db_path)
        async with connection as db:
            db.row_factory = aiosqlite.Row
            await db.execute("PRAGMA foreign_keys = ON")
            yield db

    async def _run(self, operation_name: str, operation: Callable[[], Awaitable[T]]) -> T:
        """Run ``operation`` under the breaker and the store timeout."""
        try:
            return await self.breaker.call(
                lambda: with_timeout(operation(), self.timeout_seconds, operation_name),
                operation_name,
            )
        except sqlite3.Error as e:
            if is_connection_error(e):
                raise UpstreamUnavailableError(f"Relational store unavailable during {operation_name}: {e}") from e
            raise StoreError(f"{operation_name} failed: {e}") from e

    async def initialize(self) -> None:
        """Create the database file and tables if they do not exist."""
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        async def op():
            async with self._connect() as db:
                for statement in SCHEMA:
                    await db.execute(statement)
                await db.commit()

        await self._run("initialize schema", op)
        logger.info("Relational store initialized", db_path=self.db_path)

    # Query logs

    async def save_query_log(self, entry: QueryLogEntry) -> int:
        """Insert a query log row and return its id."""
        created_at = format_timestamp(entry.created_at or self._clock())

        async def op() -> int:
            async with self._connect() as db:
                cursor = await db.execute(
                    """
                    INSERT INTO query_logs
                        (query, response, zone, development, sources_used, response_time_ms, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        entry.query,
                        entry.response,
                        entry.zone,
                        entry.development,
                        json.dumps(entry.sources_used),
                        entry.response_time_ms,
                        created_at,
                    ),
                )
                await db.commit()
                return cursor.lastrowid

        return await self._run("save query log", op)

    async def register_query_chunks(self, query_log_id: int, chunk_ids: Iterable[str]) -> None:
        """Link a query log to the chunks that were given to the model."""
        rows = [(query_log_id, chunk_id) for chunk_id in dict.fromkeys(chunk_ids) if chunk_id]
        if not rows:
            return

        async def op():
            async with self._connect() as db:
                await db.executemany(
                    "INSERT OR IGNORE INTO query_logs_chunks (query_log_id, chunk_id) VALUES (?, ?)",
                    rows,
                )
                await db.commit()

        await self._run("register query chunks", op)

    async def get_query_log(self, query_log_id: int) -> Optional[QueryLogEntry]:
        async def op():
            async with self._connect() as db:
                async with db.execute("SELECT * FROM query_logs WHERE id = ?", (query_log_id,)) as cursor:
                    return await cursor.fetchone()

        row = await self._run("get query log", op)
        if row is None:
            return None
        return QueryLogEntry(
            id=row["id"],
            query=row["query"],
            response=row["response"],
            zone=row["zone"],
            development=row["development"],
            sources_used=json.loads(row["sources_used"] or "[]"),
            response_time_ms=row["response_time_ms"],
            feedback_rating=row["feedback_rating"],
            feedback_comment=row["feedback_comment"],
            created_at=parse_timestamp(row["created_at"]),
        )

    async def save_feedback(self, query_log_id: int, rating: int, comment: Optional[str] = None) -> None:
        """
        Record a 1-5 rating on a query log.

        A new rating clears ``learning_processed_at`` so the feedback job
        folds the latest rating in on its next run.

        Raises:
            NotFoundError: if the query log does not exist.
        """

        async def op() -> int:
            async with self._connect() as db:
                cursor = await db.execute(
                    """
                    UPDATE query_logs
                    SET feedback_rating = ?, feedback_comment = ?, learning_processed_at = NULL
                    WHERE id = ?
                    """,
                    (rating, comment, query_log_id),
                )
                await db.commit()
                return cursor.rowcount

        updated = await self._run("save feedback", op)
        if updated == 0:
            raise NotFoundError(f"Query log {query_log_id} not found")

    async def get_recent_feedback(
        self,
        hours: int = 24,
        unprocessed_only: bool = True,
        now: Optional[datetime] = None,
    ) -> List[RatedQuery]:
        """Rated query logs created within the last ``hours``, newest first."""
        cutoff = format_timestamp((now or self._clock()) - timedelta(hours=hours))
        sql = """
            SELECT id, query, response, feedback_rating
            FROM query_logs
            WHERE feedback_rating IS NOT NULL
              AND created_at > ?
        """
        if unprocessed_only:
            sql += " AND learning_processed_at IS NULL"
        sql += " ORDER BY created_at DESC, id DESC"

        async def op():
            async with self._connect() as db:
                async with db.execute(sql, (cutoff,)) as cursor:
                    return await cursor.fetchall()

        rows = await self._run("get recent feedback", op)
        return [
            RatedQuery(id=row["id"], query=row["query"], response=row["response"], feedback_rating=row["feedback_rating"])
            for row in rows
        ]

    async def mark_feedback_processed(self, query_log_id: int, now: Optional[datetime] = None) -> None:
        processed_at = format_timestamp(now or self._clock())

        async def op():
            async with self._connect() as db:
                await db.execute(
                    "UPDATE query_logs SET learning_processed_at = ? WHERE id = ?",
                    (processed_at, query_log_id),
                )
                await db.commit()

        await self._run("mark feedback processed", op)

    # Chunk statistics

    async def update_chunk_stats(self, query_log_id: int, rating: int) -> int:
        """
        Fold a rating into the stats of every chunk linked to a query log.

        Ratings of 4-5 count as a success, 1-2 as a failure and 3 changes
        nothing.

        Returns:
            Number of chunks updated
        """
        if rating >= SUCCESS_MIN_RATING:
            success = True
        elif rating <= FAILURE_MAX_RATING:
            success = False
        else:
            return 0

        used_at = format_timestamp(self._clock())

        async def op() -> int:
            async with self._connect() as db:
                async with db.execute(
                    "SELECT chunk_id FROM query_logs_chunks WHERE query_log_id = ?", (query_log_id,)
                ) as cursor:
                    chunk_ids = [row["chunk_id"] for row in await cursor.fetchall()]
                for chunk_id in chunk_ids:
                    await self._upsert_chunk_outcome(db, chunk_id, success, used_at)
                await db.commit()
                return len(chunk_ids)

        updated = await self._run("update chunk stats", op)
        logger.debug("Chunk stats updated", query_log_id=query_log_id, rating=rating, chunks=updated)
        return updated

    async def record_chunk_outcome(self, chunk_id: str, success: bool, used_at: Optional[datetime] = None) -> None:
        """Increment the success or fail counter of a single chunk."""
        timestamp = format_timestamp(used_at or self._clock())

        async def op():
            async with self._connect() as db:
                await self._upsert_chunk_outcome(db, chunk_id, success, timestamp)
                await db.commit()

        await self._run("record chunk outcome", op)

    @staticmethod
    async def _upsert_chunk_outcome(db: aiosqlite.Connection, chunk_id: str, success: bool, used_at: str) -> None:
        success_inc, fail_inc = (1, 0) if success else (0, 1)
        await db.execute(
            """
            INSERT INTO chunk_stats (chunk_id, success_count, fail_count, last_used)
            VALUES (?, ?, ?, ?)
            ON CONFLICT (chunk_id) DO UPDATE SET
                success_count = chunk_stats.success_count + excluded.success_count,
                fail_count = chunk_stats.fail_count + excluded.fail_count,
                last_used = excluded.last_used
            """,
            (chunk_id, success_inc, fail_inc, used_at),
        )

    async def get_chunk_stats(self, chunk_ids: Iterable[str]) -> Dict[str, ChunkStat]:
        """
        Stats for each requested chunk.

        Chunks without a row get zero counters (and a 0.5 success ratio).
        """
        ids = list(dict.fromkeys(chunk_ids))
        if not ids:
            return {}
        placeholders = ",".join("?" for _ in ids)

        async def op():
            async with self._connect() as db:
                async with db.execute(
                    f"SELECT * FROM chunk_stats WHERE chunk_id IN ({placeholders})", ids
                ) as cursor:
                    return await cursor.fetchall()

        rows = await self._run("get chunk stats", op)
        stats = {row["chunk_id"]: _chunk_stat(row) for row in rows}
        for chunk_id in ids:
            stats.setdefault(chunk_id, ChunkStat(chunk_id=chunk_id))
        return stats

    async def get_low_performance_chunks(
        self,
        fail_ratio: int = 3,
        min_samples: int = 3,
        limit: Optional[int] = None,
    ) -> List[ChunkStat]:
        """Chunks failing far more often than they succeed, worst first."""
        sql = """
            SELECT * FROM chunk_stats
            WHERE fail_count > success_count * ?
              AND success_count + fail_count >= ?
            ORDER BY fail_count DESC, last_used ASC
        """
        params: list = [fail_ratio, min_samples]
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        async def op():
            async with self._connect() as db:
                async with db.execute(sql, params) as cursor:
                    return await cursor.fetchall()

        return [_chunk_stat(row) for row in await self._run("get low performance chunks", op)]

    async def get_stale_chunks(
        self,
        days: int = 60,
        now: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[ChunkStat]:
        """Chunks whose last use is older than ``days``, oldest first."""
        cutoff = format_timestamp((now or self._clock()) - timedelta(days=days))
        sql = "SELECT * FROM chunk_stats WHERE last_used < ? ORDER BY last_used ASC"
        params: list = [cutoff]
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        async def op():
            async with self._connect() as db:
                async with db.execute(sql, params) as cursor:
                    return await cursor.fetchall()

        return [_chunk_stat(row) for row in await self._run("get stale chunks", op)]

    # Learned responses

    async def get_learned_response_by_query(self, normalized_query: str) -> Optional[LearnedResponseEntry]:
        async def op():
            async with self._connect() as db:
                async with db.execute(
                    "SELECT * FROM response_learning WHERE query = ?", (normalized_query,)
                ) as cursor:
                    return await cursor.fetchone()

        row = await self._run("get learned response by query", op)
        return _learned_response(row) if row else None

    async def get_learned_response_by_id(self, entry_id: int) -> Optional[LearnedResponseEntry]:
        async def op():
            async with self._connect() as db:
                async with db.execute("SELECT * FROM response_learning WHERE id = ?", (entry_id,)) as cursor:
                    return await cursor.fetchone()

        row = await self._run("get learned response by id", op)
        return _learned_response(row) if row else None

    async def get_learned_responses_by_embedding_ids(
        self, embedding_ids: Iterable[str]
    ) -> Dict[str, LearnedResponseEntry]:
        """Map each known embedding id to its learned response row."""
        ids = list(dict.fromkeys(embedding_ids))
        if not ids:
            return {}
        placeholders = ",".join("?" for _ in ids)

        async def op():
            async with self._connect() as db:
                async with db.execute(
                    f"SELECT * FROM response_learning WHERE embedding_id IN ({placeholders})", ids
                ) as cursor:
                    return await cursor.fetchall()

        rows = await self._run("get learned responses by embedding ids", op)
        return {row["embedding_id"]: _learned_response(row) for row in rows}

    async def insert_learned_response(
        self,
        normalized_query: str,
        answer: str,
        quality_score: float,
        now: Optional[datetime] = None,
    ) -> LearnedResponseEntry:
        """Insert a new learned response with ``usage_count = 1``."""
        improved_at = now or self._clock()

        async def op() -> int:
            async with self._connect() as db:
                cursor = await db.execute(
                    """
                    INSERT INTO response_learning (query, answer, quality_score, usage_count, last_improved_at)
                    VALUES (?, ?, ?, 1, ?)
                    """,
                    (normalized_query, answer, quality_score, format_timestamp(improved_at)),
                )
                await db.commit()
                return cursor.lastrowid

        entry_id = await self._run("insert learned response", op)
        return LearnedResponseEntry(
            id=entry_id,
            query=normalized_query,
            answer=answer,
            quality_score=quality_score,
            usage_count=1,
            last_improved_at=parse_timestamp(format_timestamp(improved_at)),
        )

    async def update_learned_response_score(
        self,
        entry_id: int,
        quality_score: float,
        usage_count: int,
        now: Optional[datetime] = None,
    ) -> None:
        """
        Raises:
            NotFoundError: if the entry does not exist.
        """
        improved_at = format_timestamp(now or self._clock())

        async def op() -> int:
            async with self._connect() as db:
                cursor = await db.execute(
                    """
                    UPDATE response_learning
                    SET quality_score = ?, usage_count = ?, last_improved_at = ?
                    WHERE id = ?
                    """,
                    (quality_score, usage_count, improved_at, entry_id),
                )
                await db.commit()
                return cursor.rowcount

        if await self._run("update learned response score", op) == 0:
            raise NotFoundError(f"Learned response {entry_id} not found")

    async def fold_feedback(
        self,
        query_log_id: int,
        normalized_query: str,
        answer: str,
        fold: Callable[[Optional[LearnedResponseEntry]], Tuple[float, int]],
        embedding_id_for: Callable[[int], str],
        now: Optional[datetime] = None,
    ) -> Optional[Tuple[LearnedResponseEntry, bool]]:
        """
        Fold one rating into its learned response and mark the log processed.

        Both writes commit in one transaction, so a rating is either folded
        and marked or neither.

        Args:
            query_log_id: Rated query log row
            normalized_query: Learned response key
            answer: Answer stored when a new entry is created
            fold: Maps the existing entry (or None) to (quality_score, usage_count)
            embedding_id_for: Builds the embedding id of a new entry from its row id
            now: Fold time

        Returns:
            (entry, created), or None if the log was already processed.
        """
        folded_at = format_timestamp(now or self._clock())

        async def op():
            async with self._connect() as db:
                await db.execute("BEGIN IMMEDIATE")
                cursor = await db.execute(
                    "UPDATE query_logs SET learning_processed_at = ? WHERE id = ? AND learning_processed_at IS NULL",
                    (folded_at, query_log_id),
                )
                if cursor.rowcount == 0:
                    await db.rollback()
                    return None

                async with db.execute(
                    "SELECT * FROM response_learning WHERE query = ?", (normalized_query,)
                ) as select:
                    row = await select.fetchone()
                existing = _learned_response(row) if row else None
                quality_score, usage_count = fold(existing)

                if existing is not None:
                    await db.execute(
                        """
                        UPDATE response_learning
                        SET quality_score = ?, usage_count = ?, last_improved_at = ?
                        WHERE id = ?
                        """,
                        (quality_score, usage_count, folded_at, existing.id),
                    )
                    entry = existing.model_copy(update={"quality_score": quality_score, "usage_count": usage_count})
                    created = False
                else:
                    cursor = await db.execute(
                        """
                        INSERT INTO response_learning (query, answer, quality_score, usage_count, last_improved_at)
                        VALUES (?, ?, ?, ?, ?)
                        """,
                        (normalized_query, answer, quality_score, usage_count, folded_at),
                    )
                    entry_id = cursor.lastrowid
                    embedding_id = embedding_id_for(entry_id)
                    await db.execute(
                        "UPDATE response_learning SET embedding_id = ? WHERE id = ?", (embedding_id, entry_id)
                    )
                    entry = LearnedResponseEntry(
                        id=entry_id,
                        query=normalized_query,
                        answer=answer,
                        quality_score=quality_score,
                        usage_count=usage_count,
                        embedding_id=embedding_id,
                    )
                    created = True

                await db.commit()
                return entry.model_copy(update={"last_improved_at": parse_timestamp(folded_at)}), created

        return await self._run("fold feedback", op)

    async def set_learned_response_embedding_id(self, entry_id: int, embedding_id: str) -> None:
        async def op() -> int:
            async with self._connect() as db:
                cursor = await db.execute(
                    "UPDATE response_learning SET embedding_id = ? WHERE id = ?",
                    (embedding_id, entry_id),
                )
                await db.commit()
                return cursor.rowcount

        if await self._run("set learned response embedding id", op) == 0:
            raise NotFoundError(f"Learned response {entry_id} not found")

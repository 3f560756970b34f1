"""
Tests for the SQLite relational store.

Tests verify:
- Query log and feedback round trip
- Chunk stats folding from ratings
- Low performance and stale chunk queries
- Learned response lookups
- Error mapping (NotFoundError, StoreError, CircuitOpenError)
"""

from datetime import timedelta

import pytest

from libs.common.errors import CircuitOpenError, NotFoundError, StoreError
from libs.models.records import QueryLogEntry


async def _logged_query(store, chunk_ids=("chunk-1", "chunk-2"), query="¿Precio del lote 12?"):
    log_id = await store.save_query_log(
        QueryLogEntry(query=query, response="1,200,000 MXN [1]", zone="yucatan", development="Amura",
                      sources_used=["lista_precios.pdf"], response_time_ms=120)
    )
    await store.register_query_chunks(log_id, chunk_ids)
    return log_id


@pytest.mark.asyncio
async def test_query_log_round_trip(store, now):
    """A saved query log reads back unchanged."""
    log_id = await _logged_query(store)

    entry = await store.get_query_log(log_id)
    assert entry.query == "¿Precio del lote 12?"
    assert entry.sources_used == ["lista_precios.pdf"]
    assert entry.created_at == now
    assert entry.feedback_rating is None


@pytest.mark.asyncio
async def test_get_missing_query_log(store):
    """A missing query log reads as None."""
    assert await store.get_query_log(12345) is None


@pytest.mark.asyncio
async def test_save_feedback_on_missing_log(store):
    """Rating a missing log raises NotFoundError."""
    with pytest.raises(NotFoundError):
        await store.save_feedback(999, 5)


@pytest.mark.asyncio
async def test_recent_feedback_window_and_processed_flag(store, now):
    """Recent feedback honors the window and the processed flag."""
    recent = await _logged_query(store, query="reciente")
    old = await store.save_query_log(
        QueryLogEntry(query="antigua", response="r", created_at=now - timedelta(hours=30))
    )
    unrated = await _logged_query(store, query="sin calificar")
    await store.save_feedback(recent, 5, "Muy útil")
    await store.save_feedback(old, 4)

    rows = await store.get_recent_feedback(hours=24)
    assert [row.id for row in rows] == [recent]
    assert unrated not in [row.id for row in rows]

    await store.mark_feedback_processed(recent)
    assert await store.get_recent_feedback(hours=24) == []
    assert len(await store.get_recent_feedback(hours=24, unprocessed_only=False)) == 1

    # A new rating makes the row eligible again
    await store.save_feedback(recent, 2)
    rows = await store.get_recent_feedback(hours=24)
    assert [(row.id, row.feedback_rating) for row in rows] == [(recent, 2)]


@pytest.mark.asyncio
async def test_update_chunk_stats_by_rating(store, now):
    """Ratings update chunk stats by the success and failure rule."""
    log_id = await _logged_query(store)

    assert await store.update_chunk_stats(log_id, 5) == 2
    assert await store.update_chunk_stats(log_id, 1) == 2
    assert await store.update_chunk_stats(log_id, 3) == 0

    stats = await store.get_chunk_stats(["chunk-1", "chunk-2", "chunk-unknown"])
    assert stats["chunk-1"].success_count == 1
    assert stats["chunk-1"].fail_count == 1
    assert stats["chunk-1"].last_used == now
    assert stats["chunk-unknown"].total == 0
    assert stats["chunk-unknown"].success_ratio == 0.5


@pytest.mark.asyncio
async def test_register_query_chunks_ignores_duplicates(store):
    """Registering a chunk twice keeps one link."""
    log_id = await _logged_query(store, chunk_ids=["chunk-1", "chunk-1", ""])
    await store.register_query_chunks(log_id, ["chunk-1"])

    assert await store.update_chunk_stats(log_id, 5) == 1


@pytest.mark.asyncio
async def test_low_performance_chunks(store):
    """Chunks failing three times more than succeeding are reported."""
    for _ in range(4):
        await store.record_chunk_outcome("bad", success=False)
    await store.record_chunk_outcome("bad", success=True)
    # fail == 3 * success is not strictly greater
    for _ in range(3):
        await store.record_chunk_outcome("borderline", success=False)
    await store.record_chunk_outcome("borderline", success=True)
    # too few samples
    for _ in range(2):
        await store.record_chunk_outcome("new", success=False)

    low = await store.get_low_performance_chunks(fail_ratio=3, min_samples=3)
    assert [stat.chunk_id for stat in low] == ["bad"]


@pytest.mark.asyncio
async def test_stale_chunks(store, now):
    """Chunks unused past the cutoff are reported oldest first."""
    await store.record_chunk_outcome("old", True, used_at=now - timedelta(days=90))
    await store.record_chunk_outcome("older", True, used_at=now - timedelta(days=120))
    await store.record_chunk_outcome("fresh", True, used_at=now - timedelta(days=10))

    stale = await store.get_stale_chunks(days=60)
    assert [stat.chunk_id for stat in stale] == ["older", "old"]
    assert [stat.chunk_id for stat in await store.get_stale_chunks(days=60, limit=1)] == ["older"]


@pytest.mark.asyncio
async def test_learned_response_lookups(store):
    """Learned responses are found by query, id and embedding id."""
    entry = await store.insert_learned_response("precio del lote 12", "1,200,000 MXN", 0.5)
    assert entry.usage_count == 1
    assert entry.embedding_id is None

    await store.set_learned_response_embedding_id(entry.id, f"learned-{entry.id}")
    await store.update_learned_response_score(entry.id, 0.75, 2)

    by_query = await store.get_learned_response_by_query("precio del lote 12")
    assert by_query.quality_score == 0.75
    assert by_query.usage_count == 2

    by_embedding = await store.get_learned_responses_by_embedding_ids([f"learned-{entry.id}", "learned-999"])
    assert list(by_embedding) == [f"learned-{entry.id}"]
    assert await store.get_learned_response_by_id(999) is None


@pytest.mark.asyncio
async def test_duplicate_learned_query_is_store_error(store):
    """A duplicate query raises StoreError without tripping the breaker."""
    await store.insert_learned_response("precio del lote 12", "a", 0.5)
    with pytest.raises(StoreError):
        await store.insert_learned_response("precio del lote 12", "b", 0.5)
    assert store.breaker.snapshot().failure_count == 0


@pytest.mark.asyncio
async def test_update_missing_learned_response(store):
    """Updating a missing learned response raises NotFoundError."""
    with pytest.raises(NotFoundError):
        await store.update_learned_response_score(42, 0.5, 2)
    with pytest.raises(NotFoundError):
        await store.set_learned_response_embedding_id(42, "learned-42")


@pytest.mark.asyncio
async def test_open_breaker_rejects_store_calls(store, breaker):
    """An open breaker rejects store calls."""
    for _ in range(breaker.failure_threshold):
        breaker.record_failure(ConnectionRefusedError("connection refused"))

    with pytest.raises(CircuitOpenError):
        await store.get_query_log(1)


@pytest.mark.asyncio
async def test_fold_feedback_creates_then_updates(store):
    """Folding creates the learned response, then updates it on a later rating."""
    first_log = await _logged_query(store)
    second_log = await _logged_query(store)
    await store.save_feedback(first_log, 5)
    await store.save_feedback(second_log, 1)

    entry, created = await store.fold_feedback(
        first_log, "precio del lote 12", "1,200,000 MXN", lambda existing: (1.0, 1), lambda entry_id: f"learned-{entry_id}"
    )
    assert created
    assert entry.embedding_id == f"learned-{entry.id}"

    entry, created = await store.fold_feedback(
        second_log,
        "precio del lote 12",
        "otra respuesta",
        lambda existing: (round((existing.quality_score * existing.usage_count - 1.0) / 2, 6), existing.usage_count + 1),
        lambda entry_id: f"learned-{entry_id}",
    )
    assert not created
    assert entry.quality_score == 0.0
    assert entry.usage_count == 2
    assert entry.answer == "1,200,000 MXN"
    assert await store.get_recent_feedback(24) == []


@pytest.mark.asyncio
async def test_fold_feedback_skips_processed_row(store):
    """A row already marked processed is not folded again."""
    log_id = await _logged_query(store)
    await store.save_feedback(log_id, 4)
    await store.mark_feedback_processed(log_id)

    result = await store.fold_feedback(
        log_id, "precio del lote 12", "a", lambda existing: (0.5, 1), lambda entry_id: f"learned-{entry_id}"
    )

    assert result is None
    assert await store.get_learned_response_by_query("precio del lote 12") is None


@pytest.mark.asyncio
async def test_fold_feedback_failure_rolls_back_both_writes(store):
    """A failure inside the fold leaves the entry unchanged and the row unprocessed."""
    entry = await store.insert_learned_response("precio del lote 12", "1,200,000 MXN", 1.0)
    log_id = await _logged_query(store)
    await store.save_feedback(log_id, 1)

    def broken_fold(existing):
        raise RuntimeError("fold failed")

    with pytest.raises(RuntimeError):
        await store.fold_feedback(log_id, "precio del lote 12", "a", broken_fold, lambda entry_id: f"learned-{entry_id}")

    unchanged = await store.get_learned_response_by_id(entry.id)
    assert unchanged.usage_count == 1
    assert [row.id for row in await store.get_recent_feedback(24)] == [log_id]

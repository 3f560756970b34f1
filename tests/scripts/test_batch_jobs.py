"""Tests for the batch job entry points and their exit codes."""

import asyncio
import json
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from libs.common.errors import JobAlreadyRunningError
from libs.common.settings import get_settings
from libs.resilience.circuit_breaker import CircuitBreaker
from libs.storage.relational_store import RelationalStore
from scripts import process_feedback_learning, report_reindex_candidates


@pytest.fixture
def db_path(tmp_path, monkeypatch):
    path = tmp_path / "jobs.db"
    monkeypatch.setenv("REALTY_DATABASE_PATH", str(path))
    get_settings.cache_clear()
    return path


@pytest.fixture(autouse=True)
def no_redis(monkeypatch):
    """Run the jobs on the process-local lock."""
    for module in (report_reindex_candidates, process_feedback_learning):
        monkeypatch.setattr(module, "get_redis_client", AsyncMock(return_value=None))


async def _initialize(db_path):
    await RelationalStore(str(db_path), CircuitBreaker()).initialize()


async def _seed_stale_chunk(db_path):
    store = RelationalStore(str(db_path), CircuitBreaker())
    await store.initialize()
    await store.record_chunk_outcome(
        "chunk-old", True, used_at=datetime.now(timezone.utc) - timedelta(days=61)
    )


def test_report_lists_stale_chunk(db_path, capsys):
    """The text report lists stale chunks."""
    asyncio.run(_seed_stale_chunk(db_path))

    assert report_reindex_candidates.main([]) == 0
    output = capsys.readouterr().out
    assert "RE-INDEXING CANDIDATES" in output
    assert "chunk-old" in output
    assert "Total problematic chunks: 1" in output


def test_report_json_on_empty_database(db_path, capsys):
    """An initialized database with no stats gives an empty JSON report."""
    asyncio.run(_initialize(db_path))

    assert report_reindex_candidates.main(["--json", "--stale-days", "30"]) == 0

    report = json.loads(capsys.readouterr().out)
    assert report["stale_days"] == 30
    assert report["problematic_ids"] == []


def test_report_fails_when_database_unusable(tmp_path, monkeypatch, capsys):
    """An unusable database path exits 1."""
    blocker = tmp_path / "not-a-directory"
    blocker.write_text("x")
    monkeypatch.setenv("REALTY_DATABASE_PATH", str(blocker / "jobs.db"))
    get_settings.cache_clear()

    assert report_reindex_candidates.main([]) == 1
    assert capsys.readouterr().out == ""


def test_feedback_job_prints_summary(db_path, capsys):
    """The feedback job prints a JSON summary."""
    assert process_feedback_learning.main(["--hours", "12"]) == 0

    summary = json.loads(capsys.readouterr().out)
    assert summary["window_hours"] == 12
    assert summary["processed"] == 0


def test_feedback_job_skips_when_already_running(db_path, monkeypatch, capsys):
    """A held job lock exits 0 without output."""
    monkeypatch.setattr(
        process_feedback_learning, "run", AsyncMock(side_effect=JobAlreadyRunningError("process-feedback-learning"))
    )

    assert process_feedback_learning.main([]) == 0
    assert capsys.readouterr().out == ""

def test_report_fails_on_missing_database(db_path, capsys):
    """A mistyped database path exits 1 and creates nothing."""
    assert report_reindex_candidates.main([]) == 1
    assert capsys.readouterr().out == ""
    assert not db_path.exists()


def test_report_does_not_write_to_database(db_path, capsys):
    """The report leaves the database file untouched."""
    asyncio.run(_seed_stale_chunk(db_path))
    before = db_path.read_bytes()

    assert report_reindex_candidates.main(["--json"]) == 0
    assert db_path.read_bytes() == before

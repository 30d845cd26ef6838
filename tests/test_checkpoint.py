import sqlite3

import pytest

from attendbot import checkpoint
from attendbot.checkpoint import CheckpointScheduler, checkpoint_guild, clear_persisted
from attendbot.db import connect
from attendbot.models import EventSession, EventType, format_timestamp
from attendbot.recorder import SessionRegistry

from conftest import CHANNEL, EVENT_START, GUILD


def _registry(present=()) -> SessionRegistry:
    registry = SessionRegistry()
    registry.start_event(EventSession(GUILD, CHANNEL, EventType.MOVIE, "2024-06-01", EVENT_START), present)
    return registry


def _session_row(user_id: int):
    with connect() as conn:
        return conn.execute(
            "SELECT * FROM active_sessions WHERE guild_id=? AND user_id=?",
            (GUILD, user_id),
        ).fetchone()


@pytest.mark.asyncio
async def test_open_session_is_written_verbatim(at):
    registry = _registry(present=[7])
    written = await checkpoint_guild(registry, GUILD, at(10))
    assert written == 1
    row = _session_row(7)
    assert row["current_session_start_utc"] == format_timestamp(EVENT_START)
    assert row["accumulated_minutes"] == 0
    assert row["last_persisted_at_utc"] == format_timestamp(at(10))
    session = registry.get_session(GUILD, 7)
    assert session.last_persisted_at == at(10)
    assert session.dirty is False


@pytest.mark.asyncio
async def test_event_row_is_written(at):
    registry = _registry()
    await checkpoint_guild(registry, GUILD, at(1))
    with connect() as conn:
        row = conn.execute("SELECT * FROM active_events WHERE guild_id=?", (GUILD,)).fetchone()
    assert row["channel_id"] == CHANNEL
    assert row["event_type"] == "movie"
    assert row["ended_at_utc"] is None


@pytest.mark.asyncio
async def test_clean_closed_sessions_are_skipped(at):
    registry = _registry(present=[7, 8])
    registry.on_leave(GUILD, 8, at(15))
    assert await checkpoint_guild(registry, GUILD, at(20)) == 2
    # 8 is closed and unchanged, 7 is still open and advances its watermark
    assert await checkpoint_guild(registry, GUILD, at(25)) == 1
    assert _session_row(8)["last_persisted_at_utc"] == format_timestamp(at(20))
    assert _session_row(8)["accumulated_minutes"] == 15
    assert _session_row(7)["last_persisted_at_utc"] == format_timestamp(at(25))


@pytest.mark.asyncio
async def test_failed_write_keeps_sessions_dirty(at, monkeypatch):
    registry = _registry(present=[7])
    real_connect = checkpoint.connect

    def broken():
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(checkpoint, "connect", broken)
    assert await checkpoint_guild(registry, GUILD, at(5)) == 0
    session = registry.get_session(GUILD, 7)
    assert session.dirty is True
    assert session.last_persisted_at is None

    monkeypatch.setattr(checkpoint, "connect", real_connect)
    assert await checkpoint_guild(registry, GUILD, at(10)) == 1
    assert registry.get_session(GUILD, 7).dirty is False


@pytest.mark.asyncio
async def test_clear_persisted_removes_guild_rows(at):
    registry = _registry(present=[7])
    await checkpoint_guild(registry, GUILD, at(5))
    with connect() as conn:
        clear_persisted(conn, GUILD)
    assert _session_row(7) is None


@pytest.mark.asyncio
async def test_scheduler_tracks_one_timer_per_guild():
    scheduler = CheckpointScheduler(_registry(), minutes=60)
    scheduler.start(GUILD)
    scheduler.start(GUILD)
    assert scheduler.is_running(GUILD)
    scheduler.stop(GUILD)
    assert not scheduler.is_running(GUILD)
    scheduler.stop(GUILD)

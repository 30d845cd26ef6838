import asyncio

import pytest

from attendbot import ledger
from attendbot.db import connect
from attendbot.errors import EventStateError, ValidationError
from attendbot.finalize import end_event, get_record, upsert_record
from attendbot.ledger import (
    BUMP_REASON,
    add_minutes,
    bump_to_qualified,
    credit_past_event,
    ensure_not_live,
    get_adjustments,
    validate_event_date,
    validate_snowflake,
)
from attendbot.models import AdjustmentType, EventSession, EventType, FinalAttendanceRecord
from attendbot.recorder import SessionRegistry

from conftest import CHANNEL, EVENT_START, GUILD, MODERATOR

USER = 123456789012345678


async def _finished_event(at, event_type, minutes_present, runtime):
    registry = SessionRegistry()
    registry.start_event(EventSession(GUILD, CHANNEL, event_type, "2024-06-01", EVENT_START), [USER])
    registry.on_leave(GUILD, USER, at(minutes_present))
    await end_event(registry, GUILD, now=at(runtime))


def test_snowflake_bounds():
    assert validate_snowflake("42") == 42
    with pytest.raises(ValidationError):
        validate_snowflake(0)
    with pytest.raises(ValidationError):
        validate_snowflake(2 ** 64)
    with pytest.raises(ValidationError):
        validate_snowflake("not-an-id")


@pytest.mark.parametrize("value", ["2024-2-3", "03/02/2024", "2024-02-30", ""])
def test_bad_dates_are_rejected(value):
    with pytest.raises(ValidationError):
        validate_event_date(value)


@pytest.mark.asyncio
async def test_oversized_reason_writes_nothing():
    with pytest.raises(ValidationError):
        await credit_past_event(GUILD, USER, "2024-06-01", 30, MODERATOR, "x" * 513)
    assert get_record(GUILD, USER, "2024-06-01") is None
    assert get_adjustments(GUILD) == []


@pytest.mark.asyncio
async def test_add_requires_active_event():
    with pytest.raises(EventStateError):
        await add_minutes(SessionRegistry(), GUILD, USER, 10, MODERATOR)
    assert get_adjustments(GUILD) == []


@pytest.mark.asyncio
async def test_add_rejects_out_of_range_minutes(at):
    registry = SessionRegistry()
    registry.start_event(EventSession(GUILD, CHANNEL, EventType.MOVIE, "2024-06-01", EVENT_START))
    with pytest.raises(ValidationError):
        await add_minutes(registry, GUILD, USER, 301, MODERATOR, now=at(5))
    assert registry.get_session(GUILD, USER) is None


@pytest.mark.asyncio
async def test_add_is_logged_and_checkpointed(at):
    registry = SessionRegistry()
    registry.start_event(EventSession(GUILD, CHANNEL, EventType.MOVIE, "2024-06-01", EVENT_START))
    total = await add_minutes(registry, GUILD, USER, 25, MODERATOR, "bot was down", now=at(5))
    assert total == 25
    [entry] = get_adjustments(GUILD, USER)
    assert entry["operation"] == "add"
    assert entry["minutes"] == 25
    assert entry["actor_id"] == MODERATOR
    with connect() as conn:
        row = conn.execute("SELECT * FROM active_sessions WHERE user_id=?", (USER,)).fetchone()
    assert row["accumulated_minutes"] == 25
    assert row["adjusted_by"] == MODERATOR


@pytest.mark.asyncio
async def test_bump_overrides_automatic_failure(at):
    await _finished_event(at, EventType.GAME, minutes_present=30, runtime=120)
    assert get_record(GUILD, USER, "2024-06-01").qualified is False

    changed, previously = await bump_to_qualified(GUILD, USER, "2024-06-01", MODERATOR, event_type=EventType.GAME)

    assert (changed, previously) == (True, False)
    record = get_record(GUILD, USER, "2024-06-01")
    assert record.qualified is True
    assert record.adjustment_type is AdjustmentType.MANUAL
    assert record.adjusted_by == MODERATOR
    assert record.adjustment_reason == BUMP_REASON
    # credited with the full runtime of the event
    assert record.duration_minutes == 120
    assert record.event_start_time == EVENT_START


@pytest.mark.asyncio
async def test_bump_is_skipped_when_already_qualified(at):
    await _finished_event(at, EventType.MOVIE, minutes_present=45, runtime=60)
    result = await bump_to_qualified(GUILD, USER, "2024-06-01", MODERATOR, "double check")
    assert result == (False, True)
    assert get_adjustments(GUILD) == []


@pytest.mark.asyncio
async def test_bump_without_record_uses_fallback_minutes():
    await bump_to_qualified(GUILD, USER, "2024-05-01", MODERATOR, event_type=EventType.MOVIE)
    await bump_to_qualified(GUILD, USER, "2024-05-02", MODERATOR, event_type=EventType.GAME)
    assert get_record(GUILD, USER, "2024-05-01").duration_minutes == 30
    assert get_record(GUILD, USER, "2024-05-02").duration_minutes == 60
    assert [row["operation"] for row in get_adjustments(GUILD, USER)] == ["bump", "bump"]


@pytest.mark.asyncio
async def test_credit_adds_to_existing_record_and_recomputes(at):
    await _finished_event(at, EventType.MOVIE, minutes_present=20, runtime=90)
    record = await credit_past_event(GUILD, USER, "2024-06-01", 10, MODERATOR, "audio issues")
    assert record.duration_minutes == 30
    assert record.longest_session_minutes == 20
    assert record.qualified is True
    assert get_record(GUILD, USER, "2024-06-01").adjustment_reason == "audio issues"
    [entry] = get_adjustments(GUILD, USER, "2024-06-01")
    assert entry["operation"] == "credit"


@pytest.mark.asyncio
async def test_credit_game_without_event_times_keeps_prior_verdict(at):
    with connect() as conn:
        upsert_record(conn, FinalAttendanceRecord(
            guild_id=GUILD,
            user_id=USER,
            event_date="2024-05-01",
            event_type=EventType.GAME,
            voice_channel_id=None,
            duration_minutes=40,
            longest_session_minutes=40,
            qualified=False,
        ), at(0))
    record = await credit_past_event(GUILD, USER, "2024-05-01", 20, MODERATOR, event_type=EventType.GAME)
    assert record.qualified is False
    assert record.duration_minutes == 60

    fresh = await credit_past_event(GUILD, USER, "2024-05-02", 20, MODERATOR, event_type=EventType.GAME)
    assert fresh.qualified is None


def test_settled_edits_refused_for_running_event():
    registry = SessionRegistry()
    registry.start_event(EventSession(GUILD, CHANNEL, EventType.MOVIE, "2024-06-01", EVENT_START))
    with pytest.raises(EventStateError):
        ensure_not_live(registry, GUILD, "2024-06-01")
    ensure_not_live(registry, GUILD, "2024-05-31")


@pytest.mark.asyncio
async def test_add_refused_when_event_ends_while_waiting(at, monkeypatch):
    lock = asyncio.Lock()
    monkeypatch.setattr(ledger, "db_write_lock", lock)
    registry = SessionRegistry()
    registry.start_event(EventSession(GUILD, CHANNEL, EventType.MOVIE, "2024-06-01", EVENT_START))

    async with lock:
        pending = asyncio.create_task(add_minutes(registry, GUILD, USER, 10, MODERATOR, now=at(5)))
        await asyncio.sleep(0)
        # finalization dropped the event while the add was queued on the lock
        registry.drop_guild(GUILD)

    with pytest.raises(EventStateError):
        await pending
    assert registry.get_session(GUILD, USER) is None
    assert get_adjustments(GUILD) == []

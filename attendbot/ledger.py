"""
Manual Adjustment Ledger.

Moderators can add minutes to a live session, credit minutes to a settled
event, or bump a user to qualified. Every change is validated before anything
is written and leaves a row in the append-only ``attendance_adjustments``
table, written in the same transaction as the change itself.
"""
import logging
import re
import sqlite3
from datetime import datetime

from attendbot import settings
from attendbot.checkpoint import checkpoint_guild
from attendbot.config_store import get_event_config
from attendbot.db import connect, db_write_lock
from attendbot.errors import EventStateError, ValidationError
from attendbot.finalize import upsert_record
from attendbot.models import (
    AdjustmentType,
    EventType,
    FinalAttendanceRecord,
    elapsed_minutes,
    format_timestamp,
    utcnow,
)
from attendbot.qualification import evaluate
from attendbot.recorder import SessionRegistry

logger = logging.getLogger("attendbot.ledger")

BUMP_REASON = "Manual bump compensation"
_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


# =========================
# VALIDATION
# =========================
def validate_snowflake(value, name: str = "id") -> int:
    try:
        snowflake = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be a Discord ID.") from None
    if not 0 < snowflake < 2 ** 64:
        raise ValidationError(f"{name} must be a Discord ID.")
    return snowflake


def validate_reason(reason: str | None) -> str | None:
    if reason is None:
        return None
    reason = reason.strip()
    if len(reason) > settings.MAX_REASON_LENGTH:
        raise ValidationError(f"Reason must be at most {settings.MAX_REASON_LENGTH} characters.")
    return reason or None


def validate_minutes(minutes, bounds: tuple[int, int]) -> int:
    low, high = bounds
    if isinstance(minutes, bool) or not isinstance(minutes, int):
        raise ValidationError("Minutes must be a whole number.")
    if not low <= minutes <= high:
        raise ValidationError(f"Minutes must be between {low} and {high}.")
    return minutes


def validate_event_date(value: str) -> str:
    value = (value or "").strip()
    if not _DATE_RE.match(value):
        raise ValidationError("Date must be in YYYY-MM-DD format.")
    try:
        datetime.strptime(value, "%Y-%m-%d")
    except ValueError:
        raise ValidationError(f"{value} is not a real calendar date.") from None
    return value


def ensure_not_live(registry: SessionRegistry, guild_id: int, event_date: str):
    """Settled-record edits are refused for the date of the event still being tracked."""
    event = registry.get_active_event(guild_id)
    if event is not None and event.event_date == event_date:
        raise EventStateError("That event is still running; use `add` until it has ended.")


# =========================
# LEDGER
# =========================
def _append_adjustment(
    conn: sqlite3.Connection,
    guild_id: int,
    user_id: int,
    event_date: str,
    event_type: EventType,
    operation: str,
    minutes: int | None,
    actor_id: int,
    reason: str | None,
    now: datetime,
):
    conn.execute("""
        INSERT INTO attendance_adjustments(
            guild_id, user_id, event_date, event_type, operation,
            minutes, actor_id, reason, created_at_utc
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
    """, (
        guild_id, user_id, event_date, event_type.value, operation,
        minutes, actor_id, reason, format_timestamp(now),
    ))


def get_adjustments(guild_id: int, user_id: int | None = None, event_date: str | None = None):
    query = "SELECT * FROM attendance_adjustments WHERE guild_id=?"
    params: list[object] = [guild_id]
    if user_id is not None:
        query += " AND user_id=?"
        params.append(user_id)
    if event_date is not None:
        query += " AND event_date=?"
        params.append(event_date)
    query += " ORDER BY id ASC"
    with connect() as conn:
        return conn.execute(query, params).fetchall()


def _existing_record(conn: sqlite3.Connection, guild_id: int, user_id: int, event_date: str) -> FinalAttendanceRecord | None:
    row = conn.execute("""
        SELECT * FROM event_attendance
        WHERE guild_id=? AND user_id=? AND event_date=?
    """, (guild_id, user_id, event_date)).fetchone()
    return FinalAttendanceRecord.from_row(row) if row else None


def _event_duration(record: FinalAttendanceRecord | None) -> int | None:
    if record is None or record.event_start_time is None or record.event_end_time is None:
        return None
    return elapsed_minutes(record.event_start_time, record.event_end_time)


async def add_minutes(
    registry: SessionRegistry,
    guild_id: int,
    user_id: int,
    minutes: int,
    actor_id: int,
    reason: str | None = None,
    now: datetime | None = None,
) -> int:
    """Add minutes to the live session; returns the user's new live total."""
    guild_id = validate_snowflake(guild_id, "guild")
    user_id = validate_snowflake(user_id, "user")
    actor_id = validate_snowflake(actor_id, "moderator")
    minutes = validate_minutes(minutes, settings.ADD_MINUTES_RANGE)
    reason = validate_reason(reason)
    event = registry.get_active_event(guild_id)
    if event is None:
        raise EventStateError("No event is being tracked in this server.")
    now = now or utcnow()

    async with db_write_lock:
        # the event may have been finalized while we waited for the lock
        if registry.get_active_event(guild_id) is not event:
            raise EventStateError("The event ended before the minutes could be added; use `credit` instead.")
        with connect() as conn:
            _append_adjustment(conn, guild_id, user_id, event.event_date, event.event_type, "add", minutes, actor_id, reason, now)
        session = registry.ensure_session(event, user_id)
        session.add_minutes(minutes, actor_id, reason)
    logger.info(
        "manual_add guild_id=%s user_id=%s minutes=%s actor_id=%s event_date=%s",
        guild_id,
        user_id,
        minutes,
        actor_id,
        event.event_date,
    )
    await checkpoint_guild(registry, guild_id, now)
    return session.live_total(now)


async def credit_past_event(
    guild_id: int,
    user_id: int,
    event_date: str,
    minutes: int,
    actor_id: int,
    reason: str | None = None,
    event_type: EventType = EventType.MOVIE,
    now: datetime | None = None,
) -> FinalAttendanceRecord:
    guild_id = validate_snowflake(guild_id, "guild")
    user_id = validate_snowflake(user_id, "user")
    actor_id = validate_snowflake(actor_id, "moderator")
    event_date = validate_event_date(event_date)
    minutes = validate_minutes(minutes, settings.CREDIT_MINUTES_RANGE)
    reason = validate_reason(reason)
    now = now or utcnow()
    config = get_event_config(guild_id)

    async with db_write_lock:
        with connect() as conn:
            existing = _existing_record(conn, guild_id, user_id, event_date)
            total = minutes + (existing.duration_minutes if existing else 0)
            longest = max(existing.longest_session_minutes if existing else 0, minutes)
            result = evaluate(event_type, total, longest, config, event_duration_minutes=_event_duration(existing))
            if result is not None:
                qualified = result.qualified
            else:
                qualified = existing.qualified if existing else None
            record = FinalAttendanceRecord(
                guild_id=guild_id,
                user_id=user_id,
                event_date=event_date,
                event_type=event_type,
                voice_channel_id=existing.voice_channel_id if existing else None,
                duration_minutes=total,
                longest_session_minutes=longest,
                qualified=qualified,
                adjustment_type=AdjustmentType.MANUAL,
                adjusted_by=actor_id,
                adjustment_reason=reason,
                event_start_time=existing.event_start_time if existing else None,
                event_end_time=existing.event_end_time if existing else None,
            )
            upsert_record(conn, record, now)
            _append_adjustment(conn, guild_id, user_id, event_date, event_type, "credit", minutes, actor_id, reason, now)
    logger.info(
        "manual_credit guild_id=%s user_id=%s event_date=%s event_type=%s minutes=%s total=%s qualified=%s actor_id=%s",
        guild_id,
        user_id,
        event_date,
        event_type.value,
        minutes,
        total,
        qualified,
        actor_id,
    )
    return record


async def bump_to_qualified(
    guild_id: int,
    user_id: int,
    event_date: str,
    actor_id: int,
    reason: str | None = None,
    event_type: EventType = EventType.MOVIE,
    now: datetime | None = None,
) -> tuple[bool, bool]:
    """
    Mark the user qualified for a settled event.

    Returns ``(changed, previously_qualified)``; a user who is already
    qualified is left untouched and nothing is logged.
    """
    guild_id = validate_snowflake(guild_id, "guild")
    user_id = validate_snowflake(user_id, "user")
    actor_id = validate_snowflake(actor_id, "moderator")
    event_date = validate_event_date(event_date)
    reason = validate_reason(reason) or BUMP_REASON
    now = now or utcnow()
    config = get_event_config(guild_id)

    async with db_write_lock:
        with connect() as conn:
            existing = _existing_record(conn, guild_id, user_id, event_date)
            if existing is not None and existing.qualified:
                logger.info(
                    "manual_bump_skipped guild_id=%s user_id=%s event_date=%s already_qualified=true",
                    guild_id,
                    user_id,
                    event_date,
                )
                return False, True
            minutes = _event_duration(existing)
            if minutes is None:
                if event_type is EventType.MOVIE:
                    minutes = config.movie_threshold_minutes
                else:
                    minutes = settings.DEFAULT_BUMP_MINUTES
            record = FinalAttendanceRecord(
                guild_id=guild_id,
                user_id=user_id,
                event_date=event_date,
                event_type=event_type,
                voice_channel_id=existing.voice_channel_id if existing else None,
                duration_minutes=max(minutes, existing.duration_minutes if existing else 0),
                longest_session_minutes=max(minutes, existing.longest_session_minutes if existing else 0),
                qualified=True,
                adjustment_type=AdjustmentType.MANUAL,
                adjusted_by=actor_id,
                adjustment_reason=reason,
                event_start_time=existing.event_start_time if existing else None,
                event_end_time=existing.event_end_time if existing else None,
            )
            upsert_record(conn, record, now)
            _append_adjustment(conn, guild_id, user_id, event_date, event_type, "bump", minutes, actor_id, reason, now)
    logger.info(
        "manual_bump guild_id=%s user_id=%s event_date=%s event_type=%s minutes=%s actor_id=%s",
        guild_id,
        user_id,
        event_date,
        event_type.value,
        record.duration_minutes,
        actor_id,
    )
    return True, False

"""
Qualification Evaluator.

``end_event`` is the terminal transition of an event: open sessions are closed
at the end time, each participant gets one ``event_attendance`` row, the
checkpoint rows are removed in the same transaction, and only then are role
grants attempted. Users that already have a row for the event date are left
alone, so finalizing twice never repeats side effects.
"""
import dataclasses
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime

from attendbot.checkpoint import clear_persisted
from attendbot.config_store import get_event_config
from attendbot.db import connect, db_write_lock
from attendbot.models import AdjustmentType, FinalAttendanceRecord, format_timestamp, utcnow
from attendbot.qualification import QualificationResult, evaluate
from attendbot.recorder import SessionRegistry
from attendbot.roles import RoleGranter

logger = logging.getLogger("attendbot.finalize")


@dataclass
class AttendanceOutcome:
    record: FinalAttendanceRecord
    result: QualificationResult | None
    # False when a record for this user and date already existed
    written: bool = True

    @property
    def user_id(self) -> int:
        return self.record.user_id


def get_record(guild_id: int, user_id: int, event_date: str) -> FinalAttendanceRecord | None:
    with connect() as conn:
        row = conn.execute("""
            SELECT * FROM event_attendance
            WHERE guild_id=? AND user_id=? AND event_date=?
        """, (guild_id, user_id, event_date)).fetchone()
    return FinalAttendanceRecord.from_row(row) if row else None


def get_event_records(guild_id: int, event_date: str, event_type=None) -> list[FinalAttendanceRecord]:
    query = "SELECT * FROM event_attendance WHERE guild_id=? AND event_date=?"
    params: list[object] = [guild_id, event_date]
    if event_type is not None:
        query += " AND event_type=?"
        params.append(event_type.value)
    query += " ORDER BY duration_minutes DESC"
    with connect() as conn:
        return [FinalAttendanceRecord.from_row(row) for row in conn.execute(query, params).fetchall()]


def latest_event_date(guild_id: int, event_type) -> str | None:
    with connect() as conn:
        row = conn.execute("""
            SELECT MAX(event_date) AS event_date FROM event_attendance
            WHERE guild_id=? AND event_type=?
        """, (guild_id, event_type.value)).fetchone()
    return row["event_date"] if row else None


def get_user_records(guild_id: int, user_id: int, event_type, limit: int = 10) -> list[FinalAttendanceRecord]:
    with connect() as conn:
        rows = conn.execute("""
            SELECT * FROM event_attendance
            WHERE guild_id=? AND user_id=? AND event_type=?
            ORDER BY event_date DESC
            LIMIT ?
        """, (guild_id, user_id, event_type.value, limit)).fetchall()
    return [FinalAttendanceRecord.from_row(row) for row in rows]


def upsert_record(conn: sqlite3.Connection, record: FinalAttendanceRecord, now: datetime, replace: bool = True) -> bool:
    """Write a settled record; with replace=False an existing row for the same user and date wins."""
    conflict = """
        ON CONFLICT(guild_id, user_id, event_date) DO UPDATE SET
            event_type=excluded.event_type,
            voice_channel_id=COALESCE(excluded.voice_channel_id, event_attendance.voice_channel_id),
            duration_minutes=excluded.duration_minutes,
            longest_session_minutes=excluded.longest_session_minutes,
            qualified=excluded.qualified,
            adjustment_type=excluded.adjustment_type,
            adjusted_by=excluded.adjusted_by,
            adjustment_reason=excluded.adjustment_reason,
            event_start_time_utc=COALESCE(excluded.event_start_time_utc, event_attendance.event_start_time_utc),
            event_end_time_utc=COALESCE(excluded.event_end_time_utc, event_attendance.event_end_time_utc),
            updated_at_utc=excluded.updated_at_utc
    """ if replace else "ON CONFLICT(guild_id, user_id, event_date) DO NOTHING"
    stamp = format_timestamp(now)
    cur = conn.execute(f"""
        INSERT INTO event_attendance(
            guild_id, user_id, event_date, event_type, voice_channel_id,
            duration_minutes, longest_session_minutes, qualified,
            adjustment_type, adjusted_by, adjustment_reason,
            event_start_time_utc, event_end_time_utc, created_at_utc, updated_at_utc
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        {conflict}
    """, (
        record.guild_id,
        record.user_id,
        record.event_date,
        record.event_type.value,
        record.voice_channel_id,
        record.duration_minutes,
        record.longest_session_minutes,
        None if record.qualified is None else int(record.qualified),
        record.adjustment_type.value,
        record.adjusted_by,
        record.adjustment_reason,
        format_timestamp(record.event_start_time),
        format_timestamp(record.event_end_time),
        stamp,
        stamp,
    ))
    return cur.rowcount > 0


async def end_event(
    registry: SessionRegistry,
    guild_id: int,
    now: datetime | None = None,
    role_granter: RoleGranter | None = None,
) -> list[AttendanceOutcome]:
    event = registry.get_active_event(guild_id)
    if event is None:
        logger.warning("finalize_no_event guild_id=%s", guild_id)
        return []
    now = now or utcnow()
    config = get_event_config(guild_id)
    ended = dataclasses.replace(event, ended_at=now)
    duration = ended.duration_minutes()
    outcomes: list[AttendanceOutcome] = []
    for session in registry.sessions_for(guild_id):
        # settle on a copy so a failed write leaves the live event intact
        settled = dataclasses.replace(session)
        settled.leave(now)
        result = evaluate(
            event.event_type,
            settled.accumulated_minutes,
            settled.longest_session_minutes,
            config,
            event_duration_minutes=duration,
        )
        manual = settled.adjusted_by is not None
        record = FinalAttendanceRecord(
            guild_id=guild_id,
            user_id=settled.user_id,
            event_date=event.event_date,
            event_type=event.event_type,
            voice_channel_id=event.channel_id,
            duration_minutes=settled.accumulated_minutes,
            longest_session_minutes=settled.longest_session_minutes,
            qualified=result.qualified if result else None,
            adjustment_type=AdjustmentType.MANUAL if manual else AdjustmentType.AUTOMATIC,
            adjusted_by=settled.adjusted_by,
            adjustment_reason=settled.adjustment_reason,
            event_start_time=event.started_at,
            event_end_time=now,
        )
        outcomes.append(AttendanceOutcome(record=record, result=result))

    async with db_write_lock:
        with connect() as conn:
            for outcome in outcomes:
                outcome.written = upsert_record(conn, outcome.record, now, replace=False)
            clear_persisted(conn, guild_id)

    registry.drop_guild(guild_id)
    for outcome in outcomes:
        if not outcome.written:
            logger.info(
                "attendance_already_final guild_id=%s user_id=%s event_date=%s",
                guild_id,
                outcome.user_id,
                event.event_date,
            )
            continue
        logger.info(
            "attendance_recorded guild_id=%s user_id=%s event_type=%s total_minutes=%s longest=%s qualified=%s",
            guild_id,
            outcome.user_id,
            event.event_type.value,
            outcome.record.duration_minutes,
            outcome.record.longest_session_minutes,
            outcome.record.qualified,
        )
    logger.info(
        "event_finalized guild_id=%s event_type=%s event_date=%s duration_minutes=%s participants=%s qualified=%s",
        guild_id,
        event.event_type.value,
        event.event_date,
        duration,
        len(outcomes),
        sum(1 for o in outcomes if o.written and o.record.qualified),
    )
    if role_granter is not None:
        await grant_roles(guild_id, outcomes, role_granter)
    return outcomes


async def grant_role(guild_id: int, user_id: int, qualified: bool, role_granter: RoleGranter) -> bool:
    """Best-effort; the record is already committed, so failures are only logged."""
    try:
        await role_granter(guild_id, user_id, qualified)
    except Exception as e:
        logger.warning(
            "role_grant_failed guild_id=%s user_id=%s error=%r record_kept=true",
            guild_id,
            user_id,
            e,
        )
        return False
    return True


async def grant_roles(guild_id: int, outcomes: list[AttendanceOutcome], role_granter: RoleGranter):
    for outcome in outcomes:
        if outcome.written:
            await grant_role(guild_id, outcome.user_id, bool(outcome.record.qualified), role_granter)

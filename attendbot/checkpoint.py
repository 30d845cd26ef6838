"""
Persistence Checkpointer.

Open sessions are written with their start verbatim; only closed sessions are
ever folded into ``accumulated_minutes``. A failed write leaves rows dirty so
the next tick retries them.
"""
import logging
import sqlite3
from datetime import datetime

from discord.ext import tasks

from attendbot import settings
from attendbot.db import connect, db_write_lock
from attendbot.models import Open, format_timestamp, utcnow
from attendbot.recorder import SessionRegistry

logger = logging.getLogger("attendbot.checkpoint")


def persist_guild(registry: SessionRegistry, guild_id: int, now: datetime) -> int:
    """Write the guild's event and every dirty or open session. Raises sqlite3.Error on failure."""
    event = registry.get_active_event(guild_id)
    if event is None:
        return 0
    pending = [s for s in registry.sessions_for(guild_id) if s.dirty or s.is_present]
    stamp = format_timestamp(now)
    with connect() as conn:
        conn.execute("""
            INSERT INTO active_events(
                guild_id, channel_id, event_type, event_date, started_at_utc, ended_at_utc
            ) VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(guild_id) DO UPDATE SET
                channel_id=excluded.channel_id,
                event_type=excluded.event_type,
                event_date=excluded.event_date,
                started_at_utc=excluded.started_at_utc,
                ended_at_utc=excluded.ended_at_utc
        """, (
            event.guild_id,
            event.channel_id,
            event.event_type.value,
            event.event_date,
            format_timestamp(event.started_at),
            format_timestamp(event.ended_at),
        ))
        for session in pending:
            since = None
            carried = 0
            if isinstance(session.state, Open):
                since = format_timestamp(session.state.since)
                carried = session.state.carried_minutes
            conn.execute("""
                INSERT INTO active_sessions(
                    guild_id, user_id, event_date, current_session_start_utc, carried_minutes,
                    accumulated_minutes, longest_session_minutes, last_persisted_at_utc,
                    adjusted_by, adjustment_reason
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(guild_id, user_id, event_date) DO UPDATE SET
                    current_session_start_utc=excluded.current_session_start_utc,
                    carried_minutes=excluded.carried_minutes,
                    accumulated_minutes=excluded.accumulated_minutes,
                    longest_session_minutes=excluded.longest_session_minutes,
                    last_persisted_at_utc=excluded.last_persisted_at_utc,
                    adjusted_by=excluded.adjusted_by,
                    adjustment_reason=excluded.adjustment_reason
            """, (
                session.guild_id,
                session.user_id,
                session.event_date,
                since,
                carried,
                session.accumulated_minutes,
                session.longest_session_minutes,
                stamp,
                session.adjusted_by,
                session.adjustment_reason,
            ))
    # only after the commit succeeded
    for session in pending:
        session.last_persisted_at = now
        session.dirty = False
    return len(pending)


async def checkpoint_guild(registry: SessionRegistry, guild_id: int, now: datetime | None = None) -> int:
    now = now or utcnow()
    try:
        async with db_write_lock:
            written = persist_guild(registry, guild_id, now)
    except sqlite3.Error as e:
        logger.warning("checkpoint_failed guild_id=%s error=%s retry=next_tick", guild_id, e)
        return 0
    logger.debug("checkpoint_written guild_id=%s sessions=%s", guild_id, written)
    return written


def clear_persisted(conn: sqlite3.Connection, guild_id: int):
    conn.execute("DELETE FROM active_sessions WHERE guild_id=?", (guild_id,))
    conn.execute("DELETE FROM active_events WHERE guild_id=?", (guild_id,))


class CheckpointScheduler:
    """One cancellable repeating checkpoint per active event."""

    def __init__(self, registry: SessionRegistry, minutes: int | None = None):
        self.registry = registry
        self.minutes = minutes or settings.CHECKPOINT_MINUTES
        self._loops: dict[int, tasks.Loop] = {}

    def is_running(self, guild_id: int) -> bool:
        return guild_id in self._loops

    def start(self, guild_id: int):
        if guild_id in self._loops:
            logger.warning("checkpoint_timer_already_running guild_id=%s", guild_id)
            return

        async def _tick():
            if self.registry.get_active_event(guild_id) is None:
                self.stop(guild_id, graceful=True)
                return
            await checkpoint_guild(self.registry, guild_id)

        loop = tasks.loop(minutes=self.minutes)(_tick)
        self._loops[guild_id] = loop
        loop.start()
        logger.info("checkpoint_timer_started guild_id=%s interval_minutes=%s", guild_id, self.minutes)

    def stop(self, guild_id: int, graceful: bool = False):
        loop = self._loops.pop(guild_id, None)
        if loop is None:
            return
        if graceful:
            loop.stop()
        else:
            loop.cancel()
        logger.info("checkpoint_timer_stopped guild_id=%s", guild_id)

    def stop_all(self):
        for guild_id in list(self._loops):
            self.stop(guild_id)

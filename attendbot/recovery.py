"""
Recovery Loader.

Rebuilds the registry from ``active_events``/``active_sessions`` after an
unclean stop. Open sessions are reconciled against live voice membership:
present users resume timing at their checkpoint watermark, absent users are
treated as having left at it. When membership cannot be read the guild is
deferred and its rows stay untouched.
"""
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime

from attendbot.db import connect
from attendbot.errors import MembershipUnavailable
from attendbot.models import EventSession, UserAttendance, utcnow
from attendbot.recorder import SessionRegistry

logger = logging.getLogger("attendbot.recovery")

MembershipProvider = Callable[[int, int], Awaitable[set[int]]]


@dataclass
class RecoveryReport:
    recovered: list[int] = field(default_factory=list)
    deferred: list[int] = field(default_factory=list)
    sessions: int = 0
    resumed: int = 0
    closed: int = 0
    rejoined: int = 0


def load_unfinished_events() -> list[EventSession]:
    with connect() as conn:
        rows = conn.execute("""
            SELECT guild_id, channel_id, event_type, event_date, started_at_utc, ended_at_utc
            FROM active_events
            WHERE ended_at_utc IS NULL
        """).fetchall()
    return [EventSession.from_row(row) for row in rows]


def load_sessions(guild_id: int, event_date: str) -> list[UserAttendance]:
    with connect() as conn:
        rows = conn.execute("""
            SELECT guild_id, user_id, event_date, current_session_start_utc, carried_minutes,
                   accumulated_minutes, longest_session_minutes, last_persisted_at_utc,
                   adjusted_by, adjustment_reason
            FROM active_sessions
            WHERE guild_id=? AND event_date=?
        """, (guild_id, event_date)).fetchall()
    return [UserAttendance.from_row(row) for row in rows]


async def recover_guild(
    registry: SessionRegistry,
    event: EventSession,
    membership: MembershipProvider,
    now: datetime,
    report: RecoveryReport,
) -> bool:
    sessions = load_sessions(event.guild_id, event.event_date)
    try:
        present = await membership(event.guild_id, event.channel_id)
    except MembershipUnavailable as e:
        logger.warning(
            "recovery_deferred guild_id=%s channel_id=%s reason=%s",
            event.guild_id,
            event.channel_id,
            e.reason or "membership_unavailable",
        )
        report.deferred.append(event.guild_id)
        return False
    for session in sessions:
        if not session.is_present:
            continue
        if session.user_id in present:
            session.resume_after_restart(now)
            report.resumed += 1
        else:
            credited = session.close_at_checkpoint()
            report.closed += 1
            logger.info(
                "recovery_closed_at_checkpoint guild_id=%s user_id=%s credited_minutes=%s",
                event.guild_id,
                session.user_id,
                credited,
            )
    registry.restore(event, sessions)
    # anyone in the channel but not open (new, or back after leaving) counts from now
    for user_id in present:
        if registry.on_join(event.guild_id, user_id, now):
            report.rejoined += 1
    report.recovered.append(event.guild_id)
    report.sessions += len(sessions)
    logger.info(
        "recovery_guild_done guild_id=%s event_type=%s event_date=%s sessions=%s",
        event.guild_id,
        event.event_type.value,
        event.event_date,
        len(sessions),
    )
    return True


async def recover_events(
    registry: SessionRegistry,
    membership: MembershipProvider,
    now: datetime | None = None,
    only_guilds: set[int] | None = None,
) -> RecoveryReport:
    now = now or utcnow()
    report = RecoveryReport()
    for event in load_unfinished_events():
        if only_guilds is not None and event.guild_id not in only_guilds:
            continue
        if registry.get_active_event(event.guild_id) is not None:
            continue
        await recover_guild(registry, event, membership, now, report)
    logger.info(
        "recovery_done recovered=%s deferred=%s sessions=%s resumed=%s closed=%s rejoined=%s",
        report.recovered,
        report.deferred,
        report.sessions,
        report.resumed,
        report.closed,
        report.rejoined,
    )
    return report

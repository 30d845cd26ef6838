"""Settled attendance summaries for the ``attendance`` command."""
from attendbot.config_store import get_event_config
from attendbot.finalize import get_event_records, get_user_records, latest_event_date
from attendbot.ledger import get_adjustments
from attendbot.models import EventType, FinalAttendanceRecord
from attendbot.roles import qualified_count, tier_progress

HISTORY_LIMIT = 10


def _verdict(record: FinalAttendanceRecord) -> str:
    if record.qualified is None:
        return "Unknown"
    return "Qualified" if record.qualified else "Not qualified"


def _bar(guild_id: int, event_type: EventType) -> str:
    config = get_event_config(guild_id)
    if event_type is EventType.MOVIE:
        return f"{config.movie_threshold_minutes}+ min"
    return f"{config.game_qualification_percentage}% of the runtime"


def event_roster(guild_id: int, event_type: EventType) -> str:
    event_date = latest_event_date(guild_id, event_type)
    if event_date is None:
        return f"No {event_type.label} attendance records yet!"
    records = get_event_records(guild_id, event_date, event_type)
    lines = [f"**{event_type.label.title()} attendance** from {event_date}"]
    for record in records:
        manual = " (manual)" if record.adjusted_by is not None else ""
        lines.append(
            f"- {_verdict(record)} <@{record.user_id}>: {record.duration_minutes} min total "
            f"(longest: {record.longest_session_minutes} min){manual}"
        )
    qualified = sum(1 for record in records if record.qualified)
    lines.append(f"{qualified} qualified ({_bar(guild_id, event_type)}) out of {len(records)} total")
    return "\n".join(lines)


def user_attendance(guild_id: int, user_id: int, event_type: EventType) -> str:
    count = qualified_count(guild_id, user_id, event_type)
    noun = "movies" if event_type is EventType.MOVIE else "game nights"
    lines = [
        f"**{event_type.label.title()} attendance** for <@{user_id}>",
        f"- Total qualified {noun}: **{count}**",
    ]
    current, upcoming = tier_progress(guild_id, event_type, count)
    if current is not None:
        lines.append(f"- Current tier: **{current['tier_name']}**")
    if upcoming is not None:
        needed = upcoming["threshold"] - count
        lines.append(f"- Next tier: **{upcoming['tier_name']}** ({needed} more)")

    records = get_user_records(guild_id, user_id, event_type, HISTORY_LIMIT)
    if not records:
        lines.append("No attendance records yet")
        return "\n".join(lines)
    adjusted_dates = {row["event_date"] for row in get_adjustments(guild_id, user_id)}
    lines.append("**Recent attendance**")
    for record in records:
        manual = " (adjusted)" if record.event_date in adjusted_dates else ""
        lines.append(
            f"- {_verdict(record)} {record.event_date}: {record.duration_minutes} min "
            f"(longest: {record.longest_session_minutes} min){manual}"
        )
    return "\n".join(lines)

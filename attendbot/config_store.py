"""Per-guild attendance configuration. Always read fresh; admins may change it mid-event."""
import logging
from dataclasses import dataclass

from attendbot import settings
from attendbot.db import connect
from attendbot.errors import ValidationError
from attendbot.models import AttendanceMode, EventType, format_timestamp, utcnow

logger = logging.getLogger("attendbot.config")


@dataclass(frozen=True)
class GuildEventConfig:
    guild_id: int
    movie_threshold_minutes: int = settings.DEFAULT_MOVIE_THRESHOLD_MINUTES
    movie_attendance_mode: AttendanceMode = AttendanceMode(settings.DEFAULT_ATTENDANCE_MODE)
    game_qualification_percentage: int = settings.DEFAULT_GAME_PERCENTAGE
    game_attendance_mode: AttendanceMode = AttendanceMode(settings.DEFAULT_ATTENDANCE_MODE)

    def mode_for(self, event_type: EventType) -> AttendanceMode:
        if event_type is EventType.MOVIE:
            return self.movie_attendance_mode
        return self.game_attendance_mode


def get_event_config(guild_id: int) -> GuildEventConfig:
    with connect() as conn:
        row = conn.execute("""
            SELECT movie_threshold_minutes, movie_attendance_mode,
                   game_qualification_percentage, game_attendance_mode
            FROM guild_event_config
            WHERE guild_id=?
        """, (guild_id,)).fetchone()
    if not row:
        return GuildEventConfig(guild_id=guild_id)
    return GuildEventConfig(
        guild_id=guild_id,
        movie_threshold_minutes=int(row["movie_threshold_minutes"]),
        movie_attendance_mode=parse_mode(row["movie_attendance_mode"]),
        game_qualification_percentage=int(row["game_qualification_percentage"]),
        game_attendance_mode=parse_mode(row["game_attendance_mode"]),
    )


def parse_mode(value: str) -> AttendanceMode:
    normalized = (value or "").strip().lower()
    if normalized in ("single", "single-session", "longest"):
        return AttendanceMode.CONTINUOUS
    try:
        return AttendanceMode(normalized)
    except ValueError:
        raise ValidationError(
            f"Unknown attendance mode {value!r}; use 'cumulative' or 'continuous'."
        ) from None


def _upsert(guild_id: int, column: str, value: object):
    current = get_event_config(guild_id)
    values = {
        "movie_threshold_minutes": current.movie_threshold_minutes,
        "movie_attendance_mode": current.movie_attendance_mode.value,
        "game_qualification_percentage": current.game_qualification_percentage,
        "game_attendance_mode": current.game_attendance_mode.value,
    }
    values[column] = value
    with connect() as conn:
        conn.execute("""
            INSERT INTO guild_event_config(
                guild_id, movie_threshold_minutes, movie_attendance_mode,
                game_qualification_percentage, game_attendance_mode, updated_at_utc
            ) VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(guild_id) DO UPDATE SET
                movie_threshold_minutes=excluded.movie_threshold_minutes,
                movie_attendance_mode=excluded.movie_attendance_mode,
                game_qualification_percentage=excluded.game_qualification_percentage,
                game_attendance_mode=excluded.game_attendance_mode,
                updated_at_utc=excluded.updated_at_utc
        """, (
            guild_id,
            values["movie_threshold_minutes"],
            values["movie_attendance_mode"],
            values["game_qualification_percentage"],
            values["game_attendance_mode"],
            format_timestamp(utcnow()),
        ))
    logger.info("guild_config_updated guild_id=%s %s=%s", guild_id, column, value)


def set_movie_threshold(guild_id: int, minutes: int):
    low, high = settings.MOVIE_THRESHOLD_RANGE
    if not low <= minutes <= high:
        raise ValidationError(f"Movie threshold must be between {low} and {high} minutes.")
    _upsert(guild_id, "movie_threshold_minutes", minutes)


def set_game_percentage(guild_id: int, percentage: int):
    low, high = settings.GAME_PERCENTAGE_RANGE
    if not low <= percentage <= high:
        raise ValidationError(f"Percentage must be between {low} and {high}.")
    _upsert(guild_id, "game_qualification_percentage", percentage)


def set_attendance_mode(guild_id: int, event_type: EventType, mode: AttendanceMode | str):
    if not isinstance(mode, AttendanceMode):
        mode = parse_mode(mode)
    column = "movie_attendance_mode" if event_type is EventType.MOVIE else "game_attendance_mode"
    _upsert(guild_id, column, mode.value)

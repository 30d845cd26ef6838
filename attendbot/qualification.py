"""
Qualification math.

Movie nights use a fixed minute bar. Game nights use a share of the event's
actual runtime, so a two-hour game night asks for more than a one-hour one:
with a 50% bar a 120 minute event needs 60 minutes, a 60 minute event 30.
"""
import math
from dataclasses import dataclass

from attendbot.config_store import GuildEventConfig
from attendbot.models import AttendanceMode, EventType


@dataclass(frozen=True)
class QualificationResult:
    qualified: bool
    user_minutes: int
    required_minutes: int
    event_duration_minutes: int | None = None
    attendance_percentage: int | None = None
    threshold_percentage: int | None = None

    @property
    def minutes_needed(self) -> int:
        if self.qualified:
            return 0
        return self.required_minutes - self.user_minutes

    def describe(self) -> str:
        verdict = "Qualified" if self.qualified else "Not Qualified"
        if self.event_duration_minutes is None:
            base = f"{self.user_minutes} min, needed {self.required_minutes}"
            return f"{verdict} ({base})"
        base = f"{self.user_minutes} min / {self.event_duration_minutes} min, {self.attendance_percentage}%"
        if self.qualified:
            return f"{verdict} ({base})"
        return f"{verdict} ({base} - needed {self.threshold_percentage}%)"


def relevant_minutes(total_minutes: int, longest_session_minutes: int, mode: AttendanceMode) -> int:
    if mode is AttendanceMode.CONTINUOUS:
        return longest_session_minutes
    return total_minutes


def movie_qualification(minutes: int, threshold_minutes: int) -> QualificationResult:
    return QualificationResult(
        qualified=minutes >= threshold_minutes,
        user_minutes=minutes,
        required_minutes=threshold_minutes,
    )


def game_qualification(minutes: int, event_duration_minutes: int, threshold_percentage: int) -> QualificationResult:
    # ceil so 49.9% of the runtime never rounds up to the bar; a zero-length event qualifies nobody
    required = max(math.ceil(event_duration_minutes * threshold_percentage / 100), 1)
    percentage = round(minutes / event_duration_minutes * 100) if event_duration_minutes > 0 else 0
    return QualificationResult(
        qualified=minutes >= required,
        user_minutes=minutes,
        required_minutes=required,
        event_duration_minutes=event_duration_minutes,
        attendance_percentage=percentage,
        threshold_percentage=threshold_percentage,
    )


def evaluate(
    event_type: EventType,
    total_minutes: int,
    longest_session_minutes: int,
    config: GuildEventConfig,
    event_duration_minutes: int | None = None,
) -> QualificationResult | None:
    """None when a game night's runtime is unknown and no verdict can be reached."""
    minutes = relevant_minutes(total_minutes, longest_session_minutes, config.mode_for(event_type))
    if event_type is EventType.MOVIE:
        return movie_qualification(minutes, config.movie_threshold_minutes)
    if event_duration_minutes is None:
        return None
    return game_qualification(minutes, event_duration_minutes, config.game_qualification_percentage)

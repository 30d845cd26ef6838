"""
Attendance data model.

A user's presence in the tracked channel is an explicit tagged state:
``Open(since, carried_minutes)`` while they are in the channel, ``Closed()``
otherwise. ``accumulated_minutes`` only ever holds closed sessions; the
elapsed time of an open session is always derived from ``since``.
"""
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


class EventType(str, Enum):
    MOVIE = "movie"
    GAME = "game"

    @property
    def label(self) -> str:
        return "movie night" if self is EventType.MOVIE else "game night"


class AttendanceMode(str, Enum):
    CUMULATIVE = "cumulative"
    # longest single unbroken session must meet the bar
    CONTINUOUS = "continuous"


class AdjustmentType(str, Enum):
    AUTOMATIC = "automatic"
    MANUAL = "manual"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_timestamp(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def elapsed_minutes(start: datetime, end: datetime) -> int:
    """Whole minutes between two instants; partial minutes are dropped, never negative."""
    if end <= start:
        return 0
    return int((end - start).total_seconds() // 60)


@dataclass(frozen=True)
class Open:
    since: datetime
    # minutes of this same unbroken presence observed before a crash recovery
    carried_minutes: int = 0


@dataclass(frozen=True)
class Closed:
    pass


SessionState = Open | Closed


@dataclass
class EventSession:
    guild_id: int
    channel_id: int
    event_type: EventType
    event_date: str
    started_at: datetime
    ended_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.ended_at is None

    def duration_minutes(self, now: datetime | None = None) -> int:
        end = self.ended_at or now or utcnow()
        return elapsed_minutes(self.started_at, end)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "EventSession":
        return cls(
            guild_id=int(row["guild_id"]),
            channel_id=int(row["channel_id"]),
            event_type=EventType(row["event_type"]),
            event_date=row["event_date"],
            started_at=parse_timestamp(row["started_at_utc"]),
            ended_at=parse_timestamp(row["ended_at_utc"]),
        )


@dataclass
class UserAttendance:
    guild_id: int
    user_id: int
    event_date: str
    state: SessionState = field(default_factory=Closed)
    accumulated_minutes: int = 0
    longest_session_minutes: int = 0
    last_persisted_at: datetime | None = None
    dirty: bool = True
    # set by live manual adjustments; carried into the final record
    adjusted_by: int | None = None
    adjustment_reason: str | None = None

    @property
    def is_present(self) -> bool:
        return isinstance(self.state, Open)

    def join(self, timestamp: datetime) -> bool:
        if isinstance(self.state, Open):
            return False
        self.state = Open(since=timestamp)
        self.dirty = True
        return True

    def leave(self, timestamp: datetime) -> int | None:
        """Close the open session at ``timestamp``; returns the session length or None if not present."""
        if not isinstance(self.state, Open):
            return None
        minutes = self.state.carried_minutes + elapsed_minutes(self.state.since, timestamp)
        self._close(minutes)
        return minutes

    def open_minutes(self, now: datetime) -> int:
        if not isinstance(self.state, Open):
            return 0
        return self.state.carried_minutes + elapsed_minutes(self.state.since, now)

    def live_total(self, now: datetime) -> int:
        return self.accumulated_minutes + self.open_minutes(now)

    def live_longest(self, now: datetime) -> int:
        return max(self.longest_session_minutes, self.open_minutes(now))

    def add_minutes(self, minutes: int, adjusted_by: int, reason: str | None) -> None:
        self.accumulated_minutes += minutes
        self.longest_session_minutes = max(self.longest_session_minutes, minutes)
        self.adjusted_by = adjusted_by
        self.adjustment_reason = reason
        self.dirty = True

    def resume_after_restart(self, now: datetime) -> None:
        """User is still in the channel after a restart: restart timing at the checkpoint watermark."""
        if not isinstance(self.state, Open):
            return
        watermark = self.last_persisted_at
        if watermark is None or watermark < self.state.since:
            # nothing to anchor on; keep what was carried and time from now
            self.state = Open(since=now, carried_minutes=self.state.carried_minutes)
        else:
            carried = self.state.carried_minutes + elapsed_minutes(self.state.since, watermark)
            self.state = Open(since=watermark, carried_minutes=carried)
        self.dirty = True

    def close_at_checkpoint(self) -> int:
        """User left while the bot was down: treat them as leaving at the last checkpoint."""
        if not isinstance(self.state, Open):
            return 0
        watermark = self.last_persisted_at
        minutes = self.state.carried_minutes
        if watermark is not None and watermark >= self.state.since:
            minutes += elapsed_minutes(self.state.since, watermark)
        self._close(minutes)
        return minutes

    def _close(self, minutes: int) -> None:
        self.accumulated_minutes += minutes
        self.longest_session_minutes = max(self.longest_session_minutes, minutes)
        self.state = Closed()
        self.dirty = True

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "UserAttendance":
        since = parse_timestamp(row["current_session_start_utc"])
        state: SessionState = Closed()
        if since is not None:
            state = Open(since=since, carried_minutes=int(row["carried_minutes"] or 0))
        return cls(
            guild_id=int(row["guild_id"]),
            user_id=int(row["user_id"]),
            event_date=row["event_date"],
            state=state,
            accumulated_minutes=int(row["accumulated_minutes"] or 0),
            longest_session_minutes=int(row["longest_session_minutes"] or 0),
            last_persisted_at=parse_timestamp(row["last_persisted_at_utc"]),
            dirty=False,
            adjusted_by=int(row["adjusted_by"]) if row["adjusted_by"] is not None else None,
            adjustment_reason=row["adjustment_reason"],
        )


@dataclass
class FinalAttendanceRecord:
    guild_id: int
    user_id: int
    event_date: str
    event_type: EventType
    voice_channel_id: int | None
    duration_minutes: int
    longest_session_minutes: int
    # None when the verdict could not be computed (e.g. historical game without times)
    qualified: bool | None
    adjustment_type: AdjustmentType = AdjustmentType.AUTOMATIC
    adjusted_by: int | None = None
    adjustment_reason: str | None = None
    event_start_time: datetime | None = None
    event_end_time: datetime | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "FinalAttendanceRecord":
        qualified = row["qualified"]
        return cls(
            guild_id=int(row["guild_id"]),
            user_id=int(row["user_id"]),
            event_date=row["event_date"],
            event_type=EventType(row["event_type"]),
            voice_channel_id=int(row["voice_channel_id"]) if row["voice_channel_id"] is not None else None,
            duration_minutes=int(row["duration_minutes"]),
            longest_session_minutes=int(row["longest_session_minutes"]),
            qualified=None if qualified is None else bool(qualified),
            adjustment_type=AdjustmentType(row["adjustment_type"]),
            adjusted_by=int(row["adjusted_by"]) if row["adjusted_by"] is not None else None,
            adjustment_reason=row["adjustment_reason"],
            event_start_time=parse_timestamp(row["event_start_time_utc"]),
            event_end_time=parse_timestamp(row["event_end_time_utc"]),
        )

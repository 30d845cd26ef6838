"""
Session Recorder.

``SessionRegistry`` owns the in-memory attendance state for every guild the
process serves: at most one active ``EventSession`` per guild, and one
``UserAttendance`` per (guild, user) while that event runs. It is passed
explicitly to the checkpointer, recovery loader, finalizer and ledger.
"""
import logging
from collections.abc import Iterable
from datetime import datetime

from attendbot.errors import EventStateError
from attendbot.models import EventSession, UserAttendance

logger = logging.getLogger("attendbot.recorder")


class SessionRegistry:
    def __init__(self):
        self.events: dict[int, EventSession] = {}
        self.sessions: dict[tuple[int, int], UserAttendance] = {}

    # ---- events ----
    def get_active_event(self, guild_id: int) -> EventSession | None:
        event = self.events.get(guild_id)
        if event is None or not event.is_active:
            return None
        return event

    def start_event(self, event: EventSession, present_user_ids: Iterable[int] = ()) -> int:
        """Begin tracking; members already in the channel are credited from the start time."""
        if self.get_active_event(event.guild_id) is not None:
            raise EventStateError("An event is already being tracked in this server.")
        self.drop_guild(event.guild_id)
        self.events[event.guild_id] = event
        credited = 0
        for user_id in present_user_ids:
            if self.on_join(event.guild_id, user_id, event.started_at):
                credited += 1
        logger.info(
            "event_started guild_id=%s channel_id=%s event_type=%s event_date=%s retroactive=%s",
            event.guild_id,
            event.channel_id,
            event.event_type.value,
            event.event_date,
            credited,
        )
        return credited

    def restore(self, event: EventSession, sessions: Iterable[UserAttendance]):
        self.drop_guild(event.guild_id)
        self.events[event.guild_id] = event
        for session in sessions:
            self.sessions[(session.guild_id, session.user_id)] = session

    def drop_guild(self, guild_id: int):
        self.events.pop(guild_id, None)
        for key in [key for key in self.sessions if key[0] == guild_id]:
            del self.sessions[key]

    # ---- presence ----
    def get_session(self, guild_id: int, user_id: int) -> UserAttendance | None:
        return self.sessions.get((guild_id, user_id))

    def sessions_for(self, guild_id: int) -> list[UserAttendance]:
        return [session for (gid, _), session in self.sessions.items() if gid == guild_id]

    def ensure_session(self, event: EventSession, user_id: int) -> UserAttendance:
        key = (event.guild_id, user_id)
        session = self.sessions.get(key)
        if session is None:
            session = UserAttendance(guild_id=event.guild_id, user_id=user_id, event_date=event.event_date)
            self.sessions[key] = session
        return session

    def on_join(self, guild_id: int, user_id: int, timestamp: datetime) -> bool:
        event = self.get_active_event(guild_id)
        if event is None:
            return False
        session = self.ensure_session(event, user_id)
        opened = session.join(timestamp)
        if opened:
            logger.debug("voice_join guild_id=%s user_id=%s at=%s", guild_id, user_id, timestamp.isoformat())
        return opened

    def on_leave(self, guild_id: int, user_id: int, timestamp: datetime) -> int | None:
        if self.get_active_event(guild_id) is None:
            return None
        session = self.sessions.get((guild_id, user_id))
        if session is None:
            return None
        minutes = session.leave(timestamp)
        if minutes is not None:
            logger.debug(
                "voice_leave guild_id=%s user_id=%s session_minutes=%s total_minutes=%s longest=%s",
                guild_id,
                user_id,
                minutes,
                session.accumulated_minutes,
                session.longest_session_minutes,
            )
        return minutes

    def handle_voice_transition(
        self,
        guild_id: int,
        user_id: int,
        before_channel_id: int | None,
        after_channel_id: int | None,
        timestamp: datetime,
    ) -> str | None:
        """Translate a voice-state update into a join/leave on the tracked channel."""
        event = self.get_active_event(guild_id)
        if event is None or before_channel_id == after_channel_id:
            return None
        tracked = event.channel_id
        if after_channel_id == tracked:
            return "join" if self.on_join(guild_id, user_id, timestamp) else None
        if before_channel_id == tracked:
            return "leave" if self.on_leave(guild_id, user_id, timestamp) is not None else None
        return None

    def close_open_sessions(self, guild_id: int, timestamp: datetime) -> int:
        closed = 0
        for session in self.sessions_for(guild_id):
            if session.leave(timestamp) is not None:
                closed += 1
        return closed

class AttendanceError(Exception):
    """Base class for attendance tracking failures."""


class ValidationError(AttendanceError):
    """Moderator input was rejected before anything was written."""


class EventStateError(AttendanceError):
    """The guild has no active event, or already has one."""


class MembershipUnavailable(AttendanceError):
    """Live voice-channel membership could not be read."""

    def __init__(self, guild_id: int, channel_id: int, reason: str = ""):
        self.guild_id = guild_id
        self.channel_id = channel_id
        self.reason = reason
        super().__init__(
            f"voice membership unavailable guild_id={guild_id} channel_id={channel_id} {reason}".strip()
        )

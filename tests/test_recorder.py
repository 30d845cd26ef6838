import pytest

from attendbot.errors import EventStateError
from attendbot.models import EventSession, EventType, Open
from attendbot.recorder import SessionRegistry

from conftest import CHANNEL, EVENT_START, GUILD

OTHER_CHANNEL = 333333333333333333


def _registry(present=()) -> SessionRegistry:
    registry = SessionRegistry()
    registry.start_event(EventSession(GUILD, CHANNEL, EventType.MOVIE, "2024-06-01", EVENT_START), present)
    return registry


def test_scenario_join_leave_rejoin(at):
    registry = _registry(present=[7])
    registry.on_leave(GUILD, 7, at(20))
    registry.on_join(GUILD, 7, at(25))
    registry.close_open_sessions(GUILD, at(40))
    session = registry.get_session(GUILD, 7)
    assert session.accumulated_minutes == 35
    assert session.longest_session_minutes == 20


def test_members_present_at_start_are_credited_from_start(at):
    registry = _registry(present=[7, 8])
    assert registry.get_session(GUILD, 7).state == Open(since=EVENT_START)
    assert registry.get_session(GUILD, 8).live_total(at(10)) == 10


def test_second_start_is_rejected():
    registry = _registry()
    with pytest.raises(EventStateError):
        registry.start_event(EventSession(GUILD, CHANNEL, EventType.GAME, "2024-06-01", EVENT_START))


def test_join_without_event_is_ignored(at):
    registry = SessionRegistry()
    assert registry.on_join(GUILD, 7, at(0)) is False
    assert registry.on_leave(GUILD, 7, at(5)) is None
    assert registry.sessions == {}


def test_idempotent_join_through_registry(at):
    registry = _registry()
    assert registry.on_join(GUILD, 7, at(3)) is True
    assert registry.on_join(GUILD, 7, at(9)) is False
    assert registry.get_session(GUILD, 7).state.since == at(3)


def test_voice_transitions_only_count_the_tracked_channel(at):
    registry = _registry()
    assert registry.handle_voice_transition(GUILD, 7, None, CHANNEL, at(0)) == "join"
    # mute/deafen updates keep the same channel
    assert registry.handle_voice_transition(GUILD, 7, CHANNEL, CHANNEL, at(2)) is None
    assert registry.handle_voice_transition(GUILD, 7, CHANNEL, OTHER_CHANNEL, at(10)) == "leave"
    assert registry.handle_voice_transition(GUILD, 7, OTHER_CHANNEL, None, at(12)) is None
    assert registry.get_session(GUILD, 7).accumulated_minutes == 10


def test_leave_without_open_session_is_not_a_transition(at):
    registry = _registry()
    assert registry.handle_voice_transition(GUILD, 7, CHANNEL, None, at(5)) is None
    assert registry.get_session(GUILD, 7) is None


def test_drop_guild_only_clears_that_guild(at):
    registry = _registry(present=[7])
    other = EventSession(GUILD + 1, CHANNEL, EventType.GAME, "2024-06-01", EVENT_START)
    registry.start_event(other, [8])
    registry.drop_guild(GUILD)
    assert registry.get_active_event(GUILD) is None
    assert registry.get_session(GUILD + 1, 8) is not None

import sqlite3

import pytest

from attendbot import roles
from attendbot.db import connect
from attendbot.errors import ValidationError
from attendbot.finalize import grant_role, upsert_record
from attendbot.models import EventType, FinalAttendanceRecord
from attendbot.roles import (
    get_role_tiers,
    make_role_granter,
    ordinal,
    progress_message,
    qualified_count,
    remove_role_tier,
    set_role_tier,
    update_tier_role,
)

from conftest import EVENT_START, GUILD

USER = 123456789012345678
REGULAR_ROLE = 501
VETERAN_ROLE = 502


class FakeRole:
    def __init__(self, role_id, name):
        self.id = role_id
        self.name = name


class FakeMember:
    def __init__(self, member_id, roles=()):
        self.id = member_id
        self.roles = list(roles)
        self.messages = []

    async def add_roles(self, role, reason=None):
        self.roles.append(role)

    async def remove_roles(self, role, reason=None):
        self.roles.remove(role)

    async def send(self, message):
        self.messages.append(message)


class FakeGuild:
    def __init__(self, roles, members):
        self.id = GUILD
        self._roles = {role.id: role for role in roles}
        self._members = {member.id: member for member in members}

    def get_role(self, role_id):
        return self._roles.get(role_id)

    def get_member(self, user_id):
        return self._members.get(user_id)


class FakeClient:
    def __init__(self, guild=None):
        self.guild = guild

    def get_guild(self, guild_id):
        return self.guild


def _qualified_movies(count):
    with connect() as conn:
        for day in range(1, count + 1):
            upsert_record(conn, FinalAttendanceRecord(
                guild_id=GUILD,
                user_id=USER,
                event_date=f"2024-06-{day:02d}",
                event_type=EventType.MOVIE,
                voice_channel_id=None,
                duration_minutes=60,
                longest_session_minutes=60,
                qualified=True,
            ), EVENT_START)


def test_ordinal():
    assert [ordinal(n) for n in (1, 2, 3, 4, 11, 12, 13, 21, 22, 101, 111)] == [
        "1st", "2nd", "3rd", "4th", "11th", "12th", "13th", "21st", "22nd", "101st", "111th",
    ]


def test_tiers_are_stored_per_type():
    set_role_tier(GUILD, EventType.MOVIE, "Veteran", VETERAN_ROLE, 5)
    set_role_tier(GUILD, EventType.MOVIE, "  Regular ", REGULAR_ROLE, 2)
    set_role_tier(GUILD, EventType.GAME, "Regular", REGULAR_ROLE, 3)
    tiers = get_role_tiers(GUILD, EventType.MOVIE)
    assert [tier["tier_name"] for tier in tiers] == ["Regular", "Veteran"]
    assert remove_role_tier(GUILD, EventType.MOVIE, "Veteran")
    assert not remove_role_tier(GUILD, EventType.MOVIE, "Veteran")
    assert len(get_role_tiers(GUILD, EventType.GAME)) == 1


def test_invalid_tiers_are_rejected():
    with pytest.raises(ValidationError):
        set_role_tier(GUILD, EventType.MOVIE, "   ", REGULAR_ROLE, 2)
    with pytest.raises(ValidationError):
        set_role_tier(GUILD, EventType.MOVIE, "Regular", REGULAR_ROLE, 0)


def test_progress_message():
    assert progress_message(EventType.MOVIE, 2, "Regular", None, 0).endswith("so you got the **Regular** role!")
    assert "you need **3** more movies to get **Veteran**" in progress_message(EventType.MOVIE, 2, None, "Veteran", 3)
    assert progress_message(EventType.GAME, 9, None, None, 0).endswith("highest game night tier!")


@pytest.mark.asyncio
async def test_update_tier_role_moves_member_up():
    set_role_tier(GUILD, EventType.MOVIE, "Regular", REGULAR_ROLE, 2)
    set_role_tier(GUILD, EventType.MOVIE, "Veteran", VETERAN_ROLE, 5)
    regular = FakeRole(REGULAR_ROLE, "Regular")
    veteran = FakeRole(VETERAN_ROLE, "Veteran")
    member = FakeMember(USER, roles=[regular])
    guild = FakeGuild([regular, veteran], [member])
    _qualified_movies(5)
    assert qualified_count(GUILD, USER, EventType.MOVIE) == 5

    results = await update_tier_role(guild, USER, EventType.MOVIE)

    assert [r.action for r in results] == ["remove", "add"]
    assert member.roles == [veteran]
    assert "5th" in member.messages[0]
    with connect() as conn:
        actions = [row["action"] for row in conn.execute("SELECT action FROM role_assignments ORDER BY id")]
    assert actions == ["remove", "add"]


@pytest.mark.asyncio
async def test_missing_role_is_skipped_not_raised():
    set_role_tier(GUILD, EventType.MOVIE, "Regular", REGULAR_ROLE, 1)
    member = FakeMember(USER)
    _qualified_movies(1)
    results = await update_tier_role(FakeGuild([], [member]), USER, EventType.MOVIE)
    assert [(r.action, r.success) for r in results] == [("skipped", False)]
    assert member.roles == []


@pytest.mark.asyncio
async def test_role_granter():
    grant = make_role_granter(FakeClient(), EventType.MOVIE)
    assert await grant(GUILD, USER, False) == []
    with pytest.raises(LookupError):
        await grant(GUILD, USER, True)


@pytest.mark.asyncio
async def test_grant_after_bump_survives_storage_errors(monkeypatch):
    set_role_tier(GUILD, EventType.MOVIE, "Regular", REGULAR_ROLE, 1)
    member = FakeMember(USER)
    guild = FakeGuild([FakeRole(REGULAR_ROLE, "Regular")], [member])

    def locked(*args):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(roles, "qualified_count", locked)
    granted = await grant_role(GUILD, USER, True, make_role_granter(FakeClient(guild), EventType.MOVIE))
    assert granted is False
    assert member.roles == []


@pytest.mark.asyncio
async def test_grant_role_reports_success():
    granted = await grant_role(GUILD, USER, False, make_role_granter(FakeClient(), EventType.MOVIE))
    assert granted is True

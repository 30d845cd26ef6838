import asyncio
import logging
import sqlite3
from datetime import datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import discord
from discord.ext import tasks

from attendbot import settings
from attendbot.checkpoint import CheckpointScheduler, checkpoint_guild
from attendbot.config_store import (
    get_event_config,
    parse_mode,
    set_attendance_mode,
    set_game_percentage,
    set_movie_threshold,
)
from attendbot.db import init_db
from attendbot.errors import EventStateError, MembershipUnavailable, ValidationError
from attendbot.finalize import AttendanceOutcome, end_event, grant_role
from attendbot.ledger import (
    add_minutes,
    bump_to_qualified,
    credit_past_event,
    ensure_not_live,
    validate_event_date,
)
from attendbot.logs import configure_logging, interaction_log_context, register_loop_exception_handler
from attendbot.models import EventSession, EventType, utcnow
from attendbot.qualification import evaluate
from attendbot.recorder import SessionRegistry
from attendbot.recovery import RecoveryReport, recover_events
from attendbot.reports import event_roster, user_attendance
from attendbot.roles import get_role_tiers, make_role_granter, remove_role_tier, set_role_tier

logger = logging.getLogger("attendbot.bot")

# =========================
# TIMEZONE
# =========================
try:
    LOCAL_TZ = ZoneInfo(settings.TZ_NAME)
except ZoneInfoNotFoundError as e:
    raise RuntimeError(
        f"ZoneInfo timezone '{settings.TZ_NAME}' not found. On Windows, install tzdata:\n"
        f"  python -m pip install tzdata\n"
        f"Then restart."
    ) from e


def local_event_date(now: datetime | None = None) -> str:
    return (now or utcnow()).astimezone(LOCAL_TZ).date().isoformat()


# =========================
# DISCORD SETUP
# =========================
intents = discord.Intents.default()
intents.voice_states = True  # join/leave tracking in the event channel
intents.members = True  # channel member lists and tier role grants
bot = discord.Bot(intents=intents)

registry = SessionRegistry()
checkpoints = CheckpointScheduler(registry)
# guilds with an unfinished event whose voice membership could not be read yet
deferred_guilds: set[int] = set()


async def voice_members(guild_id: int, channel_id: int) -> set[int]:
    guild = bot.get_guild(guild_id)
    if guild is None:
        raise MembershipUnavailable(guild_id, channel_id, "guild_not_cached")
    channel = guild.get_channel(channel_id)
    if channel is None:
        try:
            channel = await bot.fetch_channel(channel_id)
        except (discord.NotFound, discord.Forbidden, discord.HTTPException) as e:
            raise MembershipUnavailable(guild_id, channel_id, type(e).__name__) from e
    if not isinstance(channel, (discord.VoiceChannel, discord.StageChannel)):
        raise MembershipUnavailable(guild_id, channel_id, "not_a_voice_channel")
    return {member.id for member in channel.members if not member.bot}


async def apply_recovery(report: RecoveryReport):
    for guild_id in report.recovered:
        deferred_guilds.discard(guild_id)
        # persist the resumed watermarks before the first timer tick
        await checkpoint_guild(registry, guild_id)
        checkpoints.start(guild_id)
    deferred_guilds.update(report.deferred)


# =========================
# REPLIES
# =========================
async def reply(interaction: discord.Interaction, message: str, ephemeral: bool = True):
    if len(message) > 1900:
        message = message[:1900] + "\n…"
    if interaction.response.is_done():
        await interaction.followup.send(message, ephemeral=ephemeral)
    else:
        await interaction.response.send_message(message, ephemeral=ephemeral)


async def reply_error(interaction: discord.Interaction, error: Exception):
    if isinstance(error, ValidationError):
        await reply(interaction, f"Invalid input: {error}")
        return
    if isinstance(error, EventStateError):
        await reply(interaction, str(error))
        return
    logger.error(
        "command_failed context=%r error=%r",
        interaction_log_context(interaction),
        error,
        exc_info=error,
    )
    await reply(
        interaction,
        f"Something went wrong ({type(error).__name__}). Nothing may have been saved; try the action again.",
    )


def format_outcomes(event_type: EventType, outcomes: list[AttendanceOutcome]) -> str:
    if not outcomes:
        return f"The {event_type.label} ended with no attendees."
    lines = [f"**{event_type.label.title()} attendance**"]
    for outcome in sorted(outcomes, key=lambda o: o.record.duration_minutes, reverse=True):
        if outcome.result is not None:
            verdict = outcome.result.describe()
        else:
            verdict = f"{outcome.record.duration_minutes} min, verdict unknown"
        suffix = "" if outcome.written else " (already recorded)"
        lines.append(f"- <@{outcome.user_id}>: {verdict}{suffix}")
    return "\n".join(lines)


def describe_live(event: EventSession, user_id: int, now: datetime) -> str:
    session = registry.get_session(event.guild_id, user_id)
    if session is None:
        return f"<@{user_id}> has not joined this {event.event_type.label}."
    total = session.live_total(now)
    longest = session.live_longest(now)
    config = get_event_config(event.guild_id)
    result = evaluate(event.event_type, total, longest, config, event_duration_minutes=event.duration_minutes(now))
    where = "in the channel" if session.is_present else "not in the channel"
    lines = [
        f"<@{user_id}> is {where}.",
        f"- Total: **{total}** min, longest session: **{longest}** min",
    ]
    if result is not None:
        lines.append(f"- So far: {result.describe()}")
    if session.adjusted_by is not None:
        lines.append(f"- Adjusted by <@{session.adjusted_by}>: {session.adjustment_reason or 'no reason given'}")
    return "\n".join(lines)


# =========================
# VOICE EVENTS
# =========================
@bot.event
async def on_voice_state_update(member: discord.Member, before: discord.VoiceState, after: discord.VoiceState):
    if member.bot or member.guild is None:
        return
    transition = registry.handle_voice_transition(
        member.guild.id,
        member.id,
        getattr(before.channel, "id", None),
        getattr(after.channel, "id", None),
        utcnow(),
    )
    if transition is not None:
        logger.info(
            "attendance_voice_%s guild_id=%s user_id=%s",
            transition,
            member.guild.id,
            member.id,
        )


# =========================
# /event COMMANDS
# =========================
event_group = bot.create_group(
    "event",
    "Track attendance for movie and game nights.",
    default_member_permissions=discord.Permissions(manage_events=True),
    guild_only=True,
)


def require_event(guild_id: int, event_type: EventType) -> EventSession:
    event = registry.get_active_event(guild_id)
    if event is None or event.event_type is not event_type:
        if guild_id in deferred_guilds:
            raise EventStateError(
                f"An unfinished event is waiting on recovery; run `/event {event_type.value} resume` first."
            )
        raise EventStateError(f"No {event_type.label} is being tracked in this server.")
    return event


def register_event_commands(event_type: EventType):
    group = event_group.create_subgroup(event_type.value, f"{event_type.label.title()} attendance.")
    label = event_type.label

    @group.command(name="start", description=f"Start tracking a {label} in a voice channel.")
    async def start(
        interaction: discord.Interaction,
        channel: discord.Option(discord.VoiceChannel, "Voice channel the event runs in."),
    ):
        guild_id = interaction.guild.id
        now = utcnow()
        try:
            if guild_id in deferred_guilds:
                raise EventStateError("An unfinished event is waiting on recovery; resume or end it first.")
            event = EventSession(
                guild_id=guild_id,
                channel_id=channel.id,
                event_type=event_type,
                event_date=local_event_date(now),
                started_at=now,
            )
            present = [member.id for member in channel.members if not member.bot]
            credited = registry.start_event(event, present)
        except EventStateError as e:
            await reply_error(interaction, e)
            return
        await checkpoint_guild(registry, guild_id, now)
        checkpoints.start(guild_id)
        logger.info("event_start_command context=%r", interaction_log_context(interaction))
        await reply(
            interaction,
            f"Started tracking the **{label}** in {channel.mention} for {event.event_date}. "
            f"{credited} member(s) already there are counted from now.",
            ephemeral=False,
        )

    @group.command(name="end", description=f"End the {label} and record attendance.")
    async def end(interaction: discord.Interaction):
        guild_id = interaction.guild.id
        try:
            require_event(guild_id, event_type)
        except EventStateError as e:
            await reply_error(interaction, e)
            return
        await interaction.response.defer()
        try:
            outcomes = await end_event(registry, guild_id, role_granter=make_role_granter(bot, event_type))
        except sqlite3.Error as e:
            await reply_error(interaction, e)
            return
        checkpoints.stop(guild_id)
        logger.info("event_end_command context=%r attendees=%s", interaction_log_context(interaction), len(outcomes))
        await reply(interaction, format_outcomes(event_type, outcomes), ephemeral=False)

    @group.command(name="status", description=f"Show live {label} attendance.")
    async def status(
        interaction: discord.Interaction,
        user: discord.Option(discord.Member, "Show one member's progress.", required=False, default=None),
    ):
        try:
            event = require_event(interaction.guild.id, event_type)
        except EventStateError as e:
            await reply_error(interaction, e)
            return
        now = utcnow()
        if user is not None:
            await reply(interaction, describe_live(event, user.id, now))
            return
        sessions = registry.sessions_for(event.guild_id)
        present = sum(1 for s in sessions if s.is_present)
        lines = [
            f"**{label.title()}** in <#{event.channel_id}> since <t:{int(event.started_at.timestamp())}:t>",
            f"- Running: **{event.duration_minutes(now)}** min",
            f"- In channel: **{present}**, attended so far: **{len(sessions)}**",
        ]
        for session in sorted(sessions, key=lambda s: s.live_total(now), reverse=True)[:15]:
            lines.append(f"- <@{session.user_id}>: {session.live_total(now)} min")
        await reply(interaction, "\n".join(lines))

    @group.command(name="attendance", description=f"Show recorded {label} attendance.")
    async def attendance(
        interaction: discord.Interaction,
        user: discord.Option(discord.Member, "Show one member's history and tier.", required=False, default=None),
    ):
        await interaction.response.defer()
        try:
            if user is None:
                message = event_roster(interaction.guild.id, event_type)
            else:
                message = user_attendance(interaction.guild.id, user.id, event_type)
        except sqlite3.Error as e:
            await reply_error(interaction, e)
            return
        await reply(interaction, message, ephemeral=False)

    @group.command(name="add", description=f"Add minutes to a member in the running {label}.")
    async def add(
        interaction: discord.Interaction,
        user: discord.Option(discord.Member, "Member to credit."),
        minutes: discord.Option(int, "Minutes to add.", min_value=1, max_value=300),
        reason: discord.Option(str, "Why the minutes are added.", required=False, default=None),
    ):
        try:
            require_event(interaction.guild.id, event_type)
            total = await add_minutes(registry, interaction.guild.id, user.id, minutes, interaction.user.id, reason)
        except (ValidationError, EventStateError, sqlite3.Error) as e:
            await reply_error(interaction, e)
            return
        await reply(interaction, f"Added **{minutes}** min to {user.mention}; live total is now **{total}** min.")

    @group.command(name="credit", description=f"Credit minutes to a member for a past {label}.")
    async def credit(
        interaction: discord.Interaction,
        user: discord.Option(discord.Member, "Member to credit."),
        date: discord.Option(str, "Event date, YYYY-MM-DD."),
        minutes: discord.Option(int, "Minutes to credit.", min_value=1, max_value=1440),
        reason: discord.Option(str, "Why the minutes are credited.", required=False, default=None),
    ):
        try:
            ensure_not_live(registry, interaction.guild.id, validate_event_date(date))
            record = await credit_past_event(
                interaction.guild.id, user.id, date, minutes, interaction.user.id, reason, event_type,
            )
        except (ValidationError, EventStateError, sqlite3.Error) as e:
            await reply_error(interaction, e)
            return
        if record.qualified is None:
            verdict = "verdict unknown"
        else:
            verdict = "qualified" if record.qualified else "not qualified"
        await reply(
            interaction,
            f"Credited **{minutes}** min to {user.mention} for {record.event_date}: "
            f"total **{record.duration_minutes}** min, {verdict}.",
        )

    @group.command(name="bump", description=f"Mark a member qualified for a past {label}.")
    async def bump(
        interaction: discord.Interaction,
        user: discord.Option(discord.Member, "Member to bump."),
        date: discord.Option(str, "Event date, YYYY-MM-DD."),
        reason: discord.Option(str, "Why the member is bumped.", required=False, default=None),
    ):
        try:
            ensure_not_live(registry, interaction.guild.id, validate_event_date(date))
            changed, _ = await bump_to_qualified(
                interaction.guild.id, user.id, date, interaction.user.id, reason, event_type,
            )
        except (ValidationError, EventStateError, sqlite3.Error) as e:
            await reply_error(interaction, e)
            return
        if not changed:
            await reply(interaction, f"{user.mention} is already qualified for the {label} on {date}.")
            return
        granted = await grant_role(interaction.guild.id, user.id, True, make_role_granter(bot, event_type))
        note = "" if granted else " Tier roles could not be updated; see the logs."
        await reply(interaction, f"{user.mention} is now qualified for the {label} on {date}.{note}")

    @group.command(name="resume", description="Retry recovering an event interrupted by a restart.")
    async def resume(interaction: discord.Interaction):
        guild_id = interaction.guild.id
        if registry.get_active_event(guild_id) is not None:
            await reply(interaction, "An event is already being tracked in this server.")
            return
        try:
            report = await recover_events(registry, voice_members, only_guilds={guild_id})
        except sqlite3.Error as e:
            await reply_error(interaction, e)
            return
        await apply_recovery(report)
        if guild_id in report.recovered:
            event = registry.get_active_event(guild_id)
            await reply(
                interaction,
                f"Resumed the **{event.event_type.label}** from {event.event_date} in <#{event.channel_id}>.",
            )
        elif guild_id in report.deferred:
            await reply(interaction, "The voice channel still can't be read; recovery will keep retrying.")
        else:
            deferred_guilds.discard(guild_id)
            await reply(interaction, "There is no unfinished event to resume.")

    return group


movie_group = register_event_commands(EventType.MOVIE)
game_group = register_event_commands(EventType.GAME)


# =========================
# /event config COMMANDS
# =========================
config_group = event_group.create_subgroup("config", "Attendance settings for this server.")

EVENT_TYPE_CHOICES = [event_type.value for event_type in EventType]


def can_manage_server(interaction: discord.Interaction) -> bool:
    permissions = getattr(interaction.user, "guild_permissions", None)
    return bool(permissions and permissions.manage_guild)


@config_group.command(name="show", description="Show attendance settings.")
async def config_show(interaction: discord.Interaction):
    config = get_event_config(interaction.guild.id)
    lines = [
        "**Attendance settings**",
        f"- Movie: **{config.movie_threshold_minutes}** min, mode `{config.movie_attendance_mode.value}`",
        f"- Game: **{config.game_qualification_percentage}%** of the runtime, mode `{config.game_attendance_mode.value}`",
    ]
    for event_type in EventType:
        tiers = get_role_tiers(interaction.guild.id, event_type)
        for tier in tiers:
            lines.append(
                f"- {event_type.value} tier **{tier['tier_name']}**: <@&{tier['role_id']}> at {tier['threshold']}"
            )
    await reply(interaction, "\n".join(lines))


@config_group.command(name="threshold", description="Minutes needed to qualify for a movie night.")
async def config_threshold(
    interaction: discord.Interaction,
    minutes: discord.Option(int, "Minutes, 1-600.", min_value=1, max_value=600),
):
    if not can_manage_server(interaction):
        await reply(interaction, "You need Manage Server to change attendance settings.")
        return
    try:
        set_movie_threshold(interaction.guild.id, minutes)
    except (ValidationError, sqlite3.Error) as e:
        await reply_error(interaction, e)
        return
    await reply(interaction, f"Movie nights now need **{minutes}** minutes.")


@config_group.command(name="mode", description="How attendance time is counted.")
async def config_mode(
    interaction: discord.Interaction,
    event_type: discord.Option(str, "Event type.", choices=EVENT_TYPE_CHOICES),
    mode: discord.Option(str, "cumulative adds every session, continuous uses the longest one.",
                         choices=["cumulative", "continuous"]),
):
    if not can_manage_server(interaction):
        await reply(interaction, "You need Manage Server to change attendance settings.")
        return
    try:
        parsed = parse_mode(mode)
        set_attendance_mode(interaction.guild.id, EventType(event_type), parsed)
    except (ValidationError, sqlite3.Error) as e:
        await reply_error(interaction, e)
        return
    await reply(interaction, f"{EventType(event_type).label.title()} attendance is now `{parsed.value}`.")


@config_group.command(name="percentage", description="Share of a game night's runtime needed to qualify.")
async def config_percentage(
    interaction: discord.Interaction,
    percentage: discord.Option(int, "Percent, 10-90.", min_value=10, max_value=90),
):
    if not can_manage_server(interaction):
        await reply(interaction, "You need Manage Server to change attendance settings.")
        return
    try:
        set_game_percentage(interaction.guild.id, percentage)
    except (ValidationError, sqlite3.Error) as e:
        await reply_error(interaction, e)
        return
    await reply(interaction, f"Game nights now need **{percentage}%** of the runtime.")


@config_group.command(name="tier", description="Set or remove a tier role.")
async def config_tier(
    interaction: discord.Interaction,
    event_type: discord.Option(str, "Event type.", choices=EVENT_TYPE_CHOICES),
    name: discord.Option(str, "Tier name."),
    role: discord.Option(discord.Role, "Role to grant.", required=False, default=None),
    threshold: discord.Option(int, "Qualified events needed.", min_value=1, required=False, default=None),
):
    if not can_manage_server(interaction):
        await reply(interaction, "You need Manage Server to change attendance settings.")
        return
    kind = EventType(event_type)
    try:
        if role is None and threshold is None:
            removed = remove_role_tier(interaction.guild.id, kind, name)
            await reply(interaction, f"Removed tier **{name}**." if removed else f"No tier named **{name}**.")
            return
        if role is None or threshold is None:
            raise ValidationError("Give both a role and a threshold to set a tier, or neither to remove it.")
        set_role_tier(interaction.guild.id, kind, name, role.id, threshold)
    except (ValidationError, sqlite3.Error) as e:
        await reply_error(interaction, e)
        return
    await reply(interaction, f"{kind.label.title()} tier **{name}** grants {role.mention} at **{threshold}** qualified.")


# =========================
# RECOVERY RETRY
# =========================
@tasks.loop(minutes=settings.RECOVERY_RETRY_MINUTES)
async def retry_deferred_recovery():
    if not deferred_guilds:
        return
    pending = set(deferred_guilds)
    try:
        report = await recover_events(registry, voice_members, only_guilds=pending)
    except sqlite3.Error as e:
        logger.warning("recovery_retry_failed guilds=%s error=%s", sorted(pending), e)
        return
    # anything no longer unfinished in storage stops being retried
    deferred_guilds.difference_update(pending - set(report.deferred))
    await apply_recovery(report)


@bot.event
async def on_ready():
    register_loop_exception_handler(asyncio.get_running_loop())
    init_db()
    try:
        await bot.sync_commands()
    except (discord.HTTPException, discord.Forbidden):
        logger.warning("command_sync_failed")
    report = await recover_events(registry, voice_members)
    await apply_recovery(report)
    if not retry_deferred_recovery.is_running():
        retry_deferred_recovery.start()
    logger.info("bot_ready user=%s user_id=%s", bot.user, bot.user.id)


def main():
    configure_logging()
    if not settings.TOKEN:
        raise RuntimeError("Set DISCORD_TOKEN in the environment or a .env file.")
    bot.run(settings.TOKEN)

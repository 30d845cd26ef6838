"""
Tier roles for event attendance.

Role grants are a best-effort side effect of finalization: every Discord
failure is logged and recorded in ``role_assignments``, never raised. The
``event_attendance`` rows stay the source of truth, so tiers can always be
recomputed later.
"""
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

import discord

from attendbot.db import connect
from attendbot.errors import ValidationError
from attendbot.models import EventType, format_timestamp, utcnow

logger = logging.getLogger("attendbot.roles")

RoleGranter = Callable[[int, int, bool], Awaitable[object]]


@dataclass
class RoleAssignmentResult:
    role_id: int
    role_name: str
    action: str  # 'add' / 'remove' / 'unchanged' / 'skipped' / 'failed'
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.action not in ("skipped", "failed")


def ordinal(n: int) -> str:
    if 10 <= n % 100 <= 20:
        suffix = "th"
    else:
        suffix = {1: "st", 2: "nd", 3: "rd"}.get(n % 10, "th")
    return f"{n}{suffix}"


# =========================
# TIER STORAGE
# =========================
def get_role_tiers(guild_id: int, event_type: EventType):
    with connect() as conn:
        return conn.execute("""
            SELECT id, tier_name, role_id, threshold
            FROM role_tiers
            WHERE guild_id=? AND tier_type=?
            ORDER BY threshold ASC
        """, (guild_id, event_type.value)).fetchall()


def set_role_tier(guild_id: int, event_type: EventType, tier_name: str, role_id: int, threshold: int):
    tier_name = " ".join(tier_name.split()).strip()
    if not tier_name or len(tier_name) > 64:
        raise ValidationError("Tier name must be 1-64 characters.")
    if threshold < 1:
        raise ValidationError("Tier threshold must be at least 1 qualified event.")
    with connect() as conn:
        conn.execute("""
            INSERT INTO role_tiers(guild_id, tier_type, tier_name, role_id, threshold)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(guild_id, tier_type, tier_name) DO UPDATE SET
                role_id=excluded.role_id,
                threshold=excluded.threshold
        """, (guild_id, event_type.value, tier_name, role_id, threshold))
    logger.info(
        "role_tier_set guild_id=%s tier_type=%s tier_name=%r role_id=%s threshold=%s",
        guild_id,
        event_type.value,
        tier_name,
        role_id,
        threshold,
    )


def remove_role_tier(guild_id: int, event_type: EventType, tier_name: str) -> bool:
    with connect() as conn:
        cur = conn.execute(
            "DELETE FROM role_tiers WHERE guild_id=? AND tier_type=? AND tier_name=?",
            (guild_id, event_type.value, tier_name),
        )
        return cur.rowcount > 0


def qualified_count(guild_id: int, user_id: int, event_type: EventType) -> int:
    with connect() as conn:
        row = conn.execute("""
            SELECT COUNT(*) AS n
            FROM event_attendance
            WHERE guild_id=? AND user_id=? AND event_type=? AND qualified=1
        """, (guild_id, user_id, event_type.value)).fetchone()
    return int(row["n"])


def tier_progress(guild_id: int, event_type: EventType, count: int):
    """(current tier, next tier) rows for a qualified count; either may be None."""
    tiers = get_role_tiers(guild_id, event_type)
    reached = [tier for tier in tiers if count >= tier["threshold"]]
    upcoming = [tier for tier in tiers if tier["threshold"] > count]
    return (reached[-1] if reached else None), (upcoming[0] if upcoming else None)


def log_role_assignment(
    guild_id: int,
    user_id: int,
    result: RoleAssignmentResult,
    reason: str,
    triggered_by: str = "system",
):
    details = json.dumps({"error": result.error}) if result.error else None
    with connect() as conn:
        conn.execute("""
            INSERT INTO role_assignments(
                guild_id, user_id, role_id, role_name, action,
                reason, triggered_by, details, created_at_utc
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            guild_id, user_id, result.role_id, result.role_name, result.action,
            reason, triggered_by, details, format_timestamp(utcnow()),
        ))


# =========================
# DISCORD SIDE EFFECTS
# =========================
async def _change_role(guild: discord.Guild, user_id: int, role_id: int, reason: str, add: bool) -> RoleAssignmentResult:
    role = guild.get_role(role_id)
    if role is None:
        result = RoleAssignmentResult(role_id, "Unknown", "skipped", "Role not found in guild")
    else:
        try:
            member = guild.get_member(user_id) or await guild.fetch_member(user_id)
        except discord.NotFound:
            member = None
        except discord.HTTPException as e:
            member = None
            logger.warning("role_member_fetch_failed guild_id=%s user_id=%s error=%s", guild.id, user_id, e)
        if member is None:
            result = RoleAssignmentResult(role_id, role.name, "skipped", "Member not found in guild")
        elif (role in member.roles) == add:
            result = RoleAssignmentResult(role_id, role.name, "unchanged")
        else:
            try:
                if add:
                    await member.add_roles(role, reason=reason)
                else:
                    await member.remove_roles(role, reason=reason)
                result = RoleAssignmentResult(role_id, role.name, "add" if add else "remove")
            except (discord.Forbidden, discord.HTTPException) as e:
                result = RoleAssignmentResult(role_id, role.name, "failed", str(e))
    if result.action in ("skipped", "failed"):
        logger.warning(
            "role_change_not_applied guild_id=%s user_id=%s role_id=%s action=%s error=%s",
            guild.id,
            user_id,
            role_id,
            result.action,
            result.error,
        )
    if result.action != "unchanged":
        log_role_assignment(guild.id, user_id, result, reason)
    return result


async def assign_role(guild: discord.Guild, user_id: int, role_id: int, reason: str) -> RoleAssignmentResult:
    return await _change_role(guild, user_id, role_id, reason, add=True)


async def remove_role(guild: discord.Guild, user_id: int, role_id: int, reason: str) -> RoleAssignmentResult:
    return await _change_role(guild, user_id, role_id, reason, add=False)


async def send_progress_dm(guild: discord.Guild, user_id: int, message: str) -> bool:
    member = guild.get_member(user_id)
    if member is None:
        return False
    try:
        await member.send(message)
    except (discord.Forbidden, discord.HTTPException):
        logger.debug("tier_progress_dm_failed guild_id=%s user_id=%s", guild.id, user_id)
        return False
    return True


def progress_message(event_type: EventType, count: int, granted_role: str | None, next_role: str | None, needed: int) -> str:
    noun = "movie" if event_type is EventType.MOVIE else "game night"
    message = f"Thanks for joining us! This is your **{ordinal(count)}** {noun}"
    if granted_role:
        return message + f", so you got the **{granted_role}** role!"
    if next_role:
        plural = "s" if needed > 1 else ""
        return message + f", you need **{needed}** more {noun}{plural} to get **{next_role}**!"
    return message + f"! You've reached the highest {noun} tier!"


async def update_tier_role(guild: discord.Guild, user_id: int, event_type: EventType) -> list[RoleAssignmentResult]:
    """Give the user the highest tier their qualified count reaches and drop the other tiers of that type."""
    results: list[RoleAssignmentResult] = []
    tiers = get_role_tiers(guild.id, event_type)
    if not tiers:
        logger.debug("no_tier_roles guild_id=%s tier_type=%s", guild.id, event_type.value)
        return results
    count = qualified_count(guild.id, user_id, event_type)
    reached = [tier for tier in tiers if count >= tier["threshold"]]
    if not reached:
        logger.debug("no_qualifying_tier guild_id=%s user_id=%s count=%s", guild.id, user_id, count)
        return results
    target = reached[-1]
    for tier in tiers:
        if tier["id"] == target["id"]:
            continue
        results.append(await remove_role(guild, user_id, int(tier["role_id"]), f"{event_type.value}_tier_update"))
    added = await assign_role(guild, user_id, int(target["role_id"]), f"{event_type.value}_tier_qualified")
    results.append(added)
    upcoming = [tier for tier in tiers if tier["threshold"] > count]
    next_tier = upcoming[0] if upcoming else None
    await send_progress_dm(
        guild,
        user_id,
        progress_message(
            event_type,
            count,
            added.role_name if added.action == "add" else None,
            next_tier["tier_name"] if next_tier else None,
            next_tier["threshold"] - count if next_tier else 0,
        ),
    )
    logger.info(
        "tier_role_updated guild_id=%s user_id=%s tier_type=%s count=%s tier=%r action=%s",
        guild.id,
        user_id,
        event_type.value,
        count,
        target["tier_name"],
        added.action,
    )
    return results


def make_role_granter(client: discord.Client, event_type: EventType) -> RoleGranter:
    async def grant(guild_id: int, user_id: int, qualified: bool):
        if not qualified:
            return []
        guild = client.get_guild(guild_id)
        if guild is None:
            raise LookupError(f"guild {guild_id} not cached")
        return await update_tier_role(guild, user_id, event_type)

    return grant

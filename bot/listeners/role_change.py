"""Role change listener: keeps role-based whitelist entries in step with Discord roles."""
from __future__ import annotations

import logging

import discord
from discord.ext import commands

from bot.services.role_sync import RoleChanged
from bot.services.whitelist_import import MemberFlagService

logger = logging.getLogger("roster.listeners.roles")


def role_diff(before: discord.Member, after: discord.Member) -> RoleChanged | None:
    """Added and removed role IDs, or None when the roles did not change."""
    old = {r.id for r in before.roles}
    new = {r.id for r in after.roles}
    if old == new:
        return None
    return RoleChanged(
        discord_user_id=after.id,
        guild_id=after.guild.id,
        added_roles=frozenset(new - old),
        removed_roles=frozenset(old - new),
    )


async def _update_member_flag(bot: commands.Bot, event: RoleChanged, after: discord.Member) -> None:
    """Tag or untag the player on BattleMetrics when a Member role comes or goes."""
    services = bot.services
    flag_id = services.settings.battlemetrics.member_flag_id
    if services.battlemetrics is None or not flag_id:
        return
    member_roles = services.settings.groups.member
    gained = bool(event.added_roles & member_roles)
    lost = bool(event.removed_roles & member_roles)
    if gained == lost:
        return
    if lost and any(r.id in member_roles for r in after.roles):
        return
    link = await services.links.find_primary_by_discord_id(after.id)
    if link is None:
        return
    flags = MemberFlagService(services.battlemetrics, flag_id)
    result = await (flags.flag_member(link.steam_id64) if gained else flags.unflag_member(link.steam_id64))
    if not result.success:
        logger.warning("BattleMetrics member flag update for %s failed: %s", link.steam_id64, result.error)


async def _handle_member_update(before: discord.Member, after: discord.Member, bot: commands.Bot) -> None:
    if after.bot:
        return
    guild_id = bot.services.settings.guild_id
    if guild_id and after.guild.id != guild_id:
        return
    event = role_diff(before, after)
    if event is None:
        return
    await bot.services.role_sync.handle_role_changed(event, after)
    await _update_member_flag(bot, event, after)


def setup(bot: commands.Bot) -> None:
    """Register role change listeners."""

    async def on_member_update(before: discord.Member, after: discord.Member) -> None:
        await _handle_member_update(before, after, bot)

    async def on_member_remove(member: discord.Member) -> None:
        if member.bot:
            return
        await bot.services.role_sync.sync_user_role(member.id, None, None, source="member_left")

    bot.add_listener(on_member_update, "on_member_update")
    bot.add_listener(on_member_remove, "on_member_remove")

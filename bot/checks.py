"""Permission checks for slash commands."""
from __future__ import annotations

import discord
from discord import app_commands

import config


def _get_role_ids(member: discord.Member) -> set[int]:
    """Member's role IDs. Also reads raw _roles, since member.roles filters through
    guild.get_role() and comes back empty when the role cache is incomplete."""
    ids = {r.id for r in member.roles}
    raw = getattr(member, "_roles", None)
    if raw is not None:
        ids.update(int(r) for r in raw)
    return ids


def _get_role_names(member: discord.Member) -> set[str]:
    names = {r.name.lower() for r in member.roles}
    guild = member.guild
    for role_id in getattr(member, "_roles", None) or ():
        role = guild.get_role(int(role_id)) if guild is not None else None
        if role is not None:
            names.add(role.name.lower())
    return names


async def _resolve_member(interaction: discord.Interaction) -> discord.Member | None:
    """Member with roles; refetched over REST when only @everyone is cached."""
    if not interaction.guild:
        return None
    member = interaction.user if isinstance(interaction.user, discord.Member) else None
    if member is None or len(_get_role_ids(member)) <= 1:
        try:
            member = await interaction.guild.fetch_member(interaction.user.id)
        except discord.NotFound:
            return None
    return member


def _matches(member: discord.Member, role_ids: set[int], role_names: set[str]) -> bool:
    return bool(_get_role_ids(member) & role_ids) or bool(_get_role_names(member) & role_names)


def is_staff_member(member) -> bool:
    """Moderator or admin command role, or server administrator, for an already resolved member."""
    if member.id in (config.MODERATOR_USER_IDS | config.ADMIN_USER_IDS):
        return True
    permissions = getattr(member, "guild_permissions", None)
    if permissions is not None and permissions.administrator:
        return True
    return _matches(
        member,
        config.MODERATOR_ROLE_IDS | config.ADMIN_ROLE_IDS,
        config.MODERATOR_ROLE_NAMES | config.ADMIN_ROLE_NAMES,
    )


async def is_staff(interaction: discord.Interaction) -> bool:
    if interaction.user.id in (config.MODERATOR_USER_IDS | config.ADMIN_USER_IDS):
        return True
    member = await _resolve_member(interaction)
    return member is not None and is_staff_member(member)


def staff_or_higher():
    """Moderator or admin command role, or server administrator."""
    return app_commands.check(is_staff)


def admin_only():
    """Admin command role, or server administrator."""

    async def predicate(interaction: discord.Interaction) -> bool:
        if interaction.user.id in config.ADMIN_USER_IDS:
            return True
        member = await _resolve_member(interaction)
        if not member:
            return False
        if member.guild_permissions.administrator:
            return True
        return _matches(member, config.ADMIN_ROLE_IDS, config.ADMIN_ROLE_NAMES)

    return app_commands.check(predicate)

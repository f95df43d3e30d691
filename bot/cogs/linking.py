"""Linking cog - /linkid, /unlink, /mylinks and the /link staff group."""
from __future__ import annotations

import logging

import discord
from discord import app_commands

from bot.checks import admin_only, staff_or_higher
from bot.errors import NotFoundError, RosterError
from bot.models import LinkSource
from bot.services.audit import Actor
from bot.services.discord_embeds import build_links_embed, build_verification_embed, build_verified_embed
from bot.services.verification import RedeemResult

logger = logging.getLogger("roster.cogs.linking")


@app_commands.command(name="linkid", description="Get a code to link your Steam account (type it in game chat)")
async def linkid(interaction: discord.Interaction) -> None:
    """Issue a verification code. The reply turns into a confirmation once the code is typed in game."""
    await interaction.response.defer(ephemeral=True)
    services = interaction.client.services
    try:
        issued = await services.verification.create_code(interaction.user.id)
    except RosterError as e:
        await interaction.followup.send(str(e), ephemeral=True)
        return

    async def notify(result: RedeemResult) -> None:
        await interaction.edit_original_response(
            embed=build_verified_embed(result.link.steam_id64, result.link.username)
        )

    services.verification.register_pending(issued, interaction.user.id, notify)
    cooldown = await services.links.cooldown_for(interaction.user.id)
    await interaction.followup.send(embed=build_verification_embed(issued, cooldown), ephemeral=True)


@app_commands.command(description="Unlink your Steam account (30-day cooldown before linking a different one)")
@app_commands.describe(reason="Why you are unlinking (optional)")
async def unlink(interaction: discord.Interaction, reason: str | None = None) -> None:
    await interaction.response.defer(ephemeral=True)
    services = interaction.client.services
    try:
        result = await services.links.unlink(
            interaction.user.id, reason or "Self unlink", actor=Actor.from_discord(interaction.user, "user")
        )
    except NotFoundError as e:
        await interaction.followup.send(str(e), ephemeral=True)
        return
    ends = int(result.cooldown_ends_at.timestamp())
    await interaction.followup.send(
        f"Unlinked {', '.join(result.steam_ids)}. You can re-link the same account any time; "
        f"a different Steam account can be linked after <t:{ends}:F>.",
        ephemeral=True,
    )
    if isinstance(interaction.user, discord.Member):
        await services.role_sync.sync_user_role(interaction.user.id, None, interaction.user, source="unlink")


@app_commands.command(description="Show your linked Steam accounts")
async def mylinks(interaction: discord.Interaction) -> None:
    await interaction.response.defer(ephemeral=True)
    links = await interaction.client.services.links.find_by_discord_id(interaction.user.id)
    await interaction.followup.send(embed=build_links_embed(links, interaction.user.display_name), ephemeral=True)


link_group = app_commands.Group(name="link", description="Account link management (Staff)")


@link_group.command(name="add", description="Link a member to a Steam ID (admin link, confidence 0.7)")
@app_commands.describe(member="Discord member", steam_id="SteamID64", username="In-game name (optional)")
@staff_or_higher()
async def link_add(interaction: discord.Interaction, member: discord.Member, steam_id: str, username: str | None = None) -> None:
    await interaction.response.defer(ephemeral=True)
    services = interaction.client.services
    actor = Actor.from_discord(interaction.user)
    try:
        result = await services.links.create_or_update_link(
            member.id,
            steam_id.strip(),
            None,
            username,
            link_source=LinkSource.MANUAL_ADMIN,
            metadata={"created_by": str(interaction.user.id), "created_by_tag": str(interaction.user)},
            actor=actor,
        )
    except RosterError as e:
        await interaction.followup.send(str(e), ephemeral=True)
        return
    verb = "Linked" if result.created else "Updated link for"
    note = "" if result.link.is_primary else " (kept as secondary: the member has a more trusted primary link)"
    await interaction.followup.send(f"{verb} {member.mention} to `{result.link.steam_id64}`{note}.", ephemeral=True)
    await services.role_sync.sync_user_role(
        member.id, services.role_groups.highest_member_group(member), member, source="admin_link"
    )


@link_group.command(name="upgrade", description="Raise a link to verified confidence (Admin only, logged)")
@app_commands.describe(member="Discord member", steam_id="SteamID64 of the link", reason="Why this link is trusted")
@admin_only()
async def link_upgrade(interaction: discord.Interaction, member: discord.Member, steam_id: str, reason: str) -> None:
    await interaction.response.defer(ephemeral=True)
    services = interaction.client.services
    try:
        await services.links.upgrade_confidence(
            member.id, steam_id.strip(), actor=Actor.from_discord(interaction.user), reason=reason
        )
    except RosterError as e:
        await interaction.followup.send(str(e), ephemeral=True)
        return
    outcome = await services.role_sync.sync_user_role(
        member.id, services.role_groups.highest_member_group(member), member, source="confidence_upgrade"
    )
    await interaction.followup.send(
        f"{member.mention}'s link to `{steam_id}` is now verified. Role sync: {outcome.action}.", ephemeral=True
    )


@link_group.command(name="remove", description="Unlink a member and revoke all their whitelist access (Admin only)")
@app_commands.describe(
    member="Discord member",
    reason="Why the link is removed (logged)",
    remove_roles="Also remove award and Squad group roles",
)
@admin_only()
async def link_remove(
    interaction: discord.Interaction, member: discord.Member, reason: str, remove_roles: bool = False
) -> None:
    await interaction.response.defer(ephemeral=True)
    try:
        result = await interaction.client.services.grant_flow.admin_unlink(
            member.id,
            reason=reason,
            actor=Actor.from_discord(interaction.user),
            member=member,
            remove_roles=remove_roles,
        )
    except RosterError as e:
        await interaction.followup.send(str(e), ephemeral=True)
        return
    lines = [
        f"Unlinked {member.mention} from {', '.join(f'`{s}`' for s in result.steam_ids)} "
        f"and revoked {result.revoked} whitelist entr{'y' if result.revoked == 1 else 'ies'}."
    ]
    if result.roles_removed:
        lines.append(f"Removed roles: {', '.join(result.roles_removed)}")
    lines.extend(f"⚠️ {w}" for w in result.warnings)
    await interaction.followup.send("\n".join(lines), ephemeral=True)


@link_group.command(name="info", description="Show a member's linked accounts")
@staff_or_higher()
async def link_info(interaction: discord.Interaction, member: discord.Member) -> None:
    await interaction.response.defer(ephemeral=True)
    links = await interaction.client.services.links.find_by_discord_id(member.id)
    await interaction.followup.send(embed=build_links_embed(links, member.display_name), ephemeral=True)


@link_group.command(name="lookup", description="Find which Discord users a Steam ID is linked to")
@staff_or_higher()
async def link_lookup(interaction: discord.Interaction, steam_id: str) -> None:
    await interaction.response.defer(ephemeral=True)
    links = await interaction.client.services.links.find_by_steam_id(steam_id.strip())
    if not links:
        await interaction.followup.send(f"`{steam_id}` is not linked to anyone.", ephemeral=True)
        return
    lines = [
        f"<@{link.discord_user_id}> {'(primary) ' if link.is_primary else ''}"
        f"{link.link_source}, confidence {link.confidence_score:.1f}"
        for link in links
    ]
    await interaction.followup.send("\n".join(lines), ephemeral=True)

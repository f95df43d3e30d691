"""Whitelist cog - /whitelist-info and the /whitelist staff group."""
from __future__ import annotations

import logging

import discord
from discord import app_commands

from bot.checks import admin_only, is_staff, staff_or_higher
from bot.errors import RosterError
from bot.services.audit import Actor
from bot.services.discord_embeds import (
    build_grant_embed,
    build_history_embed,
    build_staff_audit_embed,
    build_sync_outcome_embed,
    build_sync_report_embed,
    build_unlinked_staff_embed,
    build_whitelist_status_embed,
)
from bot.services.steam_id import require_steam_id
from bot.services.whitelist_import import WhitelistImporter

logger = logging.getLogger("roster.cogs.whitelist")

REASON_CHOICES = [
    app_commands.Choice(name="Service member (6 months)", value="service-member"),
    app_commands.Choice(name="First responder (6 months)", value="first-responder"),
    app_commands.Choice(name="Donator", value="donator"),
    app_commands.Choice(name="Reporting", value="reporting"),
]
DURATION_TYPE_CHOICES = [
    app_commands.Choice(name="Days", value="days"),
    app_commands.Choice(name="Months", value="months"),
]


@app_commands.command(name="whitelist-info", description="Show whitelist status for you or another member")
@app_commands.describe(
    member="Member to check (staff only, defaults to you)",
    steam_id="SteamID64 to check (staff only)",
)
async def whitelist_info(
    interaction: discord.Interaction, member: discord.Member | None = None, steam_id: str | None = None
) -> None:
    await interaction.response.defer(ephemeral=True)
    looks_up_other = steam_id is not None or (member is not None and member.id != interaction.user.id)
    if looks_up_other and not await is_staff(interaction):
        await interaction.followup.send("Only staff can check another member or a Steam ID.", ephemeral=True)
        return
    services = interaction.client.services
    target = member or interaction.user
    if steam_id is not None:
        try:
            steam_id = require_steam_id(steam_id)
        except RosterError as e:
            await interaction.followup.send(str(e), ephemeral=True)
            return
    if steam_id is not None and member is None:
        owner = await services.links.find_primary_by_steam_id(steam_id)
        if owner is None:
            status = await services.grants.get_active_whitelist_for_user(steam_id)
            await interaction.followup.send(
                f"`{steam_id}` is not linked to a Discord account. Whitelist: {status.status}.", ephemeral=True
            )
            return
        target = interaction.guild.get_member(owner.discord_user_id) if interaction.guild else None
        status = await services.authority.get_whitelist_status(owner.discord_user_id, steam_id, member=target)
        name = target.display_name if target is not None else f"<@{owner.discord_user_id}>"
        await interaction.followup.send(embed=build_whitelist_status_embed(status, name), ephemeral=True)
        return
    status = await services.authority.get_whitelist_status(
        target.id, steam_id, member=target if isinstance(target, discord.Member) else None
    )
    await interaction.followup.send(
        embed=build_whitelist_status_embed(status, target.display_name), ephemeral=True
    )


whitelist_group = app_commands.Group(name="whitelist", description="Whitelist management (Staff)")


@whitelist_group.command(name="grant", description="Grant a whitelist entry")
@app_commands.describe(
    steam_id="SteamID64",
    reason="Grant category",
    member="Discord member to link and give the award role (optional)",
    duration="Length (leave empty for the category default or permanent)",
    duration_type="Days or months",
    note="Note stored with the entry",
)
@app_commands.choices(reason=REASON_CHOICES, duration_type=DURATION_TYPE_CHOICES)
@staff_or_higher()
async def grant(
    interaction: discord.Interaction,
    steam_id: str,
    reason: app_commands.Choice[str],
    member: discord.Member | None = None,
    duration: app_commands.Range[int, 1, 120] | None = None,
    duration_type: app_commands.Choice[str] | None = None,
    note: str | None = None,
) -> None:
    await interaction.response.defer(ephemeral=True)
    try:
        result = await interaction.client.services.grant_flow.grant(
            steam_id64=steam_id.strip(),
            reason=reason.value,
            actor=Actor.from_discord(interaction.user),
            member=member,
            duration_value=duration,
            duration_type=duration_type.value if duration_type else None,
            note=note,
        )
    except RosterError as e:
        await interaction.followup.send(str(e), ephemeral=True)
        return
    await interaction.followup.send(embed=build_grant_embed(result), ephemeral=True)


@whitelist_group.command(name="extend", description="Extend a whitelist by a number of months")
@app_commands.describe(steam_id="SteamID64", months="Months to add")
@staff_or_higher()
async def extend(interaction: discord.Interaction, steam_id: str, months: app_commands.Range[int, 1, 60]) -> None:
    await interaction.response.defer(ephemeral=True)
    actor = Actor.from_discord(interaction.user)
    try:
        entry = await interaction.client.services.grants.extend_whitelist(
            steam_id.strip(), months, actor.label, actor=actor
        )
    except RosterError as e:
        await interaction.followup.send(str(e), ephemeral=True)
        return
    status = await interaction.client.services.grants.get_active_whitelist_for_user(entry.steam_id64)
    await interaction.followup.send(
        f"Extended `{entry.steam_id64}` by {months} month(s). Status: {status.status}.", ephemeral=True
    )


@whitelist_group.command(name="revoke", description="Revoke every active whitelist entry for a Steam ID")
@app_commands.describe(steam_id="SteamID64", reason="Reason", member="Member whose award roles to remove (optional)")
@staff_or_higher()
async def revoke(
    interaction: discord.Interaction, steam_id: str, reason: str, member: discord.Member | None = None
) -> None:
    await interaction.response.defer(ephemeral=True)
    try:
        result = await interaction.client.services.grant_flow.revoke(
            steam_id64=steam_id.strip(), reason=reason, actor=Actor.from_discord(interaction.user), member=member
        )
    except RosterError as e:
        await interaction.followup.send(str(e), ephemeral=True)
        return
    if result.revoked == 0:
        await interaction.followup.send(f"`{steam_id}` has no active whitelist entries. Nothing changed.", ephemeral=True)
        return
    lines = [f"Revoked {result.revoked} entr{'y' if result.revoked == 1 else 'ies'} for `{steam_id}`."]
    if result.roles_removed:
        lines.append(f"Removed roles: {', '.join(result.roles_removed)}")
    lines.extend(f"⚠️ {w}" for w in result.warnings)
    await interaction.followup.send("\n".join(lines), ephemeral=True)


@whitelist_group.command(name="history", description="Show every whitelist entry for a Steam ID")
@staff_or_higher()
async def history(interaction: discord.Interaction, steam_id: str) -> None:
    await interaction.response.defer(ephemeral=True)
    entries = await interaction.client.services.grants.history(steam_id.strip())
    await interaction.followup.send(embed=build_history_embed(steam_id.strip(), entries), ephemeral=True)


@whitelist_group.command(name="sync", description="Reconcile role-based whitelist entries with Discord roles")
@app_commands.describe(dry_run="Only report what would change")
@admin_only()
async def sync(interaction: discord.Interaction, dry_run: bool = True) -> None:
    if not interaction.guild_id:
        await interaction.response.send_message("Run this in a server.", ephemeral=True)
        return
    await interaction.response.defer(ephemeral=True)
    try:
        report = await interaction.client.services.role_sync.bulk_sync_guild(interaction.guild_id, dry_run=dry_run)
    except RosterError as e:
        await interaction.followup.send(str(e), ephemeral=True)
        return
    await interaction.followup.send(embed=build_sync_report_embed(report), ephemeral=True)


@whitelist_group.command(name="sync-user", description="Reconcile one member's role-based whitelist entry")
@staff_or_higher()
async def sync_user(interaction: discord.Interaction, member: discord.Member) -> None:
    await interaction.response.defer(ephemeral=True)
    services = interaction.client.services
    outcome = await services.role_sync.sync_user_role(
        member.id, services.role_groups.highest_member_group(member), member, source="manual"
    )
    await interaction.followup.send(embed=build_sync_outcome_embed(outcome), ephemeral=True)


@whitelist_group.command(name="import", description="Import whitelist entries from BattleMetrics (Admin only)")
@app_commands.describe(dry_run="Only report what would be imported", include_expired="Also import expired entries")
@admin_only()
async def import_cmd(interaction: discord.Interaction, dry_run: bool = True, include_expired: bool = False) -> None:
    await interaction.response.defer(ephemeral=True)
    services = interaction.client.services
    if services.battlemetrics is None:
        await interaction.followup.send("BattleMetrics is not configured (BATTLEMETRICS_TOKEN).", ephemeral=True)
        return
    importer = WhitelistImporter(services.battlemetrics, services.grants, services.audit)
    try:
        report = await importer.import_whitelists(
            actor=Actor.from_discord(interaction.user), dry_run=dry_run, include_expired=include_expired
        )
    except RosterError as e:
        await interaction.followup.send(f"Import failed: {e}", ephemeral=True)
        return
    by_reason = ", ".join(f"{reason}: {count}" for reason, count in report.by_reason.most_common()) or "none"
    await interaction.followup.send(
        f"{'Dry run: ' if dry_run else ''}{report.fetched} fetched, {report.imported} "
        f"{'would be ' if dry_run else ''}imported ({by_reason}), {report.already_imported} already imported, "
        f"{report.invalid} without a valid Steam ID, {report.expired} expired.",
        ephemeral=True,
    )


@whitelist_group.command(name="unlinked-staff", description="List staff members without a verified Steam link")
@staff_or_higher()
async def unlinked_staff(interaction: discord.Interaction) -> None:
    if not interaction.guild_id:
        await interaction.response.send_message("Run this in a server.", ephemeral=True)
        return
    await interaction.response.defer(ephemeral=True)
    try:
        staff = await interaction.client.services.staff_audit.unlinked_staff(interaction.guild_id)
    except RosterError as e:
        await interaction.followup.send(str(e), ephemeral=True)
        return
    await interaction.followup.send(embed=build_unlinked_staff_embed(staff), ephemeral=True)


@whitelist_group.command(name="audit", description="Check staff whitelist entries against verified links (Admin only)")
@admin_only()
async def audit(interaction: discord.Interaction) -> None:
    await interaction.response.defer(ephemeral=True)
    report = await interaction.client.services.staff_audit.audit_staff_entries()
    await interaction.followup.send(embed=build_staff_audit_embed(report), ephemeral=True)

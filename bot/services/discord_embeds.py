"""Shared Discord embed building for link and whitelist displays."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Iterable, Optional

import discord

from bot.models import PlayerDiscordLink, WhitelistEntry
from bot.services.authority import (
    NO_ACTIVE_GRANT,
    NO_STEAM_ACCOUNT_LINKED,
    SECURITY_BLOCKED,
    AuthorityStatus,
)
from bot.services.grant_flow import GrantFlowResult
from bot.services.link_store import Cooldown
from bot.services.role_sync import BulkSyncReport, SyncOutcome
from bot.services.staff_audit import LOW_CONFIDENCE, NO_LINK, OWNER_MISMATCH, StaffEntryAudit, UnlinkedStaff
from bot.services.verification import IssuedCode
from bot.services.whitelist_grants import entry_expiration, is_entry_active


def _ts(dt: Optional[datetime], style: str = "F") -> str:
    """Discord timestamp markup for a naive UTC datetime."""
    if dt is None:
        return "Never"
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return f"<t:{int(dt.timestamp())}:{style}>"


def confidence_label(score: float) -> str:
    if score >= 1.0:
        return f"{score:.1f} (verified)"
    if score >= 0.7:
        return f"{score:.1f} (admin linked)"
    if score >= 0.5:
        return f"{score:.1f} (whitelist linked)"
    return f"{score:.1f} (auto-detected)"


_GUIDANCE = {
    NO_STEAM_ACCOUNT_LINKED: "No Steam account is linked. Use `/linkid` and type the code in game chat.",
    SECURITY_BLOCKED: (
        "Your staff role needs a verified link (confidence 1.0). "
        "Use `/linkid` and type the code in game chat to verify."
    ),
    NO_ACTIVE_GRANT: "No active whitelist. Ask staff about donating or applying.",
}


def build_whitelist_status_embed(status: AuthorityStatus, display_name: str) -> discord.Embed:
    """Effective whitelist status with guidance per denial reason."""
    if status.is_whitelisted:
        embed = discord.Embed(title=f"✅ {display_name} is whitelisted", color=discord.Color.green())
    else:
        embed = discord.Embed(
            title=f"❌ {display_name} is not whitelisted",
            description=_GUIDANCE.get(status.reason, ""),
            color=discord.Color.red(),
        )
    embed.add_field(name="Steam ID", value=status.steam_id64 or "Not linked", inline=True)
    if status.link is not None:
        embed.add_field(name="Link confidence", value=confidence_label(status.link.confidence_score), inline=True)
    if status.primary_source:
        embed.add_field(name="Source", value=status.primary_source.capitalize(), inline=True)
    if status.is_whitelisted:
        embed.add_field(
            name="Expires",
            value="Permanent" if status.is_permanent else _ts(status.expiration),
            inline=True,
        )
    if status.role.held_group:
        role_value = status.role.held_group
        if status.role.blocked:
            role_value += f" (blocked: {status.actual_confidence:.1f} < {status.required_confidence:.1f})"
            if status.role.group:
                role_value += f", whitelisted as {status.role.group}"
        embed.add_field(name="Role group", value=role_value, inline=False)
    if status.database is not None and status.database.active_entries:
        reasons = sorted({e.reason for e in status.database.active_entries})
        embed.add_field(name="Active grants", value=", ".join(reasons), inline=False)
    return embed


def build_links_embed(links: list[PlayerDiscordLink], display_name: str) -> discord.Embed:
    embed = discord.Embed(title=f"Linked accounts for {display_name}", color=discord.Color.blue())
    if not links:
        embed.description = "No linked Steam accounts."
        return embed
    for link in links:
        label = f"{'⭐ ' if link.is_primary else ''}{link.steam_id64}"
        embed.add_field(
            name=label,
            value=(
                f"**Name:** {link.username or 'Unknown'}\n"
                f"**Source:** {link.link_source}\n"
                f"**Confidence:** {confidence_label(link.confidence_score)}\n"
                f"**Linked:** {_ts(link.created_at, 'R')}"
            ),
            inline=False,
        )
    return embed


def build_verification_embed(issued: IssuedCode, cooldown: Optional[Cooldown] = None) -> discord.Embed:
    embed = discord.Embed(
        title="🔗 Link your Steam account",
        description=(
            f"Type this code in **in-game chat** on any of our servers:\n\n"
            f"# `{issued.code}`\n\n"
            f"The code expires {_ts(issued.expires_at, 'R')}."
        ),
        color=discord.Color.blurple(),
    )
    if cooldown is not None:
        embed.add_field(
            name="Relink cooldown",
            value=(
                f"You unlinked recently. Until {_ts(cooldown.ends_at, 'D')} only "
                + ", ".join(f"`{s}`" for s in cooldown.steam_ids)
                + " can be linked again."
            ),
            inline=False,
        )
    embed.set_footer(text="This message updates when the code is used.")
    return embed


def build_verified_embed(steam_id64: str, username: Optional[str]) -> discord.Embed:
    embed = discord.Embed(
        title="✅ Account linked",
        description=f"Your Discord account is now verified with **{username or steam_id64}**.",
        color=discord.Color.green(),
    )
    embed.add_field(name="Steam ID", value=steam_id64, inline=True)
    embed.add_field(name="Confidence", value=confidence_label(1.0), inline=True)
    return embed


def build_grant_embed(result: GrantFlowResult) -> discord.Embed:
    entry = result.entry
    duration = "Permanent" if entry.duration_value is None else f"{entry.duration_value} {entry.duration_type}"
    embed = discord.Embed(
        title="⚠️ Whitelist granted with warnings" if result.partial else "✅ Whitelist granted",
        color=discord.Color.orange() if result.partial else discord.Color.green(),
    )
    embed.add_field(name="Steam ID", value=entry.steam_id64, inline=True)
    embed.add_field(name="Reason", value=entry.reason, inline=True)
    embed.add_field(name="Duration", value=duration, inline=True)
    if entry.discord_user_id:
        embed.add_field(name="Discord", value=f"<@{entry.discord_user_id}>", inline=True)
    if result.link_created:
        embed.add_field(name="Link", value="Created (whitelist linked, 0.5)", inline=True)
    if result.warnings:
        embed.add_field(name="Warnings", value="\n".join(f"• {w}" for w in result.warnings)[:1024], inline=False)
    return embed


def build_history_embed(steam_id64: str, entries: Iterable[WhitelistEntry]) -> discord.Embed:
    embed = discord.Embed(title=f"Whitelist history for {steam_id64}", color=discord.Color.blue())
    lines = []
    for entry in list(entries)[:15]:
        if entry.revoked:
            state = f"revoked {_ts(entry.revoked_at, 'd')}"
        elif is_entry_active(entry):
            expires = entry_expiration(entry)
            state = "permanent" if expires is None else f"until {_ts(expires, 'd')}"
            if entry.starts_at is not None:
                state += f" (starts {_ts(entry.starts_at, 'd')})"
        else:
            state = "expired"
        lines.append(f"`#{entry.id}` **{entry.reason}** ({entry.source}) {_ts(entry.granted_at, 'd')}: {state}")
    embed.description = "\n".join(lines) or "No entries."
    return embed


def build_sync_outcome_embed(outcome: SyncOutcome) -> discord.Embed:
    embed = discord.Embed(
        title=f"Role sync: {outcome.action}",
        color=discord.Color.red() if not outcome.success else discord.Color.blue(),
    )
    embed.add_field(name="User", value=f"<@{outcome.discord_user_id}>", inline=True)
    embed.add_field(name="Group", value=outcome.group or "None", inline=True)
    if outcome.steam_id64:
        embed.add_field(name="Steam ID", value=outcome.steam_id64, inline=True)
    if outcome.reason:
        embed.add_field(name="Note", value=outcome.reason, inline=False)
    if outcome.error:
        embed.add_field(name="Error", value=outcome.error[:1024], inline=False)
    return embed


def build_sync_report_embed(report: BulkSyncReport) -> discord.Embed:
    embed = discord.Embed(
        title="Role sync (dry run)" if report.dry_run else "Role sync complete",
        color=discord.Color.orange() if report.failed else discord.Color.green(),
    )
    embed.add_field(name="Processed", value=str(report.processed), inline=True)
    embed.add_field(name="Granted", value=str(report.granted), inline=True)
    embed.add_field(name="Updated", value=str(report.updated), inline=True)
    embed.add_field(name="Revoked", value=str(report.revoked), inline=True)
    embed.add_field(name="Unchanged", value=str(report.unchanged), inline=True)
    embed.add_field(name="Failed", value=str(report.failed), inline=True)
    embed.add_field(
        name="Attention",
        value=(
            f"{report.blocked} blocked for low link confidence\n"
            f"{report.without_links} without a Steam link ({report.staff_without_links} staff)"
        ),
        inline=False,
    )
    return embed


def build_unlinked_staff_embed(staff: list[UnlinkedStaff]) -> discord.Embed:
    if not staff:
        return discord.Embed(
            title="✅ All staff linked",
            description="Every staff member has a verified Steam link.",
            color=discord.Color.green(),
        )
    embed = discord.Embed(
        title="🔗 Staff without a verified link",
        description=(
            f"{len(staff)} staff member{'s' if len(staff) != 1 else ''} need a link at confidence 1.0. "
            "They can run `/linkid` and type the code in game chat."
        ),
        color=discord.Color.orange(),
    )
    by_group: dict[str, list[str]] = {}
    for s in staff:
        note = f" ({confidence_label(s.confidence)})" if s.link else " (no link)"
        by_group.setdefault(s.group, []).append(f"<@{s.discord_user_id}> {s.display_name}{note}")
    for group, lines in by_group.items():
        embed.add_field(name=f"{group} ({len(lines)})", value="\n".join(lines)[:1024], inline=False)
    return embed


_ISSUE_LABELS = {
    NO_LINK: "no link for this Steam ID",
    LOW_CONFIDENCE: "link not verified",
    OWNER_MISMATCH: "Steam ID linked to a different Discord user",
}


def build_staff_audit_embed(report: StaffEntryAudit) -> discord.Embed:
    embed = discord.Embed(
        title="🔍 Staff whitelist audit",
        description=f"Audited {report.audited} active staff entries: {report.secure} secure, {len(report.issues)} issues.",
        color=discord.Color.red() if report.issues else discord.Color.green(),
    )
    lines = []
    for issue in report.issues[:20]:
        owner = f"<@{issue.entry.discord_user_id}>" if issue.entry.discord_user_id else "Unknown"
        line = f"`#{issue.entry.id}` {owner} `{issue.entry.steam_id64}` {issue.entry.group_name or issue.entry.reason}: "
        line += _ISSUE_LABELS.get(issue.kind, issue.kind)
        if issue.link is not None:
            line += f" ({issue.link.link_source}, {issue.link.confidence_score:.1f})"
        lines.append(line)
    if len(report.issues) > 20:
        lines.append(f"... and {len(report.issues) - 20} more")
    if lines:
        embed.add_field(name="Issues", value="\n".join(lines)[:1024], inline=False)
        embed.add_field(
            name="Fixes",
            value=(
                "`/link upgrade` for links checked by hand\n"
                "`/link remove` then `/link add` for wrong Steam IDs\n"
                "`/whitelist sync-user` to re-evaluate a member"
            ),
            inline=False,
        )
    if report.by_source:
        embed.add_field(
            name="By source",
            value="\n".join(f"{source}: {count}" for source, count in report.by_source.most_common()),
            inline=True,
        )
    return embed

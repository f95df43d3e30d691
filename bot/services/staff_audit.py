"""Staff link health checks.

Two read-only reports for admins: staff members whose Discord roles would
give them admin access but who lack a verified link, and active staff
whitelist entries whose Steam ID is not backed by a verified link of the
same Discord user.
"""
from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Optional

from bot.models import PlayerDiscordLink, WhitelistEntry
from bot.models.link import STAFF_REQUIRED_CONFIDENCE
from bot.services.link_store import LinkStore
from bot.services.role_groups import GROUPS_BY_NAME, RoleGroupMap
from bot.services.role_sync import RoleWhitelistSync
from bot.services.whitelist_grants import WhitelistGrantStore

logger = logging.getLogger("roster.staff_audit")

NO_LINK = "no_link"
LOW_CONFIDENCE = "low_confidence"
OWNER_MISMATCH = "owner_mismatch"


@dataclass
class UnlinkedStaff:
    discord_user_id: int
    display_name: str
    group: str
    link: Optional[PlayerDiscordLink] = None  # set when a link exists but is not verified

    @property
    def confidence(self) -> float:
        return self.link.confidence_score if self.link else 0.0


@dataclass
class EntryIssue:
    entry: WhitelistEntry
    kind: str
    link: Optional[PlayerDiscordLink] = None


@dataclass
class StaffEntryAudit:
    audited: int = 0
    secure: int = 0
    issues: list[EntryIssue] = field(default_factory=list)
    by_source: Counter = field(default_factory=Counter)

    @property
    def by_kind(self) -> Counter:
        return Counter(issue.kind for issue in self.issues)


class StaffAuditService:
    def __init__(
        self,
        link_store: LinkStore,
        grants: WhitelistGrantStore,
        role_groups: RoleGroupMap,
        role_sync: RoleWhitelistSync,
    ):
        self._links = link_store
        self._grants = grants
        self._role_groups = role_groups
        self._role_sync = role_sync

    async def unlinked_staff(self, guild_id: int) -> list[UnlinkedStaff]:
        """Members holding a staff group without a link at the staff confidence, highest group first."""
        found = []
        for member in await self._role_sync.guild_members(guild_id):
            if getattr(member, "bot", False):
                continue
            group = self._role_groups.highest_member_group(member)
            if group is None or not group.staff:
                continue
            link = await self._links.find_primary_by_discord_id(member.id)
            if link is not None and link.confidence_score >= STAFF_REQUIRED_CONFIDENCE:
                continue
            found.append(
                UnlinkedStaff(
                    discord_user_id=member.id,
                    display_name=getattr(member, "display_name", None) or str(member),
                    group=group.name,
                    link=link,
                )
            )
        found.sort(key=lambda s: (-GROUPS_BY_NAME[s.group].priority, s.display_name.lower()))
        logger.info("Guild %s has %d staff members without a verified link", guild_id, len(found))
        return found

    async def audit_staff_entries(self) -> StaffEntryAudit:
        """Check every active staff entry against the primary link of its Steam ID."""
        entries = [e for e in await self._grants.list_active_entries() if _is_staff_entry(e)]
        primaries = await self._links.find_primary_links_by_steam_id(e.steam_id64 for e in entries)
        report = StaffEntryAudit(audited=len(entries))
        for entry in entries:
            report.by_source[entry.source] += 1
            link = primaries.get(entry.steam_id64)
            if link is None:
                report.issues.append(EntryIssue(entry, NO_LINK))
            elif entry.discord_user_id is not None and link.discord_user_id != entry.discord_user_id:
                report.issues.append(EntryIssue(entry, OWNER_MISMATCH, link))
            elif link.confidence_score < STAFF_REQUIRED_CONFIDENCE:
                report.issues.append(EntryIssue(entry, LOW_CONFIDENCE, link))
            else:
                report.secure += 1
        if report.issues:
            logger.warning(
                "Staff whitelist audit: %d of %d entries need attention (%s)",
                len(report.issues), report.audited, dict(report.by_kind),
            )
        return report


def _is_staff_entry(entry: WhitelistEntry) -> bool:
    group = GROUPS_BY_NAME.get(entry.group_name or "")
    return entry.reason == "staff-role" or bool(group and group.staff)

"""Role-whitelist sync: keep role-based whitelist entries in line with Discord roles."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bot.errors import NotFoundError, ValidationError
from bot.models import WhitelistEntry
from bot.models.base import utcnow
from bot.models.link import STAFF_REQUIRED_CONFIDENCE
from bot.services.audit import SYSTEM, AuditService
from bot.services.link_store import LinkStore
from bot.services.role_groups import GROUPS_BY_NAME, MEMBER, RoleGroupMap, SquadGroup
from bot.services.whitelist_grants import WhitelistGrantStore, entry_snapshot

logger = logging.getLogger("roster.role_sync")

NO_STEAM_LINK = "no_steam_link"
SECURITY_BLOCKED = "security_blocked_insufficient_confidence"

GRANTED = "granted"
UPDATED = "updated"
REVOKED = "revoked"
UNCHANGED = "unchanged"
SKIPPED = "skipped"
FAILED = "failed"

ROLE_SYNC_ACTOR = "role-sync"


@dataclass(frozen=True)
class RoleChanged:
    """A member's tracked roles changed. Platform-independent."""

    discord_user_id: int
    guild_id: int
    added_roles: frozenset[int] = frozenset()
    removed_roles: frozenset[int] = frozenset()


@dataclass
class SyncOutcome:
    discord_user_id: int
    action: str
    group: Optional[str] = None
    reason: Optional[str] = None
    steam_id64: Optional[str] = None
    actual_confidence: Optional[float] = None
    required_confidence: Optional[float] = None
    fallback_group: Optional[str] = None
    writes: int = 0
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.action != FAILED and self.reason != SECURITY_BLOCKED


@dataclass
class BulkSyncReport:
    guild_id: int
    dry_run: bool
    processed: int = 0
    granted: int = 0
    updated: int = 0
    revoked: int = 0
    unchanged: int = 0
    blocked: int = 0
    without_links: int = 0
    staff_without_links: int = 0
    failed: int = 0
    writes: int = 0
    outcomes: list[SyncOutcome] = field(default_factory=list)

    def add(self, outcome: SyncOutcome, staff: bool = False) -> None:
        self.processed += 1
        self.writes += outcome.writes
        self.outcomes.append(outcome)
        if outcome.action == GRANTED:
            self.granted += 1
        elif outcome.action == UPDATED:
            self.updated += 1
        elif outcome.action == REVOKED:
            self.revoked += 1
        elif outcome.action == FAILED:
            self.failed += 1
        else:
            self.unchanged += 1
        if outcome.reason == SECURITY_BLOCKED:
            self.blocked += 1
        elif outcome.reason == NO_STEAM_LINK:
            self.without_links += 1
            if staff:
                self.staff_without_links += 1


Notifier = Callable[[SyncOutcome], Awaitable[None]]


class RoleWhitelistSync:
    """Creates, updates and revokes `source="role"` entries.

    Entries from other sources (donations, admin grants) are never touched.
    Each member is reconciled in its own transaction; a member whose state
    already matches produces no writes and no audit rows.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        link_store: LinkStore,
        grants: WhitelistGrantStore,
        role_groups: RoleGroupMap,
        audit: AuditService,
        *,
        client=None,
        batch_size: int = 50,
        batch_delay: float = 1.0,
        notifier: Optional[Notifier] = None,
    ):
        self._session_factory = session_factory
        self._links = link_store
        self._grants = grants
        self.role_groups = role_groups
        self._audit = audit
        self._client = client
        self.batch_size = batch_size
        self.batch_delay = batch_delay
        self.notifier = notifier
        self._in_flight: set[int] = set()

    async def handle_role_changed(self, event: RoleChanged, member) -> Optional[SyncOutcome]:
        """Sync after a role change. Ignores changes that touch no tracked role."""
        touched = set(event.added_roles) | set(event.removed_roles)
        if not touched & self.role_groups.tracked_role_ids:
            return None
        group = self.role_groups.highest_member_group(member)
        logger.info(
            "Tracked roles changed for %s (+%s -%s), syncing as %s",
            event.discord_user_id, sorted(event.added_roles), sorted(event.removed_roles),
            group.name if group else "no group",
        )
        return await self.sync_user_role(event.discord_user_id, group, member, source="role_change")

    async def sync_user_role(
        self,
        discord_user_id: int,
        group: SquadGroup | str | None,
        member=None,
        *,
        source: str = "manual",
        skip_notification: bool = False,
        dry_run: bool = False,
    ) -> SyncOutcome:
        group = self._resolve_group(group)
        if discord_user_id in self._in_flight:
            logger.debug("Sync already running for %s", discord_user_id)
            return SyncOutcome(discord_user_id, SKIPPED, group=group.name if group else None)
        self._in_flight.add(discord_user_id)
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    outcome = await self._reconcile(session, discord_user_id, group, member, source, dry_run)
        except Exception as e:
            logger.exception("Role sync failed for %s", discord_user_id)
            await self._audit.record_failure(
                "ROLE_SYNC_ERROR", e,
                actor=SYSTEM, target_type="discord_user", target_id=discord_user_id,
                guild_id=getattr(getattr(member, "guild", None), "id", None),
                metadata={"group": group.name if group else None, "source": source},
            )
            return SyncOutcome(discord_user_id, FAILED, group=group.name if group else None, error=str(e))
        finally:
            self._in_flight.discard(discord_user_id)

        if outcome.writes and not dry_run and not skip_notification and self.notifier is not None:
            try:
                await self.notifier(outcome)
            except Exception:
                logger.exception("Role sync notification failed for %s", discord_user_id)
        return outcome

    def _resolve_group(self, group: SquadGroup | str | None) -> Optional[SquadGroup]:
        if group is None or isinstance(group, SquadGroup):
            return group
        try:
            return GROUPS_BY_NAME[group]
        except KeyError:
            raise ValidationError(f"Unknown group: {group}") from None

    async def _reconcile(
        self,
        session: AsyncSession,
        discord_user_id: int,
        group: Optional[SquadGroup],
        member,
        source: str,
        dry_run: bool,
    ) -> SyncOutcome:
        link = await self._links.find_primary_by_discord_id(discord_user_id, session=session)
        result = await session.execute(
            select(WhitelistEntry).where(
                WhitelistEntry.discord_user_id == discord_user_id,
                WhitelistEntry.source == "role",
                WhitelistEntry.revoked.is_(False),
            )
        )
        role_entries = list(result.scalars().all())
        outcome = SyncOutcome(discord_user_id, UNCHANGED, group=group.name if group else None)

        target = group
        if group is not None and link is None:
            outcome.reason = NO_STEAM_LINK
            target = None
            if group.staff:
                logger.warning("Staff member %s holds %s but has no linked Steam account", discord_user_id, group.name)
        elif group is not None and group.staff and link.confidence_score < STAFF_REQUIRED_CONFIDENCE:
            outcome.reason = SECURITY_BLOCKED
            outcome.actual_confidence = link.confidence_score
            outcome.required_confidence = STAFF_REQUIRED_CONFIDENCE
            target = None
            if member is not None and MEMBER in self.role_groups.member_groups(member):
                target = MEMBER
                outcome.fallback_group = MEMBER.name
            logger.warning(
                "Blocked %s access for %s: link confidence %.1f < %.1f",
                group.name, discord_user_id, link.confidence_score, STAFF_REQUIRED_CONFIDENCE,
            )
        if link is not None:
            outcome.steam_id64 = link.steam_id64

        keep = None
        if target is not None:
            keep = next((e for e in role_entries if e.steam_id64 == link.steam_id64), None)
        stale = [e for e in role_entries if e is not keep]

        before = [entry_snapshot(e) for e in role_entries]
        revoke_reason = self._revoke_reason(group, outcome.reason)
        for entry in stale:
            outcome.writes += 1
            if not dry_run:
                self._grants.mark_revoked(entry, revoke_reason, ROLE_SYNC_ACTOR)
        if stale:
            outcome.action = REVOKED

        if target is not None and keep is None:
            outcome.writes += 1
            outcome.action = GRANTED
            if not dry_run:
                keep = WhitelistEntry(
                    steam_id64=link.steam_id64,
                    eos_id=link.eos_id,
                    username=link.username,
                    discord_user_id=discord_user_id,
                    discord_username=getattr(member, "name", None),
                    reason=target.reason,
                    source="role",
                    group_name=target.name,
                    granted_at=utcnow(),
                    granted_by=ROLE_SYNC_ACTOR,
                    metadata_={"sync_source": source, "link_confidence": link.confidence_score},
                )
                session.add(keep)
        elif target is not None and (keep.group_name != target.name or keep.reason != target.reason):
            outcome.writes += 1
            outcome.action = UPDATED
            if not dry_run:
                keep.group_name = target.name
                keep.reason = target.reason
                keep.metadata_ = {**(keep.metadata_ or {}), "sync_source": source, "updated_at": utcnow().isoformat()}

        if outcome.writes and not dry_run:
            await session.flush()
            self._audit.add(
                session, "ROLE_SYNC",
                actor=SYSTEM, target_type="discord_user", target_id=discord_user_id,
                target_name=getattr(member, "name", None),
                guild_id=getattr(getattr(member, "guild", None), "id", None),
                description=f"{outcome.action}: {target.name if target else 'no group'}",
                before={"entries": before},
                after={"entries": [entry_snapshot(keep)] if keep is not None and target is not None else []},
                metadata={"source": source, "reason": outcome.reason},
                severity="warning" if outcome.reason == SECURITY_BLOCKED else "info",
            )
        return outcome

    @staticmethod
    def _revoke_reason(group: Optional[SquadGroup], reason: Optional[str]) -> str:
        if reason == SECURITY_BLOCKED:
            return "Link confidence too low for staff access"
        if reason == NO_STEAM_LINK:
            return "No linked Steam account"
        if group is None:
            return "Tracked role removed"
        return "Superseded by role change"

    async def _role_entry_user_ids(self) -> set[int]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(WhitelistEntry.discord_user_id).where(
                    WhitelistEntry.source == "role",
                    WhitelistEntry.revoked.is_(False),
                    WhitelistEntry.discord_user_id.is_not(None),
                )
            )
            return set(result.scalars().all())

    async def guild_members(self, guild_id: int) -> list:
        if self._client is None:
            raise NotFoundError("No Discord client available for guild sync")
        guild = self._client.get_guild(guild_id)
        if guild is None:
            raise NotFoundError(f"Guild {guild_id} not found")
        if getattr(guild, "chunked", False):
            return list(guild.members)
        return [m async for m in guild.fetch_members(limit=None)]

    async def bulk_sync_guild(
        self, guild_id: int, *, dry_run: bool = False, batch_size: Optional[int] = None
    ) -> BulkSyncReport:
        """Reconcile every member of the guild.

        Members are handled in batches with a pause between batches. Members
        who hold no tracked role are only touched if they still have a role
        entry, and role entries of people who left the guild are revoked.
        """
        batch_size = batch_size or self.batch_size
        report = BulkSyncReport(guild_id=guild_id, dry_run=dry_run)
        members = [m for m in await self.guild_members(guild_id) if not getattr(m, "bot", False)]
        holders = await self._role_entry_user_ids()
        seen: set[int] = set()
        logger.info(
            "Bulk role sync of guild %s: %d members, batch size %d%s",
            guild_id, len(members), batch_size, " (dry run)" if dry_run else "",
        )

        for start in range(0, len(members), batch_size):
            if start:
                await asyncio.sleep(self.batch_delay)
            for member in members[start:start + batch_size]:
                seen.add(member.id)
                group = self.role_groups.highest_member_group(member)
                if group is None and member.id not in holders:
                    continue
                outcome = await self.sync_user_role(
                    member.id, group, member, source="bulk_sync", skip_notification=True, dry_run=dry_run
                )
                report.add(outcome, staff=bool(group and group.staff))

        for discord_user_id in sorted(holders - seen):
            outcome = await self.sync_user_role(
                discord_user_id, None, None, source="bulk_sync_departed", skip_notification=True, dry_run=dry_run
            )
            report.add(outcome)

        logger.info(
            "Bulk role sync of guild %s done: %d processed, %d writes, %d blocked, %d failed",
            guild_id, report.processed, report.writes, report.blocked, report.failed,
        )
        if not dry_run and report.writes:
            await self._audit.record(
                "ROLE_SYNC_BULK",
                actor=SYSTEM, target_type="guild", target_id=guild_id, guild_id=guild_id,
                description=f"Bulk role sync: {report.writes} changes",
                after={
                    "processed": report.processed,
                    "granted": report.granted,
                    "updated": report.updated,
                    "revoked": report.revoked,
                    "blocked": report.blocked,
                    "failed": report.failed,
                },
            )
        return report


"""Wires the services together. The bot and the web API each build one."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bot.services.audit import AuditService
from bot.services.authority import WhitelistAuthority
from bot.services.battlemetrics import BattleMetricsClient
from bot.services.donations import DonationService
from bot.services.grant_flow import WhitelistGrantFlow
from bot.services.link_store import LinkStore
from bot.services.role_groups import RoleGroupMap
from bot.services.role_sync import RoleWhitelistSync
from bot.services.squadjs import ChatLinkingService
from bot.services.staff_audit import StaffAuditService
from bot.services.verification import VerificationService
from bot.services.whitelist_grants import WhitelistGrantStore
from config import Settings


@dataclass
class Services:
    settings: Settings
    audit: AuditService
    links: LinkStore
    verification: VerificationService
    grants: WhitelistGrantStore
    role_groups: RoleGroupMap
    role_sync: RoleWhitelistSync
    authority: WhitelistAuthority
    grant_flow: WhitelistGrantFlow
    donations: DonationService
    chat_linking: ChatLinkingService
    staff_audit: StaffAuditService
    battlemetrics: Optional[BattleMetricsClient] = None

    async def close(self) -> None:
        if self.battlemetrics is not None:
            await self.battlemetrics.close()


def build_services(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    *,
    client=None,
    username_resolver=None,
    battlemetrics: Optional[BattleMetricsClient] = None,
) -> Services:
    audit = AuditService(session_factory)
    links = LinkStore(session_factory, audit, cooldown_days=settings.unlink_cooldown_days)
    grants = WhitelistGrantStore(session_factory, audit)
    verification = VerificationService(session_factory, links, audit, settings.verification)
    role_groups = RoleGroupMap(settings.groups)
    role_sync = RoleWhitelistSync(
        session_factory, links, grants, role_groups, audit,
        client=client,
        batch_size=settings.sync_batch_size,
        batch_delay=settings.sync_batch_delay_seconds,
    )
    if battlemetrics is None and settings.battlemetrics.token:
        battlemetrics = BattleMetricsClient(settings.battlemetrics)
    return Services(
        settings=settings,
        audit=audit,
        links=links,
        verification=verification,
        grants=grants,
        role_groups=role_groups,
        role_sync=role_sync,
        authority=WhitelistAuthority(links, grants, role_groups),
        grant_flow=WhitelistGrantFlow(
            session_factory, links, grants, audit, settings.award_roles,
            tracked_role_ids=role_groups.tracked_role_ids,
        ),
        donations=DonationService(grants, audit),
        chat_linking=ChatLinkingService(verification, grants, username_resolver),
        staff_audit=StaffAuditService(links, grants, role_groups, role_sync),
        battlemetrics=battlemetrics,
    )

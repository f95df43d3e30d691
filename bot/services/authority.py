"""Whitelist authority: one answer to "is this user whitelisted, and if not, why"."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from bot.models import PlayerDiscordLink
from bot.models.link import STAFF_REQUIRED_CONFIDENCE
from bot.services.link_store import LinkStore
from bot.services.role_groups import MEMBER, RoleGroupMap
from bot.services.whitelist_grants import WhitelistGrantStore, WhitelistStatus

logger = logging.getLogger("roster.authority")

NO_STEAM_ACCOUNT_LINKED = "no_steam_account_linked"
SECURITY_BLOCKED = "security_blocked_insufficient_confidence"
NO_ACTIVE_GRANT = "no_active_grant"


@dataclass
class RoleSignal:
    active: bool = False
    group: Optional[str] = None  # group the access is granted under
    held_group: Optional[str] = None  # highest tracked group held
    blocked: bool = False


@dataclass
class AuthorityStatus:
    discord_user_id: int
    is_whitelisted: bool
    steam_id64: Optional[str]
    link: Optional[PlayerDiscordLink]
    database: Optional[WhitelistStatus]
    role: RoleSignal
    primary_source: Optional[str] = None  # database, role
    reason: Optional[str] = None
    actual_confidence: Optional[float] = None
    required_confidence: Optional[float] = None
    expiration: Optional[datetime] = None
    is_permanent: bool = False


class WhitelistAuthority:
    """Read-side merge of database grants and role-derived access."""

    def __init__(self, link_store: LinkStore, grants: WhitelistGrantStore, role_groups: RoleGroupMap):
        self._links = link_store
        self._grants = grants
        self._role_groups = role_groups

    def role_signal(self, link: Optional[PlayerDiscordLink], member) -> RoleSignal:
        groups = self._role_groups.member_groups(member) if member is not None else []
        if not groups:
            return RoleSignal()
        highest = groups[0]
        signal = RoleSignal(held_group=highest.name)
        if link is None:
            return signal
        if highest.staff and link.confidence_score < STAFF_REQUIRED_CONFIDENCE:
            signal.blocked = True
            if MEMBER in groups:
                signal.active = True
                signal.group = MEMBER.name
            return signal
        signal.active = True
        signal.group = highest.name
        return signal

    async def get_whitelist_status(
        self, discord_user_id: int, steam_id64: Optional[str] = None, member=None
    ) -> AuthorityStatus:
        link = await self._links.find_primary_by_discord_id(discord_user_id)
        steam_id64 = steam_id64 or (link.steam_id64 if link else None)
        database = await self._grants.get_active_whitelist_for_user(steam_id64) if steam_id64 else None
        role = self.role_signal(link, member)

        db_active = bool(database and database.has_whitelist)
        status = AuthorityStatus(
            discord_user_id=discord_user_id,
            is_whitelisted=db_active or role.active,
            steam_id64=steam_id64,
            link=link,
            database=database,
            role=role,
            actual_confidence=link.confidence_score if link else None,
        )
        if role.blocked:
            status.required_confidence = STAFF_REQUIRED_CONFIDENCE

        if db_active:
            status.primary_source = "database"
            status.expiration = database.expiration
            status.is_permanent = database.is_permanent
        elif role.active:
            status.primary_source = "role"
            status.is_permanent = True
        elif link is None:
            status.reason = NO_STEAM_ACCOUNT_LINKED
        elif role.blocked:
            status.reason = SECURITY_BLOCKED
        else:
            status.reason = NO_ACTIVE_GRANT

        logger.debug(
            "Whitelist status for %s: %s (source=%s reason=%s)",
            discord_user_id, status.is_whitelisted, status.primary_source, status.reason,
        )
        return status

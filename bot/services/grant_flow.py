"""Admin whitelist grant, revoke and unlink flows.

One parameterized flow covers every grant command: it optionally creates a
whitelist-created link for the Discord user, inserts the entry and hands out
the award role for the reason. Link and role steps that fail are reported as
warnings on the result; the entry itself is never rolled back for them.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional

import discord
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bot.errors import ConflictError, RosterError, ValidationError
from bot.models import LinkSource, PlayerDiscordLink, WhitelistEntry
from bot.services.audit import Actor, AuditService
from bot.services.link_store import LinkStore
from bot.services.steam_id import require_steam_id
from bot.services.whitelist_grants import GrantParams, WhitelistGrantStore
from config import AwardRoleSettings

logger = logging.getLogger("roster.grants")

# Reasons with a fixed duration when the admin does not give one
DURATION_PRESETS = {
    "service-member": (6, "months"),
    "first-responder": (6, "months"),
}


@dataclass
class GrantFlowResult:
    entry: WhitelistEntry
    link: Optional[PlayerDiscordLink] = None
    link_created: bool = False
    role_assigned: bool = False
    warnings: list[str] = field(default_factory=list)

    @property
    def partial(self) -> bool:
        return bool(self.warnings)


@dataclass
class RevokeFlowResult:
    revoked: int
    roles_removed: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass
class AdminUnlinkResult:
    steam_ids: list[str]
    revoked: int
    roles_removed: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


class WhitelistGrantFlow:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        link_store: LinkStore,
        grants: WhitelistGrantStore,
        audit: AuditService,
        award_roles: Optional[AwardRoleSettings] = None,
        tracked_role_ids: Iterable[int] = (),
    ):
        self._session_factory = session_factory
        self._links = link_store
        self._grants = grants
        self._audit = audit
        self.award_roles = award_roles or AwardRoleSettings()
        self.tracked_role_ids = set(tracked_role_ids)

    async def grant(
        self,
        *,
        steam_id64: str,
        reason: str,
        actor: Actor,
        member=None,
        duration_value: Optional[int] = None,
        duration_type: Optional[str] = None,
        eos_id: Optional[str] = None,
        username: Optional[str] = None,
        note: Optional[str] = None,
        source: str = "manual",
        external_ref: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> GrantFlowResult:
        steam_id64 = require_steam_id(steam_id64)
        if duration_value is None and reason in DURATION_PRESETS:
            duration_value, duration_type = DURATION_PRESETS[reason]
        if duration_value is not None and duration_type is None:
            raise ValidationError("Give a duration type (days or months) with the duration")

        warnings: list[str] = []
        link = None
        link_created = False
        if member is not None:
            link, link_created = await self._ensure_link(member, steam_id64, eos_id, username, actor, warnings)

        entry = await self._grants.grant_whitelist(
            GrantParams(
                steam_id64=steam_id64,
                reason=reason,
                granted_by=actor.label,
                duration_value=duration_value,
                duration_type=duration_type,
                eos_id=eos_id,
                username=username,
                discord_user_id=member.id if member is not None else None,
                discord_username=getattr(member, "name", None),
                source=source,
                note=note,
                external_ref=external_ref,
                metadata=metadata,
            ),
            actor=actor,
        )

        role_assigned = False
        if member is not None:
            role_assigned = await self._assign_award_role(member, reason, actor, warnings)

        if warnings:
            logger.warning("Whitelist grant for %s partially applied: %s", steam_id64, "; ".join(warnings))
        return GrantFlowResult(
            entry=entry, link=link, link_created=link_created, role_assigned=role_assigned, warnings=warnings
        )

    async def _ensure_link(self, member, steam_id64, eos_id, username, actor, warnings):
        existing = await self._links.find_primary_by_discord_id(member.id)
        if existing is not None:
            if existing.steam_id64 != steam_id64:
                warnings.append(
                    f"{member} is already linked to {existing.steam_id64}; their link was left unchanged"
                )
            return existing, False
        try:
            result = await self._links.create_or_update_link(
                member.id,
                steam_id64,
                eos_id,
                username,
                link_source=LinkSource.WHITELIST_CREATED,
                metadata={"created_by": actor.label},
                actor=actor,
            )
        except ConflictError as e:
            warnings.append(f"Link not created: {e}")
            return None, False
        return result.link, result.created

    async def _assign_award_role(self, member, reason: str, actor: Actor, warnings: list[str]) -> bool:
        role_id = self.award_roles.for_reason(reason)
        if role_id is None:
            return False
        role = member.guild.get_role(role_id)
        if role is None:
            warnings.append(f"Award role {role_id} for {reason} was not found in the server")
            return False
        if role in member.roles:
            return True
        try:
            await member.add_roles(role, reason=f"Whitelist granted ({reason}) by {actor.label}")
        except discord.HTTPException as e:
            warnings.append(f"Whitelist granted, but assigning the {role.name} role failed: {e}")
            await self._audit.record_failure(
                "ROLE_ASSIGN", e,
                actor=actor, target_type="discord_user", target_id=member.id, target_name=str(member),
                metadata={"role_id": role_id, "reason": reason}, severity="warning",
            )
            return False
        return True

    async def revoke(self, *, steam_id64: str, reason: Optional[str], actor: Actor, member=None) -> RevokeFlowResult:
        """Revoke every active entry and strip award roles once nothing is left."""
        count = await self._grants.revoke_whitelist(steam_id64, reason, actor.label, actor=actor)
        result = RevokeFlowResult(revoked=count)
        if member is None or count == 0:
            return result
        status = await self._grants.get_active_whitelist_for_user(steam_id64)
        if status.has_whitelist:
            return result
        await self._remove_roles(member, self._award_role_ids(), f"Whitelist revoked by {actor.label}", result)
        return result

    def _award_role_ids(self) -> set[int]:
        return {
            r for r in (
                self.award_roles.service_member, self.award_roles.first_responder, self.award_roles.donator
            ) if r
        }

    async def _remove_roles(self, member, role_ids: set[int], reason: str, result) -> None:
        for role in [role for role in member.roles if role.id in role_ids]:
            try:
                await member.remove_roles(role, reason=reason)
                result.roles_removed.append(role.name)
            except discord.HTTPException as e:
                result.warnings.append(f"Removing the {role.name} role failed: {e}")

    async def admin_unlink(
        self,
        discord_user_id: int,
        *,
        reason: str,
        actor: Actor,
        member=None,
        remove_roles: bool = False,
    ) -> AdminUnlinkResult:
        """Delete every link of the user and revoke every whitelist entry tied to them.

        Both happen in one transaction. With `remove_roles`, award roles and
        tracked Squad group roles are stripped afterwards; failures there are
        warnings.
        """
        try:
            if not reason or not reason.strip():
                raise ValidationError("A reason is required for an admin unlink")
            async with self._session_factory() as session:
                async with session.begin():
                    unlinked = await self._links.unlink(
                        discord_user_id, f"Admin unlink: {reason}", actor=actor, session=session
                    )
                    revoked = await self._grants.revoke_for_discord_user(
                        discord_user_id, f"Admin unlink: {reason}", actor.label, actor=actor, session=session
                    )
        except RosterError as e:
            await self._audit.record_failure(
                "ADMIN_UNLINK", e,
                actor=actor, target_type="discord_user", target_id=discord_user_id, severity="warning",
            )
            raise
        result = AdminUnlinkResult(steam_ids=unlinked.steam_ids, revoked=revoked)
        logger.warning(
            "Admin unlink of %s by %s: %s unlinked, %d entries revoked (%s)",
            discord_user_id, actor.label, ", ".join(unlinked.steam_ids), revoked, reason,
        )
        if member is not None and remove_roles:
            await self._remove_roles(
                member,
                self._award_role_ids() | self.tracked_role_ids,
                f"Admin unlink by {actor.label}: {reason}",
                result,
            )
        return result

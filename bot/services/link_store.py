"""Link store: Discord user to Steam ID links with confidence and provenance."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bot.errors import ConflictError, LinkCooldownError, NotFoundError, RosterError, ValidationError
from bot.models import CONFIDENCE_BY_SOURCE, LinkSource, PlayerDiscordLink, UnlinkHistory
from bot.models.base import utcnow
from bot.services.audit import SYSTEM, Actor, AuditService
from bot.services.steam_id import require_steam_id

logger = logging.getLogger("roster.links")


@dataclass
class LinkResult:
    link: PlayerDiscordLink
    created: bool
    demoted: list[PlayerDiscordLink] = field(default_factory=list)


@dataclass
class UnlinkResult:
    steam_ids: list[str]
    cooldown_ends_at: datetime


@dataclass
class Cooldown:
    ends_at: datetime
    steam_ids: list[str]  # may still be relinked inside the window


def snapshot(link: PlayerDiscordLink) -> dict:
    """Auditable view of a link."""
    return {
        "steam_id64": link.steam_id64,
        "link_source": link.link_source,
        "confidence_score": link.confidence_score,
        "is_primary": link.is_primary,
    }


class LinkStore:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        audit: AuditService,
        cooldown_days: int = 30,
    ):
        self._session_factory = session_factory
        self._audit = audit
        self.cooldown_days = cooldown_days

    async def create_or_update_link(
        self,
        discord_user_id: int,
        steam_id64: str,
        eos_id: Optional[str] = None,
        username: Optional[str] = None,
        *,
        link_source: LinkSource | str,
        confidence_score: Optional[float] = None,
        is_primary: bool = True,
        metadata: Optional[dict] = None,
        actor: Actor = SYSTEM,
        session: Optional[AsyncSession] = None,
    ) -> LinkResult:
        """Upsert a link and demote the previous primary in the same transaction.

        Pass `session` to join a transaction the caller already opened; the
        caller then owns auditing of failures.
        """
        if session is not None:
            return await self._upsert(
                session, discord_user_id, steam_id64, eos_id, username,
                link_source, confidence_score, is_primary, metadata, actor,
            )
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    return await self._upsert(
                        session, discord_user_id, steam_id64, eos_id, username,
                        link_source, confidence_score, is_primary, metadata, actor,
                    )
        except RosterError as e:
            await self._audit.record_failure(
                "LINK_CREATED", e,
                actor=actor, target_type="discord_user", target_id=discord_user_id, target_name=username,
                metadata={"steam_id64": steam_id64, "link_source": str(getattr(link_source, "value", link_source))},
                severity="warning",
            )
            raise

    async def _upsert(
        self,
        session: AsyncSession,
        discord_user_id: int,
        steam_id64: str,
        eos_id: Optional[str],
        username: Optional[str],
        link_source: LinkSource | str,
        confidence_score: Optional[float],
        is_primary: bool,
        metadata: Optional[dict],
        actor: Actor,
    ) -> LinkResult:
        try:
            source = LinkSource(link_source)
        except ValueError:
            raise ValidationError(f"Unknown link source: {link_source}") from None
        confidence = CONFIDENCE_BY_SOURCE[source]
        if confidence_score is not None and abs(confidence_score - confidence) > 1e-9:
            raise ValidationError(
                f"Confidence for {source.value} links is {confidence}; "
                "use the admin upgrade to raise a link to 1.0"
            )
        steam_id64 = require_steam_id(steam_id64)

        if source != LinkSource.MANUAL_ADMIN:
            ends_at = await self._cooldown_end(session, discord_user_id, steam_id64)
            if ends_at is not None:
                raise LinkCooldownError(ends_at)

        await self._check_other_owners(session, discord_user_id, steam_id64, confidence, actor)

        result = await session.execute(
            select(PlayerDiscordLink)
            .where(PlayerDiscordLink.discord_user_id == discord_user_id)
            .with_for_update()
        )
        links = list(result.scalars().all())
        existing = next((link for link in links if link.steam_id64 == steam_id64), None)
        current_primary = next((link for link in links if link.is_primary), None)

        becomes_primary = is_primary and (
            current_primary is None
            or current_primary is existing
            or confidence >= current_primary.confidence_score
        )
        if is_primary and not becomes_primary:
            logger.info(
                "Keeping %s link %s as primary for %s over lower-confidence %s",
                current_primary.link_source, current_primary.steam_id64, discord_user_id, source.value,
            )

        demoted = []
        if becomes_primary and current_primary is not None and current_primary is not existing:
            before = snapshot(current_primary)
            current_primary.is_primary = False
            # Flush the demotion first so the one-primary index never sees two rows
            await session.flush()
            demoted.append(current_primary)
            self._audit.add(
                session, "LINK_DEMOTED",
                actor=actor, target_type="discord_user", target_id=discord_user_id,
                description=f"Primary link {current_primary.steam_id64} superseded by {steam_id64}",
                before=before, after=snapshot(current_primary),
            )

        try:
            if existing is None:
                link = PlayerDiscordLink(
                    discord_user_id=discord_user_id,
                    steam_id64=steam_id64,
                    eos_id=eos_id,
                    username=username,
                    link_source=source.value,
                    confidence_score=confidence,
                    is_primary=becomes_primary,
                    metadata_=dict(metadata or {}),
                )
                session.add(link)
                await session.flush()
                self._audit.add(
                    session, "LINK_CREATED",
                    actor=actor, target_type="discord_user", target_id=discord_user_id, target_name=username,
                    description=f"Linked {steam_id64} via {source.value}",
                    after=snapshot(link),
                )
                return LinkResult(link=link, created=True, demoted=demoted)

            before = snapshot(existing)
            if confidence >= existing.confidence_score:
                existing.link_source = source.value
                existing.confidence_score = confidence
            if becomes_primary:
                existing.is_primary = True
            if eos_id:
                existing.eos_id = eos_id
            if username:
                existing.username = username
            if metadata:
                existing.metadata_ = {**(existing.metadata_ or {}), **metadata}
            await session.flush()
        except IntegrityError as e:
            raise ConflictError(
                f"Discord user {discord_user_id} already has a primary link; it was not demoted"
            ) from e

        after = snapshot(existing)
        if after != before:
            self._audit.add(
                session, "LINK_UPDATED",
                actor=actor, target_type="discord_user", target_id=discord_user_id, target_name=username,
                description=f"Updated link {steam_id64} via {source.value}",
                before=before, after=after,
            )
        return LinkResult(link=existing, created=False, demoted=demoted)

    async def _check_other_owners(
        self, session: AsyncSession, discord_user_id: int, steam_id64: str, confidence: float, actor: Actor
    ) -> None:
        """A Steam ID is primary for one Discord user.

        Another user's primary is taken over by in-game proof (1.0) or by a
        strictly more trusted claim; anything else is a conflict.
        """
        result = await session.execute(
            select(PlayerDiscordLink).where(
                PlayerDiscordLink.steam_id64 == steam_id64,
                PlayerDiscordLink.discord_user_id != discord_user_id,
                PlayerDiscordLink.is_primary.is_(True),
            )
        )
        for other in result.scalars().all():
            if confidence < 1.0 and confidence <= other.confidence_score:
                raise ConflictError(
                    f"Steam ID {steam_id64} is already linked to another Discord account "
                    f"(confidence {other.confidence_score:.1f}). Verify in game with /linkid to claim it."
                )
            before = snapshot(other)
            other.is_primary = False
            self._audit.add(
                session, "LINK_DEMOTED",
                actor=actor, target_type="discord_user", target_id=other.discord_user_id,
                description=f"{steam_id64} claimed by Discord user {discord_user_id} at confidence {confidence:.1f}",
                before=before, after=snapshot(other), severity="warning",
            )
        await session.flush()

    async def _recent_unlinks(self, session: AsyncSession, discord_user_id: int) -> list[UnlinkHistory]:
        window_start = utcnow() - timedelta(days=self.cooldown_days)
        result = await session.execute(
            select(UnlinkHistory).where(
                UnlinkHistory.discord_user_id == discord_user_id,
                UnlinkHistory.unlinked_at >= window_start,
            )
        )
        return list(result.scalars().all())

    async def _cooldown_end(self, session: AsyncSession, discord_user_id: int, steam_id64: str) -> Optional[datetime]:
        recent = await self._recent_unlinks(session, discord_user_id)
        if not recent or steam_id64 in {row.steam_id64 for row in recent}:
            return None
        return max(row.unlinked_at for row in recent) + timedelta(days=self.cooldown_days)

    async def cooldown_for(self, discord_user_id: int) -> Optional[Cooldown]:
        """The user's relink window, or None when they may link any Steam ID."""
        async with self._session_factory() as session:
            recent = await self._recent_unlinks(session, discord_user_id)
        if not recent:
            return None
        return Cooldown(
            ends_at=max(row.unlinked_at for row in recent) + timedelta(days=self.cooldown_days),
            steam_ids=sorted({row.steam_id64 for row in recent}),
        )

    async def upgrade_confidence(
        self, discord_user_id: int, steam_id64: str, *, actor: Actor, reason: str
    ) -> PlayerDiscordLink:
        """Admin override raising a link to 1.0. The only path that bypasses the source table."""
        try:
            if not reason or not reason.strip():
                raise ValidationError("A reason is required to upgrade link confidence")
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(
                        select(PlayerDiscordLink).where(
                            PlayerDiscordLink.discord_user_id == discord_user_id,
                            PlayerDiscordLink.steam_id64 == steam_id64,
                        )
                    )
                    link = result.scalar_one_or_none()
                    if link is None:
                        raise NotFoundError(f"No link between <@{discord_user_id}> and {steam_id64}")
                    before = snapshot(link)
                    link.confidence_score = 1.0
                    link.metadata_ = {
                        **(link.metadata_ or {}),
                        "confidence_upgraded_by": actor.label,
                        "confidence_upgrade_reason": reason,
                        "confidence_upgraded_at": utcnow().isoformat(),
                    }
                    self._audit.add(
                        session, "CONFIDENCE_UPGRADE",
                        actor=actor, target_type="discord_user", target_id=discord_user_id,
                        description=f"Confidence raised to 1.0: {reason}",
                        before=before, after=snapshot(link), metadata={"reason": reason}, severity="warning",
                    )
        except RosterError as e:
            await self._audit.record_failure(
                "CONFIDENCE_UPGRADE", e,
                actor=actor, target_type="discord_user", target_id=discord_user_id,
                metadata={"steam_id64": steam_id64, "reason": reason}, severity="warning",
            )
            raise
        logger.warning("Link %s/%s upgraded to 1.0 by %s: %s", discord_user_id, steam_id64, actor.label, reason)
        return link

    async def unlink(
        self,
        discord_user_id: int,
        reason: Optional[str] = None,
        *,
        actor: Actor = SYSTEM,
        session: Optional[AsyncSession] = None,
    ) -> UnlinkResult:
        """Remove every link of the user and start the relink cooldown."""
        if session is not None:
            return await self._unlink(session, discord_user_id, reason, actor)
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    return await self._unlink(session, discord_user_id, reason, actor)
        except RosterError as e:
            await self._audit.record_failure(
                "LINK_REMOVED", e,
                actor=actor, target_type="discord_user", target_id=discord_user_id, severity="warning",
            )
            raise

    async def _unlink(
        self, session: AsyncSession, discord_user_id: int, reason: Optional[str], actor: Actor
    ) -> UnlinkResult:
        result = await session.execute(
            select(PlayerDiscordLink).where(PlayerDiscordLink.discord_user_id == discord_user_id)
        )
        links = list(result.scalars().all())
        if not links:
            raise NotFoundError("No linked Steam account to unlink.")
        now = utcnow()
        for link in links:
            session.add(
                UnlinkHistory(
                    discord_user_id=discord_user_id,
                    steam_id64=link.steam_id64,
                    eos_id=link.eos_id,
                    username=link.username,
                    reason=reason,
                    unlinked_at=now,
                )
            )
        await session.execute(
            delete(PlayerDiscordLink).where(PlayerDiscordLink.discord_user_id == discord_user_id)
        )
        self._audit.add(
            session, "LINK_REMOVED",
            actor=actor, target_type="discord_user", target_id=discord_user_id,
            description=reason or "Unlinked",
            before={"links": [snapshot(link) for link in links]},
        )
        return UnlinkResult(
            steam_ids=[link.steam_id64 for link in links],
            cooldown_ends_at=now + timedelta(days=self.cooldown_days),
        )

    async def find_primary_by_discord_id(
        self, discord_user_id: int, session: Optional[AsyncSession] = None
    ) -> Optional[PlayerDiscordLink]:
        stmt = select(PlayerDiscordLink).where(
            PlayerDiscordLink.discord_user_id == discord_user_id,
            PlayerDiscordLink.is_primary.is_(True),
        )
        if session is not None:
            return (await session.execute(stmt)).scalar_one_or_none()
        async with self._session_factory() as session:
            return (await session.execute(stmt)).scalar_one_or_none()

    async def find_by_discord_id(self, discord_user_id: int) -> list[PlayerDiscordLink]:
        """All links of a user, most trusted first."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(PlayerDiscordLink)
                .where(PlayerDiscordLink.discord_user_id == discord_user_id)
                .order_by(PlayerDiscordLink.confidence_score.desc(), PlayerDiscordLink.created_at.desc())
            )
            return list(result.scalars().all())

    async def find_by_steam_id(self, steam_id64: str) -> list[PlayerDiscordLink]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(PlayerDiscordLink)
                .where(PlayerDiscordLink.steam_id64 == steam_id64)
                .order_by(PlayerDiscordLink.is_primary.desc(), PlayerDiscordLink.confidence_score.desc())
            )
            return list(result.scalars().all())

    async def find_primary_by_steam_id(self, steam_id64: str) -> Optional[PlayerDiscordLink]:
        links = await self.find_primary_links_by_steam_id([steam_id64])
        return links.get(steam_id64)

    async def find_primary_links_by_steam_id(self, steam_ids) -> dict[str, PlayerDiscordLink]:
        """Primary link per Steam ID for a batch of IDs."""
        steam_ids = list(set(steam_ids))
        if not steam_ids:
            return {}
        async with self._session_factory() as session:
            result = await session.execute(
                select(PlayerDiscordLink)
                .where(PlayerDiscordLink.steam_id64.in_(steam_ids), PlayerDiscordLink.is_primary.is_(True))
                .order_by(PlayerDiscordLink.confidence_score.asc())
            )
            return {link.steam_id64: link for link in result.scalars().all()}

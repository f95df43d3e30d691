"""Verification codes: issue in Discord, redeem in game chat."""
from __future__ import annotations

import logging
import secrets
import string
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bot.errors import ConflictError, NotFoundOrExpired, RosterError, ValidationError
from bot.models import LinkSource, PlayerDiscordLink, VerificationCode
from bot.models.base import utcnow
from bot.services.audit import Actor, AuditService
from bot.services.link_store import LinkStore
from bot.services.steam_id import require_steam_id
from config import VerificationSettings

logger = logging.getLogger("roster.verification")

CODE_CHARSET = string.ascii_uppercase + string.digits
_MAX_ATTEMPTS = 10


@dataclass
class IssuedCode:
    code: str
    expires_at: datetime


@dataclass
class RedeemResult:
    discord_user_id: int
    link: PlayerDiscordLink
    created: bool


Notify = Callable[[RedeemResult], Awaitable[None]]


@dataclass
class PendingVerification:
    discord_user_id: int
    expires_at: datetime
    notify: Optional[Notify] = None


class VerificationService:
    """Issues and redeems codes.

    Also owns the in-memory map of codes waiting for a Discord-side
    notification, so the `/linkid` reply can be updated when the player types
    the code in game. That map is swept with the expired rows.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        link_store: LinkStore,
        audit: AuditService,
        settings: Optional[VerificationSettings] = None,
    ):
        self._session_factory = session_factory
        self._links = link_store
        self._audit = audit
        self.settings = settings or VerificationSettings()
        self._pending: dict[str, PendingVerification] = {}

    async def create_code(
        self, discord_user_id: int, length: Optional[int] = None, ttl_minutes: Optional[int] = None
    ) -> IssuedCode:
        """Issue a fresh code, replacing any the user already holds."""
        length = length or self.settings.code_length
        ttl_minutes = ttl_minutes or self.settings.ttl_minutes
        if not 4 <= length <= 10:
            raise ValidationError("Code length must be between 4 and 10")
        if ttl_minutes < 1:
            raise ValidationError("Code lifetime must be at least 1 minute")

        now = utcnow()
        expires_at = now + timedelta(minutes=ttl_minutes)
        async with self._session_factory() as session:
            async with session.begin():
                await session.execute(
                    delete(VerificationCode).where(VerificationCode.discord_user_id == discord_user_id)
                )
                for _ in range(_MAX_ATTEMPTS):
                    code = "".join(secrets.choice(CODE_CHARSET) for _ in range(length))
                    clash = await session.execute(select(VerificationCode).where(VerificationCode.code == code))
                    row = clash.scalar_one_or_none()
                    if row is None:
                        break
                    if row.expires_at <= now:
                        # An expired row still holds the unique slot until the sweep runs
                        await session.delete(row)
                        await session.flush()
                        break
                else:
                    raise ConflictError("Could not generate a unique verification code, try again")
                session.add(
                    VerificationCode(
                        code=code, discord_user_id=discord_user_id, created_at=now, expires_at=expires_at
                    )
                )
        logger.info("Issued verification code for %s (expires %s)", discord_user_id, expires_at)
        return IssuedCode(code=code, expires_at=expires_at)

    async def redeem(
        self,
        code: str,
        observed_steam_id: str,
        *,
        eos_id: Optional[str] = None,
        username: Optional[str] = None,
    ) -> RedeemResult:
        """Consume the code and link the observed Steam ID at confidence 1.0.

        The delete is conditional on the row still existing, so a second
        delivery of the same chat message finds nothing and fails with
        NotFoundOrExpired without touching the link. Every failed attempt is
        audited, so callers scanning free text should filter with
        `issued_codes` first.
        """
        code = (code or "").strip().upper()
        steam_id64 = observed_steam_id
        now = utcnow()
        discord_user_id = None
        try:
            steam_id64 = require_steam_id(observed_steam_id)
            async with self._session_factory() as session:
                async with session.begin():
                    row = (
                        await session.execute(select(VerificationCode).where(VerificationCode.code == code))
                    ).scalar_one_or_none()
                    if row is None or row.expires_at <= now:
                        raise NotFoundOrExpired("Verification code not found or expired")
                    discord_user_id = row.discord_user_id
                    consumed = await session.execute(
                        delete(VerificationCode).where(
                            VerificationCode.id == row.id, VerificationCode.expires_at > now
                        )
                    )
                    if consumed.rowcount != 1:
                        raise NotFoundOrExpired("Verification code not found or expired")
                    link_result = await self._links.create_or_update_link(
                        discord_user_id,
                        steam_id64,
                        eos_id,
                        username,
                        link_source=LinkSource.SELF_VERIFIED,
                        metadata={"verified_via": "in_game_code", "verified_at": now.isoformat()},
                        actor=Actor("user", str(discord_user_id), username),
                        session=session,
                    )
                    self._audit.add(
                        session, "VERIFICATION_REDEEMED",
                        actor=Actor("user", str(discord_user_id), username),
                        target_type="steam_id", target_id=steam_id64, target_name=username,
                        description="Account verified in game",
                    )
        except RosterError as e:
            logger.info("Redeeming code for %s failed: %s", discord_user_id or "unknown user", e)
            await self._audit.record_failure(
                "VERIFICATION_REDEEMED", e,
                actor=Actor("user", str(discord_user_id) if discord_user_id else None, username),
                target_type="steam_id", target_id=steam_id64, metadata={"code": code}, severity="warning",
            )
            raise

        result = RedeemResult(discord_user_id=discord_user_id, link=link_result.link, created=link_result.created)
        logger.info("Discord user %s verified Steam ID %s", discord_user_id, steam_id64)
        pending = self.pop_pending(code)
        if pending is not None and pending.notify is not None:
            try:
                await pending.notify(result)
            except Exception:
                logger.exception("Failed to notify %s about verification", discord_user_id)
        return result

    def register_pending(self, issued: IssuedCode, discord_user_id: int, notify: Optional[Notify] = None) -> None:
        self._pending[issued.code] = PendingVerification(discord_user_id, issued.expires_at, notify)

    def pop_pending(self, code: str) -> Optional[PendingVerification]:
        return self._pending.pop(code.strip().upper(), None)

    def pending_count(self) -> int:
        return len(self._pending)

    async def issued_codes(self, candidates) -> set[str]:
        """The subset of `candidates` that are outstanding codes, expired ones included."""
        candidates = {c.strip().upper() for c in candidates if c}
        if not candidates:
            return set()
        async with self._session_factory() as session:
            result = await session.execute(
                select(VerificationCode.code).where(VerificationCode.code.in_(candidates))
            )
            return set(result.scalars().all())

    async def sweep_expired(self) -> int:
        """Delete expired codes and forget expired pending notifications."""
        now = utcnow()
        for code in [c for c, p in self._pending.items() if p.expires_at <= now]:
            del self._pending[code]
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(delete(VerificationCode).where(VerificationCode.expires_at <= now))
        if result.rowcount:
            logger.info("Swept %d expired verification codes", result.rowcount)
        return result.rowcount or 0

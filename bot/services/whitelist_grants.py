"""Whitelist grant store: stacked, time-bounded grants keyed by Steam ID."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterable, Optional

from dateutil.relativedelta import relativedelta
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bot.errors import NotFoundError, RosterError, ValidationError
from bot.models import WhitelistEntry
from bot.models.base import utcnow
from bot.models.whitelist import DURATION_TYPES, REASONS, SOURCES
from bot.services.audit import Actor, AuditService
from bot.services.steam_id import require_steam_id

logger = logging.getLogger("roster.whitelist")


@dataclass
class GrantParams:
    steam_id64: str
    reason: str
    granted_by: str
    duration_value: Optional[int] = None  # None = permanent
    duration_type: Optional[str] = None
    eos_id: Optional[str] = None
    username: Optional[str] = None
    discord_user_id: Optional[int] = None
    discord_username: Optional[str] = None
    source: str = "manual"
    group_name: Optional[str] = None
    note: Optional[str] = None
    external_ref: Optional[str] = None
    metadata: Optional[dict] = None
    granted_at: Optional[datetime] = None
    starts_at: Optional[datetime] = None


@dataclass
class WhitelistStatus:
    has_whitelist: bool
    status: str
    expiration: Optional[datetime] = None
    is_permanent: bool = False
    active_entries: list[WhitelistEntry] = field(default_factory=list)


def compute_expiration(granted_at: datetime, duration_value: Optional[int], duration_type: Optional[str]) -> Optional[datetime]:
    """Calendar-aware expiry. None means permanent.

    Months use relativedelta so Jan 31 + 1 month lands on the last day of
    February instead of spilling into March.
    """
    if duration_value is None or duration_type is None:
        return None
    if duration_type == "days":
        return granted_at + timedelta(days=duration_value)
    if duration_type == "months":
        return granted_at + relativedelta(months=duration_value)
    raise ValidationError(f"Unknown duration type: {duration_type}")


def entry_expiration(entry: WhitelistEntry) -> Optional[datetime]:
    return compute_expiration(entry.starts_at or entry.granted_at, entry.duration_value, entry.duration_type)


def is_entry_active(entry: WhitelistEntry, now: Optional[datetime] = None) -> bool:
    if entry.revoked:
        return False
    if entry.duration_value == 0:
        return False
    expires = entry_expiration(entry)
    if expires is None:
        return True
    return expires > (now or utcnow())


def summarize(entries: Iterable[WhitelistEntry], now: Optional[datetime] = None) -> WhitelistStatus:
    """Effective status of a set of rows: the furthest-out active expiry wins."""
    now = now or utcnow()
    live = [e for e in entries if not e.revoked]
    active = [e for e in live if is_entry_active(e, now)]
    if not live:
        return WhitelistStatus(False, "No whitelist")
    if not active:
        latest = max((entry_expiration(e) or e.granted_at for e in live), default=None)
        return WhitelistStatus(False, "Expired", expiration=latest)
    if any(entry_expiration(e) is None for e in active):
        return WhitelistStatus(True, "Active (permanent)", is_permanent=True, active_entries=active)
    expiration = max(entry_expiration(e) for e in active)
    return WhitelistStatus(
        True, f"Active until {expiration:%Y-%m-%d}", expiration=expiration, active_entries=active
    )


def entry_snapshot(entry: WhitelistEntry) -> dict:
    return {
        "id": entry.id,
        "steam_id64": entry.steam_id64,
        "reason": entry.reason,
        "source": entry.source,
        "group_name": entry.group_name,
        "duration_value": entry.duration_value,
        "duration_type": entry.duration_type,
        "starts_at": entry.starts_at.isoformat() if entry.starts_at else None,
        "revoked": entry.revoked,
    }


def _validate_duration(value, duration_type) -> None:
    if value is None:
        return
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValidationError("Duration must be a non-negative whole number")
    if duration_type not in DURATION_TYPES:
        raise ValidationError("Duration type must be 'days' or 'months'")


class WhitelistGrantStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession], audit: AuditService):
        self._session_factory = session_factory
        self._audit = audit

    async def grant_whitelist(
        self, params: GrantParams, *, actor: Optional[Actor] = None, session: Optional[AsyncSession] = None
    ) -> WhitelistEntry:
        """Insert a new entry. Stacking is intentional, so no duplicate check.

        Failures are audited here unless the caller passed its own `session`.
        """
        actor = actor or Actor("admin", None, params.granted_by)
        try:
            return await self._grant(params, actor, session)
        except RosterError as e:
            if session is None:
                await self._audit.record_failure(
                    "WHITELIST_GRANT", e,
                    actor=actor, target_type="steam_id", target_id=params.steam_id64, target_name=params.username,
                    metadata={"reason": params.reason, "source": params.source}, severity="warning",
                )
            raise

    async def _grant(self, params: GrantParams, actor: Actor, session: Optional[AsyncSession]) -> WhitelistEntry:
        steam_id64 = require_steam_id(params.steam_id64)
        if params.reason not in REASONS:
            raise ValidationError(f"Unknown whitelist reason: {params.reason}")
        if params.source not in SOURCES:
            raise ValidationError(f"Unknown whitelist source: {params.source}")
        _validate_duration(params.duration_value, params.duration_type)

        entry = WhitelistEntry(
            steam_id64=steam_id64,
            eos_id=params.eos_id,
            username=params.username,
            discord_user_id=params.discord_user_id,
            discord_username=params.discord_username,
            reason=params.reason,
            source=params.source,
            group_name=params.group_name,
            granted_at=params.granted_at or utcnow(),
            starts_at=params.starts_at,
            duration_value=params.duration_value,
            duration_type=params.duration_type if params.duration_value is not None else None,
            granted_by=params.granted_by,
            note=params.note,
            external_ref=params.external_ref,
            metadata_=dict(params.metadata or {}),
        )
        if session is not None:
            await self._insert(session, entry, actor)
        else:
            async with self._session_factory() as session:
                async with session.begin():
                    await self._insert(session, entry, actor)
        logger.info(
            "Granted whitelist %s to %s (%s %s)",
            entry.reason, steam_id64, entry.duration_value or "permanent", entry.duration_type or "",
        )
        return entry

    async def _insert(self, session: AsyncSession, entry: WhitelistEntry, actor: Actor) -> None:
        session.add(entry)
        await session.flush()
        self._audit.add(
            session, "WHITELIST_GRANT",
            actor=actor, target_type="steam_id", target_id=entry.steam_id64, target_name=entry.username,
            description=f"{entry.reason} whitelist granted",
            after=entry_snapshot(entry),
        )

    async def extend_whitelist(
        self, steam_id64: str, months: int, granted_by: str, *, actor: Optional[Actor] = None
    ) -> WhitelistEntry:
        """Stack a new entry of `months` after the current expiry (or from now if expired).

        The entry is granted now; `starts_at` holds the later start its
        duration counts from.
        """
        actor = actor or Actor("admin", None, granted_by)
        try:
            return await self._extend(steam_id64, months, granted_by, actor)
        except RosterError as e:
            await self._audit.record_failure(
                "WHITELIST_EXTEND", e,
                actor=actor, target_type="steam_id", target_id=steam_id64,
                metadata={"months": months}, severity="warning",
            )
            raise

    async def _extend(self, steam_id64: str, months: int, granted_by: str, actor: Actor) -> WhitelistEntry:
        steam_id64 = require_steam_id(steam_id64)
        if isinstance(months, bool) or not isinstance(months, int) or months < 1:
            raise ValidationError("Extension must be at least one month")
        entries = await self.history(steam_id64)
        if not entries:
            raise NotFoundError(f"{steam_id64} has no whitelist history to extend")
        latest = entries[0]
        now = utcnow()
        current = summarize(entries, now)
        starts_at = None
        if current.has_whitelist and current.expiration and current.expiration > now:
            starts_at = current.expiration
        return await self._grant(
            GrantParams(
                steam_id64=steam_id64,
                reason=latest.reason,
                granted_by=granted_by,
                duration_value=months,
                duration_type="months",
                eos_id=latest.eos_id,
                username=latest.username,
                discord_user_id=latest.discord_user_id,
                discord_username=latest.discord_username,
                source="manual" if latest.source == "role" else latest.source,
                note=f"Extension by {months} month(s)",
                metadata={"extension": True},
                granted_at=now,
                starts_at=starts_at,
            ),
            actor,
            None,
        )

    async def revoke_whitelist(
        self,
        steam_id64: str,
        reason: Optional[str],
        revoked_by: str,
        *,
        actor: Optional[Actor] = None,
        session: Optional[AsyncSession] = None,
    ) -> int:
        """Revoke every active entry for the Steam ID. Returns how many; 0 is a no-op."""
        actor = actor or Actor("admin", None, revoked_by)
        owns_session = session is None
        try:
            steam_id64 = require_steam_id(steam_id64)
            if not owns_session:
                count = await self._revoke(session, steam_id64, reason, revoked_by, actor)
            else:
                async with self._session_factory() as own:
                    async with own.begin():
                        count = await self._revoke(own, steam_id64, reason, revoked_by, actor)
        except RosterError as e:
            if owns_session:
                await self._audit.record_failure(
                    "WHITELIST_REVOKE", e,
                    actor=actor, target_type="steam_id", target_id=steam_id64, severity="warning",
                )
            raise
        if count:
            logger.info("Revoked %d whitelist entries for %s", count, steam_id64)
        return count

    async def revoke_for_discord_user(
        self, discord_user_id: int, reason: Optional[str], revoked_by: str, *, actor: Actor, session: AsyncSession
    ) -> int:
        """Revoke every active entry tied to a Discord user, role entries included."""
        result = await session.execute(
            select(WhitelistEntry).where(
                WhitelistEntry.discord_user_id == discord_user_id, WhitelistEntry.revoked.is_(False)
            )
        )
        return self._revoke_entries(
            session, result.scalars().all(), reason, revoked_by, actor,
            target_type="discord_user", target_id=discord_user_id,
        )

    async def _revoke(self, session: AsyncSession, steam_id64: str, reason, revoked_by, actor: Actor) -> int:
        result = await session.execute(
            select(WhitelistEntry).where(
                WhitelistEntry.steam_id64 == steam_id64, WhitelistEntry.revoked.is_(False)
            )
        )
        return self._revoke_entries(
            session, result.scalars().all(), reason, revoked_by, actor, target_type="steam_id", target_id=steam_id64
        )

    def _revoke_entries(
        self, session: AsyncSession, entries, reason, revoked_by, actor: Actor, *, target_type: str, target_id
    ) -> int:
        now = utcnow()
        active = [e for e in entries if is_entry_active(e, now)]
        for entry in active:
            self.mark_revoked(entry, reason, revoked_by, now)
        if active:
            self._audit.add(
                session, "WHITELIST_REVOKE",
                actor=actor, target_type=target_type, target_id=target_id,
                description=reason or "Revoked",
                before={"entries": [{**entry_snapshot(e), "revoked": False} for e in active]},
                after={"revoked": len(active)},
            )
        return len(active)

    @staticmethod
    def mark_revoked(entry: WhitelistEntry, reason: Optional[str], revoked_by: str, now: Optional[datetime] = None) -> None:
        entry.revoked = True
        entry.revoked_at = now or utcnow()
        entry.revoked_by = revoked_by
        entry.revoked_reason = reason

    async def get_active_whitelist_for_user(self, steam_id64: str) -> WhitelistStatus:
        """Computed from raw rows on every call."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(WhitelistEntry).where(
                    WhitelistEntry.steam_id64 == steam_id64, WhitelistEntry.revoked.is_(False)
                )
            )
            return summarize(result.scalars().all())

    async def list_active_entries(self) -> list[WhitelistEntry]:
        """Active, non-revoked, unexpired entries ordered by Steam ID. Feeds the game server."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(WhitelistEntry)
                .where(WhitelistEntry.revoked.is_(False))
                .order_by(WhitelistEntry.steam_id64, WhitelistEntry.granted_at)
            )
            now = utcnow()
            return [e for e in result.scalars().all() if is_entry_active(e, now)]

    async def history(self, steam_id64: str) -> list[WhitelistEntry]:
        """Every entry for a Steam ID, newest first."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(WhitelistEntry)
                .where(WhitelistEntry.steam_id64 == steam_id64)
                .order_by(WhitelistEntry.granted_at.desc(), WhitelistEntry.id.desc())
            )
            return list(result.scalars().all())

    async def find_by_external_ref(self, external_ref: str) -> Optional[WhitelistEntry]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(WhitelistEntry).where(WhitelistEntry.external_ref == external_ref).limit(1)
            )
            return result.scalar_one_or_none()

    async def update_discord_username(self, steam_id64: str, discord_user_id: int, discord_username: str) -> int:
        """Attach a Discord identity to a Steam ID's entries after verification."""
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    select(WhitelistEntry).where(
                        WhitelistEntry.steam_id64 == steam_id64,
                        WhitelistEntry.revoked.is_(False),
                    )
                )
                count = 0
                for entry in result.scalars().all():
                    if entry.discord_username != discord_username or entry.discord_user_id != discord_user_id:
                        entry.discord_username = discord_username
                        entry.discord_user_id = discord_user_id
                        count += 1
        return count

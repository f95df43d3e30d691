"""Audit log writer."""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bot.models import AuditLog

logger = logging.getLogger("roster.audit")


@dataclass(frozen=True)
class Actor:
    """Who performed an action."""

    type: str = "system"  # user, admin, web, system
    id: Optional[str] = None
    name: Optional[str] = None

    @classmethod
    def system(cls, name: str = "system") -> "Actor":
        return cls("system", None, name)

    @classmethod
    def from_discord(cls, user, actor_type: str = "admin") -> "Actor":
        return cls(actor_type, str(user.id), str(user))

    @property
    def label(self) -> str:
        return self.name or self.id or self.type


SYSTEM = Actor.system()


class AuditService:
    """Writes AuditLog rows.

    `add` joins the caller's session so the row commits or rolls back with the
    change it describes. `record` opens its own session, for failures that
    must be kept after the caller's transaction rolled back.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    def add(
        self,
        session: AsyncSession,
        action_type: str,
        *,
        actor: Actor = SYSTEM,
        target_type: Optional[str] = None,
        target_id: Any = None,
        target_name: Optional[str] = None,
        guild_id: Any = None,
        description: Optional[str] = None,
        before: Optional[dict] = None,
        after: Optional[dict] = None,
        metadata: Optional[dict] = None,
        success: bool = True,
        error_message: Optional[str] = None,
        severity: str = "info",
    ) -> AuditLog:
        row = AuditLog(
            action_id=uuid.uuid4().hex,
            action_type=action_type,
            actor_type=actor.type,
            actor_id=actor.id,
            actor_name=actor.name,
            target_type=target_type,
            target_id=str(target_id) if target_id is not None else None,
            target_name=target_name,
            guild_id=str(guild_id) if guild_id is not None else None,
            description=description,
            before_state=before,
            after_state=after,
            metadata_=metadata,
            success=success,
            error_message=error_message,
            severity=severity,
        )
        session.add(row)
        return row

    async def record(self, action_type: str, **kwargs) -> None:
        async with self._session_factory() as session:
            self.add(session, action_type, **kwargs)
            await session.commit()

    async def record_failure(self, action_type: str, error: Exception, **kwargs) -> None:
        """Persist a failed action. Never raises; the original error matters more."""
        try:
            await self.record(
                action_type,
                success=False,
                error_message=str(error),
                severity=kwargs.pop("severity", "error"),
                **kwargs,
            )
        except Exception:
            logger.exception("Failed to write audit row for %s", action_type)

    async def recent(self, *, target_id: Any = None, action_type: Optional[str] = None, limit: int = 50) -> list[AuditLog]:
        async with self._session_factory() as session:
            stmt = select(AuditLog).order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).limit(limit)
            if target_id is not None:
                stmt = stmt.where(AuditLog.target_id == str(target_id))
            if action_type:
                stmt = stmt.where(AuditLog.action_type == action_type)
            result = await session.execute(stmt)
            return list(result.scalars().all())

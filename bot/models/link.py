"""Discord to Steam account link model."""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from sqlalchemy import JSON, BigInteger, Boolean, DateTime, Float, Index, Integer, String, UniqueConstraint, text
from sqlalchemy.orm import Mapped, mapped_column

from bot.models.base import Base, utcnow


class LinkSource(str, Enum):
    SELF_VERIFIED = "self-verified"
    MANUAL_ADMIN = "manual-admin"
    WHITELIST_CREATED = "whitelist-created"
    TICKET_DETECTED = "ticket-detected"


# Confidence is derived from where the link came from, never set by hand
CONFIDENCE_BY_SOURCE = {
    LinkSource.SELF_VERIFIED: 1.0,
    LinkSource.MANUAL_ADMIN: 0.7,
    LinkSource.WHITELIST_CREATED: 0.5,
    LinkSource.TICKET_DETECTED: 0.3,
}

STAFF_REQUIRED_CONFIDENCE = 1.0


class PlayerDiscordLink(Base):
    """One Steam identity claimed by a Discord user. At most one is primary per user."""

    __tablename__ = "player_discord_links"
    __table_args__ = (
        UniqueConstraint("discord_user_id", "steam_id64", name="uq_link_discord_steam"),
        Index(
            "uq_link_one_primary",
            "discord_user_id",
            unique=True,
            sqlite_where=text("is_primary = 1"),
            postgresql_where=text("is_primary"),
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    discord_user_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    steam_id64: Mapped[str] = mapped_column(String(17), nullable=False, index=True)
    eos_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    username: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)  # In-game name when known
    link_source: Mapped[str] = mapped_column(String(32), nullable=False)
    confidence_score: Mapped[float] = mapped_column(Float, nullable=False)
    is_primary: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True, default=utcnow, onupdate=utcnow)
    metadata_: Mapped[Optional[dict[str, Any]]] = mapped_column("metadata", JSON, nullable=True)

    @property
    def meets_staff_confidence(self) -> bool:
        return self.confidence_score >= STAFF_REQUIRED_CONFIDENCE

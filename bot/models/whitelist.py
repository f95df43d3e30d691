"""Whitelist entry model."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, BigInteger, Boolean, DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from bot.models.base import Base, utcnow

REASONS = (
    "service-member",
    "first-responder",
    "donator",
    "reporting",
    "import",
    "donation",
    "staff-role",
    "member-role",
)
SOURCES = ("manual", "role", "import", "donation")
DURATION_TYPES = ("days", "months")


class WhitelistEntry(Base):
    """One grant. Several may stack for a Steam ID; rows are revoked, never deleted."""

    __tablename__ = "whitelist_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    steam_id64: Mapped[str] = mapped_column(String(17), nullable=False, index=True)
    eos_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    username: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    discord_user_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True, index=True)
    discord_username: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    reason: Mapped[str] = mapped_column(String(32), nullable=False)
    source: Mapped[str] = mapped_column(String(16), nullable=False, default="manual")
    group_name: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)  # Squad group for role entries
    granted_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    # Later start for stacked extensions; the duration counts from here when set
    starts_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    duration_value: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)  # None = permanent
    duration_type: Mapped[Optional[str]] = mapped_column(String(8), nullable=True)  # days, months
    granted_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    revoked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    revoked_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    revoked_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    revoked_reason: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    external_ref: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    metadata_: Mapped[Optional[dict[str, Any]]] = mapped_column("metadata", JSON, nullable=True)

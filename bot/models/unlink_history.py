"""Unlink history model (drives the relink cooldown)."""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import BigInteger, DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from bot.models.base import Base, utcnow


class UnlinkHistory(Base):
    """A link the user removed."""

    __tablename__ = "unlink_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    discord_user_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    steam_id64: Mapped[str] = mapped_column(String(17), nullable=False)
    eos_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    username: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    reason: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    unlinked_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, index=True)

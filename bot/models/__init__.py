"""Database models."""
from bot.models.base import Base, init_db
from bot.models.audit_log import AuditLog
from bot.models.link import CONFIDENCE_BY_SOURCE, LinkSource, PlayerDiscordLink
from bot.models.unlink_history import UnlinkHistory
from bot.models.user import User
from bot.models.verification_code import VerificationCode
from bot.models.whitelist import WhitelistEntry

__all__ = [
    "AuditLog",
    "Base",
    "CONFIDENCE_BY_SOURCE",
    "LinkSource",
    "PlayerDiscordLink",
    "UnlinkHistory",
    "User",
    "VerificationCode",
    "WhitelistEntry",
    "init_db",
]

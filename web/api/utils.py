"""Shared API utilities."""
from __future__ import annotations

from datetime import datetime
from functools import lru_cache
from typing import Optional

from fastapi import HTTPException

import config
from bot.errors import ConflictError, NotFoundError, RosterError, ValidationError
from bot.models import PlayerDiscordLink, WhitelistEntry
from bot.models.base import async_session_factory
from bot.services.container import Services, build_services
from bot.services.whitelist_grants import entry_expiration, is_entry_active


@lru_cache(maxsize=1)
def get_services() -> Services:
    """Service container for the API process. No Discord client, so role sync goes through the bot."""
    return build_services(config.load_settings(), async_session_factory)


def http_error(e: RosterError) -> HTTPException:
    """Map a domain error onto a status code."""
    if isinstance(e, ValidationError):
        return HTTPException(400, str(e))
    if isinstance(e, NotFoundError):
        return HTTPException(404, str(e))
    if isinstance(e, ConflictError):
        return HTTPException(409, str(e))
    return HTTPException(502, str(e))


def bot_request_headers() -> dict:
    return {"Authorization": f"Bearer {config.INTERNAL_API_SECRET}"}


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() + "Z" if dt else None


def entry_dict(entry: WhitelistEntry) -> dict:
    """Discord IDs go out as strings so JS keeps full precision."""
    expires = entry_expiration(entry)
    return {
        "id": entry.id,
        "steam_id64": entry.steam_id64,
        "eos_id": entry.eos_id,
        "username": entry.username,
        "discord_user_id": str(entry.discord_user_id) if entry.discord_user_id else None,
        "discord_username": entry.discord_username,
        "reason": entry.reason,
        "source": entry.source,
        "group_name": entry.group_name,
        "granted_at": _iso(entry.granted_at),
        "starts_at": _iso(entry.starts_at),
        "granted_by": entry.granted_by,
        "duration_value": entry.duration_value,
        "duration_type": entry.duration_type,
        "expires_at": _iso(expires),
        "active": is_entry_active(entry),
        "revoked": entry.revoked,
        "revoked_at": _iso(entry.revoked_at),
        "revoked_by": entry.revoked_by,
        "revoked_reason": entry.revoked_reason,
        "note": entry.note,
    }


def link_dict(link: PlayerDiscordLink) -> dict:
    return {
        "discord_user_id": str(link.discord_user_id),
        "steam_id64": link.steam_id64,
        "eos_id": link.eos_id,
        "username": link.username,
        "link_source": link.link_source,
        "confidence_score": link.confidence_score,
        "is_primary": link.is_primary,
        "created_at": _iso(link.created_at),
        "updated_at": _iso(link.updated_at),
    }

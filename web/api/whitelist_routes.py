"""API routes for whitelist entries, account links and role sync."""
from __future__ import annotations

import logging
from typing import Optional

import httpx
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

import config
from bot.errors import RosterError
from bot.models import LinkSource, User
from bot.services.audit import Actor
from bot.services.container import Services
from web.api.utils import bot_request_headers, entry_dict, get_services, http_error, link_dict
from web.auth import actor_for, require_admin_user, require_staff_user

logger = logging.getLogger("roster.api.whitelist")

router = APIRouter(prefix="/api", tags=["whitelist"])


# --- Pydantic schemas ---


class GrantRequest(BaseModel):
    steam_id64: str
    reason: str
    duration_value: Optional[int] = Field(default=None, ge=0)
    duration_type: Optional[str] = None
    username: Optional[str] = None
    eos_id: Optional[str] = None
    note: Optional[str] = None


class ExtendRequest(BaseModel):
    months: int = Field(ge=1, le=60)


class RevokeRequest(BaseModel):
    reason: Optional[str] = None


class LinkRequest(BaseModel):
    discord_user_id: int
    steam_id64: str
    username: Optional[str] = None


class UpgradeRequest(BaseModel):
    discord_user_id: int
    steam_id64: str
    reason: str


class RoleSyncRequest(BaseModel):
    guild_id: Optional[int] = None
    discord_user_id: Optional[int] = None
    dry_run: bool = False


# --- Whitelist ---


@router.get("/whitelist")
async def list_whitelist(user: User = Depends(require_staff_user), services: Services = Depends(get_services)):
    """Every active entry."""
    return [entry_dict(e) for e in await services.grants.list_active_entries()]


@router.get("/whitelist/{steam_id64}")
async def get_whitelist(
    steam_id64: str, user: User = Depends(require_staff_user), services: Services = Depends(get_services)
):
    """Computed status plus the full entry history for one Steam ID."""
    status = await services.grants.get_active_whitelist_for_user(steam_id64)
    history = await services.grants.history(steam_id64)
    return {
        "steam_id64": steam_id64,
        "has_whitelist": status.has_whitelist,
        "status": status.status,
        "expiration": status.expiration.isoformat() + "Z" if status.expiration else None,
        "is_permanent": status.is_permanent,
        "entries": [entry_dict(e) for e in history],
    }


@router.post("/whitelist")
async def grant_whitelist(
    body: GrantRequest, user: User = Depends(require_staff_user), services: Services = Depends(get_services)
):
    try:
        result = await services.grant_flow.grant(
            steam_id64=body.steam_id64,
            reason=body.reason,
            actor=actor_for(user),
            duration_value=body.duration_value,
            duration_type=body.duration_type,
            eos_id=body.eos_id,
            username=body.username,
            note=body.note,
        )
    except RosterError as e:
        raise http_error(e) from e
    return {"entry": entry_dict(result.entry), "warnings": result.warnings}


@router.post("/whitelist/{steam_id64}/extend")
async def extend_whitelist(
    steam_id64: str,
    body: ExtendRequest,
    user: User = Depends(require_staff_user),
    services: Services = Depends(get_services),
):
    try:
        entry = await services.grants.extend_whitelist(steam_id64, body.months, user.username, actor=actor_for(user))
    except RosterError as e:
        raise http_error(e) from e
    return entry_dict(entry)


@router.post("/whitelist/{steam_id64}/revoke")
async def revoke_whitelist(
    steam_id64: str,
    body: RevokeRequest,
    user: User = Depends(require_staff_user),
    services: Services = Depends(get_services),
):
    """Revokes every active entry. Award roles are left to the bot's role sync."""
    try:
        count = await services.grants.revoke_whitelist(
            steam_id64, body.reason, user.username, actor=actor_for(user)
        )
    except RosterError as e:
        raise http_error(e) from e
    return {"ok": True, "revoked": count}


# --- Links ---


@router.get("/links/discord/{discord_user_id}")
async def links_for_discord_user(
    discord_user_id: int, user: User = Depends(require_staff_user), services: Services = Depends(get_services)
):
    return [link_dict(link) for link in await services.links.find_by_discord_id(discord_user_id)]


@router.get("/links/steam/{steam_id64}")
async def links_for_steam_id(
    steam_id64: str, user: User = Depends(require_staff_user), services: Services = Depends(get_services)
):
    return [link_dict(link) for link in await services.links.find_by_steam_id(steam_id64)]


@router.post("/links")
async def create_link(
    body: LinkRequest, user: User = Depends(require_admin_user), services: Services = Depends(get_services)
):
    """Admin link (confidence 0.7). Cooldowns do not apply."""
    try:
        result = await services.links.create_or_update_link(
            body.discord_user_id,
            body.steam_id64,
            None,
            body.username,
            link_source=LinkSource.MANUAL_ADMIN,
            metadata={"created_by": user.username, "via": "web"},
            actor=actor_for(user),
        )
    except RosterError as e:
        raise http_error(e) from e
    return {"created": result.created, "link": link_dict(result.link)}


@router.post("/links/upgrade")
async def upgrade_link(
    body: UpgradeRequest, user: User = Depends(require_admin_user), services: Services = Depends(get_services)
):
    try:
        link = await services.links.upgrade_confidence(
            body.discord_user_id, body.steam_id64, actor=actor_for(user), reason=body.reason
        )
    except RosterError as e:
        raise http_error(e) from e
    return link_dict(link)


@router.get("/users/{discord_user_id}/whitelist-status")
async def whitelist_status(
    discord_user_id: int, user: User = Depends(require_staff_user), services: Services = Depends(get_services)
):
    """Database view of the resolver. Role-derived access needs the bot's member cache."""
    status = await services.authority.get_whitelist_status(discord_user_id)
    return {
        "discord_user_id": str(discord_user_id),
        "is_whitelisted": status.is_whitelisted,
        "steam_id64": status.steam_id64,
        "primary_source": status.primary_source,
        "reason": status.reason,
        "actual_confidence": status.actual_confidence,
        "expiration": status.expiration.isoformat() + "Z" if status.expiration else None,
        "is_permanent": status.is_permanent,
        "link": link_dict(status.link) if status.link else None,
    }


# --- Role sync (runs in the bot, which has the member cache) ---


@router.post("/role-sync")
async def trigger_role_sync(body: RoleSyncRequest, user: User = Depends(require_admin_user)):
    if not config.INTERNAL_API_SECRET or not config.BOT_INTERNAL_URL:
        raise HTTPException(503, "Bot integration not configured")
    url = f"{config.BOT_INTERNAL_URL.rstrip('/')}/internal/role-sync"
    try:
        async with httpx.AsyncClient(timeout=120.0) as client:
            r = await client.post(url, json=body.model_dump(exclude_none=True), headers=bot_request_headers())
    except httpx.TransportError as e:
        raise HTTPException(503, "Could not reach the Discord bot. Ensure it is running.") from e
    if r.status_code != 200:
        raise HTTPException(r.status_code, r.text)
    logger.info("Role sync triggered by %s: %s", user.username, body.model_dump(exclude_none=True))
    return r.json()


# --- Audit log ---


@router.get("/audit")
async def audit_log(
    target_id: Optional[str] = None,
    action_type: Optional[str] = None,
    limit: int = 50,
    user: User = Depends(require_admin_user),
    services: Services = Depends(get_services),
):
    rows = await services.audit.recent(target_id=target_id, action_type=action_type, limit=min(limit, 500))
    return [
        {
            "action_id": row.action_id,
            "action_type": row.action_type,
            "actor": Actor(row.actor_type, row.actor_id, row.actor_name).label,
            "target_type": row.target_type,
            "target_id": row.target_id,
            "description": row.description,
            "success": row.success,
            "error_message": row.error_message,
            "severity": row.severity,
            "created_at": row.created_at.isoformat() + "Z" if row.created_at else None,
        }
        for row in rows
    ]

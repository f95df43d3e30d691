"""HTTP servers run alongside the bot.

The whitelist server is what the Squad game servers poll for their remote
admin list. The internal server takes calls from the web API and from the
SquadJS chat relay and needs the shared INTERNAL_API_SECRET.
"""
from __future__ import annotations

import logging

import aiohttp.web

import config
from bot.errors import RosterError
from bot.services.role_sync import BulkSyncReport, SyncOutcome
from bot.services.whitelist_formatter import format_admins_cfg

logger = logging.getLogger("roster.http")


async def _handle_whitelist(request: aiohttp.web.Request) -> aiohttp.web.Response:
    """GET /whitelist - every active entry as reserve slots."""
    services = request.app["services"]
    entries = await services.grants.list_active_entries()
    prefer_eos = request.query.get("eos") in ("1", "true")
    return aiohttp.web.Response(text=format_admins_cfg(entries, prefer_eos_id=prefer_eos), content_type="text/plain")


async def _handle_staff(request: aiohttp.web.Request) -> aiohttp.web.Response:
    """GET /staff - staff role entries under their Squad admin groups."""
    services = request.app["services"]
    entries = await services.grants.list_active_entries()
    prefer_eos = request.query.get("eos") in ("1", "true")
    return aiohttp.web.Response(
        text=format_admins_cfg(entries, staff_only=True, prefer_eos_id=prefer_eos), content_type="text/plain"
    )


def _check_auth(request: aiohttp.web.Request) -> aiohttp.web.Response | None:
    if not config.INTERNAL_API_SECRET:
        logger.warning("INTERNAL_API_SECRET not set - rejecting %s", request.path)
        return aiohttp.web.json_response({"error": "Internal API not configured"}, status=503)
    if request.headers.get("Authorization") != f"Bearer {config.INTERNAL_API_SECRET}":
        return aiohttp.web.json_response({"error": "Unauthorized"}, status=401)
    return None


async def _read_json(request: aiohttp.web.Request) -> dict | None:
    try:
        body = await request.json()
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


def _outcome_dict(outcome: SyncOutcome) -> dict:
    return {
        "discord_user_id": str(outcome.discord_user_id),
        "action": outcome.action,
        "group": outcome.group,
        "reason": outcome.reason,
        "steam_id64": outcome.steam_id64,
        "writes": outcome.writes,
        "error": outcome.error,
    }


def _report_dict(report: BulkSyncReport) -> dict:
    return {
        "guild_id": str(report.guild_id),
        "dry_run": report.dry_run,
        "processed": report.processed,
        "granted": report.granted,
        "updated": report.updated,
        "revoked": report.revoked,
        "unchanged": report.unchanged,
        "blocked": report.blocked,
        "without_links": report.without_links,
        "staff_without_links": report.staff_without_links,
        "failed": report.failed,
        "writes": report.writes,
    }


async def _handle_chat_message(request: aiohttp.web.Request) -> aiohttp.web.Response:
    """POST /internal/chat-message - SquadJS CHAT_MESSAGE payload relayed from a game server."""
    denied = _check_auth(request)
    if denied is not None:
        return denied
    body = await _read_json(request)
    if body is None:
        return aiohttp.web.json_response({"error": "Invalid JSON"}, status=400)
    services = request.app["bot"].services
    result = await services.chat_linking.handle_chat_message(body, str(body.get("server") or ""))
    if result is None:
        return aiohttp.web.json_response({"ok": True, "verified": False})
    return aiohttp.web.json_response(
        {
            "ok": True,
            "verified": True,
            "discord_user_id": str(result.discord_user_id),
            "steam_id64": result.link.steam_id64,
        }
    )


async def _handle_role_sync(request: aiohttp.web.Request) -> aiohttp.web.Response:
    """POST /internal/role-sync - sync one member, or the whole guild when no user is given."""
    denied = _check_auth(request)
    if denied is not None:
        return denied
    body = await _read_json(request)
    if body is None:
        return aiohttp.web.json_response({"error": "Invalid JSON"}, status=400)

    bot = request.app["bot"]
    services = bot.services
    guild_id = body.get("guild_id") or services.settings.guild_id
    dry_run = bool(body.get("dry_run", False))
    try:
        guild_id = int(guild_id)
    except (TypeError, ValueError):
        return aiohttp.web.json_response({"error": "guild_id required (integer)"}, status=400)

    user_id = body.get("discord_user_id")
    if user_id is not None:
        try:
            user_id = int(user_id)
        except (TypeError, ValueError):
            return aiohttp.web.json_response({"error": "discord_user_id must be an integer"}, status=400)
        guild = bot.get_guild(guild_id)
        member = guild.get_member(user_id) if guild is not None else None
        group = services.role_groups.highest_member_group(member) if member is not None else None
        outcome = await services.role_sync.sync_user_role(user_id, group, member, source="web", dry_run=dry_run)
        return aiohttp.web.json_response({"ok": outcome.success, "outcome": _outcome_dict(outcome)})

    try:
        report = await services.role_sync.bulk_sync_guild(guild_id, dry_run=dry_run)
    except RosterError as e:
        return aiohttp.web.json_response({"error": str(e)}, status=404)
    return aiohttp.web.json_response({"ok": True, "report": _report_dict(report)})


def create_whitelist_app(services) -> aiohttp.web.Application:
    app = aiohttp.web.Application()
    app["services"] = services
    app.router.add_get("/whitelist", _handle_whitelist)
    app.router.add_get("/staff", _handle_staff)
    return app


def create_app(bot) -> aiohttp.web.Application:
    """Create the internal aiohttp app with bot reference."""
    app = aiohttp.web.Application()
    app["bot"] = bot
    app.router.add_post("/internal/chat-message", _handle_chat_message)
    app.router.add_post("/internal/role-sync", _handle_role_sync)
    return app


async def _serve(app: aiohttp.web.Application, host: str, port: int) -> aiohttp.web.AppRunner:
    runner = aiohttp.web.AppRunner(app)
    await runner.setup()
    site = aiohttp.web.TCPSite(runner, host, port)
    await site.start()
    return runner


async def start_whitelist_server(services, host: str = "0.0.0.0", port: int = 3001) -> aiohttp.web.AppRunner:
    runner = await _serve(create_whitelist_app(services), host, port)
    logger.info("Whitelist HTTP server listening on %s:%d", host, port)
    return runner


async def start_http_server(bot, host: str = "0.0.0.0", port: int = 8001) -> aiohttp.web.AppRunner | None:
    """Start the internal HTTP server (run as a task alongside the bot)."""
    if not config.INTERNAL_API_SECRET:
        logger.info("INTERNAL_API_SECRET not set - skipping internal HTTP server")
        return None
    runner = await _serve(create_app(bot), host, port)
    logger.info("Internal HTTP server listening on %s:%d", host, port)
    return runner

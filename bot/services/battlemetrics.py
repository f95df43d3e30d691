"""BattleMetrics API client (whitelist ban list, player search, player flags)."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

import httpx
from dateutil.parser import isoparse

from bot.errors import ExternalDependencyError
from config import BattleMetricsSettings

logger = logging.getLogger("roster.battlemetrics")

_RETRY_STATUSES = {429, 500, 502, 503, 504}


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = isoparse(value)
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


@dataclass
class BMWhitelist:
    """A whitelist-style ban list entry."""

    id: str
    steam_id64: Optional[str]
    eos_id: Optional[str]
    player_name: str
    reason: str = ""
    note: str = ""
    expires_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    user_id: Optional[str] = None


@dataclass
class BMPlayer:
    id: str
    name: str
    steam_id64: str

    @property
    def profile_url(self) -> str:
        return f"https://www.battlemetrics.com/rcon/players/{self.id}"


@dataclass
class BMFlag:
    id: str
    name: str
    created_at: Optional[datetime] = None


@dataclass
class FlagResult:
    success: bool
    flag_id: Optional[str] = None
    status: Optional[int] = None
    error: Optional[str] = None
    rate_limited: bool = False
    extra: dict[str, Any] = field(default_factory=dict)


def parse_whitelist_page(payload: dict) -> list[BMWhitelist]:
    """Turn one /bans page into entries, joining included users for fallbacks."""
    users = {item["id"]: item for item in payload.get("included") or [] if item.get("type") == "user"}
    entries = []
    for ban in payload.get("data") or []:
        attributes = ban.get("attributes") or {}
        user_id = (((ban.get("relationships") or {}).get("user") or {}).get("data") or {}).get("id")
        user_attributes = (users.get(user_id) or {}).get("attributes") or {}
        name = (ban.get("meta") or {}).get("player") or "Unknown"
        steam_id = eos_id = None
        for identifier in attributes.get("identifiers") or []:
            if identifier.get("type") == "steamID" and steam_id is None:
                steam_id = identifier.get("identifier")
                persona = ((identifier.get("metadata") or {}).get("profile") or {}).get("personaname")
                if persona:
                    name = persona
            elif identifier.get("type") == "eosID" and eos_id is None:
                eos_id = identifier.get("identifier")
        steam_id = steam_id or user_attributes.get("steamID")
        eos_id = eos_id or user_attributes.get("eosID")
        if name == "Unknown" and user_attributes.get("nickname"):
            name = user_attributes["nickname"]
        if not steam_id:
            logger.debug("BattleMetrics entry %s has no Steam ID", ban.get("id"))
        entries.append(
            BMWhitelist(
                id=str(ban.get("id")),
                steam_id64=steam_id,
                eos_id=eos_id,
                player_name=name,
                reason=attributes.get("reason") or "",
                note=attributes.get("note") or "",
                expires_at=_parse_time(attributes.get("expires")),
                created_at=_parse_time(attributes.get("timestamp")),
                user_id=user_id,
            )
        )
    return entries


class BattleMetricsClient:
    """Thin async client. Reads retry on 429/5xx; writes report failures instead."""

    def __init__(
        self,
        settings: BattleMetricsSettings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        max_attempts: int = 3,
        backoff_seconds: float = 0.5,
    ):
        self.settings = settings
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self._client = httpx.AsyncClient(
            base_url=settings.base_url,
            headers={"Authorization": f"Bearer {settings.token}", "Accept": "application/json"},
            timeout=settings.timeout_seconds,
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "BattleMetricsClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    async def _get(self, url: str, params: Optional[dict] = None) -> dict:
        last_error: Optional[ExternalDependencyError] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                response = await self._client.get(url, params=params)
            except httpx.TransportError as e:
                last_error = ExternalDependencyError(f"BattleMetrics request failed: {e}")
            else:
                if response.status_code < 400:
                    return response.json()
                last_error = ExternalDependencyError(
                    f"BattleMetrics returned {response.status_code} for {url}",
                    status_code=response.status_code,
                    rate_limited=response.status_code == 429,
                )
                if response.status_code not in _RETRY_STATUSES:
                    raise last_error
            if attempt < self.max_attempts:
                delay = self.backoff_seconds * 2 ** (attempt - 1)
                logger.warning("%s (attempt %d/%d), retrying in %.1fs", last_error, attempt, self.max_attempts, delay)
                await asyncio.sleep(delay)
        raise last_error

    async def fetch_active_whitelists(self, search: Optional[str] = None) -> list[BMWhitelist]:
        """Every entry on the configured whitelist ban list, following `links.next`."""
        if not self.settings.whitelist_ban_list_id:
            raise ExternalDependencyError("BATTLEMETRICS_BANLIST_ID is not configured")
        params: Optional[dict] = {
            "filter[banList]": self.settings.whitelist_ban_list_id,
            "include": "user,server",
            "page[size]": 100,
        }
        if search:
            params["filter[search]"] = search
        url = "/bans"
        entries: list[BMWhitelist] = []
        pages = 0
        while url:
            payload = await self._get(url, params)
            entries.extend(parse_whitelist_page(payload))
            pages += 1
            url = (payload.get("links") or {}).get("next")
            params = None  # the next link carries its own query
            if url:
                await asyncio.sleep(self.settings.page_delay_seconds)
        logger.info("Fetched %d BattleMetrics whitelist entries over %d pages", len(entries), pages)
        return entries

    async def search_player_by_steam_id(self, steam_id64: str) -> Optional[BMPlayer]:
        payload = await self._get("/players", {"filter[search]": steam_id64})
        data = payload.get("data") or []
        if not data:
            return None
        player = data[0]
        return BMPlayer(
            id=str(player["id"]),
            name=(player.get("attributes") or {}).get("name") or "Unknown",
            steam_id64=steam_id64,
        )

    async def get_player_flags(self, player_id: str) -> list[BMFlag]:
        payload = await self._get(f"/players/{player_id}", {"include": "playerFlag"})
        return [
            BMFlag(
                id=str(item["id"]),
                name=(item.get("attributes") or {}).get("flag") or "",
                created_at=_parse_time((item.get("attributes") or {}).get("createdAt")),
            )
            for item in payload.get("included") or []
            if item.get("type") == "playerFlag"
        ]

    async def add_player_flag(self, player_id: str, flag: str) -> FlagResult:
        body = {
            "data": {
                "type": "playerFlag",
                "attributes": {"flag": flag},
                "relationships": {"player": {"data": {"type": "player", "id": player_id}}},
            }
        }
        return await self._write("POST", "/player-flags", json=body)

    async def remove_player_flag(self, flag_id: str) -> FlagResult:
        return await self._write("DELETE", f"/player-flags/{flag_id}")

    async def _write(self, method: str, url: str, **kwargs) -> FlagResult:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.TransportError as e:
            logger.error("BattleMetrics %s %s failed: %s", method, url, e)
            return FlagResult(success=False, error=str(e))
        if response.status_code >= 400:
            try:
                detail = response.json()["errors"][0]["detail"]
            except (ValueError, KeyError, IndexError, TypeError):
                detail = response.text
            logger.error("BattleMetrics %s %s returned %d: %s", method, url, response.status_code, detail)
            return FlagResult(
                success=False, status=response.status_code, error=detail, rate_limited=response.status_code == 429
            )
        flag_id = None
        if response.content:
            flag_id = ((response.json() or {}).get("data") or {}).get("id")
        return FlagResult(success=True, flag_id=flag_id, status=response.status_code)

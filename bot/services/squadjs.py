"""Spot verification codes in relayed SquadJS chat messages."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Callable, Optional

from bot.errors import NotFoundOrExpired, RosterError
from bot.services.verification import RedeemResult, VerificationService
from bot.services.whitelist_grants import WhitelistGrantStore

logger = logging.getLogger("roster.squadjs")


@dataclass
class ChatPlayer:
    name: str
    steam_id64: Optional[str] = None
    eos_id: Optional[str] = None


def parse_chat_event(data: dict) -> tuple[Optional[str], Optional[ChatPlayer]]:
    """(message, player) from a SquadJS CHAT_MESSAGE payload, or (None, None)."""
    if not isinstance(data, dict):
        return None, None
    message = data.get("message")
    player = data.get("player")
    if not isinstance(message, str) or not isinstance(player, dict):
        return None, None
    return message.strip(), ChatPlayer(
        name=player.get("name") or "Unknown",
        steam_id64=player.get("steamID"),
        eos_id=player.get("eosID"),
    )


class ChatLinkingService:
    def __init__(
        self,
        verification: VerificationService,
        grants: WhitelistGrantStore,
        username_resolver: Optional[Callable[[int], Optional[str]]] = None,
    ):
        self._verification = verification
        self._grants = grants
        self._resolve_username = username_resolver
        length = verification.settings.code_length
        self._code_re = re.compile(rf"\b[A-Z0-9]{{{length}}}\b")

    def find_codes(self, message: str) -> list[str]:
        return self._code_re.findall((message or "").upper())

    async def handle_chat_message(self, data: dict, server_name: str = "") -> Optional[RedeemResult]:
        """Redeem the first code in the message that matches an issued code."""
        message, player = parse_chat_event(data)
        if not message or player is None or not player.steam_id64:
            return None
        candidates = self.find_codes(message)
        issued = await self._verification.issued_codes(candidates) if candidates else set()
        for code in (c for c in candidates if c in issued):
            try:
                result = await self._verification.redeem(
                    code, player.steam_id64, eos_id=player.eos_id, username=player.name
                )
            except NotFoundOrExpired:
                continue
            except RosterError as e:
                logger.info("Code from %s on %s not redeemed: %s", player.name, server_name or "server", e)
                return None
            logger.info(
                "Verified %s (%s) on %s for Discord user %s",
                player.name, player.steam_id64, server_name or "server", result.discord_user_id,
            )
            discord_username = self._resolve_username(result.discord_user_id) if self._resolve_username else None
            if not discord_username:
                return result
            updated = await self._grants.update_discord_username(
                player.steam_id64, result.discord_user_id, discord_username
            )
            if updated:
                logger.info("Attached Discord user %s to %d whitelist entries", result.discord_user_id, updated)
            return result
        return None

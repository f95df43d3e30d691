"""Steam ID64 validation and extraction."""
from __future__ import annotations

import re

from bot.errors import ValidationError

_STEAM_ID_RE = re.compile(r"^\d{17}$")
_STEAM_ID_PREFIXES = ("76561197", "76561198", "76561199")
_STEAM_ID_IN_TEXT_RE = re.compile(r"(?<!\d)765\d{14}(?!\d)")


def is_valid_steam_id(value: str | None) -> bool:
    """True for a 17-digit SteamID64 in the individual-account range."""
    if not value or not isinstance(value, str):
        return False
    return bool(_STEAM_ID_RE.match(value)) and value.startswith(_STEAM_ID_PREFIXES)


def require_steam_id(value: str | None) -> str:
    value = (value or "").strip()
    if not is_valid_steam_id(value):
        raise ValidationError(
            f"`{value or 'empty'}` is not a valid Steam ID64. It should be 17 digits starting with 7656119."
        )
    return value


def extract_steam_ids(text: str) -> list[str]:
    """Valid Steam IDs found in a message, in order, without duplicates."""
    found = []
    for match in _STEAM_ID_IN_TEXT_RE.findall(text or ""):
        if is_valid_steam_id(match) and match not in found:
            found.append(match)
    return found

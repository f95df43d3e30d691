"""Error types raised by the roster services."""
from __future__ import annotations

from datetime import datetime
from typing import Optional


class RosterError(Exception):
    """Base class. The message is safe to show to the invoking user."""


class ValidationError(RosterError):
    """Malformed input (bad Steam ID, missing field). Never retried."""


class ConflictError(RosterError):
    """State conflict such as a second primary link or an already-used code."""


class LinkCooldownError(ConflictError):
    """Linking a different Steam ID inside the unlink cooldown window."""

    def __init__(self, cooldown_ends_at: datetime):
        self.cooldown_ends_at = cooldown_ends_at
        super().__init__(
            "You unlinked your account recently and cannot link a different Steam ID "
            f"until {cooldown_ends_at:%Y-%m-%d %H:%M} UTC."
        )


class NotFoundError(RosterError):
    """Expected absence (no link, no entry). Not logged as an error."""


class NotFoundOrExpired(NotFoundError):
    """Verification code unknown, already used or past its expiry."""


class ExternalDependencyError(RosterError):
    """BattleMetrics or Discord call failed."""

    def __init__(self, message: str, status_code: Optional[int] = None, rate_limited: bool = False):
        super().__init__(message)
        self.status_code = status_code
        self.rate_limited = rate_limited

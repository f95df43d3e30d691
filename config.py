"""Configuration for the Roster bot."""
from __future__ import annotations

import os
from pathlib import Path
from typing import Mapping, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

load_dotenv()

# Discord
DISCORD_TOKEN = os.getenv("DISCORD_TOKEN", "")

# Web -> Bot internal API (role sync trigger, chat relay from the game server)
BOT_INTERNAL_URL = os.getenv("BOT_INTERNAL_URL", "http://bot:8001")
INTERNAL_API_SECRET = os.getenv("INTERNAL_API_SECRET", "")

# Database
DATABASE_URL = os.getenv(
    "DATABASE_URL",
    f"sqlite+aiosqlite:///{Path(__file__).parent / 'roster.db'}",
)


# Role IDs or names (comma-separated). Names are case-insensitive.
def _parse_role_ids(value: str) -> set[int]:
    if not value:
        return set()
    result = set()
    for x in value.split(","):
        try:
            result.add(int(x.strip()))
        except ValueError:
            continue
    return result


def _parse_role_names(value: str) -> set[str]:
    if not value:
        return set()
    return {x.strip().lower() for x in value.split(",") if x.strip()}


# Who may run staff/admin slash commands
MODERATOR_ROLE_IDS = _parse_role_ids(os.getenv("MODERATOR_ROLE_IDS", ""))
MODERATOR_ROLE_NAMES = _parse_role_names(os.getenv("MODERATOR_ROLE_NAMES", ""))
ADMIN_ROLE_IDS = _parse_role_ids(os.getenv("ADMIN_ROLE_IDS", ""))
ADMIN_ROLE_NAMES = _parse_role_names(os.getenv("ADMIN_ROLE_NAMES", ""))

# User IDs that bypass role checks (when Members Intent fails to return roles)
MODERATOR_USER_IDS = _parse_role_ids(os.getenv("MODERATOR_USER_IDS", ""))
ADMIN_USER_IDS = _parse_role_ids(os.getenv("ADMIN_USER_IDS", ""))

# Web auth (JWT secret, initial admin bootstrap)
JWT_SECRET = os.getenv("JWT_SECRET", "change-me-in-production-use-long-random-string")
JWT_ALGORITHM = "HS256"
JWT_EXPIRE_DAYS = 7
INITIAL_ADMIN_USERNAME = os.getenv("INITIAL_ADMIN_USERNAME", "admin")
INITIAL_ADMIN_PASSWORD = os.getenv("INITIAL_ADMIN_PASSWORD", "")  # Set to bootstrap first admin


class VerificationSettings(BaseModel):
    """Verification code issuance."""

    code_length: int = 6
    ttl_minutes: int = 5
    sweep_interval_seconds: int = 300

    @field_validator("code_length")
    @classmethod
    def _check_length(cls, v: int) -> int:
        if not 4 <= v <= 10:
            raise ValueError("VERIFICATION_CODE_LENGTH must be between 4 and 10")
        return v

    @field_validator("ttl_minutes")
    @classmethod
    def _check_ttl(cls, v: int) -> int:
        if v < 1:
            raise ValueError("VERIFICATION_CODE_TTL_MINUTES must be at least 1")
        return v


class GroupRoleSettings(BaseModel):
    """Discord role IDs that map onto each Squad group."""

    head_admin: set[int] = Field(default_factory=set)
    squad_admin: set[int] = Field(default_factory=set)
    moderator: set[int] = Field(default_factory=set)
    member: set[int] = Field(default_factory=set)

    @model_validator(mode="after")
    def _no_shared_roles(self) -> "GroupRoleSettings":
        seen: dict[int, str] = {}
        for name in ("head_admin", "squad_admin", "moderator", "member"):
            for role_id in getattr(self, name):
                if role_id in seen:
                    raise ValueError(f"Role {role_id} is mapped to both {seen[role_id]} and {name}")
                seen[role_id] = name
        return self


class AwardRoleSettings(BaseModel):
    """Discord roles handed out alongside a whitelist grant."""

    service_member: Optional[int] = None
    first_responder: Optional[int] = None
    donator: Optional[int] = None

    def for_reason(self, reason: str) -> Optional[int]:
        return {
            "service-member": self.service_member,
            "first-responder": self.first_responder,
            "donator": self.donator,
            "donation": self.donator,
        }.get(reason)


class BattleMetricsSettings(BaseModel):
    token: str = ""
    base_url: str = "https://api.battlemetrics.com"
    whitelist_ban_list_id: str = ""
    member_flag_id: str = ""
    timeout_seconds: float = 15.0
    page_delay_seconds: float = 0.22


class Settings(BaseModel):
    """Validated runtime settings handed to each service."""

    guild_id: Optional[int] = None
    verification: VerificationSettings = Field(default_factory=VerificationSettings)
    unlink_cooldown_days: int = 30
    groups: GroupRoleSettings = Field(default_factory=GroupRoleSettings)
    award_roles: AwardRoleSettings = Field(default_factory=AwardRoleSettings)
    battlemetrics: BattleMetricsSettings = Field(default_factory=BattleMetricsSettings)
    whitelist_http_host: str = "0.0.0.0"
    whitelist_http_port: int = 3001
    internal_http_port: int = 8001
    sync_batch_size: int = 50
    sync_batch_delay_seconds: float = 1.0
    sync_interval_minutes: int = 60
    ticket_channel_prefix: str = "ticket-"
    donation_webhook_token: str = ""

    @field_validator("unlink_cooldown_days", "sync_batch_size")
    @classmethod
    def _positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v


def _optional_int(value: Optional[str]) -> Optional[int]:
    if value is None or not value.strip():
        return None
    return int(value.strip())


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """Build Settings from the environment. Raises ValueError listing every bad key."""
    env = os.environ if env is None else env
    errors = []

    def read_int(key: str, default: Optional[int]) -> Optional[int]:
        try:
            value = _optional_int(env.get(key))
        except ValueError:
            errors.append(f"{key} must be an integer")
            return default
        return default if value is None else value

    def read_float(key: str, default: float) -> float:
        raw = env.get(key)
        if not raw:
            return default
        try:
            return float(raw)
        except ValueError:
            errors.append(f"{key} must be a number")
            return default

    raw = {
        "guild_id": read_int("GUILD_ID", None),
        "verification": {
            "code_length": read_int("VERIFICATION_CODE_LENGTH", 6),
            "ttl_minutes": read_int("VERIFICATION_CODE_TTL_MINUTES", 5),
            "sweep_interval_seconds": read_int("VERIFICATION_SWEEP_SECONDS", 300),
        },
        "unlink_cooldown_days": read_int("UNLINK_COOLDOWN_DAYS", 30),
        "groups": {
            "head_admin": _parse_role_ids(env.get("HEAD_ADMIN_ROLE_IDS", "")),
            "squad_admin": _parse_role_ids(env.get("SQUAD_ADMIN_ROLE_IDS", "")),
            "moderator": _parse_role_ids(env.get("SQUAD_MODERATOR_ROLE_IDS", "")),
            "member": _parse_role_ids(env.get("MEMBER_ROLE_IDS", "")),
        },
        "award_roles": {
            "service_member": read_int("SERVICE_MEMBER_ROLE_ID", None),
            "first_responder": read_int("FIRST_RESPONDER_ROLE_ID", None),
            "donator": read_int("DONATOR_ROLE_ID", None),
        },
        "battlemetrics": {
            "token": env.get("BATTLEMETRICS_TOKEN", ""),
            "whitelist_ban_list_id": env.get("BATTLEMETRICS_BANLIST_ID", ""),
            "member_flag_id": env.get("BATTLEMETRICS_MEMBER_FLAG_ID", ""),
        },
        "whitelist_http_host": env.get("WHITELIST_HTTP_HOST", "0.0.0.0"),
        "whitelist_http_port": read_int("WHITELIST_HTTP_PORT", 3001),
        "internal_http_port": read_int("INTERNAL_HTTP_PORT", 8001),
        "sync_batch_size": read_int("ROLE_SYNC_BATCH_SIZE", 50),
        "sync_batch_delay_seconds": read_float("ROLE_SYNC_BATCH_DELAY", 1.0),
        "sync_interval_minutes": read_int("ROLE_SYNC_INTERVAL_MINUTES", 60),
        "ticket_channel_prefix": env.get("TICKET_CHANNEL_PREFIX", "ticket-"),
        "donation_webhook_token": env.get("DONATION_WEBHOOK_TOKEN", ""),
    }
    if errors:
        raise ValueError("Invalid configuration: " + "; ".join(errors))
    try:
        return Settings.model_validate(raw)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ValueError(f"Invalid configuration: {problems}") from e

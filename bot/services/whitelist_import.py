"""Import BattleMetrics whitelist entries and keep member flags in step."""
from __future__ import annotations

import logging
import math
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from bot.errors import ExternalDependencyError
from bot.models.base import utcnow
from bot.services.audit import Actor, AuditService
from bot.services.battlemetrics import BattleMetricsClient, BMWhitelist, FlagResult
from bot.services.steam_id import is_valid_steam_id
from bot.services.whitelist_grants import GrantParams, WhitelistGrantStore

logger = logging.getLogger("roster.import")

CATEGORY_KEYWORDS = (
    ("donator", ("donor", "donate", "donation", "patreon", "sponsor", "support")),
    ("first-responder", ("first responder", "firefighter", "paramedic", "emt", "police", "dispatcher", "911")),
    ("service-member", (
        "service member", "military", "veteran", "army", "navy", "marine",
        "air force", "coast guard", "national guard",
    )),
)


def categorize(entry: BMWhitelist) -> str:
    text = f"{entry.reason} {entry.note}".lower()
    for reason, keywords in CATEGORY_KEYWORDS:
        if any(k in text for k in keywords):
            return reason
    return "import"


def duration_until(expires_at: Optional[datetime], now: datetime) -> tuple[Optional[int], Optional[str]]:
    """Remaining time as whole days from now. (None, None) is permanent, 0 days is already expired."""
    if expires_at is None:
        return None, None
    seconds = (expires_at - now).total_seconds()
    if seconds <= 0:
        return 0, "days"
    return math.ceil(seconds / 86400), "days"


@dataclass
class ImportReport:
    dry_run: bool
    fetched: int = 0
    imported: int = 0
    already_imported: int = 0
    invalid: int = 0
    expired: int = 0
    by_reason: Counter = field(default_factory=Counter)


class WhitelistImporter:
    """One parameterized import flow for BattleMetrics whitelist entries.

    Entries are keyed by `battlemetrics:<id>` in `external_ref`, so running
    the import again only adds entries it has not seen.
    """

    def __init__(self, client: BattleMetricsClient, grants: WhitelistGrantStore, audit: AuditService):
        self._client = client
        self._grants = grants
        self._audit = audit

    async def import_whitelists(
        self,
        *,
        actor: Actor,
        dry_run: bool = False,
        include_expired: bool = False,
        search: Optional[str] = None,
    ) -> ImportReport:
        try:
            entries = await self._client.fetch_active_whitelists(search=search)
        except ExternalDependencyError as e:
            await self._audit.record_failure("WHITELIST_IMPORT", e, actor=actor, target_type="battlemetrics")
            raise
        report = ImportReport(dry_run=dry_run, fetched=len(entries))
        now = utcnow()
        for entry in entries:
            if not is_valid_steam_id(entry.steam_id64):
                report.invalid += 1
                continue
            ref = f"battlemetrics:{entry.id}"
            if await self._grants.find_by_external_ref(ref) is not None:
                report.already_imported += 1
                continue
            value, duration_type = duration_until(entry.expires_at, now)
            if value == 0:
                report.expired += 1
                if not include_expired:
                    continue
            reason = categorize(entry)
            report.by_reason[reason] += 1
            report.imported += 1
            if dry_run:
                continue
            await self._grants.grant_whitelist(
                GrantParams(
                    steam_id64=entry.steam_id64,
                    reason=reason,
                    granted_by=actor.label,
                    duration_value=value,
                    duration_type=duration_type,
                    eos_id=entry.eos_id,
                    username=entry.player_name,
                    source="import",
                    note=entry.note or entry.reason or None,
                    external_ref=ref,
                    metadata={
                        "battlemetrics_id": entry.id,
                        "battlemetrics_user_id": entry.user_id,
                        "original_reason": entry.reason,
                        "original_expires_at": entry.expires_at.isoformat() if entry.expires_at else None,
                        "original_created_at": entry.created_at.isoformat() if entry.created_at else None,
                    },
                ),
                actor=actor,
            )
        logger.info(
            "BattleMetrics import%s: %d fetched, %d imported, %d already imported, %d invalid, %d expired",
            " (dry run)" if dry_run else "", report.fetched, report.imported,
            report.already_imported, report.invalid, report.expired,
        )
        return report


class MemberFlagService:
    """Tags and untags players with the configured BattleMetrics member flag."""

    def __init__(self, client: BattleMetricsClient, flag_id: str):
        self._client = client
        self.flag_id = flag_id

    async def flag_member(self, steam_id64: str) -> FlagResult:
        player = await self._client.search_player_by_steam_id(steam_id64)
        if player is None:
            return FlagResult(success=False, error=f"{steam_id64} not found on BattleMetrics")
        flags = await self._client.get_player_flags(player.id)
        if any(f.name == self.flag_id for f in flags):
            return FlagResult(success=True, extra={"already_flagged": True})
        return await self._client.add_player_flag(player.id, self.flag_id)

    async def unflag_member(self, steam_id64: str) -> FlagResult:
        player = await self._client.search_player_by_steam_id(steam_id64)
        if player is None:
            return FlagResult(success=False, error=f"{steam_id64} not found on BattleMetrics")
        flags = [f for f in await self._client.get_player_flags(player.id) if f.name == self.flag_id]
        if not flags:
            return FlagResult(success=True, extra={"not_flagged": True})
        result = FlagResult(success=True)
        for flag in flags:
            result = await self._client.remove_player_flag(flag.id)
            if not result.success:
                break
        return result

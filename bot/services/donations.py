"""Donation webhook processing: pricing tiers to whitelist grants."""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Optional

from bot.errors import RosterError, ValidationError
from bot.models import WhitelistEntry
from bot.services.audit import Actor, AuditService
from bot.services.steam_id import extract_steam_ids
from bot.services.whitelist_grants import GrantParams, WhitelistGrantStore

logger = logging.getLogger("roster.donations")

DONATION_ACTOR = Actor("system", None, "donation-webhook")
MIN_DONATION = 10.0
MAX_DONATION = 10000.0


@dataclass(frozen=True)
class PricingTier:
    min_amount: float
    max_amount: Optional[float]
    people: int
    duration_value: int
    duration_type: str
    additional_person_cost: Optional[float] = None

    def covers(self, amount: float) -> bool:
        return amount >= self.min_amount and (self.max_amount is None or amount <= self.max_amount)

    def people_for(self, amount: float) -> int:
        if self.additional_person_cost and amount > self.min_amount:
            return self.people + math.floor((amount - self.min_amount) / self.additional_person_cost)
        return self.people


PRICING_TIERS = (
    PricingTier(10, 19.99, 1, 6, "months"),
    PricingTier(20, 24.99, 2, 12, "months"),
    PricingTier(25, None, 3, 12, "months", additional_person_cost=5),
)


def tier_for_amount(amount: float) -> Optional[PricingTier]:
    return next((t for t in PRICING_TIERS if t.covers(amount)), None)


@dataclass
class DonationResult:
    steam_ids: list[str]
    tier: PricingTier
    entries: list[WhitelistEntry] = field(default_factory=list)
    duplicates: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def partial(self) -> bool:
        return bool(self.errors) and bool(self.entries)


class DonationService:
    def __init__(self, grants: WhitelistGrantStore, audit: AuditService):
        self._grants = grants
        self._audit = audit

    async def process_donation(
        self,
        *,
        transaction_id: str,
        from_name: str,
        amount,
        message: Optional[str],
        email: Optional[str] = None,
    ) -> DonationResult:
        """Grant one entry per Steam ID in the donation message.

        A transaction is only processed once per Steam ID; replays of the same
        webhook are reported as duplicates.
        """
        try:
            return await self._process(transaction_id, from_name, amount, message, email)
        except RosterError as e:
            await self._audit.record_failure(
                "DONATION", e,
                actor=DONATION_ACTOR, target_type="donation", target_id=transaction_id, target_name=from_name,
                metadata={"amount": str(amount)}, severity="warning",
            )
            raise

    async def _process(self, transaction_id, from_name, amount, message, email) -> DonationResult:
        try:
            value = float(amount)
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid donation amount: {amount!r}") from None
        if math.isnan(value) or value < MIN_DONATION:
            raise ValidationError(f"Donation amount ${value:.2f} is below the ${MIN_DONATION:.0f} minimum")
        if value > MAX_DONATION:
            raise ValidationError(f"Donation amount ${value:.2f} exceeds the ${MAX_DONATION:.0f} maximum")
        tier = tier_for_amount(value)
        if tier is None:
            raise ValidationError(f"No pricing tier for ${value:.2f}")

        steam_ids = extract_steam_ids(message or "")
        expected = tier.people_for(value)
        if not steam_ids:
            raise ValidationError("No Steam IDs found in the donation message")
        if len(steam_ids) > expected:
            raise ValidationError(f"Too many Steam IDs: found {len(steam_ids)}, ${value:.2f} covers {expected}")
        if len(steam_ids) < expected:
            logger.warning("Donation %s has fewer Steam IDs than covered: %d/%d", transaction_id, len(steam_ids), expected)

        result = DonationResult(steam_ids=steam_ids, tier=tier)
        for steam_id64 in steam_ids:
            ref = f"donation:{transaction_id}:{steam_id64}"[:64]
            if await self._grants.find_by_external_ref(ref) is not None:
                result.duplicates.append(steam_id64)
                continue
            try:
                entry = await self._grants.grant_whitelist(
                    GrantParams(
                        steam_id64=steam_id64,
                        reason="donation",
                        granted_by=DONATION_ACTOR.label,
                        duration_value=tier.duration_value,
                        duration_type=tier.duration_type,
                        discord_username=from_name,
                        source="donation",
                        note=(message or "")[:500] or None,
                        external_ref=ref,
                        metadata={
                            "donation_amount": value,
                            "donor_name": from_name,
                            "donor_email": email,
                            "transaction_id": transaction_id,
                        },
                    ),
                    actor=DONATION_ACTOR,
                )
            except RosterError as e:
                # The grant store has already audited the failure
                result.errors[steam_id64] = str(e)
                continue
            result.entries.append(entry)
        logger.info(
            "Donation %s from %s ($%.2f): %d granted, %d duplicate, %d failed",
            transaction_id, from_name, value, len(result.entries), len(result.duplicates), len(result.errors),
        )
        return result

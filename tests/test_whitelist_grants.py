"""Tests for the whitelist grant store."""
from datetime import datetime, timedelta

import pytest

from bot.errors import NotFoundError, ValidationError
from bot.models import WhitelistEntry
from bot.models.base import utcnow
from bot.services.whitelist_grants import GrantParams, compute_expiration, is_entry_active, summarize
from conftest import STEAM_A, STEAM_B


def grant(steam_id64=STEAM_A, **kwargs):
    kwargs.setdefault("reason", "donator")
    kwargs.setdefault("granted_by", "admin")
    return GrantParams(steam_id64=steam_id64, **kwargs)


def test_compute_expiration_months_clamps_to_month_end():
    assert compute_expiration(datetime(2024, 1, 31), 1, "months") == datetime(2024, 2, 29)
    assert compute_expiration(datetime(2023, 1, 31), 1, "months") == datetime(2023, 2, 28)
    assert compute_expiration(datetime(2024, 3, 1), 10, "days") == datetime(2024, 3, 11)
    assert compute_expiration(datetime(2024, 3, 1), None, None) is None


def test_compute_expiration_unknown_type():
    with pytest.raises(ValidationError):
        compute_expiration(datetime(2024, 3, 1), 1, "weeks")


def test_zero_duration_is_never_active():
    entry = WhitelistEntry(
        steam_id64=STEAM_A, reason="donator", granted_at=utcnow(), duration_value=0, duration_type="days"
    )
    assert not is_entry_active(entry)


def test_summarize_statuses():
    now = datetime(2025, 6, 1)
    expired = WhitelistEntry(
        steam_id64=STEAM_A, reason="donator", granted_at=datetime(2024, 1, 1),
        duration_value=1, duration_type="months", revoked=False,
    )
    current = WhitelistEntry(
        steam_id64=STEAM_A, reason="donator", granted_at=datetime(2025, 5, 1),
        duration_value=3, duration_type="months", revoked=False,
    )
    permanent = WhitelistEntry(steam_id64=STEAM_A, reason="reporting", granted_at=datetime(2020, 1, 1), revoked=False)

    assert summarize([], now).status == "No whitelist"
    assert summarize([expired], now).status == "Expired"
    status = summarize([expired, current], now)
    assert status.has_whitelist
    assert status.status == "Active until 2025-08-01"
    assert status.active_entries == [current]
    assert summarize([current, permanent], now).status == "Active (permanent)"


@pytest.mark.asyncio
async def test_grants_stack_and_furthest_expiry_wins(services):
    await services.grants.grant_whitelist(grant(duration_value=1, duration_type="months"))
    await services.grants.grant_whitelist(grant(duration_value=6, duration_type="months", reason="service-member"))

    status = await services.grants.get_active_whitelist_for_user(STEAM_A)
    assert status.has_whitelist
    assert len(status.active_entries) == 2
    assert status.expiration > utcnow() + timedelta(days=150)
    assert len(await services.grants.history(STEAM_A)) == 2


@pytest.mark.asyncio
async def test_grant_validation(services):
    with pytest.raises(ValidationError):
        await services.grants.grant_whitelist(grant(reason="bribery"))
    with pytest.raises(ValidationError):
        await services.grants.grant_whitelist(grant(source="carrier-pigeon"))
    with pytest.raises(ValidationError):
        await services.grants.grant_whitelist(grant(duration_value=-1, duration_type="days"))
    with pytest.raises(ValidationError):
        await services.grants.grant_whitelist(grant(duration_value=3, duration_type="years"))
    with pytest.raises(ValidationError):
        await services.grants.grant_whitelist(grant(steam_id64="not-a-steam-id"))


@pytest.mark.asyncio
async def test_permanent_grant(services):
    entry = await services.grants.grant_whitelist(grant(reason="reporting"))
    assert entry.duration_value is None
    assert entry.duration_type is None
    status = await services.grants.get_active_whitelist_for_user(STEAM_A)
    assert status.is_permanent
    assert status.status == "Active (permanent)"


@pytest.mark.asyncio
async def test_extend_stacks_after_current_expiry(services):
    first = await services.grants.grant_whitelist(grant(duration_value=2, duration_type="months"))
    first_expiry = compute_expiration(first.granted_at, 2, "months")

    before = utcnow()
    extension = await services.grants.extend_whitelist(STEAM_A, 3, "admin")
    assert extension.starts_at == first_expiry
    assert before <= extension.granted_at <= utcnow()
    assert extension.reason == "donator"
    assert extension.metadata_["extension"] is True

    status = await services.grants.get_active_whitelist_for_user(STEAM_A)
    assert status.expiration == compute_expiration(first_expiry, 3, "months")


@pytest.mark.asyncio
async def test_extend_requires_history_and_positive_months(services):
    with pytest.raises(NotFoundError):
        await services.grants.extend_whitelist(STEAM_A, 1, "admin")
    await services.grants.grant_whitelist(grant(duration_value=1, duration_type="months"))
    with pytest.raises(ValidationError):
        await services.grants.extend_whitelist(STEAM_A, 0, "admin")


@pytest.mark.asyncio
async def test_revoke_only_touches_active_entries(services):
    await services.grants.grant_whitelist(grant(duration_value=1, duration_type="months"))
    await services.grants.grant_whitelist(grant(reason="reporting"))
    await services.grants.grant_whitelist(
        grant(duration_value=1, duration_type="days", granted_at=utcnow() - timedelta(days=10))
    )

    assert await services.grants.revoke_whitelist(STEAM_A, "abuse", "admin") == 2
    assert await services.grants.revoke_whitelist(STEAM_A, "abuse", "admin") == 0

    history = await services.grants.history(STEAM_A)
    assert sum(1 for e in history if e.revoked) == 2
    assert all(e.revoked_reason == "abuse" for e in history if e.revoked)
    status = await services.grants.get_active_whitelist_for_user(STEAM_A)
    assert not status.has_whitelist
    assert status.status == "Expired"


@pytest.mark.asyncio
async def test_list_active_entries_skips_revoked_and_expired(services):
    await services.grants.grant_whitelist(grant(STEAM_B, duration_value=1, duration_type="months"))
    await services.grants.grant_whitelist(grant(STEAM_A, reason="reporting"))
    await services.grants.grant_whitelist(grant(STEAM_A, duration_value=0, duration_type="days"))
    await services.grants.grant_whitelist(
        grant(STEAM_B, duration_value=1, duration_type="days", granted_at=utcnow() - timedelta(days=5))
    )

    active = await services.grants.list_active_entries()
    assert [(e.steam_id64, e.reason) for e in active] == [(STEAM_A, "reporting"), (STEAM_B, "donator")]


@pytest.mark.asyncio
async def test_grant_is_audited(services):
    await services.grants.grant_whitelist(grant(duration_value=1, duration_type="months"))
    rows = await services.audit.recent(target_id=STEAM_A, action_type="WHITELIST_GRANT")
    assert len(rows) == 1
    assert rows[0].after_state["reason"] == "donator"


@pytest.mark.asyncio
async def test_update_discord_username(services):
    await services.grants.grant_whitelist(grant(duration_value=1, duration_type="months"))
    assert await services.grants.update_discord_username(STEAM_A, 42, "sniper") == 1
    assert await services.grants.update_discord_username(STEAM_A, 42, "sniper") == 0
    (entry,) = await services.grants.history(STEAM_A)
    assert entry.discord_user_id == 42


@pytest.mark.asyncio
async def test_extend_after_expiry_starts_now(services):
    await services.grants.grant_whitelist(
        grant(duration_value=1, duration_type="days", granted_at=utcnow() - timedelta(days=10))
    )
    extension = await services.grants.extend_whitelist(STEAM_A, 1, "admin")
    assert extension.starts_at is None
    status = await services.grants.get_active_whitelist_for_user(STEAM_A)
    assert status.expiration == compute_expiration(extension.granted_at, 1, "months")


@pytest.mark.asyncio
async def test_rejected_grant_is_audited(services):
    with pytest.raises(ValidationError):
        await services.grants.grant_whitelist(grant(reason="bribery"))
    rows = await services.audit.recent(target_id=STEAM_A, action_type="WHITELIST_GRANT")
    assert len(rows) == 1
    assert not rows[0].success
    assert rows[0].metadata_["reason"] == "bribery"
    assert "bribery" in rows[0].error_message


@pytest.mark.asyncio
async def test_failed_extend_is_audited(services):
    with pytest.raises(NotFoundError):
        await services.grants.extend_whitelist(STEAM_A, 2, "admin")
    rows = await services.audit.recent(target_id=STEAM_A, action_type="WHITELIST_EXTEND")
    assert [r.success for r in rows] == [False]
    assert rows[0].metadata_["months"] == 2


@pytest.mark.asyncio
async def test_failed_revoke_is_audited(services):
    with pytest.raises(ValidationError):
        await services.grants.revoke_whitelist("not-a-steam-id", "abuse", "admin")
    rows = await services.audit.recent(target_id="not-a-steam-id", action_type="WHITELIST_REVOKE")
    assert [r.success for r in rows] == [False]

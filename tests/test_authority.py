"""Tests for the whitelist authority resolver."""
from datetime import timedelta

import pytest

from bot.models import LinkSource
from bot.models.base import utcnow
from bot.services.authority import NO_ACTIVE_GRANT, NO_STEAM_ACCOUNT_LINKED, SECURITY_BLOCKED
from bot.services.whitelist_grants import GrantParams
from conftest import MEMBER_ROLE, MODERATOR_ROLE, STEAM_A, STEAM_B


async def grant(services, steam_id64=STEAM_A, **kwargs):
    kwargs.setdefault("duration_value", 1)
    kwargs.setdefault("duration_type", "months")
    return await services.grants.grant_whitelist(
        GrantParams(steam_id64=steam_id64, reason="donator", granted_by="admin", **kwargs)
    )


@pytest.mark.asyncio
async def test_no_link(services):
    status = await services.authority.get_whitelist_status(1)
    assert not status.is_whitelisted
    assert status.reason == NO_STEAM_ACCOUNT_LINKED
    assert status.steam_id64 is None


@pytest.mark.asyncio
async def test_linked_without_grant(services):
    await services.links.create_or_update_link(1, STEAM_A, link_source=LinkSource.SELF_VERIFIED)
    status = await services.authority.get_whitelist_status(1)
    assert not status.is_whitelisted
    assert status.reason == NO_ACTIVE_GRANT
    assert status.database.status == "No whitelist"


@pytest.mark.asyncio
async def test_database_grant(services):
    await services.links.create_or_update_link(1, STEAM_A, link_source=LinkSource.WHITELIST_CREATED)
    await grant(services)
    status = await services.authority.get_whitelist_status(1)
    assert status.is_whitelisted
    assert status.primary_source == "database"
    assert status.expiration > utcnow() + timedelta(days=27)
    assert status.actual_confidence == 0.5


@pytest.mark.asyncio
async def test_explicit_steam_id_overrides_link(services):
    await services.links.create_or_update_link(1, STEAM_A, link_source=LinkSource.SELF_VERIFIED)
    await grant(services, STEAM_B)
    assert not (await services.authority.get_whitelist_status(1)).is_whitelisted
    assert (await services.authority.get_whitelist_status(1, steam_id64=STEAM_B)).is_whitelisted


@pytest.mark.asyncio
async def test_role_signal_without_entry(services, make_member):
    member = make_member(1, "member1", [MEMBER_ROLE])
    await services.links.create_or_update_link(1, STEAM_A, link_source=LinkSource.TICKET_DETECTED)
    status = await services.authority.get_whitelist_status(1, member=member)
    assert status.is_whitelisted
    assert status.primary_source == "role"
    assert status.role.group == "Member"
    assert status.is_permanent


@pytest.mark.asyncio
async def test_blocked_staff(services, make_member):
    member = make_member(1, "mod1", [MODERATOR_ROLE])
    await services.links.create_or_update_link(1, STEAM_A, link_source=LinkSource.MANUAL_ADMIN)
    status = await services.authority.get_whitelist_status(1, member=member)
    assert not status.is_whitelisted
    assert status.reason == SECURITY_BLOCKED
    assert status.role.held_group == "Moderator"
    assert status.actual_confidence == 0.7
    assert status.required_confidence == 1.0


@pytest.mark.asyncio
async def test_blocked_staff_with_member_role_keeps_member_access(services, make_member):
    member = make_member(1, "mod1", [MODERATOR_ROLE, MEMBER_ROLE])
    await services.links.create_or_update_link(1, STEAM_A, link_source=LinkSource.MANUAL_ADMIN)
    status = await services.authority.get_whitelist_status(1, member=member)
    assert status.is_whitelisted
    assert status.role.blocked
    assert status.role.group == "Member"


@pytest.mark.asyncio
async def test_database_wins_over_blocked_role(services, make_member):
    member = make_member(1, "mod1", [MODERATOR_ROLE])
    await services.links.create_or_update_link(1, STEAM_A, link_source=LinkSource.MANUAL_ADMIN)
    await grant(services)
    status = await services.authority.get_whitelist_status(1, member=member)
    assert status.is_whitelisted
    assert status.primary_source == "database"
    assert status.reason is None
    assert status.role.blocked

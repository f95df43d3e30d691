"""Tests for the admin grant and revoke flows."""
import pytest

from bot.errors import NotFoundError, ValidationError
from bot.models import LinkSource
from bot.services.audit import Actor
from bot.services.role_groups import SQUAD_ADMIN
from conftest import DONATOR_ROLE, MEMBER_ROLE, SERVICE_MEMBER_ROLE, SQUAD_ADMIN_ROLE, STEAM_A, STEAM_B

ADMIN = Actor("admin", "9", "boss")


@pytest.mark.asyncio
async def test_grant_creates_link_entry_and_role(services, make_member):
    member = make_member(1, "player1")
    result = await services.grant_flow.grant(steam_id64=STEAM_A, reason="service-member", actor=ADMIN, member=member)

    assert not result.partial
    assert result.link_created
    assert result.link.link_source == "whitelist-created"
    assert result.link.confidence_score == 0.5
    assert result.entry.duration_value == 6
    assert result.entry.duration_type == "months"
    assert result.entry.discord_user_id == 1
    assert result.entry.granted_by == "boss"
    assert result.role_assigned
    assert SERVICE_MEMBER_ROLE in {r.id for r in member.roles}


@pytest.mark.asyncio
async def test_grant_keeps_existing_link(services, make_member):
    member = make_member(1, "player1")
    await services.links.create_or_update_link(1, STEAM_B, link_source=LinkSource.SELF_VERIFIED)
    result = await services.grant_flow.grant(
        steam_id64=STEAM_A, reason="donator", actor=ADMIN, member=member, duration_value=30, duration_type="days"
    )
    assert not result.link_created
    assert result.link.steam_id64 == STEAM_B
    assert result.partial
    assert "already linked" in result.warnings[0]
    assert result.entry.steam_id64 == STEAM_A


@pytest.mark.asyncio
async def test_role_failure_is_a_warning(services, make_member):
    member = make_member(1, "player1")
    member.fail_role_changes = True
    result = await services.grant_flow.grant(
        steam_id64=STEAM_A, reason="donator", actor=ADMIN, member=member, duration_value=1, duration_type="months"
    )
    assert result.partial
    assert not result.role_assigned
    assert "Donator" in result.warnings[0]
    status = await services.grants.get_active_whitelist_for_user(STEAM_A)
    assert status.has_whitelist
    rows = await services.audit.recent(target_id=1, action_type="ROLE_ASSIGN")
    assert len(rows) == 1
    assert not rows[0].success


@pytest.mark.asyncio
async def test_reporting_grant_is_permanent_without_role(services, make_member):
    member = make_member(1, "player1")
    result = await services.grant_flow.grant(steam_id64=STEAM_A, reason="reporting", actor=ADMIN, member=member)
    assert result.entry.duration_value is None
    assert not result.role_assigned
    assert not result.partial


@pytest.mark.asyncio
async def test_grant_without_member(services):
    result = await services.grant_flow.grant(
        steam_id64=STEAM_A, reason="donator", actor=ADMIN, duration_value=3, duration_type="months"
    )
    assert result.link is None
    assert result.entry.discord_user_id is None


@pytest.mark.asyncio
async def test_duration_needs_type(services):
    with pytest.raises(ValidationError):
        await services.grant_flow.grant(steam_id64=STEAM_A, reason="donator", actor=ADMIN, duration_value=3)


@pytest.mark.asyncio
async def test_revoke_strips_award_roles_when_nothing_left(services, make_member):
    member = make_member(1, "player1", [DONATOR_ROLE, SERVICE_MEMBER_ROLE])
    await services.grant_flow.grant(
        steam_id64=STEAM_A, reason="donator", actor=ADMIN, member=member, duration_value=1, duration_type="months"
    )
    result = await services.grant_flow.revoke(steam_id64=STEAM_A, reason="chargeback", actor=ADMIN, member=member)
    assert result.revoked == 1
    assert sorted(result.roles_removed) == ["Donator", "Service Member"]
    assert member.roles == []


@pytest.mark.asyncio
async def test_revoke_nothing_active(services, make_member):
    member = make_member(1, "player1", [DONATOR_ROLE])
    result = await services.grant_flow.revoke(steam_id64=STEAM_A, reason=None, actor=ADMIN, member=member)
    assert result.revoked == 0
    assert result.roles_removed == []
    assert [r.id for r in member.roles] == [DONATOR_ROLE]


@pytest.mark.asyncio
async def test_admin_unlink_revokes_everything_tied_to_the_member(services, make_member):
    member = make_member(1, "admin1", [SQUAD_ADMIN_ROLE, DONATOR_ROLE, MEMBER_ROLE])
    await services.links.create_or_update_link(1, STEAM_A, link_source=LinkSource.SELF_VERIFIED)
    await services.role_sync.sync_user_role(1, SQUAD_ADMIN, member)
    await services.grant_flow.grant(
        steam_id64=STEAM_A, reason="donator", actor=ADMIN, member=member, duration_value=1, duration_type="months"
    )
    await services.grant_flow.grant(steam_id64=STEAM_B, reason="reporting", actor=ADMIN)

    result = await services.grant_flow.admin_unlink(
        1, reason="account sold", actor=ADMIN, member=member, remove_roles=True
    )
    assert result.steam_ids == [STEAM_A]
    assert result.revoked == 2
    assert sorted(result.roles_removed) == ["Donator", "Member", "Squad Admin"]
    assert member.roles == []
    assert await services.links.find_by_discord_id(1) == []
    assert not (await services.grants.get_active_whitelist_for_user(STEAM_A)).has_whitelist
    assert (await services.grants.get_active_whitelist_for_user(STEAM_B)).has_whitelist
    revoked = [e for e in await services.grants.history(STEAM_A) if e.revoked]
    assert all(e.revoked_reason == "Admin unlink: account sold" for e in revoked)
    assert await services.links.cooldown_for(1) is not None


@pytest.mark.asyncio
async def test_admin_unlink_keeps_roles_by_default(services, make_member):
    member = make_member(1, "player1", [DONATOR_ROLE])
    await services.links.create_or_update_link(1, STEAM_A, link_source=LinkSource.MANUAL_ADMIN)
    result = await services.grant_flow.admin_unlink(1, reason="duplicate account", actor=ADMIN, member=member)
    assert result.revoked == 0
    assert result.roles_removed == []
    assert [r.id for r in member.roles] == [DONATOR_ROLE]


@pytest.mark.asyncio
async def test_admin_unlink_failures_are_audited(services):
    with pytest.raises(ValidationError):
        await services.grant_flow.admin_unlink(1, reason=" ", actor=ADMIN)
    with pytest.raises(NotFoundError):
        await services.grant_flow.admin_unlink(1, reason="cleanup", actor=ADMIN)
    rows = await services.audit.recent(target_id=1, action_type="ADMIN_UNLINK")
    assert [r.success for r in rows] == [False, False]

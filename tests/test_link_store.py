"""Tests for the link store: primaries, confidence, cooldowns."""
from collections import Counter
from datetime import timedelta

import pytest
from hypothesis import HealthCheck, given, settings as hypothesis_settings, strategies as st
from sqlalchemy import select
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from bot.errors import ConflictError, LinkCooldownError, NotFoundError, RosterError, ValidationError
from bot.models import AuditLog, LinkSource, PlayerDiscordLink
from bot.models.base import init_db, make_session_factory, utcnow
from bot.services.audit import Actor
from bot.services.container import build_services
from config import load_settings
from conftest import STEAM_A, STEAM_B, STEAM_C, TEST_ENV

USER = 5001
OTHER_USER = 5002
ADMIN = Actor("admin", "1", "admin#0001")


async def _primaries(session_factory, discord_user_id):
    async with session_factory() as session:
        result = await session.execute(
            select(PlayerDiscordLink).where(
                PlayerDiscordLink.discord_user_id == discord_user_id, PlayerDiscordLink.is_primary.is_(True)
            )
        )
        return list(result.scalars().all())


@pytest.mark.asyncio
async def test_first_link_is_primary_with_source_confidence(services):
    result = await services.links.create_or_update_link(USER, STEAM_A, link_source=LinkSource.MANUAL_ADMIN)
    assert result.created
    assert result.link.is_primary
    assert result.link.confidence_score == 0.7
    assert result.link.link_source == "manual-admin"


@pytest.mark.asyncio
async def test_at_most_one_primary_over_relinks(services, session_factory):
    await services.links.create_or_update_link(USER, STEAM_A, link_source=LinkSource.MANUAL_ADMIN)
    await services.links.create_or_update_link(USER, STEAM_B, link_source=LinkSource.MANUAL_ADMIN)
    await services.links.create_or_update_link(USER, STEAM_C, link_source=LinkSource.SELF_VERIFIED)
    await services.links.create_or_update_link(USER, STEAM_A, link_source=LinkSource.SELF_VERIFIED)

    primaries = await _primaries(session_factory, USER)
    assert [p.steam_id64 for p in primaries] == [STEAM_A]
    links = await services.links.find_by_discord_id(USER)
    assert len(links) == 3


@pytest.mark.asyncio
async def test_lower_confidence_link_stays_secondary(services):
    await services.links.create_or_update_link(USER, STEAM_A, link_source=LinkSource.SELF_VERIFIED)
    result = await services.links.create_or_update_link(USER, STEAM_B, link_source=LinkSource.TICKET_DETECTED)
    assert result.created
    assert not result.link.is_primary
    primary = await services.links.find_primary_by_discord_id(USER)
    assert primary.steam_id64 == STEAM_A


@pytest.mark.asyncio
async def test_lower_source_never_lowers_confidence(services):
    await services.links.create_or_update_link(USER, STEAM_A, link_source=LinkSource.SELF_VERIFIED)
    result = await services.links.create_or_update_link(
        USER, STEAM_A, username="NewName", link_source=LinkSource.TICKET_DETECTED
    )
    assert not result.created
    assert result.link.confidence_score == 1.0
    assert result.link.link_source == "self-verified"
    assert result.link.username == "NewName"


@pytest.mark.asyncio
async def test_confidence_must_match_source(services):
    with pytest.raises(ValidationError):
        await services.links.create_or_update_link(
            USER, STEAM_A, link_source=LinkSource.MANUAL_ADMIN, confidence_score=1.0
        )


@pytest.mark.asyncio
async def test_invalid_steam_id_rejected(services):
    with pytest.raises(ValidationError):
        await services.links.create_or_update_link(USER, "12345", link_source=LinkSource.MANUAL_ADMIN)


@pytest.mark.asyncio
async def test_other_users_primary_needs_verification_to_take_over(services):
    await services.links.create_or_update_link(OTHER_USER, STEAM_A, link_source=LinkSource.MANUAL_ADMIN)
    with pytest.raises(ConflictError):
        await services.links.create_or_update_link(USER, STEAM_A, link_source=LinkSource.WHITELIST_CREATED)

    result = await services.links.create_or_update_link(USER, STEAM_A, link_source=LinkSource.SELF_VERIFIED)
    assert result.link.is_primary
    owner = await services.links.find_primary_by_steam_id(STEAM_A)
    assert owner.discord_user_id == USER


@pytest.mark.asyncio
async def test_unlink_cooldown_blocks_different_steam_id(services):
    await services.links.create_or_update_link(USER, STEAM_A, link_source=LinkSource.SELF_VERIFIED)
    result = await services.links.unlink(USER, "switching accounts")
    assert result.steam_ids == [STEAM_A]
    assert await services.links.find_by_discord_id(USER) == []

    with pytest.raises(LinkCooldownError):
        await services.links.create_or_update_link(USER, STEAM_B, link_source=LinkSource.SELF_VERIFIED)

    relinked = await services.links.create_or_update_link(USER, STEAM_A, link_source=LinkSource.SELF_VERIFIED)
    assert relinked.link.is_primary


@pytest.mark.asyncio
async def test_admin_link_ignores_cooldown(services):
    await services.links.create_or_update_link(USER, STEAM_A, link_source=LinkSource.SELF_VERIFIED)
    await services.links.unlink(USER)
    result = await services.links.create_or_update_link(
        USER, STEAM_B, link_source=LinkSource.MANUAL_ADMIN, actor=ADMIN
    )
    assert result.link.steam_id64 == STEAM_B


@pytest.mark.asyncio
async def test_unlink_without_links(services):
    with pytest.raises(NotFoundError):
        await services.links.unlink(USER)


@pytest.mark.asyncio
async def test_upgrade_confidence_requires_reason_and_is_audited(services):
    await services.links.create_or_update_link(USER, STEAM_A, link_source=LinkSource.MANUAL_ADMIN)
    with pytest.raises(ValidationError):
        await services.links.upgrade_confidence(USER, STEAM_A, actor=ADMIN, reason="  ")

    link = await services.links.upgrade_confidence(USER, STEAM_A, actor=ADMIN, reason="Verified on voice call")
    assert link.confidence_score == 1.0
    rows = await services.audit.recent(target_id=USER, action_type="CONFIDENCE_UPGRADE")
    upgraded = [r for r in rows if r.success]
    assert len(upgraded) == 1
    assert upgraded[0].actor_name == "admin#0001"
    assert upgraded[0].metadata_["reason"] == "Verified on voice call"
    failed = [r for r in rows if not r.success]
    assert len(failed) == 1
    assert "reason is required" in failed[0].error_message


@pytest.mark.asyncio
async def test_upgrade_missing_link(services):
    with pytest.raises(NotFoundError):
        await services.links.upgrade_confidence(USER, STEAM_A, actor=ADMIN, reason="x")


@pytest.mark.asyncio
async def test_demotion_is_audited(services, session_factory):
    await services.links.create_or_update_link(USER, STEAM_A, link_source=LinkSource.MANUAL_ADMIN)
    result = await services.links.create_or_update_link(USER, STEAM_B, link_source=LinkSource.SELF_VERIFIED)
    assert [d.steam_id64 for d in result.demoted] == [STEAM_A]
    async with session_factory() as session:
        actions = (await session.execute(select(AuditLog.action_type))).scalars().all()
    assert actions.count("LINK_CREATED") == 2
    assert "LINK_DEMOTED" in actions


@pytest.mark.asyncio
async def test_equal_confidence_claim_cannot_share_a_primary(services):
    await services.links.create_or_update_link(OTHER_USER, STEAM_A, link_source=LinkSource.MANUAL_ADMIN)
    with pytest.raises(ConflictError):
        await services.links.create_or_update_link(
            USER, STEAM_A, link_source=LinkSource.MANUAL_ADMIN, actor=ADMIN
        )
    owners = await services.links.find_by_steam_id(STEAM_A)
    assert [link.discord_user_id for link in owners if link.is_primary] == [OTHER_USER]
    assert await services.links.find_by_discord_id(USER) == []


@pytest.mark.asyncio
async def test_higher_confidence_claim_takes_over_ticket_link(services):
    await services.links.create_or_update_link(OTHER_USER, STEAM_A, link_source=LinkSource.TICKET_DETECTED)
    result = await services.links.create_or_update_link(
        USER, STEAM_A, link_source=LinkSource.MANUAL_ADMIN, actor=ADMIN
    )
    assert result.link.is_primary
    owners = await services.links.find_by_steam_id(STEAM_A)
    assert [link.discord_user_id for link in owners if link.is_primary] == [USER]
    assert await services.links.find_primary_by_discord_id(OTHER_USER) is None


@pytest.mark.asyncio
async def test_rejected_links_are_audited(services):
    await services.links.create_or_update_link(OTHER_USER, STEAM_A, link_source=LinkSource.MANUAL_ADMIN)
    with pytest.raises(ConflictError):
        await services.links.create_or_update_link(USER, STEAM_A, link_source=LinkSource.TICKET_DETECTED)

    await services.links.create_or_update_link(USER, STEAM_B, link_source=LinkSource.SELF_VERIFIED)
    await services.links.unlink(USER, "switching")
    with pytest.raises(LinkCooldownError):
        await services.links.create_or_update_link(USER, STEAM_C, link_source=LinkSource.SELF_VERIFIED)

    rows = await services.audit.recent(target_id=USER, action_type="LINK_CREATED")
    failed = [r for r in rows if not r.success]
    assert len(failed) == 2
    assert {r.metadata_["steam_id64"] for r in failed} == {STEAM_A, STEAM_C}
    assert all(r.severity == "warning" for r in failed)


@pytest.mark.asyncio
async def test_unlink_without_links_is_audited(services):
    with pytest.raises(NotFoundError):
        await services.links.unlink(USER)
    rows = await services.audit.recent(target_id=USER, action_type="LINK_REMOVED")
    assert len(rows) == 1
    assert not rows[0].success


@pytest.mark.asyncio
async def test_missing_link_upgrade_is_audited(services):
    with pytest.raises(NotFoundError):
        await services.links.upgrade_confidence(USER, STEAM_A, actor=ADMIN, reason="x")
    rows = await services.audit.recent(target_id=USER, action_type="CONFIDENCE_UPGRADE")
    assert [r.success for r in rows] == [False]
    assert rows[0].actor_name == "admin#0001"


@pytest.mark.asyncio
async def test_cooldown_for(services):
    assert await services.links.cooldown_for(USER) is None
    await services.links.create_or_update_link(USER, STEAM_A, link_source=LinkSource.SELF_VERIFIED)
    before = utcnow()
    result = await services.links.unlink(USER)

    cooldown = await services.links.cooldown_for(USER)
    assert cooldown.steam_ids == [STEAM_A]
    assert cooldown.ends_at == result.cooldown_ends_at
    assert cooldown.ends_at >= before + timedelta(days=services.links.cooldown_days)


_users = st.sampled_from([USER, OTHER_USER, 5003])
_steams = st.sampled_from([STEAM_A, STEAM_B, STEAM_C])
_sources = st.sampled_from(
    [LinkSource.SELF_VERIFIED, LinkSource.MANUAL_ADMIN, LinkSource.WHITELIST_CREATED, LinkSource.TICKET_DETECTED]
)
_operations = st.lists(
    st.one_of(
        st.tuples(st.just("link"), _users, _steams, _sources, st.booleans()),
        st.tuples(st.just("unlink"), _users),
    ),
    max_size=12,
)


async def _primary_counts(session_factory):
    async with session_factory() as session:
        result = await session.execute(select(PlayerDiscordLink).where(PlayerDiscordLink.is_primary.is_(True)))
        primaries = list(result.scalars().all())
    return Counter(p.discord_user_id for p in primaries), Counter(p.steam_id64 for p in primaries)


@pytest.mark.asyncio
@hypothesis_settings(max_examples=40, deadline=None, suppress_health_check=[HealthCheck.function_scoped_fixture])
@given(operations=_operations)
async def test_one_primary_per_user_and_steam_id(operations):
    eng = create_async_engine("sqlite+aiosqlite://", poolclass=StaticPool)
    await init_db(eng)
    factory = make_session_factory(eng)
    svc = build_services(load_settings(TEST_ENV), factory)
    try:
        for op in operations:
            try:
                if op[0] == "link":
                    _, user, steam_id, source, as_admin = op
                    await svc.links.create_or_update_link(
                        user, steam_id, link_source=source, **({"actor": ADMIN} if as_admin else {})
                    )
                else:
                    await svc.links.unlink(op[1])
            except RosterError:
                pass
            by_user, by_steam = await _primary_counts(factory)
            assert all(count == 1 for count in by_user.values()), (op, by_user)
            assert all(count == 1 for count in by_steam.values()), (op, by_steam)
    finally:
        await svc.close()
        await eng.dispose()

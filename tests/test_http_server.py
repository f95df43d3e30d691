"""Tests for the bot's whitelist and internal HTTP servers."""
from types import SimpleNamespace

import pytest
from aiohttp.test_utils import TestClient, TestServer

from bot.http_server import create_app, create_whitelist_app
from bot.models import LinkSource
from bot.services.whitelist_grants import GrantParams
from conftest import GUILD_ID, MEMBER_ROLE, SQUAD_ADMIN_ROLE, STEAM_A, STEAM_B, FakeClient

AUTH = {"Authorization": "Bearer internal-secret"}


@pytest.fixture
async def whitelist_client(services):
    async with TestClient(TestServer(create_whitelist_app(services))) as client:
        yield client


@pytest.fixture
async def internal_client(services, guild):
    bot = SimpleNamespace(services=services, get_guild=FakeClient(guild).get_guild)
    async with TestClient(TestServer(create_app(bot))) as client:
        yield client


@pytest.mark.asyncio
async def test_whitelist_endpoint(services, whitelist_client):
    await services.grants.grant_whitelist(
        GrantParams(steam_id64=STEAM_A, reason="donator", granted_by="admin", eos_id="0002abcdef")
    )
    resp = await whitelist_client.get("/whitelist")
    assert resp.status == 200
    assert resp.content_type == "text/plain"
    text = await resp.text()
    assert "Group=Whitelist:reserve" in text
    assert f"Admin={STEAM_A}:Whitelist" in text

    resp = await whitelist_client.get("/whitelist?eos=1")
    assert "Admin=0002abcdef:Whitelist" in await resp.text()


@pytest.mark.asyncio
async def test_staff_endpoint(services, make_member, whitelist_client):
    member = make_member(1, "admin1", [SQUAD_ADMIN_ROLE])
    await services.links.create_or_update_link(1, STEAM_A, link_source=LinkSource.SELF_VERIFIED)
    await services.role_sync.sync_user_role(1, "SquadAdmin", member)
    await services.grants.grant_whitelist(GrantParams(steam_id64=STEAM_B, reason="donator", granted_by="admin"))

    text = await (await whitelist_client.get("/staff")).text()
    assert f"Admin={STEAM_A}:SquadAdmin" in text
    assert STEAM_B not in text


@pytest.mark.asyncio
async def test_internal_requires_secret(internal_client):
    resp = await internal_client.post("/internal/role-sync", json={})
    assert resp.status == 401
    resp = await internal_client.post(
        "/internal/role-sync", json={}, headers={"Authorization": "Bearer wrong"}
    )
    assert resp.status == 401


@pytest.mark.asyncio
async def test_internal_rejects_bad_json(internal_client):
    resp = await internal_client.post("/internal/chat-message", data="not json", headers=AUTH)
    assert resp.status == 400


@pytest.mark.asyncio
async def test_chat_message_verifies(services, internal_client):
    issued = await services.verification.create_code(7)
    body = {
        "server": "Server 1",
        "message": issued.code,
        "player": {"name": "Sniper", "steamID": STEAM_A, "eosID": "0002abcdef"},
    }
    resp = await internal_client.post("/internal/chat-message", json=body, headers=AUTH)
    assert resp.status == 200
    data = await resp.json()
    assert data == {"ok": True, "verified": True, "discord_user_id": "7", "steam_id64": STEAM_A}

    resp = await internal_client.post("/internal/chat-message", json=body, headers=AUTH)
    assert (await resp.json())["verified"] is False


@pytest.mark.asyncio
async def test_role_sync_single_user(services, make_member, internal_client):
    make_member(3, "member1", [MEMBER_ROLE])
    await services.links.create_or_update_link(3, STEAM_A, link_source=LinkSource.MANUAL_ADMIN)

    resp = await internal_client.post("/internal/role-sync", json={"discord_user_id": "3"}, headers=AUTH)
    assert resp.status == 200
    data = await resp.json()
    assert data["ok"] is True
    assert data["outcome"]["action"] == "granted"
    assert data["outcome"]["group"] == "Member"


@pytest.mark.asyncio
async def test_role_sync_bulk(services, make_member, internal_client):
    make_member(3, "member1", [MEMBER_ROLE])
    await services.links.create_or_update_link(3, STEAM_A, link_source=LinkSource.MANUAL_ADMIN)

    resp = await internal_client.post("/internal/role-sync", json={"dry_run": True}, headers=AUTH)
    data = await resp.json()
    assert data["report"]["guild_id"] == str(GUILD_ID)
    assert data["report"]["dry_run"] is True
    assert data["report"]["writes"] == 1
    assert await services.grants.list_active_entries() == []


@pytest.mark.asyncio
async def test_role_sync_unknown_guild(internal_client):
    resp = await internal_client.post("/internal/role-sync", json={"guild_id": 999}, headers=AUTH)
    assert resp.status == 404
    resp = await internal_client.post("/internal/role-sync", json={"guild_id": "abc"}, headers=AUTH)
    assert resp.status == 400

"""Pytest configuration and fixtures for service, bot and API tests."""
import os
import tempfile
from pathlib import Path
from types import SimpleNamespace

# Set test env BEFORE any imports that use config
_tmp = Path(tempfile.mkdtemp(prefix="roster-tests-"))
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_tmp / 'api.db'}"
os.environ["INITIAL_ADMIN_PASSWORD"] = "testpass123"
os.environ["INITIAL_ADMIN_USERNAME"] = "admin"
os.environ["INTERNAL_API_SECRET"] = "internal-secret"
os.environ["DONATION_WEBHOOK_TOKEN"] = "donation-token"

import discord
import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from bot.models.base import engine as default_engine
from bot.models.base import init_db, make_session_factory
from bot.services.container import build_services
from config import load_settings
from web.api.main import app

GUILD_ID = 1000
HEAD_ADMIN_ROLE = 101
SQUAD_ADMIN_ROLE = 102
MODERATOR_ROLE = 103
MEMBER_ROLE = 104
SERVICE_MEMBER_ROLE = 201
FIRST_RESPONDER_ROLE = 202
DONATOR_ROLE = 203

STEAM_A = "76561198000000001"
STEAM_B = "76561198000000002"
STEAM_C = "76561198000000003"

TEST_ENV = {
    "GUILD_ID": str(GUILD_ID),
    "HEAD_ADMIN_ROLE_IDS": str(HEAD_ADMIN_ROLE),
    "SQUAD_ADMIN_ROLE_IDS": str(SQUAD_ADMIN_ROLE),
    "SQUAD_MODERATOR_ROLE_IDS": str(MODERATOR_ROLE),
    "MEMBER_ROLE_IDS": str(MEMBER_ROLE),
    "SERVICE_MEMBER_ROLE_ID": str(SERVICE_MEMBER_ROLE),
    "FIRST_RESPONDER_ROLE_ID": str(FIRST_RESPONDER_ROLE),
    "DONATOR_ROLE_ID": str(DONATOR_ROLE),
    "ROLE_SYNC_BATCH_SIZE": "2",
    "ROLE_SYNC_BATCH_DELAY": "0",
}


# --- Lightweight Discord stand-ins ---


class FakeRole:
    def __init__(self, role_id: int, name: str):
        self.id = role_id
        self.name = name

    def __repr__(self):
        return f"<FakeRole {self.name}>"


class FakeGuild:
    def __init__(self, guild_id: int = GUILD_ID):
        self.id = guild_id
        self.name = "Test Guild"
        self.chunked = True
        self.members = []
        self._roles = {
            role_id: FakeRole(role_id, name)
            for role_id, name in (
                (HEAD_ADMIN_ROLE, "Head Admin"),
                (SQUAD_ADMIN_ROLE, "Squad Admin"),
                (MODERATOR_ROLE, "Moderator"),
                (MEMBER_ROLE, "Member"),
                (SERVICE_MEMBER_ROLE, "Service Member"),
                (FIRST_RESPONDER_ROLE, "First Responder"),
                (DONATOR_ROLE, "Donator"),
            )
        }

    def get_role(self, role_id: int):
        return self._roles.get(role_id)

    def get_member(self, user_id: int):
        return next((m for m in self.members if m.id == user_id), None)

    async def fetch_members(self, limit=None):
        for member in list(self.members):
            yield member


class FakeMember:
    def __init__(self, guild: FakeGuild, user_id: int, name: str, role_ids=(), bot: bool = False):
        self.guild = guild
        self.id = user_id
        self.name = name
        self.display_name = name
        self.bot = bot
        self.roles = [guild.get_role(r) for r in role_ids]
        self.fail_role_changes = False

    def __str__(self):
        return self.name

    async def add_roles(self, *roles, reason=None):
        if self.fail_role_changes:
            raise discord.Forbidden(SimpleNamespace(status=403, reason="Forbidden"), "Missing Permissions")
        for role in roles:
            if role not in self.roles:
                self.roles.append(role)

    async def remove_roles(self, *roles, reason=None):
        if self.fail_role_changes:
            raise discord.Forbidden(SimpleNamespace(status=403, reason="Forbidden"), "Missing Permissions")
        self.roles = [r for r in self.roles if r not in roles]


class FakeClient:
    def __init__(self, *guilds: FakeGuild):
        self._guilds = {g.id: g for g in guilds}

    def get_guild(self, guild_id: int):
        return self._guilds.get(guild_id)


# --- Database and services ---


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(autouse=True)
async def _init_db():
    """Ensure the API database tables exist before each test (ASGI lifespan doesn't run with httpx)."""
    await init_db()
    yield
    await default_engine.dispose()


@pytest.fixture
async def engine():
    """Private in-memory database per test."""
    eng = create_async_engine("sqlite+aiosqlite://", poolclass=StaticPool)
    await init_db(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def settings():
    return load_settings(TEST_ENV)


@pytest.fixture
def guild():
    return FakeGuild()


@pytest.fixture
def make_member(guild):
    """Factory: make_member(user_id, name, role_ids) adds a member to the guild."""

    def _make(user_id: int, name: str = "player", role_ids=(), bot: bool = False) -> FakeMember:
        member = FakeMember(guild, user_id, name, role_ids, bot=bot)
        guild.members.append(member)
        return member

    return _make


@pytest.fixture
async def services(settings, session_factory, guild):
    svc = build_services(settings, session_factory, client=FakeClient(guild))
    yield svc
    await svc.close()


# --- API ---


@pytest.fixture
async def client():
    """Async HTTP client for testing the API."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


@pytest.fixture
async def auth_headers(client):
    """Login as admin and return Authorization headers for protected endpoints."""
    r = await client.post(
        "/api/auth/login",
        json={"username": "admin", "password": "testpass123"},
    )
    assert r.status_code == 200, f"Login failed: {r.text}"
    token = r.json()["access_token"]
    return {"Authorization": f"Bearer {token}"}

"""Pytest configuration and fixtures for service and API tests."""
import os

# Set test env BEFORE any imports that use config
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["IDENTITY_BACKEND"] = "local"
os.environ["INITIAL_ADMIN_EMAIL"] = "admin@example.com"
os.environ["INITIAL_ADMIN_PASSWORD"] = "testpass123"
os.environ["JWT_SECRET"] = "test-secret-with-enough-length-for-hs256"
os.environ["DUEL_NOTIFICATION_PROVIDER"] = ""

import pyotp
import pytest
from httpx import ASGITransport, AsyncClient

from hub.models import Base, Player, PlayerStats
from hub.models.base import async_session_factory, engine
from hub.services.local_identity import LocalIdentityProvider
from web.api.main import app

ADMIN_EMAIL = "admin@example.com"
ADMIN_PASSWORD = "testpass123"


@pytest.fixture(autouse=True)
async def _init_db():
    """Fresh tables for every test (ASGI lifespan doesn't run with httpx)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)


@pytest.fixture
async def session():
    async with async_session_factory() as s:
        yield s


@pytest.fixture
def identity():
    return LocalIdentityProvider()


@pytest.fixture
async def client():
    """Async HTTP client for testing the API."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


@pytest.fixture
def make_player():
    """Insert a player (and optionally its stats row) in its own committed session."""

    async def _make(username, device_id=None, high_score=None, games_played=0):
        async with async_session_factory() as s:
            player = Player(username=username, device_id=device_id)
            s.add(player)
            await s.flush()
            if high_score is not None:
                s.add(PlayerStats(player_id=player.id, high_score=high_score, games_played=games_played))
            await s.commit()
            return player

    return _make


async def _sign_in(client, email=ADMIN_EMAIL, password=ADMIN_PASSWORD, secret=None):
    """Run the whole step-up flow over HTTP. Returns (aal2 headers, TOTP secret).

    Without ``secret`` the account must have no verified factor yet and is
    enrolled on the way.
    """
    r = await client.post("/api/auth/login", json={"email": email, "password": password})
    assert r.status_code == 200, f"Login failed: {r.text}"
    data = r.json()
    aal1 = {"Authorization": f"Bearer {data['access_token']}"}
    if secret is None:
        assert data["step"] == "factor_enrollment_pending"
        secret = data["enrollment"]["secret"]
        body = {"factor_id": data["factor_id"], "code": pyotp.TOTP(secret).now()}
    else:
        assert data["step"] == "factor_challenge_issued"
        body = {
            "factor_id": data["factor_id"],
            "challenge_id": data["challenge_id"],
            "code": pyotp.TOTP(secret).now(),
        }
    r = await client.post("/api/auth/mfa/verify", json=body, headers=aal1)
    assert r.status_code == 200, f"Verify failed: {r.text}"
    assert r.json()["aal"] == "aal2"
    return {"Authorization": f"Bearer {r.json()['access_token']}"}, secret


@pytest.fixture
async def auth_headers(client):
    """Sign in as the bootstrap admin (password + TOTP) and return aal2 Authorization headers."""
    headers, _ = await _sign_in(client)
    return headers


@pytest.fixture
def sign_in(client):
    """Step-up sign-in helper: await sign_in(email, password, secret=None) -> (headers, secret)."""

    async def _run(email=ADMIN_EMAIL, password=ADMIN_PASSWORD, secret=None):
        return await _sign_in(client, email, password, secret)

    return _run

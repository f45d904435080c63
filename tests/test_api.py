"""Tests for the HTTP API: sign-in steps, admin users, players and bot duels."""
import pyotp
import pytest
from sqlalchemy import update

import config
from hub.models import Player
from hub.models.base import async_session_factory

ADMIN_EMAIL = "admin@example.com"
ADMIN_PASSWORD = "testpass123"


@pytest.mark.asyncio
async def test_health(client):
    """Health endpoint returns ok."""
    r = await client.get("/api/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}


# --- Sign-in ---


@pytest.mark.asyncio
async def test_login_bad_credentials(client):
    r = await client.post("/api/auth/login", json={"email": ADMIN_EMAIL, "password": "nope"})
    assert r.status_code == 401
    assert r.json() == {"error": "Invalid email or password"}


@pytest.mark.asyncio
async def test_login_starts_enrollment(client):
    r = await client.post("/api/auth/login", json={"email": ADMIN_EMAIL, "password": ADMIN_PASSWORD})
    assert r.status_code == 200
    data = r.json()
    assert data["aal"] == "aal1"
    assert data["step"] == "factor_enrollment_pending"
    assert data["enrollment"]["qr_code"].startswith("data:image/svg+xml;base64,")
    assert data["enrollment"]["secret"]


@pytest.mark.asyncio
async def test_aal1_token_is_rejected(client):
    r = await client.post("/api/auth/login", json={"email": ADMIN_EMAIL, "password": ADMIN_PASSWORD})
    aal1 = {"Authorization": f"Bearer {r.json()['access_token']}"}

    r = await client.get("/api/admin/users", headers=aal1)
    assert r.status_code == 401
    assert "error" in r.json()

    r = await client.get("/api/auth/me", headers=aal1)
    assert r.status_code == 401


@pytest.mark.asyncio
async def test_missing_token_is_rejected(client):
    r = await client.get("/api/players")
    assert r.status_code == 401
    r = await client.get("/api/players", headers={"Authorization": "Bearer garbage"})
    assert r.status_code == 401


@pytest.mark.asyncio
async def test_wrong_code_returns_new_challenge(client, sign_in):
    _, secret = await sign_in()

    r = await client.post("/api/auth/login", json={"email": ADMIN_EMAIL, "password": ADMIN_PASSWORD})
    data = r.json()
    assert data["step"] == "factor_challenge_issued"
    aal1 = {"Authorization": f"Bearer {data['access_token']}"}
    code = pyotp.TOTP(secret).now()
    wrong = f"{(int(code) + 1) % 1000000:06d}"

    r = await client.post(
        "/api/auth/mfa/verify",
        json={"factor_id": data["factor_id"], "challenge_id": data["challenge_id"], "code": wrong},
        headers=aal1,
    )
    assert r.status_code == 401
    body = r.json()
    assert body["error"] == "Invalid code"
    assert body["challenge_id"] and body["challenge_id"] != data["challenge_id"]

    r = await client.post(
        "/api/auth/mfa/verify",
        json={"factor_id": data["factor_id"], "challenge_id": body["challenge_id"], "code": code},
        headers=aal1,
    )
    assert r.status_code == 200
    assert r.json()["aal"] == "aal2"


@pytest.mark.asyncio
async def test_verify_rejects_malformed_code(client):
    r = await client.post("/api/auth/login", json={"email": ADMIN_EMAIL, "password": ADMIN_PASSWORD})
    data = r.json()
    r = await client.post(
        "/api/auth/mfa/verify",
        json={"factor_id": data["factor_id"], "code": "12ab"},
        headers={"Authorization": f"Bearer {data['access_token']}"},
    )
    assert r.status_code == 400
    assert r.json() == {"error": "Enter the 6 digits"}


@pytest.mark.asyncio
async def test_me_and_session(client, auth_headers):
    r = await client.get("/api/auth/me", headers=auth_headers)
    assert r.status_code == 200
    assert r.json()["email"] == ADMIN_EMAIL
    assert r.json()["aal"] == "aal2"
    assert r.json()["mfa_enabled"] is True

    r = await client.get("/api/auth/session", headers=auth_headers)
    assert r.json()["step"] == "authenticated"

    r = await client.get("/api/auth/session")
    assert r.json() is None


@pytest.mark.asyncio
async def test_x_auth_token_header(client, auth_headers):
    token = auth_headers["Authorization"].split(" ", 1)[1]
    r = await client.get("/api/auth/me", headers={"X-Auth-Token": token})
    assert r.status_code == 200


# --- Admin users ---


@pytest.mark.asyncio
async def test_admin_user_management(client, auth_headers, sign_in):
    r = await client.post(
        "/api/admin/users",
        json={"email": "second@example.com", "password": "secondpass1"},
        headers=auth_headers,
    )
    assert r.status_code == 200
    user_id = r.json()["user"]["id"]
    assert r.json()["user"]["email"] == "second@example.com"

    r = await client.get("/api/admin/users", headers=auth_headers)
    assert r.status_code == 200
    users = {u["email"]: u for u in r.json()["users"]}
    assert users[ADMIN_EMAIL]["mfa_enabled"] is True
    assert users["second@example.com"]["mfa_enabled"] is False

    r = await client.post(
        f"/api/admin/users/{user_id}/reset-password",
        json={"password": "changed-pass"},
        headers=auth_headers,
    )
    assert r.json() == {"success": True}
    # New password works, the new user enrolls on first sign-in
    await sign_in("second@example.com", "changed-pass")

    r = await client.delete(f"/api/admin/users/{user_id}", headers=auth_headers)
    assert r.json() == {"success": True}
    r = await client.get("/api/admin/users", headers=auth_headers)
    assert [u["email"] for u in r.json()["users"]] == [ADMIN_EMAIL]


@pytest.mark.asyncio
async def test_create_user_requires_fields(client, auth_headers):
    r = await client.post("/api/admin/users", json={"email": "x@example.com"}, headers=auth_headers)
    assert r.status_code == 400
    assert r.json() == {"error": "Email and password are required"}

    r = await client.post(
        "/api/admin/users/some-id/reset-password", json={}, headers=auth_headers
    )
    assert r.status_code == 400
    assert r.json() == {"error": "Password is required"}


@pytest.mark.asyncio
async def test_duplicate_user_rejected(client, auth_headers):
    body = {"email": "dup@example.com", "password": "pass12345"}
    r = await client.post("/api/admin/users", json=body, headers=auth_headers)
    assert r.status_code == 200
    r = await client.post("/api/admin/users", json=body, headers=auth_headers)
    assert r.status_code == 400
    assert "error" in r.json()


@pytest.mark.asyncio
async def test_cannot_delete_self(client, auth_headers):
    r = await client.get("/api/auth/me", headers=auth_headers)
    me = r.json()["id"]
    r = await client.delete(f"/api/admin/users/{me}", headers=auth_headers)
    assert r.status_code == 400
    assert r.json() == {"error": "Cannot delete your own account"}


@pytest.mark.asyncio
async def test_reset_mfa_forces_enrollment(client, auth_headers, sign_in):
    r = await client.post(
        "/api/admin/users",
        json={"email": "second@example.com", "password": "secondpass1"},
        headers=auth_headers,
    )
    user_id = r.json()["user"]["id"]
    await sign_in("second@example.com", "secondpass1")

    r = await client.delete(f"/api/admin/users/{user_id}/mfa", headers=auth_headers)
    assert r.status_code == 200
    assert r.json()["success"] is True
    assert r.json()["removed"] == 1

    r = await client.post("/api/auth/login", json={"email": "second@example.com", "password": "secondpass1"})
    assert r.json()["step"] == "factor_enrollment_pending"


@pytest.mark.asyncio
async def test_delete_unknown_user(client, auth_headers):
    r = await client.delete("/api/admin/users/missing", headers=auth_headers)
    assert r.status_code == 404
    assert r.json() == {"error": "User not found"}


# --- Players ---


@pytest.mark.asyncio
async def test_players_and_summary(client, auth_headers, make_player):
    await make_player("human", device_id="ios-1", high_score=120, games_played=3)
    await make_player("robot", device_id="fake_1", high_score=400, games_played=2)

    r = await client.get("/api/players", headers=auth_headers)
    assert r.status_code == 200
    assert [p["username"] for p in r.json()] == ["robot", "human"]

    r = await client.get("/api/players?kind=bot", headers=auth_headers)
    assert [p["username"] for p in r.json()] == ["robot"]
    assert r.json()[0]["is_bot"] is True

    r = await client.get("/api/players?kind=martians", headers=auth_headers)
    assert r.status_code == 400

    r = await client.get("/api/players/summary", headers=auth_headers)
    assert r.json() == {
        "total_players": 2,
        "real_players": 1,
        "bot_players": 1,
        "total_games": 5,
        "best_score": 400,
    }


@pytest.mark.asyncio
async def test_override_high_score(client, auth_headers, make_player):
    player = await make_player("human", high_score=5000, games_played=7)
    r = await client.patch(
        f"/api/players/{player.id}/high-score", json={"high_score": 12}, headers=auth_headers
    )
    assert r.status_code == 200
    assert r.json()["high_score"] == 12
    assert r.json()["games_played"] == 7

    r = await client.patch(
        f"/api/players/{player.id}/high-score", json={"high_score": -3}, headers=auth_headers
    )
    assert r.status_code == 400


# --- Play as bot ---


@pytest.mark.asyncio
async def test_bot_duel_flow(client, auth_headers, make_player):
    bot = await make_player("robot", device_id="fake_7")
    human = await make_player("human", device_id="ios-7")

    r = await client.post(f"/api/bots/{bot.id}/duels", json={"opponent_id": human.id}, headers=auth_headers)
    assert r.status_code == 200
    duel = r.json()
    assert duel["status"] == "pending"
    assert duel["challenger_id"] == bot.id

    r = await client.get(f"/api/bots/{bot.id}/duels", headers=auth_headers)
    board = r.json()
    assert [d["id"] for d in board["awaiting_action"]] == [duel["id"]]
    assert board["awaiting_action"][0]["opponent_name"] == "human"
    assert [p["username"] for p in board["opponents"]] == ["human"]

    r = await client.post(
        f"/api/bots/{bot.id}/duels/{duel['id']}/score", json={"score": 900}, headers=auth_headers
    )
    assert r.status_code == 200
    assert r.json()["challenger_score"] == 900
    assert r.json()["status"] == "pending"

    r = await client.post(
        f"/api/bots/{bot.id}/duels/{duel['id']}/score", json={"score": 950}, headers=auth_headers
    )
    assert r.status_code == 409
    assert r.json() == {"error": "Score already submitted for this duel"}

    r = await client.get(f"/api/duels/{duel['id']}", headers=auth_headers)
    assert r.json()["challenger_score"] == 900

    r = await client.get("/api/players?kind=bot", headers=auth_headers)
    assert r.json()[0]["high_score"] == 900
    assert r.json()[0]["games_played"] == 1


@pytest.mark.asyncio
async def test_bot_answers_challenge(client, auth_headers, make_player, session):
    from hub.services.duels import create_challenge, submit_score

    bot = await make_player("robot", device_id="fake_8")
    human = await make_player("human", device_id="ios-8")
    duel = await create_challenge(session, human.id, bot.id)
    await submit_score(session, duel.id, human.id, 300)

    r = await client.get(f"/api/bots/{bot.id}/duels", headers=auth_headers)
    assert [d["id"] for d in r.json()["awaiting_response"]] == [duel.id]

    r = await client.post(f"/api/bots/{bot.id}/duels/{duel.id}/accept", headers=auth_headers)
    assert r.status_code == 200
    assert r.json()["status"] == "active"

    r = await client.post(f"/api/bots/{bot.id}/duels/{duel.id}/decline", headers=auth_headers)
    assert r.status_code == 409

    r = await client.post(
        f"/api/bots/{bot.id}/duels/{duel.id}/score", json={"score": 250}, headers=auth_headers
    )
    assert r.json()["status"] == "completed"
    assert r.json()["winner_id"] == human.id


@pytest.mark.asyncio
async def test_real_player_cannot_be_played(client, auth_headers, make_player):
    human = await make_player("human", device_id="ios-9")
    other = await make_player("other", device_id="ios-10")
    r = await client.post(f"/api/bots/{human.id}/duels", json={"opponent_id": other.id}, headers=auth_headers)
    assert r.status_code == 403
    r = await client.get("/api/bots/missing/duels", headers=auth_headers)
    assert r.status_code == 404


@pytest.mark.asyncio
async def test_unknown_duel(client, auth_headers):
    r = await client.get("/api/duels/missing", headers=auth_headers)
    assert r.status_code == 404
    assert r.json() == {"error": "Duel not found"}


# --- Notifications ---


@pytest.mark.asyncio
async def test_fcm_without_token(client, auth_headers, make_player):
    player = await make_player("human")
    r = await client.post(
        "/api/notifications/fcm",
        json={"target_player_id": player.id, "title": "Hi", "body": "There"},
        headers=auth_headers,
    )
    assert r.status_code == 200
    assert r.json() == {"success": False, "error": "No FCM token"}


@pytest.mark.asyncio
async def test_fcm_broken_service_account(client, auth_headers, make_player, monkeypatch):
    player = await make_player("human")
    async with async_session_factory() as s:
        await s.execute(update(Player).where(Player.id == player.id).values(fcm_token="device-token"))
        await s.commit()
    monkeypatch.setattr(config, "FIREBASE_SERVICE_ACCOUNT", '{"client_email": "x@y"}')
    r = await client.post(
        "/api/notifications/fcm",
        json={"target_player_id": player.id, "title": "Hi", "body": "There"},
        headers=auth_headers,
    )
    assert r.status_code == 502
    assert r.json() == {"error": "External service error, please try again"}


@pytest.mark.asyncio
async def test_bot_challenge_survives_broken_push(client, auth_headers, make_player, monkeypatch):
    bot = await make_player("robot", device_id="fake_1")
    human = await make_player("human", device_id="ios-1")
    async with async_session_factory() as s:
        await s.execute(update(Player).where(Player.id == human.id).values(fcm_token="device-token"))
        await s.commit()
    monkeypatch.setattr(config, "DUEL_NOTIFICATION_PROVIDER", "fcm")
    monkeypatch.setattr(config, "FIREBASE_SERVICE_ACCOUNT", '{"client_email": "x@y"}')

    r = await client.post(f"/api/bots/{bot.id}/duels", json={"opponent_id": human.id}, headers=auth_headers)
    assert r.status_code == 200
    assert r.json()["status"] == "pending"


@pytest.mark.asyncio
async def test_onesignal_not_configured(client, auth_headers):
    r = await client.post(
        "/api/notifications/onesignal",
        json={"target_player_id": "p1", "title": "Hi", "body": "There"},
        headers=auth_headers,
    )
    assert r.status_code == 502
    assert r.json() == {"error": "External service error, please try again"}

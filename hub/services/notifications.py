"""Push notifications through FCM (HTTP v1) and OneSignal. Pass-through only."""
from __future__ import annotations

import json
import logging
import time
from typing import Any, Optional

import httpx
import jwt
from sqlalchemy.ext.asyncio import AsyncSession

import config
from hub.errors import HubError, ProviderError, ValidationError
from hub.models import Duel, Player

logger = logging.getLogger("hub.notify")

ONESIGNAL_URL = "https://onesignal.com/api/v1/notifications"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
FCM_SEND_URL = "https://fcm.googleapis.com/v1/projects/{project_id}/messages:send"
FCM_SCOPE = "https://www.googleapis.com/auth/firebase.messaging"
FCM_CHANNEL_ID = "duel_notifications"

PROVIDERS = ("fcm", "onesignal")


def _client(transport: Optional[httpx.AsyncBaseTransport]) -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=10.0, transport=transport)


def _json_or_text(r: httpx.Response) -> Any:
    try:
        return r.json()
    except ValueError:
        return r.text


async def send_onesignal(
    target_player_id: str,
    title: str,
    body: str,
    image_url: Optional[str] = None,
    data: Optional[dict] = None,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> dict:
    """Send to the OneSignal external user id ``target_player_id``."""
    if not config.ONESIGNAL_APP_ID or not config.ONESIGNAL_REST_API_KEY:
        raise ProviderError("ONESIGNAL_APP_ID / ONESIGNAL_REST_API_KEY not configured")
    payload = {
        "app_id": config.ONESIGNAL_APP_ID,
        "include_external_user_ids": [target_player_id],
        "headings": {"en": title, "fr": title},
        "contents": {"en": body, "fr": body},
    }
    if image_url:
        payload["big_picture"] = image_url
        payload["ios_attachments"] = {"photo": image_url}
    if data:
        payload["data"] = data
    try:
        async with _client(transport) as client:
            r = await client.post(
                ONESIGNAL_URL,
                json=payload,
                headers={"Authorization": f"Basic {config.ONESIGNAL_REST_API_KEY}"},
            )
    except httpx.HTTPError as e:
        raise ProviderError(f"OneSignal unreachable: {e}") from e
    result = _json_or_text(r)
    if r.status_code >= 400:
        logger.error("OneSignal error %d: %s", r.status_code, result)
        raise ProviderError(f"OneSignal HTTP {r.status_code}: {result}")
    return {"success": True, "id": result.get("id") if isinstance(result, dict) else None}


SERVICE_ACCOUNT_FIELDS = ("project_id", "client_email", "private_key")


def _service_account() -> dict:
    if not config.FIREBASE_SERVICE_ACCOUNT:
        raise ProviderError("FIREBASE_SERVICE_ACCOUNT not configured")
    try:
        service_account = json.loads(config.FIREBASE_SERVICE_ACCOUNT)
    except ValueError as e:
        raise ProviderError(f"FIREBASE_SERVICE_ACCOUNT is not valid JSON: {e}") from e
    if not isinstance(service_account, dict):
        raise ProviderError("FIREBASE_SERVICE_ACCOUNT must be a JSON object")
    missing = [name for name in SERVICE_ACCOUNT_FIELDS if not service_account.get(name)]
    if missing:
        raise ProviderError(f"FIREBASE_SERVICE_ACCOUNT is missing {', '.join(missing)}")
    return service_account


def service_account_assertion(service_account: dict, now: Optional[int] = None) -> str:
    """RS256-signed JWT exchanged for an OAuth2 access token (valid one hour)."""
    now = int(now if now is not None else time.time())
    try:
        payload = {
            "iss": service_account["client_email"],
            "sub": service_account["client_email"],
            "aud": GOOGLE_TOKEN_URL,
            "iat": now,
            "exp": now + 3600,
            "scope": FCM_SCOPE,
        }
        return jwt.encode(payload, service_account["private_key"], algorithm="RS256")
    except (KeyError, ValueError, TypeError, jwt.PyJWTError) as e:
        raise ProviderError(f"Cannot sign service account assertion: {e!r}") from e


async def _google_access_token(client: httpx.AsyncClient, service_account: dict) -> str:
    r = await client.post(
        GOOGLE_TOKEN_URL,
        data={
            "grant_type": "urn:ietf:params:oauth:grant-type:jwt-bearer",
            "assertion": service_account_assertion(service_account),
        },
    )
    result = _json_or_text(r)
    if r.status_code >= 400 or not isinstance(result, dict) or "access_token" not in result:
        raise ProviderError(f"Google token exchange failed ({r.status_code}): {result}")
    return result["access_token"]


async def send_fcm(
    session: AsyncSession,
    target_player_id: str,
    title: str,
    body: str,
    notification_type: Optional[str] = None,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> dict:
    """Send to the device registered in ``players.fcm_token``."""
    player = await session.get(Player, target_player_id)
    if not player or not player.fcm_token:
        logger.info("No FCM token found for player %s", target_player_id)
        return {"success": False, "error": "No FCM token"}
    service_account = _service_account()
    message = {
        "message": {
            "token": player.fcm_token,
            "notification": {"title": title, "body": body},
            "data": {"type": notification_type or "", "click_action": "FLUTTER_NOTIFICATION_CLICK"},
            "android": {
                "priority": "high",
                "notification": {"sound": "default", "channel_id": FCM_CHANNEL_ID},
            },
            "apns": {"payload": {"aps": {"sound": "default", "badge": 1}}},
        }
    }
    try:
        async with _client(transport) as client:
            access_token = await _google_access_token(client, service_account)
            r = await client.post(
                FCM_SEND_URL.format(project_id=service_account["project_id"]),
                json=message,
                headers={"Authorization": f"Bearer {access_token}"},
            )
    except httpx.HTTPError as e:
        raise ProviderError(f"FCM unreachable: {e}") from e
    result = _json_or_text(r)
    if r.status_code >= 400:
        logger.error("FCM error %d: %s", r.status_code, result)
        raise ProviderError(f"FCM HTTP {r.status_code}: {result}")
    return {"success": True, "result": result}


async def send(
    provider: str,
    session: AsyncSession,
    target_player_id: str,
    title: str,
    body: str,
    notification_type: Optional[str] = None,
    **kwargs,
) -> dict:
    if provider == "fcm":
        return await send_fcm(session, target_player_id, title, body, notification_type, **kwargs)
    if provider == "onesignal":
        data = {"type": notification_type} if notification_type else None
        return await send_onesignal(target_player_id, title, body, data=data, **kwargs)
    raise ValidationError(f"Unknown notification provider: {provider}")


async def notify_duel_challenge(session: AsyncSession, duel: Duel) -> None:
    """Tell the challenged player about a new duel. Best-effort; never raises."""
    provider = config.DUEL_NOTIFICATION_PROVIDER
    if not provider:
        return
    challenger = await session.get(Player, duel.challenger_id)
    name = (challenger.username if challenger else None) or "Someone"
    try:
        await send(
            provider,
            session,
            duel.challenged_id,
            "New duel!",
            f"{name} challenged you to a duel",
            notification_type="duel_challenge",
        )
    except HubError as e:
        logger.warning("Duel %s notification via %s failed: %s", duel.id, provider, e)

"""Push notification pass-through (FCM and OneSignal)."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from hub.models.base import async_session_factory
from hub.services import notifications
from hub.services.identity import AuthUser
from web.auth import require_admin_session

router = APIRouter(prefix="/api/notifications", tags=["notifications"])


class FcmRequest(BaseModel):
    target_player_id: str
    title: str
    body: str
    type: Optional[str] = None


class OneSignalRequest(BaseModel):
    target_player_id: str
    title: str
    body: str
    image_url: Optional[str] = None
    data: Optional[dict] = None


@router.post("/fcm")
async def send_fcm(body: FcmRequest, admin: AuthUser = Depends(require_admin_session)):
    """Push to the player's registered device. No token stored is reported, not raised."""
    async with async_session_factory() as session:
        return await notifications.send_fcm(session, body.target_player_id, body.title, body.body, body.type)


@router.post("/onesignal")
async def send_onesignal(body: OneSignalRequest, admin: AuthUser = Depends(require_admin_session)):
    return await notifications.send_onesignal(
        body.target_player_id, body.title, body.body, image_url=body.image_url, data=body.data
    )

from __future__ import annotations
import hashlib
import hmac
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from rewardflow.config import settings
from rewardflow.db import get_session
from rewardflow.auth_deps import get_issuer
from rewardflow.errors import NotFound
from rewardflow.models.user import Workspace
from rewardflow.schemas.reward import ProviderEvent
from rewardflow.services.rewards import RewardIssuer

router = APIRouter(prefix="/webhooks", tags=["webhooks"])
log = structlog.get_logger()

SIGNATURE_HEADER = "X-Reward-Provider-Signature"

def sign_payload(payload: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()

def verify_signature(payload: bytes, signature: str | None, secret: str) -> bool:
    if not signature:
        return False
    return hmac.compare_digest(sign_payload(payload, secret), signature)

@router.post("/reward-provider")
async def reward_provider_webhook(
    request: Request,
    workspace: str = Query(..., max_length=64),
    signature: str | None = Header(default=None, alias=SIGNATURE_HEADER),
    session: AsyncSession = Depends(get_session),
    issuer: RewardIssuer = Depends(get_issuer),
):
    payload = await request.body()

    # Unsigned delivery is only accepted when no secret is configured (local dev)
    secret = settings.reward_provider_webhook_secret
    if secret and not verify_signature(payload, signature, secret):
        log.warning("webhook.bad_signature", workspace=workspace)
        raise HTTPException(status_code=401, detail="Invalid webhook signature")

    try:
        event = ProviderEvent.model_validate_json(payload)
    except PydanticValidationError:
        raise HTTPException(status_code=400, detail="Invalid webhook payload")

    ws = await session.scalar(select(Workspace).where(Workspace.slug == workspace))
    if not ws:
        raise NotFound("Workspace not found")

    kind = event.type.split(".", 1)[0]
    log.info("webhook.received", workspace=workspace, event_type=event.type, event_id=event.id)
    if kind not in ("transaction", "adjustment"):
        return {"received": True, "handled": False}

    reward = await issuer.apply_provider_event(ws.id, event.data.id, event.type, error=event.data.error)
    await session.commit()
    return {
        "received": True,
        "handled": reward is not None,
        "rewardId": str(reward.id) if reward else None,
        "status": reward.status if reward else None,
    }

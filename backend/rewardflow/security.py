from __future__ import annotations
from datetime import datetime, timedelta, timezone
from typing import Any
import jwt
from rewardflow.config import settings

ACCESS_TTL_MIN = 15

def make_access_token(sub: str, ttl_min: int = ACCESS_TTL_MIN) -> str:
    """Mint a token the way the identity provider does. Used by tests and local tooling."""
    now = datetime.now(timezone.utc)
    payload: dict[str, Any] = {
        "sub": sub,
        "type": "access",
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=ttl_min)).timestamp()),
    }
    if settings.jwt_audience:
        payload["aud"] = settings.jwt_audience
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_alg)

def decode_token(token: str) -> dict[str, Any]:
    return jwt.decode(
        token,
        settings.jwt_secret,
        algorithms=[settings.jwt_alg],
        audience=settings.jwt_audience,
        options={"verify_aud": bool(settings.jwt_audience)},
    )

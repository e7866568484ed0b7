# app/services/supa_auth.py
# Supabase access token (HS256) 검증
from typing import Dict
import logging

from jose import JWTError, jwt

from app.config import settings

logger = logging.getLogger(__name__)


def supabase_enabled() -> bool:
    return bool(settings.supabase_jwt_secret)


def split_bearer(authorization: str | None) -> str:
    if not authorization:
        raise ValueError("missing Authorization header")

    parts = authorization.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise ValueError("invalid Authorization header")

    token = parts[1].strip()
    if not token:
        raise ValueError("invalid Authorization header")
    return token


def verify_supabase_token(token: str) -> Dict[str, str | None]:
    if not supabase_enabled():
        raise ValueError("supabase auth is not configured")

    options = {
        "verify_aud": bool(settings.supabase_jwt_audience),
        "verify_iss": bool(settings.supabase_issuer),
    }
    try:
        claims = jwt.decode(
            token,
            settings.supabase_jwt_secret,
            algorithms=["HS256"],
            audience=settings.supabase_jwt_audience or None,
            issuer=settings.supabase_issuer or None,
            options=options,
        )
    except JWTError as e:
        logger.info("[AUTH] supabase token rejected: %s", e)
        raise ValueError("invalid token") from e

    user_id = claims.get("sub")
    if not user_id:
        raise ValueError("invalid token: missing sub")

    metadata = claims.get("user_metadata") or {}
    return {
        "user_id": user_id,
        "email": claims.get("email"),
        "name": metadata.get("full_name") or metadata.get("name"),
    }

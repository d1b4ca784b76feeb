import hmac
import logging
import threading
from dataclasses import dataclass
from typing import Optional

import jwt
from fastapi import Depends, Header, HTTPException
from jwt import PyJWKClient

from claimflow.core.config import get_settings

logger = logging.getLogger(__name__)

GLOBAL_ADMIN = "GLOBAL_ADMIN"
PLAN_MANAGER = "PLAN_MANAGER"
ASSISTANT = "ASSISTANT"

ALLOWED_ROLES = {GLOBAL_ADMIN, PLAN_MANAGER, ASSISTANT}

# invoices:read, invoices:write, plans:write
STAFF_ROLES = (GLOBAL_ADMIN, PLAN_MANAGER, ASSISTANT)
# invoices:approve, invoices:reject, claims:write, claims:submit, claims:outcome
MANAGER_ROLES = (GLOBAL_ADMIN, PLAN_MANAGER)

_jwks_client: Optional[PyJWKClient] = None
_jwks_lock = threading.Lock()


def _get_jwks_client(jwks_url: str) -> PyJWKClient:
    global _jwks_client
    if _jwks_client is not None:
        return _jwks_client
    with _jwks_lock:
        if _jwks_client is None:
            _jwks_client = PyJWKClient(jwks_url, cache_keys=True, lifespan=3600)
        return _jwks_client


@dataclass
class CurrentUser:
    id: str
    role: str
    email: Optional[str] = None


def _extract_role(payload: dict) -> Optional[str]:
    # Only app_metadata is server-managed; user_metadata is editable by the user.
    app_meta = payload.get("app_metadata") or {}
    raw = app_meta.get("role")
    if raw is None:
        return None
    role = str(raw).strip().upper()
    if role not in ALLOWED_ROLES:
        return None
    return role


def _decode_options(settings) -> tuple[dict, dict]:
    audience = (settings.supabase_jwt_audience or "").strip()
    if audience:
        return {"audience": audience}, {"verify_aud": True}
    return {}, {"verify_aud": False}


def _decode_staff_token(token: str, alg: str, settings) -> Optional[dict]:
    decode_kwargs, options = _decode_options(settings)
    if alg == "ES256":
        supabase_url = (settings.supabase_url or "").rstrip("/")
        if not supabase_url:
            return None
        try:
            client = _get_jwks_client(f"{supabase_url}/auth/v1/.well-known/jwks.json")
            signing_key = client.get_signing_key_from_jwt(token)
            return jwt.decode(token, signing_key.key, algorithms=["ES256"], options=options, **decode_kwargs)
        except (jwt.PyJWTError, jwt.PyJWKClientError) as exc:
            logger.debug("ES256 verification failed: %s", exc)
            return None

    if not settings.supabase_jwt_secret:
        return None
    try:
        return jwt.decode(
            token,
            settings.supabase_jwt_secret,
            algorithms=["HS256"],
            options=options,
            **decode_kwargs,
        )
    except jwt.PyJWTError:
        return None


def get_current_user(
    authorization: Optional[str] = Header(None, alias="Authorization"),
) -> CurrentUser:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(401, "Missing bearer token")

    token = authorization.split(" ", 1)[1].strip()
    settings = get_settings()
    if not settings.supabase_jwt_secret and not settings.supabase_url:
        raise HTTPException(500, "SUPABASE_JWT_SECRET is not configured")

    try:
        header = jwt.get_unverified_header(token)
    except jwt.DecodeError:
        raise HTTPException(401, "Invalid token") from None

    payload = _decode_staff_token(token, header.get("alg", ""), settings)
    if payload is None or not payload.get("sub"):
        raise HTTPException(401, "Invalid token")

    role = _extract_role(payload)
    if not role:
        raise HTTPException(403, "Missing role")

    return CurrentUser(id=payload["sub"], role=role, email=payload.get("email"))


def require_roles(*roles: str):
    def _dependency(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if user.role not in roles:
            raise HTTPException(403, "Forbidden")
        return user

    return _dependency


def bearer_secret_matches(authorization: Optional[str], expected: str) -> bool:
    """Constant-time check of a static ``Authorization: Bearer <secret>`` credential."""
    if not expected or not authorization or not authorization.startswith("Bearer "):
        return False
    presented = authorization.split(" ", 1)[1].strip()
    return hmac.compare_digest(presented.encode("utf-8"), expected.encode("utf-8"))

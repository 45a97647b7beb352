import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from werkzeug.security import check_password_hash, generate_password_hash

from .config import Settings
from .errors import AuthError, InvalidState, ZoomAuthRequired

security = HTTPBearer(auto_error=False)

ACCESS_TOKEN = "access"
REFRESH_TOKEN = "refresh"
OAUTH_STATE_PURPOSE = "zoom_oauth"

PRIVATE_USER_FIELDS = ("password_hash", "access_token", "refresh_token")


def hash_password(password: str) -> str:
    return generate_password_hash(password)


def verify_password(password_hash: Optional[str], password: str) -> bool:
    if not password_hash:
        return False
    return check_password_hash(password_hash, password)


def public_user(user: Dict[str, Any]) -> Dict[str, Any]:
    """Strip secrets from a user row before it leaves the API."""
    return {key: value for key, value in user.items() if key not in PRIVATE_USER_FIELDS}


def _encode(settings: Settings, claims: Dict[str, Any], lifetime: timedelta) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        **claims,
        "iss": settings.jwt_issuer,
        "aud": settings.jwt_audience,
        "iat": now,
        "exp": now + lifetime,
        "jti": uuid.uuid4().hex,
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def create_session_tokens(settings: Settings, user: Dict[str, Any]) -> Dict[str, str]:
    """Issue an access/refresh token pair for a user."""
    claims = {"sub": user["id"], "email": user.get("email")}
    return {
        "accessToken": _encode(
            settings, {**claims, "type": ACCESS_TOKEN}, timedelta(minutes=settings.jwt_expiration_minutes)
        ),
        "refreshToken": _encode(
            settings, {**claims, "type": REFRESH_TOKEN}, timedelta(days=settings.jwt_refresh_expiration_days)
        ),
    }


def verify_jwt_token(settings: Settings, token: str, expected_type: str = ACCESS_TOKEN) -> Dict[str, Any]:
    """Verify a session JWT and return its claims."""
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            audience=settings.jwt_audience,
            issuer=settings.jwt_issuer,
        )
    except jwt.ExpiredSignatureError:
        raise AuthError("Token has expired")
    except jwt.InvalidTokenError:
        raise AuthError("Invalid token")

    if payload.get("type") != expected_type or not payload.get("sub"):
        raise AuthError("Invalid token payload")
    return payload


def create_oauth_state(settings: Settings, user_id: str) -> str:
    """Signed, expiring OAuth ``state`` carrying the initiating user."""
    now = datetime.now(timezone.utc)
    payload = {
        "sub": user_id,
        "ts": int(time.time() * 1000),
        "purpose": OAUTH_STATE_PURPOSE,
        "nonce": uuid.uuid4().hex,
        "iat": now,
        "exp": now + timedelta(seconds=settings.oauth_state_ttl_seconds),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def verify_oauth_state(settings: Settings, state: str) -> str:
    """Return the user id from a state value, rejecting tampered or stale ones."""
    try:
        payload = jwt.decode(state, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise InvalidState("Authorization request has expired, start again")
    except jwt.InvalidTokenError:
        raise InvalidState("Invalid authorization state")

    if payload.get("purpose") != OAUTH_STATE_PURPOSE or not payload.get("sub"):
        raise InvalidState("Invalid authorization state")
    return payload["sub"]


def get_services(request: Request):
    """The application's service container, built on first use."""
    services = getattr(request.app.state, "services", None)
    if services is None:
        from services.container import build_services

        services = request.app.state.services = build_services()
    return services


def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Dict[str, Any]:
    """Get the current authenticated user from the bearer token."""
    if credentials is None or not credentials.credentials:
        raise AuthError("Authentication required")

    services = get_services(request)
    payload = verify_jwt_token(services.settings, credentials.credentials)
    user = services.repository.get_user(payload["sub"])
    if not user:
        raise AuthError("User not found")
    return user


def require_zoom_auth(current_user: Dict[str, Any] = Depends(get_current_user)) -> Dict[str, Any]:
    """Like ``get_current_user`` but also requires a linked Zoom account."""
    if not current_user.get("zoom_connected"):
        raise ZoomAuthRequired("Zoom account not connected")
    return current_user

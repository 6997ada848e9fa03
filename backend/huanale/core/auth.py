"""Caller identity from a Supabase access token.

Supabase signs tokens with the project JWT secret (HS256) or, on projects
with asymmetric keys, with an ES256 key published at the JWKS endpoint. The
token header decides which check runs first; the other one is the fallback.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Optional

import jwt
from fastapi import Header, HTTPException
from jwt import PyJWKClient

from huanale.core.config import Settings, get_settings
from huanale.services.ingestion.errors import NotAuthenticated

logger = logging.getLogger(__name__)

JWKS_PATH = "/auth/v1/.well-known/jwks.json"

_jwks_clients: dict[str, PyJWKClient] = {}
_jwks_lock = threading.Lock()


@dataclass
class CurrentUser:
    """Authenticated caller; ``id`` scopes every read and write."""

    id: str
    email: Optional[str] = None


def _jwks_client(supabase_url: str) -> PyJWKClient:
    url = supabase_url.rstrip("/") + JWKS_PATH
    with _jwks_lock:
        client = _jwks_clients.get(url)
        if client is None:
            client = PyJWKClient(url, cache_keys=True, lifespan=3600)
            _jwks_clients[url] = client
        return client


def _claims_check(settings: Settings) -> dict[str, Any]:
    audience = (settings.supabase_jwt_audience or "").strip()
    if audience:
        return {"audience": audience, "options": {"verify_aud": True}}
    return {"options": {"verify_aud": False}}


def _verify_shared_secret(token: str, settings: Settings) -> Optional[dict]:
    if not settings.supabase_jwt_secret:
        return None
    try:
        return jwt.decode(token, settings.supabase_jwt_secret, algorithms=["HS256"], **_claims_check(settings))
    except jwt.InvalidTokenError:
        return None


def _verify_jwks(token: str, settings: Settings) -> Optional[dict]:
    if not settings.supabase_url:
        return None
    try:
        signing_key = _jwks_client(settings.supabase_url).get_signing_key_from_jwt(token)
        return jwt.decode(token, signing_key.key, algorithms=["ES256"], **_claims_check(settings))
    except (jwt.InvalidTokenError, jwt.PyJWKClientError) as exc:
        logger.debug("JWKS verification failed: %s", exc)
        return None


def verify_token(token: str, settings: Settings) -> dict:
    """Return the verified claims of *token*. Raises ``NotAuthenticated``."""
    try:
        alg = jwt.get_unverified_header(token).get("alg", "")
    except jwt.DecodeError as exc:
        raise NotAuthenticated() from exc

    strategies: list[Callable[[str, Settings], Optional[dict]]] = [_verify_shared_secret, _verify_jwks]
    if alg == "ES256":
        strategies.reverse()

    for strategy in strategies:
        claims = strategy(token, settings)
        if claims is not None:
            return claims
    raise NotAuthenticated()


def get_current_user(
    authorization: Optional[str] = Header(None, alias="Authorization"),
) -> CurrentUser:
    if not authorization or not authorization.startswith("Bearer "):
        raise NotAuthenticated()

    settings = get_settings()
    if not settings.supabase_jwt_secret and not settings.supabase_url:
        raise HTTPException(500, "SUPABASE_JWT_SECRET is not configured")

    claims = verify_token(authorization.split(" ", 1)[1].strip(), settings)
    user_id = claims.get("sub")
    if not user_id:
        raise NotAuthenticated()
    return CurrentUser(id=str(user_id), email=claims.get("email"))

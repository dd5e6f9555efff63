"""Caller access checks and worker callback authentication.

Classes:
    ZoneAccessPolicy: Decides whether a caller may work with a zone.

Functions:
    verify_qstash_signature(token, body, ...): Validate an ``Upstash-Signature`` JWT.
    verify_bearer(header, api_key): Constant-time bearer token comparison.
    require_worker_auth(request): FastAPI dependency guarding the worker webhook.
    get_current_user(x_user_id): Caller identity forwarded by the gateway.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import secrets
from typing import Optional
from uuid import UUID

from fastapi import Depends, Header, HTTPException, Request, status
from jose import JWTError, jwt

from opinion_map.core.config import Settings, get_settings
from opinion_map.core.errors import AuthorizationError

_LOGGER = logging.getLogger(__name__)

_QSTASH_ISSUER = "Upstash"
_CLOCK_SKEW_SECONDS = 60


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _decode_claims(token: str, key: str) -> Optional[dict]:
    try:
        return jwt.decode(
            token,
            key,
            algorithms=["HS256"],
            issuer=_QSTASH_ISSUER,
            options={"leeway": _CLOCK_SKEW_SECONDS},
        )
    except JWTError:
        return None


def verify_qstash_signature(
    token: str,
    body: bytes,
    *,
    current_key: Optional[str],
    next_key: Optional[str],
    url: Optional[str] = None,
) -> bool:
    """Accept the token if it verifies under either signing key (keys rotate)."""

    if not token:
        return False
    for key in (current_key, next_key):
        if not key:
            continue
        claims = _decode_claims(token, key)
        if claims is None:
            continue
        if url and claims.get("sub") and claims["sub"] != url:
            return False
        body_claim = str(claims.get("body", "")).rstrip("=")
        return hmac.compare_digest(body_claim, _b64url_encode(hashlib.sha256(body).digest()))
    return False


def verify_bearer(authorization: Optional[str], api_key: Optional[str]) -> bool:
    if not authorization or not api_key:
        return False
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return False
    return secrets.compare_digest(token.strip(), api_key)


def _secret(value) -> Optional[str]:
    return value.get_secret_value() if value is not None else None


async def require_worker_auth(
    request: Request,
    settings: Settings = Depends(get_settings),
) -> str:
    """Return how the caller authenticated: ``signature`` or ``bearer``."""

    signature = request.headers.get("upstash-signature")
    if signature:
        body = await request.body()
        if verify_qstash_signature(
            signature,
            body,
            current_key=_secret(settings.qstash_current_signing_key),
            next_key=_secret(settings.qstash_next_signing_key),
            url=settings.worker_url,
        ):
            return "signature"
        _LOGGER.warning("Rejected worker call with an invalid Upstash signature")

    if verify_bearer(request.headers.get("authorization"), _secret(settings.worker_api_key)):
        return "bearer"

    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


async def get_current_user(x_user_id: Optional[str] = Header(default=None)) -> Optional[str]:
    return x_user_id


class ZoneAccessPolicy:
    """Allow every zone unless ``allowed_zone_ids`` restricts the deployment."""

    def __init__(self, allowed_zone_ids: Optional[list[str]] = None) -> None:
        self._allowed = {str(zone_id).lower() for zone_id in (allowed_zone_ids or [])}

    def can_access(self, user_id: Optional[str], zone_id: UUID) -> bool:
        return not self._allowed or str(zone_id).lower() in self._allowed

    def ensure_access(self, user_id: Optional[str], zone_id: UUID) -> None:
        if not self.can_access(user_id, zone_id):
            raise AuthorizationError("Access to this zone is not allowed", zone_id=str(zone_id))


def get_access_policy(settings: Settings = Depends(get_settings)) -> ZoneAccessPolicy:
    return ZoneAccessPolicy(settings.allowed_zone_ids)

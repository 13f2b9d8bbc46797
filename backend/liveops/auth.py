"""
Authentication: Bearer JWT or API key on the REST surface, HMAC signatures
on platform webhooks.

- Operators / frontend: Authorization: Bearer <jwt signed with SECRET_KEY>
- Programmatic: Authorization: Bearer <API_KEY>
- Webhooks: X-Signature: <hex HMAC-SHA256 of the raw body>

In development with no API_KEY set, bearer auth is skipped for local dev.
"""

import hashlib
import hmac
import logging
from typing import Optional

from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from liveops.config import get_settings

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
SIGNATURE_HEADER = "X-Signature"

_bearer_scheme = HTTPBearer(auto_error=False)


def decode_access_token(token: str) -> Optional[dict]:
    settings = get_settings()
    try:
        return jwt.decode(token, settings.secret_key, algorithms=[ALGORITHM])
    except JWTError:
        return None


async def require_auth(
    credentials: HTTPAuthorizationCredentials = Depends(_bearer_scheme),
) -> str:
    """
    Accept either a JWT or the API_KEY.
    Returns "jwt" if the JWT is valid, or the API key string if API_KEY matched.
    """
    settings = get_settings()
    api_key = settings.api_key

    # Dev convenience: skip auth when no key is configured
    if not api_key:
        if settings.is_production:
            raise HTTPException(
                status_code=500,
                detail="Server misconfiguration: API_KEY must be set in production.",
            )
        return "dev-no-auth"

    if not credentials:
        raise HTTPException(
            status_code=401,
            detail="Missing authorization. Include header: Authorization: Bearer <token>",
        )

    token = credentials.credentials

    payload = decode_access_token(token)
    if payload and payload.get("sub"):
        return "jwt"

    if hmac.compare_digest(token, api_key):
        return token

    raise HTTPException(status_code=401, detail="Invalid or expired token.")


def sign_payload(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


async def verify_webhook_signature(request: Request, platform: str) -> bytes:
    """Check the X-Signature header against the platform's webhook secret. Returns the raw body."""
    settings = get_settings()
    body = await request.body()
    secret = settings.webhook_secret_for(platform)

    if not secret:
        if settings.is_production:
            logger.warning(f"Rejected unsigned {platform} webhook: no secret configured")
            raise HTTPException(status_code=401, detail="Webhook secret not configured")
        return body

    signature = request.headers.get(SIGNATURE_HEADER, "")
    if not signature:
        raise HTTPException(status_code=401, detail=f"Missing {SIGNATURE_HEADER} header")
    if not hmac.compare_digest(signature.lower(), sign_payload(secret, body)):
        logger.warning(f"Rejected {platform} webhook: bad signature")
        raise HTTPException(status_code=401, detail="Invalid webhook signature")
    return body

"""
Tests for bearer auth on the REST surface and HMAC-signed webhooks.
"""

import asyncio
from unittest.mock import patch

import pytest
from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials
from jose import jwt

from liveops.auth import ALGORITHM, SIGNATURE_HEADER, require_auth, sign_payload
from liveops.config import Settings


def _bearer(token: str) -> HTTPAuthorizationCredentials:
    return HTTPAuthorizationCredentials(scheme="Bearer", credentials=token)


@pytest.fixture
def keyed_settings():
    settings = Settings(api_key="test-api-key", secret_key="test-secret")
    with patch("liveops.auth.get_settings", return_value=settings):
        yield settings


# ══════════════════════════════════════════════════════════════════════
#  BEARER AUTH
# ══════════════════════════════════════════════════════════════════════

@pytest.mark.anyio
async def test_dev_without_api_key_skips_auth():
    with patch("liveops.auth.get_settings", return_value=Settings(environment="development", api_key="")):
        assert await require_auth(None) == "dev-no-auth"


@pytest.mark.anyio
async def test_production_without_api_key_is_misconfiguration():
    settings = Settings.model_construct(environment="production", api_key="")
    with patch("liveops.auth.get_settings", return_value=settings):
        with pytest.raises(HTTPException) as exc_info:
            await require_auth(None)
    assert exc_info.value.status_code == 500


@pytest.mark.anyio
async def test_missing_credentials_is_401(keyed_settings):
    with pytest.raises(HTTPException) as exc_info:
        await require_auth(None)
    assert exc_info.value.status_code == 401


@pytest.mark.anyio
async def test_api_key_is_accepted(keyed_settings):
    assert await require_auth(_bearer("test-api-key")) == "test-api-key"


@pytest.mark.anyio
async def test_jwt_with_subject_is_accepted(keyed_settings):
    token = jwt.encode({"sub": "operator@example.com"}, keyed_settings.secret_key, algorithm=ALGORITHM)
    assert await require_auth(_bearer(token)) == "jwt"


@pytest.mark.anyio
async def test_jwt_signed_with_other_key_is_rejected(keyed_settings):
    token = jwt.encode({"sub": "operator@example.com"}, "someone-else", algorithm=ALGORITHM)
    with pytest.raises(HTTPException) as exc_info:
        await require_auth(_bearer(token))
    assert exc_info.value.status_code == 401


# ══════════════════════════════════════════════════════════════════════
#  WEBHOOKS
# ══════════════════════════════════════════════════════════════════════

BODY = b'{"object":"ad_account","entry":[{"id":"555","changes":[{"field":"campaign"}]}]}'


@pytest.fixture
def webhook_settings():
    settings = Settings(meta_webhook_secret="whsec")
    with patch("liveops.auth.get_settings", return_value=settings):
        yield settings


@pytest.mark.anyio
async def test_signed_webhook_schedules_resync(client, webhook_settings, live_engine):
    response = await client.post(
        "/api/webhooks/meta", content=BODY, headers={SIGNATURE_HEADER: sign_payload("whsec", BODY)},
    )
    assert response.status_code == 202
    assert response.json() == {"status": "accepted"}
    assert live_engine.scheduler.status()["meta"]["triggers"] == 1
    await asyncio.sleep(0.05)


@pytest.mark.anyio
async def test_signature_is_case_insensitive(client, webhook_settings):
    signature = sign_payload("whsec", BODY).upper()
    response = await client.post("/api/webhooks/meta", content=BODY, headers={SIGNATURE_HEADER: signature})
    assert response.status_code == 202


@pytest.mark.anyio
async def test_bad_signature_is_401(client, webhook_settings, live_engine):
    response = await client.post("/api/webhooks/meta", content=BODY, headers={SIGNATURE_HEADER: "00" * 32})
    assert response.status_code == 401
    assert live_engine.scheduler.status()["meta"]["triggers"] == 0


@pytest.mark.anyio
async def test_missing_signature_is_401(client, webhook_settings):
    response = await client.post("/api/webhooks/meta", content=BODY)
    assert response.status_code == 401


@pytest.mark.anyio
async def test_unsigned_webhook_allowed_in_development(client, webhook_settings):
    # No secret configured for tiktok.
    response = await client.post("/api/webhooks/tiktok", content=b"{}")
    assert response.status_code == 202


@pytest.mark.anyio
async def test_unsigned_webhook_rejected_in_production(client):
    settings = Settings(environment="production", secret_key="prod-secret", api_key="prod-key")
    with patch("liveops.auth.get_settings", return_value=settings):
        response = await client.post("/api/webhooks/tiktok", content=b"{}")
    assert response.status_code == 401


@pytest.mark.anyio
async def test_webhook_for_unknown_platform_is_400(client):
    response = await client.post("/api/webhooks/myspace", content=b"{}")
    assert response.status_code == 400

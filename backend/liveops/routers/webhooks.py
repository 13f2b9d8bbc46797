"""
Webhooks Router: Ad platforms notify us that something changed on their side.

The body is opaque; a verified call only schedules a resync of that platform.
Authenticated by HMAC signature instead of a bearer token.
"""

import logging

from fastapi import APIRouter, Depends

from liveops.auth import verify_webhook_signature
from liveops.engine import LiveEngine, get_engine

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/{platform}", status_code=202)
async def receive_webhook(
    platform: str,
    body: bytes = Depends(verify_webhook_signature),
    engine: LiveEngine = Depends(get_engine),
):
    engine.scheduler.trigger(platform)
    logger.info(f"Webhook from {platform.lower()} ({len(body)} bytes), resync scheduled")
    return {"status": "accepted"}

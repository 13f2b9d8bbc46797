"""
Sync Router: Fire-and-forget resync triggers and per-platform sync status.
"""

import logging

from fastapi import APIRouter, Depends

from liveops.engine import LiveEngine, get_engine

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/{platform}", status_code=202)
async def trigger_sync(platform: str, engine: LiveEngine = Depends(get_engine)):
    """Queue a debounced resync of the platform's campaign list and expanded subtrees."""
    engine.scheduler.trigger(platform)
    logger.info(f"Resync requested for {platform.lower()}")
    return {"status": "accepted", "platform": platform.lower()}


@router.get("/status")
async def sync_status(engine: LiveEngine = Depends(get_engine)):
    return engine.scheduler.status()

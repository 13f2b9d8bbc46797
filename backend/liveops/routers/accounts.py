"""
Accounts Router: Internal accounts that live campaigns are grouped under.
Independent of the ad platforms' own account / billing hierarchy.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from liveops.database import get_db
from liveops.errors import ConflictError
from liveops.services import account_map
from liveops.services.account_map import AccountOut

logger = logging.getLogger(__name__)
router = APIRouter()


class CreateAccountRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    platform: str = Field(..., min_length=1, max_length=50)
    platform_account_id: Optional[str] = None


@router.get("")
async def list_accounts(
    platform: Optional[str] = Query(None, description="Only accounts of this platform"),
    db: AsyncSession = Depends(get_db),
):
    accounts = await account_map.list_accounts(db, platform)
    return [AccountOut.model_validate(a) for a in accounts]


@router.post("", status_code=201)
async def create_account(payload: CreateAccountRequest, db: AsyncSession = Depends(get_db)):
    try:
        account = await account_map.create_account(db, payload.name, payload.platform, payload.platform_account_id)
    except IntegrityError:
        await db.rollback()
        raise ConflictError(
            f"Account {payload.platform_account_id} already exists on {payload.platform}",
            platform=payload.platform.lower(), action="create_account",
        )
    return AccountOut.model_validate(account)


@router.get("/{account_id}")
async def get_account(account_id: int, db: AsyncSession = Depends(get_db)):
    return AccountOut.model_validate(await account_map.get_account(db, account_id))

"""Credits router: balance queries and billable actions."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import require_caller, scoped_user_id
from services.credit_types import CreditStoreUnavailable
from services.credits import consume_credits, ensure_account, get_balance_summary
from services.session_token import SessionClaims

router = APIRouter()
logger = logging.getLogger(__name__)


class SetupRequest(BaseModel):
    user_id: Optional[str] = None
    email: Optional[str] = None
    name: Optional[str] = Field(default=None, max_length=200)


class ConsumeRequest(BaseModel):
    action_type: str = Field(min_length=1, max_length=100)
    cost: int = Field(ge=1, le=100000)


def store_unavailable(exc: CreditStoreUnavailable) -> HTTPException:
    return HTTPException(
        status_code=503,
        detail={"message": str(exc) or "Credits store unavailable.", "retryable": True},
    )


@router.post("/setup")
async def setup_account(
    request: SetupRequest,
    caller: SessionClaims = Depends(require_caller),
    db: AsyncSession = Depends(get_db),
):
    user_id = scoped_user_id(caller, request.user_id)
    try:
        _, created = await ensure_account(
            user_id,
            db,
            email=request.email or caller.email,
            name=request.name or caller.name,
        )
        summary = await get_balance_summary(user_id, db)
    except CreditStoreUnavailable as exc:
        raise store_unavailable(exc) from exc
    return {"success": True, "provisioned": created, **summary}


@router.get("/balance")
async def balance(
    include_logs: bool = Query(default=False),
    limit: Optional[int] = Query(default=None, ge=1, le=100),
    caller: SessionClaims = Depends(require_caller),
    db: AsyncSession = Depends(get_db),
):
    try:
        await ensure_account(caller.user_id, db, email=caller.email, name=caller.name)
        return await get_balance_summary(caller.user_id, db, include_logs=include_logs, limit=limit)
    except CreditStoreUnavailable as exc:
        raise store_unavailable(exc) from exc


@router.post("/consume")
async def consume(
    request: ConsumeRequest,
    caller: SessionClaims = Depends(require_caller),
    db: AsyncSession = Depends(get_db),
):
    try:
        await ensure_account(caller.user_id, db, email=caller.email, name=caller.name)
        result = await consume_credits(
            caller.user_id,
            db,
            action_type=request.action_type,
            cost=request.cost,
        )
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except CreditStoreUnavailable as exc:
        raise store_unavailable(exc) from exc

    if not result.success:
        return JSONResponse(status_code=402, content=result.to_payload())
    return result.to_payload()

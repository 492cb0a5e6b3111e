"""app/gateway/routers/credits.py — balance and per-turn usage charges.

Endpoints:
    GET  /credits                      → balance, plan, pending downgrade
    POST /credits/reserve              → user-send checkpoint (402 when unaffordable)
    POST /credits/charge-reply         → assistant-reply checkpoint
    POST /credits/merge-anonymous      → move an anonymous session's credits to the user
"""
from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, Depends, HTTPException
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from app.billing.accounts import Actor, merge_anonymous_into_user
from app.billing.errors import LedgerValidationError
from app.billing.usage import ChargeResult, charge_assistant_reply, charge_user_send, get_balance
from app.core.auth import get_current_actor, get_current_user

logger = structlog.get_logger()

router = APIRouter()


class ReserveRequest(BaseModel):
    turn_id: str = Field(min_length=1, max_length=128)
    has_image: bool = False


class ChargeReplyRequest(BaseModel):
    turn_id: str = Field(min_length=1, max_length=128)


class MergeRequest(BaseModel):
    anonymous_id: str = Field(min_length=1, max_length=128)


def _charge_response(result: ChargeResult) -> Any:
    body = {
        "charged": result.charged,
        "duplicate": result.duplicate,
        "blocked": result.blocked,
        "credits": result.balance_after,
        "next_step": result.next_step,
    }
    if result.blocked:
        return JSONResponse(status_code=402, content=body)
    return body


@router.get("/credits")
async def read_credits(actor: Actor = Depends(get_current_actor)) -> dict[str, Any]:
    return await run_in_threadpool(get_balance, actor)


@router.post("/credits/reserve")
async def reserve_turn(req: ReserveRequest, actor: Actor = Depends(get_current_actor)):
    try:
        result = await run_in_threadpool(charge_user_send, actor, req.turn_id, req.has_image)
    except LedgerValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    return _charge_response(result)


@router.post("/credits/charge-reply")
async def charge_reply(req: ChargeReplyRequest, actor: Actor = Depends(get_current_actor)):
    try:
        result = await run_in_threadpool(charge_assistant_reply, actor, req.turn_id)
    except LedgerValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    return _charge_response(result)


@router.post("/credits/merge-anonymous")
async def merge_anonymous(req: MergeRequest, user: Actor = Depends(get_current_user)) -> dict[str, Any]:
    try:
        result = await run_in_threadpool(merge_anonymous_into_user, req.anonymous_id, user)
    except LedgerValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    return {"merged": result.merged, "credits_transferred": result.credits_transferred}

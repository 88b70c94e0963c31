from typing import Annotated

from fastapi import APIRouter, Depends, Query
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, StrictInt

from otc_mirror.auth import get_user_store, require_admin
from otc_mirror.db import FeeStore, OrderStore, UserStore, get_pool
from otc_mirror.order_state import PatchText
from otc_mirror.routes.orders import Token, get_order_store

router = APIRouter(prefix="/api/admin", tags=["admin"], dependencies=[Depends(require_admin)])

ADMIN_ORDER_LIMIT = 200

# fee_config columns are INTEGER; 10000 bps is 100%
BasisPoints = Annotated[StrictInt, Field(ge=0, le=10_000)]


class UserUpdateBody(BaseModel):
    """Unrecognized values are dropped here or by UserStore.update_user, never rejected."""
    kyc_tier: PatchText = None
    kyc_status: PatchText = None
    role: PatchText = None


class FeeUpdateBody(BaseModel):
    asset: Token
    fee_bps: BasisPoints | None = None
    spread_bps: BasisPoints | None = None


async def get_fee_store() -> FeeStore:
    return FeeStore(await get_pool())


def _data(data) -> JSONResponse:
    return JSONResponse(status_code=200, content={"success": True, "data": jsonable_encoder(data)})


def _error(status_code: int, error: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": error})


@router.get("/orders")
async def admin_orders(
    asset: str | None = Query(default=None),
    status: str | None = Query(default=None),
    store: OrderStore = Depends(get_order_store),
) -> JSONResponse:
    orders = await store.list_orders(status=status or None, asset=asset or None, limit=ADMIN_ORDER_LIMIT)
    return _data(orders)


@router.get("/users")
async def admin_users(
    role: str | None = Query(default=None),
    kyc_status: str | None = Query(default=None),
    users: UserStore = Depends(get_user_store),
) -> JSONResponse:
    return _data(await users.list_users(role=role, kyc_status=kyc_status))


@router.patch("/users/{user_id}")
async def admin_update_user(
    user_id: int,
    body: UserUpdateBody,
    users: UserStore = Depends(get_user_store),
) -> JSONResponse:
    """Set kyc_tier, kyc_status or role. Unrecognized values are ignored."""
    if await users.get_by_id(user_id) is None:
        return _error(404, "User not found")
    updated = await users.update_user(user_id, body.model_dump(exclude_none=True))
    if updated is None:
        return _error(400, "No valid updates")
    return _data(updated)


@router.get("/fees")
async def admin_fees(fees: FeeStore = Depends(get_fee_store)) -> JSONResponse:
    return _data(await fees.list_fees())


@router.patch("/fees")
async def admin_update_fees(
    body: FeeUpdateBody,
    fees: FeeStore = Depends(get_fee_store),
) -> JSONResponse:
    if body.fee_bps is None and body.spread_bps is None:
        return _error(400, "No updates provided")

    await fees.update_fee(body.asset, body.fee_bps, body.spread_bps)
    return _data(await fees.list_fees())

import logging
from decimal import Decimal
from typing import Literal

from fastapi import APIRouter, Depends, Query
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, StrictInt

from otc_mirror.auth import caller_from_user, get_current_user
from otc_mirror.config import settings
from otc_mirror.db import OrderStore, get_pool
from otc_mirror.metrics import orders_mirrored_total
from otc_mirror.order_state import OrderPatch
from otc_mirror.orders import (
    OrderConflictError,
    OrderNotFoundError,
    OrderRejectedError,
    update_order,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/orders", tags=["orders"])

LIST_LIMIT = 100

Token = Literal["WBTC", "WETH", "USDT", "USDC"]
TX_HASH_PATTERN = r"^0x[0-9A-Fa-f]{64}$"


class MirrorOrderBody(BaseModel):
    id: StrictInt = Field(..., description="On-chain order id")
    create_tx_hash: str = Field(..., pattern=TX_HASH_PATTERN, description="Hash of the create transaction")
    asset: Token
    quote_token: Token
    quantity: Decimal = Field(..., gt=0, max_digits=38, decimal_places=18)
    # indicative UI snapshot, not a settlement price
    price_per_unit: Decimal = Field(..., ge=0, max_digits=38, decimal_places=18)
    total_amount: Decimal = Field(..., ge=0, max_digits=38, decimal_places=18)


async def get_order_store() -> OrderStore:
    return OrderStore(await get_pool())


def _error(status_code: int, error: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": error, **extra})


def _ok(data=None, **extra) -> JSONResponse:
    content = {"success": True, **extra}
    if data is not None:
        content["data"] = jsonable_encoder(data)
    return JSONResponse(status_code=200, content=content)


@router.get("")
async def list_orders(
    status: str | None = Query(default=None),
    asset: str | None = Query(default=None),
    quote_token: str | None = Query(default=None),
    mine: bool = Query(default=False),
    user: dict = Depends(get_current_user),
    store: OrderStore = Depends(get_order_store),
) -> JSONResponse:
    """Mirrored orders, newest first. Prices on these rows are indicative UI snapshots."""
    orders = await store.list_orders(
        status=status or None,
        asset=asset or None,
        quote_token=quote_token or None,
        user_id=user["id"] if mine else None,
        limit=LIST_LIMIT,
    )
    return _ok(orders)


@router.post("")
async def mirror_order(
    body: MirrorOrderBody,
    user: dict = Depends(get_current_user),
    store: OrderStore = Depends(get_order_store),
) -> JSONResponse:
    """
    Mirror an order that was just created on-chain. Re-posting the same on-chain id is a
    no-op success so the UI can retry safely.
    """
    if user.get("kyc_status") != "APPROVED":
        return _error(403, "KYC not approved")

    inserted = await store.mirror_order(
        order_id=body.id,
        user_id=user["id"],
        asset=body.asset,
        quote_token=body.quote_token,
        quantity=body.quantity,
        price_per_unit=body.price_per_unit,
        total_amount=body.total_amount,
        create_tx_hash=body.create_tx_hash,
    )
    if not inserted:
        return _ok(message="Order already mirrored")

    orders_mirrored_total.labels(asset=body.asset).inc()
    logger.info(
        "Mirrored order_id=%s seller_id=%s %s %s/%s",
        body.id, user["id"], body.quantity, body.asset, body.quote_token,
    )
    return _ok()

@router.get("/{order_id}")
async def get_order(
    order_id: int,
    user: dict = Depends(get_current_user),
    store: OrderStore = Depends(get_order_store),
) -> JSONResponse:
    order = await store.fetch_order_detail(order_id)
    if order is None:
        return _error(404, "Order not found")
    return _ok(order)


@router.patch("/{order_id}")
async def patch_order(
    order_id: int,
    patch: OrderPatch,
    user: dict = Depends(get_current_user),
    store: OrderStore = Depends(get_order_store),
) -> JSONResponse:
    """
    Change an order's status (accept, cancel, deliver, complete, dispute, resolve).
    Rejections carry a stable `reason` code next to the human-readable error.
    """
    try:
        updated = await update_order(
            store,
            caller_from_user(user),
            order_id,
            patch,
            max_attempts=settings.order_update_max_attempts,
        )
    except OrderNotFoundError:
        return _error(404, "Order not found")
    except OrderRejectedError as e:
        rejection = e.rejection
        return _error(rejection.http_status, rejection.message, reason=rejection.reason.value)
    except OrderConflictError as e:
        return _error(409, str(e), reason="CONFLICT")
    return _ok(updated)

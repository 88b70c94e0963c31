import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from otc_mirror.auth import AUTH_COOKIE, WALLET_ADDRESS_PATTERN, create_token, get_current_user, get_user_store
from otc_mirror.config import settings
from otc_mirror.db import UserStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])

PUBLIC_USER_FIELDS = ("id", "wallet_address", "role", "kyc_tier", "kyc_status", "email", "company_name")


class ConnectBody(BaseModel):
    wallet_address: str = Field(..., pattern=WALLET_ADDRESS_PATTERN)


def _public(user: dict) -> dict:
    return {k: user.get(k) for k in PUBLIC_USER_FIELDS}


@router.post("/connect")
async def connect(
    body: ConnectBody,
    users: UserStore = Depends(get_user_store),
) -> JSONResponse:
    """
    Sign in with a wallet address. Unknown wallets are registered as TIER_1 traders.
    The session token is returned in the body and set as an http-only cookie.
    """
    user = await users.get_or_create(body.wallet_address)
    token = create_token(user)
    logger.info("Wallet connected user_id=%s wallet=%s", user["id"], user["wallet_address"])

    response = JSONResponse(
        status_code=200,
        content={"success": True, "data": {"user": _public(user), "token": token}},
    )
    response.set_cookie(
        AUTH_COOKIE,
        token,
        max_age=settings.token_ttl_seconds,
        path="/",
        httponly=True,
        secure=settings.secure_cookies,
        samesite="strict",
    )
    return response


@router.get("/me")
async def me(user: dict = Depends(get_current_user)) -> JSONResponse:
    data = _public(user)
    created_at = user.get("created_at")
    data["created_at"] = created_at.isoformat() if created_at is not None else None
    return JSONResponse(status_code=200, content={"success": True, "data": data})

"""
Wallet-connect sessions: HS256 tokens carrying {id, wallet_address, role}, read from the
auth_token cookie or an Authorization: Bearer header and resolved to a stored user.
"""
import time

from authlib.jose import JoseError, jwt
from fastapi import Depends, HTTPException, Request, status

from otc_mirror.config import settings
from otc_mirror.db import UserStore, get_pool
from otc_mirror.order_state import Caller, Role

AUTH_COOKIE = "auth_token"
WALLET_ADDRESS_PATTERN = r"^0x[a-fA-F0-9]{40}$"


class AuthError(Exception):
    """Raised when a token is missing, malformed, forged or expired."""


def create_token(user: dict, now: int | None = None) -> str:
    issued_at = int(time.time()) if now is None else now
    payload = {
        "id": user["id"],
        "wallet_address": user["wallet_address"],
        "role": user["role"],
        "iat": issued_at,
        "exp": issued_at + settings.token_ttl_seconds,
    }
    token = jwt.encode({"alg": "HS256"}, payload, settings.jwt_secret)
    return token.decode("ascii")


def verify_token(token: str, now: int | None = None) -> dict:
    """Return the token claims. Raises AuthError on a bad signature or expiry."""
    try:
        claims = jwt.decode(token, settings.jwt_secret)
        claims.validate(now=now)
    except JoseError as e:
        raise AuthError(str(e)) from e
    except ValueError as e:
        raise AuthError("Malformed token") from e
    if "id" not in claims or "wallet_address" not in claims:
        raise AuthError("Token is missing identity claims")
    return dict(claims)


def _token_from_request(request: Request) -> str | None:
    token = request.cookies.get(AUTH_COOKIE)
    if token:
        return token
    header = request.headers.get("authorization", "")
    scheme, _, value = header.partition(" ")
    if scheme.lower() == "bearer" and value:
        return value.strip()
    return None


async def get_user_store() -> UserStore:
    return UserStore(await get_pool())


async def get_current_user(
    request: Request,
    users: UserStore = Depends(get_user_store),
) -> dict:
    """
    Resolve the request to a stored user. The user row must still match both the id and
    the wallet the token was issued for.
    """
    token = _token_from_request(request)
    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    try:
        claims = verify_token(token)
    except AuthError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")

    user = await users.get_by_id(int(claims["id"]))
    if user is None or user["wallet_address"] != str(claims["wallet_address"]).lower():
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    return user


async def require_admin(user: dict = Depends(get_current_user)) -> dict:
    if str(user.get("role") or "").upper() != Role.ADMIN.value:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden: Admin access required")
    return user


def caller_from_user(user: dict) -> Caller:
    role = str(user.get("role") or "").upper()
    return Caller(id=int(user["id"]), role=Role.ADMIN if role == Role.ADMIN.value else Role.TRADER)

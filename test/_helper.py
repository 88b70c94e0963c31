"""
Shared helpers for the test modules: row factories and in-memory stand-ins for the
Postgres-backed stores, so no database, Redis or chain is needed.
"""
from datetime import datetime
from decimal import Decimal
from typing import Callable

from otc_mirror.db import KYC_STATUSES, KYC_TIERS, USER_ROLES
from otc_mirror.order_state import MutationPlan, OrderStatus

HASH_A = "0x" + "a" * 64
HASH_B = "0x" + "B" * 64

SELLER_ID = 10
BUYER_ID = 20
OTHER_ID = 30
ADMIN_ID = 1


def order_row(
    status: str = "PENDING",
    user_id: int = SELLER_ID,
    counterparty_id: int | None = None,
    order_id: int = 1,
    trade_id: int | None = None,
    escrow_tx_hash: str | None = None,
    delivery_tx_hash: str | None = None,
) -> dict:
    """One row of the orders table as returned by OrderStore.fetch_order."""
    return {
        "id": order_id,
        "user_id": user_id,
        "asset": "WBTC",
        "quote_token": "USDT",
        "quantity": Decimal("0.5"),
        "price_per_unit": Decimal("97500"),
        "total_amount": Decimal("48750"),
        "is_indicative_price": True,
        "status": status,
        "counterparty_id": counterparty_id,
        "trade_id": trade_id,
        "create_tx_hash": "0x" + "c" * 64,
        "escrow_tx_hash": escrow_tx_hash,
        "delivery_tx_hash": delivery_tx_hash,
        "created_at": datetime(2026, 1, 1, 12, 0, 0),
        "updated_at": datetime(2026, 1, 1, 12, 0, 0),
    }


def user_row(user_id: int = BUYER_ID, role: str = "TRADER", kyc_status: str = "APPROVED", wallet: str | None = None) -> dict:
    return {
        "id": user_id,
        "wallet_address": wallet or "0x" + f"{user_id:040x}",
        "role": role,
        "kyc_tier": "TIER_1",
        "kyc_status": kyc_status,
        "email": None,
        "company_name": None,
        "created_at": datetime(2026, 1, 1, 12, 0, 0),
        "updated_at": datetime(2026, 1, 1, 12, 0, 0),
    }


class FakeOrderStore:
    """
    In-memory OrderStore. `before_write(store, order_id)` runs ahead of each conditional
    write and may change the stored row to simulate a concurrent writer.
    """

    def __init__(self, *rows: dict, before_write: Callable | None = None):
        self.rows = {r["id"]: dict(r) for r in rows}
        self.events: list[dict] = []
        self.mirrored: list[dict] = []
        self.before_write = before_write
        self.fetch_calls = 0
        self.write_calls = 0

    async def fetch_order(self, order_id: int) -> dict | None:
        self.fetch_calls += 1
        row = self.rows.get(order_id)
        return dict(row) if row is not None else None

    async def fetch_order_detail(self, order_id: int) -> dict | None:
        row = self.rows.get(order_id)
        if row is None:
            return None
        return {**row, "wallet_address": "0x" + f"{row['user_id']:040x}", "company_name": None}

    async def list_orders(self, status=None, asset=None, quote_token=None, user_id=None, limit=100) -> list[dict]:
        rows = [
            r for r in self.rows.values()
            if (status is None or r["status"] == status)
            and (asset is None or r["asset"] == asset)
            and (quote_token is None or r["quote_token"] == quote_token)
            and (user_id is None or r["user_id"] == user_id)
        ]
        return rows[:limit]

    async def mirror_order(self, order_id: int, user_id: int, **fields) -> bool:
        if order_id in self.rows:
            return False
        self.mirrored.append({"id": order_id, "user_id": user_id, **fields})
        self.rows[order_id] = {**order_row(order_id=order_id, user_id=user_id), **fields}
        return True

    async def apply_mutation(self, order_id: int, expected_status: OrderStatus, plan: MutationPlan, actor_id: int) -> dict | None:
        self.write_calls += 1
        if self.before_write is not None:
            self.before_write(self, order_id)
        row = self.rows[order_id]
        if row["status"] != expected_status.value:
            return None
        for name, value in plan.assignments:
            row[name] = value.value if isinstance(value, OrderStatus) else value
        self.events.append({
            "order_id": order_id,
            "actor_id": actor_id,
            "from_status": expected_status.value,
            "to_status": row["status"],
            "changes": plan.as_dict(),
        })
        return dict(row)


class FakeUserStore:
    def __init__(self, *users: dict):
        self.users = {u["id"]: dict(u) for u in users}

    async def get_by_id(self, user_id: int) -> dict | None:
        user = self.users.get(user_id)
        return dict(user) if user is not None else None

    async def get_or_create(self, wallet_address: str) -> dict:
        addr = wallet_address.lower()
        for user in self.users.values():
            if user["wallet_address"] == addr:
                return dict(user)
        new_id = max(self.users, default=0) + 1
        self.users[new_id] = user_row(user_id=new_id, wallet=addr)
        return dict(self.users[new_id])

    async def list_users(self, role: str | None = None, kyc_status: str | None = None) -> list[dict]:
        return [
            dict(u) for u in self.users.values()
            if (not role or u["role"] == role) and (not kyc_status or u["kyc_status"] == kyc_status)
        ]

    async def update_user(self, user_id: int, changes: dict[str, str]) -> dict | None:
        allowed = {"kyc_tier": KYC_TIERS, "kyc_status": KYC_STATUSES, "role": USER_ROLES}
        applied = {k: v for k, v in changes.items() if k in allowed and v in allowed[k]}
        if not applied:
            return None
        self.users[user_id].update(applied)
        return dict(self.users[user_id])


class FakeFeeStore:
    def __init__(self, **fees: tuple[int, int]):
        self.fees = {asset: {"fee_bps": f, "spread_bps": s} for asset, (f, s) in fees.items()}

    async def list_fees(self) -> list[dict]:
        return [{"asset": asset, **self.fees[asset]} for asset in sorted(self.fees)]

    async def update_fee(self, asset: str, fee_bps: int | None, spread_bps: int | None) -> None:
        row = self.fees.setdefault(asset, {"fee_bps": 0, "spread_bps": 0})
        if fee_bps is not None:
            row["fee_bps"] = fee_bps
        if spread_bps is not None:
            row["spread_bps"] = spread_bps

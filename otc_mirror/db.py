"""
Async Postgres: users, orders (mirror of on-chain order state), order_events (audit log), fee_config.
Order updates are conditional on the status they were decided against; the audit row and the
update commit in one transaction.
"""
import json
import uuid
from decimal import Decimal
from typing import Any

import asyncpg

from otc_mirror.config import settings
from otc_mirror.order_state import MutationPlan, OrderStatus

_pool: asyncpg.Pool | None = None

# Columns a MutationPlan may write
ORDER_MUTABLE_COLUMNS = frozenset({
    "status",
    "counterparty_id",
    "escrow_tx_hash",
    "delivery_tx_hash",
    "trade_id",
})

USER_ROLES = ("TRADER", "ADMIN")
KYC_TIERS = ("TIER_1", "TIER_2")
KYC_STATUSES = ("PENDING", "APPROVED", "REJECTED")


async def get_pool() -> asyncpg.Pool:
    global _pool
    if _pool is None:
        _pool = await asyncpg.create_pool(
            settings.database_url,
            min_size=1,
            max_size=10,
            command_timeout=60,
        )
    return _pool


async def close_pool() -> None:
    global _pool
    if _pool is not None:
        await _pool.close()
        _pool = None


async def init_schema(pool: asyncpg.Pool) -> None:
    async with pool.acquire() as conn:
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS users (
                id SERIAL PRIMARY KEY,
                wallet_address VARCHAR(42) NOT NULL UNIQUE,
                role VARCHAR(10) NOT NULL DEFAULT 'TRADER',
                kyc_tier VARCHAR(10) NOT NULL DEFAULT 'TIER_1',
                kyc_status VARCHAR(10) NOT NULL DEFAULT 'APPROVED',
                email VARCHAR(255),
                company_name VARCHAR(255),
                created_at TIMESTAMP DEFAULT NOW(),
                updated_at TIMESTAMP DEFAULT NOW()
            );
        """)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS orders (
                id BIGINT PRIMARY KEY,
                user_id INT NOT NULL REFERENCES users(id),
                asset VARCHAR(10) NOT NULL,
                quote_token VARCHAR(10) NOT NULL,
                quantity NUMERIC(38, 18) NOT NULL,
                price_per_unit NUMERIC(38, 18) NOT NULL,
                total_amount NUMERIC(38, 18) NOT NULL,
                is_indicative_price BOOLEAN NOT NULL DEFAULT TRUE,
                status VARCHAR(20) NOT NULL DEFAULT 'PENDING',
                counterparty_id INT REFERENCES users(id),
                trade_id BIGINT,
                create_tx_hash VARCHAR(66) NOT NULL,
                escrow_tx_hash VARCHAR(66),
                delivery_tx_hash VARCHAR(66),
                created_at TIMESTAMP DEFAULT NOW(),
                updated_at TIMESTAMP DEFAULT NOW()
            );
        """)
        await conn.execute("CREATE INDEX IF NOT EXISTS idx_orders_user ON orders(user_id);")
        await conn.execute("CREATE INDEX IF NOT EXISTS idx_orders_status ON orders(status);")
        await conn.execute("CREATE INDEX IF NOT EXISTS idx_orders_asset ON orders(asset);")
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS order_events (
                id UUID PRIMARY KEY,
                order_id BIGINT NOT NULL REFERENCES orders(id),
                actor_id INT NOT NULL REFERENCES users(id),
                from_status VARCHAR(20) NOT NULL,
                to_status VARCHAR(20),
                changes JSONB NOT NULL,
                created_at TIMESTAMP DEFAULT NOW()
            );
        """)
        await conn.execute("CREATE INDEX IF NOT EXISTS idx_order_events_order ON order_events(order_id);")
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS fee_config (
                asset VARCHAR(10) PRIMARY KEY,
                fee_bps INT NOT NULL,
                spread_bps INT NOT NULL,
                updated_at TIMESTAMP DEFAULT NOW()
            );
        """)
        await conn.execute(
            """
            INSERT INTO users (wallet_address, role, kyc_tier, kyc_status)
            VALUES ($1, 'ADMIN', 'TIER_2', 'APPROVED')
            ON CONFLICT (wallet_address) DO NOTHING;
            """,
            settings.bootstrap_admin_wallet.lower(),
        )


def _plain(value: Any) -> Any:
    return value.value if isinstance(value, OrderStatus) else value


class OrderStore:
    """SQL access to mirrored orders."""

    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def fetch_order(self, order_id: int) -> dict | None:
        row = await self.pool.fetchrow("SELECT * FROM orders WHERE id = $1;", order_id)
        return dict(row) if row is not None else None

    async def fetch_order_detail(self, order_id: int) -> dict | None:
        row = await self.pool.fetchrow(
            """
            SELECT o.*, u.wallet_address, u.company_name
            FROM orders o
            JOIN users u ON o.user_id = u.id
            WHERE o.id = $1;
            """,
            order_id,
        )
        return dict(row) if row is not None else None

    async def list_orders(
        self,
        status: str | None = None,
        asset: str | None = None,
        quote_token: str | None = None,
        user_id: int | None = None,
        limit: int = 100,
    ) -> list[dict]:
        sql = """
            SELECT o.*, u.wallet_address, u.company_name
            FROM orders o
            JOIN users u ON o.user_id = u.id
            WHERE 1 = 1
        """
        params: list[Any] = []
        for column, value in (
            ("o.user_id", user_id),
            ("o.status", status),
            ("o.asset", asset),
            ("o.quote_token", quote_token),
        ):
            if value is not None:
                params.append(value)
                sql += f" AND {column} = ${len(params)}"
        params.append(limit)
        sql += f" ORDER BY o.created_at DESC LIMIT ${len(params)};"
        rows = await self.pool.fetch(sql, *params)
        return [dict(r) for r in rows]

    async def mirror_order(
        self,
        order_id: int,
        user_id: int,
        asset: str,
        quote_token: str,
        quantity: Decimal,
        price_per_unit: Decimal,
        total_amount: Decimal,
        create_tx_hash: str,
    ) -> bool:
        """Insert a newly created on-chain order. False if the id is already mirrored."""
        row = await self.pool.fetchrow(
            """
            INSERT INTO orders (
                id, user_id, asset, quote_token, quantity, price_per_unit,
                total_amount, is_indicative_price, status, create_tx_hash
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, TRUE, 'PENDING', $8)
            ON CONFLICT (id) DO NOTHING
            RETURNING id;
            """,
            order_id,
            user_id,
            asset,
            quote_token,
            quantity,
            price_per_unit,
            total_amount,
            create_tx_hash,
        )
        return row is not None

    async def apply_mutation(
        self,
        order_id: int,
        expected_status: OrderStatus,
        plan: MutationPlan,
        actor_id: int,
    ) -> dict | None:
        """
        Write the plan only if the row still has expected_status.
        Returns the updated row, or None when another writer got there first.
        """
        unknown = set(plan.fields) - ORDER_MUTABLE_COLUMNS
        if unknown:
            raise ValueError(f"Refusing to write columns: {sorted(unknown)}")

        values = [_plain(v) for _, v in plan.assignments]
        sets = ", ".join(f"{name} = ${i}" for i, name in enumerate(plan.fields, start=1))
        n = len(values)
        changes = json.dumps({name: _plain(v) for name, v in plan.assignments})
        to_status = plan.status.value if plan.status is not None else None

        async with self.pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"""
                    UPDATE orders SET {sets}, updated_at = NOW()
                    WHERE id = ${n + 1} AND status = ${n + 2}
                    RETURNING *;
                    """,
                    *values,
                    order_id,
                    expected_status.value,
                )
                if row is None:
                    return None
                await conn.execute(
                    """
                    INSERT INTO order_events (id, order_id, actor_id, from_status, to_status, changes)
                    VALUES ($1, $2, $3, $4, $5, $6::jsonb);
                    """,
                    uuid.uuid4(),
                    order_id,
                    actor_id,
                    expected_status.value,
                    to_status,
                    changes,
                )
        return dict(row)


class UserStore:
    """SQL access to wallet-identified users."""

    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def get_by_id(self, user_id: int) -> dict | None:
        row = await self.pool.fetchrow("SELECT * FROM users WHERE id = $1;", user_id)
        return dict(row) if row is not None else None

    async def get_by_wallet(self, wallet_address: str) -> dict | None:
        row = await self.pool.fetchrow(
            "SELECT * FROM users WHERE wallet_address = $1;", wallet_address.lower()
        )
        return dict(row) if row is not None else None

    async def get_or_create(self, wallet_address: str) -> dict:
        """New wallets start as TIER_1 traders with approved (wallet-only) KYC."""
        addr = wallet_address.lower()
        await self.pool.execute(
            """
            INSERT INTO users (wallet_address, role, kyc_tier, kyc_status)
            VALUES ($1, 'TRADER', 'TIER_1', 'APPROVED')
            ON CONFLICT (wallet_address) DO NOTHING;
            """,
            addr,
        )
        user = await self.get_by_wallet(addr)
        if user is None:
            raise RuntimeError(f"Failed to create user for {addr}")
        return user

    async def list_users(self, role: str | None = None, kyc_status: str | None = None) -> list[dict]:
        sql = "SELECT * FROM users WHERE 1 = 1"
        params: list[Any] = []
        if role:
            params.append(role)
            sql += f" AND role = ${len(params)}"
        if kyc_status:
            params.append(kyc_status)
            sql += f" AND kyc_status = ${len(params)}"
        sql += " ORDER BY created_at DESC;"
        rows = await self.pool.fetch(sql, *params)
        return [dict(r) for r in rows]

    async def update_user(self, user_id: int, changes: dict[str, str]) -> dict | None:
        allowed = {"kyc_tier": KYC_TIERS, "kyc_status": KYC_STATUSES, "role": USER_ROLES}
        sets: list[str] = []
        params: list[Any] = []
        for column, value in changes.items():
            if column in allowed and value in allowed[column]:
                params.append(value)
                sets.append(f"{column} = ${len(params)}")
        if not sets:
            return None
        params.append(user_id)
        row = await self.pool.fetchrow(
            f"UPDATE users SET {', '.join(sets)}, updated_at = NOW() WHERE id = ${len(params)} RETURNING *;",
            *params,
        )
        return dict(row) if row is not None else None


class FeeStore:
    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def list_fees(self) -> list[dict]:
        rows = await self.pool.fetch("SELECT * FROM fee_config ORDER BY asset;")
        return [dict(r) for r in rows]

    async def update_fee(self, asset: str, fee_bps: int | None, spread_bps: int | None) -> None:
        """Upsert; a None leaves the stored value (or 0 for a new asset) in place."""
        await self.pool.execute(
            """
            INSERT INTO fee_config (asset, fee_bps, spread_bps)
            VALUES ($1, COALESCE($2::int, 0), COALESCE($3::int, 0))
            ON CONFLICT (asset) DO UPDATE SET
                fee_bps = COALESCE($2::int, fee_config.fee_bps),
                spread_bps = COALESCE($3::int, fee_config.spread_bps),
                updated_at = NOW();
            """,
            asset,
            fee_bps,
            spread_bps,
        )

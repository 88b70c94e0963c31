"""
Order lifecycle state machine for mirrored on-chain OTC orders.

decide() is the single authority on which status changes a caller may apply to an
order row, and which evidence fields (tx hashes, trade id) must accompany them.
It performs no I/O: callers load the row, call decide(), and persist the returned
MutationPlan themselves.
"""
import math
import re
from dataclasses import dataclass
from enum import Enum
from typing import Annotated, Any, Mapping

from pydantic import BaseModel, BeforeValidator, ConfigDict


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    ESCROWED = "ESCROWED"
    DELIVERED = "DELIVERED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    DISPUTED = "DISPUTED"


class Role(str, Enum):
    TRADER = "TRADER"
    ADMIN = "ADMIN"


# Current status -> statuses it may move to
VALID_TRANSITIONS: dict[OrderStatus, list[OrderStatus]] = {
    OrderStatus.PENDING: [OrderStatus.ESCROWED, OrderStatus.CANCELLED],
    OrderStatus.ESCROWED: [OrderStatus.DELIVERED],
    OrderStatus.DELIVERED: [OrderStatus.COMPLETED, OrderStatus.DISPUTED],
    OrderStatus.DISPUTED: [OrderStatus.COMPLETED, OrderStatus.CANCELLED],
    OrderStatus.COMPLETED: [],  # terminal
    OrderStatus.CANCELLED: [],  # terminal
}

TERMINAL_STATUSES = frozenset(s for s, nxt in VALID_TRANSITIONS.items() if not nxt)

_TX_HASH_RE = re.compile(r"0x[0-9A-Fa-f]{64}")

# orders.trade_id is BIGINT; floats past 2**53 no longer hold every integer exactly
MAX_TRADE_ID = 2**63 - 1
MAX_EXACT_FLOAT = 2**53


def is_valid_transition(current: OrderStatus | str | None, target: OrderStatus | str) -> bool:
    """True if target is allowed after current."""
    allowed = VALID_TRANSITIONS.get(_as_status(current), [])
    return _as_status(target) in allowed


def is_tx_hash(value: Any) -> bool:
    """0x-prefixed 32-byte hex string, matched exactly."""
    return isinstance(value, str) and _TX_HASH_RE.fullmatch(value) is not None


def is_finite_int(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, int):
        return True
    return isinstance(value, float) and math.isfinite(value) and value.is_integer()


def is_trade_id(value: Any) -> bool:
    """Whole number that fits the trade_id column without losing precision."""
    if not is_finite_int(value):
        return False
    if isinstance(value, float) and abs(value) > MAX_EXACT_FLOAT:
        return False
    return 0 <= value <= MAX_TRADE_ID


def _as_status(value: Any) -> OrderStatus | None:
    if isinstance(value, OrderStatus):
        return value
    try:
        return OrderStatus(value)
    except ValueError:
        return None


@dataclass(frozen=True)
class Caller:
    """Already-authenticated identity of whoever is asking for the change."""
    id: int
    role: Role = Role.TRADER

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


@dataclass(frozen=True)
class OrderSnapshot:
    """Read-only view of the stored order row that decisions are made against."""
    id: int
    user_id: int
    status: OrderStatus
    counterparty_id: int | None = None
    trade_id: int | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "OrderSnapshot":
        return cls(
            id=int(row["id"]),
            user_id=int(row["user_id"]),
            status=OrderStatus(row["status"]),
            counterparty_id=row.get("counterparty_id"),
            trade_id=row.get("trade_id"),
        )


def text_or_none(value: Any) -> str | None:
    """Non-empty strings pass; anything else counts as absent."""
    return value if isinstance(value, str) and value != "" else None


def number_or_none(value: Any) -> int | float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return value


PatchText = Annotated[str | None, BeforeValidator(text_or_none)]
PatchNumber = Annotated[int | float | None, BeforeValidator(number_or_none)]


class OrderPatch(BaseModel):
    """
    Sparse change request for one order. Values of the wrong JSON type are dropped
    rather than failing validation, so the decision step only ever sees the
    recognized field shapes.

    status keeps the raw string so an unknown status still surfaces as an illegal
    transition rather than vanishing. counterparty_id is never trusted as a value:
    its presence only signals that the caller believes an acceptance is happening.
    """
    model_config = ConfigDict(frozen=True)

    status: PatchText = None
    escrow_tx_hash: PatchText = None
    delivery_tx_hash: PatchText = None
    trade_id: PatchNumber = None
    counterparty_id: Any = None

    @classmethod
    def parse(cls, body: Any) -> "OrderPatch":
        """Build a patch from an untyped JSON body; a non-object body is an empty patch."""
        if not isinstance(body, Mapping):
            return cls()
        return cls.model_validate(dict(body))

    @property
    def has_updates(self) -> bool:
        return any(
            v is not None
            for v in (
                self.status,
                self.escrow_tx_hash,
                self.delivery_tx_hash,
                self.trade_id,
                self.counterparty_id,
            )
        )


class RejectReason(str, Enum):
    NO_UPDATES = "NO_UPDATES"
    INVALID_COUNTERPARTY_MUTATION = "INVALID_COUNTERPARTY_MUTATION"
    ILLEGAL_TRANSITION = "ILLEGAL_TRANSITION"
    FORBIDDEN = "FORBIDDEN"
    COUNTERPARTY_ALREADY_SET = "COUNTERPARTY_ALREADY_SET"
    MISSING_EVIDENCE = "MISSING_EVIDENCE"
    INVALID_TRADE_ID = "INVALID_TRADE_ID"
    EVIDENCE_WITHOUT_TRANSITION = "EVIDENCE_WITHOUT_TRANSITION"
    NO_VALID_UPDATES = "NO_VALID_UPDATES"

    @property
    def http_status(self) -> int:
        return 403 if self is RejectReason.FORBIDDEN else 400


@dataclass(frozen=True)
class Rejection:
    reason: RejectReason
    message: str
    detail: str | None = None

    @property
    def http_status(self) -> int:
        return self.reason.http_status


@dataclass(frozen=True)
class MutationPlan:
    """Ordered (column, value) assignments to persist in one update."""
    assignments: tuple[tuple[str, Any], ...]

    @property
    def fields(self) -> tuple[str, ...]:
        return tuple(name for name, _ in self.assignments)

    @property
    def status(self) -> OrderStatus | None:
        return self.as_dict().get("status")

    def as_dict(self) -> dict[str, Any]:
        return dict(self.assignments)


def _reject(reason: RejectReason, message: str, detail: str | None = None) -> Rejection:
    return Rejection(reason=reason, message=message, detail=detail)


def _forbidden(message: str, detail: str | None = None) -> Rejection:
    return _reject(RejectReason.FORBIDDEN, message, detail)


def _authorize(
    caller: Caller,
    order: OrderSnapshot,
    target: OrderStatus,
    patch: OrderPatch,
) -> Rejection | None:
    """Role, ownership and evidence checks for an edge already known to be legal."""
    current = order.status
    is_seller = caller.id == order.user_id
    is_buyer = order.counterparty_id is not None and caller.id == order.counterparty_id

    if target is OrderStatus.ESCROWED:
        if current is not OrderStatus.PENDING:
            return _reject(RejectReason.ILLEGAL_TRANSITION, "Order is not pending")
        if is_seller:
            return _forbidden("Seller cannot accept own order", "SELLER_SELF_ACCEPT")
        if order.counterparty_id is not None:
            return _reject(RejectReason.COUNTERPARTY_ALREADY_SET, "Order already has a counterparty")
        if not is_tx_hash(patch.escrow_tx_hash):
            return _reject(RejectReason.MISSING_EVIDENCE, "escrow_tx_hash is required (valid 0x... hash)")
        if patch.trade_id is not None and not is_trade_id(patch.trade_id):
            return _reject(RejectReason.INVALID_TRADE_ID, "trade_id must be a non-negative 64-bit integer")

    elif target is OrderStatus.CANCELLED:
        if current is OrderStatus.PENDING:
            if not (is_seller or caller.is_admin):
                return _forbidden("Only seller or admin can cancel a pending order")
        elif current is OrderStatus.DISPUTED:
            if not caller.is_admin:
                return _forbidden("Only admin can cancel a disputed order")
        else:
            return _reject(RejectReason.ILLEGAL_TRANSITION, "Cancel not allowed in current status")

    elif target is OrderStatus.DELIVERED:
        if not is_seller:
            return _forbidden("Only seller can mark delivered")
        if current is not OrderStatus.ESCROWED:
            return _reject(RejectReason.ILLEGAL_TRANSITION, "Order must be escrowed first")
        if not is_tx_hash(patch.delivery_tx_hash):
            return _reject(RejectReason.MISSING_EVIDENCE, "delivery_tx_hash is required (valid 0x... hash)")

    elif target is OrderStatus.COMPLETED:
        if current is OrderStatus.DELIVERED:
            if not is_buyer:
                return _forbidden("Only buyer can complete after delivery")
        elif current is OrderStatus.DISPUTED:
            if not caller.is_admin:
                return _forbidden("Only admin can resolve disputed orders")
        else:
            return _reject(RejectReason.ILLEGAL_TRANSITION, "Complete not allowed in current status")

    elif target is OrderStatus.DISPUTED:
        if current is not OrderStatus.DELIVERED:
            return _reject(RejectReason.ILLEGAL_TRANSITION, "Only delivered orders can be disputed")
        if not is_buyer:
            return _forbidden("Only buyer can dispute after delivery")

    return None


def _unconsumed_evidence(caller: Caller, target: OrderStatus | None, patch: OrderPatch) -> Rejection | None:
    """Evidence fields must travel with the transition that writes them."""
    if target is not OrderStatus.ESCROWED:
        if patch.escrow_tx_hash is not None:
            return _reject(
                RejectReason.EVIDENCE_WITHOUT_TRANSITION,
                "escrow_tx_hash/trade_id updates require status=ESCROWED",
            )
        if patch.trade_id is not None and (target is None or not caller.is_admin):
            return _reject(
                RejectReason.EVIDENCE_WITHOUT_TRANSITION,
                "escrow_tx_hash/trade_id updates require status=ESCROWED",
            )
    if target is not OrderStatus.DELIVERED and patch.delivery_tx_hash is not None:
        return _reject(
            RejectReason.EVIDENCE_WITHOUT_TRANSITION,
            "delivery_tx_hash updates require status=DELIVERED",
        )
    return None


def decide(caller: Caller, order: OrderSnapshot, patch: OrderPatch) -> MutationPlan | Rejection:
    """
    Decide whether `caller` may apply `patch` to `order`.

    Returns the full set of column assignments to persist, or a Rejection naming
    exactly why not. Nothing is ever partially approved.
    """
    if not patch.has_updates:
        return _reject(RejectReason.NO_UPDATES, "No updates provided")

    current = order.status
    target = _as_status(patch.status) if patch.status is not None else None

    # counterparty_id is only tolerated as part of an accept; the stored value is
    # always the caller's id, never what the client sent.
    if patch.counterparty_id is not None:
        if not (target is OrderStatus.ESCROWED and current is OrderStatus.PENDING):
            return _reject(
                RejectReason.INVALID_COUNTERPARTY_MUTATION,
                "counterparty_id cannot be set/changed directly",
            )

    if patch.status is not None:
        if target is None or not is_valid_transition(current, target):
            return _reject(
                RejectReason.ILLEGAL_TRANSITION,
                f"Cannot transition from {current.value} to {patch.status}",
            )
        denied = _authorize(caller, order, target, patch)
        if denied is not None:
            return denied

    denied = _unconsumed_evidence(caller, target, patch)
    if denied is not None:
        return denied

    updates: list[tuple[str, Any]] = []
    if target is not None:
        updates.append(("status", target))

    if target is OrderStatus.ESCROWED:
        updates.append(("counterparty_id", caller.id))
        updates.append(("escrow_tx_hash", patch.escrow_tx_hash))
        if patch.trade_id is not None:
            updates.append(("trade_id", int(patch.trade_id)))

    if target is OrderStatus.DELIVERED:
        updates.append(("delivery_tx_hash", patch.delivery_tx_hash))

    # Admin may attach the escrow trade id while resolving a dispute
    if caller.is_admin and patch.trade_id is not None and target is not OrderStatus.ESCROWED:
        if not is_trade_id(patch.trade_id):
            return _reject(RejectReason.INVALID_TRADE_ID, "trade_id must be a non-negative 64-bit integer")
        if order.trade_id is not None:
            return _reject(RejectReason.INVALID_TRADE_ID, "trade_id is already set")
        updates.append(("trade_id", int(patch.trade_id)))

    if not updates:
        return _reject(RejectReason.NO_VALID_UPDATES, "No valid updates provided")

    return MutationPlan(assignments=tuple(updates))

"""
Order updates: load the row, decide, write conditionally on the status that was read.
If another writer changed the status in between, the whole cycle runs again against the
fresh row (which usually turns the loser into a plain illegal-transition rejection).
"""
import logging
from typing import Protocol

from otc_mirror.metrics import (
    order_transitions_total,
    order_update_conflicts_total,
    order_updates_rejected_total,
)
from otc_mirror.order_state import (
    Caller,
    MutationPlan,
    OrderPatch,
    OrderSnapshot,
    OrderStatus,
    Rejection,
    decide,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 2


class OrderWriter(Protocol):
    async def fetch_order(self, order_id: int) -> dict | None: ...

    async def apply_mutation(
        self,
        order_id: int,
        expected_status: OrderStatus,
        plan: MutationPlan,
        actor_id: int,
    ) -> dict | None: ...


class OrderNotFoundError(Exception):
    """Raised when the order id is not mirrored."""
    def __init__(self, order_id: int):
        self.order_id = order_id
        super().__init__(f"Order {order_id} not found")


class OrderRejectedError(Exception):
    """Raised when the transition rules deny the requested change."""
    def __init__(self, rejection: Rejection):
        self.rejection = rejection
        super().__init__(rejection.message)


class OrderConflictError(Exception):
    """Raised when concurrent writers kept changing the order under us."""
    def __init__(self, order_id: int, attempts: int):
        self.order_id = order_id
        self.attempts = attempts
        super().__init__(f"Order {order_id} was modified concurrently, retry the request")


async def update_order(
    store: OrderWriter,
    caller: Caller,
    order_id: int,
    patch: OrderPatch,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> dict:
    """
    Apply patch to the order on behalf of caller. Returns the updated row.
    Raises OrderNotFoundError, OrderRejectedError or OrderConflictError.
    """
    for attempt in range(1, max_attempts + 1):
        row = await store.fetch_order(order_id)
        if row is None:
            raise OrderNotFoundError(order_id)
        order = OrderSnapshot.from_row(row)

        result = decide(caller, order, patch)
        if isinstance(result, Rejection):
            order_updates_rejected_total.labels(reason=result.reason.value).inc()
            logger.warning(
                "Rejected update order_id=%s caller_id=%s status=%s reason=%s: %s",
                order_id,
                caller.id,
                order.status.value,
                result.reason.value,
                result.message,
            )
            raise OrderRejectedError(result)

        updated = await store.apply_mutation(order_id, order.status, result, caller.id)
        if updated is not None:
            to_status = result.status.value if result.status is not None else order.status.value
            order_transitions_total.labels(from_status=order.status.value, to_status=to_status).inc()
            logger.info(
                "Updated order_id=%s caller_id=%s %s -> %s fields=%s",
                order_id,
                caller.id,
                order.status.value,
                to_status,
                ",".join(result.fields),
            )
            return updated

        order_update_conflicts_total.inc()
        logger.warning(
            "Order order_id=%s left status %s before write (attempt %d/%d)",
            order_id,
            order.status.value,
            attempt,
            max_attempts,
        )

    raise OrderConflictError(order_id, max_attempts)

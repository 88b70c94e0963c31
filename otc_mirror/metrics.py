"""
Prometheus metrics: order status transitions and rejections, mirrored orders, price cache.
"""
from prometheus_client import Counter, generate_latest

# Orders: status changes that were decided, written and audited
order_transitions_total = Counter(
    "order_transitions_total",
    "Total order status transitions persisted",
    ["from_status", "to_status"],
)
order_updates_rejected_total = Counter(
    "order_updates_rejected_total",
    "Total order update requests rejected by the transition rules",
    ["reason"],
)
order_update_conflicts_total = Counter(
    "order_update_conflicts_total",
    "Total conditional order writes that lost a race with another writer",
)
orders_mirrored_total = Counter(
    "orders_mirrored_total",
    "Total on-chain orders mirrored into the database",
    ["asset"],
)

# Prices: read-through cache outcome (hit, miss, fallback)
price_cache_requests_total = Counter(
    "price_cache_requests_total",
    "Total price lookups by cache outcome",
    ["result"],
)


def get_metrics_content_type():
    return "text/plain; charset=utf-8; version=0.0.4"


def get_metrics_bytes():
    return generate_latest()

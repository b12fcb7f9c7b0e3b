"""Fulfillment ledger reader."""

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

FULFILLMENT_STATUSES = ("fulfilled", "partial", "sent", "none", "cancelled")


@dataclass(frozen=True)
class FulfillmentSummary:
    fulfilled: int = 0
    partial: int = 0
    sent: int = 0
    none: int = 0
    cancelled: int = 0
    total: int = 0


def summarize_fulfillments(fulfillments: Iterable[Any]) -> FulfillmentSummary:
    """Count fulfillments per status. An empty snapshot yields all zeros."""
    counts = dict.fromkeys(FULFILLMENT_STATUSES, 0)
    total = 0
    for fulfillment in fulfillments:
        status = fulfillment.get("status") if isinstance(fulfillment, dict) else fulfillment.status
        if status in counts:
            counts[status] += 1
        total += 1
    return FulfillmentSummary(total=total, **counts)

"""Order status resolution — decision tables for financial and fulfillment status.

Both resolvers are pure. They take snapshots of the order's ledgers and
return frozen resolutions that the Order aggregate applies to itself. A
collection passed as ``None`` has not been loaded. That is an integration
error, so it is rejected rather than treated as empty.
"""

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from ordering.errors import PreconditionError
from ordering.ledger.fulfillments import summarize_fulfillments
from ordering.ledger.transactions import summarize_transactions


@dataclass(frozen=True)
class FinancialResolution:
    status: str
    total_authorized: int
    total_captured: int
    total_refunds: int
    total_voided: int
    total_cancelled: int
    total_pending: int
    total_due: int


@dataclass(frozen=True)
class FulfillmentResolution:
    status: str
    total_fulfilled_fulfillments: int
    total_partial_fulfillments: int
    total_sent_fulfillments: int
    total_cancelled_fulfillments: int
    total_pending_fulfillments: int

    @property
    def closes_order(self) -> bool:
        return self.status in ("fulfilled", "cancelled")


def _financial_status(total_price: int, authorized: int, voided: int, sale: int, refunded: int) -> str:
    # First match wins.
    if total_price == 0:
        return "paid"
    if authorized == total_price and sale == 0 and voided == 0 and refunded == 0:
        return "authorized"
    if (authorized == voided and voided > 0) or (total_price == voided and voided > 0):
        return "voided"
    if sale == total_price and refunded == 0:
        return "paid"
    if 0 < sale < total_price and refunded == 0:
        return "partially_paid"
    if total_price == refunded:
        return "refunded"
    if 0 < refunded < total_price:
        return "partially_refunded"
    return "pending"


def resolve_financial_status(total_price: int, transactions: Iterable[Any] | None) -> FinancialResolution:
    """Derive financial status and ledger totals for an order priced at ``total_price``."""
    if transactions is None:
        raise PreconditionError("Transactions must be loaded before resolving financial status")

    summary = summarize_transactions(transactions)
    status = _financial_status(
        total_price,
        authorized=summary.authorized,
        voided=summary.voided,
        sale=summary.sale,
        refunded=summary.refunded,
    )

    return FinancialResolution(
        status=status,
        total_authorized=summary.authorized,
        total_captured=summary.sale,
        total_refunds=summary.refunded,
        total_voided=summary.voided,
        total_cancelled=summary.cancelled_total,
        total_pending=summary.pending_total,
        total_due=total_price - summary.sale,
    )


def resolve_fulfillment_status(
    fulfillments: Iterable[Any] | None,
    items: Iterable[Any] | None,
) -> FulfillmentResolution:
    """Derive fulfillment status from the order's fulfillments.

    ``items`` is not counted, but it must be loaded. Closing an order on
    fulfillment only makes sense once every line is known.
    """
    if fulfillments is None:
        raise PreconditionError("Fulfillments must be loaded before resolving fulfillment status")
    if items is None:
        raise PreconditionError("Order items must be loaded before resolving fulfillment status")

    counts = summarize_fulfillments(fulfillments)
    total = counts.total

    if total > 0 and counts.fulfilled == total:
        status = "fulfilled"
    elif total > 0 and counts.sent == total:
        status = "sent"
    elif counts.partial > 0:
        status = "partial"
    elif total > 0 and counts.none >= total:
        status = "none"
    elif total > 0 and counts.cancelled == total:
        status = "cancelled"
    else:
        status = "none"

    return FulfillmentResolution(
        status=status,
        total_fulfilled_fulfillments=counts.fulfilled,
        total_partial_fulfillments=counts.partial,
        total_sent_fulfillments=counts.sent,
        total_cancelled_fulfillments=counts.cancelled,
        total_pending_fulfillments=counts.none,
    )

"""Reconciliation Coordinator — compensates order mutations against issued ledgers.

After ``Order.recalculate()`` reports an ``OrderDelta``, the coordinator
decides which payment and fulfillment actions bring the ledgers back in line
with the order:

- due decreased: void uncaptured authorizations, then refund overpaid captures
- due increased: charge the difference through the order's payment kind
- items increased: ask the fulfillment provider to cover the new lines
- items decreased: ask the fulfillment provider to update existing fulfillments

Zero deltas produce zero actions. All collaborator calls happen here, before
the order is written. The results are handed back as a
``ReconciliationResult`` that the caller applies inside its write.
"""

import json
from dataclasses import asdict, dataclass, field

import structlog
from protean.utils.globals import current_domain

from ordering.fulfillment.dispatch import FulfillmentDispatcher, apply_fulfillments
from ordering.fulfillment.provider.port import FulfillmentOutcome
from ordering.order.order import OrderDelta, PaymentKind, TransactionKind
from ordering.payments.dispatch import DEFAULT_GATEWAY, LedgerEntry, PaymentDispatcher, PaymentInstruction
from ordering.payments.gateway.port import TransactionRequest

logger = structlog.get_logger(__name__)


@dataclass
class ReconciliationResult:
    entries: list[LedgerEntry] = field(default_factory=list)
    fulfillments: list = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.entries and not self.fulfillments

    def extend(self, other: "ReconciliationResult") -> "ReconciliationResult":
        self.entries.extend(other.entries)
        self.fulfillments.extend(other.fulfillments)
        return self

    def to_payload(self) -> str:
        """Serialize for a write command, so a retried write records the same results."""
        return json.dumps(
            {
                "entries": [asdict(entry) for entry in self.entries],
                "fulfillments": [asdict(outcome) for outcome in self.fulfillments],
            }
        )

    @classmethod
    def from_payload(cls, raw: str | None) -> "ReconciliationResult":
        if not raw:
            return cls()
        data = json.loads(raw)
        return cls(
            entries=[LedgerEntry(**entry) for entry in data.get("entries", [])],
            fulfillments=[
                FulfillmentOutcome(**{**outcome, "item_ids": tuple(outcome.get("item_ids") or ())})
                for outcome in data.get("fulfillments", [])
            ],
        )


def apply_reconciliation(order, result: ReconciliationResult) -> None:
    """Record reconciliation output on ``order``. Re-applying the same result is harmless."""
    restock = bool(getattr(current_domain, "REFUND_RESTOCK", False))
    known_refunds = {str(refund.transaction_id) for refund in order.refunds}
    for entry in result.entries:
        entry.record_on(order)
        if entry.kind == TransactionKind.REFUND.value and entry.succeeded and entry.transaction_id not in known_refunds:
            order.record_refund(
                entry.amount,
                transaction_id=entry.transaction_id,
                parent_transaction_id=entry.parent_id,
                restock=restock,
            )
    apply_fulfillments(order, result.fulfillments)


def charge_gateway(order) -> str:
    """The gateway new charges go through: the last one the order was paid with."""
    if order.payment_kind == PaymentKind.MANUAL.value:
        return "manual"
    used = [t.gateway for t in order.transactions if t.gateway and t.gateway != "manual"]
    return used[-1] if used else DEFAULT_GATEWAY


def charge_kind(order) -> str:
    if order.payment_kind == PaymentKind.AUTHORIZE.value:
        return TransactionKind.AUTHORIZE.value
    return TransactionKind.SALE.value


class ReconciliationCoordinator:
    def __init__(self, payments: PaymentDispatcher | None = None, fulfillment: FulfillmentDispatcher | None = None):
        self.payments = payments or PaymentDispatcher()
        self.fulfillment = fulfillment or FulfillmentDispatcher()

    def reconcile(self, order, delta: OrderDelta) -> ReconciliationResult:
        result = ReconciliationResult()
        if delta.is_empty:
            return result

        if delta.due_change < 0:
            result.entries.extend(self._compensate_decrease(order, delta))
        elif delta.due_change > 0:
            result.entries.extend(self._charge_increase(order, delta.due_change))

        if delta.items_change > 0:
            result.fulfillments.extend(self.fulfillment.reconcile_create(order))
        elif delta.items_change < 0:
            result.fulfillments.extend(self.fulfillment.reconcile_update(order))

        logger.info(
            "Order reconciled",
            order_id=str(order.id),
            due_change=delta.due_change,
            items_change=delta.items_change,
            transactions=len(result.entries),
            fulfillments=len(result.fulfillments),
        )
        return result

    def _request(self, order, amount, gateway, parent_reference=None) -> TransactionRequest:
        return TransactionRequest(
            order_id=str(order.id),
            amount=amount,
            currency=order.currency,
            gateway=gateway,
            parent_reference=parent_reference,
        )

    def _charge_increase(self, order, amount) -> list[LedgerEntry]:
        kind = charge_kind(order)
        instruction = PaymentInstruction(
            operation=kind,
            request=self._request(order, amount, charge_gateway(order)),
            description="Order total increased",
        )
        return [self.payments.run(instruction)]

    def _compensate_decrease(self, order, delta: OrderDelta) -> list[LedgerEntry]:
        reduction = -delta.due_change
        net_captured = order.total_captured - order.total_refunds
        instructions = []

        # Uncaptured authorizations beyond what is still owed are released
        still_owed = max(0, delta.current_price - net_captured)
        outstanding = sorted(order.outstanding_authorizations(), key=lambda t: t.amount, reverse=True)
        excess = min(reduction, max(0, sum(t.amount for t in outstanding) - still_owed))
        for authorization in outstanding:
            if excess <= 0:
                break
            amount = min(excess, authorization.amount)
            instructions.append(
                PaymentInstruction(
                    operation=TransactionKind.VOID.value,
                    request=self._request(order, amount, authorization.gateway, authorization.gateway_reference),
                    parent_id=str(authorization.id),
                    description="Order total decreased",
                )
            )
            excess -= amount

        # Captured money beyond the new price is returned
        overpaid = max(0, net_captured - delta.current_price) - max(0, net_captured - delta.previous_price)
        for captured, refundable in order.refundable_transactions():
            if overpaid <= 0:
                break
            amount = min(overpaid, refundable)
            instructions.append(
                PaymentInstruction(
                    operation=TransactionKind.REFUND.value,
                    request=self._request(order, amount, captured.gateway, captured.gateway_reference),
                    parent_id=str(captured.id),
                    description="Order total decreased",
                )
            )
            overpaid -= amount

        if not instructions:
            logger.info(
                "Due decrease needs no money movement",
                order_id=str(order.id),
                reduction=reduction,
            )
            return []
        return self.payments.run_many(instructions)

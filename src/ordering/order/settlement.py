"""Order settlement — commands and handlers for money and fulfillment outcomes.

Covers the writes behind pay, refund and cancel, plus status callbacks from
payment and fulfillment collaborators. Ledger entries arrive with their ids
already assigned, so recording them again on a retried write is a no-op.
"""

import json

import structlog
from protean import handle
from protean.fields import Boolean, Identifier, String, Text
from protean.utils.globals import current_domain

from ordering.domain import ordering
from ordering.order.immediate import settle_subscriptions
from ordering.order.order import CancelReason, Order, TransactionKind, TransactionStatus
from ordering.order.reconciliation import ReconciliationResult, apply_reconciliation
from ordering.subscription.subscription import Subscription

logger = structlog.get_logger(__name__)


@ordering.command(part_of="Order")
class SettleOrder:
    order_id = Identifier(required=True)
    reconciliation = Text()
    subscribe = Boolean(default=False)


@ordering.command(part_of="Order")
class CancelOrder:
    order_id = Identifier(required=True)
    reason = String(max_length=20, default=CancelReason.OTHER.value)
    reconciliation = Text()
    cancelled_transaction_ids = Text()  # JSON list of pending manual transactions


@ordering.command(part_of="Order")
class RecordTransactionStatus:
    order_id = Identifier(required=True)
    transaction_id = Identifier(required=True)
    status = String(required=True, max_length=20)
    gateway_reference = String(max_length=255)
    error_code = String(max_length=100)


@ordering.command(part_of="Order")
class RecordFulfillmentStatus:
    order_id = Identifier(required=True)
    fulfillment_id = Identifier(required=True)
    status = String(required=True, max_length=20)


@ordering.command_handler(part_of=Order)
class SettlementHandler:
    @handle(SettleOrder)
    def settle_order(self, command):
        repo = current_domain.repository_for(Order)
        order = repo.get(command.order_id)
        apply_reconciliation(order, ReconciliationResult.from_payload(command.reconciliation))
        order.recalculate()

        subscription_repo = current_domain.repository_for(Subscription)
        existing = subscription_repo.query.filter(original_order_id=str(order.id)).all().items
        for subscription in settle_subscriptions(order, command.subscribe, existing):
            subscription_repo.add(subscription)

        repo.add(order)
        return order

    @handle(CancelOrder)
    def cancel_order(self, command):
        repo = current_domain.repository_for(Order)
        order = repo.get(command.order_id)
        order.ensure_cancellable()

        apply_reconciliation(order, ReconciliationResult.from_payload(command.reconciliation))
        for transaction_id in json.loads(command.cancelled_transaction_ids or "[]"):
            order.update_transaction_status(transaction_id, TransactionStatus.CANCELLED.value)
        order.recalculate()
        order.cancel(command.reason)

        repo.add(order)
        logger.info("Order cancelled", order_id=str(order.id), reason=command.reason)
        return order

    @handle(RecordTransactionStatus)
    def record_transaction_status(self, command):
        repo = current_domain.repository_for(Order)
        order = repo.get(command.order_id)
        transaction = order.update_transaction_status(
            command.transaction_id,
            command.status,
            gateway_reference=command.gateway_reference,
            error_code=command.error_code,
        )

        refunded = {str(refund.transaction_id) for refund in order.refunds}
        if (
            transaction.kind == TransactionKind.REFUND.value
            and transaction.status == TransactionStatus.SUCCESS.value
            and str(transaction.id) not in refunded
        ):
            order.record_refund(
                transaction.amount,
                transaction_id=str(transaction.id),
                parent_transaction_id=str(transaction.parent_id) if transaction.parent_id else None,
                restock=bool(getattr(current_domain, "REFUND_RESTOCK", False)),
            )

        order.recalculate()
        repo.add(order)
        return order

    @handle(RecordFulfillmentStatus)
    def record_fulfillment_status(self, command):
        repo = current_domain.repository_for(Order)
        order = repo.get(command.order_id)
        order.update_fulfillment_status(command.fulfillment_id, command.status)
        order.recalculate()
        repo.add(order)
        return order

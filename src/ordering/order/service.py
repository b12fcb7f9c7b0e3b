"""OrderService — the exposed surface of the Ordering context.

Every operation runs in two phases:

1. Read and call out. The order is loaded and changed in memory, and every
   gateway and fulfillment call happens here. Nothing is written.
2. Write. The collaborator results are handed to a command whose handler
   re-reads the order, records the results and persists it in one short
   UnitOfWork. Checkout writes through ``PlaceOrder``.

A write that loses an optimistic-concurrency race is retried from phase 2
only, so a customer is never charged twice for one request.
"""

import json
from uuid import uuid4

import structlog
from protean.exceptions import ValidationError
from protean.utils.globals import current_domain

from ordering.checkout.checkout import CheckoutOrchestrator, CheckoutRequest, PreparedCheckout
from ordering.checkout.placement import PlaceOrder, park, release
from ordering.domain import ordering
from ordering.errors import ConflictError, ExternalServiceError
from ordering.fulfillment.dispatch import FulfillmentDispatcher
from ordering.fulfillment.provider.port import FulfillmentProvider
from ordering.order.immediate import attempt_immediate
from ordering.order.modification import AddOrderItem, RemoveOrderItem, UpdateOrderItem
from ordering.order.order import (
    CancelReason,
    FinancialStatus,
    Order,
    TransactionKind,
    TransactionStatus,
)
from ordering.order.recalculation import RecalculateOrder
from ordering.order.reconciliation import (
    ReconciliationCoordinator,
    ReconciliationResult,
    charge_gateway,
)
from ordering.order.repository import QueryContext
from ordering.order.resolve import ById, resolve_order
from ordering.order.settlement import (
    CancelOrder,
    RecordFulfillmentStatus,
    RecordTransactionStatus,
    SettleOrder,
)
from ordering.payments.dispatch import MANUAL_GATEWAY, LedgerEntry, PaymentDispatcher, PaymentInstruction
from ordering.payments.gateway.port import PaymentGateway, TransactionRequest
from ordering.utils.logging import bind_order_context, clear_order_context

logger = structlog.get_logger(__name__)

PAYABLE_STATUSES = {FinancialStatus.AUTHORIZED.value, FinancialStatus.PARTIALLY_PAID.value}
REFUNDABLE_STATUSES = {
    FinancialStatus.PAID.value,
    FinancialStatus.PARTIALLY_PAID.value,
    FinancialStatus.PARTIALLY_REFUNDED.value,
}


@ordering.application_service(part_of=Order)
class OrderService:
    def __init__(
        self,
        gateway: PaymentGateway | None = None,
        provider: FulfillmentProvider | None = None,
        context: QueryContext | None = None,
    ):
        self.payments = PaymentDispatcher(gateway=gateway)
        self.fulfillment = FulfillmentDispatcher(provider=provider)
        self.context = context or QueryContext(live_mode=bool(getattr(current_domain, "LIVE_MODE", True)))
        self.coordinator = ReconciliationCoordinator(payments=self.payments, fulfillment=self.fulfillment)
        self.checkout = CheckoutOrchestrator(
            payments=self.payments, fulfillment=self.fulfillment, context=self.context
        )

    # -------------------------------------------------------------------
    # Checkout
    # -------------------------------------------------------------------
    def create(self, request: CheckoutRequest | dict) -> Order:
        """Place an order from a cart or subscription.

        If the write fails after money has moved, every successful charge is
        refunded or voided before the error is raised.
        """
        prepared = self.checkout.prepare(request)
        order_id = park(prepared)
        bind_order_context(order_id=order_id)
        try:
            order = current_domain.process(PlaceOrder.from_prepared(prepared), asynchronous=False)
        except Exception as exc:
            logger.error(
                "Order write failed after checkout",
                error=repr(exc),
                transactions=len(prepared.entries),
                fulfillments=len(prepared.fulfillments),
            )
            self._compensate(prepared)
            raise
        else:
            logger.info(
                "Order placed",
                total_price=order.total_price,
                financial_status=order.financial_status,
                fulfillment_status=order.fulfillment_status,
            )
            return current_domain.repository_for(Order).get(order.id)
        finally:
            release(order_id)
            clear_order_context()

    def _compensate(self, prepared: PreparedCheckout) -> list[LedgerEntry]:
        """Return money taken for a checkout whose order was never written."""
        order = prepared.order
        instructions = [
            PaymentInstruction(
                operation=(
                    TransactionKind.VOID.value
                    if entry.kind == TransactionKind.AUTHORIZE.value
                    else TransactionKind.REFUND.value
                ),
                request=self._request(order, entry.amount, entry.gateway, entry.gateway_reference),
                parent_id=entry.transaction_id,
                description="Checkout reverted",
            )
            for entry in prepared.entries
            if entry.succeeded and entry.gateway != MANUAL_GATEWAY
        ]
        if not instructions:
            return []

        try:
            entries = self.payments.run_many(instructions)
        except ExternalServiceError as exc:
            logger.error(
                "Checkout compensation failed; money left with the gateway",
                error=repr(exc),
                amounts=[i.request.amount for i in instructions],
            )
            return []

        for entry in entries:
            if entry.succeeded:
                logger.warning(
                    "Checkout payment reverted", kind=entry.kind, amount=entry.amount, parent_id=entry.parent_id
                )
            else:
                logger.error(
                    "Checkout payment could not be reverted",
                    kind=entry.kind,
                    amount=entry.amount,
                    parent_id=entry.parent_id,
                    status=entry.status,
                )
        return entries

    # -------------------------------------------------------------------
    # Money
    # -------------------------------------------------------------------
    def pay(self, order_ref, gateway: str | None = None) -> Order:
        """Capture outstanding authorizations, then charge whatever is still due."""
        order = resolve_order(order_ref, self.context)
        if order.financial_status not in PAYABLE_STATUSES:
            raise ConflictError(
                {"financial_status": [f"Cannot pay an order that is {order.financial_status}"]}
            )

        instructions = []
        remaining = order.total_due
        for authorization in order.outstanding_authorizations():
            if remaining <= 0:
                break
            amount = min(authorization.amount, remaining)
            instructions.append(
                PaymentInstruction(
                    operation=TransactionKind.CAPTURE.value,
                    request=self._request(order, amount, authorization.gateway, authorization.gateway_reference),
                    parent_id=str(authorization.id),
                    description="Payment",
                )
            )
            remaining -= amount

        if remaining > 0:
            instructions.append(
                PaymentInstruction(
                    operation=TransactionKind.SALE.value,
                    request=self._request(order, remaining, gateway or charge_gateway(order)),
                    description="Payment",
                )
            )

        entries = self.payments.run_many(instructions)
        for entry in entries:
            entry.record_on(order)
        order.recalculate()

        immediate = attempt_immediate(order, self.fulfillment)
        logger.info(
            "Order payment dispatched",
            order_id=str(order.id),
            transactions=len(entries),
            financial_status=order.financial_status,
        )
        result = ReconciliationResult(entries=entries, fulfillments=immediate.fulfillments)
        return self._settle(order, result, immediate.subscribe)

    def refund(self, order_ref, refunds: list[dict] | None = None) -> Order:
        """Refund captured money. Without ``refunds``, everything still refundable is returned."""
        order = resolve_order(order_ref, self.context)
        if order.financial_status not in REFUNDABLE_STATUSES:
            raise ConflictError(
                {"financial_status": [f"Cannot refund an order that is {order.financial_status}"]}
            )

        instructions = [
            PaymentInstruction(
                operation=TransactionKind.REFUND.value,
                request=self._request(order, amount, captured.gateway, captured.gateway_reference),
                parent_id=str(captured.id),
                description="Refund",
            )
            for captured, amount in self._refund_plan(order, refunds)
        ]
        entries = self.payments.run_many(instructions)
        logger.info("Order refund dispatched", order_id=str(order.id), transactions=len(entries))
        return self._settle(order, ReconciliationResult(entries=entries))

    def cancel(self, order_ref, reason: str = CancelReason.OTHER.value) -> Order:
        """Cancel an order that has not started fulfillment, returning any money taken."""
        order = resolve_order(order_ref, self.context)
        order.ensure_cancellable()

        instructions = [
            PaymentInstruction(
                operation=TransactionKind.VOID.value,
                request=self._request(
                    order, authorization.amount, authorization.gateway, authorization.gateway_reference
                ),
                parent_id=str(authorization.id),
                description="Order cancelled",
            )
            for authorization in order.outstanding_authorizations()
        ]
        instructions.extend(
            PaymentInstruction(
                operation=TransactionKind.REFUND.value,
                request=self._request(order, amount, captured.gateway, captured.gateway_reference),
                parent_id=str(captured.id),
                description="Order cancelled",
            )
            for captured, amount in order.refundable_transactions()
        )
        entries = self.payments.run_many(instructions)
        pending_manual = [str(t.id) for t in order.pending_manual_transactions()]

        return current_domain.process(
            CancelOrder(
                order_id=str(order.id),
                reason=reason,
                reconciliation=ReconciliationResult(entries=entries).to_payload(),
                cancelled_transaction_ids=json.dumps(pending_manual),
            ),
            asynchronous=False,
        )

    # -------------------------------------------------------------------
    # Recalculation and line items
    # -------------------------------------------------------------------
    def recalculate(self, order_ref) -> Order:
        order = resolve_order(order_ref, self.context)
        result = self.coordinator.reconcile(order, order.recalculate())
        return current_domain.process(
            RecalculateOrder(order_id=str(order.id), reconciliation=result.to_payload()),
            asynchronous=False,
        )

    def add_item(self, order_ref, item: dict) -> Order:
        item = {**item, "id": item.get("id") or str(uuid4())}
        return self._modify(order_ref, item, Order.add_item, AddOrderItem)

    def update_item(self, order_ref, item: dict) -> Order:
        item = {**item, "id": item.get("id") or str(uuid4())}
        return self._modify(order_ref, item, Order.update_item, UpdateOrderItem)

    def remove_item(self, order_ref, item: dict) -> Order:
        return self._modify(order_ref, item, Order.remove_item, RemoveOrderItem)

    def _modify(self, order_ref, item, change, command_cls) -> Order:
        order = resolve_order(order_ref, self.context)
        delta = change(order, item)
        result = self.coordinator.reconcile(order, delta)
        return current_domain.process(
            command_cls(order_id=str(order.id), item=json.dumps(item), reconciliation=result.to_payload()),
            asynchronous=False,
        )

    # -------------------------------------------------------------------
    # Collaborator callbacks
    # -------------------------------------------------------------------
    def update_fulfillment(self, order_ref, fulfillment_id, status) -> Order:
        order = resolve_order(order_ref, self.context)
        order.find_fulfillment(fulfillment_id)
        return current_domain.process(
            RecordFulfillmentStatus(order_id=str(order.id), fulfillment_id=str(fulfillment_id), status=status),
            asynchronous=False,
        )

    def update_transaction(self, order_ref, transaction_id, status, gateway_reference=None, error_code=None) -> Order:
        order = resolve_order(order_ref, self.context)
        order.find_transaction(transaction_id)
        order = current_domain.process(
            RecordTransactionStatus(
                order_id=str(order.id),
                transaction_id=str(transaction_id),
                status=status,
                gateway_reference=gateway_reference,
                error_code=error_code,
            ),
            asynchronous=False,
        )
        return self._follow_up_payment(order)

    def retry_transaction(self, order_ref, transaction_id) -> Order:
        """Re-submit a failed or errored gateway transaction."""
        order = resolve_order(order_ref, self.context)
        transaction = order.find_transaction(transaction_id)
        if transaction.status not in (TransactionStatus.FAILURE.value, TransactionStatus.ERROR.value):
            raise ConflictError({"status": [f"Cannot retry a transaction that is {transaction.status}"]})
        if transaction.gateway == MANUAL_GATEWAY:
            raise ConflictError({"gateway": ["Manual transactions are settled with update_transaction"]})

        entry = self.payments.run(
            PaymentInstruction(
                operation="retry",
                request=self._request(order, transaction.amount, transaction.gateway, transaction.gateway_reference),
                kind=transaction.kind,
                parent_id=str(transaction.parent_id) if transaction.parent_id else None,
                transaction_id=str(transaction.id),
            )
        )
        return self.update_transaction(
            ById(order.id),
            transaction.id,
            entry.status,
            gateway_reference=entry.gateway_reference,
            error_code=entry.error_code,
        )

    # -------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------
    def _request(self, order, amount, gateway, parent_reference=None) -> TransactionRequest:
        return TransactionRequest(
            order_id=str(order.id),
            amount=amount,
            currency=order.currency,
            gateway=gateway or MANUAL_GATEWAY,
            parent_reference=parent_reference,
        )

    def _settle(self, order, result: ReconciliationResult, subscribe: bool = False) -> Order:
        return current_domain.process(
            SettleOrder(order_id=str(order.id), reconciliation=result.to_payload(), subscribe=subscribe),
            asynchronous=False,
        )

    def _follow_up_payment(self, order) -> Order:
        """Fulfill or subscribe an order that a settled payment has just covered."""
        immediate = attempt_immediate(order, self.fulfillment)
        if not immediate.fulfillments and not immediate.subscribe:
            return order
        return self._settle(order, ReconciliationResult(fulfillments=immediate.fulfillments), immediate.subscribe)

    @staticmethod
    def _refund_plan(order, refunds):
        balances = order.refundable_transactions()
        if not refunds:
            return balances

        remaining = {str(captured.id): amount for captured, amount in balances}
        by_id = {str(captured.id): captured for captured, _ in balances}
        plan = []
        for refund in refunds:
            amount = int(refund.get("amount") or 0)
            if amount <= 0:
                raise ValidationError({"amount": ["Refund amount must be positive"]})

            transaction_id = refund.get("transaction_id")
            targets = [str(transaction_id)] if transaction_id else list(remaining)
            if transaction_id and str(transaction_id) not in remaining:
                raise ValidationError({"transaction_id": [f"Transaction {transaction_id} has nothing to refund"]})

            for target in targets:
                if amount <= 0:
                    break
                portion = min(amount, remaining[target])
                if portion > 0:
                    plan.append((by_id[target], portion))
                    remaining[target] -= portion
                    amount -= portion
            if amount > 0:
                raise ValidationError({"amount": ["Refund exceeds the refundable balance"]})
        return plan

"""Tests for transactions, fulfillments, refunds and cancellation on the Order aggregate."""

import json

import pytest
from ordering.errors import ConflictError
from ordering.order.events import OrderCancelled, OrderClosed, OrderRefunded
from ordering.order.order import FinancialStatus, Order, OrderStatus
from protean.exceptions import ValidationError


def _make_order():
    return Order.create(
        [{"product_id": "prod-1", "quantity": 2, "price_per_unit": 500}],
        tax_lines=[{"name": "VAT", "price": 80}],
    )


class TestRecordTransaction:
    def test_records_entry_with_order_currency(self):
        order = _make_order()
        transaction = order.record_transaction(kind="sale", amount=1080, status="success", gateway="fake")
        assert transaction.currency == "USD"
        assert transaction.processed_at is not None
        assert len(order.transactions) == 1

    def test_pending_entry_has_no_processed_time(self):
        order = _make_order()
        transaction = order.record_transaction(kind="sale", amount=1080)
        assert transaction.status == "pending"
        assert transaction.processed_at is None

    def test_known_transaction_id_is_recorded_once(self):
        order = _make_order()
        order.record_transaction(kind="sale", amount=1080, status="success", transaction_id="txn-1")
        order.record_transaction(kind="sale", amount=1080, status="success", transaction_id="txn-1")
        assert len(order.transactions) == 1
        order.recalculate()
        assert order.total_captured == 1080

    def test_find_unknown_transaction_fails(self):
        order = _make_order()
        with pytest.raises(ValidationError):
            order.find_transaction("missing")


class TestUpdateTransactionStatus:
    def test_pending_transaction_settles(self):
        order = _make_order()
        transaction = order.record_transaction(kind="sale", amount=1080)
        order.update_transaction_status(transaction.id, "success", gateway_reference="ref-1")
        order.recalculate()
        assert order.find_transaction(transaction.id).gateway_reference == "ref-1"
        assert order.financial_status == FinancialStatus.PAID.value

    def test_failed_transaction_can_be_resolved(self):
        order = _make_order()
        transaction = order.record_transaction(kind="sale", amount=1080, status="failure", error_code="declined")
        order.update_transaction_status(transaction.id, "success")
        assert order.find_transaction(transaction.id).error_code is None

    def test_settled_transaction_is_final(self):
        order = _make_order()
        transaction = order.record_transaction(kind="sale", amount=1080, status="success")
        with pytest.raises(ConflictError):
            order.update_transaction_status(transaction.id, "failure")


class TestLedgerQueries:
    def test_outstanding_authorizations(self):
        order = _make_order()
        auth = order.record_transaction(kind="authorize", amount=1080, status="success", gateway="fake")
        assert [t.id for t in order.outstanding_authorizations()] == [auth.id]

        order.record_transaction(kind="capture", amount=1080, status="success", gateway="fake", parent_id=auth.id)
        assert order.outstanding_authorizations() == []

    def test_refundable_transactions(self):
        order = _make_order()
        sale = order.record_transaction(kind="sale", amount=1080, status="success", gateway="fake")
        order.record_transaction(kind="refund", amount=80, status="success", gateway="fake", parent_id=sale.id)
        [(captured, remaining)] = order.refundable_transactions()
        assert captured.id == sale.id
        assert remaining == 1000

    def test_pending_manual_transactions(self):
        order = _make_order()
        manual = order.record_transaction(kind="sale", amount=1080, gateway="manual")
        order.record_transaction(kind="sale", amount=10, status="failure", gateway="fake")
        assert [t.id for t in order.pending_manual_transactions()] == [manual.id]


class TestFulfillments:
    def test_known_fulfillment_id_updates_in_place(self):
        order = _make_order()
        order.attach_fulfillment(status="none", service="fake", fulfillment_id="ful-1")
        order.attach_fulfillment(status="sent", service="fake", fulfillment_id="ful-1")
        assert len(order.fulfillments) == 1
        assert order.find_fulfillment("ful-1").status == "sent"

    def test_item_ids_are_stored_as_json(self):
        order = _make_order()
        item_id = str(order.items[0].id)
        fulfillment = order.attach_fulfillment(status="sent", service="fake")
        assert json.loads(fulfillment.item_ids) == [item_id]

    def test_status_update_stamps_time(self):
        order = _make_order()
        fulfillment = order.attach_fulfillment(status="sent", service="fake")
        order.update_fulfillment_status(fulfillment.id, "fulfilled")
        assert order.find_fulfillment(fulfillment.id).fulfilled_at is not None

    def test_find_unknown_fulfillment_fails(self):
        order = _make_order()
        with pytest.raises(ValidationError):
            order.find_fulfillment("missing")


class TestRefunds:
    def test_record_refund_raises_event(self):
        order = _make_order()
        order._events.clear()
        refund = order.record_refund(80, transaction_id="txn-9", restock=True)
        assert refund.restock is True
        assert len(order.refunds) == 1
        assert isinstance(order._events[-1], OrderRefunded)
        assert order._events[-1].amount == 80


class TestCancellation:
    def test_cancel_closes_the_order(self):
        order = _make_order()
        order._events.clear()
        order.cancel("customer")

        assert order.status == OrderStatus.CLOSED.value
        assert order.cancel_reason == "customer"
        assert order.cancelled_at is not None
        assert [type(e) for e in order._events] == [OrderCancelled, OrderClosed]

    def test_cancel_after_fulfillment_started_is_rejected(self):
        order = _make_order()
        order.attach_fulfillment(status="sent", service="fake")
        order.recalculate()

        with pytest.raises(ConflictError):
            order.cancel()

        assert order.status == OrderStatus.OPEN.value
        assert order.cancelled_at is None
        assert order.cancel_reason is None

    def test_cancel_twice_is_rejected(self):
        order = _make_order()
        order.cancel()
        with pytest.raises(ConflictError):
            order.cancel()

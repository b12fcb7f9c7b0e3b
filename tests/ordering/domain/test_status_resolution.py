"""Tests for the financial and fulfillment status decision tables."""

import pytest
from ordering.errors import PreconditionError
from ordering.order.status import resolve_financial_status, resolve_fulfillment_status


def _txn(kind, amount, status="success"):
    return {"kind": kind, "amount": amount, "status": status}


def _status(total_price, *transactions):
    return resolve_financial_status(total_price, list(transactions)).status


class TestFinancialStatus:
    def test_zero_price_is_paid(self):
        assert _status(0) == "paid"

    def test_no_transactions_is_pending(self):
        assert _status(1080) == "pending"

    def test_full_authorization_is_authorized(self):
        assert _status(1080, _txn("authorize", 1080)) == "authorized"

    def test_void_of_full_authorization_is_voided(self):
        assert _status(1080, _txn("authorize", 1080), _txn("void", 1080)) == "voided"

    def test_void_of_full_price_is_voided(self):
        assert _status(1080, _txn("authorize", 2000), _txn("void", 1080)) == "voided"

    def test_full_sale_is_paid(self):
        assert _status(1080, _txn("sale", 1080)) == "paid"

    def test_full_capture_is_paid(self):
        assert _status(1080, _txn("authorize", 1080), _txn("capture", 1080)) == "paid"

    def test_partial_sale_is_partially_paid(self):
        assert _status(1080, _txn("sale", 500)) == "partially_paid"

    def test_full_refund_is_refunded(self):
        assert _status(1080, _txn("sale", 1080), _txn("refund", 1080)) == "refunded"

    def test_partial_refund_is_partially_refunded(self):
        assert _status(1080, _txn("sale", 1080), _txn("refund", 80)) == "partially_refunded"

    def test_unsuccessful_transactions_are_ignored(self):
        assert _status(1080, _txn("sale", 1080, status="failure")) == "pending"
        assert _status(1080, _txn("sale", 1080, status="pending")) == "pending"

    def test_overpayment_falls_through_to_pending(self):
        assert _status(1080, _txn("sale", 2000)) == "pending"

    def test_total_due_is_price_minus_captured(self):
        resolution = resolve_financial_status(1080, [_txn("sale", 500)])
        assert resolution.total_due == 580
        assert resolution.total_captured == 500

    def test_totals_are_reported(self):
        resolution = resolve_financial_status(
            1080,
            [
                _txn("authorize", 1080),
                _txn("void", 1080),
                _txn("sale", 10, status="pending"),
                _txn("sale", 20, status="cancelled"),
            ],
        )
        assert resolution.total_authorized == 1080
        assert resolution.total_voided == 1080
        assert resolution.total_pending == 10
        assert resolution.total_cancelled == 20

    def test_unloaded_transactions_are_rejected(self):
        with pytest.raises(PreconditionError):
            resolve_financial_status(1080, None)


class TestFulfillmentStatus:
    def _status(self, *statuses):
        return resolve_fulfillment_status([{"status": s} for s in statuses], []).status

    def test_no_fulfillments_is_none(self):
        assert self._status() == "none"

    def test_all_fulfilled(self):
        assert self._status("fulfilled", "fulfilled") == "fulfilled"

    def test_all_sent(self):
        assert self._status("sent", "sent") == "sent"

    def test_any_partial(self):
        assert self._status("partial", "sent") == "partial"

    def test_all_none(self):
        assert self._status("none", "none") == "none"

    def test_all_cancelled(self):
        assert self._status("cancelled", "cancelled") == "cancelled"

    def test_mixed_without_rule_is_none(self):
        assert self._status("sent", "fulfilled") == "none"

    def test_fulfilled_and_cancelled_close_the_order(self):
        assert resolve_fulfillment_status([{"status": "fulfilled"}], []).closes_order
        assert resolve_fulfillment_status([{"status": "cancelled"}], []).closes_order
        assert not resolve_fulfillment_status([{"status": "sent"}], []).closes_order

    def test_counts_are_reported(self):
        resolution = resolve_fulfillment_status([{"status": "sent"}, {"status": "none"}], [])
        assert resolution.total_sent_fulfillments == 1
        assert resolution.total_pending_fulfillments == 1

    def test_unloaded_fulfillments_are_rejected(self):
        with pytest.raises(PreconditionError):
            resolve_fulfillment_status(None, [])

    def test_unloaded_items_are_rejected(self):
        with pytest.raises(PreconditionError):
            resolve_fulfillment_status([], None)

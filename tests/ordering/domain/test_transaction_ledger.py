"""Tests for the transaction and fulfillment ledger readers."""

from ordering.ledger.fulfillments import summarize_fulfillments
from ordering.ledger.transactions import (
    outstanding_authorizations,
    refundable_balances,
    summarize_transactions,
)


def _txn(id, kind, amount, status="success", parent_id=None):
    return {"id": id, "kind": kind, "amount": amount, "status": status, "parent_id": parent_id}


class TestSummarizeTransactions:
    def test_empty_snapshot_is_all_zeros(self):
        summary = summarize_transactions([])
        assert summary.authorized == 0
        assert summary.sale == 0
        assert summary.refunded == 0
        assert summary.pending_total == 0

    def test_capture_and_sale_count_together(self):
        summary = summarize_transactions(
            [
                _txn("t1", "sale", 300),
                _txn("t2", "authorize", 700),
                _txn("t3", "capture", 700, parent_id="t2"),
            ]
        )
        assert summary.sale == 1000
        assert summary.authorized == 700

    def test_only_successful_transactions_are_summed(self):
        summary = summarize_transactions(
            [
                _txn("t1", "sale", 300),
                _txn("t2", "sale", 700, status="failure"),
                _txn("t3", "sale", 50, status="pending"),
            ]
        )
        assert summary.sale == 300
        assert summary.success_count == 1

    def test_pending_partition_includes_failures_and_errors(self):
        summary = summarize_transactions(
            [
                _txn("t1", "sale", 100, status="pending"),
                _txn("t2", "sale", 200, status="failure"),
                _txn("t3", "refund", 50, status="error"),
            ]
        )
        assert summary.pending_count == 3
        assert summary.pending_total == 250

    def test_cancelled_partition(self):
        summary = summarize_transactions([_txn("t1", "sale", 100, status="cancelled")])
        assert summary.cancelled_count == 1
        assert summary.cancelled_total == 100


class TestOutstandingAuthorizations:
    def test_uncaptured_authorization_is_outstanding(self):
        auth = _txn("a1", "authorize", 500)
        assert outstanding_authorizations([auth]) == [auth]

    def test_captured_authorization_is_not_outstanding(self):
        transactions = [_txn("a1", "authorize", 500), _txn("c1", "capture", 500, parent_id="a1")]
        assert outstanding_authorizations(transactions) == []

    def test_voided_authorization_is_not_outstanding(self):
        transactions = [_txn("a1", "authorize", 500), _txn("v1", "void", 500, parent_id="a1")]
        assert outstanding_authorizations(transactions) == []

    def test_failed_capture_leaves_authorization_outstanding(self):
        auth = _txn("a1", "authorize", 500)
        transactions = [auth, _txn("c1", "capture", 500, status="failure", parent_id="a1")]
        assert outstanding_authorizations(transactions) == [auth]


class TestRefundableBalances:
    def test_captured_money_is_refundable(self):
        sale = _txn("s1", "sale", 1000)
        assert refundable_balances([sale]) == [(sale, 1000)]

    def test_refunds_reduce_the_balance(self):
        sale = _txn("s1", "sale", 1000)
        balances = refundable_balances([sale, _txn("r1", "refund", 400, parent_id="s1")])
        assert balances == [(sale, 600)]

    def test_fully_refunded_capture_is_dropped(self):
        transactions = [_txn("s1", "sale", 1000), _txn("r1", "refund", 1000, parent_id="s1")]
        assert refundable_balances(transactions) == []

    def test_pending_refund_does_not_count(self):
        sale = _txn("s1", "sale", 1000)
        balances = refundable_balances([sale, _txn("r1", "refund", 400, status="pending", parent_id="s1")])
        assert balances == [(sale, 1000)]


class TestSummarizeFulfillments:
    def test_counts_per_status(self):
        summary = summarize_fulfillments(
            [{"status": "sent"}, {"status": "sent"}, {"status": "fulfilled"}, {"status": "none"}]
        )
        assert summary.sent == 2
        assert summary.fulfilled == 1
        assert summary.none == 1
        assert summary.total == 4

    def test_empty_snapshot(self):
        summary = summarize_fulfillments([])
        assert summary.total == 0

"""Transaction ledger reader.

Partitions payment transactions by status and sums successful amounts per
kind. Capture and sale are both money actually taken, so they are summed
together into ``sale``.
"""

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

PENDING_STATUSES = frozenset({"pending", "failure", "error"})
CANCELLED_STATUSES = frozenset({"cancelled"})
SUCCESS_STATUSES = frozenset({"success"})

# Kinds that move money towards the merchant; void and refund move it back.
_INBOUND_KINDS = frozenset({"authorize", "capture", "sale"})
_OUTBOUND_KINDS = frozenset({"void", "refund"})


@dataclass(frozen=True)
class TransactionSummary:
    authorized: int = 0
    voided: int = 0
    sale: int = 0
    refunded: int = 0
    pending_total: int = 0
    cancelled_total: int = 0
    pending_count: int = 0
    success_count: int = 0
    cancelled_count: int = 0


def _read(transaction: Any, attribute: str) -> Any:
    if isinstance(transaction, dict):
        return transaction.get(attribute)
    return getattr(transaction, attribute, None)


def _signed_total(transactions: list) -> int:
    total = 0
    for transaction in transactions:
        kind = _read(transaction, "kind")
        amount = int(_read(transaction, "amount") or 0)
        if kind in _INBOUND_KINDS:
            total += amount
        elif kind in _OUTBOUND_KINDS:
            total -= amount
    return total


def summarize_transactions(transactions: Iterable[Any]) -> TransactionSummary:
    """Summarize a snapshot of transactions. An empty snapshot is all zeros."""
    snapshot = list(transactions)

    pending = [t for t in snapshot if _read(t, "status") in PENDING_STATUSES]
    cancelled = [t for t in snapshot if _read(t, "status") in CANCELLED_STATUSES]
    successes = [t for t in snapshot if _read(t, "status") in SUCCESS_STATUSES]

    per_kind = {"authorize": 0, "capture": 0, "sale": 0, "void": 0, "refund": 0}
    for transaction in successes:
        kind = _read(transaction, "kind")
        if kind in per_kind:
            per_kind[kind] += int(_read(transaction, "amount") or 0)

    return TransactionSummary(
        authorized=per_kind["authorize"],
        voided=per_kind["void"],
        sale=per_kind["capture"] + per_kind["sale"],
        refunded=per_kind["refund"],
        pending_total=_signed_total(pending),
        cancelled_total=_signed_total(cancelled),
        pending_count=len(pending),
        success_count=len(successes),
        cancelled_count=len(cancelled),
    )


def outstanding_authorizations(transactions: Iterable[Any]) -> list:
    """Successful authorizations that have been neither captured nor voided."""
    snapshot = list(transactions)
    settled = {
        _read(t, "parent_id")
        for t in snapshot
        if _read(t, "kind") in ("capture", "void") and _read(t, "status") in SUCCESS_STATUSES
    }
    return [
        t
        for t in snapshot
        if _read(t, "kind") == "authorize"
        and _read(t, "status") in SUCCESS_STATUSES
        and _read(t, "id") not in settled
    ]


def refundable_balances(transactions: Iterable[Any]) -> list[tuple[Any, int]]:
    """Pair each successful capture or sale with the amount still refundable on it."""
    snapshot = list(transactions)
    refunded: dict[Any, int] = {}
    for t in snapshot:
        if _read(t, "kind") == "refund" and _read(t, "status") in SUCCESS_STATUSES:
            parent = _read(t, "parent_id")
            refunded[parent] = refunded.get(parent, 0) + int(_read(t, "amount") or 0)

    balances = []
    for t in snapshot:
        if _read(t, "kind") in ("capture", "sale") and _read(t, "status") in SUCCESS_STATUSES:
            remaining = int(_read(t, "amount") or 0) - refunded.get(_read(t, "id"), 0)
            if remaining > 0:
                balances.append((t, remaining))
    return balances

"""Account-balance offset applied to an order at checkout.

Store credit is expressed as a single pricing override named
``Account Balance``. Any earlier override is reverted before the deduction
is computed again, so re-running checkout never deducts twice.
"""

import structlog

from ordering.ledger.lines import find_line, remove_line, upsert_line

logger = structlog.get_logger(__name__)

ACCOUNT_BALANCE = "Account Balance"


def apply_account_balance(order, balance) -> int:
    """Offset ``order`` with up to ``balance`` of store credit and return the deduction."""
    lines = order.override_lines
    if find_line(lines, ACCOUNT_BALANCE) is not None:
        # Revert first so total_due reflects the order without any credit
        order.replace_overrides(remove_line(lines, ACCOUNT_BALANCE))
        lines = order.override_lines

    deduction = min(order.total_due, max(0, int(balance or 0)))
    if deduction > 0:
        order.replace_overrides(upsert_line(lines, ACCOUNT_BALANCE, deduction))
        logger.info("Account balance applied", order_id=str(order.id), deduction=deduction)
    return deduction

"""Domain events for the Customer aggregate."""

from protean.fields import DateTime, Identifier, Integer

from ordering.domain import ordering


@ordering.event(part_of="Customer")
class AccountBalanceDeducted:
    """Store credit was applied to an order at checkout."""

    __version__ = 1

    customer_id = Identifier(required=True)
    order_id = Identifier(required=True)
    amount = Integer(required=True)
    account_balance = Integer(required=True)
    deducted_at = DateTime(required=True)


@ordering.event(part_of="Customer")
class CustomerOrderRecorded:
    __version__ = 1

    customer_id = Identifier(required=True)
    order_id = Identifier(required=True)
    total_spent = Integer(required=True)
    total_orders = Integer(required=True)

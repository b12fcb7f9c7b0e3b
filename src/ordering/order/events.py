"""Domain events for the Order aggregate.

Status-change events carry both the previous and the new status. Subscribers
can tell a first transition from a repeated one without re-reading the order.
"""

from protean.fields import DateTime, Identifier, Integer, String

from ordering.domain import ordering


@ordering.event(part_of="Order")
class OrderPlaced:
    """A new order was built from a cart or subscription at checkout."""

    __version__ = 1

    order_id = Identifier(required=True)
    token = String(required=True)
    customer_id = Identifier()
    cart_token = String()
    subscription_token = String()
    total_price = Integer(required=True)
    total_items = Integer(required=True)
    currency = String(required=True)
    placed_at = DateTime(required=True)


@ordering.event(part_of="Order")
class OrderItemAdded:
    __version__ = 1

    order_id = Identifier(required=True)
    item_id = Identifier(required=True)
    product_id = Identifier(required=True)
    variant_id = Identifier()
    quantity = Integer(required=True)
    total_items = Integer(required=True)


@ordering.event(part_of="Order")
class OrderItemUpdated:
    __version__ = 1

    order_id = Identifier(required=True)
    item_id = Identifier(required=True)
    product_id = Identifier(required=True)
    variant_id = Identifier()
    quantity = Integer(required=True)
    total_items = Integer(required=True)


@ordering.event(part_of="Order")
class OrderItemRemoved:
    __version__ = 1

    order_id = Identifier(required=True)
    item_id = Identifier(required=True)
    product_id = Identifier(required=True)
    variant_id = Identifier()
    total_items = Integer(required=True)


@ordering.event(part_of="Order")
class OrderFinancialStatusChanged:
    """The financial status derived from the transaction ledger changed."""

    __version__ = 1

    order_id = Identifier(required=True)
    previous_status = String(required=True)
    financial_status = String(required=True)
    total_price = Integer(required=True)
    total_due = Integer(required=True)


@ordering.event(part_of="Order")
class OrderFulfillmentStatusChanged:
    """The fulfillment status derived from the fulfillment ledger changed."""

    __version__ = 1

    order_id = Identifier(required=True)
    previous_status = String(required=True)
    fulfillment_status = String(required=True)


@ordering.event(part_of="Order")
class OrderClosed:
    __version__ = 1

    order_id = Identifier(required=True)
    closed_at = DateTime(required=True)


@ordering.event(part_of="Order")
class OrderCancelled:
    """The order was cancelled before any fulfillment started."""

    __version__ = 1

    order_id = Identifier(required=True)
    cancel_reason = String(required=True)
    cancelled_at = DateTime(required=True)


@ordering.event(part_of="Order")
class OrderRefunded:
    """Money was returned against a captured transaction."""

    __version__ = 1

    order_id = Identifier(required=True)
    refund_id = Identifier(required=True)
    transaction_id = Identifier()
    amount = Integer(required=True)
    processed_at = DateTime(required=True)

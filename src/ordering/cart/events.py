"""Domain events for the Cart aggregate."""

from protean.fields import DateTime, Identifier, Integer, String

from ordering.domain import ordering


@ordering.event(part_of="Cart")
class CartItemAdded:
    """A product was added to the cart."""

    __version__ = 1

    cart_id = Identifier(required=True)
    item_id = Identifier(required=True)
    product_id = Identifier(required=True)
    quantity = Integer(required=True)


@ordering.event(part_of="Cart")
class CartOrdered:
    """The cart was checked out and is now closed to changes."""

    __version__ = 1

    cart_id = Identifier(required=True)
    token = String(required=True)
    order_id = Identifier(required=True)
    ordered_at = DateTime(required=True)

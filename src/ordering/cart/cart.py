"""Cart aggregate (CQRS) — the open basket a checkout turns into an Order.

Only an open cart can be checked out. Checkout moves it to ``ordered`` and
records the resulting order id. The cart's line arrays (tax, shipping,
discounts, coupons) are computed by external providers and copied onto the
order verbatim.
"""

from datetime import UTC, datetime
from enum import Enum
from uuid import uuid4

from protean.fields import Boolean, DateTime, HasMany, Identifier, Integer, String, Text

from ordering.cart.events import CartItemAdded, CartOrdered
from ordering.domain import ordering
from ordering.errors import ConflictError
from ordering.ledger.lines import dump_lines, load_lines


class CartStatus(Enum):
    OPEN = "open"
    ORDERED = "ordered"
    CLOSED = "closed"


@ordering.entity(part_of="Cart")
class CartItem:
    product_id = Identifier(required=True)
    variant_id = Identifier()
    sku = String(max_length=100)
    title = String(max_length=255)
    variant_title = String(max_length=255)
    quantity = Integer(required=True, min_value=1)
    price_per_unit = Integer(default=0, min_value=0)
    weight = Integer(default=0, min_value=0)  # per unit, in grams
    requires_shipping = Boolean(default=True)
    requires_subscription = Boolean(default=False)
    subscription_interval = Integer()
    subscription_unit = String(max_length=10)

    def to_line(self) -> dict:
        return {
            "product_id": str(self.product_id),
            "variant_id": str(self.variant_id) if self.variant_id else None,
            "sku": self.sku,
            "title": self.title,
            "variant_title": self.variant_title,
            "quantity": self.quantity,
            "price_per_unit": self.price_per_unit,
            "weight": self.weight,
            "requires_shipping": self.requires_shipping,
            "requires_subscription": self.requires_subscription,
            "subscription_interval": self.subscription_interval,
            "subscription_unit": self.subscription_unit,
        }


@ordering.aggregate
class Cart:
    token = String(required=True, max_length=64, unique=True)
    customer_id = Identifier()  # Nullable for guest carts
    status = String(choices=CartStatus, default=CartStatus.OPEN.value)
    currency = String(max_length=3, default="USD")
    live_mode = Boolean(default=True)
    items = HasMany(CartItem)
    tax_lines = Text()
    shipping_lines = Text()
    discounted_lines = Text()
    coupon_lines = Text()
    order_id = Identifier()
    ordered_at = DateTime()
    created_at = DateTime()

    @classmethod
    def create(cls, customer_id=None, currency="USD", live_mode=True, **lines):
        return cls(
            token=f"cart_{uuid4().hex[:24]}",
            customer_id=customer_id,
            currency=currency,
            live_mode=live_mode,
            tax_lines=dump_lines(load_lines(lines.get("tax_lines"))),
            shipping_lines=dump_lines(load_lines(lines.get("shipping_lines"))),
            discounted_lines=dump_lines(load_lines(lines.get("discounted_lines"))),
            coupon_lines=dump_lines(load_lines(lines.get("coupon_lines"))),
            created_at=datetime.now(UTC),
        )

    def _assert_open(self):
        if self.status != CartStatus.OPEN.value:
            raise ConflictError({"status": [f"Cart {self.token} is {self.status}, not open"]})

    def add_item(self, **data):
        """Add a line, or increase the quantity of the matching product/variant."""
        self._assert_open()
        existing = next(
            (
                i
                for i in self.items
                if str(i.product_id) == str(data["product_id"])
                and str(i.variant_id or "") == str(data.get("variant_id") or "")
            ),
            None,
        )
        if existing:
            existing.quantity += data.get("quantity", 1)
            item = existing
        else:
            item = CartItem(**data)
            self.add_items(item)

        self.raise_(
            CartItemAdded(
                cart_id=str(self.id),
                item_id=str(item.id),
                product_id=str(item.product_id),
                quantity=item.quantity,
            )
        )
        return item

    def lines(self) -> dict:
        return {
            "tax_lines": load_lines(self.tax_lines),
            "shipping_lines": load_lines(self.shipping_lines),
            "discounted_lines": load_lines(self.discounted_lines),
            "coupon_lines": load_lines(self.coupon_lines),
        }

    def mark_ordered(self, order_id):
        self._assert_open()
        now = datetime.now(UTC)
        self.status = CartStatus.ORDERED.value
        self.order_id = order_id
        self.ordered_at = now
        self.raise_(CartOrdered(cart_id=str(self.id), token=self.token, order_id=str(order_id), ordered_at=now))

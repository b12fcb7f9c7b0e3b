"""Order aggregate (CQRS) — purchase envelope with its payment and fulfillment ledgers.

The Order owns four collections: items, transactions, fulfillments and
refunds. Its money totals and its two derived statuses are never set
directly by callers. They are recomputed by ``recalculate()``, which runs an
explicit pipeline of named steps:

    _sum_order_lines → _sum_items → _derive_financial_status → _derive_fulfillment_status

Every step is a pure reduction over a snapshot of the order's own data. The
pipeline returns an ``OrderDelta`` describing how the price and item count
moved during the pass. The Reconciliation Coordinator turns that delta into
compensating transactions and fulfillment updates.

Status machine:
    open → closed   (explicit close, full fulfillment, cancelled fulfillment)
    open → closed   (cancel, only while fulfillment_status is none)
"""

import json
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from uuid import uuid4

from protean import atomic_change, invariant
from protean.exceptions import ValidationError
from protean.fields import (
    Boolean,
    DateTime,
    HasMany,
    Identifier,
    Integer,
    String,
    Text,
    ValueObject,
)

from ordering.domain import ordering
from ordering.errors import ConflictError, PreconditionError
from ordering.ledger.lines import dump_lines, load_lines, sum_lines
from ordering.ledger.transactions import outstanding_authorizations, refundable_balances
from ordering.order.events import (
    OrderCancelled,
    OrderClosed,
    OrderFinancialStatusChanged,
    OrderFulfillmentStatusChanged,
    OrderItemAdded,
    OrderItemRemoved,
    OrderItemUpdated,
    OrderPlaced,
    OrderRefunded,
)
from ordering.order.status import resolve_financial_status, resolve_fulfillment_status
from ordering.shared.address import Address, to_address


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class OrderStatus(Enum):
    OPEN = "open"
    CLOSED = "closed"


class FinancialStatus(Enum):
    PENDING = "pending"
    AUTHORIZED = "authorized"
    PARTIALLY_PAID = "partially_paid"
    PAID = "paid"
    PARTIALLY_REFUNDED = "partially_refunded"
    REFUNDED = "refunded"
    VOIDED = "voided"


class FulfillmentStatus(Enum):
    NONE = "none"
    PARTIAL = "partial"
    SENT = "sent"
    FULFILLED = "fulfilled"
    CANCELLED = "cancelled"


class TransactionKind(Enum):
    AUTHORIZE = "authorize"
    CAPTURE = "capture"
    SALE = "sale"
    VOID = "void"
    REFUND = "refund"


class TransactionStatus(Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILURE = "failure"
    ERROR = "error"
    CANCELLED = "cancelled"


class PaymentKind(Enum):
    MANUAL = "manual"
    AUTHORIZE = "authorize"
    SALE = "sale"


class FulfillmentKind(Enum):
    IMMEDIATE = "immediate"
    MANUAL = "manual"


class ProcessingMethod(Enum):
    CHECKOUT = "checkout"
    SUBSCRIPTION = "subscription"


class CancelReason(Enum):
    CUSTOMER = "customer"
    FRAUD = "fraud"
    INVENTORY = "inventory"
    OTHER = "other"


# Transactions in these statuses may still be resolved by a collaborator callback
_UNSETTLED_TRANSACTION_STATUSES = {
    TransactionStatus.PENDING.value,
    TransactionStatus.FAILURE.value,
    TransactionStatus.ERROR.value,
}

_RECALCULATION_STEPS = (
    "_sum_order_lines",
    "_sum_items",
    "_derive_financial_status",
    "_derive_fulfillment_status",
)


@dataclass(frozen=True)
class OrderDelta:
    """How one recalculation pass moved the order's price and item count.

    Price is what the due amount moves with when the ledger is held fixed.
    Ledger entries recorded by reconciliation are never compensated again.
    """

    previous_price: int
    current_price: int
    previous_items: int
    current_items: int

    @property
    def due_change(self) -> int:
        return self.current_price - self.previous_price

    @property
    def items_change(self) -> int:
        return self.current_items - self.previous_items

    @property
    def is_empty(self) -> bool:
        return self.due_change == 0 and self.items_change == 0


# ---------------------------------------------------------------------------
# Line item helpers
# ---------------------------------------------------------------------------
def calculated_item_price(price, total_shipping, total_taxes, total_discounts, total_coupons) -> int:
    return max(0, price + total_shipping + total_taxes - total_discounts - total_coupons)


def build_item_fields(data: dict) -> dict:
    """Turn a cart/subscription line or request mapping into OrderItem fields."""
    quantity = int(data.get("quantity") or 1)
    price_per_unit = int(data.get("price_per_unit") or data.get("price") or 0)
    unit_weight = int(data.get("weight") or 0)

    tax_lines = load_lines(data.get("tax_lines"))
    shipping_lines = load_lines(data.get("shipping_lines"))
    discounted_lines = load_lines(data.get("discounted_lines"))
    coupon_lines = load_lines(data.get("coupon_lines"))

    price = price_per_unit * quantity
    totals = {
        "total_taxes": sum_lines(tax_lines),
        "total_shipping": sum_lines(shipping_lines),
        "total_discounts": sum_lines(discounted_lines),
        "total_coupons": sum_lines(coupon_lines),
    }

    fields = {
        "product_id": data["product_id"],
        "variant_id": data.get("variant_id"),
        "sku": data.get("sku"),
        "title": data.get("title"),
        "variant_title": data.get("variant_title"),
        "quantity": quantity,
        "fulfillable_quantity": quantity,
        "price_per_unit": price_per_unit,
        "price": price,
        "weight": unit_weight * quantity,
        "requires_shipping": data.get("requires_shipping", True),
        "requires_subscription": data.get("requires_subscription", False),
        "subscription_interval": data.get("subscription_interval"),
        "subscription_unit": data.get("subscription_unit"),
        "tax_lines": dump_lines(tax_lines),
        "shipping_lines": dump_lines(shipping_lines),
        "discounted_lines": dump_lines(discounted_lines),
        "coupon_lines": dump_lines(coupon_lines),
        "calculated_price": calculated_item_price(price, **totals),
        **totals,
    }
    if data.get("id"):
        fields["id"] = data["id"]
    return fields


def find_line_item(items, product_id, variant_id):
    """Return the line matching ``(product_id, variant_id)`` in a loaded item snapshot."""
    if items is None:
        raise PreconditionError("Order items must be loaded before merging a line")
    return next(
        (
            item
            for item in items
            if str(item.product_id) == str(product_id) and str(item.variant_id or "") == str(variant_id or "")
        ),
        None,
    )


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------
@ordering.entity(part_of="Order")
class OrderItem:
    """One purchased line: a product variant and its quantity.

    ``price`` is the line price (unit price times quantity). Per-line tax,
    shipping, discount and coupon arrays only feed ``calculated_price``. The
    order's own line arrays drive the order totals.
    """

    product_id = Identifier(required=True)
    variant_id = Identifier()
    sku = String(max_length=100)
    title = String(max_length=255)
    variant_title = String(max_length=255)
    quantity = Integer(required=True, min_value=1)
    fulfillable_quantity = Integer(default=0)
    fulfillment_id = Identifier()
    price_per_unit = Integer(default=0, min_value=0)
    price = Integer(default=0, min_value=0)
    calculated_price = Integer(default=0, min_value=0)
    weight = Integer(default=0, min_value=0)
    requires_shipping = Boolean(default=True)
    requires_subscription = Boolean(default=False)
    subscription_interval = Integer()
    subscription_unit = String(max_length=10)
    tax_lines = Text()
    shipping_lines = Text()
    discounted_lines = Text()
    coupon_lines = Text()
    total_taxes = Integer(default=0)
    total_shipping = Integer(default=0)
    total_discounts = Integer(default=0)
    total_coupons = Integer(default=0)

    def merge(self, quantity, price, weight) -> None:
        """Add (or with negative values subtract) a quantity of this same line."""
        self.quantity = self.quantity + quantity
        self.fulfillable_quantity = max(0, self.fulfillable_quantity + quantity)
        self.price = max(0, self.price + price)
        self.weight = max(0, self.weight + weight)
        self.calculated_price = calculated_item_price(
            self.price,
            total_shipping=self.total_shipping,
            total_taxes=self.total_taxes,
            total_discounts=self.total_discounts,
            total_coupons=self.total_coupons,
        )


@ordering.entity(part_of="Order")
class Transaction:
    """One payment-ledger entry. Amounts are never rewritten once recorded."""

    kind = String(choices=TransactionKind, required=True)
    status = String(choices=TransactionStatus, default=TransactionStatus.PENDING.value)
    amount = Integer(required=True, min_value=0)
    currency = String(max_length=3, default="USD")
    gateway = String(max_length=50, default="manual")
    gateway_reference = String(max_length=255)
    parent_id = Identifier()
    error_code = String(max_length=100)
    description = String(max_length=255)
    processed_at = DateTime()


@ordering.entity(part_of="Order")
class Fulfillment:
    status = String(choices=FulfillmentStatus, default=FulfillmentStatus.NONE.value)
    service = String(max_length=50, default="manual")
    external_reference = String(max_length=255)
    item_ids = Text()  # JSON list of OrderItem ids
    sent_at = DateTime()
    fulfilled_at = DateTime()
    cancelled_at = DateTime()


@ordering.entity(part_of="Order")
class Refund:
    """Money returned against a captured transaction."""

    amount = Integer(required=True, min_value=0)
    transaction_id = Identifier()
    parent_transaction_id = Identifier()
    item_ids = Text()
    restock = Boolean(default=False)
    processed_at = DateTime()


# ---------------------------------------------------------------------------
# Aggregate Root
# ---------------------------------------------------------------------------
@ordering.aggregate
class Order:
    token = String(required=True, max_length=64, unique=True)
    cart_token = String(max_length=64)
    subscription_token = String(max_length=64)
    customer_id = Identifier()  # Nullable for guest orders
    email = String(max_length=254)
    currency = String(max_length=3, default="USD")
    live_mode = Boolean(default=True)

    status = String(choices=OrderStatus, default=OrderStatus.OPEN.value)
    financial_status = String(choices=FinancialStatus, default=FinancialStatus.PENDING.value)
    fulfillment_status = String(choices=FulfillmentStatus, default=FulfillmentStatus.NONE.value)
    payment_kind = String(choices=PaymentKind, default=PaymentKind.MANUAL.value)
    fulfillment_kind = String(choices=FulfillmentKind, default=FulfillmentKind.MANUAL.value)
    processing_method = String(choices=ProcessingMethod, default=ProcessingMethod.CHECKOUT.value)
    cancel_reason = String(choices=CancelReason)

    billing_address = ValueObject(Address)
    shipping_address = ValueObject(Address)
    has_shipping = Boolean(default=False)
    has_subscription = Boolean(default=False)

    items = HasMany(OrderItem)
    transactions = HasMany(Transaction)
    fulfillments = HasMany(Fulfillment)
    refunds = HasMany(Refund)

    # JSON arrays of {name, price}
    tax_lines = Text()
    shipping_lines = Text()
    discounted_lines = Text()
    coupon_lines = Text()
    pricing_overrides = Text()

    total_line_items_price = Integer(default=0)
    subtotal_price = Integer(default=0)
    total_tax = Integer(default=0)
    total_shipping = Integer(default=0)
    total_discounts = Integer(default=0)
    total_coupons = Integer(default=0)
    total_overrides = Integer(default=0)
    total_price = Integer(default=0)
    total_due = Integer(default=0)
    total_refunds = Integer(default=0)
    total_authorized = Integer(default=0)
    total_captured = Integer(default=0)
    total_voided = Integer(default=0)
    total_cancelled = Integer(default=0)
    total_pending = Integer(default=0)
    total_items = Integer(default=0)
    total_weight = Integer(default=0)

    total_fulfilled_fulfillments = Integer(default=0)
    total_partial_fulfillments = Integer(default=0)
    total_sent_fulfillments = Integer(default=0)
    total_cancelled_fulfillments = Integer(default=0)
    total_pending_fulfillments = Integer(default=0)

    closed_at = DateTime()
    cancelled_at = DateTime()
    created_at = DateTime()
    updated_at = DateTime()

    @invariant.post
    def total_price_follows_lines(self):
        expected = max(
            0,
            self.total_line_items_price
            + self.total_tax
            + self.total_shipping
            - self.total_discounts
            - self.total_coupons
            - self.total_overrides,
        )
        if self.total_price != expected:
            raise ValidationError(
                {"total_price": [f"Total price {self.total_price} does not match lines ({expected})"]}
            )

    @invariant.post
    def total_due_is_never_negative(self):
        if self.total_due < 0:
            raise ValidationError({"total_due": ["Total due cannot be negative"]})

    @invariant.post
    def cancelled_order_must_be_closed(self):
        if self.cancelled_at is not None and self.status != OrderStatus.CLOSED.value:
            raise ValidationError({"status": ["A cancelled order must be closed"]})

    # -------------------------------------------------------------------
    # Factory
    # -------------------------------------------------------------------
    @classmethod
    def create(
        cls,
        items_data,
        customer_id=None,
        email=None,
        cart_token=None,
        subscription_token=None,
        currency="USD",
        live_mode=True,
        payment_kind=PaymentKind.MANUAL.value,
        fulfillment_kind=FulfillmentKind.MANUAL.value,
        processing_method=ProcessingMethod.CHECKOUT.value,
        billing_address=None,
        shipping_address=None,
        tax_lines=None,
        shipping_lines=None,
        discounted_lines=None,
        coupon_lines=None,
        pricing_overrides=None,
    ):
        """Build a new open order and run the creation pipeline once.

        The first pass establishes the baseline the next recalculation is
        compared against, with ``total_due`` equal to ``total_price``.
        """
        now = datetime.now(UTC)
        order = cls(
            token=f"order_{uuid4().hex[:24]}",
            cart_token=cart_token,
            subscription_token=subscription_token,
            customer_id=customer_id,
            email=email,
            currency=currency,
            live_mode=live_mode,
            payment_kind=payment_kind,
            fulfillment_kind=fulfillment_kind,
            processing_method=processing_method,
            billing_address=to_address(billing_address),
            shipping_address=to_address(shipping_address),
            tax_lines=dump_lines(load_lines(tax_lines)),
            shipping_lines=dump_lines(load_lines(shipping_lines)),
            discounted_lines=dump_lines(load_lines(discounted_lines)),
            coupon_lines=dump_lines(load_lines(coupon_lines)),
            pricing_overrides=dump_lines(load_lines(pricing_overrides)),
            created_at=now,
            updated_at=now,
        )
        order.add_items([OrderItem(**build_item_fields(data)) for data in items_data])
        order.recalculate()

        order.raise_(
            OrderPlaced(
                order_id=str(order.id),
                token=order.token,
                customer_id=str(customer_id) if customer_id else None,
                cart_token=cart_token,
                subscription_token=subscription_token,
                total_price=order.total_price,
                total_items=order.total_items,
                currency=order.currency,
                placed_at=now,
            )
        )
        return order

    # -------------------------------------------------------------------
    # Recalculation pipeline
    # -------------------------------------------------------------------
    def recalculate(self) -> OrderDelta:
        """Recompute every derived total and status. Safe to re-run.

        Status-change events are raised only when a status actually moved.
        Running the pipeline twice in a row therefore raises nothing the
        second time.
        """
        previous_price = self.total_price
        previous_items = self.total_items
        previous_financial = self.financial_status
        previous_fulfillment = self.fulfillment_status
        was_open = self.status == OrderStatus.OPEN.value

        with atomic_change(self):
            for step in _RECALCULATION_STEPS:
                getattr(self, step)()
            if self._has_changed(previous_price, previous_items, previous_financial, previous_fulfillment):
                self.updated_at = datetime.now(UTC)

        if self.financial_status != previous_financial:
            self.raise_(
                OrderFinancialStatusChanged(
                    order_id=str(self.id),
                    previous_status=previous_financial,
                    financial_status=self.financial_status,
                    total_price=self.total_price,
                    total_due=self.total_due,
                )
            )
        if self.fulfillment_status != previous_fulfillment:
            self.raise_(
                OrderFulfillmentStatusChanged(
                    order_id=str(self.id),
                    previous_status=previous_fulfillment,
                    fulfillment_status=self.fulfillment_status,
                )
            )
        if was_open and self.status == OrderStatus.CLOSED.value:
            self.raise_(OrderClosed(order_id=str(self.id), closed_at=self.closed_at))

        return OrderDelta(
            previous_price=previous_price,
            current_price=self.total_price,
            previous_items=previous_items,
            current_items=self.total_items,
        )

    def _has_changed(self, price, items, financial, fulfillment) -> bool:
        return (price, items, financial, fulfillment) != (
            self.total_price,
            self.total_items,
            self.financial_status,
            self.fulfillment_status,
        )

    def _sum_order_lines(self):
        self.total_tax = sum_lines(self.tax_lines)
        self.total_shipping = sum_lines(self.shipping_lines)
        self.total_discounts = sum_lines(self.discounted_lines)
        self.total_coupons = sum_lines(self.coupon_lines)
        self.total_overrides = sum_lines(self.pricing_overrides)

    def _sum_items(self):
        items = list(self.items)
        self.total_line_items_price = sum(item.price for item in items)
        self.total_items = sum(item.quantity for item in items)
        self.total_weight = sum(item.weight or 0 for item in items)
        self.has_shipping = any(item.requires_shipping for item in items)
        self.has_subscription = any(item.requires_subscription for item in items)
        self.subtotal_price = max(0, self.total_line_items_price)
        self.total_price = max(
            0,
            self.total_line_items_price
            + self.total_tax
            + self.total_shipping
            - self.total_discounts
            - self.total_coupons
            - self.total_overrides,
        )

    def _derive_financial_status(self):
        resolution = resolve_financial_status(self.total_price, list(self.transactions))
        self.financial_status = resolution.status
        self.total_authorized = resolution.total_authorized
        self.total_captured = resolution.total_captured
        self.total_refunds = resolution.total_refunds
        self.total_voided = resolution.total_voided
        self.total_cancelled = resolution.total_cancelled
        self.total_pending = resolution.total_pending
        self.total_due = max(0, resolution.total_due)

    def _derive_fulfillment_status(self):
        resolution = resolve_fulfillment_status(list(self.fulfillments), list(self.items))
        self.fulfillment_status = resolution.status
        self.total_fulfilled_fulfillments = resolution.total_fulfilled_fulfillments
        self.total_partial_fulfillments = resolution.total_partial_fulfillments
        self.total_sent_fulfillments = resolution.total_sent_fulfillments
        self.total_cancelled_fulfillments = resolution.total_cancelled_fulfillments
        self.total_pending_fulfillments = resolution.total_pending_fulfillments

        if resolution.closes_order and self.status == OrderStatus.OPEN.value:
            self.status = OrderStatus.CLOSED.value
            self.closed_at = datetime.now(UTC)

    # -------------------------------------------------------------------
    # Line items
    # -------------------------------------------------------------------
    def _assert_open(self, action):
        if self.status != OrderStatus.OPEN.value:
            raise ConflictError({"status": [f"Cannot {action} on a {self.status} order"]})

    def add_item(self, data) -> OrderDelta:
        """Add a line, merging into an existing one with the same product and variant."""
        self._assert_open("add items")
        if data.get("quantity") is not None and int(data["quantity"]) <= 0:
            raise ValidationError({"quantity": ["Quantity to add must be positive"]})

        fields = build_item_fields(data)
        existing = find_line_item(list(self.items), fields["product_id"], fields["variant_id"])

        if existing is not None:
            # Omitted price and weight are taken from the line being merged into
            quantity = fields["quantity"]
            price_per_unit = int(data.get("price_per_unit") or data.get("price") or existing.price_per_unit or 0)
            if data.get("weight"):
                unit_weight = int(data["weight"])
            else:
                unit_weight = existing.weight // existing.quantity if existing.quantity else 0
            with atomic_change(self):
                existing.merge(quantity, price_per_unit * quantity, unit_weight * quantity)
            item = existing
        else:
            item = OrderItem(**fields)
            self.add_items(item)

        delta = self.recalculate()
        self.raise_(
            OrderItemAdded(
                order_id=str(self.id),
                item_id=str(item.id),
                product_id=str(item.product_id),
                variant_id=str(item.variant_id) if item.variant_id else None,
                quantity=item.quantity,
                total_items=self.total_items,
            )
        )
        return delta

    def update_item(self, data) -> OrderDelta:
        """Apply a signed quantity change to a line. Inserts the line when missing."""
        self._assert_open("update items")
        quantity = int(data.get("quantity") or 0)
        existing = find_line_item(list(self.items), data["product_id"], data.get("variant_id"))

        if existing is None:
            if quantity <= 0:
                return self.recalculate()
            return self.add_item(data)

        if existing.quantity + quantity <= 0:
            return self.remove_item({**data, "quantity": existing.quantity})

        price_per_unit = int(data.get("price_per_unit") or existing.price_per_unit or 0)
        unit_weight = int(data.get("weight") or 0)
        with atomic_change(self):
            existing.merge(quantity, price_per_unit * quantity, unit_weight * quantity)

        delta = self.recalculate()
        self.raise_(
            OrderItemUpdated(
                order_id=str(self.id),
                item_id=str(existing.id),
                product_id=str(existing.product_id),
                variant_id=str(existing.variant_id) if existing.variant_id else None,
                quantity=existing.quantity,
                total_items=self.total_items,
            )
        )
        return delta

    def remove_item(self, data) -> OrderDelta:
        """Subtract a quantity from a line, deleting the line when nothing is left."""
        self._assert_open("remove items")
        existing = find_line_item(list(self.items), data["product_id"], data.get("variant_id"))
        if existing is None:
            return self.recalculate()

        quantity = int(data.get("quantity") or existing.quantity)
        if existing.quantity - quantity <= 0:
            self.remove_items(existing)
        else:
            unit_weight = existing.weight // existing.quantity if existing.quantity else 0
            with atomic_change(self):
                existing.merge(-quantity, -existing.price_per_unit * quantity, -unit_weight * quantity)

        delta = self.recalculate()
        self.raise_(
            OrderItemRemoved(
                order_id=str(self.id),
                item_id=str(existing.id),
                product_id=str(existing.product_id),
                variant_id=str(existing.variant_id) if existing.variant_id else None,
                total_items=self.total_items,
            )
        )
        return delta

    # -------------------------------------------------------------------
    # Pricing overrides
    # -------------------------------------------------------------------
    @property
    def override_lines(self) -> list[dict]:
        return load_lines(self.pricing_overrides)

    def replace_overrides(self, lines) -> OrderDelta:
        with atomic_change(self):
            self.pricing_overrides = dump_lines(lines)
        return self.recalculate()

    # -------------------------------------------------------------------
    # Ledgers
    # -------------------------------------------------------------------
    def find_transaction(self, transaction_id) -> Transaction:
        transaction = next((t for t in self.transactions if str(t.id) == str(transaction_id)), None)
        if transaction is None:
            raise ValidationError({"transaction_id": [f"Transaction {transaction_id} not found on order"]})
        return transaction

    def find_fulfillment(self, fulfillment_id) -> Fulfillment:
        fulfillment = next((f for f in self.fulfillments if str(f.id) == str(fulfillment_id)), None)
        if fulfillment is None:
            raise ValidationError({"fulfillment_id": [f"Fulfillment {fulfillment_id} not found on order"]})
        return fulfillment

    def record_transaction(
        self,
        kind,
        amount,
        status=TransactionStatus.PENDING.value,
        gateway="manual",
        gateway_reference=None,
        parent_id=None,
        error_code=None,
        description=None,
        transaction_id=None,
    ) -> Transaction:
        """Append a ledger entry. Re-recording a known ``transaction_id`` is a no-op."""
        if transaction_id is not None:
            known = next((t for t in self.transactions if str(t.id) == str(transaction_id)), None)
            if known is not None:
                return known

        fields = {
            "kind": kind,
            "amount": int(amount),
            "status": status,
            "currency": self.currency,
            "gateway": gateway,
            "gateway_reference": gateway_reference,
            "parent_id": parent_id,
            "error_code": error_code,
            "description": description,
            "processed_at": datetime.now(UTC) if status != TransactionStatus.PENDING.value else None,
        }
        if transaction_id is not None:
            fields["id"] = transaction_id
        transaction = Transaction(**fields)
        self.add_transactions(transaction)
        return transaction

    def update_transaction_status(self, transaction_id, status, gateway_reference=None, error_code=None) -> Transaction:
        """Resolve a pending, failed or errored transaction. Settled entries are final."""
        transaction = self.find_transaction(transaction_id)
        if transaction.status not in _UNSETTLED_TRANSACTION_STATUSES:
            raise ConflictError({"status": [f"Transaction {transaction_id} is already {transaction.status}"]})

        with atomic_change(self):
            transaction.status = status
            transaction.processed_at = datetime.now(UTC)
            if gateway_reference:
                transaction.gateway_reference = gateway_reference
            transaction.error_code = error_code
        return transaction

    def outstanding_authorizations(self) -> list[Transaction]:
        return outstanding_authorizations(list(self.transactions))

    def refundable_transactions(self) -> list[tuple[Transaction, int]]:
        return refundable_balances(list(self.transactions))

    def pending_manual_transactions(self) -> list[Transaction]:
        return [
            t
            for t in self.transactions
            if t.gateway == PaymentKind.MANUAL.value and t.status == TransactionStatus.PENDING.value
        ]

    def attach_fulfillment(
        self,
        status=FulfillmentStatus.NONE.value,
        service="manual",
        external_reference=None,
        item_ids=None,
        fulfillment_id=None,
    ) -> Fulfillment:
        """Attach a provider fulfillment, or update it when the id is already known."""
        if fulfillment_id is not None:
            known = next((f for f in self.fulfillments if str(f.id) == str(fulfillment_id)), None)
            if known is not None:
                if known.status != status:
                    self.update_fulfillment_status(known.id, status)
                return known

        if item_ids is None:
            item_ids = [str(item.id) for item in self.items if item.requires_shipping and not item.fulfillment_id]

        fields = {
            "status": status,
            "service": service,
            "external_reference": external_reference,
            "item_ids": json.dumps([str(i) for i in item_ids]),
        }
        if fulfillment_id is not None:
            fields["id"] = fulfillment_id
        fulfillment = Fulfillment(**fields)
        self.add_fulfillments(fulfillment)

        with atomic_change(self):
            self._stamp_fulfillment(fulfillment, status)
            for item in self.items:
                if str(item.id) in item_ids:
                    item.fulfillment_id = fulfillment.id
        return fulfillment

    def update_fulfillment_status(self, fulfillment_id, status) -> Fulfillment:
        fulfillment = self.find_fulfillment(fulfillment_id)
        with atomic_change(self):
            fulfillment.status = status
            self._stamp_fulfillment(fulfillment, status)
        return fulfillment

    @staticmethod
    def _stamp_fulfillment(fulfillment, status):
        now = datetime.now(UTC)
        if status == FulfillmentStatus.SENT.value and fulfillment.sent_at is None:
            fulfillment.sent_at = now
        elif status == FulfillmentStatus.FULFILLED.value and fulfillment.fulfilled_at is None:
            fulfillment.fulfilled_at = now
        elif status == FulfillmentStatus.CANCELLED.value and fulfillment.cancelled_at is None:
            fulfillment.cancelled_at = now

    def record_refund(
        self, amount, transaction_id=None, parent_transaction_id=None, item_ids=None, restock=False
    ) -> Refund:
        now = datetime.now(UTC)
        refund = Refund(
            amount=int(amount),
            transaction_id=transaction_id,
            parent_transaction_id=parent_transaction_id,
            item_ids=json.dumps(item_ids or []),
            restock=restock,
            processed_at=now,
        )
        self.add_refunds(refund)
        self.raise_(
            OrderRefunded(
                order_id=str(self.id),
                refund_id=str(refund.id),
                transaction_id=str(transaction_id) if transaction_id else None,
                amount=refund.amount,
                processed_at=now,
            )
        )
        return refund

    # -------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------
    def close(self):
        if self.status == OrderStatus.CLOSED.value:
            raise ConflictError({"status": ["Order is already closed"]})

        now = datetime.now(UTC)
        with atomic_change(self):
            self.status = OrderStatus.CLOSED.value
            self.closed_at = now
            self.updated_at = now

        self.raise_(OrderClosed(order_id=str(self.id), closed_at=now))

    def ensure_cancellable(self):
        """Raise ConflictError unless the order may still be cancelled."""
        if self.cancelled_at is not None:
            raise ConflictError({"status": ["Order is already cancelled"]})
        if self.fulfillment_status != FulfillmentStatus.NONE.value:
            raise ConflictError(
                {"fulfillment_status": [f"Cannot cancel an order whose fulfillment is {self.fulfillment_status}"]}
            )

    def cancel(self, reason=CancelReason.OTHER.value):
        """Cancel the order. Only allowed before any fulfillment progress."""
        self.ensure_cancellable()
        was_open = self.status == OrderStatus.OPEN.value

        now = datetime.now(UTC)
        with atomic_change(self):
            self.cancel_reason = reason
            self.cancelled_at = now
            self.status = OrderStatus.CLOSED.value
            self.closed_at = self.closed_at or now
            self.updated_at = now

        self.raise_(OrderCancelled(order_id=str(self.id), cancel_reason=reason, cancelled_at=now))
        if was_open:
            self.raise_(OrderClosed(order_id=str(self.id), closed_at=self.closed_at))

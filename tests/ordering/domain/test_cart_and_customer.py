"""Tests for the Cart and Customer aggregates as seen by checkout."""

import pytest
from ordering.cart.cart import Cart, CartStatus
from ordering.cart.events import CartItemAdded, CartOrdered
from ordering.customer.customer import Customer
from ordering.customer.events import AccountBalanceDeducted
from ordering.errors import ConflictError
from ordering.order.order import Order
from protean.exceptions import ValidationError

ADDRESS = {"address_1": "1 Main St", "city": "Springfield", "postal_code": "62701", "country_code": "US"}


class TestCart:
    def test_create_generates_token(self):
        cart = Cart.create(customer_id="cust-1")
        assert cart.token.startswith("cart_")
        assert cart.status == CartStatus.OPEN.value

    def test_add_item_merges_same_product(self):
        cart = Cart.create()
        cart.add_item(product_id="prod-1", quantity=1, price_per_unit=500)
        cart.add_item(product_id="prod-1", quantity=2, price_per_unit=500)
        assert len(cart.items) == 1
        assert cart.items[0].quantity == 3
        assert isinstance(cart._events[-1], CartItemAdded)

    def test_lines_are_decoded(self):
        cart = Cart.create(tax_lines=[{"name": "VAT", "price": 80}])
        assert cart.lines()["tax_lines"] == [{"name": "VAT", "price": 80}]
        assert cart.lines()["coupon_lines"] == []

    def test_item_to_line(self):
        cart = Cart.create()
        item = cart.add_item(product_id="prod-1", quantity=2, price_per_unit=500, weight=100)
        line = item.to_line()
        assert line["quantity"] == 2
        assert line["price_per_unit"] == 500
        assert line["requires_shipping"] is True

    def test_mark_ordered(self):
        cart = Cart.create()
        cart.mark_ordered("order-1")
        assert cart.status == CartStatus.ORDERED.value
        assert str(cart.order_id) == "order-1"
        assert isinstance(cart._events[-1], CartOrdered)

    def test_ordered_cart_cannot_change(self):
        cart = Cart.create()
        cart.mark_ordered("order-1")
        with pytest.raises(ConflictError):
            cart.add_item(product_id="prod-1", quantity=1)
        with pytest.raises(ConflictError):
            cart.mark_ordered("order-2")


class TestCustomer:
    def test_shipping_address_falls_back_to_default(self):
        customer = Customer.register("jane@example.com", default_address=ADDRESS)
        assert customer.preferred_shipping_address.city == "Springfield"
        assert customer.preferred_billing_address.city == "Springfield"

    def test_deduct_balance(self):
        customer = Customer.register("jane@example.com", account_balance=500)
        customer.deduct_balance(300, "order-1")
        assert customer.account_balance == 200
        event = customer._events[-1]
        assert isinstance(event, AccountBalanceDeducted)
        assert event.amount == 300
        assert event.account_balance == 200

    def test_deduction_beyond_balance_conflicts(self):
        customer = Customer.register("jane@example.com", account_balance=100)
        with pytest.raises(ConflictError):
            customer.deduct_balance(300, "order-1")
        assert customer.account_balance == 100

    def test_non_positive_deduction_is_invalid(self):
        customer = Customer.register("jane@example.com", account_balance=100)
        with pytest.raises(ValidationError):
            customer.deduct_balance(0, "order-1")

    def test_negative_balance_is_invalid(self):
        with pytest.raises(ValidationError):
            Customer.register("jane@example.com", account_balance=-1)

    def test_record_order_accumulates_spend(self):
        customer = Customer.register("jane@example.com")
        order = Order.create([{"product_id": "prod-1", "quantity": 1, "price_per_unit": 700}])
        customer.record_order(order)
        customer.record_order(order)
        assert customer.total_spent == 1400
        assert customer.total_orders == 2
        assert customer.last_order_id == order.id

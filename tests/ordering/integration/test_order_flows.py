"""End-to-end order flows through OrderService with the fake collaborators."""

from ordering.customer.customer import Customer
from ordering.order.order import FinancialStatus, FulfillmentStatus, Order, OrderStatus
from ordering.order.resolve import ById, ByNaturalKey
from protean import current_domain

SALE = {"payment_kind": "sale", "gateway": "fake"}


def _stored(order_id):
    return current_domain.repository_for(Order).get(order_id)


class TestAuthorizeCaptureDeliver:
    def test_order_moves_from_authorization_to_closed(
        self, service, gateway, provider, publisher, make_customer, make_cart
    ):
        cart = make_cart(customer_id=make_customer().id)
        order = service.create(
            {
                "cart_token": cart.token,
                "payment_kind": "authorize",
                "payment_details": [{"gateway": "fake"}],
                "fulfillment_kind": "immediate",
            }
        )
        assert order.financial_status == FinancialStatus.AUTHORIZED.value
        assert provider.calls == []

        order = service.pay(ByNaturalKey(order.token))
        assert order.financial_status == FinancialStatus.PAID.value
        assert order.fulfillment_status == FulfillmentStatus.SENT.value

        order = service.update_fulfillment(ById(order.id), order.fulfillments[0].id, "fulfilled")

        stored = _stored(order.id)
        assert stored.status == OrderStatus.CLOSED.value
        assert stored.closed_at is not None
        assert gateway.methods_called() == ["authorize", "capture"]
        assert [call["method"] for call in provider.calls] == ["send_order_to_fulfillment"]
        for event_type in (
            "order.created",
            "order.financial_status.authorized",
            "order.financial_status.paid",
            "order.fulfillment_status.sent",
            "order.fulfillment_status.fulfilled",
            "order.closed",
        ):
            assert event_type in publisher.event_types()


class TestBalanceRefundCancel:
    def test_balance_order_is_refunded_then_cancelled(self, service, gateway, make_customer, make_cart):
        customer = make_customer(account_balance=300)
        order = service.create(
            {"cart_token": make_cart(customer_id=customer.id).token, "payment_kind": "sale", "payment_details": [SALE]}
        )
        assert order.total_price == 780
        assert current_domain.repository_for(Customer).get(customer.id).account_balance == 0

        order = service.refund(ById(order.id), refunds=[{"amount": 80}])
        assert order.financial_status == FinancialStatus.PARTIALLY_REFUNDED.value

        order = service.cancel(ById(order.id), reason="customer")

        stored = _stored(order.id)
        assert stored.financial_status == FinancialStatus.REFUNDED.value
        assert stored.total_refunds == 780
        assert len(stored.refunds) == 2
        assert stored.status == OrderStatus.CLOSED.value
        assert [call["amount"] for call in gateway.calls] == [780, 80, 700]


class TestDeclineRetryModify:
    def test_declined_order_is_recovered_and_changed(self, service, gateway, make_customer, make_cart):
        gateway.configure(should_succeed=False)
        order = service.create(
            {
                "cart_token": make_cart(customer_id=make_customer().id).token,
                "payment_kind": "sale",
                "payment_details": [SALE],
            }
        )
        assert order.financial_status == FinancialStatus.PENDING.value

        gateway.configure(should_succeed=True)
        order = service.retry_transaction(ById(order.id), order.transactions[0].id)
        assert order.financial_status == FinancialStatus.PAID.value

        order = service.add_item(ById(order.id), {"product_id": "prod-2", "quantity": 1, "price_per_unit": 300})
        assert order.total_price == 1380
        assert order.financial_status == FinancialStatus.PAID.value

        order = service.remove_item(ById(order.id), {"product_id": "prod-2"})

        stored = _stored(order.id)
        assert stored.total_price == 1080
        assert stored.total_refunds == 300
        assert stored.financial_status == FinancialStatus.PARTIALLY_REFUNDED.value
        assert gateway.methods_called() == ["sale", "retry", "sale", "refund"]

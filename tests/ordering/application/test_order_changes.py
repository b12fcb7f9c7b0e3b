"""Application tests for line-item changes, recalculation, lookups and notifications."""

import pytest
from ordering.errors import ConflictError
from ordering.order.order import FinancialStatus, Order
from ordering.order.repository import QueryContext
from ordering.order.resolve import ById, ByNaturalKey, ByReference, resolve_order
from ordering.order.service import OrderService
from ordering.subscription.subscription import Subscription
from protean import current_domain
from protean.exceptions import ObjectNotFoundError

SALE = {"payment_kind": "sale", "gateway": "fake"}
TWO_LINES = [
    {"product_id": "prod-1", "quantity": 2, "price_per_unit": 500},
    {"product_id": "prod-2", "quantity": 1, "price_per_unit": 200},
]


@pytest.fixture
def paid_order(service, make_customer, make_cart):
    def _paid_order(items=None, **overrides):
        cart = make_cart(customer_id=make_customer().id, items=items)
        request = {"cart_token": cart.token, "payment_kind": "sale", "payment_details": [SALE]}
        request.update(overrides)
        return service.create(request)

    return _paid_order


class TestLineItemChanges:
    def test_added_line_is_charged(self, service, gateway, paid_order):
        order = paid_order()

        updated = service.add_item(ById(order.id), {"product_id": "prod-3", "quantity": 1, "price_per_unit": 200})

        assert updated.total_price == 1280
        assert updated.financial_status == FinancialStatus.PAID.value
        assert len(updated.items) == 2
        assert gateway.methods_called() == ["sale", "sale"]
        assert gateway.calls[-1]["amount"] == 200

    def test_added_line_is_persisted(self, service, paid_order):
        order = paid_order()
        service.add_item(ById(order.id), {"product_id": "prod-3", "quantity": 1, "price_per_unit": 200})

        stored = current_domain.repository_for(Order).get(order.id)
        assert {item.product_id for item in stored.items} == {"prod-1", "prod-3"}
        assert len(stored.transactions) == 2

    def test_quantity_increase_is_charged(self, service, gateway, paid_order):
        order = paid_order()

        updated = service.update_item(ById(order.id), {"product_id": "prod-1", "quantity": 1})

        assert updated.items[0].quantity == 3
        assert updated.total_price == 1580
        assert gateway.calls[-1]["amount"] == 500

    def test_removed_line_is_refunded(self, service, gateway, paid_order):
        order = paid_order(items=TWO_LINES)
        sale = order.transactions[0]

        updated = service.remove_item(ById(order.id), {"product_id": "prod-2"})

        assert updated.total_price == 1080
        assert updated.total_refunds == 200
        assert updated.financial_status == FinancialStatus.PARTIALLY_REFUNDED.value
        assert updated.total_due == 0
        assert gateway.calls[-1]["method"] == "refund"
        assert gateway.calls[-1]["parent_reference"] == sale.gateway_reference

    def test_closed_order_cannot_change(self, service, gateway, paid_order):
        order = paid_order()
        service.cancel(ById(order.id))

        with pytest.raises(ConflictError):
            service.add_item(ById(order.id), {"product_id": "prod-3", "quantity": 1, "price_per_unit": 200})
        assert gateway.methods_called() == ["sale", "refund"]


class TestRecalculate:
    def test_unchanged_order_makes_no_calls(self, service, gateway, provider, paid_order):
        order = paid_order()

        recalculated = service.recalculate(ByNaturalKey(order.token))

        assert recalculated.total_price == 1080
        assert recalculated.financial_status == FinancialStatus.PAID.value
        assert gateway.methods_called() == ["sale"]
        assert provider.calls == []


class TestResolveOrder:
    def test_by_id(self, paid_order):
        order = paid_order()
        assert resolve_order(ById(order.id)).id == order.id

    def test_by_reference(self, paid_order):
        order = paid_order()
        assert resolve_order(ByReference(order)).id == order.id

    def test_bare_instance_is_a_reference(self, paid_order):
        order = paid_order()
        assert resolve_order(order).id == order.id

    def test_by_token(self, paid_order):
        order = paid_order()
        assert resolve_order(ByNaturalKey(order.token)).id == order.id

    def test_unknown_token(self):
        with pytest.raises(ObjectNotFoundError):
            resolve_order(ByNaturalKey("ord_missing"))

    def test_missing_reference(self):
        with pytest.raises(ObjectNotFoundError):
            resolve_order(None)

    def test_live_order_is_invisible_in_test_mode(self, paid_order):
        order = paid_order()
        context = QueryContext(live_mode=False)

        with pytest.raises(ObjectNotFoundError):
            resolve_order(ById(order.id), context)
        with pytest.raises(ObjectNotFoundError):
            resolve_order(ByNaturalKey(order.token), context)

    def test_either_mode_context_sees_everything(self, paid_order):
        order = paid_order()
        assert resolve_order(ById(order.id), QueryContext(live_mode=None)).id == order.id

    def test_service_reads_through_its_context(self, gateway, paid_order):
        order = paid_order()
        service = OrderService(gateway=gateway, context=QueryContext(live_mode=False))

        with pytest.raises(ObjectNotFoundError):
            service.refund(ById(order.id))


class TestNotifications:
    def test_order_events_are_published(self, publisher, paid_order):
        order = paid_order()

        assert "order.created" in publisher.event_types()
        assert "order.financial_status.paid" in publisher.event_types()
        created = next(record for record in publisher.published if record["event_type"] == "order.created")
        assert created["payload"]["order_id"] == str(order.id)

    def test_publisher_failure_does_not_undo_the_order(self, publisher, paid_order):
        publisher.configure(should_raise=True)

        order = paid_order()

        assert publisher.published == []
        stored = current_domain.repository_for(Order).get(order.id)
        assert stored.financial_status == FinancialStatus.PAID.value


class TestSubscriptionActivation:
    ITEM = {
        "product_id": "coffee",
        "quantity": 1,
        "price_per_unit": 1500,
        "requires_subscription": True,
        "subscription_interval": 1,
        "subscription_unit": "m",
    }

    def test_settled_manual_payment_activates_the_subscription(self, service, publisher, paid_order):
        order = paid_order(items=[self.ITEM], payment_kind="manual", payment_details=[{}])

        service.update_transaction(ById(order.id), order.transactions[0].id, "success")

        repo = current_domain.repository_for(Subscription)
        [subscription] = repo.query.filter(original_order_id=str(order.id)).all().items
        assert subscription.active is True
        assert "subscription.activated" in publisher.event_types()

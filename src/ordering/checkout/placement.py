"""Order placement — the write that turns a prepared checkout into a stored order.

The order and the subscriptions it sets up are built in memory by
``CheckoutOrchestrator.prepare`` and parked here under the order id until the
``PlaceOrder`` command commits them. Cart, customer and renewed subscription
are re-read by id inside the handler, so a conflicting write is retried by
Protean without repeating any gateway call.
"""

import structlog
from protean import handle
from protean.fields import Identifier, Integer
from protean.utils.globals import current_domain

from ordering.cart.cart import Cart
from ordering.checkout.checkout import PreparedCheckout
from ordering.customer.customer import Customer
from ordering.domain import ordering
from ordering.errors import PreconditionError
from ordering.order.order import Order
from ordering.subscription.subscription import Subscription

logger = structlog.get_logger(__name__)

_pending: dict[str, PreparedCheckout] = {}


def park(prepared: PreparedCheckout) -> str:
    order_id = str(prepared.order.id)
    _pending[order_id] = prepared
    return order_id


def release(order_id: str) -> PreparedCheckout | None:
    return _pending.pop(order_id, None)


@ordering.command(part_of="Order")
class PlaceOrder:
    order_id = Identifier(required=True)
    cart_id = Identifier()
    customer_id = Identifier()
    subscription_id = Identifier()
    deduction = Integer(default=0)

    @classmethod
    def from_prepared(cls, prepared: PreparedCheckout) -> "PlaceOrder":
        return cls(
            order_id=str(prepared.order.id),
            cart_id=str(prepared.cart.id) if prepared.cart else None,
            customer_id=str(prepared.customer.id) if prepared.customer else None,
            subscription_id=str(prepared.subscription.id) if prepared.subscription else None,
            deduction=prepared.deduction,
        )


@ordering.command_handler(part_of=Order)
class PlaceOrderHandler:
    @handle(PlaceOrder)
    def place_order(self, command):
        prepared = _pending.get(command.order_id)
        if prepared is None:
            raise PreconditionError(f"No prepared checkout for order {command.order_id}")
        order = prepared.order

        if command.cart_id:
            cart_repo = current_domain.repository_for(Cart)
            cart = cart_repo.get(command.cart_id)
            cart.mark_ordered(order.id)
            cart_repo.add(cart)

        if command.customer_id:
            customer_repo = current_domain.repository_for(Customer)
            customer = customer_repo.get(command.customer_id)
            if command.deduction > 0:
                customer.deduct_balance(command.deduction, order.id)
            customer.record_order(order)
            customer_repo.add(customer)

        subscription_repo = current_domain.repository_for(Subscription)
        if command.subscription_id:
            renewed = subscription_repo.get(command.subscription_id)
            renewed.record_renewal(order)
            subscription_repo.add(renewed)

        current_domain.repository_for(Order).add(order)
        for subscription in prepared.subscriptions:
            subscription_repo.add(subscription)

        logger.debug("Order written", order_id=command.order_id, subscriptions=len(prepared.subscriptions))
        return order

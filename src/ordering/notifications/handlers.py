"""Outbound notifications — forwards domain events to the event publisher.

Each handler maps a domain event to a dotted event type, for example
``order.financial_status.paid`` or ``customer.account_balance.deducted``.
Publisher failures are logged and dropped; the originating write has already
committed.
"""

import structlog
from protean import handle

from ordering.customer.customer import Customer
from ordering.customer.events import AccountBalanceDeducted
from ordering.domain import ordering
from ordering.notifications import publish_safely
from ordering.order.events import (
    OrderCancelled,
    OrderClosed,
    OrderFinancialStatusChanged,
    OrderFulfillmentStatusChanged,
    OrderPlaced,
    OrderRefunded,
)
from ordering.order.order import Order
from ordering.subscription.subscription import (
    Subscription,
    SubscriptionActivated,
    SubscriptionCreated,
    SubscriptionRenewed,
)

logger = structlog.get_logger(__name__)


def _forward(event_type: str, event) -> None:
    if publish_safely(event_type, event.payload):
        logger.debug("Event published", event_type=event_type)


@ordering.event_handler(part_of=Order)
class OrderNotificationHandler:
    @handle(OrderPlaced)
    def on_order_placed(self, event: OrderPlaced) -> None:
        _forward("order.created", event)

    @handle(OrderFinancialStatusChanged)
    def on_financial_status_changed(self, event: OrderFinancialStatusChanged) -> None:
        _forward(f"order.financial_status.{event.financial_status}", event)

    @handle(OrderFulfillmentStatusChanged)
    def on_fulfillment_status_changed(self, event: OrderFulfillmentStatusChanged) -> None:
        _forward(f"order.fulfillment_status.{event.fulfillment_status}", event)

    @handle(OrderRefunded)
    def on_order_refunded(self, event: OrderRefunded) -> None:
        _forward("order.refunded", event)

    @handle(OrderCancelled)
    def on_order_cancelled(self, event: OrderCancelled) -> None:
        _forward("order.cancelled", event)

    @handle(OrderClosed)
    def on_order_closed(self, event: OrderClosed) -> None:
        _forward("order.closed", event)


@ordering.event_handler(part_of=Customer)
class CustomerNotificationHandler:
    @handle(AccountBalanceDeducted)
    def on_account_balance_deducted(self, event: AccountBalanceDeducted) -> None:
        _forward("customer.account_balance.deducted", event)


@ordering.event_handler(part_of=Subscription)
class SubscriptionNotificationHandler:
    @handle(SubscriptionCreated)
    def on_subscription_created(self, event: SubscriptionCreated) -> None:
        _forward("subscription.created", event)

    @handle(SubscriptionActivated)
    def on_subscription_activated(self, event: SubscriptionActivated) -> None:
        _forward("subscription.activated", event)

    @handle(SubscriptionRenewed)
    def on_subscription_renewed(self, event: SubscriptionRenewed) -> None:
        _forward("subscription.renewed", event)

"""Immediate fulfillment and subscription decisions.

An order is sent to fulfillment immediately when its fulfillment kind is
``immediate``, nothing has been fulfilled yet, and captured money covers the
total price. Subscriptions are set up immediately under the same payment
condition when the order contains subscription lines. Otherwise they are
set up inactive and activated once a later payment covers the order.

At checkout there is one more condition: every transaction dispatched
during that checkout must be a successful sale.
"""

from dataclasses import dataclass, field

import structlog

from ordering.fulfillment.dispatch import FulfillmentDispatcher, apply_fulfillments
from ordering.ledger.transactions import summarize_transactions
from ordering.order.order import FulfillmentKind, FulfillmentStatus
from ordering.subscription.subscription import Subscription, setup_subscriptions

logger = structlog.get_logger(__name__)


@dataclass
class ImmediateResult:
    fulfillments: list = field(default_factory=list)
    subscribe: bool = False


def _covered_by_payments(order) -> bool:
    summary = summarize_transactions(list(order.transactions))
    return summary.sale >= order.total_price


def _dispatch_all_sales(dispatched) -> bool:
    if dispatched is None:
        return True
    return all(entry.kind == "sale" and entry.succeeded for entry in dispatched)


def should_fulfill_immediately(order, dispatched=None) -> bool:
    return (
        order.fulfillment_kind == FulfillmentKind.IMMEDIATE.value
        and order.fulfillment_status == FulfillmentStatus.NONE.value
        and _covered_by_payments(order)
        and _dispatch_all_sales(dispatched)
    )


def should_subscribe_immediately(order, dispatched=None) -> bool:
    return (
        bool(order.has_subscription)
        and order.fulfillment_status == FulfillmentStatus.NONE.value
        and _covered_by_payments(order)
        and _dispatch_all_sales(dispatched)
    )


def attempt_immediate(order, fulfillment: FulfillmentDispatcher, dispatched=None) -> ImmediateResult:
    """Dispatch fulfillment where the order qualifies and decide on subscriptions.

    New fulfillments are attached to ``order`` in memory. Both decisions read
    the order as it stood before fulfillment was attached.
    """
    result = ImmediateResult(subscribe=should_subscribe_immediately(order, dispatched))

    if should_fulfill_immediately(order, dispatched):
        result.fulfillments = fulfillment.send(order)
        apply_fulfillments(order, result.fulfillments)
        logger.info("Order sent to fulfillment immediately", order_id=str(order.id), count=len(result.fulfillments))

    return result


def settle_subscriptions(order, subscribe: bool, existing=None) -> list[Subscription]:
    """Return the subscriptions to write alongside ``order``.

    ``existing`` are the subscriptions already set up for this order. When
    the order qualifies they are activated rather than created again.
    """
    existing = list(existing or [])
    if subscribe and existing:
        activated = [s for s in existing if not s.active]
        for subscription in activated:
            subscription.activate()
        logger.info("Subscriptions activated", order_id=str(order.id), count=len(activated))
        return activated

    if subscribe:
        created = setup_subscriptions(order, immediate=True)
        logger.info("Subscriptions set up immediately", order_id=str(order.id), count=len(created))
        return created

    if order.has_subscription and not existing:
        # Activated later, once payment covers the order
        return setup_subscriptions(order, immediate=False)
    return []

"""Subscription aggregate (CQRS) — recurring purchase created from an order.

One subscription is created per distinct ``(interval, unit)`` among the
order's subscription lines. A subscription set up immediately at checkout
is active from the start. Otherwise it waits for the order to be paid.
"""

import calendar
import json
from datetime import UTC, datetime, timedelta
from enum import Enum
from uuid import uuid4

from protean.exceptions import ValidationError
from protean.fields import Boolean, DateTime, Identifier, Integer, String, Text

from ordering.domain import ordering
from ordering.errors import ConflictError


class IntervalUnit(Enum):
    DAY = "d"
    WEEK = "w"
    MONTH = "m"
    YEAR = "y"


_UNIT_DAYS = {IntervalUnit.DAY.value: 1, IntervalUnit.WEEK.value: 7}
_UNIT_MONTHS = {IntervalUnit.MONTH.value: 1, IntervalUnit.YEAR.value: 12}


@ordering.event(part_of="Subscription")
class SubscriptionCreated:
    __version__ = 1

    subscription_id = Identifier(required=True)
    token = String(required=True)
    original_order_id = Identifier(required=True)
    customer_id = Identifier()
    active = Boolean(required=True)


@ordering.event(part_of="Subscription")
class SubscriptionActivated:
    __version__ = 1

    subscription_id = Identifier(required=True)
    renews_on = DateTime(required=True)


@ordering.event(part_of="Subscription")
class SubscriptionRenewed:
    __version__ = 1

    subscription_id = Identifier(required=True)
    order_id = Identifier(required=True)
    renews_on = DateTime(required=True)


@ordering.aggregate
class Subscription:
    token = String(required=True, max_length=64, unique=True)
    customer_id = Identifier()
    original_order_id = Identifier(required=True)
    last_order_id = Identifier()
    interval = Integer(default=1, min_value=1)
    unit = String(choices=IntervalUnit, default=IntervalUnit.MONTH.value)
    active = Boolean(default=False)
    renews_on = DateTime()
    items = Text()  # JSON snapshot of the subscribed lines
    live_mode = Boolean(default=True)
    created_at = DateTime()

    @classmethod
    def create(cls, order, items, interval, unit, active):
        now = datetime.now(UTC)
        subscription = cls(
            token=f"subscription_{uuid4().hex[:24]}",
            customer_id=order.customer_id,
            original_order_id=order.id,
            last_order_id=order.id,
            interval=interval,
            unit=unit,
            active=active,
            renews_on=_next_renewal(now, interval, unit) if active else None,
            items=json.dumps(items),
            live_mode=order.live_mode,
            created_at=now,
        )
        subscription.raise_(
            SubscriptionCreated(
                subscription_id=str(subscription.id),
                token=subscription.token,
                original_order_id=str(order.id),
                customer_id=str(order.customer_id) if order.customer_id else None,
                active=active,
            )
        )
        return subscription

    def activate(self):
        if self.active:
            raise ConflictError({"active": ["Subscription is already active"]})
        self.active = True
        self.renews_on = _next_renewal(datetime.now(UTC), self.interval, self.unit)
        self.raise_(SubscriptionActivated(subscription_id=str(self.id), renews_on=self.renews_on))

    def lines(self) -> list[dict]:
        return json.loads(self.items or "[]")

    def record_renewal(self, order):
        """Point the subscription at the order that renewed it and push the next renewal out."""
        if not self.active:
            raise ConflictError({"active": ["Only an active subscription can be renewed"]})
        self.last_order_id = order.id
        self.renews_on = _next_renewal(self.renews_on or datetime.now(UTC), self.interval, self.unit)
        self.raise_(
            SubscriptionRenewed(subscription_id=str(self.id), order_id=str(order.id), renews_on=self.renews_on)
        )


def _add_months(start, months):
    """Calendar month arithmetic. The day is clamped to the end of a shorter month."""
    index = start.month - 1 + months
    year, month = start.year + index // 12, index % 12 + 1
    return start.replace(year=year, month=month, day=min(start.day, calendar.monthrange(year, month)[1]))


def _next_renewal(start, interval, unit):
    if unit in _UNIT_DAYS:
        return start + timedelta(days=_UNIT_DAYS[unit] * interval)
    if unit in _UNIT_MONTHS:
        return _add_months(start, _UNIT_MONTHS[unit] * interval)
    raise ValidationError({"unit": [f"Unknown subscription unit {unit}"]})


def setup_subscriptions(order, immediate: bool) -> list[Subscription]:
    """Create one subscription per billing cycle found among the order's lines."""
    cycles: dict[tuple[int, str], list[dict]] = {}
    for item in order.items:
        if not item.requires_subscription:
            continue
        cycle = (item.subscription_interval or 1, item.subscription_unit or IntervalUnit.MONTH.value)
        cycles.setdefault(cycle, []).append(
            {
                "product_id": str(item.product_id),
                "variant_id": str(item.variant_id) if item.variant_id else None,
                "quantity": item.quantity,
                "price_per_unit": item.price_per_unit,
            }
        )

    return [
        Subscription.create(order, items, interval=interval, unit=unit, active=immediate)
        for (interval, unit), items in cycles.items()
    ]

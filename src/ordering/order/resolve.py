"""Typed references to aggregates and the functions that resolve them.

Callers identify an order, cart or customer in exactly one of three ways:

- ``ByReference(obj)``: an instance already in hand; it is re-read by id;
- ``ById(id)``: the aggregate identifier;
- ``ByNaturalKey(key)``: the public token (or email, for customers).

Every lookup goes through a ``QueryContext`` so live and test records
never mix.
"""

from dataclasses import dataclass
from typing import Any

from protean.exceptions import ObjectNotFoundError
from protean.utils.globals import current_domain

from ordering.cart.cart import Cart
from ordering.customer.customer import Customer
from ordering.order.order import Order
from ordering.order.repository import QueryContext


@dataclass(frozen=True)
class ByReference:
    obj: Any


@dataclass(frozen=True)
class ById:
    id: Any


@dataclass(frozen=True)
class ByNaturalKey:
    key: str


Ref = ByReference | ById | ByNaturalKey


def as_ref(value) -> Ref:
    """Wrap a bare aggregate instance. Typed references pass through."""
    if isinstance(value, (ByReference, ById, ByNaturalKey)):
        return value
    if value is None:
        raise ObjectNotFoundError("No reference given")
    return ByReference(value)


def _in_context(record, context: QueryContext, label: str, key):
    if not context.admits(record):
        raise ObjectNotFoundError(f"{label} {key} does not exist in this mode")
    return record


def _resolve(ref, context, aggregate_cls, natural_key, by_key):
    context = context or QueryContext()
    ref = as_ref(ref)
    repo = current_domain.repository_for(aggregate_cls)
    label = aggregate_cls.__name__

    if isinstance(ref, ByNaturalKey):
        if by_key is not None:
            return by_key(repo, ref.key, context)
        return _in_context(repo.find_by(**{natural_key: ref.key}), context, label, ref.key)

    identifier = ref.obj.id if isinstance(ref, ByReference) else ref.id
    return _in_context(repo.get(identifier), context, label, identifier)


def resolve_order(ref, context: QueryContext | None = None) -> Order:
    return _resolve(
        ref,
        context,
        Order,
        "token",
        lambda repo, key, ctx: repo.get_by_token(key, live_mode=ctx.live_mode),
    )


def resolve_cart(ref, context: QueryContext | None = None) -> Cart:
    return _resolve(ref, context, Cart, "token", None)


def resolve_customer(ref, context: QueryContext | None = None) -> Customer:
    return _resolve(ref, context, Customer, "email", None)

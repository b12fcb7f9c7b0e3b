"""Fulfillment provider port — abstract interface for fulfillment services.

Providers receive an immutable ``FulfillmentRequest`` snapshot of the order
and answer with the fulfillments they created or changed. They never see or
mutate the Order aggregate itself.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field


@dataclass(frozen=True)
class FulfillmentLine:
    item_id: str
    product_id: str
    variant_id: str | None
    quantity: int
    requires_shipping: bool
    fulfillment_id: str | None = None


@dataclass(frozen=True)
class ExistingFulfillment:
    fulfillment_id: str
    status: str
    item_ids: tuple[str, ...] = ()


@dataclass(frozen=True)
class FulfillmentRequest:
    order_id: str
    token: str
    lines: tuple[FulfillmentLine, ...] = ()
    fulfillments: tuple[ExistingFulfillment, ...] = ()
    shipping_address: dict | None = None


@dataclass(frozen=True)
class FulfillmentOutcome:
    """A fulfillment the provider created (no ``fulfillment_id``) or updated."""

    status: str
    service: str
    item_ids: tuple[str, ...] = field(default_factory=tuple)
    external_reference: str | None = None
    fulfillment_id: str | None = None


class FulfillmentProvider(ABC):
    """Abstract interface for fulfillment provider adapters."""

    @abstractmethod
    def send_order_to_fulfillment(self, request: FulfillmentRequest) -> list[FulfillmentOutcome]:
        """Dispatch every unfulfilled line of the order."""
        ...

    @abstractmethod
    def reconcile_create(self, request: FulfillmentRequest) -> list[FulfillmentOutcome]:
        """Cover lines added to the order after it was dispatched."""
        ...

    @abstractmethod
    def reconcile_update(self, request: FulfillmentRequest) -> list[FulfillmentOutcome]:
        """Adjust existing fulfillments after lines were removed or reduced."""
        ...

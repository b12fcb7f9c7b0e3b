"""Fake fulfillment provider for development and testing.

Groups lines into a single fulfillment per call and answers immediately.
``dispatch_status`` controls the status reported for new fulfillments, so
tests can drive an order straight to sent or fulfilled.
"""

from uuid import uuid4

from ordering.fulfillment.provider.port import (
    FulfillmentOutcome,
    FulfillmentProvider,
    FulfillmentRequest,
)


class FakeFulfillmentProviderError(RuntimeError):
    pass


class FakeFulfillmentProvider(FulfillmentProvider):
    service = "fake"

    def __init__(self) -> None:
        self.dispatch_status: str = "sent"
        self.should_raise: bool = False
        self.calls: list[dict] = []

    def configure(self, dispatch_status: str = "sent", should_raise: bool = False) -> None:
        self.dispatch_status = dispatch_status
        self.should_raise = should_raise

    def _record(self, method: str, request: FulfillmentRequest) -> None:
        self.calls.append({"method": method, "order_id": request.order_id, "lines": len(request.lines)})
        if self.should_raise:
            raise FakeFulfillmentProviderError(f"Provider unavailable during {method}")

    def _new_fulfillment(self, request: FulfillmentRequest, status: str) -> list[FulfillmentOutcome]:
        unassigned = tuple(
            line.item_id for line in request.lines if line.requires_shipping and not line.fulfillment_id
        )
        if not unassigned:
            return []
        return [
            FulfillmentOutcome(
                status=status,
                service=self.service,
                item_ids=unassigned,
                external_reference=f"fake_ful_{uuid4().hex[:12]}",
            )
        ]

    def send_order_to_fulfillment(self, request: FulfillmentRequest) -> list[FulfillmentOutcome]:
        self._record("send_order_to_fulfillment", request)
        return self._new_fulfillment(request, self.dispatch_status)

    def reconcile_create(self, request: FulfillmentRequest) -> list[FulfillmentOutcome]:
        self._record("reconcile_create", request)
        return self._new_fulfillment(request, "none")

    def reconcile_update(self, request: FulfillmentRequest) -> list[FulfillmentOutcome]:
        """Cancel fulfillments whose lines are all gone from the order."""
        self._record("reconcile_update", request)
        present = {line.item_id for line in request.lines}
        return [
            FulfillmentOutcome(
                status="cancelled",
                service=self.service,
                item_ids=existing.item_ids,
                fulfillment_id=existing.fulfillment_id,
            )
            for existing in request.fulfillments
            if existing.status == "none" and existing.item_ids and not set(existing.item_ids) & present
        ]

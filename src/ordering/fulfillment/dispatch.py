"""Fulfillment dispatch — provider calls made ahead of the order write.

The provider sees a frozen snapshot of the order, taken on the calling
thread. Calls are bounded by ``FULFILLMENT_TIMEOUT_SECONDS``. A provider that
does not answer in time leaves the order unfulfilled (``none``) for a later
retry. A provider that raises surfaces as ``ExternalServiceError``.
"""

import json
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import replace
from uuid import uuid4

import structlog
from protean.utils.globals import current_domain

from ordering.errors import ExternalServiceError
from ordering.fulfillment.provider import get_provider
from ordering.fulfillment.provider.port import (
    ExistingFulfillment,
    FulfillmentLine,
    FulfillmentOutcome,
    FulfillmentProvider,
    FulfillmentRequest,
)

logger = structlog.get_logger(__name__)


def snapshot_order(order) -> FulfillmentRequest:
    lines = tuple(
        FulfillmentLine(
            item_id=str(item.id),
            product_id=str(item.product_id),
            variant_id=str(item.variant_id) if item.variant_id else None,
            quantity=item.quantity,
            requires_shipping=bool(item.requires_shipping),
            fulfillment_id=str(item.fulfillment_id) if item.fulfillment_id else None,
        )
        for item in order.items
    )
    fulfillments = tuple(
        ExistingFulfillment(
            fulfillment_id=str(fulfillment.id),
            status=fulfillment.status,
            item_ids=tuple(json.loads(fulfillment.item_ids or "[]")),
        )
        for fulfillment in order.fulfillments
    )
    address = order.shipping_address.to_dict() if order.shipping_address else None
    return FulfillmentRequest(
        order_id=str(order.id),
        token=order.token,
        lines=lines,
        fulfillments=fulfillments,
        shipping_address=address,
    )


def apply_fulfillments(order, outcomes: list[FulfillmentOutcome]) -> None:
    """Attach or update each provider outcome on the order."""
    for outcome in outcomes:
        order.attach_fulfillment(
            status=outcome.status,
            service=outcome.service,
            external_reference=outcome.external_reference,
            item_ids=list(outcome.item_ids),
            fulfillment_id=outcome.fulfillment_id,
        )


class FulfillmentDispatcher:
    def __init__(self, provider: FulfillmentProvider | None = None, timeout: float | None = None) -> None:
        self.provider = provider or get_provider()
        self.timeout = (
            timeout if timeout is not None else float(getattr(current_domain, "FULFILLMENT_TIMEOUT_SECONDS", 10))
        )

    def send(self, order) -> list[FulfillmentOutcome]:
        return self._call("send_order_to_fulfillment", order)

    def reconcile_create(self, order) -> list[FulfillmentOutcome]:
        return self._call("reconcile_create", order)

    def reconcile_update(self, order) -> list[FulfillmentOutcome]:
        return self._call("reconcile_update", order)

    def _call(self, method: str, order) -> list[FulfillmentOutcome]:
        request = snapshot_order(order)
        executor = ThreadPoolExecutor(max_workers=1)
        try:
            future = executor.submit(getattr(self.provider, method), request)
            outcomes = future.result(timeout=self.timeout)
        except FutureTimeoutError:
            logger.warning(
                "Fulfillment provider timed out; order left unfulfilled",
                order_id=request.order_id,
                operation=method,
                timeout=self.timeout,
            )
            return []
        except Exception as exc:
            logger.error(
                "Fulfillment provider call failed",
                order_id=request.order_id,
                operation=method,
                error=repr(exc),
            )
            raise ExternalServiceError("fulfillment_provider", method, exc) from exc
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        # New fulfillments get their identity here so a retried write attaches the same ids
        return [o if o.fulfillment_id else replace(o, fulfillment_id=str(uuid4())) for o in outcomes]

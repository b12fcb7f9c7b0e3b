"""Ordering bounded context — order reconciliation, checkout and settlement.

Derives and keeps consistent an order's financial and fulfillment status
from its payment and fulfillment ledgers. Converts carts and subscriptions
into orders at checkout, and reconciles later order mutations against
transactions and fulfillments that were already issued.
"""

import structlog
from protean.domain import Domain

from ordering.utils.logging import configure_logging

configure_logging()

ordering = Domain(name="ordering")

logger = structlog.get_logger(__name__)

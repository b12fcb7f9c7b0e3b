"""Order recalculation — command and handler.

The handler is the write half of ``OrderService.recalculate``. Gateway and
provider results arrive already resolved in the command payload. A retried
write therefore never calls a collaborator twice.
"""

from protean import handle
from protean.fields import Identifier, Text
from protean.utils.globals import current_domain

from ordering.domain import ordering
from ordering.order.order import Order
from ordering.order.reconciliation import ReconciliationResult, apply_reconciliation


@ordering.command(part_of="Order")
class RecalculateOrder:
    order_id = Identifier(required=True)
    reconciliation = Text()  # ReconciliationResult payload


@ordering.command_handler(part_of=Order)
class RecalculateOrderHandler:
    @handle(RecalculateOrder)
    def recalculate_order(self, command):
        repo = current_domain.repository_for(Order)
        order = repo.get(command.order_id)
        order.recalculate()
        apply_reconciliation(order, ReconciliationResult.from_payload(command.reconciliation))
        order.recalculate()
        repo.add(order)
        return order

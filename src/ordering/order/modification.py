"""Order line-item modification — commands and handler.

Each command carries the line change and the reconciliation results the
change produced. The item payload is the same mapping ``Order.add_item``,
``update_item`` and ``remove_item`` accept, including a pre-assigned ``id``
for lines that did not exist yet.
"""

import json

from protean import handle
from protean.fields import Identifier, Text
from protean.utils.globals import current_domain

from ordering.domain import ordering
from ordering.order.order import Order
from ordering.order.reconciliation import ReconciliationResult, apply_reconciliation


@ordering.command(part_of="Order")
class AddOrderItem:
    order_id = Identifier(required=True)
    item = Text(required=True)  # JSON mapping
    reconciliation = Text()


@ordering.command(part_of="Order")
class UpdateOrderItem:
    order_id = Identifier(required=True)
    item = Text(required=True)
    reconciliation = Text()


@ordering.command(part_of="Order")
class RemoveOrderItem:
    order_id = Identifier(required=True)
    item = Text(required=True)
    reconciliation = Text()


@ordering.command_handler(part_of=Order)
class ModifyOrderHandler:
    def _modify(self, command, change):
        repo = current_domain.repository_for(Order)
        order = repo.get(command.order_id)
        change(order, json.loads(command.item))
        apply_reconciliation(order, ReconciliationResult.from_payload(command.reconciliation))
        order.recalculate()
        repo.add(order)
        return order

    @handle(AddOrderItem)
    def add_order_item(self, command):
        return self._modify(command, Order.add_item)

    @handle(UpdateOrderItem)
    def update_order_item(self, command):
        return self._modify(command, Order.update_item)

    @handle(RemoveOrderItem)
    def remove_order_item(self, command):
        return self._modify(command, Order.remove_item)

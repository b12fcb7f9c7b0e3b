"""Repository for the Order aggregate."""

from dataclasses import dataclass

from ordering.domain import ordering
from ordering.order.order import Order


@dataclass(frozen=True)
class QueryContext:
    """Explicit tenant scope for reads. ``live_mode=None`` reads both modes."""

    live_mode: bool | None = True

    def admits(self, record) -> bool:
        return self.live_mode is None or bool(record.live_mode) == self.live_mode


@ordering.repository(part_of=Order)
class OrderRepository:
    def get_by_token(self, token: str, live_mode: bool | None = True) -> Order:
        """Find an order by its public token. Raises ObjectNotFoundError when absent."""
        if live_mode is None:
            return self.find_by(token=token)
        return self.find_by(token=token, live_mode=live_mode)

"""Event publisher port — abstract interface for outbound notifications."""

from abc import ABC, abstractmethod


class EventPublisher(ABC):
    """Fire-and-forget publication of order, customer and subscription transitions."""

    @abstractmethod
    def publish(self, event_type: str, payload: dict, save: bool = True) -> None:
        """Publish ``payload`` under a dotted ``event_type`` such as ``order.cancelled``.

        ``save`` asks the publisher to keep a durable record of the event.
        """
        ...

"""In-memory event publisher — records published events for testing."""

from ordering.notifications.port import EventPublisher


class PublishError(Exception):
    """Raised by InMemoryPublisher when configured to fail."""


class InMemoryPublisher(EventPublisher):
    def __init__(self):
        self.published: list[dict] = []
        self.should_raise = False

    def configure(self, should_raise: bool = False):
        self.should_raise = should_raise

    def publish(self, event_type: str, payload: dict, save: bool = True) -> None:
        if self.should_raise:
            raise PublishError(f"Could not publish {event_type}")
        self.published.append({"event_type": event_type, "payload": payload, "save": save})

    def event_types(self) -> list[str]:
        return [record["event_type"] for record in self.published]

    def reset(self):
        self.published.clear()
        self.should_raise = False

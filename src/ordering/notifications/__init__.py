"""Event publisher registry.

Uses the in-memory publisher by default. Publishing never fails the caller:
``publish_safely`` logs and swallows publisher errors so a notification
problem cannot roll back a financial write.
"""

import structlog

from ordering.notifications.port import EventPublisher

logger = structlog.get_logger(__name__)

_publisher_instance: EventPublisher | None = None


def get_publisher() -> EventPublisher:
    global _publisher_instance
    if _publisher_instance is None:
        from ordering.notifications.memory import InMemoryPublisher

        _publisher_instance = InMemoryPublisher()
    return _publisher_instance


def set_publisher(publisher: EventPublisher) -> None:
    global _publisher_instance
    _publisher_instance = publisher


def reset_publisher() -> None:
    global _publisher_instance
    _publisher_instance = None


def publish_safely(event_type: str, payload: dict, save: bool = True) -> bool:
    """Publish through the active publisher. Returns False when publishing failed."""
    try:
        get_publisher().publish(event_type, payload, save=save)
    except Exception as exc:
        logger.error("Event publish failed", event_type=event_type, error=repr(exc))
        return False
    return True

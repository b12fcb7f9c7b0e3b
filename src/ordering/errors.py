"""Error taxonomy for the Ordering domain.

Validation and lookup failures reuse Protean's own exceptions
(``ValidationError`` and ``ObjectNotFoundError``). The classes here cover
the kinds Protean has no name for. A conflict means the record exists but is
in the wrong state. A precondition failure is an integration bug. An external
service failure comes from a payment or fulfillment collaborator.
"""

import structlog
from protean.exceptions import (
    IncorrectUsageError,
    InvalidOperationError,
    ObjectNotFoundError,
    ProteanException,
    ValidationError,
)

logger = structlog.get_logger(__name__)

GENERIC_EXTERNAL_FAILURE = "A payment or fulfillment service failed. Please retry later."


class ConflictError(InvalidOperationError):
    """The target exists but is not in a state that allows the operation."""

    def __init__(self, messages: dict[str, list[str]] | str) -> None:
        if isinstance(messages, str):
            messages = {"_entity": [messages]}
        self.messages = messages
        super().__init__(messages)


class PreconditionError(IncorrectUsageError):
    """A derivation was invoked before the collections it reads were loaded."""


class ExternalServiceError(ProteanException):
    """A payment gateway or fulfillment provider call failed or timed out."""

    def __init__(self, service: str, operation: str, cause: BaseException | None = None) -> None:
        self.service = service
        self.operation = operation
        self.cause = cause
        super().__init__(f"{service}.{operation} failed")


def error_response(exc: Exception) -> dict:
    """Translate a domain exception into a structured, user-facing payload.

    External service failures are reported generically. Their details go to
    the log only.
    """
    if isinstance(exc, ValidationError):
        return {"error": "validation", "messages": exc.messages}
    if isinstance(exc, ObjectNotFoundError):
        return {"error": "not_found", "messages": {"_entity": [str(exc)]}}
    if isinstance(exc, ConflictError):
        return {"error": "conflict", "messages": exc.messages}
    if isinstance(exc, PreconditionError):
        return {"error": "precondition", "messages": {"_entity": [str(exc)]}}
    if isinstance(exc, ExternalServiceError):
        logger.error(
            "External service failure",
            service=exc.service,
            operation=exc.operation,
            cause=repr(exc.cause),
        )
        return {"error": "external_service", "messages": {"_entity": [GENERIC_EXTERNAL_FAILURE]}}
    raise exc

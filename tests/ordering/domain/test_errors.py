"""Tests for the error taxonomy and its user-facing translation."""

import pytest
from ordering.errors import (
    GENERIC_EXTERNAL_FAILURE,
    ConflictError,
    ExternalServiceError,
    PreconditionError,
    error_response,
)
from protean.exceptions import ObjectNotFoundError, ValidationError


class TestConflictError:
    def test_string_message_is_wrapped(self):
        exc = ConflictError("Order is closed")
        assert exc.messages == {"_entity": ["Order is closed"]}

    def test_dict_messages_are_kept(self):
        exc = ConflictError({"status": ["closed"]})
        assert exc.messages == {"status": ["closed"]}


class TestErrorResponse:
    def test_validation(self):
        response = error_response(ValidationError({"amount": ["must be positive"]}))
        assert response == {"error": "validation", "messages": {"amount": ["must be positive"]}}

    def test_not_found(self):
        response = error_response(ObjectNotFoundError("Order x does not exist"))
        assert response["error"] == "not_found"

    def test_conflict(self):
        response = error_response(ConflictError({"status": ["closed"]}))
        assert response == {"error": "conflict", "messages": {"status": ["closed"]}}

    def test_precondition(self):
        response = error_response(PreconditionError("Transactions must be loaded"))
        assert response["error"] == "precondition"

    def test_external_service_detail_is_hidden(self):
        exc = ExternalServiceError("payment_gateway", "sale", RuntimeError("secret upstream detail"))
        response = error_response(exc)
        assert response == {"error": "external_service", "messages": {"_entity": [GENERIC_EXTERNAL_FAILURE]}}
        assert "secret" not in str(response)

    def test_unknown_errors_propagate(self):
        with pytest.raises(KeyError):
            error_response(KeyError("boom"))

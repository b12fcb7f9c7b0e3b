"""Configurable fake payment gateway for development and testing.

This adapter simulates a real payment gateway without any external calls.
It can be configured at runtime to succeed, decline, raise or stall. That
makes it useful for:
- Automated tests with predictable outcomes
- Exercising timeout handling (``delay_seconds``)
- Development without real gateway credentials
"""

import threading
import time
from uuid import uuid4

from ordering.payments.gateway.port import PaymentGateway, TransactionOutcome, TransactionRequest


class FakeGatewayError(RuntimeError):
    """Raised by FakeGateway when configured to blow up."""


class FakeGateway(PaymentGateway):
    """Configurable fake payment gateway."""

    def __init__(self) -> None:
        self.should_succeed: bool = True
        self.failure_reason: str = "card_declined"
        self.should_raise: bool = False
        self.delay_seconds: float = 0.0
        self.calls: list[dict] = []
        self._lock = threading.Lock()

    def configure(
        self,
        should_succeed: bool = True,
        failure_reason: str = "card_declined",
        should_raise: bool = False,
        delay_seconds: float = 0.0,
    ) -> None:
        """Configure gateway behavior at runtime."""
        self.should_succeed = should_succeed
        self.failure_reason = failure_reason
        self.should_raise = should_raise
        self.delay_seconds = delay_seconds

    def methods_called(self) -> list[str]:
        return [call["method"] for call in self.calls]

    def _execute(self, method: str, request: TransactionRequest) -> TransactionOutcome:
        # Dispatch runs on worker threads
        with self._lock:
            self.calls.append(
                {
                    "method": method,
                    "order_id": request.order_id,
                    "amount": request.amount,
                    "currency": request.currency,
                    "gateway": request.gateway,
                    "parent_reference": request.parent_reference,
                    "idempotency_key": request.idempotency_key,
                }
            )

        if self.delay_seconds:
            time.sleep(self.delay_seconds)

        if self.should_raise:
            raise FakeGatewayError(f"Gateway unavailable during {method}")

        if self.should_succeed:
            return TransactionOutcome(
                status="success",
                gateway_reference=f"fake_{method}_{uuid4().hex[:12]}",
                message=f"{method} approved",
            )
        return TransactionOutcome(
            status="failure",
            error_code=self.failure_reason,
            message=f"{method} declined",
        )

    def authorize(self, request: TransactionRequest) -> TransactionOutcome:
        return self._execute("authorize", request)

    def capture(self, request: TransactionRequest) -> TransactionOutcome:
        return self._execute("capture", request)

    def sale(self, request: TransactionRequest) -> TransactionOutcome:
        return self._execute("sale", request)

    def void(self, request: TransactionRequest) -> TransactionOutcome:
        return self._execute("void", request)

    def refund(self, request: TransactionRequest) -> TransactionOutcome:
        return self._execute("refund", request)

    def retry(self, request: TransactionRequest) -> TransactionOutcome:
        return self._execute("retry", request)

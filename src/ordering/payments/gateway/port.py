"""Payment gateway port (abstract interface).

Defines the contract every payment gateway adapter implements. The core only
ever sees ``TransactionRequest`` in and ``TransactionOutcome`` out. That lets
FakeGateway (dev/test) and a real processor be swapped without touching
domain or application code.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field


@dataclass(frozen=True)
class TransactionRequest:
    """A single instruction to the gateway. Amounts are in minor units."""

    order_id: str
    amount: int
    currency: str
    gateway: str = "manual"
    payment_details: dict = field(default_factory=dict)
    parent_reference: str | None = None
    idempotency_key: str | None = None


@dataclass(frozen=True)
class TransactionOutcome:
    """What the gateway did with a request.

    ``status`` is one of the ledger statuses: success, failure, error or
    pending. A decline is a ``failure`` outcome, not an exception.
    """

    status: str
    gateway_reference: str | None = None
    error_code: str | None = None
    message: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == "success"


class PaymentGateway(ABC):
    """Abstract payment gateway interface."""

    @abstractmethod
    def authorize(self, request: TransactionRequest) -> TransactionOutcome:
        """Reserve funds without taking them."""
        ...

    @abstractmethod
    def capture(self, request: TransactionRequest) -> TransactionOutcome:
        """Take funds that were previously authorized."""
        ...

    @abstractmethod
    def sale(self, request: TransactionRequest) -> TransactionOutcome:
        """Authorize and capture in one step."""
        ...

    @abstractmethod
    def void(self, request: TransactionRequest) -> TransactionOutcome:
        """Release an authorization that was never captured."""
        ...

    @abstractmethod
    def refund(self, request: TransactionRequest) -> TransactionOutcome:
        """Return captured funds."""
        ...

    @abstractmethod
    def retry(self, request: TransactionRequest) -> TransactionOutcome:
        """Re-submit a transaction that previously failed or errored."""
        ...

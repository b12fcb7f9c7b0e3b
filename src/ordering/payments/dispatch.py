"""Payment dispatch — runs gateway calls before anything is written.

Each instruction becomes a ``LedgerEntry``: a fully resolved transaction
that is later recorded on the order inside a short write. Calls run on a
thread pool bounded by ``GATEWAY_TIMEOUT_SECONDS``:

- a gateway that answers yields a success or failure entry;
- a gateway that does not answer in time yields an ``error`` entry, and no
  compensation is attempted;
- a gateway that raises aborts the dispatch with ``ExternalServiceError``.

Manual payments never reach the gateway. They are recorded as ``pending``
until an operator settles them.
"""

from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass
from uuid import uuid4

import structlog
from protean.utils.globals import current_domain

from ordering.errors import ExternalServiceError
from ordering.payments.gateway import get_gateway
from ordering.payments.gateway.port import PaymentGateway, TransactionOutcome, TransactionRequest

logger = structlog.get_logger(__name__)

MANUAL_GATEWAY = "manual"
DEFAULT_GATEWAY = "default"


@dataclass(frozen=True)
class PaymentInstruction:
    operation: str  # authorize, capture, sale, void, refund, retry
    request: TransactionRequest
    kind: str | None = None  # ledger kind to record; defaults to the operation
    parent_id: str | None = None
    description: str | None = None
    transaction_id: str | None = None

    @property
    def ledger_kind(self) -> str:
        return self.kind or self.operation


@dataclass(frozen=True)
class LedgerEntry:
    """A gateway result waiting to be recorded on its order."""

    transaction_id: str
    kind: str
    amount: int
    status: str
    gateway: str
    gateway_reference: str | None = None
    parent_id: str | None = None
    error_code: str | None = None
    description: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == "success"

    def record_on(self, order):
        return order.record_transaction(
            kind=self.kind,
            amount=self.amount,
            status=self.status,
            gateway=self.gateway,
            gateway_reference=self.gateway_reference,
            parent_id=self.parent_id,
            error_code=self.error_code,
            description=self.description,
            transaction_id=self.transaction_id,
        )


class PaymentDispatcher:
    """Sends payment instructions to the gateway, in parallel where there are several."""

    def __init__(
        self,
        gateway: PaymentGateway | None = None,
        timeout: float | None = None,
        workers: int | None = None,
    ) -> None:
        # Resolved on the calling thread, where the domain context is active
        self.gateway = gateway or get_gateway()
        self.timeout = (
            timeout if timeout is not None else float(getattr(current_domain, "GATEWAY_TIMEOUT_SECONDS", 10))
        )
        self.workers = workers or int(getattr(current_domain, "PAYMENT_DISPATCH_WORKERS", 4))

    def run(self, instruction: PaymentInstruction) -> LedgerEntry:
        return self.run_many([instruction])[0]

    def run_many(self, instructions: list[PaymentInstruction]) -> list[LedgerEntry]:
        """Dispatch every instruction and return entries in instruction order."""
        instructions = [self._with_identity(i) for i in instructions]
        entries: dict[int, LedgerEntry] = {}
        remote = []
        for position, instruction in enumerate(instructions):
            if instruction.request.gateway == MANUAL_GATEWAY:
                entries[position] = self._manual_entry(instruction)
            else:
                remote.append((position, instruction))

        if remote:
            entries.update(self._run_remote(remote))

        return [entries[position] for position in range(len(instructions))]

    def _with_identity(self, instruction: PaymentInstruction) -> PaymentInstruction:
        if instruction.transaction_id:
            return instruction
        transaction_id = str(uuid4())
        request = instruction.request
        return PaymentInstruction(
            operation=instruction.operation,
            request=TransactionRequest(
                order_id=request.order_id,
                amount=request.amount,
                currency=request.currency,
                gateway=request.gateway,
                payment_details=request.payment_details,
                parent_reference=request.parent_reference,
                idempotency_key=request.idempotency_key or f"{request.order_id}:{transaction_id}",
            ),
            kind=instruction.kind,
            parent_id=instruction.parent_id,
            description=instruction.description,
            transaction_id=transaction_id,
        )

    @staticmethod
    def _manual_entry(instruction: PaymentInstruction) -> LedgerEntry:
        return LedgerEntry(
            transaction_id=instruction.transaction_id,
            kind=instruction.ledger_kind,
            amount=instruction.request.amount,
            status="pending",
            gateway=MANUAL_GATEWAY,
            parent_id=instruction.parent_id,
            description=instruction.description,
        )

    def _run_remote(self, remote) -> dict[int, LedgerEntry]:
        executor = ThreadPoolExecutor(max_workers=min(self.workers, len(remote)))
        try:
            futures = {
                executor.submit(getattr(self.gateway, instruction.operation), instruction.request): (
                    position,
                    instruction,
                )
                for position, instruction in remote
            }
            done, not_done = wait(futures, timeout=self.timeout)

            entries: dict[int, LedgerEntry] = {}
            failures: list[tuple[PaymentInstruction, BaseException]] = []
            for future in done:
                position, instruction = futures[future]
                exc = future.exception()
                if exc is not None:
                    failures.append((instruction, exc))
                    continue
                entries[position] = self._entry(instruction, future.result())

            for future in not_done:
                position, instruction = futures[future]
                logger.warning(
                    "Payment gateway timed out; transaction left for retry",
                    order_id=instruction.request.order_id,
                    operation=instruction.operation,
                    amount=instruction.request.amount,
                    timeout=self.timeout,
                )
                entries[position] = LedgerEntry(
                    transaction_id=instruction.transaction_id,
                    kind=instruction.ledger_kind,
                    amount=instruction.request.amount,
                    status="error",
                    gateway=instruction.request.gateway,
                    parent_id=instruction.parent_id,
                    error_code="timeout",
                    description=instruction.description,
                )
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        if failures:
            self._raise_failure(failures, entries)
        return entries

    @staticmethod
    def _entry(instruction: PaymentInstruction, outcome: TransactionOutcome) -> LedgerEntry:
        return LedgerEntry(
            transaction_id=instruction.transaction_id,
            kind=instruction.ledger_kind,
            amount=instruction.request.amount,
            status=outcome.status,
            gateway=instruction.request.gateway,
            gateway_reference=outcome.gateway_reference,
            parent_id=instruction.parent_id,
            error_code=outcome.error_code,
            description=instruction.description,
        )

    @staticmethod
    def _raise_failure(failures, entries) -> None:
        instruction, exc = failures[0]
        for other_instruction, other_exc in failures:
            logger.error(
                "Payment gateway call failed",
                order_id=other_instruction.request.order_id,
                operation=other_instruction.operation,
                amount=other_instruction.request.amount,
                error=repr(other_exc),
            )
        for entry in entries.values():
            if entry.succeeded:
                # Nothing is written when dispatch fails; operators reconcile these by reference
                logger.error(
                    "Gateway transaction not recorded after dispatch failure",
                    order_id=instruction.request.order_id,
                    kind=entry.kind,
                    amount=entry.amount,
                    gateway_reference=entry.gateway_reference,
                )
        raise ExternalServiceError("payment_gateway", instruction.operation, exc) from exc

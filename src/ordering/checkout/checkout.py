"""Checkout orchestration — turns a cart or subscription into a placed order.

Checkout runs in two phases. ``CheckoutOrchestrator.prepare`` does every
read and every external call: it validates the request, resolves the source
cart or subscription and the customer, builds the order in memory, applies
store credit, dispatches payments and decides immediate fulfillment. It
writes nothing.

The result is a ``PreparedCheckout`` that ``OrderService.create`` commits in
a single short write together with the cart, customer and subscriptions it
touched. A failure anywhere in ``prepare`` leaves nothing behind.
"""

from dataclasses import dataclass, field

import structlog
from protean.exceptions import ValidationError
from protean.utils.globals import current_domain

from ordering.cart.cart import Cart, CartStatus
from ordering.checkout.balance import apply_account_balance
from ordering.customer.customer import Customer
from ordering.errors import ConflictError
from ordering.fulfillment.dispatch import FulfillmentDispatcher
from ordering.order.immediate import attempt_immediate, settle_subscriptions
from ordering.order.order import FulfillmentKind, Order, PaymentKind, ProcessingMethod
from ordering.order.repository import QueryContext
from ordering.order.resolve import ById, ByNaturalKey, resolve_cart, resolve_customer
from ordering.payments.dispatch import (
    DEFAULT_GATEWAY,
    MANUAL_GATEWAY,
    LedgerEntry,
    PaymentDispatcher,
    PaymentInstruction,
)
from ordering.payments.gateway.port import TransactionRequest
from ordering.subscription.subscription import Subscription

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class PaymentDetail:
    """One way the customer pays for part (or all) of an order."""

    amount: int | None = None
    gateway: str | None = None
    payment_kind: str | None = None
    details: dict = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict) -> "PaymentDetail":
        known = {"amount", "gateway", "payment_kind"}
        return cls(
            amount=int(data["amount"]) if data.get("amount") is not None else None,
            gateway=data.get("gateway"),
            payment_kind=data.get("payment_kind"),
            details={key: value for key, value in data.items() if key not in known},
        )


@dataclass(frozen=True)
class CheckoutRequest:
    cart_token: str | None = None
    subscription_token: str | None = None
    customer_id: str | None = None
    email: str | None = None
    payment_details: tuple[PaymentDetail, ...] = ()
    payment_kind: str | None = None
    fulfillment_kind: str | None = None
    shipping_address: dict | None = None
    billing_address: dict | None = None

    @classmethod
    def from_dict(cls, data: dict) -> "CheckoutRequest":
        details = data.get("payment_details") or []
        if isinstance(details, dict):
            details = [details]
        return cls(
            cart_token=data.get("cart_token"),
            subscription_token=data.get("subscription_token"),
            customer_id=data.get("customer_id"),
            email=data.get("email"),
            payment_details=tuple(PaymentDetail.from_dict(d) for d in details),
            payment_kind=data.get("payment_kind"),
            fulfillment_kind=data.get("fulfillment_kind"),
            shipping_address=data.get("shipping_address"),
            billing_address=data.get("billing_address"),
        )

    def validate(self) -> None:
        errors = {}
        if not self.cart_token and not self.subscription_token:
            errors["cart_token"] = ["A cart token or a subscription token is required"]
        if not self.payment_details:
            errors["payment_details"] = ["At least one payment detail is required"]
        kinds = {kind.value for kind in PaymentKind}
        unknown = [d.payment_kind for d in self.payment_details if d.payment_kind and d.payment_kind not in kinds]
        if self.payment_kind and self.payment_kind not in kinds:
            unknown.append(self.payment_kind)
        if unknown:
            errors["payment_kind"] = [f"Unknown payment kind {kind}" for kind in unknown]
        if errors:
            raise ValidationError(errors)


@dataclass
class PreparedCheckout:
    """An order built in memory, with the collaborator results it depends on."""

    order: Order
    cart: Cart | None = None
    subscription: Subscription | None = None
    customer: Customer | None = None
    deduction: int = 0
    entries: list[LedgerEntry] = field(default_factory=list)
    fulfillments: list = field(default_factory=list)
    subscriptions: list[Subscription] = field(default_factory=list)


class CheckoutOrchestrator:
    def __init__(
        self,
        payments: PaymentDispatcher | None = None,
        fulfillment: FulfillmentDispatcher | None = None,
        context: QueryContext | None = None,
    ):
        self.payments = payments or PaymentDispatcher()
        self.fulfillment = fulfillment or FulfillmentDispatcher()
        self.context = context or QueryContext(live_mode=bool(getattr(current_domain, "LIVE_MODE", True)))

    def prepare(self, request: CheckoutRequest | dict) -> PreparedCheckout:
        if isinstance(request, dict):
            request = CheckoutRequest.from_dict(request)
        request.validate()

        cart, subscription, items_data, lines = self._resolve_source(request)
        customer_id = request.customer_id or (cart.customer_id if cart else None)
        if customer_id is None and subscription is not None:
            customer_id = subscription.customer_id
        customer = resolve_customer(ById(customer_id), self.context) if customer_id else None

        requires_shipping = any(item.get("requires_shipping", True) for item in items_data)
        shipping_address, billing_address = self._resolve_addresses(request, customer, requires_shipping)

        payment_kind = self._payment_kind(request)
        order = Order.create(
            items_data,
            customer_id=customer.id if customer else None,
            email=request.email or (customer.email if customer else None),
            cart_token=cart.token if cart else None,
            subscription_token=subscription.token if subscription else None,
            currency=cart.currency if cart else getattr(current_domain, "DEFAULT_CURRENCY", "USD"),
            live_mode=self.context.live_mode if self.context.live_mode is not None else True,
            payment_kind=payment_kind,
            fulfillment_kind=request.fulfillment_kind
            or getattr(current_domain, "ORDER_FULFILLMENT_KIND", FulfillmentKind.MANUAL.value),
            processing_method=(
                ProcessingMethod.SUBSCRIPTION.value if subscription else ProcessingMethod.CHECKOUT.value
            ),
            billing_address=billing_address,
            shipping_address=shipping_address,
            **lines,
        )

        deduction = apply_account_balance(order, customer.account_balance) if customer else 0

        entries = self.payments.run_many(self._instructions(order, request, payment_kind))
        for entry in entries:
            entry.record_on(order)
        order.recalculate()

        immediate = attempt_immediate(order, self.fulfillment, dispatched=entries)
        order.recalculate()
        subscriptions = settle_subscriptions(order, immediate.subscribe)

        logger.info(
            "Checkout prepared",
            order_id=str(order.id),
            total_price=order.total_price,
            total_due=order.total_due,
            financial_status=order.financial_status,
            deduction=deduction,
            transactions=len(entries),
        )
        return PreparedCheckout(
            order=order,
            cart=cart,
            subscription=subscription,
            customer=customer,
            deduction=deduction,
            entries=entries,
            fulfillments=immediate.fulfillments,
            subscriptions=subscriptions,
        )

    # -------------------------------------------------------------------
    # Resolution
    # -------------------------------------------------------------------
    def _resolve_source(self, request: CheckoutRequest):
        if request.cart_token:
            cart = resolve_cart(ByNaturalKey(request.cart_token), self.context)
            if cart.status != CartStatus.OPEN.value:
                raise ConflictError({"cart_token": [f"Cart {cart.token} is {cart.status}, not open"]})
            return cart, None, [item.to_line() for item in cart.items], cart.lines()

        repo = current_domain.repository_for(Subscription)
        subscription = repo.find_by(token=request.subscription_token)
        if not subscription.active:
            raise ConflictError({"subscription_token": [f"Subscription {subscription.token} is not active"]})
        return None, subscription, subscription.lines(), {}

    @staticmethod
    def _resolve_addresses(request: CheckoutRequest, customer, requires_shipping):
        shipping = request.shipping_address or (customer.preferred_shipping_address if customer else None)
        if requires_shipping and not shipping:
            raise ValidationError({"shipping_address": ["A shipping address is required for shippable items"]})

        billing = request.billing_address or (customer.preferred_billing_address if customer else None)
        return shipping, billing or shipping

    # -------------------------------------------------------------------
    # Payments
    # -------------------------------------------------------------------
    @staticmethod
    def _payment_kind(request: CheckoutRequest) -> str:
        return (
            request.payment_kind
            or getattr(current_domain, "ORDER_PAYMENT_KIND", None)
            or PaymentKind.MANUAL.value
        )

    def _instructions(self, order, request: CheckoutRequest, default_kind: str) -> list[PaymentInstruction]:
        instructions = []
        for detail in request.payment_details:
            amount = detail.amount if detail.amount is not None else order.total_due
            if amount <= 0:
                logger.info("Payment detail skipped; nothing left to charge", order_id=str(order.id))
                continue

            kind = detail.payment_kind or default_kind
            if kind == PaymentKind.MANUAL.value:
                operation, gateway = "sale", MANUAL_GATEWAY
            else:
                operation, gateway = kind, detail.gateway or DEFAULT_GATEWAY

            instructions.append(
                PaymentInstruction(
                    operation=operation,
                    request=TransactionRequest(
                        order_id=str(order.id),
                        amount=amount,
                        currency=order.currency,
                        gateway=gateway,
                        payment_details=detail.details,
                    ),
                    description="Checkout",
                )
            )
        return instructions

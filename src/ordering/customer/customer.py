"""Customer aggregate — the account side of an order.

Ordering only needs a narrow slice of the customer: where to ship, what
store credit is available, and lifetime spend. Orders reference customers by
id and never hold the aggregate itself.
"""

from datetime import UTC, datetime

from protean import atomic_change, invariant
from protean.exceptions import ValidationError
from protean.fields import Boolean, Identifier, Integer, String, ValueObject

from ordering.customer.events import AccountBalanceDeducted, CustomerOrderRecorded
from ordering.domain import ordering
from ordering.errors import ConflictError
from ordering.shared.address import Address, to_address


@ordering.aggregate
class Customer:
    email: String(required=True, max_length=254)
    first_name: String(max_length=100)
    last_name: String(max_length=100)
    account_balance: Integer(default=0)
    total_spent: Integer(default=0)
    total_orders: Integer(default=0)
    last_order_id: Identifier()
    default_address: ValueObject(Address)
    shipping_address: ValueObject(Address)
    billing_address: ValueObject(Address)
    live_mode: Boolean(default=True)

    @invariant.post
    def account_balance_cannot_be_negative(self):
        if self.account_balance is not None and self.account_balance < 0:
            raise ValidationError({"account_balance": ["Account balance cannot be negative"]})

    @classmethod
    def register(cls, email, account_balance=0, live_mode=True, **addresses):
        return cls(
            email=email,
            first_name=addresses.get("first_name"),
            last_name=addresses.get("last_name"),
            account_balance=account_balance,
            default_address=to_address(addresses.get("default_address")),
            shipping_address=to_address(addresses.get("shipping_address")),
            billing_address=to_address(addresses.get("billing_address")),
            live_mode=live_mode,
        )

    @property
    def preferred_shipping_address(self) -> Address | None:
        return self.shipping_address or self.default_address

    @property
    def preferred_billing_address(self) -> Address | None:
        return self.billing_address or self.default_address

    def deduct_balance(self, amount, order_id):
        """Spend ``amount`` of store credit on an order."""
        if amount <= 0:
            raise ValidationError({"amount": ["Deduction must be positive"]})
        if amount > self.account_balance:
            raise ConflictError(
                {"account_balance": [f"Balance {self.account_balance} cannot cover a deduction of {amount}"]}
            )

        self.account_balance -= amount
        self.raise_(
            AccountBalanceDeducted(
                customer_id=str(self.id),
                order_id=str(order_id),
                amount=amount,
                account_balance=self.account_balance,
                deducted_at=datetime.now(UTC),
            )
        )

    def record_order(self, order):
        with atomic_change(self):
            self.total_spent = (self.total_spent or 0) + order.total_price
            self.total_orders = (self.total_orders or 0) + 1
            self.last_order_id = order.id

        self.raise_(
            CustomerOrderRecorded(
                customer_id=str(self.id),
                order_id=str(order.id),
                total_spent=self.total_spent,
                total_orders=self.total_orders,
            )
        )

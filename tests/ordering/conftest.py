import pytest
from ordering.cart.cart import Cart
from ordering.customer.customer import Customer
from ordering.fulfillment.provider import reset_provider, set_provider
from ordering.fulfillment.provider.fake_adapter import FakeFulfillmentProvider
from ordering.notifications import reset_publisher, set_publisher
from ordering.notifications.memory import InMemoryPublisher
from ordering.payments.gateway import reset_gateway, set_gateway
from ordering.payments.gateway.fake_adapter import FakeGateway
from protean import current_domain
from protean.integrations.pytest import DomainFixture

ADDRESS = {
    "first_name": "Jane",
    "last_name": "Doe",
    "address_1": "1 Main St",
    "city": "Springfield",
    "postal_code": "62701",
    "country_code": "US",
}


@pytest.fixture(scope="session")
def ordering_bed():
    from ordering.domain import ordering

    bed = DomainFixture(ordering)
    bed.setup()
    yield bed
    bed.teardown()


@pytest.fixture(autouse=True)
def _ctx(ordering_bed):
    with ordering_bed.domain_context():
        yield


@pytest.fixture(autouse=True)
def _reset_adapters():
    yield
    reset_gateway()
    reset_provider()
    reset_publisher()


@pytest.fixture
def gateway():
    fake = FakeGateway()
    set_gateway(fake)
    return fake


@pytest.fixture
def provider():
    fake = FakeFulfillmentProvider()
    set_provider(fake)
    return fake


@pytest.fixture
def publisher():
    memory = InMemoryPublisher()
    set_publisher(memory)
    return memory


@pytest.fixture
def service(gateway, provider, publisher):
    from ordering.order.service import OrderService

    return OrderService(gateway=gateway, provider=provider)


@pytest.fixture
def make_customer():
    def _make(email="jane@example.com", account_balance=0, shipping_address=ADDRESS):
        customer = Customer.register(
            email=email,
            account_balance=account_balance,
            first_name="Jane",
            last_name="Doe",
            shipping_address=shipping_address,
        )
        current_domain.repository_for(Customer).add(customer)
        return customer

    return _make


@pytest.fixture
def make_cart():
    """Persist an open cart. Items default to 2 x 500 with an 80 VAT line."""

    def _make(items=None, customer_id=None, tax_lines=None, **lines):
        cart = Cart.create(
            customer_id=customer_id,
            tax_lines=[{"name": "VAT", "price": 80}] if tax_lines is None else tax_lines,
            **lines,
        )
        for item in items or [{"product_id": "prod-1", "quantity": 2, "price_per_unit": 500}]:
            cart.add_item(**item)
        current_domain.repository_for(Cart).add(cart)
        return cart

    return _make

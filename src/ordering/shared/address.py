"""Address value object shared by orders, customers and carts."""

from protean.fields import String
from protean.utils.reflection import declared_fields

from ordering.domain import ordering


@ordering.value_object
class Address:
    """A postal address captured at the time it was used.

    An address recorded on an Order keeps describing where that order was
    billed or shipped, whatever later happens to the customer's address book.
    """

    first_name = String(max_length=100)
    last_name = String(max_length=100)
    address_1 = String(required=True, max_length=255)
    address_2 = String(max_length=255)
    city = String(required=True, max_length=100)
    province = String(max_length=100)
    postal_code = String(required=True, max_length=20)
    country_code = String(required=True, max_length=2)
    phone = String(max_length=30)


def to_address(value) -> Address | None:
    """Coerce a request mapping or an existing Address into an Address."""
    if value is None or isinstance(value, Address):
        return value
    if not value:
        return None
    fields = {key: value[key] for key in declared_fields(Address) if key in value}
    return Address(**fields)

"""Fulfillment provider registry, selected by ``FULFILLMENT_PROVIDER_ADAPTER``."""

from collections.abc import Callable

from protean.utils.globals import current_domain

from ordering.fulfillment.provider.port import FulfillmentProvider

_current_provider: FulfillmentProvider | None = None


def _fake_provider() -> FulfillmentProvider:
    from ordering.fulfillment.provider.fake_adapter import FakeFulfillmentProvider

    return FakeFulfillmentProvider()


_factories: dict[str, Callable[[], FulfillmentProvider]] = {"fake": _fake_provider}


def register_provider(name: str, factory: Callable[[], FulfillmentProvider]) -> None:
    _factories[name] = factory


def get_provider() -> FulfillmentProvider:
    global _current_provider
    if _current_provider is None:
        name = getattr(current_domain, "FULFILLMENT_PROVIDER_ADAPTER", "fake")
        if name not in _factories:
            raise ValueError(f"Unknown fulfillment provider adapter: {name}")
        _current_provider = _factories[name]()
    return _current_provider


def set_provider(provider: FulfillmentProvider) -> None:
    global _current_provider
    _current_provider = provider


def reset_provider() -> None:
    """Drop the cached provider so the next lookup rebuilds it."""
    global _current_provider
    _current_provider = None

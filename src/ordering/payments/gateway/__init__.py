"""Payment gateway registry.

The active adapter is named by the ``PAYMENT_GATEWAY_ADAPTER`` domain
setting and built once on first use. Only ``fake`` ships with this package;
processor-backed adapters register themselves with ``register_gateway``.
Tests swap the instance directly with ``set_gateway``.
"""

from collections.abc import Callable

from protean.utils.globals import current_domain

from ordering.payments.gateway.port import PaymentGateway

_current_gateway: PaymentGateway | None = None


def _fake_gateway() -> PaymentGateway:
    from ordering.payments.gateway.fake_adapter import FakeGateway

    return FakeGateway()


_factories: dict[str, Callable[[], PaymentGateway]] = {"fake": _fake_gateway}


def register_gateway(name: str, factory: Callable[[], PaymentGateway]) -> None:
    _factories[name] = factory


def get_gateway() -> PaymentGateway:
    """Return the configured payment gateway (singleton)."""
    global _current_gateway
    if _current_gateway is None:
        name = getattr(current_domain, "PAYMENT_GATEWAY_ADAPTER", "fake")
        if name not in _factories:
            raise ValueError(f"Unknown payment gateway adapter: {name}")
        _current_gateway = _factories[name]()
    return _current_gateway


def set_gateway(gateway: PaymentGateway) -> None:
    global _current_gateway
    _current_gateway = gateway


def reset_gateway() -> None:
    global _current_gateway
    _current_gateway = None

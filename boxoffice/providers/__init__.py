# providers/__init__.py
from typing import Callable, Dict

from ..errors import NotFoundError
from .base import PaymentAdapter, Notification, ProviderPayment
from .mercadopago import MercadoPago
from .mockpay import MockPay
from .openpay import Openpay

_FACTORIES: Dict[str, Callable[[], PaymentAdapter]] = {
    MockPay.name: MockPay,
    MercadoPago.name: MercadoPago,
    Openpay.name: Openpay,
}


def get_adapter(gateway: str) -> PaymentAdapter:
    factory = _FACTORIES.get((gateway or "").lower())
    if factory is None:
        raise NotFoundError(f"unknown payment gateway: {gateway}")
    return factory()


__all__ = [
    "PaymentAdapter", "Notification", "ProviderPayment",
    "MockPay", "MercadoPago", "Openpay", "get_adapter",
]

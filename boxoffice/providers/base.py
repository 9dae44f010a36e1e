from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, FrozenSet, Mapping, Optional, TypedDict

import httpx

from ..errors import NotFoundError, ProviderUnavailableError
from ..model.orm import (
    Order, Payment, PAYMENT_COMPLETED, PAYMENT_FAILED, PAYMENT_PENDING,
)

__all__ = [
    "CreateSessionResult", "Notification", "ProviderPayment",
    "PaymentAdapter", "to_minor", "to_major", "raise_for_provider",
    "PAYMENT_COMPLETED", "PAYMENT_FAILED", "PAYMENT_PENDING",
]


# ----------------------------
# Payment Adapter Interface
# ----------------------------
class CreateSessionResult(TypedDict):
    payment_session_id: str
    redirect_url: str


@dataclass
class Notification:
    event_type: str
    provider_payment_id: Optional[str]
    order_ref: Optional[str]
    # False for informational events (verification pings, merchant orders)
    state_changing: bool
    body: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ProviderPayment:
    provider_payment_id: str
    status: str
    order_ref: Optional[str] = None
    amount: Optional[int] = None  # cents


def to_minor(amount: Any) -> int:
    return int((Decimal(str(amount)) * 100).quantize(
        Decimal(1), rounding=ROUND_HALF_UP
    ))


def to_major(amount: int) -> float:
    return float(Decimal(amount) / 100)


def raise_for_provider(provider: str, resp: httpx.Response, what: str) -> None:
    """404 is a business miss; everything else non-2xx is retryable."""
    if resp.status_code == 404:
        raise NotFoundError(f"{provider}: {what} not found")
    if resp.status_code >= 400:
        raise ProviderUnavailableError(
            f"{provider}: {what} failed with HTTP {resp.status_code}"
        )


class PaymentAdapter(ABC):
    name: str = ""
    signature_header: str = ""

    # provider status -> internal tri-state; anything missing is a no-op
    STATUS_TABLE: Mapping[str, str] = {}
    # provider statuses that reverse an already completed payment
    REVERSAL_STATUSES: FrozenSet[str] = frozenset()

    def map_status(self, status: Optional[str]) -> Optional[str]:
        return self.STATUS_TABLE.get((status or "").strip().lower())

    def is_reversal(self, status: Optional[str]) -> bool:
        return (status or "").strip().lower() in self.REVERSAL_STATUSES

    def signature(self, headers: Mapping[str, str]) -> Optional[str]:
        return headers.get(self.signature_header)

    @abstractmethod
    def verify_webhook(
            self, payload: bytes, headers: Mapping[str, str]) -> bool: ...

    @abstractmethod
    def parse_notification(
            self, payload: bytes, headers: Mapping[str, str]
    ) -> Notification: ...

    # authoritative record; never trust amounts/status from the webhook body
    @abstractmethod
    async def fetch_payment(
            self, http: httpx.AsyncClient, notification: Notification
    ) -> ProviderPayment: ...

    @abstractmethod
    async def create_session(
            self, http: httpx.AsyncClient, order: Order, payment: Payment
    ) -> CreateSessionResult: ...

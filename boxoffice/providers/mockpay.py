from typing import Mapping, Optional
import base64
import hashlib
import hmac
import json
import uuid

import httpx

from .. import config
from ..errors import InvalidRequestError
from ..model.orm import Order, Payment
from .base import (
    CreateSessionResult, Notification, PaymentAdapter, ProviderPayment,
    PAYMENT_COMPLETED, PAYMENT_FAILED, PAYMENT_PENDING,
)


def sign(payload: bytes, secret: str) -> str:
    mac = hmac.new(secret.encode(), payload, hashlib.sha256).digest()
    return base64.b64encode(mac).decode()


# ----------------------------
# MockPay implementation
# ----------------------------
class MockPay(PaymentAdapter):
    name = "mockpay"
    signature_header = "x-mockpay-signature"

    STATUS_TABLE = {
        "succeeded": PAYMENT_COMPLETED,
        "pending": PAYMENT_PENDING,
        "failed": PAYMENT_FAILED,
        "canceled": PAYMENT_FAILED,
        "refunded": PAYMENT_FAILED,
    }
    REVERSAL_STATUSES = frozenset({"refunded"})

    def __init__(self, secret: Optional[str] = None) -> None:
        self.secret = config.MOCK_SECRET if secret is None else secret

    def verify_webhook(self, payload: bytes,
                       headers: Mapping[str, str]) -> bool:
        sig = self.signature(headers)
        if not sig or not self.secret:
            return False
        return hmac.compare_digest(sign(payload, self.secret).encode(),
                                   sig.encode())

    def parse_notification(self, payload: bytes,
                           headers: Mapping[str, str]) -> Notification:
        try:
            event = json.loads(payload.decode())
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise InvalidRequestError("Invalid JSON")
        if not isinstance(event, dict):
            raise InvalidRequestError("Invalid JSON")
        event_type = str(event.get("type") or "unknown")
        payment_id = event.get("payment_id") or event.get("payment_session_id")
        order_ref = event.get("order_id")
        return Notification(
            event_type=event_type,
            provider_payment_id=str(payment_id) if payment_id else None,
            order_ref=str(order_ref) if order_ref else None,
            state_changing=event_type.startswith("payment."),
            body=event,
        )

    # the signed payload is the provider's record
    async def fetch_payment(self, http: httpx.AsyncClient,
                            notification: Notification) -> ProviderPayment:
        amount = notification.body.get("amount")
        if amount is not None and not isinstance(amount, int):
            raise InvalidRequestError("Invalid mockpay amount")
        return ProviderPayment(
            provider_payment_id=str(notification.provider_payment_id),
            status=notification.event_type.split(".")[-1],
            order_ref=notification.order_ref,
            amount=amount,
        )

    async def create_session(self, http: httpx.AsyncClient, order: Order,
                             payment: Payment) -> CreateSessionResult:
        psid = f"mock_{uuid.uuid4().hex}"
        redirect_url = f"/mockpay/{psid}"
        return {"payment_session_id": psid, "redirect_url": redirect_url}

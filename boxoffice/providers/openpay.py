"""Openpay: redirect card charges + charge webhooks."""
from typing import Mapping, Optional
import hashlib
import hmac
import json

import httpx

from .. import config
from ..errors import InvalidRequestError, ProviderUnavailableError
from ..model.orm import Order, Payment
from .base import (
    CreateSessionResult, Notification, PaymentAdapter, ProviderPayment,
    raise_for_provider, to_major, to_minor,
    PAYMENT_COMPLETED, PAYMENT_FAILED, PAYMENT_PENDING,
)


def _text(value) -> Optional[str]:
    return str(value) if value else None


class Openpay(PaymentAdapter):
    name = "openpay"
    signature_header = "x-openpay-signature"

    STATUS_TABLE = {
        "completed": PAYMENT_COMPLETED,
        "in_progress": PAYMENT_PENDING,
        "charge_pending": PAYMENT_PENDING,
        "failed": PAYMENT_FAILED,
        "cancelled": PAYMENT_FAILED,
        "refunded": PAYMENT_FAILED,
        "chargeback_accepted": PAYMENT_FAILED,
    }
    REVERSAL_STATUSES = frozenset({"refunded", "chargeback_accepted"})

    def __init__(self, merchant_id: Optional[str] = None,
                 private_key: Optional[str] = None,
                 webhook_secret: Optional[str] = None,
                 api_url: Optional[str] = None) -> None:
        self.merchant_id = (
            config.OPENPAY_MERCHANT_ID if merchant_id is None else merchant_id
        )
        self.private_key = (
            config.OPENPAY_PRIVATE_KEY if private_key is None else private_key
        )
        self.webhook_secret = (
            config.OPENPAY_WEBHOOK_SECRET if webhook_secret is None
            else webhook_secret
        )
        self.api_url = (api_url or config.OPENPAY_API_URL).rstrip("/")

    def _base(self) -> str:
        return f"{self.api_url}/v1/{self.merchant_id}"

    def verify_webhook(self, payload: bytes,
                       headers: Mapping[str, str]) -> bool:
        sig = self.signature(headers)
        if not sig or not self.webhook_secret:
            return False
        expected = hmac.new(
            self.webhook_secret.encode(), payload, hashlib.sha256
        ).hexdigest()
        return hmac.compare_digest(expected.encode(),
                                   sig.strip().lower().encode())

    def parse_notification(self, payload: bytes,
                           headers: Mapping[str, str]) -> Notification:
        try:
            body = json.loads(payload.decode())
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise InvalidRequestError("Invalid JSON")
        if not isinstance(body, dict):
            raise InvalidRequestError("Invalid JSON")
        transaction = body.get("transaction")
        if not isinstance(transaction, dict):
            transaction = {}
        event_type = str(body.get("type") or "unknown")
        return Notification(
            event_type=event_type,
            provider_payment_id=_text(transaction.get("id")),
            order_ref=_text(transaction.get("order_id")),
            state_changing=event_type.startswith("charge."),
            body=body,
        )

    async def fetch_payment(self, http: httpx.AsyncClient,
                            notification: Notification) -> ProviderPayment:
        charge_id = notification.provider_payment_id
        if not charge_id:
            raise InvalidRequestError("Missing Openpay charge id")
        try:
            resp = await http.get(
                f"{self._base()}/charges/{charge_id}",
                auth=(self.private_key, ""),
            )
        except httpx.HTTPError as e:
            raise ProviderUnavailableError(
                f"openpay: fetch charge {charge_id} failed: {e}"
            ) from e
        raise_for_provider(self.name, resp, f"charge {charge_id}")
        data = resp.json()
        amount = data.get("amount")
        return ProviderPayment(
            provider_payment_id=str(data.get("id") or charge_id),
            status=str(data.get("status") or ""),
            order_ref=data.get("order_id") or notification.order_ref,
            amount=to_minor(amount) if amount is not None else None,
        )

    async def create_session(self, http: httpx.AsyncClient, order: Order,
                             payment: Payment) -> CreateSessionResult:
        charge = {
            "method": "card",
            "amount": to_major(order.total),
            "currency": order.currency,
            "description": f"{order.event.title} ({len(order.items)} items)",
            "order_id": order.id,
            "customer": {
                "name": order.buyer.name or order.buyer.email,
                "email": order.buyer.email,
                "phone_number": order.buyer.phone,
            },
            "send_email": False,
            "confirm": False,
            "redirect_url": f"{config.FRONTEND_URL}/checkout/success",
        }
        try:
            resp = await http.post(
                f"{self._base()}/charges",
                content=json.dumps(charge),
                headers={"content-type": "application/json"},
                auth=(self.private_key, ""),
            )
        except httpx.HTTPError as e:
            raise ProviderUnavailableError(
                f"openpay: create charge failed: {e}"
            ) from e
        raise_for_provider(self.name, resp, "charge")
        data = resp.json()
        return {
            "payment_session_id": str(data["id"]),
            "redirect_url": (data.get("payment_method") or {}).get("url", ""),
        }

"""Mercado Pago: Checkout Pro preferences + payment webhooks."""
from typing import Dict, Mapping, Optional
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


def _parse_signature(header: str) -> Dict[str, str]:
    # "ts=1704908010,v1=618c8534..."
    parts = {}
    for chunk in header.split(","):
        key, sep, value = chunk.strip().partition("=")
        if sep:
            parts[key.strip()] = value.strip()
    return parts


def signature_manifest(data_id: str, request_id: str, ts: str) -> str:
    if data_id.isalnum():
        data_id = data_id.lower()
    return f"id:{data_id};request-id:{request_id};ts:{ts};"


class MercadoPago(PaymentAdapter):
    name = "mercadopago"
    signature_header = "x-signature"

    STATUS_TABLE = {
        "approved": PAYMENT_COMPLETED,
        "pending": PAYMENT_PENDING,
        "in_process": PAYMENT_PENDING,
        "authorized": PAYMENT_PENDING,
        "rejected": PAYMENT_FAILED,
        "cancelled": PAYMENT_FAILED,
        "charged_back": PAYMENT_FAILED,
        "refunded": PAYMENT_FAILED,
    }
    REVERSAL_STATUSES = frozenset({"charged_back", "refunded"})

    def __init__(self, access_token: Optional[str] = None,
                 webhook_secret: Optional[str] = None,
                 api_url: Optional[str] = None,
                 public_url: Optional[str] = None) -> None:
        self.access_token = (
            config.MP_ACCESS_TOKEN if access_token is None else access_token
        )
        self.webhook_secret = (
            config.MP_WEBHOOK_SECRET if webhook_secret is None
            else webhook_secret
        )
        self.api_url = (api_url or config.MP_API_URL).rstrip("/")
        self.public_url = (public_url or config.API_URL).rstrip("/")

    def _auth(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.access_token}"}

    def verify_webhook(self, payload: bytes,
                       headers: Mapping[str, str]) -> bool:
        header = self.signature(headers)
        request_id = headers.get("x-request-id")
        if not header or not request_id or not self.webhook_secret:
            return False
        parts = _parse_signature(header)
        ts, v1 = parts.get("ts"), parts.get("v1")
        if not ts or not v1:
            return False
        try:
            body = json.loads(payload.decode())
        except (UnicodeDecodeError, json.JSONDecodeError):
            return False
        data = body.get("data") if isinstance(body, dict) else None
        data_id = str(data.get("id") or "") if isinstance(data, dict) else ""
        if not data_id:
            return False
        expected = hmac.new(
            self.webhook_secret.encode(),
            signature_manifest(data_id, request_id, ts).encode(),
            hashlib.sha256,
        ).hexdigest()
        return hmac.compare_digest(expected.encode(), v1.encode())

    def parse_notification(self, payload: bytes,
                           headers: Mapping[str, str]) -> Notification:
        try:
            body = json.loads(payload.decode())
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise InvalidRequestError("Invalid JSON")
        if not isinstance(body, dict):
            raise InvalidRequestError("Invalid JSON")
        data = body.get("data")
        resource = body.get("resource")
        payment_id = (
            (data.get("id") if isinstance(data, dict) else None)
            or (resource.get("id") if isinstance(resource, dict) else None)
            or body.get("id")
        )
        event_type = str(body.get("type") or body.get("action") or "unknown")
        action = str(body.get("action") or "")
        return Notification(
            event_type=event_type,
            provider_payment_id=str(payment_id) if payment_id else None,
            order_ref=(
                str(body["external_reference"])
                if body.get("external_reference") else None
            ),
            state_changing=(
                event_type == "payment" or action.startswith("payment.")
            ),
            body=body,
        )

    async def fetch_payment(self, http: httpx.AsyncClient,
                            notification: Notification) -> ProviderPayment:
        payment_id = notification.provider_payment_id
        if not payment_id:
            raise InvalidRequestError("Missing Mercado Pago payment id")
        try:
            resp = await http.get(
                f"{self.api_url}/v1/payments/{payment_id}",
                headers=self._auth(),
            )
        except httpx.HTTPError as e:
            raise ProviderUnavailableError(
                f"mercadopago: fetch payment {payment_id} failed: {e}"
            ) from e
        raise_for_provider(self.name, resp, f"payment {payment_id}")
        data = resp.json()
        metadata = data.get("metadata")
        if not isinstance(metadata, dict):
            metadata = {}
        amount = data.get("transaction_amount")
        return ProviderPayment(
            provider_payment_id=str(data.get("id") or payment_id),
            status=str(data.get("status") or ""),
            order_ref=(
                data.get("external_reference")
                or metadata.get("order_id")
                or notification.order_ref
            ),
            amount=to_minor(amount) if amount is not None else None,
        )

    async def create_session(self, http: httpx.AsyncClient, order: Order,
                             payment: Payment) -> CreateSessionResult:
        preference = {
            "items": [
                {
                    "id": item.ticket_type_id,
                    "title": f"{order.event.title}",
                    "quantity": item.quantity,
                    "unit_price": to_major(item.unit_price),
                    "currency_id": item.currency,
                }
                for item in order.items
            ],
            "payer": {"email": order.buyer.email},
            "external_reference": order.id,
            "metadata": {"order_id": order.id},
            "notification_url": f"{self.public_url}/webhooks/mercadopago",
            "back_urls": {
                "success": f"{config.FRONTEND_URL}/checkout/success",
                "failure": f"{config.FRONTEND_URL}/checkout/failure",
                "pending": f"{config.FRONTEND_URL}/checkout/pending",
            },
            "auto_return": "approved",
        }
        try:
            resp = await http.post(
                f"{self.api_url}/checkout/preferences",
                json=preference,
                headers=self._auth(),
            )
        except httpx.HTTPError as e:
            raise ProviderUnavailableError(
                f"mercadopago: create preference failed: {e}"
            ) from e
        raise_for_provider(self.name, resp, "preference")
        data = resp.json()
        return {
            "payment_session_id": str(data["id"]),
            "redirect_url": data.get("init_point")
            or data.get("sandbox_init_point", ""),
        }

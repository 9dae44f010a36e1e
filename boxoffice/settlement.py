"""Payment settlement: provider notifications -> one order transition.

Providers deliver at least once and in any order. Every delivery gets an
audit row first; only the delivery that moves the payment out of PENDING
applies side effects. Business rejections come back as an outcome (the HTTP
layer answers 200); provider and store outages raise so the provider
redelivers.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Mapping, Optional, Tuple

import httpx
import redis.asyncio as redis
from loguru import logger
from redis.exceptions import RedisError
from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import (
    InvalidRequestError, NotFoundError, ProviderUnavailableError,
)
from .fees import compute_fees
from .helpers import now_ts
from .infra.sql import Database
from .log import alert
from .model.audit import add_audit
from .model.ledger import AvailabilityLedger
from .model.orm import (
    Order, Payment, PaymentAttempt, Ticket, TicketType, WebhookAuditLog,
    ORDER_CANCELLED, ORDER_PAID, ORDER_PENDING, ORDER_REFUNDED,
    PAYMENT_COMPLETED, PAYMENT_FAILED, PAYMENT_FINAL, PAYMENT_PENDING,
    PAYMENT_REFUNDED, TICKET_CANCELLED,
)
from .model.redis_store import fulfill_gate
from .providers import Notification, PaymentAdapter, ProviderPayment, get_adapter

# outcomes
PAID = "PAID"
PENDING = "PENDING"
FAILED = "FAILED"
REFUNDED = "REFUNDED"
OVERSOLD = "OVERSOLD"
DUPLICATE_NOTIFICATION = "DUPLICATE_NOTIFICATION"
UNTRUSTED_NOTIFICATION = "UNTRUSTED_NOTIFICATION"
IGNORED = "IGNORED"
UNMAPPED_STATUS = "UNMAPPED_STATUS"
NOT_FOUND = "NOT_FOUND"
INVALID_STATE = "INVALID_STATE"
INVALID_PAYLOAD = "INVALID_PAYLOAD"
PROVIDER_UNAVAILABLE = "PROVIDER_UNAVAILABLE"

Enqueue = Callable[[str], Awaitable[None]]


@dataclass
class SettlementResult:
    outcome: str
    order_id: Optional[str] = None
    order_status: Optional[str] = None
    payment_status: Optional[str] = None
    details: Dict[str, object] = field(default_factory=dict)

    def to_dict(self) -> dict:
        out = {
            "ok": True,
            "outcome": self.outcome,
            "order_id": self.order_id,
            "order_status": self.order_status,
            "payment_status": self.payment_status,
        }
        out.update(self.details)
        return out


async def default_enqueue(order_id: str) -> None:
    from .fulfillment import enqueue_fulfillment
    await enqueue_fulfillment(order_id)


class SettlementHandler:
    def __init__(self, db: Database, ledger: AvailabilityLedger,
                 r: redis.Redis, http: httpx.AsyncClient,
                 enqueue: Optional[Enqueue] = None,
                 adapters: Optional[Mapping[str, PaymentAdapter]] = None
                 ) -> None:
        self.db = db
        self.ledger = ledger
        self.r = r
        self.http = http
        self.enqueue = enqueue or default_enqueue
        self.adapters = dict(adapters or {})

    def adapter(self, gateway: str) -> PaymentAdapter:
        adapter = self.adapters.get((gateway or "").lower())
        return adapter if adapter is not None else get_adapter(gateway)

    # ----------------------------
    # audit trail
    # ----------------------------
    async def _record(self, adapter: PaymentAdapter, payload: bytes,
                      headers: Mapping[str, str],
                      notification: Optional[Notification],
                      verified: bool) -> int:
        row = WebhookAuditLog(
            gateway=adapter.name,
            event_type=notification.event_type if notification else "invalid",
            payload=payload.decode("utf-8", errors="replace"),
            signature=adapter.signature(headers),
            verified=verified,
            order_id=notification.order_ref if notification else None,
            provider_payment_id=(
                notification.provider_payment_id if notification else None
            ),
            created_at=now_ts(),
        )
        async with self.db.begin() as session:
            session.add(row)
            await session.flush()
            return row.id

    async def _stamp(self, audit_id: int, result: SettlementResult) -> None:
        values = {"outcome": result.outcome}
        if result.order_id:
            values["order_id"] = result.order_id
        async with self.db.begin() as session:
            await session.execute(
                update(WebhookAuditLog)
                .where(WebhookAuditLog.id == audit_id).values(**values)
            )

    # ----------------------------
    # entry point
    # ----------------------------
    async def handle_provider_notification(
        self, gateway: str, raw_payload: bytes, headers: Mapping[str, str],
    ) -> SettlementResult:
        adapter = self.adapter(gateway)
        headers = {k.lower(): v for k, v in headers.items()}

        # whatever the body holds, it gets an audit row
        try:
            verified = adapter.verify_webhook(raw_payload, headers)
        except Exception as e:
            logger.opt(exception=e).warning(
                f"{adapter.name}: signature check failed on a bad body"
            )
            verified = False
        try:
            notification = adapter.parse_notification(raw_payload, headers)
        except InvalidRequestError:
            notification = None
        except Exception as e:
            logger.opt(exception=e).warning(
                f"{adapter.name}: could not parse notification"
            )
            notification = None

        audit_id = await self._record(
            adapter, raw_payload, headers, notification, verified
        )
        try:
            result = await self._settle(adapter, notification, verified)
        except ProviderUnavailableError:
            await self._stamp(audit_id, SettlementResult(PROVIDER_UNAVAILABLE))
            raise
        await self._stamp(audit_id, result)
        logger.info(
            f"{adapter.name} notification #{audit_id} -> {result.outcome}"
            + (f" (order {result.order_id})" if result.order_id else "")
        )
        return result

    async def _settle(self, adapter: PaymentAdapter,
                      notification: Optional[Notification],
                      verified: bool) -> SettlementResult:
        if notification is None:
            return SettlementResult(INVALID_PAYLOAD)

        if not verified:
            if notification.state_changing:
                logger.warning(
                    f"{adapter.name}: rejected unsigned/forged "
                    f"{notification.event_type} for "
                    f"{notification.provider_payment_id}"
                )
                return SettlementResult(UNTRUSTED_NOTIFICATION)
            return SettlementResult(IGNORED)

        if not notification.state_changing:
            return SettlementResult(IGNORED)

        try:
            payment = await adapter.fetch_payment(self.http, notification)
        except NotFoundError as e:
            logger.warning(str(e))
            return SettlementResult(NOT_FOUND)
        except InvalidRequestError as e:
            logger.warning(f"{adapter.name}: {e}")
            return SettlementResult(INVALID_PAYLOAD)

        mapped = adapter.map_status(payment.status)
        if mapped is None:
            logger.warning(
                f"{adapter.name}: unmapped status {payment.status!r} for "
                f"payment {payment.provider_payment_id}"
            )
            return SettlementResult(
                UNMAPPED_STATUS, details={"provider_status": payment.status}
            )

        result = await self._apply(adapter, notification, payment, mapped)
        await self._after_commit(result)
        return result

    # ----------------------------
    # unit of work
    # ----------------------------
    async def _resolve_payment(self, session: AsyncSession,
                               notification: Notification,
                               payment: ProviderPayment
                               ) -> Tuple[Optional[Payment],
                                          Optional[PaymentAttempt]]:
        """Find the payment a notification is about.

        The second item is set when the ids belong to an attempt a retry has
        since replaced; such deliveries must not touch the current attempt.
        """
        ids = [payment.provider_payment_id, notification.provider_payment_id]
        ids = [i for i in dict.fromkeys(ids) if i]
        if ids:
            for column in (Payment.gateway_transaction_id,
                           Payment.gateway_session_id):
                row = (await session.execute(
                    select(Payment).where(column.in_(ids)).limit(1)
                )).scalar_one_or_none()
                if row is not None:
                    return row, None
            retired = (await session.execute(
                select(PaymentAttempt).where(
                    or_(PaymentAttempt.gateway_transaction_id.in_(ids),
                        PaymentAttempt.gateway_session_id.in_(ids))
                ).order_by(PaymentAttempt.id.desc()).limit(1)
            )).scalar_one_or_none()
            if retired is not None:
                return await session.get(Payment, retired.payment_id), retired
        order_ref = payment.order_ref or notification.order_ref
        if order_ref:
            return (await session.execute(
                select(Payment).where(Payment.order_id == str(order_ref))
            )).scalar_one_or_none(), None
        return None, None

    async def _apply(self, adapter: PaymentAdapter,
                     notification: Notification, provider: ProviderPayment,
                     mapped: str) -> SettlementResult:
        now = now_ts()
        async with self.db.begin() as session:
            payment, retired = await self._resolve_payment(
                session, notification, provider
            )
            if payment is None:
                logger.warning(
                    f"{adapter.name}: no payment for "
                    f"{provider.provider_payment_id} / {provider.order_ref}"
                )
                return SettlementResult(NOT_FOUND)
            order = await session.get(Order, payment.order_id)

            if retired is not None:
                if mapped == PAYMENT_COMPLETED:
                    alert(
                        f"{adapter.name} captured payment "
                        f"{provider.provider_payment_id} on a failed attempt "
                        f"of order {order.id}; needs refund",
                        order_id=order.id,
                    )
                    return SettlementResult(
                        INVALID_STATE, order.id, order.status, retired.status
                    )
                logger.info(
                    f"{adapter.name}: {provider.provider_payment_id} belongs "
                    f"to a replaced attempt of order {order.id}"
                )
                return SettlementResult(
                    DUPLICATE_NOTIFICATION, order.id, order.status,
                    retired.status,
                )

            if payment.status in PAYMENT_FINAL:
                if (adapter.is_reversal(provider.status)
                        and payment.status == PAYMENT_COMPLETED
                        and order.status == ORDER_PAID):
                    return await self._refund(
                        session, adapter, notification, provider, order, now
                    )
                if (mapped == PAYMENT_COMPLETED
                        and payment.status != PAYMENT_COMPLETED):
                    alert(
                        f"order {order.id} is {order.status} with a "
                        f"{payment.status} payment but {adapter.name} "
                        f"captured {provider.provider_payment_id}; "
                        f"needs review",
                        order_id=order.id,
                    )
                    return SettlementResult(
                        INVALID_STATE, order.id, order.status, payment.status
                    )
                return SettlementResult(
                    DUPLICATE_NOTIFICATION, order.id, order.status,
                    payment.status,
                )

            if mapped == PAYMENT_COMPLETED and order.status != ORDER_PENDING:
                alert(
                    f"order {order.id} is {order.status}, not payable, but "
                    f"{adapter.name} reports payment "
                    f"{provider.provider_payment_id} completed",
                    order_id=order.id,
                )
                return SettlementResult(
                    INVALID_STATE, order.id, order.status, payment.status
                )

            if mapped == PAYMENT_PENDING:
                await session.execute(
                    update(Payment)
                    .where(Payment.id == payment.id,
                           Payment.status == PAYMENT_PENDING)
                    .values(gateway_transaction_id=provider.provider_payment_id,
                            updated_at=now)
                )
                self._audit(session, adapter, notification, provider, order,
                            order.status, PAYMENT_PENDING, now)
                return SettlementResult(
                    PENDING, order.id, order.status, PAYMENT_PENDING
                )

            moved = await session.execute(
                update(Payment)
                .where(Payment.id == payment.id,
                       Payment.status == PAYMENT_PENDING)
                .values(status=mapped,
                        gateway=adapter.name,
                        gateway_transaction_id=provider.provider_payment_id,
                        updated_at=now)
            )
            if moved.rowcount != 1:
                # a concurrent delivery got there first
                return SettlementResult(
                    DUPLICATE_NOTIFICATION, order.id, order.status
                )

            if mapped == PAYMENT_FAILED:
                self._audit(session, adapter, notification, provider, order,
                            order.status, PAYMENT_FAILED, now)
                return SettlementResult(
                    FAILED, order.id, order.status, PAYMENT_FAILED
                )

            if not await self._take_inventory(session, order):
                await session.execute(
                    update(Order)
                    .where(Order.id == order.id,
                           Order.status == ORDER_PENDING)
                    .values(status=ORDER_CANCELLED)
                )
                self._audit(session, adapter, notification, provider, order,
                            ORDER_CANCELLED, PAYMENT_COMPLETED, now)
                alert(
                    f"order {order.id} paid through {adapter.name} but "
                    f"capacity is exhausted; cancelled, needs refund",
                    order_id=order.id,
                )
                return SettlementResult(
                    OVERSOLD, order.id, ORDER_CANCELLED, PAYMENT_COMPLETED
                )

            fee_plan = order.event.organizer.fee_plan
            platform_fee, organizer_income = compute_fees(order.total,
                                                          fee_plan)
            await session.execute(
                update(Order)
                .where(Order.id == order.id, Order.status == ORDER_PENDING)
                .values(status=ORDER_PAID,
                        paid_at=now,
                        platform_fee_amount=platform_fee,
                        organizer_income_amount=organizer_income)
            )
            self._audit(session, adapter, notification, provider, order,
                        ORDER_PAID, PAYMENT_COMPLETED, now)
            return SettlementResult(
                PAID, order.id, ORDER_PAID, PAYMENT_COMPLETED,
                details={"platform_fee": platform_fee,
                         "organizer_income": organizer_income},
            )

    async def _take_inventory(self, session: AsyncSession,
                              order: Order) -> bool:
        """Move the order's units into finalized-sold, all lines or none."""
        taken = []
        for item in sorted(order.items, key=lambda i: i.ticket_type_id):
            res = await session.execute(
                update(TicketType)
                .where(TicketType.id == item.ticket_type_id,
                       TicketType.sold + item.quantity <= TicketType.capacity)
                .values(sold=TicketType.sold + item.quantity)
            )
            if res.rowcount != 1:
                for tt_id, qty in taken:
                    await session.execute(
                        update(TicketType).where(TicketType.id == tt_id)
                        .values(sold=TicketType.sold - qty)
                    )
                return False
            taken.append((item.ticket_type_id, item.quantity))
        return True

    async def _refund(self, session: AsyncSession, adapter: PaymentAdapter,
                      notification: Notification, provider: ProviderPayment,
                      order: Order, now: float) -> SettlementResult:
        moved = await session.execute(
            update(Order)
            .where(Order.id == order.id, Order.status == ORDER_PAID)
            .values(status=ORDER_REFUNDED)
        )
        if moved.rowcount != 1:
            return SettlementResult(
                DUPLICATE_NOTIFICATION, order.id, order.status
            )
        await session.execute(
            update(Payment)
            .where(Payment.order_id == order.id,
                   Payment.status == PAYMENT_COMPLETED)
            .values(status=PAYMENT_REFUNDED, updated_at=now)
        )
        await session.execute(
            update(Ticket).where(Ticket.order_id == order.id)
            .values(status=TICKET_CANCELLED)
        )
        for item in order.items:
            await session.execute(
                update(TicketType)
                .where(TicketType.id == item.ticket_type_id,
                       TicketType.sold >= item.quantity)
                .values(sold=TicketType.sold - item.quantity)
            )
        self._audit(session, adapter, notification, provider, order,
                    ORDER_REFUNDED, PAYMENT_REFUNDED, now)
        logger.info(f"order {order.id} refunded through {adapter.name}")
        return SettlementResult(
            REFUNDED, order.id, ORDER_REFUNDED, PAYMENT_REFUNDED
        )

    def _audit(self, session: AsyncSession, adapter: PaymentAdapter,
               notification: Notification, provider: ProviderPayment,
               order: Order, order_status: str, payment_status: str,
               now: float) -> None:
        add_audit(
            session, "PAYMENT_WEBHOOK", "Payment",
            entity_id=provider.provider_payment_id,
            organizer_id=order.event.organizer_id,
            details={
                "provider": adapter.name,
                "payment_id": provider.provider_payment_id,
                "order_id": order.id,
                "event_type": notification.event_type,
                "provider_status": provider.status,
                "payload": notification.body,
                "order_status": order_status,
                "payment_status": payment_status,
            },
            at=now,
        )

    # ----------------------------
    # post-commit side effects
    # ----------------------------
    async def _after_commit(self, result: SettlementResult) -> None:
        if result.outcome == PAID:
            try:
                first = await fulfill_gate(self.r, result.order_id)
            except RedisError as e:
                # issuing tickets is idempotent; a second enqueue is harmless
                alert(f"fulfillment gate unavailable for order "
                      f"{result.order_id}: {e}", order_id=result.order_id)
                first = True
            if first:
                try:
                    await self.enqueue(result.order_id)
                except Exception as e:
                    # the reconciler re-queues PAID orders without tickets
                    alert(f"could not enqueue fulfillment for order "
                          f"{result.order_id}: {e}", order_id=result.order_id)
            else:
                logger.info(
                    f"fulfillment for order {result.order_id} already queued"
                )

        if result.outcome in (PAID, FAILED, OVERSOLD):
            # PAID units now live in sold; the others go back on sale
            await self.ledger.release(result.order_id)

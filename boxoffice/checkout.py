"""Checkout orchestrator.

Turns a ticket selection into a PENDING order plus an inventory hold, or
rejects it with a specific reason. The order commit and the ledger hold are
two steps: the order is journaled with hold_applied=False, then the hold is
claimed. A lost race cancels the order again (compensating step); a ledger
outage leaves the journal for the reconciliation sweep.
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple
import uuid

import httpx
from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from . import config
from .errors import (
    InsufficientInventoryError, InvalidRequestError, InvalidStateError,
    LimitExceededError, MixedCurrencyError, NotFoundError,
)
from .helpers import is_valid_email, now_ts, to_iso
from .infra.sql import Database
from .log import alert
from .model.audit import add_audit
from .model.ledger import (
    AvailabilityLedger, ClaimResult, HoldLine, INSUFFICIENT, RESERVED,
)
from .model.orm import (
    Buyer, Event, Order, OrderItem, Payment, PaymentAttempt, TicketType,
    EVENT_PUBLISHED, ORDER_CANCELLED, ORDER_PENDING, PAYMENT_FAILED,
    PAYMENT_PENDING,
)
from .providers import get_adapter


@dataclass(frozen=True)
class LineItem:
    ticket_type_id: str
    qty: int


@dataclass(frozen=True)
class BuyerInfo:
    email: str
    name: Optional[str] = None
    phone: Optional[str] = None


@dataclass(frozen=True)
class RequestContext:
    ip: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass(frozen=True)
class CheckoutSession:
    order_id: str
    total: int  # cents
    currency: str
    expires_at: float
    reserved_until: float
    hold_applied: bool = True

    def to_dict(self) -> dict:
        return {
            "orderId": self.order_id,
            "total": self.total,
            "currency": self.currency,
            "expiresAt": to_iso(self.expires_at),
            "reservedUntil": to_iso(self.reserved_until),
        }


def aggregate_line_items(line_items: Sequence[LineItem]) -> Dict[str, int]:
    """Sum quantities per ticket-type, keeping first-seen order."""
    if not line_items:
        raise InvalidRequestError("at least one ticket is required")
    wanted: Dict[str, int] = {}
    for item in line_items:
        if item.qty <= 0:
            raise InvalidRequestError("ticket quantities must be positive")
        wanted[item.ticket_type_id] = wanted.get(item.ticket_type_id, 0) \
            + item.qty
    return wanted


async def cancel_pending_order(session: AsyncSession, order: Order,
                               action: str, reason: str,
                               at: float) -> bool:
    """PENDING -> CANCELLED inside the caller's unit of work.

    Conditional on the row still being PENDING, so a concurrent settlement
    wins cleanly. Returns False when the order had already moved on.
    """
    result = await session.execute(
        update(Order)
        .where(Order.id == order.id, Order.status == ORDER_PENDING)
        .values(status=ORDER_CANCELLED)
    )
    if result.rowcount != 1:
        return False
    await session.execute(
        update(Payment)
        .where(Payment.order_id == order.id,
               Payment.status == PAYMENT_PENDING)
        .values(status=PAYMENT_FAILED, updated_at=at)
    )
    add_audit(session, action, "Order", order.id,
              organizer_id=order.event.organizer_id if order.event else None,
              details={"reason": reason}, at=at)
    return True


async def order_hold_lines(session: AsyncSession, order: Order
                           ) -> Tuple[List[HoldLine], Dict[str, str]]:
    """Ledger lines for an order plus ticket-type names by id."""
    ids = [i.ticket_type_id for i in order.items]
    tts = {
        tt.id: tt for tt in (await session.execute(
            select(TicketType).where(TicketType.id.in_(ids))
        )).scalars().all()
    }
    lines = [
        HoldLine(i.ticket_type_id, i.quantity,
                 tts[i.ticket_type_id].capacity,
                 tts[i.ticket_type_id].sold)
        for i in order.items
    ]
    return lines, {tt_id: tt.name for tt_id, tt in tts.items()}


class CheckoutOrchestrator:
    def __init__(self, db: Database, ledger: AvailabilityLedger,
                 session_ttl_seconds: int = config.CHECKOUT_SESSION_TTL_SECONDS,
                 default_gateway: str = config.DEFAULT_GATEWAY) -> None:
        self.db = db
        self.ledger = ledger
        self.session_ttl = session_ttl_seconds
        self.default_gateway = default_gateway

    @property
    def hold_ttl(self) -> float:
        return self.ledger.ttl_ms / 1000.0

    async def _insufficient(self, event_id: str, tt: TicketType,
                            sold: Optional[int] = None
                            ) -> InsufficientInventoryError:
        live = await self.ledger.live_reservations(event_id, tt.id)
        sold = tt.sold if sold is None else sold
        left = max(0, tt.capacity - sold - live)
        return InsufficientInventoryError(
            f"only {left} tickets left for {tt.name}",
            ticket_type_id=tt.id, available=left,
        )

    # ----------------------------
    # create checkout session
    # ----------------------------
    async def create_checkout_session(
        self,
        event_id: str,
        line_items: Sequence[LineItem],
        buyer: BuyerInfo,
        context: Optional[RequestContext] = None,
        now: Optional[float] = None,
    ) -> CheckoutSession:
        now = now_ts() if now is None else now
        context = context or RequestContext()
        if not is_valid_email(buyer.email):
            raise InvalidRequestError(
                "email is required and must be a valid email address"
            )
        email = buyer.email.strip().lower()

        async with self.db.begin() as session:
            event = await session.get(Event, event_id)
            if event is None:
                raise NotFoundError("Event not found")
            if event.status != EVENT_PUBLISHED:
                raise InvalidStateError(
                    "Event is not available for purchase"
                )
            if event.end_date is not None and now > event.end_date:
                raise InvalidStateError("Event has already ended")

            wanted = aggregate_line_items(line_items)
            requested = sum(wanted.values())
            limit = (event.max_tickets_per_purchase
                     or config.DEFAULT_MAX_TICKETS_PER_PURCHASE)
            if requested > limit:
                raise LimitExceededError(
                    f"at most {limit} tickets per "
                    f"purchase, requested {requested}"
                )

            rows = (await session.execute(
                select(TicketType).where(TicketType.id.in_(list(wanted)))
            )).scalars().all()
        ticket_types = {tt.id: tt for tt in rows}
        for tt_id in wanted:
            tt = ticket_types.get(tt_id)
            if tt is None or tt.event_id != event_id:
                raise NotFoundError(
                    "one or more ticket types were not found for this event"
                )

        # pre-flight only; repeated under the row locks below
        for tt_id, qty in wanted.items():
            tt = ticket_types[tt_id]
            if not await self.ledger.check_availability(
                    event_id, tt_id, tt.capacity, tt.sold, qty):
                raise await self._insufficient(event_id, tt)

        currencies = {ticket_types[tt_id].currency for tt_id in wanted}
        if len(currencies) > 1:
            raise MixedCurrencyError(
                "ticket types with different currencies cannot be mixed "
                "in one order"
            )
        currency = currencies.pop()
        total = sum(ticket_types[tt_id].price * qty
                    for tt_id, qty in wanted.items())

        order_id = uuid.uuid4().hex
        expires_at = now + self.session_ttl
        reserved_until = now + self.hold_ttl

        async with self.db.begin() as session:
            latest = {
                tt.id: tt for tt in (await session.execute(
                    select(TicketType)
                    .where(TicketType.id.in_(list(wanted)))
                    .order_by(TicketType.id)
                    .with_for_update()
                )).scalars().all()
            }
            for tt_id, qty in wanted.items():
                tt = latest[tt_id]
                if not await self.ledger.check_availability(
                        event_id, tt_id, tt.capacity, tt.sold, qty):
                    raise await self._insufficient(event_id, tt)

            buyer_row = await self._upsert_buyer(session, email, buyer)
            session.add(Order(
                id=order_id,
                event_id=event_id,
                buyer_id=buyer_row.id,
                status=ORDER_PENDING,
                total=total,
                currency=currency,
                platform_fee_amount=0,
                organizer_income_amount=0,
                created_at=now,
                expires_at=expires_at,
                reserved_until=reserved_until,
                hold_applied=False,
                ip_address=context.ip,
                user_agent=context.user_agent,
            ))
            await session.flush()
            for tt_id, qty in wanted.items():
                session.add(OrderItem(
                    id=uuid.uuid4().hex,
                    order_id=order_id,
                    ticket_type_id=tt_id,
                    quantity=qty,
                    unit_price=latest[tt_id].price,
                    currency=latest[tt_id].currency,
                ))
            session.add(Payment(
                id=uuid.uuid4().hex,
                order_id=order_id,
                gateway=self.default_gateway,
                amount=total,
                currency=currency,
                status=PAYMENT_PENDING,
                created_at=now,
                updated_at=now,
            ))
            add_audit(session, "CHECKOUT_CREATED", "Order", order_id,
                      organizer_id=event.organizer_id,
                      details={"ip": context.ip,
                               "user_agent": context.user_agent,
                               "items": wanted},
                      at=now)
            lines = [
                HoldLine(tt_id, qty, latest[tt_id].capacity,
                         latest[tt_id].sold)
                for tt_id, qty in wanted.items()
            ]

        claim = await self.ledger.claim(event_id, order_id, lines)
        hold_applied = await self._settle_claim(order_id, claim, now)
        if claim.status == INSUFFICIENT:
            raise await self._insufficient(
                event_id, ticket_types[claim.ticket_type_id],
                sold=next(li.sold for li in lines
                          if li.ticket_type_id == claim.ticket_type_id),
            )

        logger.info(
            f"checkout {order_id} created: {requested} tickets, "
            f"{total} {currency}, held until {to_iso(reserved_until)}"
        )
        return CheckoutSession(
            order_id=order_id,
            total=total,
            currency=currency,
            expires_at=expires_at,
            reserved_until=reserved_until,
            hold_applied=hold_applied,
        )

    async def _upsert_buyer(self, session: AsyncSession, email: str,
                            buyer: BuyerInfo) -> Buyer:
        existing = (await session.execute(
            select(Buyer).where(Buyer.email == email)
        )).scalar_one_or_none()
        if existing is not None:
            return existing
        row = Buyer(id=uuid.uuid4().hex, email=email, name=buyer.name,
                    phone=buyer.phone)
        try:
            async with session.begin_nested():
                session.add(row)
                await session.flush()
        except IntegrityError:
            # another checkout created the same buyer first
            return (await session.execute(
                select(Buyer).where(Buyer.email == email)
            )).scalar_one()
        return row

    async def _settle_claim(self, order_id: str, claim: ClaimResult,
                            now: float) -> bool:
        if claim.status == RESERVED:
            async with self.db.begin() as session:
                await session.execute(
                    update(Order).where(Order.id == order_id)
                    .values(hold_applied=True)
                )
            return True

        if claim.status == INSUFFICIENT:
            async with self.db.begin() as session:
                order = await session.get(Order, order_id)
                await cancel_pending_order(
                    session, order, "CHECKOUT_COMPENSATED",
                    f"inventory taken before hold on {claim.ticket_type_id}",
                    now,
                )
            logger.warning(
                f"checkout {order_id} lost the hold race on "
                f"{claim.ticket_type_id}; order cancelled"
            )
            return False

        alert(
            f"checkout {order_id} committed without a ledger hold; "
            "left for reconciliation",
            order_id=order_id,
        )
        return False

    # ----------------------------
    # follow-up operations
    # ----------------------------
    async def get_order_summary(self, order_id: str) -> dict:
        async with self.db.begin() as session:
            order = await session.get(Order, order_id)
            if order is None:
                raise NotFoundError("Order not found")
            if order.status != ORDER_PENDING:
                raise InvalidStateError("Order is not pending payment")
            return {
                "orderId": order.id,
                "total": order.total,
                "currency": order.currency,
                "expiresAt": to_iso(order.expires_at),
                "reservedUntil": to_iso(order.reserved_until),
                "buyer": {
                    "name": order.buyer.name,
                    "email": order.buyer.email,
                    "phone": order.buyer.phone,
                },
                "items": [
                    {"ticketTypeId": i.ticket_type_id, "quantity": i.quantity,
                     "unitPrice": i.unit_price}
                    for i in order.items
                ],
            }

    async def start_payment(self, order_id: str, gateway: str,
                            http: httpx.AsyncClient,
                            now: Optional[float] = None) -> dict:
        """Buyer is being sent to the provider: renew the hold, open the
        provider session.
        """
        now = now_ts() if now is None else now
        adapter = get_adapter(gateway)

        async with self.db.begin() as session:
            order = await session.get(Order, order_id)
            if order is None:
                raise NotFoundError("Order not found")
            if order.status != ORDER_PENDING:
                raise InvalidStateError("Order is not pending payment")
            if now > order.expires_at:
                raise InvalidStateError("Checkout session expired")
            lines, names = await order_hold_lines(session, order)

        held = await self.ledger.extend(order_id)
        if not held:
            claim = await self.ledger.claim(order.event_id, order_id, lines)
            if claim.status == INSUFFICIENT:
                await self._settle_claim(order_id, claim, now)
                raise InsufficientInventoryError(
                    f"only {claim.available} tickets left for "
                    f"{names[claim.ticket_type_id]}",
                    ticket_type_id=claim.ticket_type_id,
                    available=claim.available,
                )
            held = claim.status == RESERVED
            if not held:
                alert(f"order {order_id} sent to payment without a hold",
                      order_id=order_id)

        result = await adapter.create_session(http, order, order.payment)

        reserved_until = now + self.hold_ttl
        async with self.db.begin() as session:
            previous = await session.get(Payment, order.payment.id)
            if previous.status == PAYMENT_FAILED:
                session.add(PaymentAttempt(
                    payment_id=previous.id,
                    order_id=order_id,
                    gateway=previous.gateway,
                    status=previous.status,
                    gateway_transaction_id=previous.gateway_transaction_id,
                    gateway_session_id=previous.gateway_session_id,
                    retired_at=now,
                ))
            # a retry after a failed attempt starts a fresh PENDING payment
            await session.execute(
                update(Payment)
                .where(Payment.order_id == order_id,
                       Payment.status.in_([PAYMENT_PENDING, PAYMENT_FAILED]))
                .values(gateway=adapter.name,
                        status=PAYMENT_PENDING,
                        gateway_session_id=result["payment_session_id"],
                        gateway_transaction_id=None,
                        updated_at=now)
            )
            await session.execute(
                update(Order).where(Order.id == order_id)
                .values(reserved_until=reserved_until, hold_applied=held)
            )
        logger.info(
            f"order {order_id} redirected to {adapter.name} "
            f"({result['payment_session_id']})"
        )
        return {
            "orderId": order_id,
            "gateway": adapter.name,
            "paymentSessionId": result["payment_session_id"],
            "redirectUrl": result["redirect_url"],
            "reservedUntil": to_iso(reserved_until),
        }

    async def cancel_order(self, order_id: str,
                           now: Optional[float] = None) -> None:
        now = now_ts() if now is None else now
        async with self.db.begin() as session:
            order = await session.get(Order, order_id)
            if order is None:
                raise NotFoundError("Order not found")
            if not await cancel_pending_order(
                    session, order, "ORDER_CANCELLED", "buyer cancelled",
                    now):
                raise InvalidStateError("Order is not pending payment")
        await self.ledger.release(order_id)
        logger.info(f"order {order_id} cancelled by buyer")

from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.ext.asyncio import AsyncEngine


Base = declarative_base()

# ----------------------------
# Status vocabularies
# ----------------------------
EVENT_DRAFT = "DRAFT"
EVENT_PUBLISHED = "PUBLISHED"
EVENT_CANCELLED = "CANCELLED"
EVENT_FINISHED = "FINISHED"

ORDER_PENDING = "PENDING"
ORDER_PAID = "PAID"
ORDER_CANCELLED = "CANCELLED"
ORDER_REFUNDED = "REFUNDED"

PAYMENT_PENDING = "PENDING"
PAYMENT_COMPLETED = "COMPLETED"
PAYMENT_FAILED = "FAILED"
PAYMENT_REFUNDED = "REFUNDED"
PAYMENT_FINAL = frozenset(
    {PAYMENT_COMPLETED, PAYMENT_FAILED, PAYMENT_REFUNDED}
)

TICKET_VALID = "VALID"
TICKET_USED = "USED"
TICKET_CANCELLED = "CANCELLED"

# PENDING -> PAID | CANCELLED, PAID -> REFUNDED. Nothing else.
ORDER_TRANSITIONS = {
    ORDER_PENDING: frozenset({ORDER_PAID, ORDER_CANCELLED}),
    ORDER_PAID: frozenset({ORDER_REFUNDED}),
    ORDER_CANCELLED: frozenset(),
    ORDER_REFUNDED: frozenset(),
}


def can_transition(src: str, dst: str) -> bool:
    return dst in ORDER_TRANSITIONS.get(src, frozenset())


# ----------------------------
# ORM models
# ----------------------------
class FeePlan(Base):
    __tablename__ = "fee_plans"
    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    platform_fee_percent = Column(Numeric(5, 2), nullable=False, default=0)
    platform_fee_fixed = Column(Integer, nullable=False, default=0)  # cents


class Organizer(Base):
    __tablename__ = "organizers"
    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    email = Column(String, nullable=True)
    fee_plan_id = Column(String, ForeignKey("fee_plans.id"), nullable=True)

    fee_plan = relationship(FeePlan, lazy="joined")


class Event(Base):
    __tablename__ = "events"
    id = Column(String, primary_key=True)
    organizer_id = Column(String, ForeignKey("organizers.id"), nullable=False)
    title = Column(String, nullable=False)
    # DRAFT | PUBLISHED | CANCELLED | FINISHED
    status = Column(String, nullable=False, default=EVENT_DRAFT)
    start_date = Column(Float, nullable=True)
    end_date = Column(Float, nullable=True)
    # None falls back to config.DEFAULT_MAX_TICKETS_PER_PURCHASE
    max_tickets_per_purchase = Column(Integer, nullable=True)

    organizer = relationship(Organizer, lazy="joined")


class TicketType(Base):
    __tablename__ = "ticket_types"
    __table_args__ = (
        CheckConstraint("sold <= capacity", name="ck_ticket_types_sold"),
        CheckConstraint("sold >= 0", name="ck_ticket_types_sold_positive"),
    )
    id = Column(String, primary_key=True)
    event_id = Column(String, ForeignKey("events.id"), nullable=False,
                      index=True)
    name = Column(String, nullable=False)
    price = Column(Integer, nullable=False)  # cents
    currency = Column(String, nullable=False, default="MXN")
    capacity = Column(Integer, nullable=False)
    # finalized-sold, only moved by settlement
    sold = Column(Integer, nullable=False, default=0)


class Buyer(Base):
    __tablename__ = "buyers"
    id = Column(String, primary_key=True)
    email = Column(String, nullable=False, unique=True)
    name = Column(String, nullable=True)
    phone = Column(String, nullable=True)


class Order(Base):
    __tablename__ = "orders"
    __table_args__ = (
        Index("ix_orders_status_expires", "status", "expires_at"),
    )
    id = Column(String, primary_key=True)
    event_id = Column(String, ForeignKey("events.id"), nullable=False)
    buyer_id = Column(String, ForeignKey("buyers.id"), nullable=False)

    # PENDING | PAID | CANCELLED | REFUNDED
    status = Column(String, nullable=False, default=ORDER_PENDING)
    total = Column(Integer, nullable=False)  # cents
    currency = Column(String, nullable=False)
    platform_fee_amount = Column(Integer, nullable=False, default=0)
    organizer_income_amount = Column(Integer, nullable=False, default=0)

    created_at = Column(Float, nullable=False)
    expires_at = Column(Float, nullable=False)
    reserved_until = Column(Float, nullable=False)
    paid_at = Column(Float, nullable=True)

    # journal flag: False until the ledger hold has been applied
    hold_applied = Column(Boolean, nullable=False, default=False)

    ip_address = Column(String, nullable=True)
    user_agent = Column(String, nullable=True)

    event = relationship(Event, lazy="joined")
    buyer = relationship(Buyer, lazy="joined")
    items = relationship("OrderItem", lazy="selectin",
                         back_populates="order")
    payment = relationship("Payment", lazy="selectin", uselist=False,
                           back_populates="order")


class OrderItem(Base):
    __tablename__ = "order_items"
    id = Column(String, primary_key=True)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False,
                      index=True)
    ticket_type_id = Column(String, ForeignKey("ticket_types.id"),
                            nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Integer, nullable=False)  # cents, snapshot
    currency = Column(String, nullable=False)

    order = relationship(Order, back_populates="items")


class Payment(Base):
    __tablename__ = "payments"
    id = Column(String, primary_key=True)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False,
                      unique=True)
    gateway = Column(String, nullable=False, default="mockpay")
    amount = Column(Integer, nullable=False)  # cents
    currency = Column(String, nullable=False)
    # PENDING | COMPLETED | FAILED | REFUNDED
    status = Column(String, nullable=False, default=PAYMENT_PENDING)
    gateway_transaction_id = Column(String, nullable=True, index=True)
    gateway_session_id = Column(String, nullable=True, index=True)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)

    order = relationship(Order, back_populates="payment")


class PaymentAttempt(Base):
    """A provider session the payment row no longer points at.

    Written when a retry replaces a failed attempt, so late deliveries
    for the old session still resolve to it and not to the new one.
    """
    __tablename__ = "payment_attempts"
    id = Column(Integer, primary_key=True, autoincrement=True)
    payment_id = Column(String, ForeignKey("payments.id"), nullable=False,
                        index=True)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False)
    gateway = Column(String, nullable=False)
    status = Column(String, nullable=False)
    gateway_transaction_id = Column(String, nullable=True, index=True)
    gateway_session_id = Column(String, nullable=True, index=True)
    retired_at = Column(Float, nullable=False)


class WebhookAuditLog(Base):
    __tablename__ = "webhook_audit_log"
    id = Column(Integer, primary_key=True, autoincrement=True)
    gateway = Column(String, nullable=False)
    event_type = Column(String, nullable=False)
    payload = Column(Text, nullable=False)
    signature = Column(String, nullable=True)
    verified = Column(Boolean, nullable=False)
    order_id = Column(String, nullable=True, index=True)
    provider_payment_id = Column(String, nullable=True)
    outcome = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)


class AuditLog(Base):
    __tablename__ = "audit_log"
    id = Column(Integer, primary_key=True, autoincrement=True)
    action = Column(String, nullable=False)
    entity = Column(String, nullable=False)
    entity_id = Column(String, nullable=True)
    organizer_id = Column(String, nullable=True)
    details = Column(JSON, nullable=False, default=dict)
    created_at = Column(Float, nullable=False)


class Ticket(Base):
    __tablename__ = "tickets"
    id = Column(String, primary_key=True)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False,
                      index=True)
    ticket_type_id = Column(String, ForeignKey("ticket_types.id"),
                            nullable=False)
    qr_code = Column(String, nullable=False, unique=True)
    # VALID | USED | CANCELLED
    status = Column(String, nullable=False, default=TICKET_VALID)
    created_at = Column(Float, nullable=False)


async def create_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

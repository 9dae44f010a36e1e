import base64
import hashlib
import hmac
import json
from decimal import Decimal
from typing import List, Optional

import fakeredis
import httpx
import pytest
from loguru import logger

from boxoffice.checkout import (
    BuyerInfo, CheckoutOrchestrator, LineItem,
)
from boxoffice.helpers import now_ts
from boxoffice.infra.sql import make_async_engine
from boxoffice.model.ledger import AvailabilityLedger
from boxoffice.model.orm import (
    Event, FeePlan, Organizer, TicketType, create_schema, EVENT_PUBLISHED,
)
from boxoffice.providers.mockpay import MockPay
from boxoffice.settlement import SettlementHandler

MOCK_SECRET = "test-mock-secret"
EVENT_ID = "evt-1"
GENERAL = "tt-general"
VIP = "tt-vip"
ABROAD = "tt-abroad"


@pytest.fixture
async def db(tmp_path):
    database = make_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'boxoffice.db'}", gate_limit=1
    )
    await create_schema(database.engine)
    yield database
    await database.dispose()


@pytest.fixture
async def r():
    client = fakeredis.FakeAsyncRedis(
        server=fakeredis.FakeServer(), decode_responses=True
    )
    yield client
    await client.aclose()


@pytest.fixture
def ledger(r):
    return AvailabilityLedger(r, ttl_seconds=300)


@pytest.fixture
def orchestrator(db, ledger):
    return CheckoutOrchestrator(db, ledger, session_ttl_seconds=1800,
                                default_gateway="mockpay")


class EnqueueRecorder:
    def __init__(self):
        self.calls: List[str] = []

    async def __call__(self, order_id: str) -> None:
        self.calls.append(order_id)


@pytest.fixture
def enqueued():
    return EnqueueRecorder()


@pytest.fixture
def alerts():
    """Messages passed to boxoffice.log.alert while the test runs."""
    seen: List[str] = []
    sink_id = logger.add(
        lambda message: seen.append(message.record["message"]),
        filter=lambda record: record["extra"].get("alert", False),
        level="ERROR",
    )
    yield seen
    logger.remove(sink_id)


@pytest.fixture
async def http():
    # settlement through mockpay never calls out; anything else is a bug
    def refuse(request):
        return httpx.Response(599, json={"error": "unexpected call"})

    client = httpx.AsyncClient(transport=httpx.MockTransport(refuse))
    yield client
    await client.aclose()


@pytest.fixture
def settlement(db, ledger, r, http, enqueued):
    return SettlementHandler(
        db, ledger, r, http, enqueue=enqueued,
        adapters={"mockpay": MockPay(secret=MOCK_SECRET)},
    )


async def seed_event(db, ticket_types: Optional[list] = None, *,
                     status: str = EVENT_PUBLISHED,
                     end_date: Optional[float] = None,
                     max_tickets: Optional[int] = 10,
                     fee_percent: str = "10.00",
                     fee_fixed: int = 300) -> str:
    if ticket_types is None:
        ticket_types = [
            dict(id=GENERAL, name="General", price=50000, currency="MXN",
                 capacity=10, sold=8),
            dict(id=VIP, name="VIP", price=120000, currency="MXN",
                 capacity=5, sold=0),
            dict(id=ABROAD, name="Abroad", price=4000, currency="USD",
                 capacity=50, sold=0),
        ]
    async with db.begin() as session:
        session.add(FeePlan(id="plan-1", name="standard",
                            platform_fee_percent=Decimal(fee_percent),
                            platform_fee_fixed=fee_fixed))
        session.add(Organizer(id="org-1", name="Foro Sol",
                              fee_plan_id="plan-1"))
        await session.flush()
        session.add(Event(
            id=EVENT_ID, organizer_id="org-1", title="Night Show",
            status=status,
            start_date=now_ts() + 3600,
            end_date=now_ts() + 86400 if end_date is None else end_date,
            max_tickets_per_purchase=max_tickets,
        ))
        await session.flush()
        for tt in ticket_types:
            session.add(TicketType(event_id=EVENT_ID, **tt))
    return EVENT_ID


@pytest.fixture
async def event(db):
    return await seed_event(db)


def buyer(email: str = "ana@example.com") -> BuyerInfo:
    return BuyerInfo(email=email, name="Ana", phone="+52 55 0000 0000")


def items(*pairs) -> List[LineItem]:
    return [LineItem(tt, qty) for tt, qty in pairs]


def mock_notification(kind: str, psid: str, order_id: str, amount: int,
                      secret: str = MOCK_SECRET, forged: bool = False):
    event = {
        "type": f"payment.{kind}",
        "payment_session_id": psid,
        "order_id": order_id,
        "amount": amount,
        "currency": "MXN",
    }
    payload = json.dumps(event).encode()
    mac = hmac.new(secret.encode(), payload, hashlib.sha256).digest()
    sig = base64.b64encode(mac).decode()
    if forged:
        sig = base64.b64encode(b"not-the-signature").decode()
    return payload, {"x-mockpay-signature": sig,
                     "content-type": "application/json"}

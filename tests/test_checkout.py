import asyncio

import pytest
from sqlalchemy import func, select

from boxoffice import config
from boxoffice.checkout import (
    CheckoutOrchestrator, LineItem, aggregate_line_items,
)
from boxoffice.errors import (
    InsufficientInventoryError, InvalidRequestError, InvalidStateError,
    LimitExceededError, MixedCurrencyError, NotFoundError,
)
from boxoffice.helpers import now_ts
from boxoffice.model.ledger import AvailabilityLedger, ClaimResult, UNAVAILABLE
from boxoffice.model.orm import (
    AuditLog, Buyer, Order, OrderItem, Payment, EVENT_DRAFT,
    ORDER_CANCELLED, ORDER_PENDING, PAYMENT_FAILED, PAYMENT_PENDING,
)

from conftest import ABROAD, EVENT_ID, GENERAL, VIP, buyer, items, seed_event


async def count(db, model, *where):
    async with db.begin() as session:
        stmt = select(func.count()).select_from(model)
        if where:
            stmt = stmt.where(*where)
        return (await session.execute(stmt)).scalar_one()


class TestCreateCheckoutSession:
    async def test_creates_pending_order_with_hold(self, db, ledger,
                                                   orchestrator, event):
        before = now_ts()
        session = await orchestrator.create_checkout_session(
            EVENT_ID, items((GENERAL, 2)), buyer()
        )
        assert session.total == 100000
        assert session.currency == "MXN"
        assert session.hold_applied
        assert session.expires_at >= before + 1800
        assert session.reserved_until >= before + 300
        assert session.reserved_until < session.expires_at

        async with db.begin() as s:
            order = await s.get(Order, session.order_id)
            assert order.status == ORDER_PENDING
            assert order.hold_applied
            assert [(i.ticket_type_id, i.quantity, i.unit_price)
                    for i in order.items] == [(GENERAL, 2, 50000)]
            assert order.payment.status == PAYMENT_PENDING
            assert order.payment.amount == 100000
            assert order.buyer.email == "ana@example.com"

        assert await ledger.live_reservations(EVENT_ID, GENERAL) == 2
        assert await count(db, AuditLog,
                           AuditLog.action == "CHECKOUT_CREATED") == 1

    async def test_to_dict_uses_iso_timestamps(self, orchestrator, event):
        session = await orchestrator.create_checkout_session(
            EVENT_ID, items((VIP, 1)), buyer()
        )
        out = session.to_dict()
        assert set(out) == {"orderId", "total", "currency", "expiresAt",
                            "reservedUntil"}
        assert out["expiresAt"].endswith("+00:00")

    async def test_duplicate_lines_are_aggregated(self, db, orchestrator,
                                                  event):
        session = await orchestrator.create_checkout_session(
            EVENT_ID, items((VIP, 1), (VIP, 2)), buyer()
        )
        assert session.total == 360000
        assert await count(db, OrderItem,
                           OrderItem.order_id == session.order_id) == 1

    async def test_buyer_is_reused_by_email(self, db, orchestrator, event):
        await orchestrator.create_checkout_session(
            EVENT_ID, items((VIP, 1)), buyer("Ana@Example.com")
        )
        await orchestrator.create_checkout_session(
            EVENT_ID, items((VIP, 1)), buyer("ana@example.com")
        )
        assert await count(db, Buyer) == 1


class TestRejections:
    async def test_unknown_event(self, orchestrator, event):
        with pytest.raises(NotFoundError):
            await orchestrator.create_checkout_session(
                "nope", items((GENERAL, 1)), buyer()
            )

    async def test_unpublished_event(self, db, orchestrator):
        await seed_event(db, status=EVENT_DRAFT)
        with pytest.raises(InvalidStateError):
            await orchestrator.create_checkout_session(
                EVENT_ID, items((GENERAL, 1)), buyer()
            )

    async def test_event_already_ended(self, db, orchestrator):
        await seed_event(db, end_date=now_ts() - 60)
        with pytest.raises(InvalidStateError):
            await orchestrator.create_checkout_session(
                EVENT_ID, items((GENERAL, 1)), buyer()
            )

    async def test_per_purchase_limit_counts_all_lines(self, db,
                                                       orchestrator):
        await seed_event(db, max_tickets=3)
        with pytest.raises(LimitExceededError):
            await orchestrator.create_checkout_session(
                EVENT_ID, items((GENERAL, 1), (VIP, 3)), buyer()
            )
        assert await count(db, Order) == 0

    async def test_default_limit_when_event_sets_none(self, db, orchestrator,
                                                      monkeypatch):
        monkeypatch.setattr(config, "DEFAULT_MAX_TICKETS_PER_PURCHASE", 2)
        await seed_event(db, max_tickets=None)
        with pytest.raises(LimitExceededError):
            await orchestrator.create_checkout_session(
                EVENT_ID, items((VIP, 3)), buyer()
            )
        session = await orchestrator.create_checkout_session(
            EVENT_ID, items((VIP, 2)), buyer()
        )
        assert session.order_id

    async def test_ticket_type_from_another_event(self, orchestrator, event):
        with pytest.raises(NotFoundError):
            await orchestrator.create_checkout_session(
                EVENT_ID, items(("tt-missing", 1)), buyer()
            )

    async def test_insufficient_names_ticket_type(self, orchestrator, event):
        with pytest.raises(InsufficientInventoryError) as exc:
            await orchestrator.create_checkout_session(
                EVENT_ID, items((GENERAL, 3)), buyer()
            )
        assert exc.value.ticket_type_id == GENERAL
        assert exc.value.available == 2
        assert "only 2 tickets left for General" in str(exc.value)

    async def test_mixed_currency_writes_nothing(self, db, ledger,
                                                 orchestrator, event):
        with pytest.raises(MixedCurrencyError):
            await orchestrator.create_checkout_session(
                EVENT_ID, items((GENERAL, 1), (ABROAD, 1)), buyer()
            )
        for model in (Order, OrderItem, Payment, Buyer):
            assert await count(db, model) == 0
        assert await ledger.live_reservations(EVENT_ID, GENERAL) == 0

    async def test_invalid_email(self, orchestrator, event):
        with pytest.raises(InvalidRequestError):
            await orchestrator.create_checkout_session(
                EVENT_ID, items((GENERAL, 1)), buyer("not-an-email")
            )

    @pytest.mark.unit
    def test_non_positive_quantity(self):
        with pytest.raises(InvalidRequestError):
            aggregate_line_items([LineItem(GENERAL, 0)])
        with pytest.raises(InvalidRequestError):
            aggregate_line_items([])


class TestConcurrency:
    async def test_two_buyers_race_for_last_two(self, db, ledger,
                                                orchestrator, event):
        # capacity 10, sold 8: room for exactly one of these
        results = await asyncio.gather(
            orchestrator.create_checkout_session(
                EVENT_ID, items((GENERAL, 2)), buyer("a@example.com")),
            orchestrator.create_checkout_session(
                EVENT_ID, items((GENERAL, 2)), buyer("b@example.com")),
            return_exceptions=True,
        )
        ok = [r for r in results if not isinstance(r, Exception)]
        failed = [r for r in results if isinstance(r, Exception)]
        assert len(ok) == 1
        assert len(failed) == 1
        assert isinstance(failed[0], InsufficientInventoryError)

        assert await ledger.live_reservations(EVENT_ID, GENERAL) == 2
        assert not await ledger.check_availability(EVENT_ID, GENERAL,
                                                   10, 8, 1)
        assert await count(db, Order, Order.status == ORDER_PENDING) == 1

    async def test_lost_claim_cancels_order(self, db, ledger, orchestrator,
                                            event):
        # someone else grabbed the units between commit and claim
        original_claim = ledger.claim

        async def claim_after_competitor(event_id, order_id, lines):
            await ledger.reserve(event_id, GENERAL, 2, "competitor")
            return await original_claim(event_id, order_id, lines)

        ledger.claim = claim_after_competitor
        with pytest.raises(InsufficientInventoryError):
            await orchestrator.create_checkout_session(
                EVENT_ID, items((GENERAL, 2)), buyer()
            )

        async with db.begin() as s:
            order = (await s.execute(select(Order))).scalars().one()
            assert order.status == ORDER_CANCELLED
            assert order.payment.status == PAYMENT_FAILED
        assert await count(db, AuditLog,
                           AuditLog.action == "CHECKOUT_COMPENSATED") == 1


class TestLedgerOutage:
    async def test_order_is_journaled_without_hold(self, db, ledger,
                                                   orchestrator, event,
                                                   monkeypatch):
        async def unavailable(*args, **kwargs):
            return ClaimResult(UNAVAILABLE)

        monkeypatch.setattr(ledger, "claim", unavailable)
        session = await orchestrator.create_checkout_session(
            EVENT_ID, items((GENERAL, 1)), buyer()
        )
        assert not session.hold_applied
        async with db.begin() as s:
            order = await s.get(Order, session.order_id)
            assert order.status == ORDER_PENDING
            assert not order.hold_applied


class TestHoldTtlMismatch:
    async def test_expired_hold_frees_inventory_while_order_pending(
            self, db, r, event):
        ledger = AvailabilityLedger(r, ttl_seconds=0.5)
        orchestrator = CheckoutOrchestrator(db, ledger,
                                            session_ttl_seconds=1800)
        first = await orchestrator.create_checkout_session(
            EVENT_ID, items((GENERAL, 2)), buyer("a@example.com")
        )
        with pytest.raises(InsufficientInventoryError):
            await orchestrator.create_checkout_session(
                EVENT_ID, items((GENERAL, 2)), buyer("b@example.com")
            )

        await asyncio.sleep(0.7)

        second = await orchestrator.create_checkout_session(
            EVENT_ID, items((GENERAL, 2)), buyer("b@example.com")
        )
        assert second.hold_applied
        async with db.begin() as s:
            assert (await s.get(Order, first.order_id)).status \
                == ORDER_PENDING


class TestFollowUps:
    async def test_order_summary(self, orchestrator, event):
        session = await orchestrator.create_checkout_session(
            EVENT_ID, items((VIP, 2)), buyer()
        )
        summary = await orchestrator.get_order_summary(session.order_id)
        assert summary["total"] == 240000
        assert summary["buyer"]["email"] == "ana@example.com"
        assert summary["items"] == [
            {"ticketTypeId": VIP, "quantity": 2, "unitPrice": 120000}
        ]

    async def test_summary_of_unknown_order(self, orchestrator, event):
        with pytest.raises(NotFoundError):
            await orchestrator.get_order_summary("missing")

    async def test_cancel_releases_hold(self, db, ledger, orchestrator,
                                        event):
        session = await orchestrator.create_checkout_session(
            EVENT_ID, items((GENERAL, 2)), buyer()
        )
        await orchestrator.cancel_order(session.order_id)
        assert await ledger.live_reservations(EVENT_ID, GENERAL) == 0
        with pytest.raises(InvalidStateError):
            await orchestrator.cancel_order(session.order_id)
        with pytest.raises(InvalidStateError):
            await orchestrator.get_order_summary(session.order_id)

    async def test_start_payment_extends_hold(self, db, ledger, orchestrator,
                                              event, http):
        session = await orchestrator.create_checkout_session(
            EVENT_ID, items((GENERAL, 1)), buyer()
        )
        out = await orchestrator.start_payment(session.order_id, "mockpay",
                                               http)
        assert out["paymentSessionId"].startswith("mock_")
        assert out["redirectUrl"] == f"/mockpay/{out['paymentSessionId']}"
        assert await ledger.remaining_ttl(session.order_id) > 290
        async with db.begin() as s:
            payment = (await s.execute(
                select(Payment).where(Payment.order_id == session.order_id)
            )).scalar_one()
            assert payment.gateway_session_id == out["paymentSessionId"]

    async def test_start_payment_reclaims_lapsed_hold(self, db, r, event,
                                                      http):
        ledger = AvailabilityLedger(r, ttl_seconds=0.5)
        orchestrator = CheckoutOrchestrator(db, ledger)
        session = await orchestrator.create_checkout_session(
            EVENT_ID, items((GENERAL, 2)), buyer()
        )
        await asyncio.sleep(0.7)
        assert await ledger.live_reservations(EVENT_ID, GENERAL) == 0

        await orchestrator.start_payment(session.order_id, "mockpay", http)
        assert await ledger.live_reservations(EVENT_ID, GENERAL) == 2

    async def test_start_payment_fails_when_units_gone(self, db, r, event,
                                                       http):
        ledger = AvailabilityLedger(r, ttl_seconds=0.5)
        orchestrator = CheckoutOrchestrator(db, ledger)
        first = await orchestrator.create_checkout_session(
            EVENT_ID, items((GENERAL, 2)), buyer("a@example.com")
        )
        await asyncio.sleep(0.7)
        await orchestrator.create_checkout_session(
            EVENT_ID, items((GENERAL, 2)), buyer("b@example.com")
        )
        with pytest.raises(InsufficientInventoryError):
            await orchestrator.start_payment(first.order_id, "mockpay", http)
        async with db.begin() as s:
            assert (await s.get(Order, first.order_id)).status \
                == ORDER_CANCELLED

    async def test_start_payment_unknown_gateway(self, orchestrator, event,
                                                 http):
        session = await orchestrator.create_checkout_session(
            EVENT_ID, items((GENERAL, 1)), buyer()
        )
        with pytest.raises(NotFoundError):
            await orchestrator.start_payment(session.order_id, "paypal",
                                             http)

    async def test_start_payment_after_expiry(self, orchestrator, event,
                                              http):
        session = await orchestrator.create_checkout_session(
            EVENT_ID, items((GENERAL, 1)), buyer()
        )
        with pytest.raises(InvalidStateError):
            await orchestrator.start_payment(
                session.order_id, "mockpay", http,
                now=session.expires_at + 1,
            )

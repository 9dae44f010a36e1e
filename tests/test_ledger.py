import asyncio

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from boxoffice.model.ledger import (
    AvailabilityLedger, HoldLine, INSUFFICIENT, RESERVED, UNAVAILABLE,
)
from boxoffice.model.redis_store import k_hold, k_holds_index

EVENT = "evt-1"
TT = "tt-general"


def line(qty, capacity=10, sold=8, tt=TT):
    return HoldLine(tt, qty, capacity, sold)


class TestAvailability:
    async def test_check_is_read_only(self, ledger, r):
        assert await ledger.check_availability(EVENT, TT, 10, 8, 2)
        assert not await ledger.check_availability(EVENT, TT, 10, 8, 3)
        assert await r.keys("*") == []

    async def test_live_reservations_count_against_capacity(self, ledger):
        assert await ledger.reserve(EVENT, TT, 2, "order-a")
        assert await ledger.live_reservations(EVENT, TT) == 2
        assert not await ledger.check_availability(EVENT, TT, 10, 8, 1)

    async def test_reserve_sets_native_ttl(self, ledger, r):
        await ledger.reserve(EVENT, TT, 1, "order-a")
        pttl = await r.pttl(k_hold("order-a"))
        assert 0 < pttl <= 300_000
        assert await r.zscore(k_holds_index(EVENT, TT), "order-a")


class TestClaim:
    async def test_claim_reserves_every_line(self, ledger):
        res = await ledger.claim(EVENT, "order-a", [
            line(1), line(3, capacity=5, sold=0, tt="tt-vip"),
        ])
        assert res.status == RESERVED and res.ok
        assert await ledger.live_reservations(EVENT, TT) == 1
        assert await ledger.live_reservations(EVENT, "tt-vip") == 3

    async def test_claim_is_all_or_nothing(self, ledger):
        res = await ledger.claim(EVENT, "order-a", [
            line(1), line(6, capacity=5, sold=0, tt="tt-vip"),
        ])
        assert res.status == INSUFFICIENT
        assert res.ticket_type_id == "tt-vip"
        assert res.available == 5
        assert await ledger.live_reservations(EVENT, TT) == 0
        assert await ledger.remaining_ttl("order-a") is None

    async def test_last_units_go_to_one_buyer(self, ledger):
        results = await asyncio.gather(
            ledger.claim(EVENT, "order-a", [line(2)]),
            ledger.claim(EVENT, "order-b", [line(2)]),
        )
        statuses = sorted(res.status for res in results)
        assert statuses == [INSUFFICIENT, RESERVED]
        assert await ledger.live_reservations(EVENT, TT) == 2

    async def test_reclaim_by_same_order_does_not_double_count(self, ledger):
        assert (await ledger.claim(EVENT, "order-a", [line(2)])).ok
        assert (await ledger.claim(EVENT, "order-a", [line(2)])).ok
        assert await ledger.live_reservations(EVENT, TT) == 2

    async def test_store_outage_is_unavailable(self, r, monkeypatch):
        ledger = AvailabilityLedger(r, ttl_seconds=300)

        async def down(*args, **kwargs):
            raise RedisConnectionError("connection refused")

        monkeypatch.setattr(r, "time", down)
        res = await ledger.claim(EVENT, "order-a", [line(1)])
        assert res.status == UNAVAILABLE


class TestRelease:
    async def test_release_returns_units(self, ledger):
        await ledger.claim(EVENT, "order-a", [line(2)])
        assert await ledger.release("order-a") == 2
        assert await ledger.live_reservations(EVENT, TT) == 0

    async def test_release_twice_is_noop(self, ledger):
        await ledger.claim(EVENT, "order-a", [line(2)])
        await ledger.release("order-a")
        assert await ledger.release("order-a") == 0

    async def test_release_unknown_order(self, ledger):
        assert await ledger.release("nobody") == 0


class TestExpiry:
    async def test_untouched_hold_stops_counting(self, r):
        ledger = AvailabilityLedger(r, ttl_seconds=0.2)
        assert (await ledger.claim(EVENT, "order-a", [line(2)])).ok
        assert await ledger.live_reservations(EVENT, TT) == 2

        await asyncio.sleep(0.35)

        assert await ledger.live_reservations(EVENT, TT) == 0
        assert await ledger.remaining_ttl("order-a") is None
        assert await ledger.release("order-a") == 0

    async def test_extend_resets_ttl(self, r):
        ledger = AvailabilityLedger(r, ttl_seconds=0.4)
        await ledger.claim(EVENT, "order-a", [line(2)])
        await asyncio.sleep(0.25)
        assert await ledger.extend("order-a")
        remaining = await ledger.remaining_ttl("order-a")
        assert remaining is not None and remaining > 0.3
        await asyncio.sleep(0.25)
        assert await ledger.live_reservations(EVENT, TT) == 2

    async def test_extend_after_expiry_fails(self, r):
        ledger = AvailabilityLedger(r, ttl_seconds=0.1)
        await ledger.claim(EVENT, "order-a", [line(1)])
        await asyncio.sleep(0.2)
        assert not await ledger.extend("order-a")

    async def test_expired_entries_are_pruned_on_next_write(self, r):
        ledger = AvailabilityLedger(r, ttl_seconds=0.2)
        await ledger.claim(EVENT, "order-a", [line(1)])
        await asyncio.sleep(0.3)
        # the index key itself may be gone already; either way no stale member
        ledger_long = AvailabilityLedger(r, ttl_seconds=300)
        await ledger_long.claim(EVENT, "order-b", [line(1)])
        members = await r.zrange(k_holds_index(EVENT, TT), 0, -1)
        assert members == ["order-b"]


@pytest.mark.unit
async def test_ttl_is_kept_in_milliseconds(r):
    assert AvailabilityLedger(r, 300).ttl_ms == 300_000
    assert AvailabilityLedger(r, 0.0001).ttl_ms == 1

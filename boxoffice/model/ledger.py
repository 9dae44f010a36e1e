"""Availability ledger: TTL-bounded inventory holds in Redis.

Every order's hold lives in its own hash with a native TTL, and every
ticket-type keeps an index of (order -> expiry) plus (order -> qty). Live
reservations for a ticket-type are the quantities whose expiry is still in
the future, so a hold nobody touches stops counting once its TTL elapses.
Nothing here keeps a shared counter that needs a manual decrement.

All writes go through MULTI/EXEC. Check-and-reserve (claim) uses WATCH so two
buyers racing for the last units cannot both get them.
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

import redis.asyncio as redis
from loguru import logger
from redis.exceptions import RedisError, WatchError

from ..log import alert
from .redis_store import (
    hold_field, k_hold, k_hold_qty, k_holds_index, server_time_ms,
    split_hold_field,
)

RESERVED = "RESERVED"
INSUFFICIENT = "INSUFFICIENT"
UNAVAILABLE = "UNAVAILABLE"

MAX_CAS_RETRIES = 32


@dataclass(frozen=True)
class HoldLine:
    ticket_type_id: str
    qty: int
    capacity: int
    sold: int


@dataclass(frozen=True)
class ClaimResult:
    status: str
    ticket_type_id: Optional[str] = None
    available: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.status == RESERVED


def _sum_live(members: Sequence[str], qtys: Dict[str, str],
              exclude: Optional[str] = None) -> int:
    total = 0
    for m in members:
        if m == exclude:
            continue
        try:
            total += int(qtys.get(m, 0))
        except ValueError:
            continue
    return total


class AvailabilityLedger:
    def __init__(self, r: redis.Redis, ttl_seconds: float) -> None:
        self.r = r
        self.ttl_ms = max(1, int(ttl_seconds * 1000))

    # ---
    # reads
    # ---
    async def live_reservations(self, event_id: str,
                                ticket_type_id: str) -> int:
        now = await server_time_ms(self.r)
        pipe = self.r.pipeline(transaction=True)
        pipe.zrangebyscore(
            k_holds_index(event_id, ticket_type_id), f"({now}", "+inf"
        )
        pipe.hgetall(k_hold_qty(event_id, ticket_type_id))
        members, qtys = await pipe.execute()
        return _sum_live(members, qtys)

    async def check_availability(
        self, event_id: str, ticket_type_id: str, capacity: int,
        finalized_sold: int, requested_qty: int,
    ) -> bool:
        live = await self.live_reservations(event_id, ticket_type_id)
        available = capacity - finalized_sold - live
        logger.debug(
            f"availability {event_id}:{ticket_type_id} capacity={capacity} "
            f"sold={finalized_sold} reserved={live} "
            f"requested={requested_qty} available={available}"
        )
        return available >= requested_qty

    async def remaining_ttl(self, order_id: str) -> Optional[float]:
        """Seconds left on the order's hold, None when there is no hold."""
        pttl = await self.r.pttl(k_hold(order_id))
        if pttl is None or pttl < 0:
            return None
        return pttl / 1000.0

    # ---
    # writes
    # ---
    def _queue_hold(self, pipe, event_id: str, ticket_type_id: str,
                    qty: int, order_id: str, expiry_ms: int,
                    expired: Sequence[str] = ()) -> None:
        idx = k_holds_index(event_id, ticket_type_id)
        qtyk = k_hold_qty(event_id, ticket_type_id)
        if expired:
            pipe.zrem(idx, *expired)
            pipe.hdel(qtyk, *expired)
        pipe.hset(k_hold(order_id), hold_field(event_id, ticket_type_id),
                  int(qty))
        pipe.pexpire(k_hold(order_id), self.ttl_ms)
        pipe.zadd(idx, {order_id: expiry_ms})
        pipe.hset(qtyk, order_id, int(qty))
        # every member expires no later than this, so the index dies with them
        pipe.pexpire(idx, self.ttl_ms)
        pipe.pexpire(qtyk, self.ttl_ms)

    async def reserve(self, event_id: str, ticket_type_id: str, qty: int,
                      order_id: str) -> bool:
        """Record a hold without checking availability.

        Callers check availability right before. False only when the store
        is unreachable.
        """
        try:
            now = await server_time_ms(self.r)
            idx = k_holds_index(event_id, ticket_type_id)
            expired = [
                m for m in await self.r.zrangebyscore(idx, "-inf", now)
                if m != order_id
            ]
            pipe = self.r.pipeline(transaction=True)
            self._queue_hold(pipe, event_id, ticket_type_id, qty, order_id,
                             now + self.ttl_ms, expired)
            await pipe.execute()
        except RedisError as e:
            alert(f"ledger reserve failed for order {order_id}: {e}",
                  order_id=order_id, ticket_type_id=ticket_type_id)
            return False
        logger.info(
            f"reserved {qty} of {ticket_type_id} for order {order_id}, "
            f"expires in {self.ttl_ms / 1000:.0f}s"
        )
        return True

    async def claim(self, event_id: str, order_id: str,
                    lines: Sequence[HoldLine]) -> ClaimResult:
        """Check-and-reserve every line of one order, all or nothing.

        Units the same order already holds do not count against it, so a
        claim can be repeated to re-take a lapsed hold.
        """
        keys: List[str] = [k_hold(order_id)]
        for line in lines:
            keys.append(k_holds_index(event_id, line.ticket_type_id))
            keys.append(k_hold_qty(event_id, line.ticket_type_id))

        try:
            async with self.r.pipeline(transaction=True) as pipe:
                for _ in range(MAX_CAS_RETRIES):
                    try:
                        await pipe.watch(*keys)
                        now = await server_time_ms(self.r)
                        expired: Dict[str, List[str]] = {}
                        for line in lines:
                            idx = k_holds_index(event_id, line.ticket_type_id)
                            members = await pipe.zrangebyscore(
                                idx, f"({now}", "+inf"
                            )
                            qtys = await pipe.hgetall(
                                k_hold_qty(event_id, line.ticket_type_id)
                            )
                            live = _sum_live(members, qtys, exclude=order_id)
                            available = line.capacity - line.sold - live
                            if available < line.qty:
                                await pipe.unwatch()
                                return ClaimResult(
                                    INSUFFICIENT, line.ticket_type_id,
                                    max(0, available),
                                )
                            expired[line.ticket_type_id] = [
                                m for m in await pipe.zrangebyscore(
                                    idx, "-inf", now
                                ) if m != order_id
                            ]

                        pipe.multi()
                        for line in lines:
                            self._queue_hold(
                                pipe, event_id, line.ticket_type_id,
                                line.qty, order_id, now + self.ttl_ms,
                                expired[line.ticket_type_id],
                            )
                        await pipe.execute()
                        logger.info(
                            f"claimed {sum(li.qty for li in lines)} units "
                            f"for order {order_id}"
                        )
                        return ClaimResult(RESERVED)
                    except WatchError:
                        # someone touched the same ticket-types; re-read
                        continue
        except RedisError as e:
            alert(f"ledger claim failed for order {order_id}: {e}",
                  order_id=order_id)
            return ClaimResult(UNAVAILABLE)

        alert(f"ledger claim for order {order_id} lost {MAX_CAS_RETRIES} "
              f"races in a row", order_id=order_id)
        return ClaimResult(UNAVAILABLE)

    async def release(self, order_id: str) -> int:
        """Drop the order's holds; returns the units released.

        Releasing a hold that is already gone is a no-op returning 0.
        """
        try:
            async with self.r.pipeline(transaction=True) as pipe:
                while True:
                    try:
                        await pipe.watch(k_hold(order_id))
                        fields = await pipe.hgetall(k_hold(order_id))
                        if not fields:
                            await pipe.unwatch()
                            return 0
                        pipe.multi()
                        released = 0
                        for field, qty in fields.items():
                            event_id, ticket_type_id = split_hold_field(field)
                            pipe.zrem(
                                k_holds_index(event_id, ticket_type_id),
                                order_id
                            )
                            pipe.hdel(
                                k_hold_qty(event_id, ticket_type_id), order_id
                            )
                            released += int(qty)
                        pipe.delete(k_hold(order_id))
                        await pipe.execute()
                        break
                    except WatchError:
                        continue
        except RedisError as e:
            alert(f"ledger release failed for order {order_id}: {e}",
                  order_id=order_id)
            return 0
        logger.info(f"released {released} held units of order {order_id}")
        return released

    async def extend(self, order_id: str) -> bool:
        """Reset the order's hold to the full TTL. False if it is gone."""
        try:
            async with self.r.pipeline(transaction=True) as pipe:
                while True:
                    try:
                        await pipe.watch(k_hold(order_id))
                        fields = await pipe.hgetall(k_hold(order_id))
                        if not fields:
                            await pipe.unwatch()
                            return False
                        now = await server_time_ms(self.r)
                        pipe.multi()
                        for field, qty in fields.items():
                            event_id, ticket_type_id = split_hold_field(field)
                            self._queue_hold(
                                pipe, event_id, ticket_type_id, int(qty),
                                order_id, now + self.ttl_ms,
                            )
                        await pipe.execute()
                        break
                    except WatchError:
                        continue
        except RedisError as e:
            alert(f"ledger extend failed for order {order_id}: {e}",
                  order_id=order_id)
            return False
        logger.info(f"extended hold of order {order_id}")
        return True

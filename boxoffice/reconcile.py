"""Reconciliation sweep between orders and the availability ledger.

Cancels PENDING orders that outlived their checkout session or lost their
hold before reaching the provider, applies journaled holds that never made
it into the ledger, and re-queues fulfillment for PAID orders still without
tickets.
"""
from __future__ import annotations
import argparse
import asyncio
from typing import Dict, List, Optional

import redis.asyncio as redis
from loguru import logger
from sqlalchemy import exists, select, update

from . import config
from .checkout import cancel_pending_order, order_hold_lines
from .helpers import now_ts
from .infra.sql import Database, make_async_engine
from .log import alert, setup_logging
from .model.ledger import AvailabilityLedger, INSUFFICIENT, RESERVED
from .model.orm import Order, Payment, Ticket, ORDER_PAID, ORDER_PENDING
from .settlement import Enqueue, default_enqueue

# PAID orders get this long to be fulfilled before the sweep re-queues them
REQUEUE_AFTER_SECONDS = 10 * 60


class Reconciler:
    def __init__(self, db: Database, ledger: AvailabilityLedger,
                 enqueue: Optional[Enqueue] = None,
                 requeue_after: float = REQUEUE_AFTER_SECONDS) -> None:
        self.db = db
        self.ledger = ledger
        self.enqueue = enqueue or default_enqueue
        self.requeue_after = requeue_after

    async def _ids(self, stmt) -> List[str]:
        async with self.db.begin() as session:
            return list((await session.execute(stmt)).scalars().all())

    async def _cancel(self, order_id: str, action: str, reason: str,
                      now: float) -> bool:
        async with self.db.begin() as session:
            order = await session.get(Order, order_id)
            cancelled = await cancel_pending_order(
                session, order, action, reason, now
            )
        if cancelled:
            await self.ledger.release(order_id)
            logger.info(f"order {order_id} cancelled: {reason}")
        return cancelled

    async def run_once(self, now: Optional[float] = None) -> Dict[str, int]:
        now = now_ts() if now is None else now
        counts = {"expired": 0, "lapsed": 0, "reapplied": 0,
                  "compensated": 0, "requeued": 0}

        # checkout sessions past their expiry
        for order_id in await self._ids(
            select(Order.id).where(Order.status == ORDER_PENDING,
                                   Order.expires_at < now)
        ):
            if await self._cancel(order_id, "ORDER_EXPIRED",
                                  "checkout session expired", now):
                counts["expired"] += 1

        # holds that lapsed before the buyer reached the provider
        for order_id in await self._ids(
            select(Order.id)
            .join(Payment, Payment.order_id == Order.id)
            .where(Order.status == ORDER_PENDING,
                   Order.hold_applied.is_(True),
                   Payment.gateway_session_id.is_(None))
        ):
            if await self.ledger.remaining_ttl(order_id) is not None:
                continue
            if await self._cancel(order_id, "ORDER_HOLD_LAPSED",
                                  "inventory hold expired", now):
                counts["lapsed"] += 1

        # journaled holds the ledger never saw
        for order_id in await self._ids(
            select(Order.id).where(Order.status == ORDER_PENDING,
                                   Order.hold_applied.is_(False))
        ):
            async with self.db.begin() as session:
                order = await session.get(Order, order_id)
                lines, _ = await order_hold_lines(session, order)
            claim = await self.ledger.claim(order.event_id, order_id, lines)
            if claim.status == RESERVED:
                async with self.db.begin() as session:
                    await session.execute(
                        update(Order)
                        .where(Order.id == order_id,
                               Order.status == ORDER_PENDING)
                        .values(hold_applied=True)
                    )
                counts["reapplied"] += 1
                logger.info(f"applied journaled hold of order {order_id}")
            elif claim.status == INSUFFICIENT:
                if await self._cancel(
                        order_id, "CHECKOUT_COMPENSATED",
                        f"inventory taken before hold on "
                        f"{claim.ticket_type_id}", now):
                    counts["compensated"] += 1
            else:
                # ledger still down; try again next sweep
                break

        # paid but never fulfilled
        for order_id in await self._ids(
            select(Order.id).where(
                Order.status == ORDER_PAID,
                Order.paid_at < now - self.requeue_after,
                ~exists().where(Ticket.order_id == Order.id),
            )
        ):
            try:
                await self.enqueue(order_id)
            except Exception as e:
                alert(f"could not re-queue fulfillment for order "
                      f"{order_id}: {e}", order_id=order_id)
                continue
            counts["requeued"] += 1

        logger.info(
            "reconcile: " + ", ".join(f"{k}={v}" for k, v in counts.items())
        )
        return counts


async def _run(interval: Optional[float]) -> None:
    db = make_async_engine(config.DATABASE_URL)
    r = redis.from_url(config.REDIS_URL, decode_responses=True)
    reconciler = Reconciler(db, AvailabilityLedger(r, config.HOLD_TTL_SECONDS))
    try:
        while True:
            await reconciler.run_once()
            if not interval:
                break
            await asyncio.sleep(interval)
    finally:
        await r.aclose()
        await db.dispose()


def main():
    ap = argparse.ArgumentParser(
        description="Reconcile pending orders with the availability ledger"
    )
    ap.add_argument(
        "--interval", type=float, default=None,
        help="keep sweeping every INTERVAL seconds (default: run once)"
    )
    args = ap.parse_args()
    setup_logging(config.LOG_LEVEL, config.LOG_JSON)
    config.validate_environment()
    asyncio.run(_run(args.interval))


if __name__ == "__main__":
    main()

"""Order fulfillment: ticket issuance and confirmation, off the webhook path.

Runs as a Celery task with bounded retries and exponential backoff. Jobs that
exhaust their attempts land on a Redis dead-letter list.
"""
from __future__ import annotations
import asyncio
import json
from typing import List, Optional
import uuid

import redis
from celery import Celery, Task
from loguru import logger
from sqlalchemy import select

from . import config
from .errors import NotFoundError
from .helpers import new_qr_code, now_ts, to_iso
from .infra.sql import Database, make_async_engine
from .log import alert
from .model.orm import Order, Ticket, ORDER_PAID
from .model.redis_store import k_deadletter

FULFILLMENT_QUEUE = "fulfillment"

celery_app = Celery("boxoffice", broker=config.CELERY_BROKER_URL)
celery_app.conf.update(
    task_always_eager=config.CELERY_ALWAYS_EAGER,
    task_acks_late=True,
    task_default_queue=FULFILLMENT_QUEUE,
    worker_hijack_root_logger=False,
)


def dead_letter(r: redis.Redis, order_id: str, error: str,
                attempts: int) -> None:
    job = {
        "order_id": order_id,
        "error": error,
        "attempts": attempts,
        "failed_at": now_ts(),
    }
    r.rpush(k_deadletter(FULFILLMENT_QUEUE), json.dumps(job))


class DeadLetterTask(Task):
    """Pushes jobs that ran out of retries onto the dead-letter list."""

    def on_failure(self, exc, task_id, args, kwargs, einfo):
        order_id = args[0] if args else kwargs.get("order_id")
        attempts = self.request.retries + 1
        alert(
            f"fulfillment of order {order_id} gave up after {attempts} "
            f"attempts: {exc}",
            order_id=order_id, task_id=task_id,
        )
        r = redis.Redis.from_url(config.REDIS_URL, decode_responses=True)
        try:
            dead_letter(r, order_id, repr(exc), attempts)
        finally:
            r.close()


async def issue_tickets(db: Database, order_id: str) -> List[Ticket]:
    """One VALID ticket per purchased unit. Safe to run more than once."""
    async with db.begin() as session:
        # row lock without the order's eager joins
        await session.execute(
            select(Order.id).where(Order.id == order_id).with_for_update()
        )
        order = await session.get(Order, order_id)
        if order is None:
            raise NotFoundError(f"Order {order_id} not found")
        if order.status != ORDER_PAID:
            logger.warning(
                f"order {order_id} is {order.status}; no tickets issued"
            )
            return []

        existing = (await session.execute(
            select(Ticket).where(Ticket.order_id == order_id)
        )).scalars().all()
        if existing:
            return list(existing)

        now = now_ts()
        tickets = []
        for item in order.items:
            for _ in range(item.quantity):
                ticket = Ticket(
                    id=uuid.uuid4().hex,
                    order_id=order_id,
                    ticket_type_id=item.ticket_type_id,
                    qr_code=new_qr_code(),
                    created_at=now,
                )
                session.add(ticket)
                tickets.append(ticket)
    logger.info(f"issued {len(tickets)} tickets for order {order_id}")
    return tickets


async def send_confirmation(db: Database, order_id: str,
                            tickets: List[Ticket]) -> Optional[dict]:
    # delivery itself belongs to the mail service
    if not tickets:
        return None
    async with db.begin() as session:
        order = await session.get(Order, order_id)
        message = {
            "to": order.buyer.email,
            "name": order.buyer.name,
            "event": order.event.title,
            "order_id": order.id,
            "total": order.total,
            "currency": order.currency,
            "paid_at": to_iso(order.paid_at),
            "tickets": [t.qr_code for t in tickets],
        }
    logger.bind(mail=True).info(
        f"confirmation for order {order_id} -> {message['to']} "
        f"({len(tickets)} tickets)"
    )
    return message


async def run_fulfillment(order_id: str,
                          db: Optional[Database] = None) -> int:
    owned = db is None
    if owned:
        db = make_async_engine(config.DATABASE_URL)
    try:
        tickets = await issue_tickets(db, order_id)
        await send_confirmation(db, order_id, tickets)
        return len(tickets)
    finally:
        if owned:
            await db.dispose()


@celery_app.task(
    bind=True,
    base=DeadLetterTask,
    name="boxoffice.fulfill_order",
    autoretry_for=(Exception,),
    retry_backoff=config.FULFILLMENT_BACKOFF_SECONDS,
    retry_jitter=False,
    max_retries=config.FULFILLMENT_MAX_ATTEMPTS - 1,
    acks_late=True,
)
def fulfill_order(self, order_id: str) -> int:
    logger.info(
        f"fulfilling order {order_id} (attempt {self.request.retries + 1})"
    )
    return asyncio.run(run_fulfillment(order_id))


async def enqueue_fulfillment(order_id: str) -> None:
    # apply_async talks to the broker synchronously
    await asyncio.to_thread(fulfill_order.apply_async, args=(order_id,))
    logger.info(f"fulfillment for order {order_id} queued")

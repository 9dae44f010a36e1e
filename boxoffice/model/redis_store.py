"""Redis key layout.

Ledger
  hold:{order_id}                  hash  "{event}:{ticket_type}" -> qty, PEXPIRE = hold TTL
  holds:{event}:{ticket_type}      zset  order_id -> hold expiry (server ms)
  holdqty:{event}:{ticket_type}    hash  order_id -> qty

Settlement / fulfillment
  fulfill:{order_id}               fulfillment gate, SET NX
  deadletter:fulfillment           list of exhausted fulfillment jobs

HTTP shared caches
  idemp:req:{sha256}               cached 2xx response for an Idempotency-Key
  rl:{client}:{window}             fixed-window request counter
"""
import redis.asyncio as redis


def k_hold(order_id: str) -> str:
    return f"hold:{order_id}"


def k_holds_index(event_id: str, ticket_type_id: str) -> str:
    return f"holds:{event_id}:{ticket_type_id}"


def k_hold_qty(event_id: str, ticket_type_id: str) -> str:
    return f"holdqty:{event_id}:{ticket_type_id}"


def hold_field(event_id: str, ticket_type_id: str) -> str:
    return f"{event_id}:{ticket_type_id}"


def split_hold_field(field: str) -> tuple[str, str]:
    event_id, ticket_type_id = field.split(":", 1)
    return event_id, ticket_type_id


def k_fulfill(order_id: str) -> str:
    return f"fulfill:{order_id}"


def k_deadletter(queue: str) -> str:
    return f"deadletter:{queue}"


def k_idemp_request(digest: str) -> str:
    return f"idemp:req:{digest}"


def k_rate(client: str, window: int) -> str:
    return f"rl:{client}:{window}"


async def server_time_ms(r: redis.Redis) -> int:
    # one clock for every instance: the store's
    sec, usec = await r.time()
    return int(sec) * 1000 + int(usec) // 1000


async def fulfill_gate(r: redis.Redis, order_id: str) -> bool:
    # NX gate for fulfillment, 24h TTL
    ok = await r.set(k_fulfill(order_id), "1", nx=True, ex=24 * 3600)
    return bool(ok)

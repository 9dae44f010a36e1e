"""Idempotency-Key replay and per-client rate limiting, shared via Redis."""
from __future__ import annotations
import hashlib
import math
import time
from typing import Iterable, Optional

import orjson
import redis.asyncio as redis
from fastapi.responses import ORJSONResponse
from loguru import logger
from redis.exceptions import RedisError
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from . import config
from .errors import ErrorCode
from .model.redis_store import k_idemp_request, k_rate

EXEMPT_PREFIXES = ("/webhooks/",)
MUTATING_METHODS = frozenset({"POST", "PUT", "PATCH"})


def _exempt(path: str, prefixes: Iterable[str]) -> bool:
    return any(path.startswith(p) for p in prefixes)


def _redis(request: Request) -> Optional[redis.Redis]:
    return getattr(request.app.state, "redis", None)


def client_id(request: Request) -> str:
    fwd = request.headers.get("x-forwarded-for")
    if fwd:
        first = fwd.split(",")[0].strip()
        if first:
            return first
    real = request.headers.get("x-real-ip")
    if real:
        return real.strip()
    if request.client is not None:
        return request.client.host
    return "unknown"


def request_digest(key: str, path: str, body: bytes) -> str:
    h = hashlib.sha256()
    h.update(f"{key}:{path}:".encode())
    h.update(body)
    return h.hexdigest()


class IdempotencyMiddleware(BaseHTTPMiddleware):
    """Replays the first successful response for a repeated Idempotency-Key.

    The key, path and body together identify a request; only 2xx JSON
    responses are remembered.
    """

    def __init__(self, app, ttl_seconds: int = config.IDEMPOTENCY_TTL_SECONDS,
                 exempt: Iterable[str] = EXEMPT_PREFIXES) -> None:
        super().__init__(app)
        self.ttl = ttl_seconds
        self.exempt = tuple(exempt)

    async def dispatch(self, request: Request, call_next) -> Response:
        key = request.headers.get("idempotency-key")
        if (request.method not in MUTATING_METHODS or not key
                or _exempt(request.url.path, self.exempt)):
            return await call_next(request)

        if not 16 <= len(key) <= 255:
            return ORJSONResponse(
                {"code": ErrorCode.INVALID_REQUEST.value,
                 "detail": "Idempotency-Key must be 16 to 255 characters"},
                status_code=400,
            )

        r = _redis(request)
        if r is None:
            return await call_next(request)

        body = await request.body()
        cache_key = k_idemp_request(
            request_digest(key, request.url.path, body)
        )
        try:
            cached = await r.get(cache_key)
        except RedisError as e:
            logger.warning(f"idempotency cache unavailable: {e}")
            return await call_next(request)

        if cached is not None:
            entry = orjson.loads(cached)
            content = dict(entry["body"])
            content["_idempotent"] = True
            content["_cached_ago_ms"] = int(
                (time.time() - entry["at"]) * 1000
            )
            return ORJSONResponse(content, status_code=200)

        response = await call_next(request)
        if not (200 <= response.status_code < 300):
            return response
        if "json" not in response.headers.get("content-type", ""):
            return response

        raw = b"".join([chunk async for chunk in response.body_iterator])
        try:
            payload = orjson.loads(raw)
        except orjson.JSONDecodeError:
            payload = None
        if isinstance(payload, dict):
            try:
                await r.set(
                    cache_key,
                    orjson.dumps({"body": payload, "at": time.time()}),
                    ex=self.ttl,
                )
            except RedisError as e:
                logger.warning(f"idempotency cache unavailable: {e}")

        headers = dict(response.headers)
        headers.pop("content-length", None)
        return Response(
            content=raw,
            status_code=response.status_code,
            headers=headers,
            media_type=response.media_type,
        )


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Fixed-window request counter per client."""

    def __init__(self, app,
                 max_requests: int = config.RATE_LIMIT_MAX_REQUESTS,
                 window_seconds: int = config.RATE_LIMIT_WINDOW_SECONDS,
                 exempt: Iterable[str] = EXEMPT_PREFIXES) -> None:
        super().__init__(app)
        self.max_requests = max_requests
        self.window = window_seconds
        self.exempt = tuple(exempt)

    async def dispatch(self, request: Request, call_next) -> Response:
        r = _redis(request)
        if r is None or _exempt(request.url.path, self.exempt):
            return await call_next(request)

        now = time.time()
        window = int(now // self.window)
        key = k_rate(client_id(request), window)
        try:
            pipe = r.pipeline(transaction=True)
            pipe.incr(key)
            pipe.expire(key, self.window)
            count, _ = await pipe.execute()
        except RedisError as e:
            # fail open
            logger.warning(f"rate limiter unavailable: {e}")
            return await call_next(request)

        reset = (window + 1) * self.window
        limit_headers = {
            "X-RateLimit-Limit": str(self.max_requests),
            "X-RateLimit-Remaining": str(max(0, self.max_requests - count)),
            "X-RateLimit-Reset": str(reset),
        }
        if count > self.max_requests:
            retry_after = max(1, math.ceil(reset - now))
            return ORJSONResponse(
                {"code": ErrorCode.RATE_LIMITED.value,
                 "detail": f"limit of {self.max_requests} requests per "
                           f"{self.window}s exceeded",
                 "retryAfter": retry_after},
                status_code=429,
                headers={**limit_headers, "Retry-After": str(retry_after)},
            )

        response = await call_next(request)
        response.headers.update(limit_headers)
        return response

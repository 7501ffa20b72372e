import logging
import time

from fastapi import HTTPException, Request, status
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from chatrelay.config import settings

logger = logging.getLogger(__name__)

# Polled by the browser client every few seconds
UNLIMITED_PREFIXES = ("/health", "/qr", "/chats", "/messages")


def client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


async def hit_window(redis_client, key: str, window: int) -> int:
    """Record one hit in a sliding window and return the hit count inside it."""
    now = time.time()
    pipe = redis_client.pipeline()
    # Remove old entries
    pipe.zremrangebyscore(key, 0, now - window)
    # Add current request
    pipe.zadd(key, {f"{now:.6f}": now})
    # Count requests in window
    pipe.zcard(key)
    # Set TTL on the key
    pipe.expire(key, window)
    results = await pipe.execute()
    return results[2]


async def window_count(redis_client, key: str, window: int) -> int:
    now = time.time()
    await redis_client.zremrangebyscore(key, 0, now - window)
    return await redis_client.zcard(key)


class RateLimiter:
    """Redis-backed sliding window limiter keyed by client IP.

    Usable as a FastAPI dependency (counts every call) or through ``check`` and
    ``hit`` separately, for budgets that only count failures. Redis being absent
    or failing lets the request through.
    """

    def __init__(self, name: str, limit: int, window: int, message: str):
        self.name = name
        self.limit = limit
        self.window = window
        self.message = message

    def key(self, request: Request) -> str:
        return f"rate_limit:{self.name}:{client_ip(request)}"

    def _reject(self) -> HTTPException:
        return HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=self.message,
            headers={"Retry-After": str(self.window)},
        )

    async def hit(self, request: Request) -> int:
        redis_client = getattr(request.app.state, "redis", None)
        if redis_client is None:
            return 0
        try:
            return await hit_window(redis_client, self.key(request), self.window)
        except Exception as exc:
            logger.warning("Rate limiter %s unavailable: %s", self.name, exc)
            return 0

    async def check(self, request: Request) -> None:
        """Reject if the budget is already spent, without counting this request."""
        redis_client = getattr(request.app.state, "redis", None)
        if redis_client is None:
            return
        try:
            count = await window_count(redis_client, self.key(request), self.window)
        except Exception as exc:
            logger.warning("Rate limiter %s unavailable: %s", self.name, exc)
            return
        if count >= self.limit:
            raise self._reject()

    async def __call__(self, request: Request) -> None:
        if await self.hit(request) > self.limit:
            raise self._reject()


auth_limiter = RateLimiter(
    "auth",
    settings.AUTH_RATE_LIMIT,
    settings.AUTH_RATE_WINDOW,
    "Too many authentication attempts, please try again later",
)
message_limiter = RateLimiter(
    "message",
    settings.MESSAGE_RATE_LIMIT,
    settings.MESSAGE_RATE_WINDOW,
    "Too many messages sent, please slow down",
)
webhook_limiter = RateLimiter(
    "webhook",
    settings.WEBHOOK_RATE_LIMIT,
    settings.WEBHOOK_RATE_WINDOW,
    "Webhook rate limit exceeded",
)


class RateLimitMiddleware(BaseHTTPMiddleware):
    """General API budget applied to every request except the polling reads."""

    limiter = RateLimiter(
        "api",
        settings.API_RATE_LIMIT,
        settings.API_RATE_WINDOW,
        "Too many requests, please slow down",
    )

    async def dispatch(self, request: Request, call_next):
        if request.url.path.startswith(UNLIMITED_PREFIXES):
            return await call_next(request)

        if await self.limiter.hit(request) > self.limiter.limit:
            return JSONResponse(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                content={"detail": self.limiter.message},
                headers={"Retry-After": str(self.limiter.window)},
            )

        return await call_next(request)

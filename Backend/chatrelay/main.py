import asyncio
import logging
from contextlib import asynccontextmanager

import httpx
import redis.asyncio as redis
import sentry_sdk
from fastapi import FastAPI
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chatrelay.config import settings
from chatrelay.connectors import ClientFactory, load_client_factory
from chatrelay.database import async_session_factory, engine
from chatrelay.services.connection_manager import ConnectionManager
from chatrelay.services.session_registry import SessionRegistry
from chatrelay.services.shutdown import ShutdownCoordinator
from chatrelay.services.webhook_service import WebhookRelay

logger = logging.getLogger(__name__)

# Initialize Sentry
if settings.SENTRY_DSN:
    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.ENVIRONMENT,
        traces_sample_rate=0.2 if settings.ENVIRONMENT == "production" else 1.0,
        send_default_pii=False,
    )


def install_services(
    app: FastAPI,
    session_factory: async_sessionmaker[AsyncSession],
    client_factory: ClientFactory,
    http_client: httpx.AsyncClient | None = None,
) -> ConnectionManager:
    """Build the process-scoped session services into ``app.state``."""
    app.state.registry = SessionRegistry()
    app.state.relay = WebhookRelay(session_factory, http_client=http_client)
    app.state.manager = ConnectionManager(
        app.state.registry,
        client_factory,
        session_factory,
        app.state.relay,
    )
    return app.state.manager


def _log_unhandled(loop: asyncio.AbstractEventLoop, context: dict) -> None:
    exc = context.get("exception")
    logger.error("Unhandled async error: %s", context.get("message"), exc_info=exc)
    if exc is not None:
        sentry_sdk.capture_exception(exc)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: verify DB connection and connect Redis
    async with engine.begin() as conn:
        await conn.execute(text("SELECT 1"))

    app.state.redis = redis.from_url(
        settings.REDIS_URL,
        decode_responses=True,
    )
    try:
        await app.state.redis.ping()
    except Exception as exc:
        logger.warning("Redis unavailable, rate limiting disabled: %s", exc)
        app.state.redis = None

    asyncio.get_running_loop().set_exception_handler(_log_unhandled)

    app.state.http_client = httpx.AsyncClient(timeout=settings.WEBHOOK_TIMEOUT_SECONDS)
    manager = install_services(
        app,
        async_session_factory,
        load_client_factory(settings.MESSAGING_CLIENT_FACTORY),
        http_client=app.state.http_client,
    )
    logger.info("Multi-user messaging relay ready")

    yield

    # Shutdown
    await ShutdownCoordinator(manager, settings.SHUTDOWN_TIMEOUT_SECONDS).run()
    await app.state.http_client.aclose()
    if app.state.redis is not None:
        await app.state.redis.close()
    await engine.dispose()


app = FastAPI(
    title="chatrelay",
    version="0.1.0",
    lifespan=lifespan,
)

# Middleware
from fastapi.middleware.cors import CORSMiddleware  # noqa: E402

from chatrelay.middleware.rate_limit import RateLimitMiddleware  # noqa: E402

app.add_middleware(RateLimitMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.FRONTEND_URL],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

from chatrelay.middleware.error_handler import register_error_handlers  # noqa: E402

register_error_handlers(app)

# Routers
from chatrelay.routers.auth import router as auth_router  # noqa: E402
from chatrelay.routers.messaging import router as messaging_router  # noqa: E402
from chatrelay.routers.webhooks import router as webhooks_router  # noqa: E402

app.include_router(auth_router)
app.include_router(messaging_router)
app.include_router(webhooks_router)


@app.get("/health")
async def health():
    return {"status": "ok"}

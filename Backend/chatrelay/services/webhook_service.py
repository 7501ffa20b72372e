import asyncio
import hashlib
import hmac
import json
import logging
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chatrelay.config import settings
from chatrelay.models.messaging_session import MessagingSession
from chatrelay.models.webhook_log import DIRECTION_INCOMING, DIRECTION_OUTGOING, WebhookLog

logger = logging.getLogger(__name__)

EVENT_MESSAGE_RECEIVED = "message_received"
EVENT_TEST = "test"


@dataclass(frozen=True)
class WebhookTarget:
    url: str
    secret: str


def generate_secret() -> str:
    """256-bit secret, hex encoded."""
    return secrets.token_hex(32)


def sign_body(secret: str, body: str) -> str:
    return hmac.new(
        secret.encode("utf-8"),
        body.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


def secrets_match(supplied: str, stored: str | None) -> bool:
    if not stored:
        return False
    return hmac.compare_digest(supplied.encode("utf-8"), stored.encode("utf-8"))


async def get_config(db: AsyncSession, user_id: uuid.UUID) -> MessagingSession | None:
    result = await db.execute(
        select(MessagingSession).where(MessagingSession.user_id == user_id)
    )
    return result.scalar_one_or_none()


async def save_config(
    db: AsyncSession,
    user_id: uuid.UUID,
    url: str | None,
    enabled: bool,
) -> tuple[MessagingSession, str]:
    """Create or update the user's webhook configuration with a fresh secret."""
    secret = generate_secret()
    row = await get_config(db, user_id)
    if row is None:
        row = MessagingSession(user_id=user_id, is_connected=False)
        db.add(row)

    row.webhook_url = url
    row.webhook_enabled = enabled
    row.webhook_secret = secret
    row.updated_at = datetime.now(timezone.utc)

    await db.flush()
    return row, secret


def _target_from(row: MessagingSession | None) -> WebhookTarget | None:
    if row is None or not row.webhook_enabled or not row.webhook_url or not row.webhook_secret:
        return None
    return WebhookTarget(url=row.webhook_url, secret=row.webhook_secret)


class WebhookRelay:
    """Delivers event payloads to each user's configured callback URL.

    Delivery is a single POST with a bounded timeout. Every attempt leaves one
    row in ``webhook_logs``; failures are logged and never retried or raised.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        http_client: httpx.AsyncClient | None = None,
        timeout: float | None = None,
    ):
        self._session_factory = session_factory
        self._http_client = http_client
        self._timeout = timeout if timeout is not None else settings.WEBHOOK_TIMEOUT_SECONDS
        self._targets: dict[uuid.UUID, WebhookTarget | None] = {}
        self._tasks: set[asyncio.Task] = set()

    async def configure(
        self,
        db: AsyncSession,
        user_id: uuid.UUID,
        url: str | None,
        enabled: bool,
    ) -> str:
        """Persist a new configuration and return its freshly generated secret."""
        row, secret = await save_config(db, user_id, url, enabled)
        self._targets[user_id] = _target_from(row)
        if self._targets[user_id] is None:
            logger.info("Webhook disabled for user %s", user_id)
        else:
            logger.info("Webhook configured for user %s", user_id)
        return secret

    async def load(self, user_id: uuid.UUID) -> WebhookTarget | None:
        """Read the stored configuration into the cache."""
        try:
            async with self._session_factory() as db:
                row = await get_config(db, user_id)
        except Exception:
            logger.exception("Failed to load webhook config for user %s", user_id)
            return None
        target = _target_from(row)
        self._targets[user_id] = target
        if target is not None:
            logger.info("Loaded webhook for user %s", user_id)
        return target

    def forget(self, user_id: uuid.UUID) -> None:
        self._targets.pop(user_id, None)

    async def target_for(self, user_id: uuid.UUID) -> WebhookTarget | None:
        if user_id in self._targets:
            return self._targets[user_id]
        return await self.load(user_id)

    async def deliver(self, user_id: uuid.UUID, payload: dict) -> bool:
        """POST ``payload`` to the user's webhook. Returns True on a 2xx response."""
        target = await self.target_for(user_id)
        if target is None:
            logger.debug("No webhook configured for user %s", user_id)
            return False

        body = json.dumps(payload, default=str)
        event_type = str(payload.get("event", ""))
        headers = {
            "Content-Type": "application/json",
            "X-Relay-Event": event_type,
            "X-Relay-Signature": f"sha256={sign_body(target.secret, body)}",
        }

        should_close = False
        http_client = self._http_client
        if http_client is None:
            http_client = httpx.AsyncClient(timeout=self._timeout)
            should_close = True

        try:
            response = await http_client.post(
                target.url, content=body, headers=headers, timeout=self._timeout
            )
        except httpx.HTTPError as exc:
            logger.warning("Webhook delivery to %s for user %s failed: %s", target.url, user_id, exc)
            await self._record(
                user_id, DIRECTION_INCOMING, "failed", payload, {"error": str(exc) or type(exc).__name__}
            )
            return False
        finally:
            if should_close:
                await http_client.aclose()

        delivered = 200 <= response.status_code < 300
        if delivered:
            logger.info("Webhook delivered for user %s: %d", user_id, response.status_code)
        else:
            logger.warning(
                "Webhook delivery to %s for user %s returned %d",
                target.url,
                user_id,
                response.status_code,
            )
        await self._record(
            user_id,
            DIRECTION_INCOMING,
            str(response.status_code),
            payload,
            {"status": response.status_code},
        )
        return delivered

    def dispatch(self, user_id: uuid.UUID, payload: dict) -> asyncio.Task:
        """Deliver in a detached task; the caller never waits on or sees the outcome."""
        task = asyncio.create_task(self.deliver(user_id, payload))
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Webhook delivery task crashed", exc_info=task.exception())

    async def record_outgoing(
        self, user_id: uuid.UUID, status: str, payload: dict, response: dict | None = None
    ) -> None:
        await self._record(user_id, DIRECTION_OUTGOING, status, payload, response)

    async def _record(
        self,
        user_id: uuid.UUID,
        direction: str,
        status: str,
        payload: dict,
        response: dict | None,
    ) -> None:
        try:
            async with self._session_factory() as db:
                db.add(
                    WebhookLog(
                        user_id=user_id,
                        direction=direction,
                        status=status,
                        payload=json.loads(json.dumps(payload, default=str)),
                        response=response,
                    )
                )
                await db.commit()
        except Exception:
            logger.exception("Failed to record %s webhook log for user %s", direction, user_id)

    async def drain(self, timeout: float) -> None:
        """Wait for in-flight deliveries, cancelling whatever outlives ``timeout``."""
        if not self._tasks:
            return
        pending = list(self._tasks)
        _, still_running = await asyncio.wait(pending, timeout=timeout)
        for task in still_running:
            task.cancel()

"""Per-user connection lifecycle.

Every session gets one event queue and one consumer task. The client pushes
events onto the queue; the consumer applies them one at a time while holding
the user's lock, which is also taken by teardown. Same-user mutations are
therefore serialized while different users proceed independently.
"""

import asyncio
import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chatrelay.config import settings
from chatrelay.connectors.base import (
    Authenticated,
    AuthenticationFailed,
    ClientEvent,
    ClientFactory,
    ClientFailure,
    Disconnected,
    MessageReceived,
    PairingChallenge,
    Ready,
    RemoteMedia,
    RemoteMessage,
)
from chatrelay.errors import NotConnectedError, ServiceUnavailableError, UpstreamError
from chatrelay.models.messaging_session import MessagingSession
from chatrelay.services.pairing_service import render_pairing_image
from chatrelay.services.session_registry import (
    ChatSummary,
    ConnectionState,
    Session,
    SessionRegistry,
)
from chatrelay.services.webhook_service import EVENT_MESSAGE_RECEIVED, WebhookRelay

logger = logging.getLogger(__name__)

_STOP = object()


def message_payload(message: RemoteMessage) -> dict:
    """Webhook body for an inbound message."""
    return {
        "event": EVENT_MESSAGE_RECEIVED,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "data": {
            "id": message.id,
            "from": message.from_,
            "to": message.to,
            "body": message.body,
            "timestamp": message.timestamp,
            "fromMe": message.from_me,
            "hasMedia": message.has_media,
            "isGroup": message.is_group,
            "author": message.author,
            "chatName": message.notify_name or "Unknown",
        },
    }


class ConnectionManager:
    def __init__(
        self,
        registry: SessionRegistry,
        client_factory: ClientFactory,
        session_factory: async_sessionmaker[AsyncSession],
        relay: WebhookRelay,
        pairing_renderer: Callable[[str], str] = render_pairing_image,
        teardown_delay: float | None = None,
    ):
        self.registry = registry
        self.relay = relay
        self._client_factory = client_factory
        self._session_factory = session_factory
        self._render_pairing = pairing_renderer
        self._teardown_delay = (
            settings.TEARDOWN_DELAY_SECONDS if teardown_delay is None else teardown_delay
        )
        self._background: set[asyncio.Task] = set()
        self._retiring: set[Session] = set()
        self.accepting = True

    # ── Lifecycle ────────────────────────────────────────────────────

    def _new_session(self, user_id: uuid.UUID) -> Session:
        session = Session(user_id)
        session.client = self._client_factory(user_id, session.events.put_nowait)
        return session

    async def ensure_connection(self, user_id: uuid.UUID) -> Session:
        """Return the user's session, creating and starting one if absent.

        Never blocks on the connection itself: the caller sees
        ``uninitialized`` or ``awaiting_scan`` until the client reports back.
        """
        existing = self.registry.get(user_id)
        if existing is not None:
            return existing
        if not self.accepting:
            raise ServiceUnavailableError()

        session, created = self.registry.get_or_create(user_id, self._new_session)
        if not created:
            return session

        logger.info("Creating messaging session for user %s", user_id)
        async with self.registry.lock_for(user_id):
            # A teardown may have retired the session while we waited.
            if not self.registry.is_current(session):
                return session
            await self.relay.load(user_id)
            session.consumer = self._spawn(self._consume(session), f"consume:{user_id}")
            self._spawn(self._initialize(session), f"initialize:{user_id}")
        return session

    async def _initialize(self, session: Session) -> None:
        try:
            await session.client.initialize()
        except Exception as exc:
            logger.exception("Client initialization failed for user %s", session.user_id)
            session.events.put_nowait(Disconnected(reason=f"initialization failed: {exc}"))

    async def teardown(self, user_id: uuid.UUID) -> bool:
        """Log the user out and retire their session. Returns False if none existed."""
        async with self.registry.lock_for(user_id):
            session = self.registry.remove(user_id)
            if session is None:
                return False

            logger.info("Tearing down messaging session for user %s", user_id)
            self.relay.forget(user_id)
            self._retiring.add(session)
            try:
                await session.client.logout()
            except Exception as exc:
                logger.warning("Logout failed for user %s (ignored): %s", user_id, exc)

            session.state = ConnectionState.DISCONNECTED
            session.chats = []
            await self._persist_connectivity(user_id, connected=False)

        self._spawn(self._destroy_later(session), f"destroy:{user_id}")
        return True

    async def _destroy_later(self, session: Session) -> None:
        await asyncio.sleep(self._teardown_delay)
        await self.retire(session)

    async def retire(self, session: Session) -> None:
        await self._destroy(session)
        session.events.put_nowait(_STOP)
        self._retiring.discard(session)

    async def _destroy(self, session: Session) -> None:
        if session.destroyed:
            return
        session.destroyed = True
        try:
            await session.client.destroy()
            logger.info("Client destroyed for user %s", session.user_id)
        except Exception as exc:
            logger.warning("Client destroy failed for user %s (ignored): %s", session.user_id, exc)

    def detach_all(self) -> list[Session]:
        """Stop accepting sessions and hand back every client still needing destruction."""
        self.accepting = False
        detached = []
        for session in self.registry.sessions():
            self.registry.remove(session.user_id)
            detached.append(session)
        detached.extend(s for s in self._retiring if s not in detached)
        return detached

    def cancel_background(self) -> None:
        for task in list(self._background):
            task.cancel()

    # ── Event handling ───────────────────────────────────────────────

    async def _consume(self, session: Session) -> None:
        while True:
            event = await session.events.get()
            try:
                if event is _STOP:
                    return
                async with self.registry.lock_for(session.user_id):
                    if not self.registry.is_current(session):
                        logger.debug(
                            "Dropping %s for retired session of user %s",
                            type(event).__name__,
                            session.user_id,
                        )
                        continue
                    await self._apply(session, event)
            except Exception:
                logger.exception(
                    "Error handling %s for user %s", type(event).__name__, session.user_id
                )
            finally:
                session.events.task_done()

    async def _apply(self, session: Session, event: ClientEvent) -> None:
        user_id = session.user_id

        if isinstance(event, PairingChallenge):
            logger.info("Pairing code issued for user %s", user_id)
            session.state = ConnectionState.AWAITING_SCAN
            session.pairing_code = event.code
            session.pairing_image = self._render_pairing(event.code)

        elif isinstance(event, Authenticated):
            logger.info("Stored session accepted for user %s", user_id)

        elif isinstance(event, Ready):
            logger.info("Messaging connected for user %s", user_id)
            session.state = ConnectionState.CONNECTED
            session.pairing_code = None
            session.pairing_image = ""
            await self._refresh_chats(session)
            await self._persist_connectivity(user_id, connected=True)

        elif isinstance(event, MessageReceived):
            logger.info("New message for user %s from %s", user_id, event.message.from_)
            await self._refresh_chats(session)
            self.relay.dispatch(user_id, message_payload(event.message))

        elif isinstance(event, Disconnected):
            logger.info("Messaging disconnected for user %s: %s", user_id, event.reason)
            session.state = ConnectionState.DISCONNECTED
            session.chats = []
            await self._persist_connectivity(user_id, connected=False)

        elif isinstance(event, AuthenticationFailed):
            logger.warning("Authentication failed for user %s: %s", user_id, event.reason)
            session.state = ConnectionState.AUTHENTICATION_FAILED
            session.pairing_code = None
            session.pairing_image = ""
            await self._persist_connectivity(user_id, connected=False)

        elif isinstance(event, ClientFailure):
            logger.warning("Client error for user %s: %s", user_id, event.error)

    async def _refresh_chats(self, session: Session) -> None:
        try:
            chats = await session.client.get_chats()

            async def summarize(chat) -> ChatSummary:
                last = await session.client.fetch_messages(chat.id, 1)
                return ChatSummary(
                    id=chat.id,
                    name=chat.name,
                    is_group=chat.is_group,
                    unread_count=chat.unread_count,
                    last_message=last[-1].body if last else "No messages",
                    timestamp=last[-1].timestamp if last else int(datetime.now(timezone.utc).timestamp()),
                )

            summaries = await asyncio.gather(*(summarize(c) for c in chats))
        except Exception:
            logger.exception("Error loading chats for user %s", session.user_id)
            return

        session.chats = sorted(summaries, key=lambda c: c.timestamp, reverse=True)
        logger.info("Loaded %d chats for user %s", len(session.chats), session.user_id)

    async def _persist_connectivity(self, user_id: uuid.UUID, connected: bool) -> None:
        """Upsert the connectivity flag. Failures are logged, never raised."""
        try:
            async with self._session_factory() as db:
                result = await db.execute(
                    select(MessagingSession).where(MessagingSession.user_id == user_id)
                )
                row = result.scalar_one_or_none()
                if row is None:
                    row = MessagingSession(user_id=user_id)
                    db.add(row)
                row.is_connected = connected
                row.updated_at = datetime.now(timezone.utc)
                await db.commit()
        except Exception:
            logger.exception("Failed to persist connectivity for user %s (ignored)", user_id)

    # ── Operations on a live connection ──────────────────────────────

    def _require(self, user_id: uuid.UUID) -> Session:
        session = self.registry.get(user_id)
        if session is None:
            raise NotConnectedError()
        return session

    async def list_messages(
        self, user_id: uuid.UUID, chat_id: str, limit: int | None = None
    ) -> list[tuple[RemoteMessage, RemoteMedia | None]]:
        session = self._require(user_id)
        limit = limit or settings.MESSAGE_HISTORY_LIMIT
        try:
            messages = await session.client.fetch_messages(chat_id, limit)
        except Exception as exc:
            logger.exception("Error fetching messages for user %s chat %s", user_id, chat_id)
            raise UpstreamError() from exc

        async def with_media(message: RemoteMessage) -> tuple[RemoteMessage, RemoteMedia | None]:
            if not message.has_media:
                return message, None
            try:
                return message, await session.client.download_media(message)
            except Exception as exc:
                logger.warning("Error downloading media %s for user %s: %s", message.id, user_id, exc)
                return message, None

        return list(await asyncio.gather(*(with_media(m) for m in messages[-limit:])))

    async def send_text(self, user_id: uuid.UUID, chat_id: str, text: str) -> None:
        session = self._require(user_id)
        try:
            await session.client.send_message(chat_id, text)
        except Exception as exc:
            logger.exception("Error sending message for user %s to %s", user_id, chat_id)
            raise UpstreamError() from exc
        logger.info("Message sent for user %s to %s", user_id, chat_id)

    async def send_media(
        self, user_id: uuid.UUID, chat_id: str, media: RemoteMedia, caption: str = ""
    ) -> None:
        session = self._require(user_id)
        try:
            await session.client.send_media(chat_id, media, caption=caption)
        except Exception as exc:
            logger.exception("Error sending media for user %s to %s", user_id, chat_id)
            raise UpstreamError() from exc
        logger.info("Media sent for user %s to %s", user_id, chat_id)

    # ── Background task bookkeeping ──────────────────────────────────

    def _spawn(self, coro, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Background task %s crashed", task.get_name(), exc_info=task.exception())

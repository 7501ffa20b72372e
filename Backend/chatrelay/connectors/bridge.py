"""MessagingClient backed by an HTTP messaging bridge sidecar.

The bridge runs the actual network protocol and exposes one session per
user id:

    POST   /sessions/{id}                          start connecting
    GET    /sessions/{id}/events                   Server-Sent Events stream
    GET    /sessions/{id}/chats
    GET    /sessions/{id}/chats/{chat}/messages?limit=N
    GET    /sessions/{id}/messages/{message}/media
    POST   /sessions/{id}/messages                 send text or media
    POST   /sessions/{id}/logout
    DELETE /sessions/{id}

Event names on the stream: qr, authenticated, ready, message, disconnected,
auth_failure, error.
"""

import asyncio
import json
import logging
import uuid
from urllib.parse import quote

import httpx

from chatrelay.config import settings
from chatrelay.connectors.base import (
    Authenticated,
    AuthenticationFailed,
    ClientEvent,
    ClientFailure,
    ConnectorError,
    Disconnected,
    EmitCallback,
    MessageReceived,
    MessagingClient,
    PairingChallenge,
    Ready,
    RemoteChat,
    RemoteMedia,
    RemoteMessage,
)

logger = logging.getLogger(__name__)


def parse_message(data: dict) -> RemoteMessage:
    return RemoteMessage(
        id=str(data["id"]),
        chat_id=data.get("chatId") or data.get("from", ""),
        body=data.get("body") or "",
        timestamp=int(data.get("timestamp") or 0),
        from_=data.get("from", ""),
        to=data.get("to", ""),
        from_me=bool(data.get("fromMe", False)),
        has_media=bool(data.get("hasMedia", False)),
        is_group=bool(data.get("isGroup", False)),
        author=data.get("author"),
        notify_name=data.get("notifyName"),
    )


def parse_event(name: str, data: dict) -> ClientEvent | None:
    """Translate one bridge event into a client event. Unknown names yield None."""
    if name == "qr":
        return PairingChallenge(code=data["code"])
    if name == "authenticated":
        return Authenticated()
    if name == "ready":
        return Ready()
    if name == "message":
        return MessageReceived(message=parse_message(data))
    if name == "disconnected":
        return Disconnected(reason=data.get("reason", ""))
    if name == "auth_failure":
        return AuthenticationFailed(reason=data.get("reason", ""))
    if name == "error":
        return ClientFailure(error=data.get("message", ""))
    return None


class BridgeClient(MessagingClient):
    def __init__(
        self,
        user_id: uuid.UUID,
        emit: EmitCallback,
        base_url: str | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        super().__init__(user_id, emit)
        self._base_url = (base_url or settings.MESSAGING_BRIDGE_URL).rstrip("/")
        self._should_close = http_client is None
        self._client = http_client or httpx.AsyncClient(base_url=self._base_url, timeout=30.0)
        self._prefix = f"/sessions/{user_id}"
        self._listener: asyncio.Task | None = None
        self._closing = False

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            response = await self._client.request(method, self._prefix + path, **kwargs)
        except httpx.HTTPError as exc:
            raise ConnectorError(f"Bridge request {method} {path} failed: {exc}") from exc
        if response.status_code >= 400:
            raise ConnectorError(
                f"Bridge request {method} {path} returned {response.status_code}"
            )
        return response

    async def initialize(self) -> None:
        await self._request("POST", "")
        self._listener = asyncio.create_task(self._listen())

    async def _listen(self) -> None:
        event_name = ""
        try:
            async with self._client.stream("GET", f"{self._prefix}/events", timeout=None) as resp:
                if resp.status_code >= 400:
                    raise ConnectorError(f"Event stream returned {resp.status_code}")
                async for line in resp.aiter_lines():
                    line = line.strip()
                    if line.startswith("event:"):
                        event_name = line[6:].strip()
                    elif line.startswith("data:"):
                        self._dispatch(event_name, line[5:].strip())
                        event_name = ""
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if not self._closing:
                logger.warning("Bridge event stream for %s failed: %s", self.user_id, exc)
                self.emit(Disconnected(reason=f"event stream failed: {exc}"))
            return

        if not self._closing:
            self.emit(Disconnected(reason="event stream closed"))

    def _dispatch(self, event_name: str, raw: str) -> None:
        """Emit one stream event. A malformed event is logged and skipped."""
        try:
            event = parse_event(event_name, json.loads(raw or "{}"))
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            logger.warning(
                "Skipping malformed bridge event %r for %s: %s", event_name, self.user_id, exc
            )
            return
        if event is not None:
            self.emit(event)

    async def get_chats(self) -> list[RemoteChat]:
        response = await self._request("GET", "/chats")
        return [
            RemoteChat(
                id=item["id"],
                name=item.get("name") or item["id"].split("@")[0],
                is_group=bool(item.get("isGroup", False)),
                unread_count=int(item.get("unreadCount") or 0),
            )
            for item in response.json()
        ]

    async def fetch_messages(self, chat_id: str, limit: int) -> list[RemoteMessage]:
        response = await self._request(
            "GET", f"/chats/{quote(chat_id, safe='')}/messages", params={"limit": limit}
        )
        return [parse_message(item) for item in response.json()]

    async def download_media(self, message: RemoteMessage) -> RemoteMedia | None:
        try:
            response = await self._client.get(
                f"{self._prefix}/messages/{quote(message.id, safe='')}/media"
            )
        except httpx.HTTPError as exc:
            raise ConnectorError(f"Media download failed: {exc}") from exc
        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise ConnectorError(f"Media download returned {response.status_code}")
        data = response.json()
        return RemoteMedia(
            mimetype=data["mimetype"], data=data["data"], filename=data.get("filename")
        )

    async def send_message(self, chat_id: str, text: str) -> None:
        await self._request("POST", "/messages", json={"chatId": chat_id, "text": text})

    async def send_media(self, chat_id: str, media: RemoteMedia, caption: str = "") -> None:
        await self._request(
            "POST",
            "/messages",
            json={
                "chatId": chat_id,
                "caption": caption,
                "media": {
                    "mimetype": media.mimetype,
                    "data": media.data,
                    "filename": media.filename,
                },
            },
        )

    async def logout(self) -> None:
        await self._request("POST", "/logout")

    async def destroy(self) -> None:
        self._closing = True
        if self._listener is not None:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            self._listener = None
        try:
            await self._request("DELETE", "")
        finally:
            if self._should_close:
                await self._client.aclose()

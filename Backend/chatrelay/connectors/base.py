"""Interface to the external messaging network.

A ``MessagingClient`` is one connection to the network on behalf of one user.
It is created by a factory taking the user id and an ``emit`` callback; the
client reports everything that happens to it (pairing challenges, readiness,
inbound messages, disconnects) by calling ``emit`` with one of the event
dataclasses below. Commands are plain coroutine methods.

Implementations may raise any exception from any method; callers treat every
failure as an upstream error.
"""

import abc
import uuid
from collections.abc import Callable
from dataclasses import dataclass


class ConnectorError(Exception):
    """Raised by connector implementations for protocol-level failures."""


# ── Value types ──────────────────────────────────────────────────────


@dataclass(frozen=True)
class RemoteChat:
    id: str
    name: str
    is_group: bool = False
    unread_count: int = 0


@dataclass(frozen=True)
class RemoteMedia:
    mimetype: str
    data: str  # base64
    filename: str | None = None


@dataclass(frozen=True)
class RemoteMessage:
    id: str
    chat_id: str
    body: str
    timestamp: int  # unix seconds
    from_: str
    to: str = ""
    from_me: bool = False
    has_media: bool = False
    is_group: bool = False
    author: str | None = None
    notify_name: str | None = None


# ── Events ───────────────────────────────────────────────────────────


@dataclass(frozen=True)
class PairingChallenge:
    code: str


@dataclass(frozen=True)
class Authenticated:
    """A stored session was accepted; ``Ready`` follows."""


@dataclass(frozen=True)
class Ready:
    pass


@dataclass(frozen=True)
class MessageReceived:
    message: RemoteMessage


@dataclass(frozen=True)
class Disconnected:
    reason: str = ""


@dataclass(frozen=True)
class AuthenticationFailed:
    reason: str = ""


@dataclass(frozen=True)
class ClientFailure:
    error: str = ""


ClientEvent = (
    PairingChallenge
    | Authenticated
    | Ready
    | MessageReceived
    | Disconnected
    | AuthenticationFailed
    | ClientFailure
)

EmitCallback = Callable[[ClientEvent], None]


class MessagingClient(abc.ABC):
    """One connection to the messaging network, owned by one session."""

    def __init__(self, user_id: uuid.UUID, emit: EmitCallback):
        self.user_id = user_id
        self.emit = emit

    @abc.abstractmethod
    async def initialize(self) -> None:
        """Start connecting. Returns once the attempt is under way."""

    @abc.abstractmethod
    async def get_chats(self) -> list[RemoteChat]:
        ...

    @abc.abstractmethod
    async def fetch_messages(self, chat_id: str, limit: int) -> list[RemoteMessage]:
        """Most recent ``limit`` messages of a chat, oldest first."""

    @abc.abstractmethod
    async def download_media(self, message: RemoteMessage) -> RemoteMedia | None:
        ...

    @abc.abstractmethod
    async def send_message(self, chat_id: str, text: str) -> None:
        ...

    @abc.abstractmethod
    async def send_media(
        self, chat_id: str, media: RemoteMedia, caption: str = ""
    ) -> None:
        ...

    @abc.abstractmethod
    async def logout(self) -> None:
        """Unlink the device from the network account."""

    @abc.abstractmethod
    async def destroy(self) -> None:
        """Release every resource held by the client."""


ClientFactory = Callable[[uuid.UUID, EmitCallback], MessagingClient]


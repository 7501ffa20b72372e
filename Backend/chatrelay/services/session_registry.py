"""In-memory registry of live messaging sessions, one per user.

The registry is a process-scoped container created at start-up and drained at
shutdown. It only tracks sessions; creating and destroying the underlying
connections is the connection manager's job.
"""

import asyncio
import enum
import threading
import uuid
import weakref
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone

from chatrelay.connectors.base import MessagingClient


class ConnectionState(str, enum.Enum):
    UNINITIALIZED = "uninitialized"
    AWAITING_SCAN = "awaiting_scan"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    AUTHENTICATION_FAILED = "authentication_failed"


@dataclass
class ChatSummary:
    id: str
    name: str
    is_group: bool
    unread_count: int
    last_message: str
    timestamp: int


class Session:
    """Live or attempted connection state for one user.

    Attributes:
        user_id: Identity provider's id for the user.
        client: The connection handle. Owned by this session alone.
        state: Current ConnectionState.
        pairing_code: Pending pairing challenge, only set while awaiting a scan.
        pairing_image: PNG data URL rendering of ``pairing_code``.
        chats: Chat summaries, most recent first. Volatile.
        events: Queue of client events consumed by the manager.
        destroyed: Set once ``client.destroy()`` has been attempted.
    """

    def __init__(self, user_id: uuid.UUID):
        self.user_id = user_id
        self.client: MessagingClient | None = None
        self.state = ConnectionState.UNINITIALIZED
        self.pairing_code: str | None = None
        self.pairing_image: str = ""
        self.chats: list[ChatSummary] = []
        self.events: asyncio.Queue = asyncio.Queue()
        self.consumer: asyncio.Task | None = None
        self.destroyed = False
        self.created_at = datetime.now(timezone.utc)

    @property
    def ready(self) -> bool:
        return self.state is ConnectionState.CONNECTED


class SessionRegistry:
    """Maps user id to Session with test-and-set creation.

    ``get_or_create`` never awaits, so under asyncio it cannot interleave with
    another call; the threading lock keeps the same guarantee when callers run
    on a thread pool.
    """

    def __init__(self) -> None:
        self._sessions: dict[uuid.UUID, Session] = {}
        # Entries vanish once no task holds or awaits the lock.
        self._user_locks: weakref.WeakValueDictionary[uuid.UUID, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )
        self._guard = threading.Lock()

    def get(self, user_id: uuid.UUID) -> Session | None:
        return self._sessions.get(user_id)

    def get_or_create(
        self, user_id: uuid.UUID, factory: Callable[[uuid.UUID], Session]
    ) -> tuple[Session, bool]:
        """Return (session, created). ``factory`` runs only when no session exists."""
        with self._guard:
            existing = self._sessions.get(user_id)
            if existing is not None:
                return existing, False
            session = factory(user_id)
            self._sessions[user_id] = session
            return session, True

    def remove(self, user_id: uuid.UUID) -> Session | None:
        """Detach a session. Its client is left for the caller to destroy."""
        with self._guard:
            return self._sessions.pop(user_id, None)

    def is_current(self, session: Session) -> bool:
        return self._sessions.get(session.user_id) is session

    def lock_for(self, user_id: uuid.UUID) -> asyncio.Lock:
        """Per-user lock serializing state mutations for that user."""
        with self._guard:
            lock = self._user_locks.get(user_id)
            if lock is None:
                lock = self._user_locks[user_id] = asyncio.Lock()
            return lock

    def sessions(self) -> list[Session]:
        with self._guard:
            return list(self._sessions.values())

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, user_id: uuid.UUID) -> bool:
        return user_id in self._sessions

"""
Active-session cache, pub/sub and notification boundaries.

The cache is an acceleration structure only: everything it holds can be
rebuilt from the ``sessions`` table (see ``rebuild_active_sessions``).
"""
from __future__ import annotations

import threading
import time
from collections import defaultdict, deque
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Set, Tuple

from streamguard.logging_utils import get_logger

logger = get_logger("cache")

ACTIVE_SESSIONS_TTL_SEC = 300


# -------------------------------------------------------------------
# Active sessions
# -------------------------------------------------------------------

class ActiveSessionStore:
    """Key/value + set store for the ActiveSession projection."""

    def get_active_sessions(self) -> Optional[List[dict]]:
        """None means the snapshot is missing (cold start, expiry, loss)."""
        raise NotImplementedError

    def set_active_sessions(self, sessions: Iterable[dict]) -> None:
        raise NotImplementedError

    def get_session_by_id(self, session_id: int) -> Optional[dict]:
        raise NotImplementedError

    def set_session_by_id(self, session_id: int, session: dict) -> None:
        raise NotImplementedError

    def delete_session_by_id(self, session_id: int) -> None:
        raise NotImplementedError

    def add_user_session(self, user_id: int, session_id: int) -> None:
        raise NotImplementedError

    def remove_user_session(self, user_id: int, session_id: int) -> None:
        raise NotImplementedError

    def get_user_session_ids(self, user_id: int) -> Set[int]:
        raise NotImplementedError

    def clear(self) -> None:
        raise NotImplementedError


class MemoryActiveSessionStore(ActiveSessionStore):
    def __init__(self, ttl_sec: int = ACTIVE_SESSIONS_TTL_SEC, clock: Callable[[], float] = time.monotonic):
        self._lock = threading.Lock()
        self._ttl = ttl_sec
        self._clock = clock
        self._active: Optional[List[dict]] = None
        self._active_written_at = 0.0
        self._by_id: Dict[int, dict] = {}
        self._user_sessions: Dict[int, Set[int]] = defaultdict(set)

    def get_active_sessions(self) -> Optional[List[dict]]:
        with self._lock:
            if self._active is None:
                return None
            if self._ttl and self._clock() - self._active_written_at > self._ttl:
                self._active = None
                return None
            return [dict(s) for s in self._active]

    def set_active_sessions(self, sessions: Iterable[dict]) -> None:
        with self._lock:
            self._active = [dict(s) for s in sessions]
            self._active_written_at = self._clock()

    def get_session_by_id(self, session_id: int) -> Optional[dict]:
        with self._lock:
            s = self._by_id.get(int(session_id))
            return dict(s) if s else None

    def set_session_by_id(self, session_id: int, session: dict) -> None:
        with self._lock:
            self._by_id[int(session_id)] = dict(session)

    def delete_session_by_id(self, session_id: int) -> None:
        with self._lock:
            self._by_id.pop(int(session_id), None)

    def add_user_session(self, user_id: int, session_id: int) -> None:
        with self._lock:
            self._user_sessions[int(user_id)].add(int(session_id))

    def remove_user_session(self, user_id: int, session_id: int) -> None:
        with self._lock:
            self._user_sessions[int(user_id)].discard(int(session_id))

    def get_user_session_ids(self, user_id: int) -> Set[int]:
        with self._lock:
            return set(self._user_sessions.get(int(user_id), set()))

    def clear(self) -> None:
        with self._lock:
            self._active = None
            self._by_id.clear()
            self._user_sessions.clear()


# -------------------------------------------------------------------
# Pub/sub (best effort)
# -------------------------------------------------------------------

class PubSub:
    def publish(self, event: str, payload: Any) -> None:
        raise NotImplementedError


class LocalPubSub(PubSub):
    """
    In-process pub/sub. A failing subscriber is logged and skipped,
    the other subscribers still receive the event.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._subscribers: Dict[str, List[Callable[[str, Any], None]]] = defaultdict(list)

    def subscribe(self, event: str, callback: Callable[[str, Any], None]) -> Callable[[], None]:
        with self._lock:
            self._subscribers[event].append(callback)

        def unsubscribe():
            with self._lock:
                if callback in self._subscribers[event]:
                    self._subscribers[event].remove(callback)

        return unsubscribe

    def publish(self, event: str, payload: Any) -> None:
        with self._lock:
            callbacks = list(self._subscribers.get(event, [])) + list(self._subscribers.get("*", []))
        for cb in callbacks:
            try:
                cb(event, payload)
            except Exception:
                logger.exception(f"Subscriber failed for event {event}")


# -------------------------------------------------------------------
# Notifications (fire-and-forget, transport hors périmètre)
# -------------------------------------------------------------------

class NotificationQueue:
    def enqueue(self, kind: str, payload: Any) -> None:
        raise NotImplementedError


class InMemoryNotificationQueue(NotificationQueue):
    def __init__(self, maxlen: int = 1000):
        self._lock = threading.Lock()
        self._items: Deque[Tuple[str, Any]] = deque(maxlen=maxlen)

    def enqueue(self, kind: str, payload: Any) -> None:
        with self._lock:
            self._items.append((kind, payload))

    def drain(self) -> List[Tuple[str, Any]]:
        with self._lock:
            items = list(self._items)
            self._items.clear()
        return items

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from typing import Optional, Tuple

from tablecrm.agent_session import ChatSession
from tablecrm.settings import SESSION_IDLE_TTL_S, SESSION_MAX

log = logging.getLogger("api.sessions")

SessionKey = Tuple[str, str]


class SessionCache:
    """Chat sessions keyed by (table_id, session_id), least recently used first.

    Sessions idle longer than ``idle_ttl_s`` are dropped on access; past
    ``max_size`` the least recently used one goes.
    """

    def __init__(self, *, idle_ttl_s: float = SESSION_IDLE_TTL_S, max_size: int = SESSION_MAX):
        self.idle_ttl_s = idle_ttl_s
        self.max_size = max(1, max_size)
        self._items: "OrderedDict[SessionKey, Tuple[float, ChatSession]]" = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._items)

    def _expire(self, now: float) -> None:
        stale = [k for k, (ts, _) in self._items.items() if now - ts > self.idle_ttl_s]
        for k in stale:
            del self._items[k]
        if stale:
            log.info("dropped %s idle chat sessions", len(stale))

    def get(self, key: SessionKey, now: Optional[float] = None) -> Optional[ChatSession]:
        now = time.time() if now is None else now
        with self._lock:
            self._expire(now)
            hit = self._items.get(key)
            if hit is None:
                return None
            self._items[key] = (now, hit[1])
            self._items.move_to_end(key)
            return hit[1]

    def put(self, key: SessionKey, session: ChatSession, now: Optional[float] = None) -> None:
        now = time.time() if now is None else now
        with self._lock:
            self._expire(now)
            self._items[key] = (now, session)
            self._items.move_to_end(key)
            while len(self._items) > self.max_size:
                self._items.popitem(last=False)

    def __setitem__(self, key: SessionKey, session: ChatSession) -> None:
        self.put(key, session)

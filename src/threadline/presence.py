"""
Ephemeral typing/presence state per conversation.

Process-scoped and non-durable. Each "typing" signal schedules a flip back
to "not typing" after the TTL; reads older than the TTL are reported as not
typing even if the flip has not fired yet.
"""

import threading
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Optional


@dataclass(frozen=True)
class PresenceEntry:
    is_typing: bool
    observed_at: float


class PresenceTracker:
    """Typing indicators keyed by conversation id."""

    def __init__(
        self,
        ttl_seconds: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
        auto_expire: bool = True,
    ):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._auto_expire = auto_expire
        self._entries: dict[uuid.UUID, PresenceEntry] = {}
        self._timers: dict[uuid.UUID, threading.Timer] = {}
        self._lock = threading.Lock()

    def set_typing(self, conversation_id: uuid.UUID, is_typing: bool) -> None:
        """Record a presence signal, rescheduling the expiry flip."""
        now = self._clock()
        with self._lock:
            self._entries[conversation_id] = PresenceEntry(is_typing, now)
            self._cancel_timer(conversation_id)
            if is_typing and self._auto_expire:
                timer = threading.Timer(
                    self.ttl_seconds, self._expire, args=(conversation_id, now)
                )
                timer.daemon = True
                self._timers[conversation_id] = timer
                timer.start()

    def is_typing(self, conversation_id: uuid.UUID) -> bool:
        """Whether the remote party is typing; stale entries read as False."""
        entry = self.get(conversation_id)
        return entry is not None and entry.is_typing

    def get(self, conversation_id: uuid.UUID) -> Optional[PresenceEntry]:
        with self._lock:
            entry = self._entries.get(conversation_id)
        if entry is None:
            return None
        if entry.is_typing and self._clock() - entry.observed_at >= self.ttl_seconds:
            return PresenceEntry(False, entry.observed_at)
        return entry

    def clear(self) -> None:
        with self._lock:
            for conversation_id in list(self._timers):
                self._cancel_timer(conversation_id)
            self._entries.clear()

    def shutdown(self) -> None:
        """Cancel pending expiry timers."""
        self.clear()

    def _expire(self, conversation_id: uuid.UUID, observed_at: float) -> None:
        with self._lock:
            entry = self._entries.get(conversation_id)
            # A newer signal owns the entry now
            if entry is None or entry.observed_at != observed_at:
                return
            self._entries[conversation_id] = PresenceEntry(False, self._clock())
            self._timers.pop(conversation_id, None)

    def _cancel_timer(self, conversation_id: uuid.UUID) -> None:
        timer = self._timers.pop(conversation_id, None)
        if timer is not None:
            timer.cancel()

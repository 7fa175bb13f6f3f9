"""
In-memory webhook diagnostics.

A bounded ring buffer of recently received webhook calls plus the last
event seen per gateway instance, capped at the most recently active
instances. Non-durable and owned by the application instance
(``app.state.diagnostics``); used to debug gateway configuration.
"""

import json
import threading
from collections import OrderedDict, deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

SAFE_HEADERS = ("content-type", "user-agent", "x-forwarded-for", "x-real-ip")
REDACTED_KEYS = frozenset({"apikey"})
MAX_DATA_KEYS = 15


@dataclass
class WebhookEventRecord:
    """One received webhook call, with secrets removed."""

    at: str
    instance_name: Optional[str]
    event: Optional[str]
    normalized_event: Optional[str]
    headers: dict[str, Optional[str]] = field(default_factory=dict)
    preview: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class InstanceActivity:
    """Last webhook seen for a gateway instance."""

    at: str
    event: Optional[str]
    data_keys: list[str] = field(default_factory=list)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class WebhookDiagnostics:
    """Thread-safe ring buffer of webhook calls."""

    def __init__(
        self,
        max_events: int = 200,
        preview_max_chars: int = 4000,
        max_instances: int = 100,
    ):
        self.max_events = max_events
        self.preview_max_chars = preview_max_chars
        self.max_instances = max_instances
        self._events: deque[WebhookEventRecord] = deque(maxlen=max_events)
        # Least recently active first
        self._last_by_instance: OrderedDict[str, InstanceActivity] = OrderedDict()
        self._lock = threading.Lock()

    def record(
        self,
        payload: Any,
        headers: Mapping[str, str],
        instance_name: Optional[str],
        event: Optional[str],
        normalized_event: Optional[str],
    ) -> WebhookEventRecord:
        """Store a sanitized copy of a webhook call."""
        at = _now_iso()
        # W-API callbacks are flat; their body is the event data
        data = payload.get("data", payload) if isinstance(payload, dict) else None
        data_keys = list(data.keys())[:MAX_DATA_KEYS] if isinstance(data, dict) else []

        record = WebhookEventRecord(
            at=at,
            instance_name=instance_name,
            event=event,
            normalized_event=normalized_event,
            headers={name: headers.get(name) for name in SAFE_HEADERS},
            preview=self._preview(payload),
        )
        with self._lock:
            self._events.append(record)
            key = instance_name or "unknown"
            self._last_by_instance.pop(key, None)
            self._last_by_instance[key] = InstanceActivity(
                at=at, event=normalized_event or event, data_keys=data_keys
            )
            while len(self._last_by_instance) > self.max_instances:
                self._last_by_instance.popitem(last=False)
        return record

    def recent(
        self, instance_name: Optional[str] = None, limit: int = 50
    ) -> list[WebhookEventRecord]:
        """Most recent records first, optionally filtered by instance."""
        with self._lock:
            events = list(self._events)
        if instance_name is not None:
            events = [e for e in events if e.instance_name == instance_name]
        return list(reversed(events))[: max(limit, 0)]

    def last_seen(self, instance_name: str) -> Optional[InstanceActivity]:
        with self._lock:
            return self._last_by_instance.get(instance_name)

    def clear(self, instance_name: Optional[str] = None) -> int:
        """
        Drop buffered records.

        Args:
            instance_name: Only drop this instance's records (all if None)

        Returns:
            Number of records removed
        """
        with self._lock:
            before = len(self._events)
            if instance_name is None:
                self._events.clear()
                self._last_by_instance.clear()
            else:
                kept = [e for e in self._events if e.instance_name != instance_name]
                self._events.clear()
                self._events.extend(kept)
                self._last_by_instance.pop(instance_name, None)
            return before - len(self._events)

    def _preview(self, payload: Any) -> str:
        if isinstance(payload, dict):
            payload = {k: v for k, v in payload.items() if k not in REDACTED_KEYS}
        try:
            preview = json.dumps(payload, default=str, ensure_ascii=False)
        except (TypeError, ValueError):
            return ""
        if len(preview) > self.preview_max_chars:
            preview = f"{preview[: self.preview_max_chars]}…"
        return preview

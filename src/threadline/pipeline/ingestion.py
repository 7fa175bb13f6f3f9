"""
Webhook ingestion and dedup coordinator.

Turns gateway callbacks into Conversation and Message rows. Each unwrapped
message is its own unit of work: it is committed on success and rolled back
and logged on failure, and processing continues with the next message. The
caller always gets an outcome, never an exception, because the gateway
treats a failed acknowledgement as a retry signal.

Per-message states:
    received -> classified -> (ignored | conversation resolved)
             -> (duplicate | reconciled | new) -> persisted -> dispatched

Status updates, connection updates and presence updates use their own,
simpler handlers.
"""

import logging
import time
import uuid
from concurrent.futures import Future
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from sqlalchemy.orm import Session

from threadline.automation.dispatcher import AutomationDispatcher
from threadline.config import settings
from threadline.db.repositories import (
    ConnectionRepository,
    ConversationRepository,
    MessageRepository,
)
from threadline.gateway.base import map_connection_state
from threadline.models.db import (
    Connection,
    GatewayProvider,
    Message,
    MessageStatus,
    MessageType,
)
from threadline.models.envelope import (
    ClassifiedContent,
    Ignored,
    InboundMessage,
    MessageOutcome,
    WebhookEnvelope,
)
from threadline.pipeline.classifier import classify
from threadline.pipeline.conversations import ConversationResolver
from threadline.pipeline.identifiers import (
    extract_phone,
    is_broadcast_jid,
    normalize_remote_jid,
)
from threadline.pipeline.media import MediaResolver
from threadline.presence import PresenceTracker

logger = logging.getLogger(__name__)

# Event families (normalized: lowercase, dots)
MESSAGE_EVENTS = frozenset({"messages.upsert", "send.message"})
STATUS_EVENTS = frozenset({"messages.update"})
CONNECTION_EVENTS = frozenset({"connection.update"})
PRESENCE_EVENTS = frozenset({"presence.update"})
IGNORED_EVENTS = frozenset(
    {
        "qrcode.updated",
        "application.startup",
        "messages.set",
        "messages.delete",
        "contacts.set",
        "contacts.upsert",
        "contacts.update",
        "chats.set",
        "chats.upsert",
        "chats.update",
        "chats.delete",
        "groups.upsert",
        "groups.update",
        "group.participants.update",
        "labels.edit",
        "labels.association",
        "call",
        "typebot.start",
        "typebot.change.status",
    }
)

# Gateway delivery codes and their textual names
STATUS_CODES: dict[Any, MessageStatus] = {
    1: MessageStatus.PENDING,
    2: MessageStatus.SENT,
    3: MessageStatus.DELIVERED,
    4: MessageStatus.READ,
    5: MessageStatus.PLAYED,
    "PENDING": MessageStatus.PENDING,
    "SERVER_ACK": MessageStatus.SENT,
    "DELIVERY_ACK": MessageStatus.DELIVERED,
    "READ": MessageStatus.READ,
    "PLAYED": MessageStatus.PLAYED,
}

GROUP_SUBJECT_KEYS = ("subject", "name")

# W-API delivery acks; -1 and 0 report a failed send
WAPI_ACK_CODES: dict[int, MessageStatus] = {
    -1: MessageStatus.FAILED,
    0: MessageStatus.FAILED,
    1: MessageStatus.SENT,
    2: MessageStatus.DELIVERED,
    3: MessageStatus.READ,
    4: MessageStatus.PLAYED,
}

# Flat W-API media fields, most specific first: (field, content key, text key)
WAPI_MEDIA_FIELDS = (
    ("sticker", "stickerMessage", None),
    ("document", "documentMessage", "fileName"),
    ("video", "videoMessage", "caption"),
    ("audio", "audioMessage", None),
    ("image", "imageMessage", "caption"),
)
WAPI_TEXT_FIELDS = ("text", "body", "message")
WAPI_MESSAGE_FIELDS = WAPI_TEXT_FIELDS + tuple(
    name for fields in WAPI_MEDIA_FIELDS for name in fields[:2]
)
WAPI_INBOUND_ADDRESS_KEYS = ("phone", "from", "sender", "remoteJid")
WAPI_OUTBOUND_ADDRESS_KEYS = ("phone", "to", "remoteJid")


# ---------------------------------------------------------------------------
# Envelope parsing
# ---------------------------------------------------------------------------


def normalize_event_name(event: Any) -> Optional[str]:
    """
    Normalize an event-family label.

    Examples:
        >>> normalize_event_name("MESSAGES_UPSERT")
        'messages.upsert'
        >>> normalize_event_name(None) is None
        True
    """
    if not isinstance(event, str) or not event.strip():
        return None
    return event.strip().replace("_", ".").lower()


def parse_envelope(payload: Any) -> WebhookEnvelope:
    """
    Read event label, instance and data out of a webhook body.

    Evolution callbacks name their instance and nest the event under
    ``data``; W-API callbacks are flat and carry an ``instanceId``.
    """
    if not isinstance(payload, dict):
        return WebhookEnvelope(
            event=None, normalized_event=None, instance_name=None, data=payload
        )
    instance_id = payload.get("instanceId") or payload.get("instance_id")
    if instance_id:
        return parse_wapi_envelope(payload, str(instance_id))

    event = payload.get("event")
    instance_name = payload.get("instance") or payload.get("instanceName")
    if instance_name is not None and not isinstance(instance_name, str):
        instance_name = str(instance_name)
    data = payload.get("data")
    return WebhookEnvelope(
        event=event if isinstance(event, str) else None,
        normalized_event=normalize_event_name(event),
        instance_name=instance_name or None,
        data=data if data is not None else payload,
        raw=payload,
    )


def unwrap_messages(data: Any) -> list[dict[str, Any]]:
    """
    Flatten the container shapes a message event can arrive in.

    Accepts a bare list, ``{"messages": [...]}``, ``{"data": {"messages": [...]}}``
    and ``{"data": [...]}``, recursively.
    """
    candidates: Any = None
    if isinstance(data, list):
        candidates = data
    elif isinstance(data, dict):
        inner = data.get("data")
        if isinstance(data.get("messages"), list):
            candidates = data["messages"]
        elif isinstance(inner, dict) and isinstance(inner.get("messages"), list):
            candidates = inner["messages"]
        elif isinstance(inner, list):
            candidates = inner

    if candidates is None:
        return [data] if isinstance(data, dict) else []

    items: list[dict[str, Any]] = []
    for item in candidates:
        items.extend(unwrap_messages(item))
    return items


def parse_timestamp(value: Any, now: Optional[datetime] = None) -> datetime:
    """
    Parse a gateway message timestamp (epoch seconds).

    Accepts ints, numeric strings and protobuf ``{low, high}`` longs;
    anything else yields ``now``.
    """
    fallback = now or datetime.now(timezone.utc)
    seconds: Optional[float] = None
    if isinstance(value, bool):
        seconds = None
    elif isinstance(value, (int, float)):
        seconds = float(value)
    elif isinstance(value, str) and value.strip().isdigit():
        seconds = float(value.strip())
    elif isinstance(value, dict) and "low" in value:
        try:
            low = int(value.get("low") or 0) & 0xFFFFFFFF
            high = int(value.get("high") or 0)
            seconds = float((high << 32) + low)
        except (TypeError, ValueError):
            seconds = None

    if not seconds or seconds <= 0:
        return fallback
    if seconds > 1e12:  # milliseconds
        seconds = seconds / 1000.0
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return fallback


def _dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def extract_group_subject(item: dict[str, Any], message: dict[str, Any]) -> Optional[str]:
    """Group subject carried by the event, if any (no placeholder)."""
    for source in (item, message):
        metadata = _dict(source.get("groupMetadata"))
        for value in (
            *(metadata.get(key) for key in GROUP_SUBJECT_KEYS),
            source.get("groupSubject"),
            source.get("subject"),
        ):
            if isinstance(value, str) and value.strip():
                return value.strip()
    return None


def parse_inbound_message(
    item: dict[str, Any], now: Optional[datetime] = None
) -> Optional[InboundMessage]:
    """
    Read the addressing fields of one message envelope.

    Returns:
        InboundMessage, or None when the envelope has no usable key
    """
    message = item.get("message") if isinstance(item.get("message"), dict) else item
    key = _dict(item.get("key")) or _dict(message.get("key"))
    remote_jid = key.get("remoteJid")
    if not key or not isinstance(remote_jid, str) or not remote_jid:
        return None

    content_node = message.get("message") if isinstance(message.get("message"), dict) else message
    push_name = message.get("pushName") or item.get("pushName")
    participant = key.get("participant") or item.get("participant") or message.get("participant")
    provider_message_id = key.get("id")

    return InboundMessage(
        raw=item,
        content_node=content_node,
        remote_jid=remote_jid,
        provider_message_id=str(provider_message_id) if provider_message_id else None,
        from_me=bool(key.get("fromMe", False)),
        push_name=push_name if isinstance(push_name, str) and push_name else None,
        participant=participant if isinstance(participant, str) else None,
        timestamp=parse_timestamp(
            item.get("messageTimestamp", message.get("messageTimestamp")), now
        ),
        group_subject=extract_group_subject(item, message),
    )


# ---------------------------------------------------------------------------
# W-API envelope parsing
# ---------------------------------------------------------------------------


def detect_wapi_event(payload: dict[str, Any]) -> Optional[str]:
    """
    Infer the event family of a flat W-API callback.

    W-API labels its callbacks loosely. A message label or any message field
    makes it a message event; otherwise a delivery ack makes it a status
    event, and link-state fields make it a connection event.

    Examples:
        >>> detect_wapi_event({"event": "message", "phone": "5511"})
        'messages.upsert'
        >>> detect_wapi_event({"messageId": "A1", "ack": 3})
        'messages.update'
        >>> detect_wapi_event({"connected": False})
        'connection.update'
    """
    event = normalize_event_name(payload.get("event"))
    if event in ("message", "messages.upsert") or any(
        payload.get(name) for name in WAPI_MESSAGE_FIELDS
    ):
        return "messages.upsert"
    if event == "message.ack" or payload.get("ack") is not None:
        return "messages.update"
    if (
        event == "connection.update"
        or payload.get("status")
        or payload.get("connected") is not None
    ):
        return "connection.update"
    return event


def parse_wapi_envelope(payload: dict[str, Any], instance_id: str) -> WebhookEnvelope:
    """Wrap a flat W-API callback; the body itself is the event data."""
    event = payload.get("event")
    return WebhookEnvelope(
        event=event if isinstance(event, str) else None,
        normalized_event=detect_wapi_event(payload),
        instance_name=None,
        data=payload,
        raw=payload,
        provider=GatewayProvider.WAPI.value,
        instance_id=instance_id,
    )


def _first_text(source: dict[str, Any], keys: tuple[str, ...]) -> Optional[str]:
    for key in keys:
        value = source.get(key)
        if isinstance(value, bool) or not isinstance(value, (str, int)):
            continue
        value = str(value).strip()
        if value:
            return value
    return None


def wapi_content_node(payload: dict[str, Any]) -> dict[str, Any]:
    """
    Rebuild a flat W-API message as the content node the classifier reads.

    Media fields win over text, and the most specific media field wins when
    several are present. A ``message`` object without a plain text field is
    already a content node and is passed through.
    """
    for field_name, content_key, text_key in WAPI_MEDIA_FIELDS:
        value = payload.get(field_name) or payload.get(content_key)
        if isinstance(value, dict):
            node = dict(value)
        elif isinstance(value, str) and value.strip():
            node = {"url": value.strip()}
        else:
            continue
        if not node.get("url") and payload.get("mediaUrl"):
            node["url"] = payload["mediaUrl"]
        if payload.get("mimetype"):
            node.setdefault("mimetype", payload["mimetype"])
        if text_key and payload.get(text_key) is not None:
            node.setdefault(text_key, payload[text_key])
        return {content_key: node}

    for field_name in WAPI_TEXT_FIELDS:
        value = payload.get(field_name)
        if isinstance(value, dict):
            text = value.get("text") or value.get("body")
            if not isinstance(text, str):
                return value
            value = text
        if isinstance(value, str) and value.strip():
            return {"conversation": value}
    return {}


def parse_wapi_message(
    payload: dict[str, Any], now: Optional[datetime] = None
) -> Optional[InboundMessage]:
    """
    Read the addressing fields of a flat W-API message callback.

    The remote party is the sender for inbound messages and the recipient
    for outbound ones; a bare phone number is normalized downstream.

    Returns:
        InboundMessage, or None when no remote party is named
    """
    from_me = payload.get("fromMe") is True or payload.get("isFromMe") is True
    remote_jid = _first_text(
        payload, WAPI_OUTBOUND_ADDRESS_KEYS if from_me else WAPI_INBOUND_ADDRESS_KEYS
    )
    if remote_jid is None:
        return None

    participant = payload.get("participant")
    timestamp = payload.get("messageTimestamp", payload.get("timestamp", payload.get("moment")))
    return InboundMessage(
        raw=payload,
        content_node=wapi_content_node(payload),
        remote_jid=remote_jid,
        provider_message_id=(
            _first_text(payload, ("messageId", "id"))
            or _first_text(_dict(payload.get("key")), ("id",))
        ),
        from_me=from_me,
        push_name=_first_text(payload, ("pushName", "name", "senderName")),
        participant=participant if isinstance(participant, str) else None,
        timestamp=parse_timestamp(timestamp, now),
        group_subject=extract_group_subject(payload, {}),
    )


def map_wapi_ack(value: Any) -> Optional[MessageStatus]:
    """
    Map a W-API delivery ack onto a MessageStatus (None if unknown).

    Examples:
        >>> map_wapi_ack(3)
        <MessageStatus.READ: 'read'>
        >>> map_wapi_ack("-1")
        <MessageStatus.FAILED: 'failed'>
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, str):
        try:
            value = int(value.strip())
        except ValueError:
            return None
    if not isinstance(value, int):
        return None
    return WAPI_ACK_CODES.get(value)


def map_status(value: Any) -> Optional[MessageStatus]:
    """Map a gateway delivery code or name onto a MessageStatus (None if unknown)."""
    if isinstance(value, bool):
        return None
    if isinstance(value, str):
        stripped = value.strip()
        if stripped.isdigit():
            return STATUS_CODES.get(int(stripped))
        return STATUS_CODES.get(stripped.upper())
    return STATUS_CODES.get(value)


# ---------------------------------------------------------------------------
# Coordinator
# ---------------------------------------------------------------------------


@dataclass
class WebhookOutcome:
    """Result of handling one webhook call."""

    event: Optional[str]
    status: str  # processed, ignored, unhandled, missing_instance, unknown_instance, error
    messages: list[MessageOutcome] = field(default_factory=list)
    dispatches: list[Future] = field(default_factory=list)
    status_updates: int = 0
    error: Optional[str] = None

    def to_response(self) -> dict[str, Any]:
        """Acknowledgement body for the gateway."""
        body: dict[str, Any] = {"received": True, "event": self.event}
        if self.error:
            body["error"] = self.error
        return body


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WebhookCoordinator:
    """
    Orchestrates webhook processing for one database session.

    Usage:
        coordinator = WebhookCoordinator(session, media_resolver, dispatcher)
        outcome = coordinator.handle(payload)
    """

    def __init__(
        self,
        session: Session,
        media_resolver: MediaResolver,
        dispatcher: Optional[AutomationDispatcher] = None,
        presence: Optional[PresenceTracker] = None,
        optimistic_window_seconds: Optional[int] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.session = session
        self.media_resolver = media_resolver
        self.dispatcher = dispatcher
        self.presence = presence
        self.optimistic_window = timedelta(
            seconds=optimistic_window_seconds
            if optimistic_window_seconds is not None
            else settings.optimistic_match_window_seconds
        )
        self._clock = clock

        self.connections = ConnectionRepository(session)
        self.conversations = ConversationRepository(session)
        self.messages = MessageRepository(session)
        self.resolver = ConversationResolver(session)

    def handle(self, payload: Any) -> WebhookOutcome:
        """
        Process one webhook body. Never raises.

        Args:
            payload: Decoded JSON body

        Returns:
            WebhookOutcome
        """
        start_time = time.monotonic()
        envelope = parse_envelope(payload)
        try:
            outcome = self.handle_envelope(envelope)
        except Exception as e:
            self.session.rollback()
            logger.error(
                f"Webhook handling failed (event={envelope.normalized_event}, "
                f"instance={envelope.instance_key}): {e}",
                exc_info=True,
            )
            return WebhookOutcome(
                event=envelope.normalized_event, status="error", error=str(e)
            )

        elapsed_ms = int((time.monotonic() - start_time) * 1000)
        logger.debug(
            f"Handled {envelope.normalized_event} for {envelope.instance_key} "
            f"in {elapsed_ms}ms ({outcome.status})"
        )
        return outcome

    def handle_envelope(self, envelope: WebhookEnvelope) -> WebhookOutcome:
        """Route a parsed envelope to the handler for its event family."""
        event = envelope.normalized_event
        instance_key = envelope.instance_key
        if not instance_key:
            logger.info("Webhook without instance identifier")
            return WebhookOutcome(event=event, status="missing_instance")

        if envelope.provider == GatewayProvider.WAPI.value:
            connection = self.connections.get_by_instance_id(instance_key)
        else:
            connection = self.connections.get_by_instance_name(instance_key)
        if connection is None:
            logger.info(f"No connection for instance {instance_key!r}")
            return WebhookOutcome(event=event, status="unknown_instance")

        if event in MESSAGE_EVENTS:
            return self._handle_messages(connection, envelope)
        if event in STATUS_EVENTS:
            updated = self.apply_status_updates(envelope.data, envelope.provider)
            self.session.commit()
            return WebhookOutcome(event=event, status="processed", status_updates=updated)
        if event in CONNECTION_EVENTS:
            self.apply_connection_update(connection, envelope.data, envelope.provider)
            self.session.commit()
            return WebhookOutcome(event=event, status="processed")
        if event in PRESENCE_EVENTS:
            self.apply_presence_update(connection, envelope.data)
            return WebhookOutcome(event=event, status="processed")
        if event in IGNORED_EVENTS:
            logger.debug(f"Ignoring {event} for instance {instance_key}")
            return WebhookOutcome(event=event, status="ignored")

        logger.info(f"Unhandled webhook event {event!r}")
        return WebhookOutcome(event=event, status="unhandled")

    # -- messages -----------------------------------------------------------

    def _handle_messages(
        self, connection: Connection, envelope: WebhookEnvelope
    ) -> WebhookOutcome:
        outcome = WebhookOutcome(event=envelope.normalized_event, status="processed")
        connection_id = connection.id

        if envelope.provider == GatewayProvider.WAPI.value:
            items, parse, missing = [envelope.data], parse_wapi_message, "no_address"
        else:
            items, parse, missing = unwrap_messages(envelope.data), parse_inbound_message, "no_key"

        # Sequential on purpose: sub-messages of one event may share a thread
        for item in items:
            inbound = parse(item, self._clock())
            if inbound is None:
                logger.debug(f"Skipping message envelope ({missing}): {list(item)[:15]}")
                outcome.messages.append(MessageOutcome(status="skipped", reason=missing))
                continue

            try:
                result = self.process_message(connection, inbound)
                self.session.commit()
            except Exception as e:
                self.session.rollback()
                logger.error(
                    f"Failed to ingest message {inbound.provider_message_id} "
                    f"(event={envelope.normalized_event}, connection={connection_id}): {e}",
                    exc_info=True,
                )
                result = MessageOutcome(
                    status="error",
                    provider_message_id=inbound.provider_message_id,
                    reason=str(e),
                )

            outcome.messages.append(result)
            future = self._dispatch(connection_id, result)
            if future is not None:
                outcome.dispatches.append(future)
        return outcome

    def process_message(
        self, connection: Connection, inbound: InboundMessage
    ) -> MessageOutcome:
        """
        Persist one message idempotently. The caller commits.

        Args:
            connection: Connection the event arrived on
            inbound: Parsed message envelope

        Returns:
            MessageOutcome
        """
        pid = inbound.provider_message_id

        if is_broadcast_jid(inbound.remote_jid):
            logger.debug(f"Skipping broadcast message {pid}")
            return MessageOutcome(status="skipped", provider_message_id=pid, reason="broadcast")
        if inbound.is_group and not connection.show_groups:
            logger.debug(f"Skipping group message {pid} (groups disabled)")
            return MessageOutcome(
                status="skipped", provider_message_id=pid, reason="groups_disabled"
            )

        classification = classify(inbound.content_node, inbound.raw)
        if isinstance(classification, Ignored):
            logger.debug(f"Ignoring message {pid}: {classification.reason}")
            return MessageOutcome(
                status="ignored", provider_message_id=pid, reason=classification.reason
            )

        if not pid:
            logger.info("Message without provider id; not persisted")
            return MessageOutcome(status="skipped", reason="no_message_id")

        remote_jid = normalize_remote_jid(inbound.remote_jid)
        if remote_jid is None:
            return MessageOutcome(
                status="skipped", provider_message_id=pid, reason="invalid_jid"
            )

        # A redelivery must not bump conversation metadata again
        existing = self.messages.get_confirmed(pid)
        if existing is not None:
            return self._handle_existing(
                connection, existing, inbound, classification, "duplicate"
            )

        resolved = self.resolver.resolve(
            connection.id,
            remote_jid,
            extract_phone(remote_jid),
            inbound.is_group,
            from_me=inbound.from_me,
            at=inbound.timestamp,
            push_name=inbound.push_name,
            group_subject=inbound.group_subject if inbound.is_group else None,
        )
        conversation_id = resolved.conversation.id

        if inbound.from_me:
            pending = self.messages.find_pending_optimistic(
                conversation_id, self._clock() - self.optimistic_window
            )
            if pending is not None and self.messages.reconcile_optimistic(pending.id, pid):
                logger.info(f"Linked pending optimistic message {pending.id} to {pid}")
                return self._handle_existing(
                    connection, pending, inbound, classification, "reconciled"
                )

        return self._insert_new(connection, conversation_id, inbound, classification)

    def _handle_existing(
        self,
        connection: Connection,
        existing: Message,
        inbound: InboundMessage,
        classification: ClassifiedContent,
        status: str,
    ) -> MessageOutcome:
        """Duplicate path, including the best-effort media backfill."""
        pid = inbound.provider_message_id
        outcome = MessageOutcome(
            status=status,
            provider_message_id=pid,
            conversation_id=existing.conversation_id,
            message_id=existing.id,
        )
        try:
            stored_type = MessageType(existing.message_type)
        except ValueError:
            stored_type = classification.message_type

        if not self.media_resolver.needs_resolution(stored_type, existing.media_url):
            if status == "duplicate":
                logger.debug(f"Message {pid} already stored")
            return outcome

        media_url = classification.media_url_hint
        mimetype = classification.mimetype_hint
        if not self.media_resolver.store.is_local(media_url):
            stored = self.media_resolver.resolve(connection, inbound.raw, stored_type)
            if stored is None:
                return outcome
            media_url, mimetype = stored.url, stored.mimetype or mimetype

        if self.messages.patch_media(
            existing.id, media_url, mimetype, self.media_resolver.store.url_prefix
        ):
            logger.info(f"Backfilled media for message {pid}")
            if status == "duplicate":
                outcome.status = "media_patched"
        return outcome

    def _insert_new(
        self,
        connection: Connection,
        conversation_id: uuid.UUID,
        inbound: InboundMessage,
        classification: ClassifiedContent,
    ) -> MessageOutcome:
        pid = inbound.provider_message_id
        media_url = classification.media_url_hint
        mimetype = classification.mimetype_hint
        if self.media_resolver.needs_resolution(classification.message_type, media_url):
            stored = self.media_resolver.resolve(
                connection, inbound.raw, classification.message_type
            )
            if stored is not None:
                media_url, mimetype = stored.url, stored.mimetype or mimetype
            else:
                logger.warning(f"Media unavailable for message {pid}; stored without it")

        attribute_sender = inbound.is_group and not inbound.from_me
        message_id, created = self.messages.upsert_confirmed(
            conversation_id=conversation_id,
            provider_message_id=pid,
            from_me=inbound.from_me,
            message_type=classification.message_type.value,
            content=classification.content,
            media_url=media_url,
            media_mimetype=mimetype,
            quoted_message_id=classification.quoted_id,
            sender_name=inbound.push_name if attribute_sender else None,
            sender_phone=(
                (extract_phone(inbound.participant) or None) if attribute_sender else None
            ),
            status=(
                MessageStatus.SENT.value if inbound.from_me else MessageStatus.RECEIVED.value
            ),
            timestamp=inbound.timestamp,
        )
        if not created:
            # Lost a race with a concurrent delivery of the same id
            return MessageOutcome(
                status="duplicate",
                provider_message_id=pid,
                conversation_id=conversation_id,
                message_id=message_id,
            )

        logger.info(
            f"Stored {classification.message_type.value} message {pid} "
            f"in conversation {conversation_id}"
        )
        is_text = classification.message_type == MessageType.TEXT
        return MessageOutcome(
            status="created",
            provider_message_id=pid,
            conversation_id=conversation_id,
            message_id=message_id,
            automation_input=(
                classification.content
                if is_text and not inbound.from_me and classification.content.strip()
                else None
            ),
        )

    def _dispatch(self, connection_id: uuid.UUID, result: MessageOutcome) -> Optional[Future]:
        """Hand a committed new inbound text message to automation, detached."""
        if self.dispatcher is None or result.status != "created" or not result.automation_input:
            return None
        try:
            return self.dispatcher.dispatch(
                connection_id, result.conversation_id, result.automation_input
            )
        except RuntimeError as e:
            # Executor already shut down
            logger.error(f"Could not schedule automation dispatch: {e}")
            return None

    # -- status / connection / presence -------------------------------------

    def apply_status_updates(
        self, data: Any, provider: str = GatewayProvider.EVOLUTION.value
    ) -> int:
        """
        Apply delivery-status events; unknown codes are no-ops.

        W-API reports a numeric ``ack`` on the flat callback body instead of
        a ``status`` on a keyed update.

        Returns:
            Number of message rows whose status changed
        """
        wapi = provider == GatewayProvider.WAPI.value
        updates = data if isinstance(data, list) else [data]
        changed = 0
        for update in updates:
            if not isinstance(update, dict):
                continue
            if wapi:
                pid = _first_text(update, ("messageId", "id")) or _dict(
                    update.get("key")
                ).get("id")
                status = map_wapi_ack(update.get("ack"))
            else:
                pid = _dict(update.get("key")).get("id") or update.get("id")
                status = map_status(update.get("status"))
            if not pid or status is None:
                continue
            rows = self.messages.advance_status(str(pid), status)
            if rows:
                logger.info(f"Message {pid} status -> {status.value}")
            changed += rows
        return changed

    def apply_connection_update(
        self,
        connection: Connection,
        data: Any,
        provider: str = GatewayProvider.EVOLUTION.value,
    ) -> str:
        """Write the link state reported by a connection-update event."""
        data = _dict(data)
        if provider == GatewayProvider.WAPI.value:
            connected = data.get("connected")
            if isinstance(connected, bool):
                status = map_connection_state("open" if connected else "close")
            else:
                status = map_connection_state(data.get("status") or data.get("state"))
            phone = extract_phone(_first_text(data, ("phoneNumber", "phone", "wid")))
            changed = self.connections.set_status(
                connection.id,
                status,
                phone_number=phone or None,
                update_phone=bool(phone),
            )
        else:
            status = map_connection_state(data.get("state") or data.get("status"))
            changed = self.connections.set_status(connection.id, status)
        if changed:
            logger.info(f"Connection {connection.id} status -> {status}")
        return status

    def apply_presence_update(self, connection: Connection, data: Any) -> Optional[bool]:
        """
        Record typing state for the conversation a presence event refers to.

        Returns:
            The recorded typing flag, or None when nothing was recorded
        """
        if self.presence is None:
            return None
        data = _dict(data)
        raw_jid = data.get("id") or data.get("remoteJid") or data.get("participant")
        if not isinstance(raw_jid, str) or not raw_jid:
            return None
        remote_jid = normalize_remote_jid(raw_jid)
        if remote_jid is None:
            return None

        conversation = self.conversations.find_for_presence(
            connection.id, remote_jid, extract_phone(raw_jid)
        )
        if conversation is None:
            logger.debug(f"No conversation for presence update from {remote_jid}")
            return None

        presences = data.get("presences", data.get("presence"))
        if isinstance(presences, dict):
            is_typing = any(
                entry == "composing"
                or _dict(entry).get("lastKnownPresence") == "composing"
                for entry in presences.values()
            )
        else:
            is_typing = presences == "composing" or data.get("status") == "composing"

        self.presence.set_typing(conversation.id, is_typing)
        return is_typing

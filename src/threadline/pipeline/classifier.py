"""
Content classification for raw gateway message envelopes.

``classify`` is the single place that knows the precedence of content keys.
It returns a ``ClassifiedContent`` or an ``Ignored`` sentinel and never
raises on malformed payloads.
"""

import logging
from typing import Any, Callable, Optional

from threadline.models.db import MessageType
from threadline.models.envelope import Classification, ClassifiedContent, Ignored

logger = logging.getLogger(__name__)

# Keys that carry metadata only, never user-visible content
META_KEYS = frozenset(
    {
        "messageContextInfo",
        "senderKeyDistributionMessage",
        "protocolMessage",
        "reactionMessage",
        "contextInfo",
    }
)

DEFAULT_CONTACT_NAME = "Contact"


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _text(value: Any) -> str:
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)


def _from_conversation(node: Any, hint: Optional[str]) -> ClassifiedContent:
    return ClassifiedContent(MessageType.TEXT, _text(node))


def _from_extended_text(node: Any, hint: Optional[str]) -> ClassifiedContent:
    node = _as_dict(node)
    context = _as_dict(node.get("contextInfo"))
    quoted_id = None
    # The quoted payload itself is nested here; only its id is kept
    if context.get("quotedMessage"):
        quoted_id = context.get("stanzaId") or None
    return ClassifiedContent(MessageType.TEXT, _text(node.get("text")), quoted_id=quoted_id)


def _media(message_type: MessageType, content_key: Optional[str]):
    def build(node: Any, hint: Optional[str]) -> ClassifiedContent:
        node = _as_dict(node)
        return ClassifiedContent(
            message_type,
            _text(node.get(content_key)) if content_key else "",
            media_url_hint=node.get("url") or hint,
            mimetype_hint=node.get("mimetype"),
        )

    return build


def _from_contact(node: Any, hint: Optional[str]) -> ClassifiedContent:
    name = _as_dict(node).get("displayName") or DEFAULT_CONTACT_NAME
    return ClassifiedContent(MessageType.CONTACT, _text(name))


def _from_location(node: Any, hint: Optional[str]) -> ClassifiedContent:
    node = _as_dict(node)
    lat = node.get("degreesLatitude")
    lon = node.get("degreesLongitude")
    return ClassifiedContent(MessageType.LOCATION, f"{lat},{lon}")


# Order matters: the first present key decides the type
CONTENT_HANDLERS: list[tuple[str, Callable[[Any, Optional[str]], ClassifiedContent]]] = [
    ("conversation", _from_conversation),
    ("extendedTextMessage", _from_extended_text),
    ("imageMessage", _media(MessageType.IMAGE, "caption")),
    ("videoMessage", _media(MessageType.VIDEO, "caption")),
    ("audioMessage", _media(MessageType.AUDIO, None)),
    ("documentMessage", _media(MessageType.DOCUMENT, "fileName")),
    ("stickerMessage", _media(MessageType.STICKER, None)),
    ("contactMessage", _from_contact),
    ("locationMessage", _from_location),
]


def _fallback_text(envelope: dict[str, Any]) -> str:
    message = _as_dict(envelope.get("message"))
    for source in (message, envelope):
        for key in ("body", "text"):
            value = source.get(key)
            if isinstance(value, str) and value.strip():
                return value
    return ""


def classify(content: Any, envelope: Optional[dict[str, Any]] = None) -> Classification:
    """
    Classify one message envelope.

    Args:
        content: Node holding the content keys (``message`` of the envelope)
        envelope: Full message envelope, consulted for free-text fallbacks
            and the ``media.url`` hint

    Returns:
        ClassifiedContent, or Ignored with a short reason

    Examples:
        >>> classify({"conversation": "Oi"}).content
        'Oi'
        >>> classify({"reactionMessage": {"text": "👍"}})
        Ignored(reason='reaction')
    """
    node = _as_dict(content)
    envelope = _as_dict(envelope)

    if node.get("reactionMessage"):
        return Ignored("reaction")
    content_keys = [key for key in node if key not in META_KEYS]
    # Group messages often carry key distribution next to real content
    if node.get("protocolMessage") or (
        node.get("senderKeyDistributionMessage") and not content_keys
    ):
        return Ignored("protocol")
    # Free text elsewhere in the envelope never rescues a metadata-only node
    if not content_keys:
        return Ignored("context_only")

    media_hint = _as_dict(envelope.get("media")).get("url") or None

    for key, handler in CONTENT_HANDLERS:
        if node.get(key) is not None and node.get(key) != "":
            return handler(node[key], media_hint)

    fallback = _fallback_text(envelope)
    if fallback:
        return ClassifiedContent(MessageType.TEXT, fallback)

    logger.debug("Unsupported message content keys: %s", content_keys)
    return Ignored("unsupported")

"""
Webhook envelope value objects.

Intermediate dataclasses produced while reading gateway callbacks, before
anything is written to the database. Classification yields either
``ClassifiedContent`` or ``Ignored``; callers branch on the type instead of
inspecting raw payload keys.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Union

from threadline.models.db import GatewayProvider, MessageType


@dataclass(frozen=True)
class Ignored:
    """Payload that must be acknowledged but never materialized as a message."""

    reason: str


@dataclass(frozen=True)
class ClassifiedContent:
    """Semantic content extracted from a raw message envelope."""

    message_type: MessageType
    content: str = ""
    media_url_hint: Optional[str] = None
    mimetype_hint: Optional[str] = None
    quoted_id: Optional[str] = None

    @property
    def is_media(self) -> bool:
        return self.message_type.is_media


Classification = Union[ClassifiedContent, Ignored]


@dataclass
class WebhookEnvelope:
    """Top-level gateway callback after event-family normalization."""

    event: Optional[str]  # Raw label as sent
    normalized_event: Optional[str]  # Lowercase, dots instead of underscores
    instance_name: Optional[str]
    data: Any
    raw: dict[str, Any] = field(default_factory=dict)
    provider: str = GatewayProvider.EVOLUTION.value  # Wire shape of the callback
    instance_id: Optional[str] = None  # W-API instance id

    @property
    def instance_key(self) -> Optional[str]:
        """Identifier the callback addressed its instance by."""
        if self.provider == GatewayProvider.WAPI.value:
            return self.instance_id
        return self.instance_name


@dataclass
class InboundMessage:
    """One message envelope unwrapped from a (possibly batched) upsert event."""

    raw: dict[str, Any]  # Full envelope, forwarded to the gateway for media fetch
    content_node: dict[str, Any]  # Node holding the content keys
    remote_jid: str
    provider_message_id: Optional[str]
    from_me: bool
    push_name: Optional[str]
    participant: Optional[str]
    timestamp: datetime
    group_subject: Optional[str] = None

    @property
    def is_group(self) -> bool:
        return "@g.us" in self.remote_jid


@dataclass
class MessageOutcome:
    """What the coordinator did with one unwrapped message."""

    status: str  # created, duplicate, reconciled, media_patched, ignored, skipped, error
    provider_message_id: Optional[str] = None
    conversation_id: Optional[Any] = None
    message_id: Optional[Any] = None
    reason: Optional[str] = None
    automation_input: Optional[str] = None  # Text handed to automation dispatch

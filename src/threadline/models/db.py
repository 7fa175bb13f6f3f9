"""
SQLAlchemy database models for Threadline.

These models represent the store behind webhook ingestion: gateway
connections, conversation threads, messages, and the automation tables
that the external flow engine owns.
"""

import enum
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.sql import func


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class ConnectionStatus(str, enum.Enum):
    """Link state of a gateway instance."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class GatewayProvider(str, enum.Enum):
    """Upstream gateway flavour a connection talks to."""

    EVOLUTION = "evolution"
    WAPI = "wapi"


class MessageType(str, enum.Enum):
    """Semantic type of a persisted message."""

    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    DOCUMENT = "document"
    STICKER = "sticker"
    CONTACT = "contact"
    LOCATION = "location"

    @property
    def is_media(self) -> bool:
        return self in MEDIA_MESSAGE_TYPES


MEDIA_MESSAGE_TYPES = frozenset(
    {
        MessageType.IMAGE,
        MessageType.VIDEO,
        MessageType.AUDIO,
        MessageType.DOCUMENT,
        MessageType.STICKER,
    }
)


class MessageStatus(str, enum.Enum):
    """Delivery status of a message."""

    PENDING = "pending"  # Optimistic outbound row, not yet confirmed
    SENT = "sent"  # Gateway accepted the outbound message
    RECEIVED = "received"  # Inbound message stored
    DELIVERED = "delivered"
    READ = "read"
    PLAYED = "played"  # Voice notes
    FAILED = "failed"


# Ordering for monotonic status updates; FAILED is terminal and unranked
MESSAGE_STATUS_RANK = {
    MessageStatus.PENDING: 0,
    MessageStatus.SENT: 1,
    MessageStatus.RECEIVED: 1,
    MessageStatus.DELIVERED: 2,
    MessageStatus.READ: 3,
    MessageStatus.PLAYED: 4,
}


def statuses_below(status: MessageStatus) -> list[str]:
    """Stored statuses that a transition to ``status`` may overwrite."""
    rank = MESSAGE_STATUS_RANK.get(status)
    if rank is None:
        return []
    return [s.value for s, r in MESSAGE_STATUS_RANK.items() if r < rank]


class TriggerMatchMode(str, enum.Enum):
    """How an automation keyword is compared to inbound text."""

    EXACT = "exact"
    CONTAINS = "contains"
    STARTS_WITH = "starts_with"


# Partial unique index predicate: optimistic rows carry placeholder ids
CONFIRMED_MESSAGE_ID_PREDICATE = {
    "postgresql": "provider_message_id IS NOT NULL AND is_optimistic = false",
    "sqlite": "provider_message_id IS NOT NULL AND is_optimistic = 0",
}


class Connection(Base):
    """A configured link to the upstream gateway for one tenant."""

    __tablename__ = "connections"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    organization_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), nullable=True, index=True
    )  # Tenant, managed outside this service
    name: Mapped[str] = mapped_column(String(255), nullable=False)

    # Provider selection and credentials
    provider: Mapped[Optional[str]] = mapped_column(
        String(20), nullable=True
    )  # NULL = inferred from credentials
    instance_name: Mapped[str] = mapped_column(
        String(255), nullable=False, unique=True, index=True
    )  # Gateway instance identifier used for webhook routing
    api_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    api_key: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    instance_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    wapi_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    status: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        default=ConnectionStatus.DISCONNECTED.value,
        server_default=ConnectionStatus.DISCONNECTED.value,
    )
    phone_number: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    show_groups: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default="false"
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    # Relationships
    conversations: Mapped[list["Conversation"]] = relationship(
        back_populates="connection"
    )

    def __repr__(self) -> str:
        return (
            f"<Connection(id={self.id}, "
            f"instance_name={self.instance_name!r}, "
            f"status={self.status!r})>"
        )


class Conversation(Base):
    """A thread with one remote party (contact or group) on a connection."""

    __tablename__ = "conversations"
    __table_args__ = (
        UniqueConstraint(
            "connection_id", "remote_jid", name="uq_conversation_connection_jid"
        ),
        Index("ix_conversations_connection_phone", "connection_id", "contact_phone"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    connection_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("connections.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    remote_jid: Mapped[str] = mapped_column(
        String(100), nullable=False
    )  # Normalized identifier
    contact_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    contact_phone: Mapped[Optional[str]] = mapped_column(
        String(50), nullable=True
    )  # NULL for groups
    is_group: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default="false"
    )
    group_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    last_message_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True, index=True
    )
    unread_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0"
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    # Relationships
    connection: Mapped["Connection"] = relationship(back_populates="conversations")
    messages: Mapped[list["Message"]] = relationship(
        back_populates="conversation",
        cascade="all, delete-orphan",
        order_by="Message.timestamp",
    )

    @property
    def display_name(self) -> str:
        if self.is_group:
            return self.group_name or self.contact_name or "Group"
        return self.contact_name or self.contact_phone or self.remote_jid

    def __repr__(self) -> str:
        return (
            f"<Conversation(id={self.id}, "
            f"remote_jid={self.remote_jid!r}, "
            f"is_group={self.is_group})>"
        )


class Message(Base):
    """A single message inside a conversation."""

    __tablename__ = "messages"
    __table_args__ = (
        Index(
            "uq_messages_provider_message_id",
            "provider_message_id",
            unique=True,
            postgresql_where=text(CONFIRMED_MESSAGE_ID_PREDICATE["postgresql"]),
            sqlite_where=text(CONFIRMED_MESSAGE_ID_PREDICATE["sqlite"]),
        ),
        Index("ix_messages_conversation_timestamp", "conversation_id", "timestamp"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    conversation_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    # Idempotency key; placeholder ids on optimistic rows
    provider_message_id: Mapped[Optional[str]] = mapped_column(
        String(100), nullable=True
    )
    is_optimistic: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default="false"
    )

    from_me: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default="false"
    )
    message_type: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        default=MessageType.TEXT.value,
        server_default=MessageType.TEXT.value,
    )
    content: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    media_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    media_mimetype: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    quoted_message_id: Mapped[Optional[str]] = mapped_column(
        String(100), nullable=True
    )  # Provider id of the quoted message

    # Group attribution
    sender_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    sender_phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    status: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        default=MessageStatus.SENT.value,
        server_default=MessageStatus.SENT.value,
    )
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    # Relationships
    conversation: Mapped["Conversation"] = relationship(back_populates="messages")

    def __repr__(self) -> str:
        return (
            f"<Message(id={self.id}, "
            f"provider_message_id={self.provider_message_id!r}, "
            f"type={self.message_type!r}, status={self.status!r})>"
        )


class Automation(Base):
    """Keyword-triggered automation flow (owned by the external flow engine)."""

    __tablename__ = "automations"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    connection_ids: Mapped[Optional[list]] = mapped_column(
        JSONB, nullable=True
    )  # Empty/NULL = applies to every connection
    is_active: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True, server_default="true", index=True
    )
    trigger_enabled: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default="false"
    )
    trigger_keywords: Mapped[Optional[list]] = mapped_column(JSONB, nullable=True)
    trigger_match_mode: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=TriggerMatchMode.EXACT.value,
        server_default=TriggerMatchMode.EXACT.value,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<Automation(id={self.id}, name={self.name!r})>"


class AutomationSession(Base):
    """Pointer to an in-progress automation run for one conversation."""

    __tablename__ = "automation_sessions"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    automation_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("automations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    conversation_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    current_node_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    is_active: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True, server_default="true", index=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return (
            f"<AutomationSession(id={self.id}, "
            f"conversation_id={self.conversation_id}, "
            f"node={self.current_node_id!r})>"
        )

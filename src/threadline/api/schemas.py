"""
API schemas for Threadline.

Pydantic models for response validation.
"""

from typing import Optional

from pydantic import BaseModel, Field


class ConnectionStatusResponse(BaseModel):
    """Link state of a connection as reported by its gateway."""

    status: str
    phone_number: Optional[str] = None
    provider: str
    error: Optional[str] = None


class TypingStatusResponse(BaseModel):
    """Whether the remote party of a conversation is typing."""

    is_typing: bool


class WebhookEventResponse(BaseModel):
    """One buffered webhook call."""

    at: str
    instance_name: Optional[str] = None
    event: Optional[str] = None
    normalized_event: Optional[str] = None
    headers: dict[str, Optional[str]] = Field(default_factory=dict)
    preview: str = ""

    class Config:
        from_attributes = True


class InstanceActivityResponse(BaseModel):
    """Last webhook seen for a gateway instance."""

    at: str
    event: Optional[str] = None
    data_keys: list[str] = Field(default_factory=list)

    class Config:
        from_attributes = True


class WebhookEventsResponse(BaseModel):
    """Recent webhook calls for one connection, newest first."""

    instance_name: str
    events: list[WebhookEventResponse]
    last_seen: Optional[InstanceActivityResponse] = None


class WebhookEventsClearedResponse(BaseModel):
    """Result of clearing a connection's buffered webhook calls."""

    instance_name: str
    cleared: int

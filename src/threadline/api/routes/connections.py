"""
Connection API routes.

Gateway link status and webhook diagnostics per connection.
"""

import logging
from typing import Callable, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from threadline.api.deps import get_diagnostics, get_gateway_factory
from threadline.api.schemas import (
    ConnectionStatusResponse,
    InstanceActivityResponse,
    WebhookEventResponse,
    WebhookEventsClearedResponse,
    WebhookEventsResponse,
)
from threadline.db.connection import get_db
from threadline.db.repositories import ConnectionRepository
from threadline.diagnostics import WebhookDiagnostics
from threadline.gateway import GatewayClient, detect_provider
from threadline.models.db import Connection, GatewayProvider

logger = logging.getLogger(__name__)

router = APIRouter()


def _get_connection_or_404(session: Session, connection_id: UUID) -> Connection:
    connection = ConnectionRepository(session).get(connection_id)
    if not connection:
        raise HTTPException(
            status_code=404, detail=f"Connection {connection_id} not found"
        )
    return connection


def _webhook_instance_key(connection: Connection) -> Optional[str]:
    """Identifier the connection's gateway puts in its webhook callbacks."""
    if detect_provider(connection) == GatewayProvider.WAPI.value:
        return connection.instance_id
    return connection.instance_name


@router.get("/{connection_id}/status", response_model=ConnectionStatusResponse)
def get_connection_status(
    connection_id: UUID,
    session: Session = Depends(get_db),
    gateway_factory: Callable[[Connection], GatewayClient] = Depends(
        get_gateway_factory
    ),
) -> ConnectionStatusResponse:
    """
    Ask the gateway for the connection's link state and persist it.

    Gateway failures are reported in ``error`` with a 200 response.

    Raises:
        HTTPException: 404 if the connection does not exist
    """
    repo = ConnectionRepository(session)
    connection = _get_connection_or_404(session, connection_id)
    provider = detect_provider(connection)

    with gateway_factory(connection) as gateway:
        instance = gateway.fetch_status()

    if repo.set_status(
        connection.id,
        instance.status,
        phone_number=instance.phone_number,
        update_phone=instance.phone_number is not None,
    ):
        logger.info(f"Connection {connection.instance_name} status -> {instance.status}")

    return ConnectionStatusResponse(
        status=instance.status,
        phone_number=instance.phone_number or connection.phone_number,
        provider=provider,
        error=instance.error,
    )


@router.get("/{connection_id}/webhook-events", response_model=WebhookEventsResponse)
async def list_webhook_events(
    connection_id: UUID,
    limit: int = Query(50, ge=1, le=200),
    session: Session = Depends(get_db),
    diagnostics: WebhookDiagnostics = Depends(get_diagnostics),
) -> WebhookEventsResponse:
    """
    Recent webhook calls received for a connection's instance.

    Args:
        connection_id: Connection UUID
        limit: Maximum number of events (1-200)

    Returns:
        Events newest first, plus the last event seen for the instance
    """
    connection = _get_connection_or_404(session, connection_id)
    instance_key = _webhook_instance_key(connection)
    events = diagnostics.recent(instance_key, limit=limit) if instance_key else []
    last_seen = diagnostics.last_seen(instance_key) if instance_key else None

    return WebhookEventsResponse(
        instance_name=connection.instance_name,
        events=[WebhookEventResponse.model_validate(e) for e in events],
        last_seen=(
            InstanceActivityResponse.model_validate(last_seen) if last_seen else None
        ),
    )


@router.delete(
    "/{connection_id}/webhook-events", response_model=WebhookEventsClearedResponse
)
async def clear_webhook_events(
    connection_id: UUID,
    session: Session = Depends(get_db),
    diagnostics: WebhookDiagnostics = Depends(get_diagnostics),
) -> WebhookEventsClearedResponse:
    """Drop the buffered webhook calls for a connection's instance."""
    connection = _get_connection_or_404(session, connection_id)
    instance_key = _webhook_instance_key(connection)
    cleared = diagnostics.clear(instance_key) if instance_key else 0
    return WebhookEventsClearedResponse(
        instance_name=connection.instance_name, cleared=cleared
    )

"""
Outbound clients for the upstream messaging gateway.

Two providers are supported; ``get_gateway`` picks one per connection.
"""

from typing import Optional

import httpx

from threadline.config import settings
from threadline.gateway.base import (
    GatewayClient,
    InstanceStatus,
    MediaPayload,
    map_connection_state,
)
from threadline.gateway.evolution import EvolutionGateway
from threadline.gateway.wapi import WapiGateway
from threadline.models.db import Connection, GatewayProvider


def detect_provider(connection: Connection) -> str:
    """
    Decide which gateway flavour a connection talks to.

    The ``provider`` column wins; rows without one are W-API when they carry
    W-API credentials and Evolution otherwise.
    """
    if connection.provider in (GatewayProvider.EVOLUTION.value, GatewayProvider.WAPI.value):
        return connection.provider
    if connection.instance_id and connection.wapi_token:
        return GatewayProvider.WAPI.value
    return GatewayProvider.EVOLUTION.value


def get_gateway(
    connection: Connection, transport: Optional[httpx.BaseTransport] = None
) -> GatewayClient:
    """
    Build a gateway client for a connection.

    Args:
        connection: Connection row carrying provider and credentials
        transport: Optional httpx transport (tests use httpx.MockTransport)

    Returns:
        GatewayClient; use as a context manager to release the HTTP client
    """
    if detect_provider(connection) == GatewayProvider.WAPI.value:
        return WapiGateway(
            connection,
            base_url=settings.wapi_base_url,
            timeout=settings.gateway_timeout_seconds,
            media_timeout=settings.media_fetch_timeout_seconds,
            transport=transport,
        )
    return EvolutionGateway(
        connection,
        api_url=connection.api_url or settings.evolution_api_url,
        api_key=connection.api_key or settings.evolution_api_key,
        timeout=settings.gateway_timeout_seconds,
        media_timeout=settings.media_fetch_timeout_seconds,
        transport=transport,
    )


__all__ = [
    "EvolutionGateway",
    "GatewayClient",
    "InstanceStatus",
    "MediaPayload",
    "WapiGateway",
    "detect_provider",
    "get_gateway",
    "map_connection_state",
]

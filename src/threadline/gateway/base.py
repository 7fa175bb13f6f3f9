"""
Base class for upstream gateway clients.

Gateway calls are collaborator calls: every transport, HTTP or decoding
failure is converted into an explicit failure value (``None`` for media, a
disconnected ``InstanceStatus`` for status checks). Callers never see an
exception from a gateway client.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from threadline.exceptions import GatewayError
from threadline.models.db import Connection, ConnectionStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MediaPayload:
    """Base64 media returned by the gateway, possibly as a data URL."""

    base64: str
    mimetype: Optional[str] = None


@dataclass(frozen=True)
class InstanceStatus:
    """Link state reported by the gateway for one instance."""

    status: str
    phone_number: Optional[str] = None
    error: Optional[str] = None

    @property
    def connected(self) -> bool:
        return self.status == ConnectionStatus.CONNECTED.value


def map_connection_state(state: Any) -> str:
    """
    Map a gateway link state label onto a ConnectionStatus value.

    Examples:
        >>> map_connection_state("open")
        'connected'
        >>> map_connection_state("close")
        'disconnected'
    """
    value = state.lower() if isinstance(state, str) else state
    if value in ("open", "connected", "online"):
        return ConnectionStatus.CONNECTED.value
    if value == "connecting":
        return ConnectionStatus.CONNECTING.value
    return ConnectionStatus.DISCONNECTED.value


class GatewayClient(ABC):
    """
    HTTP client for one connection's gateway instance.

    Subclasses implement the provider-specific requests; this class owns the
    httpx client, timeouts and failure conversion.
    """

    provider: str = ""

    def __init__(
        self,
        connection: Connection,
        base_url: str,
        headers: Optional[dict[str, str]] = None,
        timeout: float = 10.0,
        media_timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.connection = connection
        self.timeout = timeout
        self.media_timeout = media_timeout
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            headers=headers or {},
            timeout=timeout,
            transport=transport,
        )

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def __enter__(self) -> "GatewayClient":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def fetch_media(
        self, envelope: dict[str, Any], message_type: str
    ) -> Optional[MediaPayload]:
        """
        Fetch the binary attachment of a message as base64.

        Args:
            envelope: Full raw message envelope (key, message, ...)
            message_type: Semantic type of the message

        Returns:
            MediaPayload, or None when the gateway could not provide media
        """
        try:
            return self._fetch_media(envelope, message_type)
        except (httpx.HTTPError, GatewayError, ValueError) as e:
            logger.warning(
                f"Media fetch failed for instance {self.connection.instance_name}: {e}"
            )
            return None

    def fetch_status(self) -> InstanceStatus:
        """
        Ask the gateway for the instance's link state.

        Returns:
            InstanceStatus; a disconnected status with ``error`` set on failure
        """
        try:
            return self._fetch_status()
        except (httpx.HTTPError, GatewayError, ValueError) as e:
            logger.warning(
                f"Status check failed for instance {self.connection.instance_name}: {e}"
            )
            return InstanceStatus(
                status=ConnectionStatus.DISCONNECTED.value, error=str(e)
            )

    @abstractmethod
    def _fetch_media(
        self, envelope: dict[str, Any], message_type: str
    ) -> Optional[MediaPayload]:
        """Provider-specific media request. May raise."""

    @abstractmethod
    def _fetch_status(self) -> InstanceStatus:
        """Provider-specific status request. May raise."""

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        if response.status_code >= 400:
            raise GatewayError(_error_message(response), response.status_code)
        try:
            return response.json()
        except ValueError as e:
            raise GatewayError(f"Invalid JSON response: {e}") from e


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:300] or "Gateway request failed"
    if isinstance(body, dict):
        return str(body.get("message") or body.get("error") or "Gateway request failed")
    return "Gateway request failed"

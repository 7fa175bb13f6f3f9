"""
Evolution API gateway client.
"""

import logging
from typing import Any, Optional

import httpx

from threadline.gateway.base import (
    GatewayClient,
    InstanceStatus,
    MediaPayload,
    map_connection_state,
)
from threadline.models.db import Connection, GatewayProvider, MessageType

logger = logging.getLogger(__name__)

BASE64_KEYS = ("base64", "data", "base64Data")
MIMETYPE_KEYS = ("mimetype", "mimeType", "type")


class EvolutionGateway(GatewayClient):
    """Client for an Evolution API instance (apikey header auth)."""

    provider = GatewayProvider.EVOLUTION.value

    def __init__(
        self,
        connection: Connection,
        api_url: str,
        api_key: str,
        timeout: float = 10.0,
        media_timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        super().__init__(
            connection,
            base_url=api_url,
            headers={"apikey": api_key, "Content-Type": "application/json"},
            timeout=timeout,
            media_timeout=media_timeout,
            transport=transport,
        )

    def _fetch_media(
        self, envelope: dict[str, Any], message_type: str
    ) -> Optional[MediaPayload]:
        # The full envelope is required; the key alone cannot be decrypted
        response = self._client.post(
            f"/chat/getBase64FromMediaMessage/{self.connection.instance_name}",
            json={
                "message": envelope,
                "convertToMp4": message_type == MessageType.VIDEO.value,
            },
            timeout=self.media_timeout,
        )
        body = self._json(response)
        if not isinstance(body, dict):
            return None

        raw = next(
            (body[k] for k in BASE64_KEYS if isinstance(body.get(k), str) and body[k]),
            None,
        )
        if raw is None:
            logger.info("No base64 data in media response")
            return None

        mimetype = next(
            (body[k] for k in MIMETYPE_KEYS if isinstance(body.get(k), str) and body[k]),
            None,
        )
        return MediaPayload(base64=raw, mimetype=mimetype)

    def _fetch_status(self) -> InstanceStatus:
        response = self._client.get(
            f"/instance/connectionState/{self.connection.instance_name}"
        )
        body = self._json(response)
        instance = body.get("instance") if isinstance(body, dict) else None
        state = instance.get("state") if isinstance(instance, dict) else None
        if state is None and isinstance(body, dict):
            state = body.get("state")
        return InstanceStatus(status=map_connection_state(state))

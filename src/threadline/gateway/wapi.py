"""
W-API gateway client.

Bearer-token auth, instance addressed by ``instanceId`` query parameter.
Responses are wrapped inconsistently across W-API versions, so lookups
check the body, ``data`` and ``result`` roots.
"""

import base64
import logging
from typing import Any, Optional

import httpx

from threadline.exceptions import GatewayError
from threadline.gateway.base import (
    GatewayClient,
    InstanceStatus,
    MediaPayload,
    map_connection_state,
)
from threadline.models.db import Connection, ConnectionStatus, GatewayProvider

logger = logging.getLogger(__name__)

BASE64_KEYS = ("base64", "b64", "fileBase64", "mediaBase64", "data", "file", "buffer")
MIMETYPE_KEYS = ("mimetype", "mimeType", "contentType", "type")
PHONE_KEYS = ("phoneNumber", "phone", "number")


def _roots(body: Any) -> list[dict[str, Any]]:
    if not isinstance(body, dict):
        return []
    roots = [body]
    for key in ("data", "result", "instance"):
        value = body.get(key)
        if isinstance(value, dict):
            roots.append(value)
            nested = value.get("instance")
            if isinstance(nested, dict):
                roots.append(nested)
    return roots


def _first_string(roots: list[dict[str, Any]], keys: tuple[str, ...]) -> Optional[str]:
    for root in roots:
        for key in keys:
            value = root.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    return None


def _looks_connected(root: dict[str, Any]) -> bool:
    if root.get("connected") is True or root.get("isConnected") is True:
        return True
    return any(
        map_connection_state(root.get(key)) == ConnectionStatus.CONNECTED.value
        for key in ("status", "state")
    )


class WapiGateway(GatewayClient):
    """Client for a W-API instance."""

    provider = GatewayProvider.WAPI.value

    def __init__(
        self,
        connection: Connection,
        base_url: str,
        timeout: float = 10.0,
        media_timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        super().__init__(
            connection,
            base_url=base_url,
            headers={"Authorization": f"Bearer {connection.wapi_token or ''}"},
            timeout=timeout,
            media_timeout=media_timeout,
            transport=transport,
        )

    def _fetch_media(
        self, envelope: dict[str, Any], message_type: str
    ) -> Optional[MediaPayload]:
        key = envelope.get("key") or {}
        message_id = key.get("id") if isinstance(key, dict) else None
        message_id = message_id or envelope.get("messageId") or envelope.get("id")
        if not message_id:
            return None

        params = {"instanceId": self.connection.instance_id}
        attempts = [
            ("GET", {**params, "messageId": message_id}, None),
            ("POST", params, {"messageId": message_id}),
        ]
        for method, query, body in attempts:
            try:
                response = self._client.request(
                    method,
                    "/message/download-media",
                    params=query,
                    json=body,
                    timeout=self.media_timeout,
                )
            except httpx.HTTPError as e:
                logger.warning(f"W-API download-media {method} failed: {e}")
                continue
            if response.status_code >= 400:
                logger.warning(
                    f"W-API download-media {method} returned HTTP {response.status_code}"
                )
                continue
            return self._media_from_response(response)
        return None

    def _media_from_response(self, response: httpx.Response) -> Optional[MediaPayload]:
        content_type = response.headers.get("content-type", "")
        if "application/json" in content_type:
            roots = _roots(self._json(response))
            raw = _first_string(roots, BASE64_KEYS)
            if raw is None:
                return None
            return MediaPayload(base64=raw, mimetype=_first_string(roots, MIMETYPE_KEYS))

        mimetype = content_type.split(";")[0].strip() or "application/octet-stream"
        if not response.content:
            return None
        return MediaPayload(
            base64=base64.b64encode(response.content).decode("ascii"), mimetype=mimetype
        )

    def _fetch_status(self) -> InstanceStatus:
        if not self.connection.instance_id or not self.connection.wapi_token:
            raise GatewayError("Instance id or token not configured")

        response = self._client.get(
            "/instance/status-instance",
            params={"instanceId": self.connection.instance_id},
        )
        roots = _roots(self._json(response))
        phone = _first_string(roots, PHONE_KEYS)
        if phone is None:
            wid = _first_string(roots, ("wid",))
            phone = wid.split("@")[0] if wid else None

        if any(_looks_connected(root) for root in roots):
            return InstanceStatus(status=ConnectionStatus.CONNECTED.value, phone_number=phone)
        return InstanceStatus(status=ConnectionStatus.DISCONNECTED.value, phone_number=phone)

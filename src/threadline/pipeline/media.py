"""
Media resolution: fetch, decode and store message attachments.

Resolution is best-effort. Any failure yields ``None`` and the message is
persisted without media; a later delivery of the same provider message id
retries while the stored reference is still not locally hosted.
"""

import base64
import binascii
import logging
import secrets
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional

from threadline.config import settings
from threadline.exceptions import MediaDecodeError
from threadline.gateway import GatewayClient, get_gateway
from threadline.models.db import Connection, MessageType

logger = logging.getLogger(__name__)

DEFAULT_MIMETYPE = "application/octet-stream"
DEFAULT_EXTENSION = ".bin"

# Checked in order; the first fragment contained in the mimetype wins
EXTENSION_RULES: list[tuple[tuple[str, ...], str]] = [
    (("image/jpeg", "image/jpg"), ".jpg"),
    (("image/png",), ".png"),
    (("image/gif",), ".gif"),
    (("image/webp",), ".webp"),
    (("audio/ogg",), ".ogg"),
    (("audio/mpeg", "audio/mp3"), ".mp3"),
    (("audio/mp4", "audio/m4a"), ".m4a"),
    (("audio/",), ".ogg"),
    (("video/mp4",), ".mp4"),
    (("video/webm",), ".webm"),
    (("video/",), ".mp4"),
    (("application/pdf",), ".pdf"),
]


def extension_for(mimetype: Optional[str]) -> str:
    """
    Pick a file extension for a mimetype.

    Examples:
        >>> extension_for("audio/ogg; codecs=opus")
        '.ogg'
        >>> extension_for("audio/aac")
        '.ogg'
        >>> extension_for(None)
        '.bin'
    """
    value = (mimetype or "").lower()
    for fragments, extension in EXTENSION_RULES:
        if any(fragment in value for fragment in fragments):
            return extension
    return DEFAULT_EXTENSION


def decode_base64_payload(raw: str) -> bytes:
    """
    Decode a base64 string, accepting data URLs and embedded whitespace.

    Raises:
        MediaDecodeError: If nothing decodable remains
    """
    value = raw.strip()
    marker = value.find("base64,")
    if value.startswith("data:") and marker != -1:
        value = value[marker + len("base64,"):]
    value = "".join(value.split())
    if not value:
        raise MediaDecodeError("Empty media payload")
    try:
        data = base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as e:
        raise MediaDecodeError(f"Invalid base64 media payload: {e}") from e
    if not data:
        raise MediaDecodeError("Media payload decoded to zero bytes")
    return data


def mimetype_from_data_url(raw: str) -> Optional[str]:
    """Mimetype embedded in a ``data:<type>;base64,`` prefix, if any."""
    if not raw.startswith("data:"):
        return None
    header = raw[len("data:"):].split(",", 1)[0]
    mimetype = header.split(";", 1)[0].strip()
    return mimetype or None


@dataclass(frozen=True)
class StoredMedia:
    """A locally hosted attachment."""

    url: str
    mimetype: str
    path: Path


class MediaStore:
    """Durable blob storage for attachments, served under a public URL prefix."""

    def __init__(
        self,
        directory: Path,
        url_prefix: str,
        clock: Callable[[], float] = time.time,
    ):
        self.directory = Path(directory)
        self.url_prefix = url_prefix.rstrip("/")
        self._clock = clock

    def is_local(self, url: Optional[str]) -> bool:
        """True when the URL points at media this store already hosts."""
        return bool(url) and url.startswith(f"{self.url_prefix}/")

    def save(self, data: bytes, mimetype: Optional[str]) -> StoredMedia:
        """
        Write bytes under a unique generated name.

        Args:
            data: Decoded attachment bytes
            mimetype: Attachment mimetype (drives the extension)

        Returns:
            StoredMedia with the public URL
        """
        mimetype = (mimetype or DEFAULT_MIMETYPE).lower()
        filename = (
            f"{int(self._clock() * 1000)}-{secrets.token_hex(8)}{extension_for(mimetype)}"
        )
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self.directory / filename
        path.write_bytes(data)
        logger.info(f"Media saved: {filename} ({len(data)} bytes, {mimetype})")
        return StoredMedia(url=f"{self.url_prefix}/{filename}", mimetype=mimetype, path=path)


def default_media_store() -> MediaStore:
    """MediaStore configured from settings."""
    return MediaStore(settings.media_directory, settings.media_url_prefix)


class MediaResolver:
    """Fetches attachments through the gateway and stores them locally."""

    def __init__(
        self,
        store: MediaStore,
        gateway_factory: Callable[[Connection], GatewayClient] = get_gateway,
    ):
        self.store = store
        self.gateway_factory = gateway_factory

    def needs_resolution(self, message_type: MessageType, media_url: Optional[str]) -> bool:
        """Media types need resolution until their reference is locally hosted."""
        return message_type.is_media and not self.store.is_local(media_url)

    def resolve(
        self,
        connection: Connection,
        envelope: dict[str, Any],
        message_type: MessageType,
    ) -> Optional[StoredMedia]:
        """
        Fetch, decode and persist the attachment of one message.

        Args:
            connection: Connection the message arrived on
            envelope: Full raw message envelope
            message_type: Semantic type of the message

        Returns:
            StoredMedia, or None when no media could be resolved
        """
        try:
            with self.gateway_factory(connection) as gateway:
                payload = gateway.fetch_media(envelope, message_type.value)
            if payload is None:
                return None
            data = decode_base64_payload(payload.base64)
            mimetype = payload.mimetype or mimetype_from_data_url(payload.base64.strip())
            return self.store.save(data, mimetype)
        except (MediaDecodeError, OSError) as e:
            logger.warning(f"Could not resolve media for {message_type.value}: {e}")
            return None

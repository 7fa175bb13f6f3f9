"""
Gateway webhook routes.

The gateway treats any non-2xx answer as a retry signal, so the callback
endpoint acknowledges every request, including ones it could not process.
"""

import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from threadline.api.deps import (
    get_diagnostics,
    get_dispatcher,
    get_media_resolver,
    get_presence,
)
from threadline.automation.dispatcher import AutomationDispatcher
from threadline.db.connection import get_db
from threadline.diagnostics import WebhookDiagnostics
from threadline.pipeline.ingestion import WebhookCoordinator, parse_envelope
from threadline.pipeline.media import MediaResolver
from threadline.presence import PresenceTracker

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/webhook")
async def webhook_liveness() -> dict[str, str]:
    """Liveness check used when configuring the gateway callback URL."""
    return {"status": "ok"}


@router.post("/webhook")
async def receive_webhook(
    request: Request,
    session: Session = Depends(get_db),
    diagnostics: WebhookDiagnostics = Depends(get_diagnostics),
    media_resolver: MediaResolver = Depends(get_media_resolver),
    dispatcher: Optional[AutomationDispatcher] = Depends(get_dispatcher),
    presence: PresenceTracker = Depends(get_presence),
) -> dict[str, Any]:
    """
    Receive a gateway callback.

    Always answers 200. The body is ``{"received": true, "event": ...}``,
    with ``error`` set when processing failed.
    """
    try:
        payload = await request.json()
    except ValueError:
        logger.warning("Webhook body is not valid JSON; acknowledged without processing")
        return {"received": True}

    envelope = parse_envelope(payload)
    diagnostics.record(
        payload,
        request.headers,
        envelope.instance_key,
        envelope.event,
        envelope.normalized_event,
    )

    coordinator = WebhookCoordinator(
        session, media_resolver, dispatcher=dispatcher, presence=presence
    )
    # Gateway and database calls block; keep them off the event loop
    outcome = await run_in_threadpool(coordinator.handle, payload)
    return outcome.to_response()

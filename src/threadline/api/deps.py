"""
FastAPI dependencies for process-scoped state.

The lifespan handler stores these objects on ``app.state``; routes reach
them through these functions so tests can swap them with
``app.dependency_overrides``.
"""

from typing import Callable, Optional

from fastapi import Request

from threadline.automation.dispatcher import AutomationDispatcher
from threadline.diagnostics import WebhookDiagnostics
from threadline.gateway import GatewayClient
from threadline.models.db import Connection
from threadline.pipeline.media import MediaResolver
from threadline.presence import PresenceTracker


def get_presence(request: Request) -> PresenceTracker:
    return request.app.state.presence


def get_diagnostics(request: Request) -> WebhookDiagnostics:
    return request.app.state.diagnostics


def get_media_resolver(request: Request) -> MediaResolver:
    return request.app.state.media_resolver


def get_dispatcher(request: Request) -> Optional[AutomationDispatcher]:
    return getattr(request.app.state, "dispatcher", None)


def get_gateway_factory(request: Request) -> Callable[[Connection], GatewayClient]:
    return request.app.state.gateway_factory

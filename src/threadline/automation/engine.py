"""
Adapters for the external automation (flow execution) engine.

The engine interprets flow graphs; this service only asks it to continue an
existing session or start a new run. Adapters never raise: failures come
back as ``EngineResult(success=False, error=...)``.
"""

import logging
import uuid
from dataclasses import dataclass
from typing import Any, Optional, Protocol

import httpx

from threadline.config import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EngineResult:
    """Outcome reported by the automation engine."""

    success: bool
    nodes_processed: Optional[int] = None
    error: Optional[str] = None


class AutomationEngine(Protocol):
    """Operations this service consumes from the flow engine."""

    def continue_session(
        self, conversation_id: uuid.UUID, user_input: str
    ) -> EngineResult:
        """Feed user input into the conversation's active session."""
        ...

    def start_automation(
        self, automation_id: uuid.UUID, conversation_id: uuid.UUID, trigger: dict[str, Any]
    ) -> EngineResult:
        """Start an automation run for a conversation."""
        ...

    def close(self) -> None:
        """Release connections held by the adapter."""
        ...


class DisabledAutomationEngine:
    """Engine used when no automation endpoint is configured."""

    def continue_session(
        self, conversation_id: uuid.UUID, user_input: str
    ) -> EngineResult:
        return EngineResult(success=False, error="Automation engine not configured")

    def start_automation(
        self, automation_id: uuid.UUID, conversation_id: uuid.UUID, trigger: dict[str, Any]
    ) -> EngineResult:
        return EngineResult(success=False, error="Automation engine not configured")

    def close(self) -> None:
        pass


class HttpAutomationEngine:
    """
    Automation engine reached over HTTP.

    Endpoints:
        POST /sessions/{conversation_id}/continue  {"input": ...}
        POST /automations/{automation_id}/start    {"conversation_id": ..., "trigger": ...}
    """

    def __init__(
        self,
        base_url: str,
        token: str = "",
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def continue_session(
        self, conversation_id: uuid.UUID, user_input: str
    ) -> EngineResult:
        return self._post(
            f"/sessions/{conversation_id}/continue", {"input": user_input}
        )

    def start_automation(
        self, automation_id: uuid.UUID, conversation_id: uuid.UUID, trigger: dict[str, Any]
    ) -> EngineResult:
        return self._post(
            f"/automations/{automation_id}/start",
            {"conversation_id": str(conversation_id), "trigger": trigger},
        )

    def _post(self, path: str, payload: dict[str, Any]) -> EngineResult:
        try:
            response = self._client.post(path, json=payload)
        except httpx.HTTPError as e:
            return EngineResult(success=False, error=f"Network error: {e}")

        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        if response.status_code >= 400:
            error = body.get("error") or f"HTTP {response.status_code}"
            return EngineResult(success=False, error=str(error))

        nodes = body.get("nodes_processed", body.get("nodesProcessed"))
        return EngineResult(
            success=bool(body.get("success", True)),
            nodes_processed=nodes if isinstance(nodes, int) else None,
            error=body.get("error"),
        )


def get_automation_engine() -> AutomationEngine:
    """Build the engine adapter from settings."""
    if not settings.automation_engine_url:
        logger.info("Automation engine URL not configured - dispatch disabled")
        return DisabledAutomationEngine()
    return HttpAutomationEngine(
        settings.automation_engine_url,
        token=settings.automation_engine_token,
        timeout=settings.automation_timeout_seconds,
    )

"""
Automation dispatch for newly persisted inbound messages.

Priority is continue-then-trigger: an active automation session on the
conversation receives the text as input; only when there is none (or it
reports failure) are keyword triggers scanned, and at most one automation
is started per message.

Dispatch runs detached on a thread pool. ``dispatch`` returns the Future so
tests can wait on the detached job; production callers ignore it.
"""

import logging
import uuid
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from contextlib import AbstractContextManager
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from sqlalchemy.orm import Session

from threadline.automation.engine import AutomationEngine
from threadline.db.connection import background_session
from threadline.db.repositories import AutomationRepository
from threadline.models.db import TriggerMatchMode

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DispatchResult:
    """What the dispatcher did with one message."""

    action: str  # continued, started, no_match, skipped, failed, error
    automation_id: Optional[uuid.UUID] = None
    keyword: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class _TriggerCandidate:
    id: uuid.UUID
    name: str
    keywords: list[str]
    match_mode: str


def normalize_trigger_text(text: Optional[str]) -> str:
    """Lowercase and trim text before keyword comparison."""
    if not text or not isinstance(text, str):
        return ""
    return text.strip().lower()


def match_keyword(text: str, keywords: Iterable[str], match_mode: str) -> Optional[str]:
    """
    Return the first keyword matching already-normalized text.

    Unknown match modes behave like ``exact``.

    Examples:
        >>> match_keyword("oi tudo bem", ["oi"], "starts_with")
        'oi'
        >>> match_keyword("oi tudo bem", ["oi"], "exact") is None
        True
    """
    for raw in keywords or []:
        keyword = normalize_trigger_text(str(raw))
        if not keyword:
            continue
        if match_mode == TriggerMatchMode.CONTAINS.value:
            matched = keyword in text
        elif match_mode == TriggerMatchMode.STARTS_WITH.value:
            matched = text.startswith(keyword)
        else:
            matched = text == keyword
        if matched:
            return keyword
    return None


class _InlineExecutor(Executor):
    """Runs submitted work in the calling thread."""

    def submit(self, fn, /, *args, **kwargs) -> Future:
        future: Future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as e:
            future.set_exception(e)
        return future


class AutomationDispatcher:
    """Post-persistence hook that continues or starts automations."""

    def __init__(
        self,
        engine: AutomationEngine,
        session_scope: Callable[[], AbstractContextManager[Session]] = background_session,
        max_workers: int = 4,
        executor: Optional[Executor] = None,
    ):
        """
        Initialize the dispatcher.

        Args:
            engine: Automation engine adapter
            session_scope: Context manager factory yielding a database session
            max_workers: Size of the detached dispatch pool
            executor: Executor override (``inline`` runs synchronously)
        """
        self.engine = engine
        self.session_scope = session_scope
        self._executor = executor or ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="automation-dispatch"
        )

    @classmethod
    def inline(
        cls,
        engine: AutomationEngine,
        session_scope: Callable[[], AbstractContextManager[Session]] = background_session,
    ) -> "AutomationDispatcher":
        """Dispatcher that runs jobs synchronously (CLI replay, tests)."""
        return cls(engine, session_scope=session_scope, executor=_InlineExecutor())

    def dispatch(
        self, connection_id: uuid.UUID, conversation_id: uuid.UUID, text: str
    ) -> Future:
        """
        Schedule automation handling for a new inbound message.

        Returns:
            Future resolving to a DispatchResult; it never raises
        """
        return self._executor.submit(self._run_logged, connection_id, conversation_id, text)

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting work and optionally wait for running jobs."""
        self._executor.shutdown(wait=wait)

    def _run_logged(
        self, connection_id: uuid.UUID, conversation_id: uuid.UUID, text: str
    ) -> DispatchResult:
        try:
            return self.run(connection_id, conversation_id, text)
        except Exception as e:
            logger.error(
                f"Automation dispatch failed for conversation {conversation_id}: {e}",
                exc_info=True,
            )
            return DispatchResult(action="error", error=str(e))

    def run(
        self, connection_id: uuid.UUID, conversation_id: uuid.UUID, text: str
    ) -> DispatchResult:
        """
        Continue the active session or start the first matching automation.

        Args:
            connection_id: Connection the message arrived on
            conversation_id: Conversation UUID
            text: Message text

        Returns:
            DispatchResult
        """
        if not text or not text.strip():
            return DispatchResult(action="skipped")

        with self.session_scope() as session:
            repo = AutomationRepository(session)
            has_active_session = repo.get_active_session(conversation_id) is not None
            candidates = [
                _TriggerCandidate(
                    id=automation.id,
                    name=automation.name,
                    keywords=list(automation.trigger_keywords or []),
                    match_mode=automation.trigger_match_mode or TriggerMatchMode.EXACT.value,
                )
                for automation in repo.list_trigger_candidates(connection_id)
            ]

        if has_active_session:
            result = self.engine.continue_session(conversation_id, text)
            if result.success:
                logger.info(f"Continued automation session for conversation {conversation_id}")
                return DispatchResult(action="continued")
            logger.error(
                f"Continuing automation session for conversation {conversation_id} "
                f"failed: {result.error}"
            )

        normalized = normalize_trigger_text(text)
        for candidate in candidates:
            keyword = match_keyword(normalized, candidate.keywords, candidate.match_mode)
            if keyword is None:
                continue

            logger.info(
                f"Keyword {keyword!r} matched automation {candidate.name!r} "
                f"for conversation {conversation_id}"
            )
            result = self.engine.start_automation(
                candidate.id,
                conversation_id,
                {"type": "keyword", "keyword": keyword, "message": text},
            )
            if not result.success:
                logger.error(f"Automation {candidate.name!r} failed to start: {result.error}")
                return DispatchResult(
                    action="failed",
                    automation_id=candidate.id,
                    keyword=keyword,
                    error=result.error,
                )
            return DispatchResult(action="started", automation_id=candidate.id, keyword=keyword)

        return DispatchResult(action="no_match")

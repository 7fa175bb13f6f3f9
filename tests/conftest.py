"""
Pytest configuration and fixtures for Threadline tests.

Provides an in-memory SQLite database (each test runs inside a rolled-back
outer transaction), sample rows, a fake gateway, a recording automation
engine and a FastAPI test client.
"""

import os

# Must be set before threadline.config is imported
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("LOG_FILE_ENABLED", "false")
os.environ.setdefault("LOG_CONSOLE_ENABLED", "false")
os.environ.setdefault("AUTOMATION_ENGINE_URL", "")

import uuid
from contextlib import contextmanager
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Generator, Optional

import pytest
from sqlalchemy import JSON, create_engine, event
from sqlalchemy.dialects import postgresql
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from threadline.automation.dispatcher import AutomationDispatcher
from threadline.automation.engine import EngineResult
from threadline.gateway.base import InstanceStatus, MediaPayload
from threadline.models.db import (
    Automation,
    AutomationSession,
    Base,
    Connection,
    Conversation,
)
from threadline.pipeline.ingestion import WebhookCoordinator
from threadline.pipeline.media import MediaResolver, MediaStore
from threadline.presence import PresenceTracker

MEDIA_URL_PREFIX = "http://testserver/uploads"
CONTACT_PHONE = "5511988887777"
CONTACT_JID = f"{CONTACT_PHONE}@s.whatsapp.net"
GROUP_JID = "120363041234567890@g.us"
WAPI_INSTANCE_ID = "INST123"


@pytest.fixture(scope="session")
def test_engine():
    """Create a test database engine using SQLite in-memory."""

    # Replace JSONB with JSON for SQLite
    @event.listens_for(Base.metadata, "before_create")
    def _set_json_type(target, connection, **kw):
        for table in target.tables.values():
            for column in table.columns:
                if isinstance(column.type, postgresql.JSONB):
                    column.type = JSON()

    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},  # TestClient and dispatch threads
        poolclass=StaticPool,
    )

    # pysqlite's own transaction handling breaks SAVEPOINT; let SQLAlchemy emit BEGIN
    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture(scope="function")
def db_session(test_engine) -> Generator[Session, None, None]:
    """
    Create a new database session for a test.

    Session commits and rollbacks act on SAVEPOINTs inside an outer
    transaction that is rolled back after the test, so code under test can
    commit per message and still leave no trace.
    """
    connection = test_engine.connect()
    transaction = connection.begin()
    session = Session(bind=connection, join_transaction_mode="create_savepoint")

    yield session

    session.close()
    transaction.rollback()
    connection.close()


@pytest.fixture
def session_scope(db_session: Session) -> Callable[[], Any]:
    """Session scope for the dispatcher that reuses the test session."""

    @contextmanager
    def scope():
        yield db_session

    return scope


class FakeGateway:
    """Gateway client double; also acts as its own factory."""

    def __init__(
        self,
        media: Optional[MediaPayload] = None,
        status: Optional[InstanceStatus] = None,
    ):
        self.media = media
        self.status = status or InstanceStatus(status="connected")
        self.media_calls: list[tuple[dict[str, Any], str]] = []
        self.connections: list[Connection] = []
        self.closed = 0

    def __call__(self, connection: Connection) -> "FakeGateway":
        self.connections.append(connection)
        return self

    def __enter__(self) -> "FakeGateway":
        return self

    def __exit__(self, *args: Any) -> None:
        self.closed += 1

    def fetch_media(
        self, envelope: dict[str, Any], message_type: str
    ) -> Optional[MediaPayload]:
        self.media_calls.append((envelope, message_type))
        return self.media

    def fetch_status(self) -> InstanceStatus:
        return self.status


class RecordingEngine:
    """Automation engine double that records every call."""

    def __init__(
        self,
        continue_result: Optional[EngineResult] = None,
        start_result: Optional[EngineResult] = None,
    ):
        self.continue_result = continue_result or EngineResult(success=True)
        self.start_result = start_result or EngineResult(success=True, nodes_processed=1)
        self.continued: list[tuple[uuid.UUID, str]] = []
        self.started: list[tuple[uuid.UUID, uuid.UUID, dict[str, Any]]] = []
        self.closed = 0

    def continue_session(self, conversation_id: uuid.UUID, user_input: str) -> EngineResult:
        self.continued.append((conversation_id, user_input))
        return self.continue_result

    def start_automation(
        self, automation_id: uuid.UUID, conversation_id: uuid.UUID, trigger: dict[str, Any]
    ) -> EngineResult:
        self.started.append((automation_id, conversation_id, trigger))
        return self.start_result

    def close(self) -> None:
        self.closed += 1


@pytest.fixture
def fake_gateway() -> FakeGateway:
    """Gateway double returning no media and a connected status."""
    return FakeGateway()


@pytest.fixture
def recording_engine() -> RecordingEngine:
    """Automation engine double that succeeds."""
    return RecordingEngine()


@pytest.fixture
def media_store(tmp_path: Path) -> MediaStore:
    """Blob store under a temporary directory."""
    return MediaStore(tmp_path / "media", MEDIA_URL_PREFIX)


@pytest.fixture
def media_resolver(media_store: MediaStore, fake_gateway: FakeGateway) -> MediaResolver:
    """Media resolver wired to the fake gateway."""
    return MediaResolver(media_store, fake_gateway)


@pytest.fixture
def presence() -> PresenceTracker:
    """Presence tracker without background expiry timers."""
    return PresenceTracker(ttl_seconds=10.0, auto_expire=False)


@pytest.fixture
def dispatcher(recording_engine: RecordingEngine, session_scope) -> AutomationDispatcher:
    """Synchronous dispatcher using the test session."""
    return AutomationDispatcher.inline(recording_engine, session_scope=session_scope)


@pytest.fixture
def coordinator(
    db_session: Session,
    media_resolver: MediaResolver,
    dispatcher: AutomationDispatcher,
    presence: PresenceTracker,
) -> WebhookCoordinator:
    """Webhook coordinator wired to test doubles."""
    return WebhookCoordinator(
        db_session, media_resolver, dispatcher=dispatcher, presence=presence
    )


@pytest.fixture
def sample_connection(db_session: Session) -> Connection:
    """Create a sample Evolution connection for instance 'acme'."""
    connection = Connection(
        id=uuid.uuid4(),
        name="Acme Support",
        provider="evolution",
        instance_name="acme",
        api_url="http://gateway.test",
        api_key="secret-key",
        status="connected",
        show_groups=False,
    )
    db_session.add(connection)
    db_session.commit()
    db_session.refresh(connection)
    return connection


@pytest.fixture
def group_connection(db_session: Session, sample_connection: Connection) -> Connection:
    """The sample connection with group chats enabled."""
    sample_connection.show_groups = True
    db_session.commit()
    db_session.refresh(sample_connection)
    return sample_connection


@pytest.fixture
def wapi_connection(db_session: Session) -> Connection:
    """Create a W-API connection addressed by instance id INST123."""
    connection = Connection(
        id=uuid.uuid4(),
        name="Acme W-API",
        provider="wapi",
        instance_name="acme-wapi",
        instance_id=WAPI_INSTANCE_ID,
        wapi_token="wapi-token",
        status="disconnected",
        show_groups=False,
    )
    db_session.add(connection)
    db_session.commit()
    db_session.refresh(connection)
    return connection


@pytest.fixture
def sample_conversation(
    db_session: Session, sample_connection: Connection
) -> Conversation:
    """Create an existing individual conversation with no unread messages."""
    conversation = Conversation(
        id=uuid.uuid4(),
        connection_id=sample_connection.id,
        remote_jid=CONTACT_JID,
        contact_name="Maria",
        contact_phone=CONTACT_PHONE,
        is_group=False,
        last_message_at=datetime(2025, 10, 1, 12, 0, tzinfo=UTC),
        unread_count=0,
    )
    db_session.add(conversation)
    db_session.commit()
    db_session.refresh(conversation)
    return conversation


@pytest.fixture
def make_automation(db_session: Session) -> Callable[..., Automation]:
    """Factory for automations with explicit creation order."""
    base_time = datetime(2025, 1, 1, tzinfo=UTC)
    counter = {"n": 0}

    def _make(
        name: str,
        keywords: list[str],
        match_mode: str = "exact",
        connection_ids: Optional[list[str]] = None,
        is_active: bool = True,
        trigger_enabled: bool = True,
    ) -> Automation:
        counter["n"] += 1
        automation = Automation(
            id=uuid.uuid4(),
            name=name,
            connection_ids=connection_ids,
            is_active=is_active,
            trigger_enabled=trigger_enabled,
            trigger_keywords=keywords,
            trigger_match_mode=match_mode,
            created_at=base_time + timedelta(minutes=counter["n"]),
        )
        db_session.add(automation)
        db_session.commit()
        db_session.refresh(automation)
        return automation

    return _make


@pytest.fixture
def active_session(
    db_session: Session, sample_conversation: Conversation, make_automation
) -> AutomationSession:
    """An in-progress automation run on the sample conversation."""
    automation = make_automation("Onboarding", [], trigger_enabled=False)
    automation_session = AutomationSession(
        id=uuid.uuid4(),
        automation_id=automation.id,
        conversation_id=sample_conversation.id,
        current_node_id="ask-name",
        is_active=True,
    )
    db_session.add(automation_session)
    db_session.commit()
    return automation_session


def _upsert_event(
    message: Optional[dict[str, Any]] = None,
    *,
    message_id: Optional[str] = "3EB0C431C26A1916E07A",
    remote_jid: str = CONTACT_JID,
    from_me: bool = False,
    push_name: Optional[str] = "Maria",
    timestamp: Any = 1760870400,
    participant: Optional[str] = None,
    instance: Optional[str] = "acme",
    event: str = "messages.upsert",
    **extra: Any,
) -> dict[str, Any]:
    key: dict[str, Any] = {"remoteJid": remote_jid, "fromMe": from_me}
    if message_id is not None:
        key["id"] = message_id
    if participant is not None:
        key["participant"] = participant
    data: dict[str, Any] = {
        "key": key,
        "pushName": push_name,
        "message": message if message is not None else {"conversation": "Oi"},
        "messageTimestamp": timestamp,
        **extra,
    }
    body: dict[str, Any] = {"event": event, "data": data}
    if instance is not None:
        body["instance"] = instance
    return body


@pytest.fixture
def upsert_event() -> Callable[..., dict[str, Any]]:
    """Builder for Evolution-style message upsert webhook bodies."""
    return _upsert_event


@pytest.fixture
def api_client(
    db_session: Session,
    media_resolver: MediaResolver,
    fake_gateway: FakeGateway,
    dispatcher: AutomationDispatcher,
    presence: PresenceTracker,
):
    """Create a test client for FastAPI with database dependency override."""
    from unittest.mock import patch

    from fastapi.testclient import TestClient

    from threadline.api.app import app
    from threadline.db.connection import get_db
    from threadline.diagnostics import WebhookDiagnostics

    # Override the get_db dependency to use test database
    def override_get_db():
        try:
            yield db_session
            db_session.commit()
        except Exception:
            db_session.rollback()
            raise

    app.dependency_overrides[get_db] = override_get_db

    # Disable lifespan startup checks for testing
    with patch("threadline.api.app.run_all_startup_checks"):
        client = TestClient(app)
        client.app.state.presence = presence
        client.app.state.diagnostics = WebhookDiagnostics(max_events=50)
        client.app.state.media_resolver = media_resolver
        client.app.state.dispatcher = dispatcher
        client.app.state.gateway_factory = fake_gateway
        yield client

    app.dependency_overrides.clear()

"""Tests for the webhook ingestion and dedup coordinator."""

import base64
import uuid
from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy.orm import Session

from conftest import CONTACT_JID, CONTACT_PHONE, GROUP_JID, WAPI_INSTANCE_ID
from threadline.gateway.base import MediaPayload
from threadline.models.db import Conversation, Message, MessageStatus

JPEG_B64 = base64.b64encode(b"\xff\xd8\xff\xe0jpeg-bytes").decode("ascii")
REMOTE_IMAGE_URL = "https://mmg.whatsapp.net/v/t62.7118-24/abc.enc"


def _messages(db_session: Session) -> list[Message]:
    db_session.expire_all()
    return db_session.query(Message).order_by(Message.created_at).all()


def _conversations(db_session: Session) -> list[Conversation]:
    db_session.expire_all()
    return db_session.query(Conversation).all()


def _image_message(caption: str = "Foto") -> dict:
    return {
        "imageMessage": {
            "url": REMOTE_IMAGE_URL,
            "mimetype": "image/jpeg",
            "caption": caption,
        }
    }


class TestNewMessages:
    """Tests for first deliveries."""

    def test_inbound_text_creates_conversation_and_message(
        self, coordinator, db_session, sample_connection, upsert_event
    ):
        outcome = coordinator.handle(upsert_event())

        assert outcome.status == "processed"
        assert [m.status for m in outcome.messages] == ["created"]

        conversations = _conversations(db_session)
        assert len(conversations) == 1
        conversation = conversations[0]
        assert conversation.remote_jid == CONTACT_JID
        assert conversation.contact_phone == CONTACT_PHONE
        assert conversation.contact_name == "Maria"
        assert conversation.unread_count == 1
        assert not conversation.is_group

        (message,) = _messages(db_session)
        assert message.conversation_id == conversation.id
        assert message.message_type == "text"
        assert message.content == "Oi"
        assert message.from_me is False
        assert message.status == MessageStatus.RECEIVED.value
        assert message.is_optimistic is False
        assert message.timestamp.replace(tzinfo=None) == datetime(2025, 10, 19, 10, 40)

    def test_outbound_confirmation_without_pending_row(
        self, coordinator, db_session, sample_connection, upsert_event
    ):
        outcome = coordinator.handle(
            upsert_event({"conversation": "Bom dia"}, from_me=True, event="SEND_MESSAGE")
        )

        assert outcome.messages[0].status == "created"
        assert outcome.dispatches == []
        (conversation,) = _conversations(db_session)
        assert conversation.unread_count == 0
        assert conversation.contact_name == CONTACT_PHONE
        (message,) = _messages(db_session)
        assert message.from_me is True
        assert message.status == MessageStatus.SENT.value

    def test_media_is_resolved_and_stored_locally(
        self, coordinator, db_session, sample_connection, fake_gateway, media_store, upsert_event
    ):
        fake_gateway.media = MediaPayload(base64=JPEG_B64, mimetype="image/jpeg")

        coordinator.handle(upsert_event(_image_message("Recibo")))

        (message,) = _messages(db_session)
        assert message.message_type == "image"
        assert message.content == "Recibo"
        assert media_store.is_local(message.media_url)
        assert message.media_url.endswith(".jpg")
        assert message.media_mimetype == "image/jpeg"
        # The full envelope is handed to the gateway
        envelope, message_type = fake_gateway.media_calls[0]
        assert envelope["key"]["id"] == "3EB0C431C26A1916E07A"
        assert message_type == "image"

    def test_media_failure_still_persists_message(
        self, coordinator, db_session, sample_connection, fake_gateway, upsert_event
    ):
        fake_gateway.media = None

        outcome = coordinator.handle(upsert_event(_image_message()))

        assert outcome.messages[0].status == "created"
        (message,) = _messages(db_session)
        assert message.media_url == REMOTE_IMAGE_URL

    def test_batched_messages_are_processed_in_order(
        self, coordinator, db_session, sample_connection, upsert_event
    ):
        first = upsert_event({"conversation": "Um"}, message_id="M1")["data"]
        second = upsert_event({"conversation": "Dois"}, message_id="M2")["data"]
        body = {"event": "messages.upsert", "instance": "acme", "data": {"messages": [first, second]}}

        outcome = coordinator.handle(body)

        assert [m.provider_message_id for m in outcome.messages] == ["M1", "M2"]
        assert len(_messages(db_session)) == 2
        (conversation,) = _conversations(db_session)
        assert conversation.unread_count == 2


class TestSkippedPayloads:
    """Tests for payloads that are acknowledged without persisting."""

    def test_broadcast_is_skipped(self, coordinator, db_session, sample_connection, upsert_event):
        outcome = coordinator.handle(upsert_event(remote_jid="status@broadcast"))

        assert outcome.messages[0].status == "skipped"
        assert outcome.messages[0].reason == "broadcast"
        assert _conversations(db_session) == []

    def test_group_is_skipped_when_groups_disabled(
        self, coordinator, db_session, sample_connection, upsert_event
    ):
        outcome = coordinator.handle(upsert_event(remote_jid=GROUP_JID))

        assert outcome.messages[0].reason == "groups_disabled"
        assert _conversations(db_session) == []

    @pytest.mark.parametrize(
        "content,reason",
        [
            ({"reactionMessage": {"text": "❤️"}}, "reaction"),
            ({"protocolMessage": {"type": "REVOKE"}}, "protocol"),
            ({"messageContextInfo": {}}, "context_only"),
        ],
    )
    def test_classifier_exclusions_never_persist(
        self, coordinator, db_session, sample_connection, upsert_event, content, reason
    ):
        outcome = coordinator.handle(upsert_event(content))

        assert outcome.messages[0].status == "ignored"
        assert outcome.messages[0].reason == reason
        assert _messages(db_session) == []
        assert _conversations(db_session) == []

    def test_context_only_with_envelope_body_is_not_persisted(
        self, coordinator, db_session, sample_connection, upsert_event
    ):
        outcome = coordinator.handle(
            upsert_event({"messageContextInfo": {"deviceListMetadataVersion": 2}}, body="x")
        )

        assert outcome.messages[0].status == "ignored"
        assert outcome.messages[0].reason == "context_only"
        assert _messages(db_session) == []

    def test_message_without_id_is_not_persisted(
        self, coordinator, db_session, sample_connection, upsert_event
    ):
        outcome = coordinator.handle(upsert_event(message_id=None))

        assert outcome.messages[0].reason == "no_message_id"
        assert _messages(db_session) == []

    def test_unusable_identifier_is_skipped(
        self, coordinator, db_session, sample_connection, upsert_event
    ):
        outcome = coordinator.handle(upsert_event(remote_jid="nobody@s.whatsapp.net"))

        assert outcome.messages[0].reason == "invalid_jid"
        assert _conversations(db_session) == []

    def test_envelope_without_key_is_skipped(self, coordinator, sample_connection):
        body = {"event": "messages.upsert", "instance": "acme", "data": {"message": {"conversation": "x"}}}

        outcome = coordinator.handle(body)

        assert outcome.messages[0].reason == "no_key"

    def test_missing_and_unknown_instance(self, coordinator, sample_connection, upsert_event):
        assert coordinator.handle(upsert_event(instance=None)).status == "missing_instance"
        assert coordinator.handle(upsert_event(instance="other")).status == "unknown_instance"

    def test_ignored_and_unhandled_families(self, coordinator, sample_connection):
        ignored = coordinator.handle({"event": "QRCODE_UPDATED", "instance": "acme", "data": {}})
        unhandled = coordinator.handle({"event": "something.new", "instance": "acme", "data": {}})

        assert ignored.status == "ignored"
        assert ignored.event == "qrcode.updated"
        assert unhandled.status == "unhandled"


class TestDeduplication:
    """Tests for redeliveries of the same provider message id."""

    def test_redelivery_creates_one_row_and_one_unread(
        self, coordinator, db_session, sample_connection, upsert_event
    ):
        first = coordinator.handle(upsert_event())
        second = coordinator.handle(upsert_event())

        assert first.messages[0].status == "created"
        assert second.messages[0].status == "duplicate"
        assert second.messages[0].message_id == first.messages[0].message_id
        assert len(_messages(db_session)) == 1
        (conversation,) = _conversations(db_session)
        assert conversation.unread_count == 1

    def test_duplicate_with_new_media_patches_in_place(
        self, coordinator, db_session, sample_connection, fake_gateway, media_store, upsert_event
    ):
        fake_gateway.media = None
        coordinator.handle(upsert_event(_image_message()))

        fake_gateway.media = MediaPayload(base64=JPEG_B64, mimetype="image/jpeg")
        outcome = coordinator.handle(upsert_event(_image_message()))

        assert outcome.messages[0].status == "media_patched"
        (message,) = _messages(db_session)
        assert media_store.is_local(message.media_url)
        assert message.media_mimetype == "image/jpeg"

    def test_duplicate_with_local_media_is_left_alone(
        self, coordinator, db_session, sample_connection, fake_gateway, upsert_event
    ):
        fake_gateway.media = MediaPayload(base64=JPEG_B64, mimetype="image/jpeg")
        coordinator.handle(upsert_event(_image_message()))
        stored_url = _messages(db_session)[0].media_url

        outcome = coordinator.handle(upsert_event(_image_message()))

        assert outcome.messages[0].status == "duplicate"
        assert len(fake_gateway.media_calls) == 1
        assert _messages(db_session)[0].media_url == stored_url


class TestOptimisticReconciliation:
    """Tests for matching gateway confirmations to locally sent rows."""

    @pytest.fixture
    def pending_message(self, db_session, sample_conversation) -> Message:
        message = Message(
            id=uuid.uuid4(),
            conversation_id=sample_conversation.id,
            provider_message_id=f"temp-{uuid.uuid4()}",
            is_optimistic=True,
            from_me=True,
            message_type="text",
            content="Olá, tudo bem?",
            status=MessageStatus.PENDING.value,
            timestamp=datetime.now(UTC) - timedelta(seconds=5),
        )
        db_session.add(message)
        db_session.commit()
        return message

    def test_confirmation_stamps_pending_row(
        self, coordinator, db_session, pending_message, upsert_event
    ):
        outcome = coordinator.handle(
            upsert_event({"conversation": "Olá, tudo bem?"}, message_id="3EB0REAL", from_me=True)
        )

        assert outcome.messages[0].status == "reconciled"
        assert outcome.messages[0].message_id == pending_message.id
        (message,) = _messages(db_session)
        assert message.id == pending_message.id
        assert message.provider_message_id == "3EB0REAL"
        assert message.status == MessageStatus.SENT.value
        assert message.is_optimistic is False

    def test_second_confirmation_is_a_duplicate(
        self, coordinator, db_session, pending_message, upsert_event
    ):
        body = upsert_event({"conversation": "Olá"}, message_id="3EB0REAL", from_me=True)
        coordinator.handle(body)

        outcome = coordinator.handle(body)

        assert outcome.messages[0].status == "duplicate"
        assert len(_messages(db_session)) == 1

    def test_pending_row_outside_window_is_not_matched(
        self, coordinator, db_session, pending_message, upsert_event
    ):
        pending_message.timestamp = datetime.now(UTC) - timedelta(minutes=5)
        db_session.commit()

        outcome = coordinator.handle(
            upsert_event({"conversation": "Olá"}, message_id="3EB0REAL", from_me=True)
        )

        assert outcome.messages[0].status == "created"
        assert len(_messages(db_session)) == 2

    def test_inbound_message_never_reconciles(
        self, coordinator, db_session, pending_message, upsert_event
    ):
        outcome = coordinator.handle(upsert_event(message_id="3EB0IN"))

        assert outcome.messages[0].status == "created"
        db_session.refresh(pending_message)
        assert pending_message.is_optimistic is True


class TestConversationThreading:
    """Tests for identifier variants collapsing into one thread."""

    def test_identifier_variants_share_one_conversation(
        self, coordinator, db_session, sample_connection, upsert_event
    ):
        for index, jid in enumerate(
            [f"{CONTACT_PHONE}@c.us", CONTACT_JID, f"{CONTACT_PHONE}:3@s.whatsapp.net"]
        ):
            coordinator.handle(upsert_event(message_id=f"M{index}", remote_jid=jid))

        (conversation,) = _conversations(db_session)
        assert conversation.remote_jid == CONTACT_JID
        assert conversation.unread_count == 3
        assert len(_messages(db_session)) == 3

    def test_legacy_identifier_is_repaired(
        self, coordinator, db_session, sample_connection, upsert_event
    ):
        legacy = Conversation(
            id=uuid.uuid4(),
            connection_id=sample_connection.id,
            remote_jid=f"{CONTACT_PHONE}@c.us",
            contact_phone=CONTACT_PHONE,
            unread_count=0,
        )
        db_session.add(legacy)
        db_session.commit()

        coordinator.handle(upsert_event())

        (conversation,) = _conversations(db_session)
        assert conversation.id == legacy.id
        assert conversation.remote_jid == CONTACT_JID
        assert conversation.unread_count == 1

    def test_canonical_row_wins_over_legacy_row(
        self, coordinator, db_session, sample_connection, sample_conversation, upsert_event
    ):
        legacy = Conversation(
            id=uuid.uuid4(),
            connection_id=sample_connection.id,
            remote_jid=f"{CONTACT_PHONE}@c.us",
            contact_phone=CONTACT_PHONE,
            last_message_at=datetime(2025, 10, 18, tzinfo=UTC),
            unread_count=0,
        )
        db_session.add(legacy)
        db_session.commit()

        outcome = coordinator.handle(upsert_event())

        assert outcome.messages[0].conversation_id == sample_conversation.id

    def test_activity_never_moves_backwards(
        self, coordinator, db_session, sample_conversation, upsert_event
    ):
        coordinator.handle(upsert_event(timestamp=1700000000))

        db_session.refresh(sample_conversation)
        assert sample_conversation.last_message_at.replace(tzinfo=None) == datetime(
            2025, 10, 1, 12, 0
        )
        assert sample_conversation.unread_count == 1

    def test_outbound_does_not_bump_unread(
        self, coordinator, db_session, sample_conversation, upsert_event
    ):
        coordinator.handle(upsert_event(from_me=True))

        db_session.refresh(sample_conversation)
        assert sample_conversation.unread_count == 0
        assert sample_conversation.last_message_at.replace(tzinfo=None) == datetime(
            2025, 10, 19, 10, 40
        )

    def test_push_name_refreshes_contact_name(
        self, coordinator, db_session, sample_conversation, upsert_event
    ):
        coordinator.handle(upsert_event(push_name="Maria Silva"))

        db_session.refresh(sample_conversation)
        assert sample_conversation.contact_name == "Maria Silva"


class TestGroups:
    """Tests for group chats."""

    def test_group_message_attribution(
        self, coordinator, db_session, group_connection, upsert_event
    ):
        coordinator.handle(
            upsert_event(
                {"conversation": "Bom dia, equipe"},
                remote_jid=GROUP_JID,
                participant="5511977776666@s.whatsapp.net",
                push_name="João",
                groupMetadata={"subject": "Equipe"},
            )
        )

        (conversation,) = _conversations(db_session)
        assert conversation.is_group
        assert conversation.remote_jid == GROUP_JID
        assert conversation.group_name == "Equipe"
        assert conversation.contact_phone is None
        (message,) = _messages(db_session)
        assert message.sender_name == "João"
        assert message.sender_phone == "5511977776666"

    def test_group_without_subject_gets_placeholder_then_subject(
        self, coordinator, db_session, group_connection, upsert_event
    ):
        coordinator.handle(upsert_event(message_id="G1", remote_jid=GROUP_JID))
        (conversation,) = _conversations(db_session)
        assert conversation.group_name == "Group"

        coordinator.handle(
            upsert_event(message_id="G2", remote_jid=GROUP_JID, groupMetadata={"subject": "Vendas"})
        )
        coordinator.handle(upsert_event(message_id="G3", remote_jid=GROUP_JID))

        (conversation,) = _conversations(db_session)
        assert conversation.group_name == "Vendas"
        assert conversation.unread_count == 3


class TestStatusUpdates:
    """Tests for delivery status events."""

    @pytest.fixture
    def stored_message(self, coordinator, db_session, sample_connection, upsert_event) -> Message:
        coordinator.handle(upsert_event(from_me=True, message_id="OUT-1"))
        return _messages(db_session)[0]

    def _status_event(self, status, message_id="OUT-1"):
        return {
            "event": "MESSAGES_UPDATE",
            "instance": "acme",
            "data": {"key": {"id": message_id}, "status": status},
        }

    def test_status_advances(self, coordinator, db_session, stored_message):
        outcome = coordinator.handle(self._status_event("DELIVERY_ACK"))

        assert outcome.status_updates == 1
        db_session.refresh(stored_message)
        assert stored_message.status == MessageStatus.DELIVERED.value

    def test_status_never_regresses(self, coordinator, db_session, stored_message):
        coordinator.handle(self._status_event(4))
        outcome = coordinator.handle(self._status_event(3))
        coordinator.handle(self._status_event("SERVER_ACK"))

        assert outcome.status_updates == 0
        db_session.refresh(stored_message)
        assert stored_message.status == MessageStatus.READ.value

        coordinator.handle(self._status_event("PLAYED"))
        db_session.refresh(stored_message)
        assert stored_message.status == MessageStatus.PLAYED.value

    def test_failed_is_terminal(self, coordinator, db_session, stored_message):
        stored_message.status = MessageStatus.FAILED.value
        db_session.commit()

        coordinator.handle(self._status_event("READ"))

        db_session.refresh(stored_message)
        assert stored_message.status == MessageStatus.FAILED.value

    def test_batched_and_unknown_codes(self, coordinator, db_session, stored_message):
        body = {
            "event": "messages.update",
            "instance": "acme",
            "data": [
                {"key": {"id": "OUT-1"}, "status": "ERROR"},
                {"id": "unknown-id", "status": 4},
                {"keyId": "OUT-1"},
                {"key": {"id": "OUT-1"}, "status": 3},
            ],
        }

        outcome = coordinator.handle(body)

        assert outcome.status_updates == 1
        db_session.refresh(stored_message)
        assert stored_message.status == MessageStatus.DELIVERED.value


class TestConnectionAndPresence:
    """Tests for connection-state and presence events."""

    @pytest.mark.parametrize(
        "state,expected",
        [("open", "connected"), ("connecting", "connecting"), ("close", "disconnected")],
    )
    def test_connection_update(self, coordinator, db_session, sample_connection, state, expected):
        coordinator.handle(
            {"event": "CONNECTION_UPDATE", "instance": "acme", "data": {"state": state}}
        )

        db_session.refresh(sample_connection)
        assert sample_connection.status == expected

    def test_presence_composing_marks_typing(
        self, coordinator, presence, sample_conversation
    ):
        result = coordinator.handle(
            {
                "event": "presence.update",
                "instance": "acme",
                "data": {
                    "id": CONTACT_JID,
                    "presences": {CONTACT_JID: {"lastKnownPresence": "composing"}},
                },
            }
        )

        assert result.status == "processed"
        assert presence.is_typing(sample_conversation.id)

    def test_presence_paused_clears_typing(self, coordinator, presence, sample_conversation):
        presence.set_typing(sample_conversation.id, True)

        coordinator.handle(
            {
                "event": "presence.update",
                "instance": "acme",
                "data": {
                    "id": f"{CONTACT_PHONE}@c.us",
                    "presences": {CONTACT_JID: {"lastKnownPresence": "paused"}},
                },
            }
        )

        assert not presence.is_typing(sample_conversation.id)

    def test_presence_for_unknown_conversation_is_ignored(
        self, coordinator, presence, sample_connection
    ):
        applied = coordinator.apply_presence_update(
            sample_connection, {"id": "5511900000000@s.whatsapp.net", "presence": "composing"}
        )

        assert applied is None


class TestFaultIsolation:
    """Tests for the always-acknowledge contract."""

    def test_failing_message_does_not_block_the_batch(
        self, coordinator, db_session, sample_connection, upsert_event, monkeypatch, caplog
    ):
        original = coordinator.resolver.resolve
        calls = {"n": 0}

        def flaky(*args, **kwargs):
            calls["n"] += 1
            if calls["n"] == 1:
                raise RuntimeError("database hiccup")
            return original(*args, **kwargs)

        monkeypatch.setattr(coordinator.resolver, "resolve", flaky)
        first = upsert_event(message_id="BAD")["data"]
        second = upsert_event(message_id="GOOD")["data"]

        outcome = coordinator.handle(
            {"event": "messages.upsert", "instance": "acme", "data": [first, second]}
        )

        assert outcome.status == "processed"
        assert [m.status for m in outcome.messages] == ["error", "created"]
        assert [m.provider_message_id for m in _messages(db_session)] == ["GOOD"]
        assert "Failed to ingest message BAD" in caplog.text

    def test_top_level_fault_is_reported_not_raised(
        self, coordinator, sample_connection, upsert_event, monkeypatch
    ):
        def boom(instance_name):
            raise RuntimeError("connection pool exhausted")

        monkeypatch.setattr(coordinator.connections, "get_by_instance_name", boom)

        outcome = coordinator.handle(upsert_event())

        assert outcome.status == "error"
        assert outcome.error == "connection pool exhausted"
        assert outcome.to_response()["received"] is True


class TestWapiCallbacks:
    """Tests for flat W-API callbacks addressed by instance id."""

    def _message(self, **fields):
        body = {
            "event": "message",
            "instanceId": WAPI_INSTANCE_ID,
            "phone": CONTACT_PHONE,
            "messageId": "WAPI-MSG-1",
            "fromMe": False,
            "text": "Oi",
        }
        body.update(fields)
        return body

    def test_inbound_text_creates_message(self, coordinator, db_session, wapi_connection):
        outcome = coordinator.handle(self._message())

        assert outcome.status == "processed"
        assert [m.status for m in outcome.messages] == ["created"]
        (conversation,) = _conversations(db_session)
        assert conversation.connection_id == wapi_connection.id
        assert conversation.remote_jid == CONTACT_JID
        assert conversation.unread_count == 1
        (message,) = _messages(db_session)
        assert message.provider_message_id == "WAPI-MSG-1"
        assert message.content == "Oi"
        assert message.status == MessageStatus.RECEIVED.value

    def test_inbound_text_is_dispatched_to_automation(self, coordinator, wapi_connection):
        outcome = coordinator.handle(self._message())

        assert outcome.messages[0].automation_input == "Oi"
        assert len(outcome.dispatches) == 1

    def test_redelivery_is_a_duplicate(self, coordinator, db_session, wapi_connection):
        coordinator.handle(self._message())

        outcome = coordinator.handle(self._message())

        assert outcome.messages[0].status == "duplicate"
        assert len(_messages(db_session)) == 1

    def test_unknown_instance_id(self, coordinator, db_session, wapi_connection):
        outcome = coordinator.handle(self._message(instanceId="OTHER"))

        assert outcome.status == "unknown_instance"
        assert _messages(db_session) == []

    def test_instance_name_does_not_match_instance_id(
        self, coordinator, db_session, sample_connection
    ):
        outcome = coordinator.handle(self._message(instanceId="acme"))

        assert outcome.status == "unknown_instance"

    def test_outbound_uses_recipient(self, coordinator, db_session, wapi_connection):
        outcome = coordinator.handle(
            self._message(fromMe=True, phone=None, to=f"{CONTACT_PHONE}@c.us", text="Bom dia")
        )

        assert outcome.messages[0].status == "created"
        assert outcome.dispatches == []
        (conversation,) = _conversations(db_session)
        assert conversation.remote_jid == CONTACT_JID
        assert conversation.unread_count == 0
        (message,) = _messages(db_session)
        assert message.from_me is True
        assert message.status == MessageStatus.SENT.value

    def test_image_with_caption(
        self, coordinator, db_session, wapi_connection, fake_gateway, media_store
    ):
        fake_gateway.media = MediaPayload(base64=JPEG_B64, mimetype="image/jpeg")

        outcome = coordinator.handle(
            self._message(text=None, image=REMOTE_IMAGE_URL, caption="Foto")
        )

        assert outcome.messages[0].status == "created"
        (message,) = _messages(db_session)
        assert message.message_type == "image"
        assert message.content == "Foto"
        assert media_store.is_local(message.media_url)
        ((envelope, message_type),) = fake_gateway.media_calls
        assert envelope["messageId"] == "WAPI-MSG-1"
        assert message_type == "image"

    def test_message_without_address_is_skipped(self, coordinator, db_session, wapi_connection):
        outcome = coordinator.handle(self._message(phone=None))

        assert [(m.status, m.reason) for m in outcome.messages] == [("skipped", "no_address")]
        assert _messages(db_session) == []

    def test_message_without_id_is_not_persisted(
        self, coordinator, db_session, wapi_connection
    ):
        outcome = coordinator.handle(self._message(messageId=None))

        assert outcome.messages[0].reason == "no_message_id"
        assert _messages(db_session) == []

    @pytest.fixture
    def sent_message(self, coordinator, db_session, wapi_connection) -> Message:
        coordinator.handle(self._message(fromMe=True, messageId="WAPI-OUT-1"))
        return _messages(db_session)[0]

    def _ack(self, ack, message_id="WAPI-OUT-1"):
        return {
            "event": "message.ack",
            "instanceId": WAPI_INSTANCE_ID,
            "messageId": message_id,
            "ack": ack,
        }

    def test_ack_advances_status(self, coordinator, db_session, sent_message):
        outcome = coordinator.handle(self._ack(3))

        assert outcome.event == "messages.update"
        assert outcome.status_updates == 1
        db_session.refresh(sent_message)
        assert sent_message.status == MessageStatus.READ.value

    def test_ack_never_regresses(self, coordinator, db_session, sent_message):
        coordinator.handle(self._ack(3))
        outcome = coordinator.handle(self._ack("2"))

        assert outcome.status_updates == 0
        db_session.refresh(sent_message)
        assert sent_message.status == MessageStatus.READ.value

    def test_failed_ack_marks_sent_message_failed(self, coordinator, db_session, sent_message):
        outcome = coordinator.handle(self._ack(-1))

        assert outcome.status_updates == 1
        db_session.refresh(sent_message)
        assert sent_message.status == MessageStatus.FAILED.value

        coordinator.handle(self._ack(3))
        db_session.refresh(sent_message)
        assert sent_message.status == MessageStatus.FAILED.value

    def test_failed_ack_after_read_is_ignored(self, coordinator, db_session, sent_message):
        coordinator.handle(self._ack(3))

        outcome = coordinator.handle(self._ack(0))

        assert outcome.status_updates == 0
        db_session.refresh(sent_message)
        assert sent_message.status == MessageStatus.READ.value

    def test_unknown_ack_is_a_no_op(self, coordinator, db_session, sent_message):
        outcome = coordinator.handle(self._ack(9))

        assert outcome.status_updates == 0
        db_session.refresh(sent_message)
        assert sent_message.status == MessageStatus.SENT.value

    def test_connection_update_sets_status_and_phone(
        self, coordinator, db_session, wapi_connection
    ):
        outcome = coordinator.handle(
            {
                "event": "connection.update",
                "instanceId": WAPI_INSTANCE_ID,
                "connected": True,
                "phone": "5511977776666",
            }
        )

        assert outcome.event == "connection.update"
        db_session.refresh(wapi_connection)
        assert wapi_connection.status == "connected"
        assert wapi_connection.phone_number == "5511977776666"

    def test_disconnect_keeps_phone(self, coordinator, db_session, wapi_connection):
        wapi_connection.phone_number = "5511977776666"
        wapi_connection.status = "connected"
        db_session.commit()

        coordinator.handle({"instanceId": WAPI_INSTANCE_ID, "connected": False})

        db_session.refresh(wapi_connection)
        assert wapi_connection.status == "disconnected"
        assert wapi_connection.phone_number == "5511977776666"

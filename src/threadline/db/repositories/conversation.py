"""
Conversation repository.

All writes that can race between concurrent webhook deliveries (creation,
identifier repair, metadata bumps) are single conditional statements.
"""

import uuid
from datetime import datetime
from typing import Optional, Sequence

from sqlalchemy import case, func, not_, or_, select, update
from sqlalchemy.orm import Session, aliased

from threadline.db.repositories.base import BaseRepository
from threadline.models.db import Conversation

CANONICAL_SUFFIX = "@s.whatsapp.net"


class ConversationRepository(BaseRepository[Conversation]):
    """Repository for Conversation model."""

    def __init__(self, session: Session):
        super().__init__(Conversation, session)

    def get_by_jid(
        self, connection_id: uuid.UUID, remote_jid: str
    ) -> Optional[Conversation]:
        """
        Get conversation by exact (connection, normalized identifier).

        Args:
            connection_id: Connection UUID
            remote_jid: Normalized remote identifier

        Returns:
            Conversation instance or None
        """
        return (
            self.session.query(Conversation)
            .filter(
                Conversation.connection_id == connection_id,
                Conversation.remote_jid == remote_jid,
            )
            .first()
        )

    def find_individual(
        self,
        connection_id: uuid.UUID,
        remote_jid: str,
        phone: str,
        legacy_jids: Sequence[str] = (),
    ) -> Optional[Conversation]:
        """
        Find an individual chat by identifier or by bare phone number.

        Rows already stored under the canonical suffix win, then the most
        recently active one. Older rows may carry a legacy identifier scheme.

        Args:
            connection_id: Connection UUID
            remote_jid: Normalized remote identifier
            phone: Digit-only phone number
            legacy_jids: Other wire spellings of the same contact

        Returns:
            Conversation instance or None
        """
        matchers = [Conversation.remote_jid == remote_jid]
        if phone:
            matchers.append(Conversation.contact_phone == phone)
        if legacy_jids:
            matchers.append(Conversation.remote_jid.in_(list(legacy_jids)))

        canonical_first = case(
            (Conversation.remote_jid.like(f"%{CANONICAL_SUFFIX}"), 0), else_=1
        )
        return (
            self.session.query(Conversation)
            .filter(
                Conversation.connection_id == connection_id,
                Conversation.is_group.is_(False),
                or_(*matchers),
            )
            .order_by(
                canonical_first,
                Conversation.last_message_at.desc().nulls_last(),
                Conversation.created_at,
            )
            .first()
        )

    def find_for_presence(
        self, connection_id: uuid.UUID, remote_jid: str, phone: str
    ) -> Optional[Conversation]:
        """
        Look up the conversation a presence update refers to.

        Args:
            connection_id: Connection UUID
            remote_jid: Normalized remote identifier
            phone: Digit-only phone number ('' for groups)

        Returns:
            Conversation instance or None
        """
        matchers = [Conversation.remote_jid == remote_jid]
        if phone:
            matchers.append(Conversation.contact_phone == phone)
        return (
            self.session.query(Conversation)
            .filter(Conversation.connection_id == connection_id, or_(*matchers))
            .order_by(Conversation.last_message_at.desc().nulls_last())
            .first()
        )

    def insert_if_absent(
        self,
        connection_id: uuid.UUID,
        remote_jid: str,
        *,
        contact_name: Optional[str],
        contact_phone: Optional[str],
        is_group: bool,
        group_name: Optional[str],
        last_message_at: datetime,
        unread_count: int,
    ) -> tuple[Conversation, bool]:
        """
        Create a conversation unless (connection, identifier) already exists (race-safe).

        Uses INSERT ... ON CONFLICT DO NOTHING on uq_conversation_connection_jid,
        so two deliveries racing to create the same thread converge on one row.

        Args:
            connection_id: Connection UUID
            remote_jid: Normalized remote identifier
            contact_name: Display name for the thread
            contact_phone: Bare phone (None for groups)
            is_group: Whether this is a group thread
            group_name: Group subject
            last_message_at: Activity timestamp
            unread_count: Initial unread counter

        Returns:
            Tuple of (conversation, created)

        Raises:
            RuntimeError: If the row cannot be fetched after the insert
        """
        stmt = (
            self._insert()
            .values(
                id=uuid.uuid4(),
                connection_id=connection_id,
                remote_jid=remote_jid,
                contact_name=contact_name,
                contact_phone=contact_phone,
                is_group=is_group,
                group_name=group_name,
                last_message_at=last_message_at,
                unread_count=unread_count,
            )
            .on_conflict_do_nothing(index_elements=["connection_id", "remote_jid"])
            .returning(Conversation.id)
        )
        created_id = self.session.execute(stmt).scalar_one_or_none()
        self.session.flush()

        conversation = self.get_by_jid(connection_id, remote_jid)
        if conversation is None:
            raise RuntimeError(
                f"Conversation creation/fetch failed for connection_id={connection_id}, "
                f"remote_jid={remote_jid}"
            )
        return conversation, created_id is not None

    def repair_remote_jid(self, conversation_id: uuid.UUID, remote_jid: str) -> bool:
        """
        Migrate a drifted stored identifier to its canonical form in place.

        Skipped when another row on the same connection already owns the
        canonical identifier, so the unique constraint is never violated.

        Args:
            conversation_id: Conversation UUID
            remote_jid: Canonical identifier

        Returns:
            True if the row was rewritten
        """
        other = aliased(Conversation)
        owner_exists = (
            select(other.id)
            .where(
                other.connection_id == Conversation.connection_id,
                other.remote_jid == remote_jid,
            )
            .exists()
        )
        result = self.session.execute(
            update(Conversation)
            .where(Conversation.id == conversation_id, not_(owner_exists))
            .values(remote_jid=remote_jid, updated_at=func.now())
            .execution_options(synchronize_session="fetch")
        )
        self.session.flush()
        return result.rowcount > 0

    def record_activity(
        self,
        conversation_id: uuid.UUID,
        at: datetime,
        *,
        inbound: bool,
        group_name: Optional[str] = None,
        contact_name: Optional[str] = None,
    ) -> None:
        """
        Bump activity metadata for an existing conversation atomically.

        Inbound messages increment the unread counter. Names only ever
        replace stored values when a non-empty value is supplied; the
        activity timestamp never moves backwards.

        Args:
            conversation_id: Conversation UUID
            at: Message timestamp
            inbound: Whether the message came from the remote party
            group_name: Group subject carried by the event, if any
            contact_name: Push name carried by the event, if any
        """
        values = {
            "last_message_at": case(
                (
                    or_(
                        Conversation.last_message_at.is_(None),
                        Conversation.last_message_at < at,
                    ),
                    at,
                ),
                else_=Conversation.last_message_at,
            ),
            "updated_at": func.now(),
        }
        if inbound:
            values["unread_count"] = Conversation.unread_count + 1
        if group_name:
            values["group_name"] = func.coalesce(group_name, Conversation.group_name)
        if contact_name:
            values["contact_name"] = func.coalesce(
                func.nullif(contact_name, ""), Conversation.contact_name
            )

        self.session.execute(
            update(Conversation)
            .where(Conversation.id == conversation_id)
            .values(**values)
            .execution_options(synchronize_session="fetch")
        )
        self.session.flush()

"""
Message repository.

Provider message ids are the idempotency key. Only confirmed rows
(``is_optimistic = false``) take part in the partial unique index, so every
upsert names that index predicate explicitly.
"""

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import case, func, not_, or_, select, text, update
from sqlalchemy.orm import Session, aliased

from threadline.db.repositories.base import BaseRepository
from threadline.models.db import (
    CONFIRMED_MESSAGE_ID_PREDICATE,
    Message,
    MessageStatus,
    statuses_below,
)


class MessageRepository(BaseRepository[Message]):
    """Repository for Message model."""

    def __init__(self, session: Session):
        super().__init__(Message, session)

    def get_confirmed(self, provider_message_id: str) -> Optional[Message]:
        """
        Get the confirmed message carrying a provider id.

        Args:
            provider_message_id: Gateway message id

        Returns:
            Message instance or None
        """
        return (
            self.session.query(Message)
            .filter(
                Message.provider_message_id == provider_message_id,
                Message.is_optimistic.is_(False),
            )
            .first()
        )

    def find_pending_optimistic(
        self, conversation_id: uuid.UUID, since: datetime
    ) -> Optional[Message]:
        """
        Find the newest unconfirmed optimistic outbound row in a conversation.

        Args:
            conversation_id: Conversation UUID
            since: Oldest timestamp still eligible for reconciliation

        Returns:
            Message instance or None
        """
        return (
            self.session.query(Message)
            .filter(
                Message.conversation_id == conversation_id,
                Message.from_me.is_(True),
                Message.is_optimistic.is_(True),
                Message.status == MessageStatus.PENDING.value,
                Message.timestamp > since,
            )
            .order_by(Message.timestamp.desc())
            .first()
        )

    def reconcile_optimistic(self, message_id: uuid.UUID, provider_message_id: str) -> bool:
        """
        Stamp a confirmed provider id onto an optimistic row and mark it sent.

        Conditional on the row still being optimistic and on no confirmed row
        already owning the id, so two confirmations cannot both claim it.

        Args:
            message_id: Optimistic message UUID
            provider_message_id: Confirmed gateway message id

        Returns:
            True if this call performed the reconciliation
        """
        confirmed = aliased(Message)
        already_confirmed = (
            select(confirmed.id)
            .where(
                confirmed.provider_message_id == provider_message_id,
                confirmed.is_optimistic.is_(False),
            )
            .exists()
        )
        result = self.session.execute(
            update(Message)
            .where(
                Message.id == message_id,
                Message.is_optimistic.is_(True),
                not_(already_confirmed),
            )
            .values(
                provider_message_id=provider_message_id,
                is_optimistic=False,
                status=MessageStatus.SENT.value,
            )
            .execution_options(synchronize_session="fetch")
        )
        self.session.flush()
        return result.rowcount > 0

    def upsert_confirmed(self, **values: Any) -> tuple[uuid.UUID, bool]:
        """
        Insert a confirmed message, merging into an existing row on id conflict.

        A concurrent delivery of the same provider id never produces a second
        row. On conflict, stored non-null media fields win and the status is
        only promoted from pending to sent.

        Args:
            **values: Message column values (provider_message_id required)

        Returns:
            Tuple of (message id, created)
        """
        new_id = uuid.uuid4()
        stmt = self._insert().values(id=new_id, is_optimistic=False, **values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["provider_message_id"],
            index_where=text(CONFIRMED_MESSAGE_ID_PREDICATE[self._dialect_name()]),
            set_={
                "media_url": func.coalesce(Message.media_url, stmt.excluded.media_url),
                "media_mimetype": func.coalesce(
                    Message.media_mimetype, stmt.excluded.media_mimetype
                ),
                "status": case(
                    (
                        Message.status == MessageStatus.PENDING.value,
                        MessageStatus.SENT.value,
                    ),
                    else_=Message.status,
                ),
            },
        ).returning(Message.id)

        message_id = self.session.execute(stmt).scalar_one()
        self.session.flush()
        return message_id, message_id == new_id

    def patch_media(
        self,
        message_id: uuid.UUID,
        media_url: str,
        media_mimetype: Optional[str],
        local_prefix: str,
    ) -> bool:
        """
        Backfill media on a stored row that lacks a locally hosted reference.

        Args:
            message_id: Message UUID
            media_url: Locally hosted media URL
            media_mimetype: Resolved mimetype (keeps the stored one if None)
            local_prefix: URL prefix identifying locally hosted media

        Returns:
            True if the row was patched
        """
        result = self.session.execute(
            update(Message)
            .where(
                Message.id == message_id,
                or_(
                    Message.media_url.is_(None),
                    not_(Message.media_url.startswith(local_prefix, autoescape=True)),
                ),
            )
            .values(
                media_url=media_url,
                media_mimetype=func.coalesce(media_mimetype, Message.media_mimetype),
            )
            .execution_options(synchronize_session="fetch")
        )
        self.session.flush()
        return result.rowcount > 0

    def advance_status(self, provider_message_id: str, status: MessageStatus) -> int:
        """
        Move a message forward in the delivery lifecycle.

        Never lowers a status and never touches a failed message; the
        comparison happens in the UPDATE itself so concurrent, out-of-order
        status events cannot regress each other. A FAILED target goes through
        ``mark_failed``.

        Args:
            provider_message_id: Gateway message id
            status: Target status

        Returns:
            Number of rows updated
        """
        if status == MessageStatus.FAILED:
            return self.mark_failed(provider_message_id)
        lower = statuses_below(status)
        if not lower:
            return 0
        result = self.session.execute(
            update(Message)
            .where(
                Message.provider_message_id == provider_message_id,
                Message.status.in_(lower),
            )
            .values(status=status.value)
            .execution_options(synchronize_session="fetch")
        )
        self.session.flush()
        return result.rowcount

    def mark_failed(self, provider_message_id: str) -> int:
        """
        Record a delivery failure reported by the gateway.

        Only messages the recipient has not yet acknowledged can fail; a
        delivered or read message stays as it is.

        Args:
            provider_message_id: Gateway message id

        Returns:
            Number of rows updated
        """
        result = self.session.execute(
            update(Message)
            .where(
                Message.provider_message_id == provider_message_id,
                Message.status.in_(
                    [MessageStatus.PENDING.value, MessageStatus.SENT.value]
                ),
            )
            .values(status=MessageStatus.FAILED.value)
            .execution_options(synchronize_session="fetch")
        )
        self.session.flush()
        return result.rowcount

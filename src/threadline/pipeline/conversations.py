"""
Conversation resolution: find-or-create threads keyed by normalized identifier.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from threadline.db.repositories import ConversationRepository
from threadline.models.db import Conversation
from threadline.pipeline.identifiers import legacy_variants

logger = logging.getLogger(__name__)

GROUP_PLACEHOLDER_NAME = "Group"


@dataclass
class ResolvedConversation:
    """Conversation a message belongs to, and how it was obtained."""

    conversation: Conversation
    created: bool = False
    repaired: bool = False


class ConversationResolver:
    """
    Maps (connection, identifier) onto exactly one conversation row.

    Individual chats also match on bare phone so that rows stored under a
    legacy identifier scheme collapse into one thread; their stored
    identifier is migrated to the canonical form when seen.
    """

    def __init__(self, session: Session):
        self.conversations = ConversationRepository(session)

    def resolve(
        self,
        connection_id: uuid.UUID,
        remote_jid: str,
        phone: str,
        is_group: bool,
        *,
        from_me: bool,
        at: datetime,
        push_name: Optional[str] = None,
        group_subject: Optional[str] = None,
    ) -> ResolvedConversation:
        """
        Find or create the conversation for a message and bump its metadata.

        Args:
            connection_id: Connection UUID
            remote_jid: Normalized remote identifier
            phone: Digit-only phone ('' for groups)
            is_group: Whether the identifier is a group
            from_me: Whether the message is outbound
            at: Message timestamp
            push_name: Display name pushed by the remote party
            group_subject: Group subject carried by the event, if any

        Returns:
            ResolvedConversation
        """
        contact_name = push_name if push_name and not from_me else None

        if is_group:
            existing = self.conversations.get_by_jid(connection_id, remote_jid)
        else:
            existing = self.conversations.find_individual(
                connection_id, remote_jid, phone, legacy_jids=legacy_variants(phone)
            )

        if existing is None:
            if is_group:
                display_name = group_subject or GROUP_PLACEHOLDER_NAME
            else:
                display_name = contact_name or phone or None
            conversation, created = self.conversations.insert_if_absent(
                connection_id,
                remote_jid,
                contact_name=display_name,
                contact_phone=None if is_group else (phone or None),
                is_group=is_group,
                group_name=display_name if is_group else None,
                last_message_at=at,
                unread_count=0 if from_me else 1,
            )
            if created:
                logger.info(
                    f"Created {'group' if is_group else 'conversation'} "
                    f"{conversation.id} for {remote_jid}"
                )
                return ResolvedConversation(conversation, created=True)
            # Another delivery created it first; treat as an existing thread
            existing = conversation

        repaired = False
        if existing.remote_jid != remote_jid:
            repaired = self.conversations.repair_remote_jid(existing.id, remote_jid)
            if repaired:
                logger.info(
                    f"Migrated conversation {existing.id} identifier to {remote_jid}"
                )

        self.conversations.record_activity(
            existing.id,
            at,
            inbound=not from_me,
            group_name=group_subject if is_group else None,
            contact_name=None if is_group else contact_name,
        )
        return ResolvedConversation(existing, repaired=repaired)

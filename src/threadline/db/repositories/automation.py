"""
Automation repository.

Automations and their sessions belong to the external flow engine; this
service only reads them to decide whether to continue or start a run.
"""

import uuid
from typing import Optional

from sqlalchemy.orm import Session

from threadline.db.repositories.base import BaseRepository
from threadline.models.db import Automation, AutomationSession


class AutomationRepository(BaseRepository[Automation]):
    """Repository for Automation and AutomationSession models."""

    def __init__(self, session: Session):
        super().__init__(Automation, session)

    def get_active_session(self, conversation_id: uuid.UUID) -> Optional[AutomationSession]:
        """
        Get the in-progress automation run for a conversation.

        Args:
            conversation_id: Conversation UUID

        Returns:
            AutomationSession instance or None
        """
        return (
            self.session.query(AutomationSession)
            .filter(
                AutomationSession.conversation_id == conversation_id,
                AutomationSession.is_active.is_(True),
            )
            .order_by(AutomationSession.updated_at.desc())
            .first()
        )

    def list_trigger_candidates(self, connection_id: uuid.UUID) -> list[Automation]:
        """
        List active, trigger-enabled automations applicable to a connection.

        An automation with no connection list applies to every connection.
        Scoping is checked in Python because connection_ids is a JSON list
        and containment operators differ between PostgreSQL and SQLite.

        Args:
            connection_id: Connection UUID

        Returns:
            Automations in creation order
        """
        candidates = (
            self.session.query(Automation)
            .filter(
                Automation.is_active.is_(True),
                Automation.trigger_enabled.is_(True),
            )
            .order_by(Automation.created_at, Automation.id)
            .all()
        )
        wanted = str(connection_id)
        return [
            automation
            for automation in candidates
            if not automation.connection_ids
            or wanted in {str(cid) for cid in automation.connection_ids}
        ]

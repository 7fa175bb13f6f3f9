"""
Connection repository.
"""

import uuid
from typing import Optional

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from threadline.db.repositories.base import BaseRepository
from threadline.models.db import Connection


class ConnectionRepository(BaseRepository[Connection]):
    """Repository for Connection model."""

    def __init__(self, session: Session):
        super().__init__(Connection, session)

    def get_by_instance_name(self, instance_name: str) -> Optional[Connection]:
        """
        Get connection by gateway instance name.

        Args:
            instance_name: Instance identifier sent in webhook envelopes

        Returns:
            Connection instance or None
        """
        return (
            self.session.query(Connection)
            .filter(Connection.instance_name == instance_name)
            .first()
        )

    def get_by_instance_id(self, instance_id: str) -> Optional[Connection]:
        """
        Get a W-API connection by its instance id.

        Only rows that also carry a W-API token qualify; W-API callbacks
        identify the instance by id rather than by name.

        Args:
            instance_id: W-API instance id sent in webhook bodies

        Returns:
            Connection instance or None
        """
        return (
            self.session.query(Connection)
            .filter(
                Connection.instance_id == instance_id,
                Connection.wapi_token.is_not(None),
            )
            .first()
        )

    def set_status(
        self,
        connection_id: uuid.UUID,
        status: str,
        phone_number: Optional[str] = None,
        update_phone: bool = False,
    ) -> bool:
        """
        Atomically set the link status (and optionally phone number).

        Only writes when something changed, so repeated status webhooks do
        not bump updated_at.

        Args:
            connection_id: Connection UUID
            status: New status value
            phone_number: Phone number reported by the gateway
            update_phone: Whether phone_number should be written too

        Returns:
            True if the row was changed
        """
        values = {"status": status, "updated_at": func.now()}
        changed = Connection.status != status
        if update_phone:
            values["phone_number"] = phone_number
            changed = changed | Connection.phone_number.is_distinct_from(phone_number)

        result = self.session.execute(
            update(Connection)
            .where(Connection.id == connection_id, changed)
            .values(**values)
            .execution_options(synchronize_session="fetch")
        )
        self.session.flush()
        return result.rowcount > 0

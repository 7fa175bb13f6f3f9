"""
Base repository with primary-key lookup and dialect-aware inserts.
"""

import uuid
from typing import Generic, Optional, Type, TypeVar

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from threadline.models.db import Base

ModelType = TypeVar("ModelType", bound=Base)


class BaseRepository(Generic[ModelType]):
    """Base repository for a single model."""

    def __init__(self, model: Type[ModelType], session: Session):
        self.model = model
        self.session = session

    def get(self, id: uuid.UUID) -> Optional[ModelType]:
        """
        Get a single record by primary key.

        Args:
            id: Record UUID

        Returns:
            Model instance or None
        """
        return self.session.get(self.model, id)

    def _dialect_name(self) -> str:
        bind = self.session.get_bind()
        if bind is None:
            raise RuntimeError("Session has no bind")
        return bind.dialect.name

    def _insert(self):
        """
        Dialect-specific INSERT construct supporting ON CONFLICT.

        PostgreSQL in production, SQLite for local runs and tests; both
        expose the same on_conflict_do_update / on_conflict_do_nothing API.
        """
        dialect_name = self._dialect_name()
        if dialect_name == "postgresql":
            return postgresql.insert(self.model)
        if dialect_name == "sqlite":
            return sqlite.insert(self.model)
        raise RuntimeError(f"Upserts are not supported on dialect {dialect_name!r}")

"""
Repository layer for database operations.

Provides a clean API for CRUD operations on database models.
"""

from threadline.db.repositories.automation import AutomationRepository
from threadline.db.repositories.base import BaseRepository
from threadline.db.repositories.connection import ConnectionRepository
from threadline.db.repositories.conversation import ConversationRepository
from threadline.db.repositories.message import MessageRepository

__all__ = [
    "AutomationRepository",
    "BaseRepository",
    "ConnectionRepository",
    "ConversationRepository",
    "MessageRepository",
]

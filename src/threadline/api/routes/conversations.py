"""
Conversation API routes.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from threadline.api.deps import get_presence
from threadline.api.schemas import TypingStatusResponse
from threadline.db.connection import get_db
from threadline.db.repositories import ConversationRepository
from threadline.presence import PresenceTracker

router = APIRouter()


@router.get("/{conversation_id}/typing", response_model=TypingStatusResponse)
async def get_typing_status(
    conversation_id: UUID,
    session: Session = Depends(get_db),
    presence: PresenceTracker = Depends(get_presence),
) -> TypingStatusResponse:
    """
    Whether the remote party is currently typing.

    Stale indicators read as not typing.

    Raises:
        HTTPException: 404 if the conversation does not exist
    """
    conversation = ConversationRepository(session).get(conversation_id)
    if not conversation:
        raise HTTPException(
            status_code=404, detail=f"Conversation {conversation_id} not found"
        )
    return TypingStatusResponse(is_typing=presence.is_typing(conversation.id))

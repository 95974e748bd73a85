from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from ..auth import get_current_user
from ..database import get_db
from ..models.user import User
from ..services.messaging import MessageService, MessagingError, serialize_message
from .schemas import SendMessageRequest

router = APIRouter(prefix="/messages", tags=["messages"])


@router.post("", status_code=status.HTTP_201_CREATED)
def send_message(
    payload: SendMessageRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    try:
        message = MessageService(db).send_chat(current_user, payload.receiver_id, payload.content)
    except MessagingError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return serialize_message(message)


@router.get("/{other_id}")
def get_conversation(
    other_id: UUID,
    limit: int = 100,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    messages = MessageService(db).conversation(current_user.id, other_id, limit=limit)
    return {"count": len(messages), "messages": [serialize_message(m) for m in messages]}


@router.post("/{other_id}/read")
def mark_conversation_read(
    other_id: UUID,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    updated = MessageService(db).mark_read(current_user.id, other_id)
    return {"status": "ok", "marked_read": updated}

"""Per-complaint two-party message threads."""
import logging
from typing import Dict, List
from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession

from auth import Actor
from complaints import load_visible_complaint
from database import atomic, reading
from errors import AuthorizationError, NoRecipientError, ValidationError
from events import EventBus, ChangeEvent, INSERT, UPDATE, bus
from models import Complaint, Message
from profiles import display_names
from schemas import ConversationResponse, MessageCreate, MessageResponse

logger = logging.getLogger(__name__)


def resolve_receiver(complaint: Complaint, sender_id: str) -> str:
    """Pick the other participant of the thread.

    The owning student and the assigned admin are the only participants.

    Raises:
        NoRecipientError: No admin is assigned yet
        AuthorizationError: The sender is not a participant
    """
    if complaint.assigned_admin_id is None:
        raise NoRecipientError()
    if sender_id == complaint.assigned_admin_id:
        return complaint.user_id
    if sender_id == complaint.user_id:
        return complaint.assigned_admin_id
    raise AuthorizationError("Conversation")


class MessagingChannel:
    """Send, list and acknowledge messages on a complaint thread."""

    def __init__(self, event_bus: EventBus = None):
        self.bus = event_bus or bus

    async def send_message(
        self,
        db: AsyncSession,
        actor: Actor,
        complaint_id: str,
        request: MessageCreate
    ) -> MessageResponse:
        """Persist one unread message addressed to the other participant.

        Nothing is written when the receiver cannot be resolved or the
        insert fails; the caller can resubmit the same text.
        """
        text = request.message_text.strip()
        if not text:
            raise ValidationError("Message cannot be empty")

        complaint = await load_visible_complaint(db, actor, complaint_id)
        receiver_id = resolve_receiver(complaint, actor.user_id)

        async with atomic(db, "send message"):
            message = Message(
                complaint_id=complaint_id,
                sender_id=actor.user_id,
                receiver_id=receiver_id,
                message_text=text,
                attachment_url=request.attachment_url,
                is_read=False
            )
            db.add(message)

        logger.info(f"Message {message.id} sent on complaint {complaint_id}")
        self.bus.publish(ChangeEvent(
            table="messages",
            kind=INSERT,
            row_id=str(message.id),
            fields={"complaint_id": complaint_id, "receiver_id": receiver_id}
        ))

        item = MessageResponse.model_validate(message)
        item.sender_name = actor.full_name
        return item

    async def list_messages(self, db: AsyncSession, actor: Actor, complaint_id: str) -> List[MessageResponse]:
        """Thread in creation order, sender names resolved in one batch."""
        await load_visible_complaint(db, actor, complaint_id)
        async with reading("load messages"):
            messages = (await db.scalars(
                select(Message)
                .where(Message.complaint_id == complaint_id)
                .order_by(Message.created_at, Message.id)
            )).all()
            names = await display_names(db, {message.sender_id for message in messages})

        results = []
        for message in messages:
            item = MessageResponse.model_validate(message)
            item.sender_name = names.get(message.sender_id)
            results.append(item)
        return results

    async def mark_read(self, db: AsyncSession, actor: Actor, complaint_id: str) -> int:
        """Mark messages addressed to the actor as read.

        Idempotent: already-read messages and messages the actor sent are
        never touched.

        Returns:
            Number of messages flipped to read
        """
        await load_visible_complaint(db, actor, complaint_id)
        async with atomic(db, "mark messages read"):
            result = await db.execute(
                update(Message)
                .where(
                    Message.complaint_id == complaint_id,
                    Message.receiver_id == actor.user_id,
                    Message.is_read.is_(False)
                )
                .values(is_read=True)
                .execution_options(synchronize_session="fetch")
            )
        flipped = result.rowcount or 0
        if flipped:
            self.bus.publish(ChangeEvent(
                table="messages",
                kind=UPDATE,
                row_id=complaint_id,
                fields={"complaint_id": complaint_id, "receiver_id": actor.user_id}
            ))
        return flipped

    async def unread_by_complaint(self, db: AsyncSession, actor: Actor) -> Dict[str, int]:
        """Unread message counts addressed to the actor, per complaint."""
        async with reading("count unread messages"):
            rows = await db.execute(
                select(Message.complaint_id, func.count())
                .where(Message.receiver_id == actor.user_id, Message.is_read.is_(False))
                .group_by(Message.complaint_id)
            )
            return {complaint_id: count for complaint_id, count in rows.all()}

    async def list_conversations(self, db: AsyncSession, actor: Actor) -> List[ConversationResponse]:
        """Complaints that carry a thread for the actor, most recently updated first."""
        query = select(Complaint).order_by(Complaint.updated_at.desc())
        if not actor.is_admin:
            query = query.where(Complaint.user_id == actor.user_id)
        async with reading("list conversations"):
            complaints = (await db.scalars(query)).all()
            names = await display_names(db, {complaint.user_id for complaint in complaints})
        unread = await self.unread_by_complaint(db, actor)

        conversations = []
        for complaint in complaints:
            student_name = names.get(complaint.user_id)
            if complaint.is_anonymous and actor.is_admin:
                student_name = "Anonymous"
            conversations.append(ConversationResponse(
                complaint_id=complaint.id,
                title=complaint.title,
                status=complaint.status,
                student_name=student_name,
                unread=unread.get(complaint.id, 0),
                updated_at=complaint.updated_at
            ))
        return conversations

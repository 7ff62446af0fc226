"""Meeting requests between students and admins."""
import logging
from typing import List
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from auth import Actor, require_admin
from complaints import load_visible_complaint
from database import atomic, reading
from errors import AuthorizationError, PermissionDenied
from events import EventBus, ChangeEvent, INSERT, UPDATE, bus
from models import Meeting, to_storage
from profiles import display_names
from schemas import MeetingCreate, MeetingResponse, MeetingStatus, MeetingUpdate

logger = logging.getLogger(__name__)


class MeetingService:
    def __init__(self, event_bus: EventBus = None):
        self.bus = event_bus or bus

    async def request_meeting(self, db: AsyncSession, actor: Actor, request: MeetingCreate) -> MeetingResponse:
        """Students ask for a meeting, optionally about one of their complaints."""
        if actor.is_admin:
            raise PermissionDenied("Only students can request meetings")
        if request.complaint_id:
            await load_visible_complaint(db, actor, request.complaint_id)

        async with atomic(db, "request meeting"):
            meeting = Meeting(
                student_id=actor.user_id,
                complaint_id=request.complaint_id,
                requested_date_time=to_storage(request.requested_date_time),
                status=MeetingStatus.PENDING.value,
                notes=(request.notes or "").strip() or None
            )
            db.add(meeting)

        self._publish(INSERT, meeting)
        item = MeetingResponse.model_validate(meeting)
        item.student_name = actor.full_name
        return item

    async def list_meetings(self, db: AsyncSession, actor: Actor) -> List[MeetingResponse]:
        """Own meetings for students, all meetings for admins; latest request first."""
        query = select(Meeting).order_by(Meeting.requested_date_time.desc())
        if not actor.is_admin:
            query = query.where(Meeting.student_id == actor.user_id)
        async with reading("list meetings"):
            meetings = (await db.scalars(query)).all()
            names = await display_names(db, {meeting.student_id for meeting in meetings})

        results = []
        for meeting in meetings:
            item = MeetingResponse.model_validate(meeting)
            item.student_name = names.get(meeting.student_id)
            results.append(item)
        return results

    async def update_meeting(
        self,
        db: AsyncSession,
        actor: Actor,
        meeting_id: str,
        request: MeetingUpdate
    ) -> MeetingResponse:
        """Admin response: accept, reschedule or reject, with optional link and notes."""
        require_admin(actor, "respond to meetings")
        async with atomic(db, "update meeting"):
            meeting = await db.get(Meeting, meeting_id)
            if meeting is None:
                raise AuthorizationError("Meeting")
            if request.status is not None:
                meeting.status = request.status.value
            if request.scheduled_date_time is not None:
                meeting.scheduled_date_time = to_storage(request.scheduled_date_time)
            if "notes" in request.model_fields_set:
                meeting.notes = request.notes or None
            if "meeting_link" in request.model_fields_set:
                meeting.meeting_link = request.meeting_link or None
            meeting.admin_id = actor.user_id

        logger.info(f"Meeting {meeting_id} set to {meeting.status} by {actor.user_id}")
        self._publish(UPDATE, meeting)
        names = await display_names(db, [meeting.student_id])
        item = MeetingResponse.model_validate(meeting)
        item.student_name = names.get(meeting.student_id)
        return item

    def _publish(self, kind: str, meeting: Meeting) -> None:
        self.bus.publish(ChangeEvent(
            table="meetings",
            kind=kind,
            row_id=meeting.id,
            fields={"student_id": meeting.student_id, "status": meeting.status}
        ))

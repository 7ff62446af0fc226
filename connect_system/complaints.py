"""Complaint entity store: creation, admin updates and visibility rules."""
import logging
from typing import List, Optional
from fastapi import BackgroundTasks
from sqlalchemy import select, or_, func
from sqlalchemy.ext.asyncio import AsyncSession

from alerting import AlertService
from auth import Actor, require_admin
from config import config
from database import atomic, reading
from errors import AuthorizationError, ConflictError, PermissionDenied, ValidationError
from events import EventBus, ChangeEvent, INSERT, UPDATE, bus
from models import Complaint, Profile
from profiles import get_role
from schemas import (
    ActionType, ComplaintCreate, ComplaintFilters, ComplaintQuickUpdate, ComplaintResponse,
    ComplaintUpdate, Priority, Role, Status
)
from timeline import append_entry

logger = logging.getLogger(__name__)

ANONYMOUS_NAME = "Anonymous"
HIDDEN_EMAIL = "Hidden"

# Fields an admin update compares against the stored row, in timeline order.
TRACKED_FIELDS = (
    ("status", ActionType.STATUS_CHANGED),
    ("priority", ActionType.PRIORITY_CHANGED),
    ("category", ActionType.CATEGORY_CHANGED),
)


async def load_visible_complaint(db: AsyncSession, actor: Actor, complaint_id: str) -> Complaint:
    """Fetch a complaint the actor may see.

    Students only see their own complaints; anything else is reported as
    not found.
    """
    async with reading("load complaint"):
        complaint = await db.get(Complaint, complaint_id)
    if complaint is None or (not actor.is_admin and complaint.user_id != actor.user_id):
        raise AuthorizationError("Complaint")
    return complaint


def present(actor: Actor, complaint: Complaint, creator: Optional[Profile]) -> ComplaintResponse:
    """Shape a complaint for the viewer, hiding anonymous creators from admins."""
    item = ComplaintResponse.model_validate(complaint)
    if complaint.is_anonymous and actor.is_admin and complaint.user_id != actor.user_id:
        item.user_id = None
        item.creator_name = ANONYMOUS_NAME
        item.creator_email = HIDDEN_EMAIL
    elif creator is not None:
        item.creator_name = creator.full_name
        item.creator_email = creator.email
    return item


class ComplaintStore:
    """Create, read and update complaints.

    Every write commits the complaint row and its timeline entries in one
    transaction and then publishes a change event.
    """

    def __init__(self, event_bus: EventBus = None, alert_service: AlertService = None):
        self.bus = event_bus or bus
        self.alerts = alert_service or AlertService()

    async def create_complaint(
        self,
        db: AsyncSession,
        actor: Actor,
        request: ComplaintCreate,
        attachment_url: str = None,
        background_tasks: Optional[BackgroundTasks] = None
    ) -> ComplaintResponse:
        """Raise a new complaint as a student.

        Args:
            db: Database session
            actor: The student raising the complaint
            request: Validated complaint fields
            attachment_url: Public URL of an uploaded attachment, if any

        Returns:
            The stored complaint, status Pending and unassigned
        """
        if actor.is_admin:
            raise PermissionDenied("Only students can raise complaints")

        async with atomic(db, "create complaint"):
            complaint = Complaint(
                title=request.title,
                description=request.description,
                category=request.category.value,
                priority=request.priority.value,
                status=Status.PENDING.value,
                center=request.center or actor.center or config.DEFAULT_CENTER,
                is_anonymous=request.is_anonymous,
                attachment_url=attachment_url or request.attachment_url,
                user_id=actor.user_id,
                assigned_admin_id=None,
                version=1
            )
            db.add(complaint)
            await db.flush()
            append_entry(
                db, complaint.id, ActionType.CREATED, actor.user_id,
                new_value=Status.PENDING.value
            )

        logger.info(f"Complaint {complaint.id} created by {actor.user_id}")
        self._publish(INSERT, complaint)

        if complaint.priority == Priority.HIGH.value:
            await self._alert(complaint, "created", background_tasks)

        creator = await db.get(Profile, actor.user_id)
        return present(actor, complaint, creator)

    async def update_complaint(
        self,
        db: AsyncSession,
        actor: Actor,
        complaint_id: str,
        request: ComplaintUpdate,
        background_tasks: Optional[BackgroundTasks] = None
    ) -> ComplaintResponse:
        """Apply an admin update and record each observed change.

        Old values are read from the stored row inside the same transaction,
        so each timeline entry shows what it actually replaced. When
        ``expected_version`` is given and the row has moved on, nothing is
        written and ConflictError is raised; without it the last write wins.
        """
        require_admin(actor, "update complaints")

        async with atomic(db, "update complaint"):
            complaint = await db.scalar(
                select(Complaint)
                .where(Complaint.id == complaint_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            if complaint is None:
                raise AuthorizationError("Complaint")
            if request.expected_version is not None and request.expected_version != complaint.version:
                raise ConflictError(
                    f"Complaint {complaint_id} was modified (version {complaint.version}, "
                    f"expected {request.expected_version}); reload and retry"
                )

            escalated = False
            changed = False
            for field, action in TRACKED_FIELDS:
                requested = getattr(request, field)
                if requested is None:
                    continue
                current = getattr(complaint, field)
                if requested.value == current:
                    continue
                setattr(complaint, field, requested.value)
                append_entry(
                    db, complaint.id, action, actor.user_id,
                    old_value=current, new_value=requested.value
                )
                changed = True
                if field == "priority" and requested == Priority.HIGH:
                    escalated = True

            target = request.assigned_admin_id
            if target and target != complaint.assigned_admin_id:
                if await get_role(db, target) != Role.ADMIN:
                    raise ValidationError("Complaints can only be assigned to admins")
                append_entry(
                    db, complaint.id, ActionType.ASSIGNED, actor.user_id,
                    old_value=complaint.assigned_admin_id, new_value=target
                )
                complaint.assigned_admin_id = target
                changed = True
            elif complaint.assigned_admin_id is None:
                complaint.assigned_admin_id = actor.user_id
                append_entry(
                    db, complaint.id, ActionType.ASSIGNED, actor.user_id,
                    new_value=actor.user_id
                )
                changed = True

            if request.note:
                append_entry(db, complaint.id, ActionType.ADMIN_NOTE, actor.user_id, note=request.note)

            if changed:
                complaint.version += 1

        logger.info(f"Complaint {complaint_id} updated by admin {actor.user_id}")
        self._publish(UPDATE, complaint)

        if escalated:
            await self._alert(complaint, "escalated", background_tasks)

        creator = await db.get(Profile, complaint.user_id)
        return present(actor, complaint, creator)

    async def quick_update(
        self,
        db: AsyncSession,
        actor: Actor,
        complaint_id: str,
        request: ComplaintQuickUpdate,
        background_tasks: Optional[BackgroundTasks] = None
    ) -> ComplaintResponse:
        """List-view edit: write all three fields and take the complaint.

        Recorded as a single ``status_updated`` entry carrying the old and
        new status and the optional note.
        """
        require_admin(actor, "update complaints")

        async with atomic(db, "update complaint"):
            complaint = await db.scalar(
                select(Complaint)
                .where(Complaint.id == complaint_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            if complaint is None:
                raise AuthorizationError("Complaint")

            old_status = complaint.status
            escalated = (
                request.priority == Priority.HIGH and complaint.priority != Priority.HIGH.value
            )
            complaint.status = request.status.value
            complaint.priority = request.priority.value
            complaint.category = request.category.value
            complaint.assigned_admin_id = actor.user_id
            complaint.version += 1
            append_entry(
                db, complaint.id, ActionType.STATUS_UPDATED, actor.user_id,
                old_value=old_status, new_value=request.status.value, note=request.note or None
            )

        self._publish(UPDATE, complaint)
        if escalated:
            await self._alert(complaint, "escalated", background_tasks)

        creator = await db.get(Profile, complaint.user_id)
        return present(actor, complaint, creator)

    async def get_complaint(self, db: AsyncSession, actor: Actor, complaint_id: str) -> ComplaintResponse:
        complaint = await load_visible_complaint(db, actor, complaint_id)
        creator = await db.get(Profile, complaint.user_id)
        return present(actor, complaint, creator)

    async def list_complaints(
        self,
        db: AsyncSession,
        actor: Actor,
        filters: ComplaintFilters = None
    ) -> List[ComplaintResponse]:
        """Students get their own complaints, admins get everything; newest first."""
        filters = filters or ComplaintFilters()
        query = select(Complaint).order_by(Complaint.created_at.desc())
        if not actor.is_admin:
            query = query.where(Complaint.user_id == actor.user_id)
        if filters.status:
            query = query.where(Complaint.status == filters.status.value)
        if filters.category:
            query = query.where(Complaint.category == filters.category.value)
        if filters.priority:
            query = query.where(Complaint.priority == filters.priority.value)
        if filters.center:
            query = query.where(Complaint.center == filters.center)
        if filters.search:
            pattern = f"%{filters.search.lower()}%"
            query = query.where(or_(
                func.lower(Complaint.title).like(pattern),
                func.lower(Complaint.description).like(pattern)
            ))

        async with reading("list complaints"):
            complaints = (await db.scalars(query)).all()
            creator_ids = {complaint.user_id for complaint in complaints}
            creators = {}
            if creator_ids:
                profiles = await db.scalars(select(Profile).where(Profile.id.in_(creator_ids)))
                creators = {profile.id: profile for profile in profiles}

        return [present(actor, complaint, creators.get(complaint.user_id)) for complaint in complaints]

    async def _alert(
        self,
        complaint: Complaint,
        reason: str,
        background_tasks: Optional[BackgroundTasks]
    ) -> None:
        # Inside a request the alert runs after the response is sent
        if background_tasks is not None:
            background_tasks.add_task(self.alerts.send_alert, complaint, reason)
        else:
            await self.alerts.send_alert(complaint, reason)

    def _publish(self, kind: str, complaint: Complaint) -> None:
        self.bus.publish(ChangeEvent(
            table="complaints",
            kind=kind,
            row_id=complaint.id,
            fields={
                "id": complaint.id,
                "user_id": complaint.user_id,
                "status": complaint.status,
                "assigned_admin_id": complaint.assigned_admin_id
            }
        ))

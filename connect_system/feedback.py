"""One-time satisfaction rating for resolved complaints."""
import logging
from typing import List, Optional
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from auth import Actor, require_admin
from complaints import load_visible_complaint
from config import config
from database import atomic, reading
from errors import DuplicateFeedbackError, PermissionDenied, ValidationError
from models import Feedback
from profiles import display_names
from schemas import FeedbackCreate, FeedbackResponse, Status

logger = logging.getLogger(__name__)


def validate_rating(rating: int) -> None:
    if not isinstance(rating, int) or not config.RATING_MIN <= rating <= config.RATING_MAX:
        raise ValidationError(
            f"Rating must be between {config.RATING_MIN} and {config.RATING_MAX}"
        )


class FeedbackCapture:
    """Record and read complaint feedback."""

    async def submit_feedback(
        self,
        db: AsyncSession,
        actor: Actor,
        complaint_id: str,
        request: FeedbackCreate
    ) -> FeedbackResponse:
        """Store the student's rating of a resolved complaint.

        The assigned admin is copied onto the feedback at submission time
        and is not updated if the complaint is reassigned later.

        Raises:
            ValidationError: Rating out of range or complaint not resolved
            DuplicateFeedbackError: Feedback already exists for the complaint
        """
        validate_rating(request.rating)

        if actor.is_admin:
            raise PermissionDenied("Only the student who raised the complaint can rate it")
        complaint = await load_visible_complaint(db, actor, complaint_id)
        if complaint.status != Status.RESOLVED.value:
            raise ValidationError("Feedback can only be given once the complaint is resolved")

        async with atomic(db, "submit feedback"):
            existing = await db.scalar(select(Feedback.id).where(Feedback.complaint_id == complaint_id))
            if existing:
                raise DuplicateFeedbackError(complaint_id)
            feedback = Feedback(
                complaint_id=complaint_id,
                student_id=actor.user_id,
                admin_id=complaint.assigned_admin_id,
                rating=request.rating,
                comment=(request.comment or "").strip() or None,
                is_anonymous=request.is_anonymous
            )
            db.add(feedback)
            try:
                await db.flush()
            except IntegrityError as e:
                # Concurrent submission won the unique constraint
                raise DuplicateFeedbackError(complaint_id) from e

        logger.info(f"Feedback {feedback.id} submitted for complaint {complaint_id}")
        return FeedbackResponse.model_validate(feedback)

    async def get_feedback_for_complaint(
        self,
        db: AsyncSession,
        actor: Actor,
        complaint_id: str
    ) -> Optional[FeedbackResponse]:
        complaint = await load_visible_complaint(db, actor, complaint_id)
        async with reading("load feedback"):
            feedback = await db.scalar(select(Feedback).where(Feedback.complaint_id == complaint.id))
        if feedback is None:
            return None
        names = await display_names(db, [feedback.student_id])
        return self._present(actor, feedback, names)

    async def list_feedback(self, db: AsyncSession, actor: Actor) -> List[FeedbackResponse]:
        """All feedback, newest first (admins only)."""
        require_admin(actor, "view feedback")
        async with reading("list feedback"):
            rows = (await db.scalars(select(Feedback).order_by(Feedback.created_at.desc()))).all()
            names = await display_names(db, {row.student_id for row in rows})
        return [self._present(actor, row, names) for row in rows]

    def _present(self, actor: Actor, feedback: Feedback, names: dict) -> FeedbackResponse:
        item = FeedbackResponse.model_validate(feedback)
        if feedback.is_anonymous and feedback.student_id != actor.user_id:
            item.student_id = None
            item.student_name = "Anonymous"
        else:
            item.student_name = names.get(feedback.student_id)
        return item


async def average_rating(db: AsyncSession) -> float:
    """Mean rating across all feedback, rounded to one decimal (0 when empty)."""
    ratings = (await db.scalars(select(Feedback.rating))).all()
    if not ratings:
        return 0.0
    return round(sum(ratings) / len(ratings), 1)

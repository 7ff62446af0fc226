"""Broadcast announcements with read-time expiry."""
import logging
from typing import Callable, List, Optional, Tuple
from sqlalchemy import select, update, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from auth import Actor, require_admin
from database import atomic, reading
from errors import AuthorizationError, ValidationError
from models import Announcement, to_storage, utcnow
from schemas import AnnouncementCreate, AnnouncementResponse, AnnouncementUpdate

logger = logging.getLogger(__name__)


def is_expired(announcement: Announcement, now=None) -> bool:
    if announcement.expires_at is None:
        return False
    return to_storage(announcement.expires_at) <= (now or utcnow())


class AnnouncementService:
    """Admin management of announcements and the viewer-facing active list."""

    async def create(self, db: AsyncSession, actor: Actor, request: AnnouncementCreate) -> Announcement:
        require_admin(actor, "publish announcements")
        async with atomic(db, "create announcement"):
            announcement = Announcement(
                title=request.title,
                message=request.message,
                target_center=request.target_center or None,
                expires_at=to_storage(request.expires_at),
                is_active=request.is_active,
                admin_id=actor.user_id
            )
            db.add(announcement)
        logger.info(f"Announcement {announcement.id} published by {actor.user_id}")
        return announcement

    async def update(
        self,
        db: AsyncSession,
        actor: Actor,
        announcement_id: str,
        request: AnnouncementUpdate
    ) -> Announcement:
        require_admin(actor, "edit announcements")
        changes = request.model_dump(exclude_unset=True)
        # Only the audience and expiry can be cleared
        for key in ("title", "message", "is_active"):
            if key in changes and changes[key] is None:
                raise ValidationError(f"{key} cannot be null")

        async with atomic(db, "update announcement"):
            announcement = await db.get(Announcement, announcement_id)
            if announcement is None:
                raise AuthorizationError("Announcement")
            if "expires_at" in changes:
                changes["expires_at"] = to_storage(changes["expires_at"])
            if "target_center" in changes:
                changes["target_center"] = changes["target_center"] or None
            for key, value in changes.items():
                setattr(announcement, key, value)
        return announcement

    async def delete(self, db: AsyncSession, actor: Actor, announcement_id: str) -> None:
        require_admin(actor, "delete announcements")
        async with atomic(db, "delete announcement"):
            announcement = await db.get(Announcement, announcement_id)
            if announcement is None:
                raise AuthorizationError("Announcement")
            await db.delete(announcement)
        logger.info(f"Announcement {announcement_id} deleted by {actor.user_id}")

    async def list_all(self, db: AsyncSession, actor: Actor) -> List[AnnouncementResponse]:
        require_admin(actor, "manage announcements")
        async with reading("list announcements"):
            rows = (await db.scalars(
                select(Announcement).order_by(Announcement.created_at.desc())
            )).all()
        return [AnnouncementResponse.model_validate(row) for row in rows]

    async def list_active(
        self,
        db: AsyncSession,
        center: Optional[str]
    ) -> Tuple[List[AnnouncementResponse], List[str]]:
        """Active announcements for a center, newest first.

        Rows past their expiry are left out even while still flagged
        active. Their ids are returned so the caller can schedule
        ``deactivate_expired`` without holding up the response.

        Returns:
            (visible announcements, ids of expired rows still flagged active)
        """
        query = (
            select(Announcement)
            .where(Announcement.is_active.is_(True))
            .order_by(Announcement.created_at.desc())
        )
        if center:
            query = query.where(or_(
                Announcement.target_center.is_(None),
                Announcement.target_center == center
            ))
        async with reading("list active announcements"):
            rows = (await db.scalars(query)).all()

        now = utcnow()
        visible, expired = [], []
        for row in rows:
            if is_expired(row, now):
                expired.append(row.id)
            else:
                visible.append(AnnouncementResponse.model_validate(row))
        return visible, expired


async def deactivate_expired(session_factory: Callable, announcement_ids: List[str]) -> int:
    """Best-effort write-back of lazily detected expiry.

    Runs after the response in its own session. Failures are logged and
    dropped; the read path already hides these rows.
    """
    if not announcement_ids:
        return 0
    try:
        async with session_factory() as db:
            result = await db.execute(
                update(Announcement)
                .where(Announcement.id.in_(announcement_ids), Announcement.is_active.is_(True))
                .values(is_active=False)
            )
            await db.commit()
            logger.info(f"Deactivated {result.rowcount} expired announcements")
            return result.rowcount or 0
    except SQLAlchemyError as e:
        logger.warning(f"Could not deactivate expired announcements: {e}")
        return 0

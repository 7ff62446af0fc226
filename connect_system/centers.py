"""Centers managed by admins."""
import logging
from typing import List
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from auth import Actor, require_admin
from database import atomic, reading
from errors import AuthorizationError, ConflictError
from models import Center
from schemas import CenterCreate

logger = logging.getLogger(__name__)


class CenterService:
    async def list_centers(self, db: AsyncSession) -> List[Center]:
        async with reading("list centers"):
            return list((await db.scalars(select(Center).order_by(Center.name))).all())

    async def save_center(
        self,
        db: AsyncSession,
        actor: Actor,
        request: CenterCreate,
        center_id: str = None
    ) -> Center:
        """Create a center, or rename/relocate an existing one when ``center_id`` is given."""
        require_admin(actor, "manage centers")
        async with atomic(db, "save center"):
            clash = await db.scalar(select(Center).where(Center.name == request.name))
            if clash is not None and clash.id != center_id:
                raise ConflictError(f"Center {request.name} already exists")
            if center_id is None:
                center = Center(name=request.name, location=request.location)
                db.add(center)
            else:
                center = await db.get(Center, center_id)
                if center is None:
                    raise AuthorizationError("Center")
                center.name = request.name
                center.location = request.location
        logger.info(f"Center {center.name} saved by {actor.user_id}")
        return center

    async def delete_center(self, db: AsyncSession, actor: Actor, center_id: str) -> None:
        require_admin(actor, "manage centers")
        async with atomic(db, "delete center"):
            center = await db.get(Center, center_id)
            if center is None:
                raise AuthorizationError("Center")
            await db.delete(center)

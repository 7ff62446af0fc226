"""Badge counts for pending complaints, unread messages and pending meetings."""
import logging
from typing import Callable
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from auth import Actor
from database import reading
from events import EventBus, bus
from models import Complaint, Meeting, Message
from schemas import BadgeCounts, MeetingStatus, Status

logger = logging.getLogger(__name__)

WATCHED_TABLES = ("complaints", "messages", "meetings")


async def get_badge_counts(db: AsyncSession, actor: Actor) -> BadgeCounts:
    """Recompute the viewer's badge counts from current store state.

    Admins see global pending complaints and meetings; students see their
    own. Unread messages are always those addressed to the viewer.
    """
    complaints = select(func.count()).select_from(Complaint).where(
        Complaint.status == Status.PENDING.value
    )
    meetings = select(func.count()).select_from(Meeting).where(
        Meeting.status == MeetingStatus.PENDING.value
    )
    if not actor.is_admin:
        complaints = complaints.where(Complaint.user_id == actor.user_id)
        meetings = meetings.where(Meeting.student_id == actor.user_id)
    messages = select(func.count()).select_from(Message).where(
        Message.receiver_id == actor.user_id,
        Message.is_read.is_(False)
    )

    async with reading("count badges"):
        return BadgeCounts(
            complaints=await db.scalar(complaints) or 0,
            messages=await db.scalar(messages) or 0,
            meetings=await db.scalar(meetings) or 0
        )


class BadgeWatcher:
    """Keeps one viewer's badge counts current.

    Used as an async context manager: entering subscribes to the watched
    tables and computes the first counts, leaving releases the
    subscription.

        async with BadgeWatcher(actor, get_db_session) as watcher:
            counts = watcher.current
            counts = await watcher.next_counts()
    """

    def __init__(self, actor: Actor, session_factory: Callable, event_bus: EventBus = None):
        self.actor = actor
        self.session_factory = session_factory
        self.bus = event_bus or bus
        self.subscription = None
        self.current = BadgeCounts()

    async def __aenter__(self):
        self.subscription = self.bus.subscribe(WATCHED_TABLES)
        try:
            await self.refresh()
        except Exception:
            self.subscription.unsubscribe()
            raise
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.subscription.unsubscribe()
        logger.debug(f"Badge watcher for {self.actor.user_id} stopped")

    async def refresh(self) -> BadgeCounts:
        async with self.session_factory() as db:
            self.current = await get_badge_counts(db, self.actor)
        return self.current

    async def next_counts(self) -> BadgeCounts:
        """Wait for the next batch of changes and recompute once for all of it."""
        await self.subscription.next_batch()
        return await self.refresh()

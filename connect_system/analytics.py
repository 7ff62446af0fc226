"""Admin analytics over complaints and feedback."""
from collections import Counter
from datetime import timedelta
from typing import Dict, List, Optional
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from auth import Actor, require_admin
from config import config
from database import reading
from feedback import average_rating
from models import Complaint, TimelineEntry, UserRole, utcnow
from schemas import ActionType, AnalyticsSummary, NamedCount, Role, Status, TrendPoint

STATUS_ACTIONS = (ActionType.STATUS_CHANGED.value, ActionType.STATUS_UPDATED.value)


def _named_counts(counter: Counter) -> List[NamedCount]:
    return [NamedCount(name=name, value=value) for name, value in sorted(counter.items())]


def creation_trend(created: List, days: int, today=None) -> List[TrendPoint]:
    """Complaints created per day for the last ``days`` days, oldest first."""
    today = (today or utcnow()).date()
    per_day = Counter(timestamp.date() for timestamp in created if timestamp)
    window = [today - timedelta(days=offset) for offset in range(days - 1, -1, -1)]
    return [TrendPoint(date=day.isoformat(), complaints=per_day.get(day, 0)) for day in window]


async def average_resolution_hours(db: AsyncSession) -> Optional[float]:
    """Mean hours from creation to the first move to Resolved.

    Only complaints currently Resolved count. None when there are none.
    """
    rows = (await db.execute(
        select(Complaint.id, Complaint.created_at, func.min(TimelineEntry.created_at))
        .join(TimelineEntry, TimelineEntry.complaint_id == Complaint.id)
        .where(
            Complaint.status == Status.RESOLVED.value,
            TimelineEntry.action_type.in_(STATUS_ACTIONS),
            TimelineEntry.new_value == Status.RESOLVED.value
        )
        .group_by(Complaint.id, Complaint.created_at)
    )).all()
    durations = [
        (resolved_at - created_at).total_seconds() / 3600
        for _, created_at, resolved_at in rows
        if created_at and resolved_at
    ]
    if not durations:
        return None
    return round(sum(durations) / len(durations), 1)


async def summarize(db: AsyncSession, actor: Actor) -> AnalyticsSummary:
    require_admin(actor, "view analytics")
    async with reading("load analytics"):
        complaints = (await db.execute(
            select(Complaint.category, Complaint.center, Complaint.status, Complaint.created_at)
        )).all()
        total_students = await db.scalar(
            select(func.count()).select_from(UserRole).where(UserRole.role == Role.STUDENT.value)
        )
        avg_rating = await average_rating(db)
        resolution_hours = await average_resolution_hours(db)

    by: Dict[str, Counter] = {"category": Counter(), "center": Counter(), "status": Counter()}
    for category, center, status, _ in complaints:
        by["category"][category] += 1
        by["center"][center] += 1
        by["status"][status] += 1

    return AnalyticsSummary(
        total_complaints=len(complaints),
        total_students=total_students or 0,
        avg_rating=avg_rating,
        avg_resolution_hours=resolution_hours,
        by_category=_named_counts(by["category"]),
        by_center=_named_counts(by["center"]),
        by_status=_named_counts(by["status"]),
        trend=creation_trend([row.created_at for row in complaints], config.TREND_DAYS)
    )

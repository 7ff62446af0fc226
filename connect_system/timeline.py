"""Append-only audit trail of complaint changes."""
from typing import List, Optional
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from database import reading
from models import TimelineEntry
from profiles import display_names
from schemas import ActionType, TimelineEntryResponse


def append_entry(
    db: AsyncSession,
    complaint_id: str,
    action_type: ActionType,
    actor_id: Optional[str],
    old_value: Optional[str] = None,
    new_value: Optional[str] = None,
    note: Optional[str] = None
) -> TimelineEntry:
    """Stage one timeline row in the caller's transaction.

    The row is written by the caller's commit together with the complaint
    change it records, or not at all.
    """
    entry = TimelineEntry(
        complaint_id=complaint_id,
        action_type=ActionType(action_type).value,
        old_value=old_value,
        new_value=new_value,
        notes=note,
        action_by=actor_id
    )
    db.add(entry)
    return entry


def describe(action_type: str, old_value: Optional[str], new_value: Optional[str]) -> str:
    """Human-readable title for a timeline entry."""
    action = ActionType(action_type)
    if action == ActionType.CREATED:
        return "Complaint Created"
    if action in (ActionType.STATUS_CHANGED, ActionType.STATUS_UPDATED):
        return f"Status: {old_value} → {new_value}"
    if action == ActionType.PRIORITY_CHANGED:
        return f"Priority: {old_value} → {new_value}"
    if action == ActionType.CATEGORY_CHANGED:
        return f"Category: {old_value} → {new_value}"
    if action == ActionType.ASSIGNED:
        return "Assigned to Admin"
    return "Admin Note"


async def list_timeline(db: AsyncSession, complaint_id: str) -> List[TimelineEntryResponse]:
    """Entries for one complaint in creation order, with actor names.

    Callers check that the viewer may see the complaint first.
    """
    async with reading("load timeline"):
        entries = (await db.scalars(
            select(TimelineEntry)
            .where(TimelineEntry.complaint_id == complaint_id)
            .order_by(TimelineEntry.created_at, TimelineEntry.id)
        )).all()
        names = await display_names(db, (entry.action_by for entry in entries))

    results = []
    for entry in entries:
        item = TimelineEntryResponse.model_validate(entry)
        item.actor_name = names.get(entry.action_by)
        item.title = describe(entry.action_type, entry.old_value, entry.new_value)
        results.append(item)
    return results

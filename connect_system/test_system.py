#!/usr/bin/env python3
"""
This file consolidates the store-level tests:
- Complaint creation, admin updates and the audit timeline
- Engine pooling and per-session transactions
- Visibility and anonymity rules
- Messaging, read receipts and badge counts
- Feedback, announcements, meetings, profiles and centers
- Change events and live badge watchers
- Alerting, blob storage and analytics
"""
import asyncio
import json
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from fastapi import BackgroundTasks
from pydantic import ValidationError as SchemaError
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlalchemy.pool import StaticPool

from alerting import AlertService
from analytics import creation_trend, summarize
from announcements import AnnouncementService, deactivate_expired, is_expired
from badges import BadgeWatcher, get_badge_counts
from centers import CenterService
from complaints import ComplaintStore
from config import config
from conftest import make_user, raise_complaint
from database import atomic, build_engine, init_db
from errors import (
    AuthorizationError, ConflictError, DuplicateFeedbackError, NoRecipientError,
    PermissionDenied, ValidationError
)
from events import ChangeEvent, EventBus, INSERT, UPDATE
from feedback import FeedbackCapture, average_rating
from interactive_cli import build_complaint_table, resolve_reference
from meetings import MeetingService
from messaging import resolve_receiver
from models import Announcement, Complaint, Feedback, Message, TimelineEntry, utcnow
from profiles import ProfileService, get_role
from schemas import (
    ActionType, AnnouncementCreate, AnnouncementUpdate, CenterCreate, ComplaintCreate,
    ComplaintFilters, ComplaintQuickUpdate, ComplaintUpdate, Category, FeedbackCreate, MeetingCreate,
    MeetingStatus, MeetingUpdate, MessageCreate, Priority, ProfileCreate, Role, Status,
    UserAdminUpdate
)
from storage import BlobStore, validate_upload
from timeline import append_entry, describe, list_timeline


async def count_rows(session_factory, model) -> int:
    async with session_factory() as check:
        return await check.scalar(select(func.count()).select_from(model))


# ============================================================================
# COMPLAINT CREATION
# ============================================================================

class TestComplaintCreation:
    """Tests for raising complaints."""

    @pytest.mark.asyncio
    async def test_new_complaint_is_pending_and_unassigned(self, store, db_session, student):
        """A new complaint starts Pending, unassigned, with one created entry."""
        complaint = await raise_complaint(store, db_session, student)

        assert complaint.status == Status.PENDING
        assert complaint.assigned_admin_id is None
        assert complaint.version == 1
        assert complaint.user_id == student.user_id
        assert complaint.creator_name == student.full_name

        entries = await list_timeline(db_session, complaint.id)
        assert len(entries) == 1
        assert entries[0].action_type == ActionType.CREATED
        assert entries[0].new_value == "Pending"
        assert entries[0].title == "Complaint Created"
        assert entries[0].actor_name == student.full_name

    @pytest.mark.asyncio
    async def test_center_defaults_to_creator_center(self, store, db_session, other_student):
        complaint = await raise_complaint(store, db_session, other_student)
        assert complaint.center == "Trivandrum"

    @pytest.mark.asyncio
    async def test_admin_cannot_raise_complaint(self, store, db_session, admin):
        with pytest.raises(PermissionDenied):
            await raise_complaint(store, db_session, admin)

    @pytest.mark.asyncio
    async def test_creation_publishes_insert_event(self, store, db_session, student, event_bus):
        with event_bus.subscribe("complaints") as subscription:
            complaint = await raise_complaint(store, db_session, student)
            batch = await asyncio.wait_for(subscription.next_batch(), timeout=1)

        assert len(batch) == 1
        assert batch[0].kind == INSERT
        assert batch[0].row_id == complaint.id

    @pytest.mark.asyncio
    async def test_high_priority_complaint_sends_alert(self, event_bus, db_session, student):
        alerts = AlertService(enabled=False)
        alerts.send_alert = AsyncMock(return_value=True)
        store = ComplaintStore(event_bus, alerts)

        await raise_complaint(store, db_session, student, priority=Priority.HIGH)

        alerts.send_alert.assert_awaited_once()
        assert alerts.send_alert.await_args.args[1] == "created"

    def test_title_and_description_bounds(self):
        with pytest.raises(SchemaError):
            ComplaintCreate(title="Hi", description="x" * 30, category=Category.OTHER)
        with pytest.raises(SchemaError):
            ComplaintCreate(title="Valid title", description="too short", category=Category.OTHER)
        with pytest.raises(SchemaError):
            ComplaintCreate(title="Valid title", description="x" * 30, category="Canteen")


# ============================================================================
# ADMIN UPDATES AND TIMELINE
# ============================================================================

class TestComplaintUpdates:
    """Tests for admin updates and the audit trail they leave."""

    @pytest.mark.asyncio
    async def test_status_change_auto_assigns_and_records_entries(self, store, db_session, student, admin):
        complaint = await raise_complaint(store, db_session, student)

        updated = await store.update_complaint(
            db_session, admin, complaint.id, ComplaintUpdate(status=Status.IN_PROGRESS)
        )

        assert updated.status == Status.IN_PROGRESS
        assert updated.assigned_admin_id == admin.user_id
        assert updated.version == 2

        entries = await list_timeline(db_session, complaint.id)
        assert [entry.action_type for entry in entries] == [
            ActionType.CREATED, ActionType.STATUS_CHANGED, ActionType.ASSIGNED
        ]
        assert entries[1].old_value == "Pending"
        assert entries[1].new_value == "In Progress"
        assert entries[1].title == "Status: Pending → In Progress"
        assert entries[1].actor_name == admin.full_name
        assert entries[2].new_value == admin.user_id

    @pytest.mark.asyncio
    async def test_unchanged_fields_leave_no_entries(self, store, db_session, student, admin):
        complaint = await raise_complaint(store, db_session, student)
        await store.update_complaint(db_session, admin, complaint.id, ComplaintUpdate(status=Status.IN_PROGRESS))

        again = await store.update_complaint(
            db_session, admin, complaint.id,
            ComplaintUpdate(status=Status.IN_PROGRESS, priority=Priority.MEDIUM, category=Category.FACILITY)
        )

        assert again.version == 2
        assert len(await list_timeline(db_session, complaint.id)) == 3

    @pytest.mark.asyncio
    async def test_priority_and_category_changes(self, store, db_session, student, admin):
        complaint = await raise_complaint(store, db_session, student)
        await store.update_complaint(
            db_session, admin, complaint.id,
            ComplaintUpdate(priority=Priority.LOW, category=Category.TECHNICAL, note="Moved to IT")
        )

        entries = await list_timeline(db_session, complaint.id)
        titles = [entry.title for entry in entries]
        assert "Priority: Medium → Low" in titles
        assert "Category: Facility → Technical" in titles
        assert entries[-1].action_type == ActionType.ADMIN_NOTE
        assert entries[-1].notes == "Moved to IT"

    @pytest.mark.asyncio
    async def test_stale_version_is_rejected_without_writes(
        self, store, db_session, session_factory, student, admin
    ):
        complaint = await raise_complaint(store, db_session, student)
        await store.update_complaint(db_session, admin, complaint.id, ComplaintUpdate(status=Status.IN_PROGRESS))

        with pytest.raises(ConflictError):
            await store.update_complaint(
                db_session, admin, complaint.id,
                ComplaintUpdate(status=Status.RESOLVED, expected_version=1)
            )

        async with session_factory() as check:
            stored = await check.get(Complaint, complaint.id)
            assert stored.status == "In Progress"
            assert stored.version == 2
            assert len(await list_timeline(check, complaint.id)) == 3

    @pytest.mark.asyncio
    async def test_matching_version_is_accepted(self, store, db_session, student, admin):
        complaint = await raise_complaint(store, db_session, student)
        updated = await store.update_complaint(
            db_session, admin, complaint.id,
            ComplaintUpdate(status=Status.IN_PROGRESS, expected_version=1)
        )
        assert updated.version == 2

    @pytest.mark.asyncio
    async def test_last_write_wins_with_true_old_values(
        self, store, session_factory, student, admin, second_admin
    ):
        """Two admins act on the same complaint; the second sees the first's result as old value."""
        async with session_factory() as db:
            complaint = await raise_complaint(store, db, student)

        async with session_factory() as first, session_factory() as second:
            # Second admin's session holds a stale copy of the row
            await second.get(Complaint, complaint.id)
            await second.commit()

            await store.update_complaint(first, admin, complaint.id, ComplaintUpdate(status=Status.IN_PROGRESS))
            final = await store.update_complaint(
                second, second_admin, complaint.id, ComplaintUpdate(status=Status.RESOLVED)
            )

        assert final.status == Status.RESOLVED
        assert final.assigned_admin_id == admin.user_id

        async with session_factory() as check:
            entries = await list_timeline(check, complaint.id)
        status_entries = [entry for entry in entries if entry.action_type == ActionType.STATUS_CHANGED]
        assert [(entry.old_value, entry.new_value) for entry in status_entries] == [
            ("Pending", "In Progress"),
            ("In Progress", "Resolved"),
        ]

    @pytest.mark.asyncio
    async def test_reassignment_only_to_admins(self, store, db_session, student, other_student, admin, second_admin):
        complaint = await raise_complaint(store, db_session, student)

        with pytest.raises(ValidationError):
            await store.update_complaint(
                db_session, admin, complaint.id, ComplaintUpdate(assigned_admin_id=other_student.user_id)
            )

        updated = await store.update_complaint(
            db_session, admin, complaint.id, ComplaintUpdate(assigned_admin_id=second_admin.user_id)
        )
        assert updated.assigned_admin_id == second_admin.user_id

        entries = await list_timeline(db_session, complaint.id)
        assert entries[-1].action_type == ActionType.ASSIGNED
        assert entries[-1].new_value == second_admin.user_id

    @pytest.mark.asyncio
    async def test_escalation_to_high_sends_alert(self, event_bus, db_session, student, admin):
        alerts = AlertService(enabled=False)
        alerts.send_alert = AsyncMock(return_value=True)
        store = ComplaintStore(event_bus, alerts)
        complaint = await raise_complaint(store, db_session, student)

        await store.update_complaint(db_session, admin, complaint.id, ComplaintUpdate(priority=Priority.HIGH))

        alerts.send_alert.assert_awaited_once()
        assert alerts.send_alert.await_args.args[1] == "escalated"

    @pytest.mark.asyncio
    async def test_alert_deferred_to_background_tasks(self, event_bus, db_session, student, admin):
        alerts = AlertService(enabled=False)
        alerts.send_alert = AsyncMock(return_value=True)
        store = ComplaintStore(event_bus, alerts)
        complaint = await raise_complaint(store, db_session, student)

        tasks = BackgroundTasks()
        await store.quick_update(
            db_session, admin, complaint.id,
            ComplaintQuickUpdate(status=Status.IN_PROGRESS, priority=Priority.HIGH, category=Category.FACILITY),
            background_tasks=tasks
        )
        alerts.send_alert.assert_not_awaited()
        assert len(tasks.tasks) == 1

        await tasks()
        alerts.send_alert.assert_awaited_once()
        assert alerts.send_alert.await_args.args[1] == "escalated"

    @pytest.mark.asyncio
    async def test_quick_update_records_single_entry(self, store, db_session, student, admin):
        complaint = await raise_complaint(store, db_session, student)

        updated = await store.quick_update(
            db_session, admin, complaint.id,
            ComplaintQuickUpdate(
                status=Status.RESOLVED, priority=Priority.LOW, category=Category.FACILITY, note="Replaced"
            )
        )

        assert updated.status == Status.RESOLVED
        assert updated.assigned_admin_id == admin.user_id
        entries = await list_timeline(db_session, complaint.id)
        assert len(entries) == 2
        assert entries[1].action_type == ActionType.STATUS_UPDATED
        assert entries[1].title == "Status: Pending → Resolved"
        assert entries[1].notes == "Replaced"

    @pytest.mark.asyncio
    async def test_student_cannot_update(self, store, db_session, student):
        complaint = await raise_complaint(store, db_session, student)
        with pytest.raises(PermissionDenied):
            await store.update_complaint(db_session, student, complaint.id, ComplaintUpdate(status=Status.RESOLVED))

    @pytest.mark.asyncio
    async def test_unknown_complaint_reports_not_found(self, store, db_session, admin):
        with pytest.raises(AuthorizationError):
            await store.update_complaint(db_session, admin, "missing", ComplaintUpdate(status=Status.RESOLVED))

    def test_describe_titles(self):
        assert describe("created", None, "Pending") == "Complaint Created"
        assert describe("status_updated", "Pending", "Resolved") == "Status: Pending → Resolved"
        assert describe("assigned", None, "admin-1") == "Assigned to Admin"
        assert describe("admin_note", None, None) == "Admin Note"


# ============================================================================
# TRANSACTIONS
# ============================================================================

class TestTransactions:
    """Tests for engine pooling and per-session transactions."""

    def test_static_pool_only_for_memory_databases(self, tmp_path):
        memory = build_engine("sqlite+aiosqlite://")
        on_disk = build_engine(f"sqlite+aiosqlite:///{tmp_path}/connect.db")
        assert isinstance(memory.sync_engine.pool, StaticPool)
        assert not isinstance(on_disk.sync_engine.pool, StaticPool)

    @pytest.mark.asyncio
    async def test_rollback_elsewhere_keeps_pending_write(self, tmp_path):
        engine = build_engine(f"sqlite+aiosqlite:///{tmp_path}/connect.db")
        await init_db(engine)
        factory = async_sessionmaker(engine, expire_on_commit=False)
        try:
            student = await make_user(factory, "student-1", "Asha Menon")

            async with factory() as writer, factory() as reader:
                async with atomic(writer, "create complaint"):
                    complaint = Complaint(
                        title="Projector broken in room 4",
                        description="The projector has not turned on since Monday morning.",
                        category="Facility", priority="Medium", status="Pending",
                        center="Kochi", user_id=student.user_id, is_anonymous=False
                    )
                    writer.add(complaint)
                    await writer.flush()

                    # Another request reads and rolls back mid-transaction
                    await reader.scalar(select(func.count()).select_from(Complaint))
                    await reader.rollback()

                    append_entry(writer, complaint.id, ActionType.CREATED, student.user_id)

            assert await count_rows(factory, Complaint) == 1
            assert await count_rows(factory, TimelineEntry) == 1
        finally:
            await engine.dispose()


# ============================================================================
# VISIBILITY AND ANONYMITY
# ============================================================================

class TestVisibility:
    """Tests for who may see which complaint and how creators are shown."""

    @pytest.mark.asyncio
    async def test_students_only_see_their_own(self, store, db_session, student, other_student, admin):
        mine = await raise_complaint(store, db_session, student)
        theirs = await raise_complaint(store, db_session, other_student)

        listing = await store.list_complaints(db_session, student)
        assert [complaint.id for complaint in listing] == [mine.id]

        with pytest.raises(AuthorizationError) as excinfo:
            await store.get_complaint(db_session, student, theirs.id)
        assert excinfo.value.message == "Complaint not found"

        assert len(await store.list_complaints(db_session, admin)) == 2

    @pytest.mark.asyncio
    async def test_anonymous_creator_hidden_from_admins(self, store, db_session, student, admin):
        complaint = await raise_complaint(store, db_session, student, is_anonymous=True)

        seen = await store.get_complaint(db_session, admin, complaint.id)
        assert seen.user_id is None
        assert seen.creator_name == "Anonymous"
        assert seen.creator_email == "Hidden"

        own = await store.get_complaint(db_session, student, complaint.id)
        assert own.user_id == student.user_id
        assert own.creator_name == student.full_name

        listing = await store.list_complaints(db_session, admin)
        assert listing[0].creator_name == "Anonymous"

    @pytest.mark.asyncio
    async def test_filters_and_search(self, store, db_session, student, admin):
        await raise_complaint(store, db_session, student)
        wifi = await raise_complaint(
            store, db_session, student,
            title="Wifi drops in lab 3", category=Category.TECHNICAL, priority=Priority.HIGH
        )

        by_category = await store.list_complaints(db_session, admin, ComplaintFilters(category=Category.TECHNICAL))
        assert [complaint.id for complaint in by_category] == [wifi.id]

        by_search = await store.list_complaints(db_session, admin, ComplaintFilters(search="WIFI"))
        assert [complaint.id for complaint in by_search] == [wifi.id]

        resolved = await store.list_complaints(db_session, admin, ComplaintFilters(status=Status.RESOLVED))
        assert resolved == []


# ============================================================================
# MESSAGING AND BADGES
# ============================================================================

class TestMessaging:
    """Tests for complaint threads and read receipts."""

    @pytest.mark.asyncio
    async def test_no_recipient_before_assignment(self, store, channel, db_session, session_factory, student):
        complaint = await raise_complaint(store, db_session, student)

        with pytest.raises(NoRecipientError) as excinfo:
            await channel.send_message(db_session, student, complaint.id, MessageCreate(message_text="Hello?"))

        assert excinfo.value.message == "No recipient assigned yet"
        assert await count_rows(session_factory, Message) == 0

    @pytest.mark.asyncio
    async def test_thread_read_receipts_and_badges(self, store, channel, db_session, student, admin):
        complaint = await raise_complaint(store, db_session, student)
        await store.update_complaint(db_session, admin, complaint.id, ComplaintUpdate(status=Status.IN_PROGRESS))

        message = await channel.send_message(
            db_session, student, complaint.id, MessageCreate(message_text="Any update?")
        )
        assert message.receiver_id == admin.user_id
        assert message.is_read is False
        assert message.sender_name == student.full_name

        assert (await get_badge_counts(db_session, admin)).messages == 1
        assert await channel.unread_by_complaint(db_session, admin) == {complaint.id: 1}

        # The sender opening the thread does not mark their own message read
        assert await channel.mark_read(db_session, student, complaint.id) == 0
        assert await channel.mark_read(db_session, admin, complaint.id) == 1
        assert await channel.mark_read(db_session, admin, complaint.id) == 0
        assert (await get_badge_counts(db_session, admin)).messages == 0

    @pytest.mark.asyncio
    async def test_thread_order_and_names(self, store, channel, db_session, student, admin):
        complaint = await raise_complaint(store, db_session, student)
        await store.update_complaint(db_session, admin, complaint.id, ComplaintUpdate(status=Status.IN_PROGRESS))

        await channel.send_message(db_session, student, complaint.id, MessageCreate(message_text="First"))
        await channel.send_message(db_session, admin, complaint.id, MessageCreate(message_text="Second"))

        thread = await channel.list_messages(db_session, student, complaint.id)
        assert [message.message_text for message in thread] == ["First", "Second"]
        assert [message.sender_name for message in thread] == [student.full_name, admin.full_name]
        assert thread[1].receiver_id == student.user_id

    @pytest.mark.asyncio
    async def test_only_participants_can_send(self, store, channel, db_session, student, admin, second_admin):
        complaint = await raise_complaint(store, db_session, student)
        await store.update_complaint(db_session, admin, complaint.id, ComplaintUpdate(status=Status.IN_PROGRESS))

        with pytest.raises(AuthorizationError):
            await channel.send_message(
                db_session, second_admin, complaint.id, MessageCreate(message_text="Hi")
            )

    @pytest.mark.asyncio
    async def test_blank_message_rejected(self, store, channel, db_session, student, admin):
        complaint = await raise_complaint(store, db_session, student)
        await store.update_complaint(db_session, admin, complaint.id, ComplaintUpdate(status=Status.IN_PROGRESS))

        with pytest.raises(ValidationError):
            await channel.send_message(db_session, student, complaint.id, MessageCreate(message_text="   "))

    @pytest.mark.asyncio
    async def test_conversations_hide_anonymous_students(self, store, channel, db_session, student, admin):
        complaint = await raise_complaint(store, db_session, student, is_anonymous=True)
        await store.update_complaint(db_session, admin, complaint.id, ComplaintUpdate(status=Status.IN_PROGRESS))
        await channel.send_message(db_session, student, complaint.id, MessageCreate(message_text="Hello"))

        conversations = await channel.list_conversations(db_session, admin)
        assert conversations[0].student_name == "Anonymous"
        assert conversations[0].unread == 1

        own = await channel.list_conversations(db_session, student)
        assert own[0].student_name == student.full_name

    @pytest.mark.asyncio
    async def test_thread_subscription_collapses_rapid_messages(
        self, store, channel, db_session, student, other_student, admin, event_bus
    ):
        complaint = await raise_complaint(store, db_session, student)
        other = await raise_complaint(store, db_session, other_student)
        for item in (complaint, other):
            await store.update_complaint(db_session, admin, item.id, ComplaintUpdate(status=Status.IN_PROGRESS))

        with event_bus.subscribe("messages", "complaint_id", complaint.id) as subscription:
            await channel.send_message(db_session, student, complaint.id, MessageCreate(message_text="One"))
            await channel.send_message(db_session, student, complaint.id, MessageCreate(message_text="Two"))
            await channel.send_message(db_session, other_student, other.id, MessageCreate(message_text="Elsewhere"))

            batch = await asyncio.wait_for(subscription.next_batch(), timeout=1)
            assert len(batch) == 2
            assert subscription.pending() == 0

            await channel.mark_read(db_session, admin, complaint.id)
            batch = await asyncio.wait_for(subscription.next_batch(), timeout=1)
            assert batch[0].kind == UPDATE

    def test_resolve_receiver(self):
        complaint = Complaint(user_id="student-1", assigned_admin_id="admin-1")
        assert resolve_receiver(complaint, "student-1") == "admin-1"
        assert resolve_receiver(complaint, "admin-1") == "student-1"
        with pytest.raises(AuthorizationError):
            resolve_receiver(complaint, "admin-2")
        with pytest.raises(NoRecipientError):
            resolve_receiver(Complaint(user_id="student-1"), "student-1")


class TestBadges:
    """Tests for badge counts and live badge watchers."""

    @pytest.mark.asyncio
    async def test_admin_and_student_counts(self, store, db_session, student, other_student, admin):
        await raise_complaint(store, db_session, student)
        second = await raise_complaint(store, db_session, student)
        await raise_complaint(store, db_session, other_student)
        await store.update_complaint(db_session, admin, second.id, ComplaintUpdate(status=Status.IN_PROGRESS))

        assert (await get_badge_counts(db_session, admin)).complaints == 2
        assert (await get_badge_counts(db_session, student)).complaints == 1
        assert (await get_badge_counts(db_session, other_student)).complaints == 1

    @pytest.mark.asyncio
    async def test_watcher_refreshes_once_per_batch(self, store, db_session, session_factory, student, admin, event_bus):
        async with BadgeWatcher(admin, session_factory, event_bus) as watcher:
            assert watcher.current.complaints == 0
            assert event_bus.subscriber_count == 1

            await raise_complaint(store, db_session, student)
            await raise_complaint(store, db_session, student)

            counts = await asyncio.wait_for(watcher.next_counts(), timeout=1)
            assert counts.complaints == 2
            assert watcher.subscription.pending() == 0

        assert event_bus.subscriber_count == 0

    @pytest.mark.asyncio
    async def test_watcher_tracks_meetings(self, db_session, session_factory, student, admin, event_bus):
        meetings = MeetingService(event_bus)
        async with BadgeWatcher(admin, session_factory, event_bus) as watcher:
            await meetings.request_meeting(
                db_session, student, MeetingCreate(requested_date_time=utcnow() + timedelta(days=1))
            )
            counts = await asyncio.wait_for(watcher.next_counts(), timeout=1)
            assert counts.meetings == 1


# ============================================================================
# CHANGE EVENTS
# ============================================================================

class TestEventBus:
    """Tests for the in-process change notification bus."""

    def test_filtered_delivery(self):
        bus = EventBus()
        thread = bus.subscribe("messages", "complaint_id", "c-1")
        everything = bus.subscribe(("messages", "complaints"))

        delivered = bus.publish(ChangeEvent("messages", INSERT, "1", {"complaint_id": "c-2"}))

        assert delivered == 1
        assert thread.pending() == 0
        assert everything.pending() == 1

    def test_unsubscribe_stops_delivery(self):
        bus = EventBus()
        with bus.subscribe("complaints") as subscription:
            assert bus.subscriber_count == 1
        assert bus.subscriber_count == 0
        assert bus.publish(ChangeEvent("complaints", INSERT, "c-1")) == 0
        assert subscription.pending() == 0

        # Releasing twice is harmless
        subscription.unsubscribe()

    @pytest.mark.asyncio
    async def test_next_batch_waits_for_first_event(self):
        bus = EventBus()
        subscription = bus.subscribe("meetings")
        waiter = asyncio.create_task(subscription.next_batch())
        await asyncio.sleep(0)
        assert not waiter.done()

        bus.publish(ChangeEvent("meetings", UPDATE, "m-1"))
        batch = await asyncio.wait_for(waiter, timeout=1)
        assert [event.row_id for event in batch] == ["m-1"]
        subscription.unsubscribe()


# ============================================================================
# FEEDBACK
# ============================================================================

class TestFeedback:
    """Tests for post-resolution feedback."""

    @pytest.fixture
    async def resolved(self, store, db_session, student, admin):
        complaint = await raise_complaint(store, db_session, student)
        await store.update_complaint(db_session, admin, complaint.id, ComplaintUpdate(status=Status.RESOLVED))
        return complaint

    @pytest.mark.asyncio
    async def test_out_of_range_rating_rejected_before_write(
        self, db_session, session_factory, student, resolved
    ):
        capture = FeedbackCapture()
        for rating in (0, 6):
            request = FeedbackCreate.model_construct(rating=rating, comment=None, is_anonymous=False)
            with pytest.raises(ValidationError) as excinfo:
                await capture.submit_feedback(db_session, student, resolved.id, request)
            assert "Rating" in excinfo.value.message

        assert await count_rows(session_factory, Feedback) == 0

    def test_schema_rejects_out_of_range_rating(self):
        with pytest.raises(SchemaError):
            FeedbackCreate(rating=0)
        with pytest.raises(SchemaError):
            FeedbackCreate(rating=6)

    @pytest.mark.asyncio
    async def test_only_resolved_complaints_accept_feedback(self, store, db_session, student):
        complaint = await raise_complaint(store, db_session, student)
        with pytest.raises(ValidationError):
            await FeedbackCapture().submit_feedback(db_session, student, complaint.id, FeedbackCreate(rating=4))

    @pytest.mark.asyncio
    async def test_single_feedback_per_complaint(self, db_session, session_factory, student, admin, resolved):
        capture = FeedbackCapture()
        feedback = await capture.submit_feedback(
            db_session, student, resolved.id, FeedbackCreate(rating=5, comment="  Quick fix!  ")
        )
        assert feedback.admin_id == admin.user_id
        assert feedback.comment == "Quick fix!"

        with pytest.raises(DuplicateFeedbackError):
            await capture.submit_feedback(db_session, student, resolved.id, FeedbackCreate(rating=1))
        assert await count_rows(session_factory, Feedback) == 1

    @pytest.mark.asyncio
    async def test_admins_and_other_students_cannot_rate(self, db_session, other_student, admin, resolved):
        capture = FeedbackCapture()
        with pytest.raises(PermissionDenied):
            await capture.submit_feedback(db_session, admin, resolved.id, FeedbackCreate(rating=3))
        with pytest.raises(AuthorizationError):
            await capture.submit_feedback(db_session, other_student, resolved.id, FeedbackCreate(rating=3))

    @pytest.mark.asyncio
    async def test_anonymous_feedback_listing(self, db_session, student, admin, resolved):
        capture = FeedbackCapture()
        await capture.submit_feedback(
            db_session, student, resolved.id, FeedbackCreate(rating=4, is_anonymous=True)
        )

        listed = await capture.list_feedback(db_session, admin)
        assert listed[0].student_id is None
        assert listed[0].student_name == "Anonymous"

        own = await capture.get_feedback_for_complaint(db_session, student, resolved.id)
        assert own.student_name == student.full_name

        assert await average_rating(db_session) == 4.0
        with pytest.raises(PermissionDenied):
            await capture.list_feedback(db_session, student)


# ============================================================================
# ANNOUNCEMENTS AND MEETINGS
# ============================================================================

class TestAnnouncements:
    """Tests for announcements and lazy expiry."""

    @pytest.mark.asyncio
    async def test_expired_announcements_hidden_and_deactivated(
        self, db_session, session_factory, admin
    ):
        service = AnnouncementService()
        expired = await service.create(
            db_session, admin,
            AnnouncementCreate(title="Old notice", message="Gone", expires_at=utcnow() - timedelta(hours=1))
        )
        await service.create(db_session, admin, AnnouncementCreate(title="Holiday", message="Friday off"))
        await service.create(
            db_session, admin,
            AnnouncementCreate(title="TVM only", message="Lab closed", target_center="Trivandrum")
        )

        visible, expired_ids = await service.list_active(db_session, "Kochi")
        assert [item.title for item in visible] == ["Holiday"]
        assert expired_ids == [expired.id]

        assert await deactivate_expired(session_factory, expired_ids) == 1
        async with session_factory() as check:
            assert (await check.get(Announcement, expired.id)).is_active is False

        visible, expired_ids = await service.list_active(db_session, "Trivandrum")
        assert sorted(item.title for item in visible) == ["Holiday", "TVM only"]
        assert expired_ids == []

    def test_is_expired_handles_aware_datetimes(self):
        now = datetime(2024, 5, 1, 12, 0)
        announcement = Announcement(expires_at=datetime.fromisoformat("2024-05-01T11:00:00+00:00"))
        assert is_expired(announcement, now) is True
        assert is_expired(Announcement(expires_at=None), now) is False

    @pytest.mark.asyncio
    async def test_only_admins_manage_announcements(self, db_session, student, admin):
        service = AnnouncementService()
        with pytest.raises(PermissionDenied):
            await service.create(db_session, student, AnnouncementCreate(title="Hi", message="There"))
        with pytest.raises(AuthorizationError):
            await service.delete(db_session, admin, "missing")

    @pytest.mark.asyncio
    async def test_update_rejects_null_title_but_clears_audience(self, db_session, admin):
        service = AnnouncementService()
        announcement = await service.create(
            db_session, admin, AnnouncementCreate(title="TVM only", message="Lab closed", target_center="Trivandrum")
        )

        with pytest.raises(ValidationError):
            await service.update(db_session, admin, announcement.id, AnnouncementUpdate(title=None))
        with pytest.raises(ValidationError):
            await service.update(db_session, admin, announcement.id, AnnouncementUpdate(is_active=None))

        updated = await service.update(
            db_session, admin, announcement.id, AnnouncementUpdate(target_center=None)
        )
        assert updated.target_center is None
        assert updated.title == "TVM only"


class TestMeetings:
    """Tests for meeting requests."""

    @pytest.mark.asyncio
    async def test_request_and_accept(self, db_session, student, other_student, admin, event_bus):
        meetings = MeetingService(event_bus)
        requested = await meetings.request_meeting(
            db_session, student,
            MeetingCreate(requested_date_time=utcnow() + timedelta(days=2), notes="About my laptop")
        )
        assert requested.status == MeetingStatus.PENDING
        assert requested.student_name == student.full_name

        with event_bus.subscribe("meetings", "student_id", student.user_id) as subscription:
            accepted = await meetings.update_meeting(
                db_session, admin, requested.id,
                MeetingUpdate(status=MeetingStatus.ACCEPTED, meeting_link="https://meet.example.com/abc")
            )
            assert subscription.pending() == 1

        assert accepted.admin_id == admin.user_id
        assert accepted.meeting_link == "https://meet.example.com/abc"
        assert accepted.notes == "About my laptop"
        assert await meetings.list_meetings(db_session, other_student) == []
        assert len(await meetings.list_meetings(db_session, admin)) == 1

    @pytest.mark.asyncio
    async def test_meeting_about_someone_elses_complaint(self, store, db_session, student, other_student):
        complaint = await raise_complaint(store, db_session, student)
        with pytest.raises(AuthorizationError):
            await MeetingService().request_meeting(
                db_session, other_student,
                MeetingCreate(requested_date_time=utcnow(), complaint_id=complaint.id)
            )

    @pytest.mark.asyncio
    async def test_students_cannot_respond(self, db_session, student):
        with pytest.raises(PermissionDenied):
            await MeetingService().update_meeting(db_session, student, "any", MeetingUpdate())


# ============================================================================
# PROFILES AND CENTERS
# ============================================================================

class TestProfiles:
    """Tests for registration and user administration."""

    def test_profile_id_must_be_a_plain_token(self):
        with pytest.raises(SchemaError):
            ProfileCreate(id="../../escaped", full_name="Mallory", email="m@example.com")
        with pytest.raises(SchemaError):
            ProfileCreate(id="a/b", full_name="Mallory", email="m@example.com")
        assert ProfileCreate(id="user_42-x", full_name="Neha", email="n@example.com").id == "user_42-x"

    @pytest.mark.asyncio
    async def test_register_grants_student_role(self, db_session):
        service = ProfileService()
        profile = await service.register(
            db_session, ProfileCreate(id="new-1", full_name="Neha", email="neha@example.com")
        )
        assert profile.center == config.DEFAULT_CENTER
        assert await get_role(db_session, "new-1") == Role.STUDENT

        with pytest.raises(ConflictError):
            await service.register(
                db_session, ProfileCreate(id="new-2", full_name="Other", email="neha@example.com")
            )

    @pytest.mark.asyncio
    async def test_admin_promotes_user(self, db_session, student, admin):
        service = ProfileService()
        await service.admin_update_user(db_session, admin, student.user_id, UserAdminUpdate(role=Role.ADMIN))
        assert await get_role(db_session, student.user_id) == Role.ADMIN

        users = await service.list_users(db_session, admin, search="asha")
        assert [user.id for user in users] == [student.user_id]

    @pytest.mark.asyncio
    async def test_user_directory_is_admin_only(self, db_session, student, other_student):
        service = ProfileService()
        with pytest.raises(PermissionDenied):
            await service.list_users(db_session, student)
        with pytest.raises(AuthorizationError):
            await service.get_profile(db_session, student, other_student.user_id)

    @pytest.mark.asyncio
    async def test_user_stats(self, store, db_session, student, admin):
        complaint = await raise_complaint(store, db_session, student)
        await raise_complaint(store, db_session, student)
        await store.update_complaint(db_session, admin, complaint.id, ComplaintUpdate(status=Status.RESOLVED))

        stats = await ProfileService().user_stats(db_session, admin, student.user_id)
        assert stats.total_complaints == 2
        assert stats.resolved_complaints == 1


class TestCenters:
    """Tests for center management."""

    @pytest.mark.asyncio
    async def test_create_rename_and_clash(self, db_session, student, admin):
        service = CenterService()
        kochi = await service.save_center(db_session, admin, CenterCreate(name="Kochi", location="Kakkanad"))
        kochi_id = kochi.id
        await service.save_center(db_session, admin, CenterCreate(name="Calicut"))

        with pytest.raises(ConflictError):
            await service.save_center(db_session, admin, CenterCreate(name="Calicut"), kochi_id)

        renamed = await service.save_center(db_session, admin, CenterCreate(name="Kochi HQ"), kochi_id)
        assert renamed.name == "Kochi HQ"
        assert [center.name for center in await service.list_centers(db_session)] == ["Calicut", "Kochi HQ"]

        with pytest.raises(PermissionDenied):
            await service.delete_center(db_session, student, kochi_id)

        await service.delete_center(db_session, admin, kochi_id)
        assert [center.name for center in await service.list_centers(db_session)] == ["Calicut"]


# ============================================================================
# ALERTS
# ============================================================================

class TestAlertService:
    """Tests for high priority alerts."""

    def make_complaint(self):
        return Complaint(
            id="c-1", title="Harassment in hostel", description="Details of the incident " * 3,
            category="Other", priority="High", status="Pending", center="Kochi",
            user_id="student-1", is_anonymous=False
        )

    def test_payload_never_names_the_creator(self):
        payload = AlertService(enabled=True)._build_alert_payload(self.make_complaint(), "created")
        text = json.dumps(payload)
        assert "student-1" not in text
        assert "High priority complaint created" in text

    @pytest.mark.asyncio
    async def test_disabled_alerts_only_log(self):
        service = AlertService(webhook_url="http://hooks.invalid/x", enabled=False)
        with patch.object(service, "_send_webhook", AsyncMock()) as send:
            assert await service.send_alert(self.make_complaint(), "created") is True
        send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_webhook_failure_returns_false(self):
        service = AlertService(webhook_url="http://hooks.invalid/x", enabled=True)
        failing = AsyncMock(side_effect=httpx.ConnectError("connection refused"))
        with patch.object(service, "_send_webhook", failing):
            assert await service.send_alert(self.make_complaint(), "escalated") is False

    @pytest.mark.asyncio
    async def test_slack_webhook_connection(self):
        """Test that Slack webhook can send messages."""
        if not config.ALERT_ENABLED or not config.ALERT_WEBHOOK_URL:
            pytest.skip("Slack alerts not configured")

        async with httpx.AsyncClient(timeout=10.0) as client:
            response = await client.post(config.ALERT_WEBHOOK_URL, json={"text": "Test message from test suite"})
            assert response.status_code == 200


# ============================================================================
# STORAGE, ANALYTICS AND CONSOLE
# ============================================================================

class TestBlobStore:
    """Tests for attachment and avatar uploads."""

    @pytest.mark.asyncio
    async def test_upload_writes_file_under_bucket(self, tmp_path):
        blobs = BlobStore(root=str(tmp_path), base_url="http://files.test/")
        url = await blobs.upload(config.ATTACHMENT_BUCKET, "student-1", "Screen Shot.PNG", b"\x89PNG data")

        prefix = f"http://files.test/{config.ATTACHMENT_BUCKET}/student-1/"
        assert url.startswith(prefix)
        assert url.endswith(".png")
        key = url[len(f"http://files.test/{config.ATTACHMENT_BUCKET}/"):]
        assert (tmp_path / config.ATTACHMENT_BUCKET / key).read_bytes() == b"\x89PNG data"

    @pytest.mark.asyncio
    async def test_rejects_empty_and_oversized(self, tmp_path):
        blobs = BlobStore(root=str(tmp_path), max_bytes=4)
        with pytest.raises(ValidationError):
            await blobs.upload(config.AVATAR_BUCKET, "student-1", "a.jpg", b"")
        with pytest.raises(ValidationError):
            await blobs.upload(config.AVATAR_BUCKET, "student-1", "a.jpg", b"too large")

    @pytest.mark.asyncio
    async def test_rejects_unsafe_owner_ids(self, tmp_path):
        root = tmp_path / "files"
        blobs = BlobStore(root=str(root))
        for owner in ("../../escaped", "a/b", "", ".."):
            with pytest.raises(ValidationError):
                await blobs.upload(config.ATTACHMENT_BUCKET, owner, "a.png", b"data")
        assert list(tmp_path.iterdir()) == []

    @pytest.mark.asyncio
    async def test_rejects_disallowed_types(self, tmp_path):
        blobs = BlobStore(root=str(tmp_path))
        with pytest.raises(ValidationError):
            await blobs.upload(config.ATTACHMENT_BUCKET, "student-1", "page.html", b"<script></script>")
        with pytest.raises(ValidationError):
            await blobs.upload(config.ATTACHMENT_BUCKET, "student-1", "README", b"no extension")
        with pytest.raises(ValidationError):
            await blobs.upload(config.AVATAR_BUCKET, "student-1", "notes.pdf", b"%PDF")
        with pytest.raises(ValidationError):
            await blobs.upload(config.AVATAR_BUCKET, "student-1", "a.png", b"data", content_type="text/html")
        assert list(tmp_path.iterdir()) == []

    def test_validate_upload_allows_documents_as_attachments(self):
        assert validate_upload(config.ATTACHMENT_BUCKET, "Fee Receipt.PDF", "application/pdf") == ".pdf"
        assert validate_upload(config.AVATAR_BUCKET, "me.jpeg", "image/jpeg; charset=binary") == ".jpeg"
        with pytest.raises(ValidationError):
            validate_upload("elsewhere", "a.png")


class TestAnalytics:
    """Tests for admin analytics."""

    def test_creation_trend_fills_empty_days(self):
        created = [datetime(2024, 5, 1, 10), datetime(2024, 5, 3, 9), datetime(2024, 5, 3, 18)]
        trend = creation_trend(created, 3, today=datetime(2024, 5, 3, 20))
        assert [(point.date, point.complaints) for point in trend] == [
            ("2024-05-01", 1), ("2024-05-02", 0), ("2024-05-03", 2)
        ]

    @pytest.mark.asyncio
    async def test_summary(self, store, db_session, student, admin):
        resolved = await raise_complaint(store, db_session, student)
        await raise_complaint(store, db_session, student, category=Category.TECHNICAL)
        await store.update_complaint(db_session, admin, resolved.id, ComplaintUpdate(status=Status.RESOLVED))
        await FeedbackCapture().submit_feedback(db_session, student, resolved.id, FeedbackCreate(rating=4))

        summary = await summarize(db_session, admin)

        assert summary.total_complaints == 2
        assert summary.total_students == 1
        assert summary.avg_rating == 4.0
        assert summary.avg_resolution_hours is not None
        assert summary.avg_resolution_hours >= 0
        assert {item.name: item.value for item in summary.by_status} == {"Pending": 1, "Resolved": 1}
        assert {item.name: item.value for item in summary.by_category} == {"Facility": 1, "Technical": 1}
        assert len(summary.trend) == config.TREND_DAYS
        assert summary.trend[-1].complaints == 2

        with pytest.raises(PermissionDenied):
            await summarize(db_session, student)

    @pytest.mark.asyncio
    async def test_empty_summary(self, db_session, admin):
        summary = await summarize(db_session, admin)
        assert summary.total_complaints == 0
        assert summary.avg_rating == 0.0
        assert summary.avg_resolution_hours is None


class TestTriageConsole:
    """Tests for the console's display helpers."""

    @pytest.mark.asyncio
    async def test_complaint_table_and_references(self, store, db_session, student, admin):
        await raise_complaint(store, db_session, student)
        await raise_complaint(store, db_session, student, is_anonymous=True)
        listing = await store.list_complaints(db_session, admin)

        table = build_complaint_table(listing)
        assert table.row_count == 2

        assert resolve_reference("2", listing) == listing[1].id
        assert resolve_reference(listing[0].id[:8], listing) == listing[0].id
        assert resolve_reference("unknown-id", listing) == "unknown-id"



"""Database models for complaints, their audit trail and threads."""
from datetime import datetime, UTC
from uuid import uuid4
from sqlalchemy import (
    Column, Integer, String, DateTime, Text, Boolean, ForeignKey, UniqueConstraint
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def utcnow():
    """Current UTC time as stored (naive, UTC)."""
    return datetime.now(UTC).replace(tzinfo=None)


def to_storage(value):
    """Normalise a datetime to naive UTC; naive input is taken as UTC."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def _uuid():
    return str(uuid4())


def _iso(value):
    return value.isoformat() if value else None


class Profile(Base):
    """User profile; the id is issued by the external auth provider."""

    __tablename__ = "profiles"

    id = Column(String(36), primary_key=True)
    full_name = Column(String(100), nullable=False)
    email = Column(String(255), nullable=False, unique=True)
    center = Column(String(100), nullable=False)
    avatar_url = Column(String(500), nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "full_name": self.full_name,
            "email": self.email,
            "center": self.center,
            "avatar_url": self.avatar_url,
            "created_at": _iso(self.created_at),
        }


class UserRole(Base):
    """Role granted to a profile (student or admin)."""

    __tablename__ = "user_roles"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(36), ForeignKey("profiles.id"), nullable=False, unique=True)
    role = Column(String(20), nullable=False, default="student")
    created_at = Column(DateTime, default=utcnow)


class Center(Base):
    """Physical location of the institution."""

    __tablename__ = "centers"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(100), nullable=False, unique=True)
    location = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "location": self.location,
            "created_at": _iso(self.created_at),
        }


class Complaint(Base):
    """Complaint database model."""

    __tablename__ = "complaints"

    id = Column(String(36), primary_key=True, default=_uuid)
    title = Column(String(100), nullable=False)
    description = Column(Text, nullable=False)
    category = Column(String(20), nullable=False)  # Technical, Mentor, Facility, Other
    priority = Column(String(20), nullable=False, default="Medium")  # Low, Medium, High
    status = Column(String(20), nullable=False, default="Pending", index=True)
    center = Column(String(100), nullable=False)
    is_anonymous = Column(Boolean, default=False, nullable=False)
    attachment_url = Column(String(500), nullable=True)
    user_id = Column(String(36), ForeignKey("profiles.id"), nullable=False, index=True)
    assigned_admin_id = Column(String(36), ForeignKey("profiles.id"), nullable=True)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class TimelineEntry(Base):
    """Append-only audit row for one observed change to a complaint."""

    __tablename__ = "complaint_timeline"

    id = Column(Integer, primary_key=True, index=True)
    complaint_id = Column(String(36), ForeignKey("complaints.id"), nullable=False, index=True)
    action_type = Column(String(30), nullable=False)
    old_value = Column(String(100), nullable=True)
    new_value = Column(String(100), nullable=True)
    notes = Column(Text, nullable=True)
    action_by = Column(String(36), ForeignKey("profiles.id"), nullable=True)
    created_at = Column(DateTime, default=utcnow)


class Message(Base):
    """Chat message inside a complaint thread."""

    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, index=True)
    complaint_id = Column(String(36), ForeignKey("complaints.id"), nullable=False, index=True)
    sender_id = Column(String(36), ForeignKey("profiles.id"), nullable=False)
    receiver_id = Column(String(36), ForeignKey("profiles.id"), nullable=False, index=True)
    message_text = Column(Text, nullable=False)
    attachment_url = Column(String(500), nullable=True)
    is_read = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=utcnow)


class Feedback(Base):
    """Post-resolution rating; one per complaint."""

    __tablename__ = "feedback"
    __table_args__ = (UniqueConstraint("complaint_id", name="uq_feedback_complaint"),)

    id = Column(String(36), primary_key=True, default=_uuid)
    complaint_id = Column(String(36), ForeignKey("complaints.id"), nullable=False)
    student_id = Column(String(36), ForeignKey("profiles.id"), nullable=False)
    admin_id = Column(String(36), ForeignKey("profiles.id"), nullable=True)
    rating = Column(Integer, nullable=False)
    comment = Column(Text, nullable=True)
    is_anonymous = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=utcnow)


class Announcement(Base):
    """Broadcast notice, optionally scoped to one center."""

    __tablename__ = "announcements"

    id = Column(String(36), primary_key=True, default=_uuid)
    title = Column(String(200), nullable=False)
    message = Column(Text, nullable=False)
    target_center = Column(String(100), nullable=True)  # null means all centers
    is_active = Column(Boolean, default=True, nullable=False)
    expires_at = Column(DateTime, nullable=True)
    admin_id = Column(String(36), ForeignKey("profiles.id"), nullable=False)
    created_at = Column(DateTime, default=utcnow)


class Meeting(Base):
    """Student request for a meeting with an admin."""

    __tablename__ = "meetings"

    id = Column(String(36), primary_key=True, default=_uuid)
    student_id = Column(String(36), ForeignKey("profiles.id"), nullable=False, index=True)
    complaint_id = Column(String(36), ForeignKey("complaints.id"), nullable=True)
    admin_id = Column(String(36), ForeignKey("profiles.id"), nullable=True)
    requested_date_time = Column(DateTime, nullable=False)
    scheduled_date_time = Column(DateTime, nullable=True)
    status = Column(String(20), nullable=False, default="Pending", index=True)
    notes = Column(Text, nullable=True)
    meeting_link = Column(String(500), nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

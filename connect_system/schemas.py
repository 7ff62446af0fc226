"""Pydantic schemas for request/response validation."""
from datetime import datetime
from enum import Enum
from typing import Optional, List
from pydantic import BaseModel, Field, ConfigDict

from config import config


class Category(str, Enum):
    TECHNICAL = "Technical"
    MENTOR = "Mentor"
    FACILITY = "Facility"
    OTHER = "Other"


class Priority(str, Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"


class Status(str, Enum):
    PENDING = "Pending"
    IN_PROGRESS = "In Progress"
    RESOLVED = "Resolved"


class ActionType(str, Enum):
    CREATED = "created"
    STATUS_CHANGED = "status_changed"
    PRIORITY_CHANGED = "priority_changed"
    CATEGORY_CHANGED = "category_changed"
    ASSIGNED = "assigned"
    ADMIN_NOTE = "admin_note"
    STATUS_UPDATED = "status_updated"


class MeetingStatus(str, Enum):
    PENDING = "Pending"
    ACCEPTED = "Accepted"
    RESCHEDULED = "Rescheduled"
    REJECTED = "Rejected"


class Role(str, Enum):
    STUDENT = "student"
    ADMIN = "admin"


# ---------------------------------------------------------------------------
# Complaints
# ---------------------------------------------------------------------------

class ComplaintCreate(BaseModel):
    """Request schema for raising a complaint."""

    model_config = ConfigDict(
        str_strip_whitespace=True,
        json_schema_extra={
            "example": {
                "title": "Wifi not working in lab 3",
                "description": "The wifi drops every few minutes.",
                "category": "Technical",
                "priority": "Medium",
                "is_anonymous": False
            }
        }
    )

    title: str = Field(..., min_length=config.TITLE_MIN_LENGTH, max_length=config.TITLE_MAX_LENGTH)
    description: str = Field(
        ...,
        min_length=config.DESCRIPTION_MIN_LENGTH,
        max_length=config.DESCRIPTION_MAX_LENGTH
    )
    category: Category
    priority: Priority = Priority.MEDIUM
    is_anonymous: bool = False
    center: Optional[str] = Field(None, description="Defaults to the creator's center")
    attachment_url: Optional[str] = None


class ComplaintUpdate(BaseModel):
    """Admin update; only the supplied fields are compared and written."""

    model_config = ConfigDict(str_strip_whitespace=True)

    status: Optional[Status] = None
    priority: Optional[Priority] = None
    category: Optional[Category] = None
    assigned_admin_id: Optional[str] = Field(None, description="Explicit reassignment")
    note: Optional[str] = Field(None, max_length=config.DESCRIPTION_MAX_LENGTH)
    expected_version: Optional[int] = Field(
        None, description="Reject the update if the complaint changed since this version"
    )


class ComplaintQuickUpdate(BaseModel):
    """List-view quick edit: all three fields are written at once."""

    status: Status
    priority: Priority
    category: Category
    note: Optional[str] = Field(None, max_length=config.DESCRIPTION_MAX_LENGTH)


class ComplaintFilters(BaseModel):
    status: Optional[Status] = None
    category: Optional[Category] = None
    priority: Optional[Priority] = None
    center: Optional[str] = None
    search: Optional[str] = None


class ComplaintResponse(BaseModel):
    """Complaint as shown to the viewer; creator identity may be redacted."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    title: str
    description: str
    category: Category
    priority: Priority
    status: Status
    center: str
    is_anonymous: bool
    attachment_url: Optional[str] = None
    user_id: Optional[str] = None
    assigned_admin_id: Optional[str] = None
    version: int
    created_at: datetime
    updated_at: datetime
    creator_name: Optional[str] = None
    creator_email: Optional[str] = None


class TimelineEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    complaint_id: str
    action_type: ActionType
    old_value: Optional[str] = None
    new_value: Optional[str] = None
    notes: Optional[str] = None
    action_by: Optional[str] = None
    actor_name: Optional[str] = None
    title: str = ""
    created_at: datetime


# ---------------------------------------------------------------------------
# Messaging
# ---------------------------------------------------------------------------

class MessageCreate(BaseModel):
    message_text: str = Field(..., min_length=1, max_length=config.MESSAGE_MAX_LENGTH)
    attachment_url: Optional[str] = None


class MessageResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    complaint_id: str
    sender_id: str
    receiver_id: str
    message_text: str
    attachment_url: Optional[str] = None
    is_read: bool
    created_at: datetime
    sender_name: Optional[str] = None


class ConversationResponse(BaseModel):
    complaint_id: str
    title: str
    status: Status
    student_name: Optional[str] = None
    unread: int = 0
    updated_at: datetime


class BadgeCounts(BaseModel):
    complaints: int = 0
    messages: int = 0
    meetings: int = 0


# ---------------------------------------------------------------------------
# Feedback
# ---------------------------------------------------------------------------

class FeedbackCreate(BaseModel):
    """Request schema for rating a resolved complaint."""

    model_config = ConfigDict(
        json_schema_extra={
            "example": {"rating": 5, "comment": "Quick fix!", "is_anonymous": False}
        }
    )

    rating: int = Field(..., ge=config.RATING_MIN, le=config.RATING_MAX)
    comment: Optional[str] = Field(None, max_length=config.DESCRIPTION_MAX_LENGTH)
    is_anonymous: bool = False


class FeedbackResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    complaint_id: str
    student_id: Optional[str] = None
    admin_id: Optional[str] = None
    rating: int
    comment: Optional[str] = None
    is_anonymous: bool
    created_at: datetime
    student_name: Optional[str] = None


# ---------------------------------------------------------------------------
# Announcements and meetings
# ---------------------------------------------------------------------------

class AnnouncementCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    title: str = Field(..., min_length=1, max_length=200)
    message: str = Field(..., min_length=1)
    target_center: Optional[str] = Field(None, description="Null targets all centers")
    expires_at: Optional[datetime] = None
    is_active: bool = True


class AnnouncementUpdate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    title: Optional[str] = Field(None, min_length=1, max_length=200)
    message: Optional[str] = Field(None, min_length=1)
    target_center: Optional[str] = None
    expires_at: Optional[datetime] = None
    is_active: Optional[bool] = None


class AnnouncementResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    title: str
    message: str
    target_center: Optional[str] = None
    is_active: bool
    expires_at: Optional[datetime] = None
    admin_id: str
    created_at: datetime


class MeetingCreate(BaseModel):
    requested_date_time: datetime
    complaint_id: Optional[str] = None
    notes: Optional[str] = Field(None, max_length=config.DESCRIPTION_MAX_LENGTH)


class MeetingUpdate(BaseModel):
    status: Optional[MeetingStatus] = None
    scheduled_date_time: Optional[datetime] = None
    notes: Optional[str] = Field(None, max_length=config.DESCRIPTION_MAX_LENGTH)
    meeting_link: Optional[str] = Field(None, max_length=500)


class MeetingResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    student_id: str
    complaint_id: Optional[str] = None
    admin_id: Optional[str] = None
    requested_date_time: datetime
    scheduled_date_time: Optional[datetime] = None
    status: MeetingStatus
    notes: Optional[str] = None
    meeting_link: Optional[str] = None
    created_at: datetime
    student_name: Optional[str] = None


# ---------------------------------------------------------------------------
# Profiles, users, centers, analytics
# ---------------------------------------------------------------------------

class ProfileCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    id: str = Field(..., min_length=1, max_length=36, pattern=r"^[A-Za-z0-9_-]+$",
                    description="Id issued by the auth provider")
    full_name: str = Field(..., min_length=1, max_length=100)
    email: str = Field(..., pattern=r"^[^@\s]+@[^@\s]+$")
    center: str = Field(default=config.DEFAULT_CENTER, min_length=1)


class ProfileUpdate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    full_name: Optional[str] = Field(None, min_length=1, max_length=100)
    center: Optional[str] = Field(None, min_length=1)


class UserAdminUpdate(ProfileUpdate):
    role: Optional[Role] = None


class UserSummary(BaseModel):
    id: str
    full_name: str
    email: str
    center: str
    avatar_url: Optional[str] = None
    role: Role
    created_at: datetime


class UserStats(BaseModel):
    total_complaints: int
    resolved_complaints: int


class CenterCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(..., min_length=1, max_length=100)
    location: Optional[str] = Field(None, max_length=255)


class NamedCount(BaseModel):
    name: str
    value: int


class TrendPoint(BaseModel):
    date: str
    complaints: int


class AnalyticsSummary(BaseModel):
    total_complaints: int
    total_students: int
    avg_rating: float
    avg_resolution_hours: Optional[float] = None
    by_category: List[NamedCount]
    by_center: List[NamedCount]
    by_status: List[NamedCount]
    trend: List[TrendPoint]

"""Profiles, roles and admin user management."""
import logging
from typing import Dict, Iterable, List, Optional
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from auth import Actor, require_admin
from database import atomic, reading
from errors import AuthorizationError, ConflictError
from models import Complaint, Profile, UserRole
from schemas import (
    ProfileCreate, ProfileUpdate, Role, Status, UserAdminUpdate, UserStats, UserSummary
)

logger = logging.getLogger(__name__)


async def display_names(db: AsyncSession, user_ids: Iterable[Optional[str]]) -> Dict[str, str]:
    """Resolve full names for a set of profile ids in one query."""
    ids = {user_id for user_id in user_ids if user_id}
    if not ids:
        return {}
    rows = await db.execute(select(Profile.id, Profile.full_name).where(Profile.id.in_(ids)))
    return {user_id: name for user_id, name in rows.all()}


async def get_role(db: AsyncSession, user_id: str) -> Optional[Role]:
    role = await db.scalar(select(UserRole.role).where(UserRole.user_id == user_id))
    return Role(role) if role else None


class ProfileService:
    """Profile registration and the admin user directory."""

    async def register(self, db: AsyncSession, request: ProfileCreate) -> Profile:
        """Create the profile for a newly signed-up user with the student role."""
        async with atomic(db, "register profile"):
            if await db.get(Profile, request.id) is not None:
                raise ConflictError(f"Profile {request.id} already exists")
            taken = await db.scalar(select(Profile.id).where(Profile.email == request.email))
            if taken:
                raise ConflictError(f"Email {request.email} is already registered")
            profile = Profile(**request.model_dump())
            db.add(profile)
            db.add(UserRole(user_id=request.id, role=Role.STUDENT.value))
        logger.info(f"Registered profile {profile.id}")
        return profile

    async def get_profile(self, db: AsyncSession, actor: Actor, user_id: str) -> Profile:
        if user_id != actor.user_id and not actor.is_admin:
            raise AuthorizationError("Profile")
        async with reading("load profile"):
            profile = await db.get(Profile, user_id)
        if profile is None:
            raise AuthorizationError("Profile")
        return profile

    async def update_profile(
        self,
        db: AsyncSession,
        actor: Actor,
        request: ProfileUpdate,
        avatar_url: Optional[str] = None
    ) -> Profile:
        """Update the actor's own name, center or avatar."""
        async with atomic(db, "update profile"):
            profile = await db.get(Profile, actor.user_id)
            if profile is None:
                raise AuthorizationError("Profile")
            for key, value in request.model_dump(exclude_none=True).items():
                setattr(profile, key, value)
            if avatar_url:
                profile.avatar_url = avatar_url
        return profile

    async def list_users(self, db: AsyncSession, actor: Actor, search: str = None) -> List[UserSummary]:
        require_admin(actor, "list users")
        query = (
            select(Profile, UserRole.role)
            .outerjoin(UserRole, UserRole.user_id == Profile.id)
            .order_by(Profile.created_at.desc())
        )
        if search:
            pattern = f"%{search.lower()}%"
            query = query.where(
                func.lower(Profile.full_name).like(pattern) | func.lower(Profile.email).like(pattern)
            )
        async with reading("list users"):
            rows = (await db.execute(query)).all()
        return [
            UserSummary(
                id=profile.id,
                full_name=profile.full_name,
                email=profile.email,
                center=profile.center,
                avatar_url=profile.avatar_url,
                role=Role(role or Role.STUDENT.value),
                created_at=profile.created_at
            )
            for profile, role in rows
        ]

    async def user_stats(self, db: AsyncSession, actor: Actor, user_id: str) -> UserStats:
        require_admin(actor, "view user statistics")
        async with reading("load user statistics"):
            total = await db.scalar(
                select(func.count()).select_from(Complaint).where(Complaint.user_id == user_id)
            )
            resolved = await db.scalar(
                select(func.count()).select_from(Complaint).where(
                    Complaint.user_id == user_id,
                    Complaint.status == Status.RESOLVED.value
                )
            )
        return UserStats(total_complaints=total or 0, resolved_complaints=resolved or 0)

    async def admin_update_user(
        self,
        db: AsyncSession,
        actor: Actor,
        user_id: str,
        request: UserAdminUpdate
    ) -> Profile:
        """Let an admin edit another user's name, center and role."""
        require_admin(actor, "edit users")
        async with atomic(db, "update user"):
            profile = await db.get(Profile, user_id)
            if profile is None:
                raise AuthorizationError("User")
            changes = request.model_dump(exclude_none=True)
            role = changes.pop("role", None)
            for key, value in changes.items():
                setattr(profile, key, value)
            if role is not None:
                user_role = await db.scalar(select(UserRole).where(UserRole.user_id == user_id))
                if user_role is None:
                    db.add(UserRole(user_id=user_id, role=role.value))
                else:
                    user_role.role = role.value
        logger.info(f"Admin {actor.user_id} updated user {user_id}")
        return profile

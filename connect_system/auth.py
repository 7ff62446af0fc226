"""Identity context injected by the external auth collaborator."""
from dataclasses import dataclass
from typing import Optional
from fastapi import Depends, Header, HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config import config
from database import get_db
from errors import PermissionDenied
from models import Profile, UserRole
from schemas import Role


@dataclass(frozen=True)
class Actor:
    """Current user and role, passed explicitly to every store operation."""

    user_id: str
    role: Role
    center: Optional[str] = None
    full_name: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


def require_admin(actor: Actor, action: str = "perform this action") -> None:
    """Raise PermissionDenied unless the actor is an admin."""
    if not actor.is_admin:
        raise PermissionDenied(f"Only admins can {action}")


async def load_actor(db: AsyncSession, user_id: str) -> Optional[Actor]:
    """Build the Actor for a profile id, or None if the profile is unknown."""
    row = (await db.execute(
        select(Profile, UserRole.role)
        .outerjoin(UserRole, UserRole.user_id == Profile.id)
        .where(Profile.id == user_id)
    )).first()
    if row is None:
        return None
    profile, role = row
    return Actor(
        user_id=profile.id,
        role=Role(role or Role.STUDENT.value),
        center=profile.center,
        full_name=profile.full_name
    )


def verify_api_key(x_api_key: str) -> None:
    """Verify the gateway key.

    Credentials themselves are managed by the auth provider in front of
    this service; only the shared key is checked here.
    """
    if x_api_key != config.API_KEY:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key"
        )


async def get_actor(
    x_api_key: str = Header(...),
    x_user_id: str = Header(...),
    db: AsyncSession = Depends(get_db)
) -> Actor:
    """FastAPI dependency resolving the authenticated actor."""
    verify_api_key(x_api_key)
    actor = await load_actor(db, x_user_id)
    if actor is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unknown user"
        )
    return actor

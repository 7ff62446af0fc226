"""Shared fixtures: a fresh in-memory database and event bus per test."""
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from alerting import AlertService
from auth import Actor
from complaints import ComplaintStore
from database import build_engine, init_db
from events import EventBus
from messaging import MessagingChannel
from models import Profile, UserRole
from schemas import Category, ComplaintCreate, Role


async def make_user(session_factory, user_id, full_name, role=Role.STUDENT, center="Kochi") -> Actor:
    """Insert a profile with its role and return the matching actor."""
    async with session_factory() as db:
        db.add(Profile(id=user_id, full_name=full_name, email=f"{user_id}@example.com", center=center))
        db.add(UserRole(user_id=user_id, role=role.value))
        await db.commit()
    return Actor(user_id=user_id, role=role, center=center, full_name=full_name)


async def raise_complaint(store, db, actor, **overrides):
    fields = {
        "title": "Projector broken in room 4",
        "description": "The projector has not turned on since Monday morning.",
        "category": Category.FACILITY,
    }
    fields.update(overrides)
    return await store.create_complaint(db, actor, ComplaintCreate(**fields))


@pytest.fixture
async def engine():
    engine = build_engine("sqlite+aiosqlite://")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def store(event_bus):
    return ComplaintStore(event_bus, AlertService(enabled=False))


@pytest.fixture
def channel(event_bus):
    return MessagingChannel(event_bus)


@pytest.fixture
async def student(session_factory):
    return await make_user(session_factory, "student-1", "Asha Menon")


@pytest.fixture
async def other_student(session_factory):
    return await make_user(session_factory, "student-2", "Rahul Nair", center="Trivandrum")


@pytest.fixture
async def admin(session_factory):
    return await make_user(session_factory, "admin-1", "Priya Admin", role=Role.ADMIN)


@pytest.fixture
async def second_admin(session_factory):
    return await make_user(session_factory, "admin-2", "Vivek Admin", role=Role.ADMIN)

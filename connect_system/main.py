"""Main FastAPI application for the complaint service."""
import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Dict, List, Optional
from fastapi import (
    BackgroundTasks, Depends, FastAPI, File, Header, Query, UploadFile, WebSocket,
    WebSocketDisconnect, status
)
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

import analytics
from alerting import AlertService
from announcements import AnnouncementService, deactivate_expired
from auth import Actor, get_actor, load_actor, verify_api_key
from badges import BadgeWatcher, get_badge_counts
from centers import CenterService
from complaints import ComplaintStore, load_visible_complaint
from config import config
from database import init_db, get_db, get_db_session
from errors import ConnectError
from events import bus
from feedback import FeedbackCapture
from meetings import MeetingService
from messaging import MessagingChannel
from profiles import ProfileService
from schemas import (
    AnalyticsSummary, AnnouncementCreate, AnnouncementResponse, AnnouncementUpdate, BadgeCounts,
    CenterCreate, ComplaintCreate, ComplaintFilters, ComplaintQuickUpdate, ComplaintResponse,
    ComplaintUpdate, ConversationResponse, FeedbackCreate, FeedbackResponse, MeetingCreate,
    MeetingResponse, MeetingUpdate, MessageCreate, MessageResponse, ProfileCreate, ProfileUpdate,
    TimelineEntryResponse, UserAdminUpdate, UserStats, UserSummary
)
from storage import BlobStore
from timeline import list_timeline

# Configure logging
logging.basicConfig(
    level=config.LOG_LEVEL,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Initialize services
alert_service = AlertService()
complaint_store = ComplaintStore(bus, alert_service)
messaging = MessagingChannel(bus)
feedback_capture = FeedbackCapture()
announcement_service = AnnouncementService()
meeting_service = MeetingService(bus)
center_service = CenterService()
profile_service = ProfileService()
blob_store = BlobStore()

# Live views open their own sessions; replaced in tests
session_factory = get_db_session


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    # Startup
    logger.info("Initializing database...")
    await init_db()
    Path(config.STORAGE_DIR).mkdir(parents=True, exist_ok=True)
    logger.info("Application started successfully")
    yield
    # Shutdown
    logger.info("Application shutting down")


app = FastAPI(
    title="Brototype Connect API",
    description="Student complaint tracking, triage and messaging",
    version="1.0.0",
    lifespan=lifespan
)
app.mount("/files", StaticFiles(directory=config.STORAGE_DIR, check_dir=False), name="files")


async def api_key_only(x_api_key: str = Header(...)) -> None:
    verify_api_key(x_api_key)


@app.exception_handler(ConnectError)
async def connect_error_handler(request, exc: ConnectError):
    """Map domain errors to their HTTP status."""
    if exc.status_code >= 500:
        logger.warning(f"Store failure on {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    """Global exception handler for unexpected errors."""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error"}
    )


@app.get("/")
async def root():
    """Root endpoint with API information."""
    return {
        "service": "Brototype Connect API",
        "version": "1.0.0",
        "endpoints": {
            "complaints": "GET/POST /complaints",
            "messages": "GET/POST /complaints/{id}/messages",
            "badges": "GET /badges",
            "health": "GET /health"
        }
    }


@app.get("/health")
async def health_check(db: AsyncSession = Depends(get_db)):
    """Health check endpoint.

    Returns database reachability and the number of open live subscriptions.
    """
    try:
        await db.execute(text("SELECT 1"))
        database_status = "healthy"
    except Exception as e:
        logger.warning(f"Health check could not reach database: {e}")
        database_status = "unavailable"

    return {
        "status": "healthy" if database_status == "healthy" else "degraded",
        "database": database_status,
        "live_subscriptions": bus.subscriber_count
    }


# ---------------------------------------------------------------------------
# Profiles and users
# ---------------------------------------------------------------------------

@app.post("/profiles", status_code=status.HTTP_201_CREATED)
async def register_profile(
    request: ProfileCreate,
    db: AsyncSession = Depends(get_db),
    _: None = Depends(api_key_only)
):
    """Create the profile of a user who just signed up with the auth provider."""
    profile = await profile_service.register(db, request)
    return profile.to_dict()


@app.get("/profiles/me")
async def my_profile(db: AsyncSession = Depends(get_db), actor: Actor = Depends(get_actor)):
    profile = await profile_service.get_profile(db, actor, actor.user_id)
    return {**profile.to_dict(), "role": actor.role.value}


@app.patch("/profiles/me")
async def update_my_profile(
    request: ProfileUpdate,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_actor)
):
    profile = await profile_service.update_profile(db, actor, request)
    return profile.to_dict()


@app.post("/profiles/me/avatar")
async def upload_avatar(
    file: UploadFile = File(...),
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_actor)
):
    url = await blob_store.upload(
        config.AVATAR_BUCKET, actor.user_id, file.filename, await file.read(), file.content_type
    )
    profile = await profile_service.update_profile(db, actor, ProfileUpdate(), avatar_url=url)
    return profile.to_dict()


@app.get("/users", response_model=List[UserSummary])
async def list_users(
    search: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_actor)
):
    return await profile_service.list_users(db, actor, search)


@app.get("/users/{user_id}/stats", response_model=UserStats)
async def user_stats(user_id: str, db: AsyncSession = Depends(get_db), actor: Actor = Depends(get_actor)):
    return await profile_service.user_stats(db, actor, user_id)


@app.patch("/users/{user_id}")
async def update_user(
    user_id: str,
    request: UserAdminUpdate,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_actor)
):
    profile = await profile_service.admin_update_user(db, actor, user_id, request)
    return profile.to_dict()


# ---------------------------------------------------------------------------
# Complaints
# ---------------------------------------------------------------------------

@app.post("/attachments", status_code=status.HTTP_201_CREATED)
async def upload_attachment(file: UploadFile = File(...), actor: Actor = Depends(get_actor)):
    """Store a complaint attachment; the returned URL goes into the complaint."""
    url = await blob_store.upload(
        config.ATTACHMENT_BUCKET, actor.user_id, file.filename, await file.read(), file.content_type
    )
    return {"url": url}


@app.post("/complaints", response_model=ComplaintResponse, status_code=status.HTTP_201_CREATED)
async def create_complaint(
    request: ComplaintCreate,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_actor)
):
    return await complaint_store.create_complaint(db, actor, request, background_tasks=background_tasks)


@app.get("/complaints", response_model=List[ComplaintResponse])
async def list_complaints(
    filters: ComplaintFilters = Depends(),
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_actor)
):
    return await complaint_store.list_complaints(db, actor, filters)


@app.get("/complaints/{complaint_id}", response_model=ComplaintResponse)
async def get_complaint(complaint_id: str, db: AsyncSession = Depends(get_db), actor: Actor = Depends(get_actor)):
    return await complaint_store.get_complaint(db, actor, complaint_id)


@app.patch("/complaints/{complaint_id}", response_model=ComplaintResponse)
async def update_complaint(
    complaint_id: str,
    request: ComplaintUpdate,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_actor)
):
    return await complaint_store.update_complaint(
        db, actor, complaint_id, request, background_tasks=background_tasks
    )


@app.put("/complaints/{complaint_id}/quick", response_model=ComplaintResponse)
async def quick_update_complaint(
    complaint_id: str,
    request: ComplaintQuickUpdate,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_actor)
):
    return await complaint_store.quick_update(
        db, actor, complaint_id, request, background_tasks=background_tasks
    )


@app.get("/complaints/{complaint_id}/timeline", response_model=List[TimelineEntryResponse])
async def get_timeline(complaint_id: str, db: AsyncSession = Depends(get_db), actor: Actor = Depends(get_actor)):
    await load_visible_complaint(db, actor, complaint_id)
    return await list_timeline(db, complaint_id)


# ---------------------------------------------------------------------------
# Messaging and badges
# ---------------------------------------------------------------------------

@app.get("/complaints/{complaint_id}/messages", response_model=List[MessageResponse])
async def list_messages(complaint_id: str, db: AsyncSession = Depends(get_db), actor: Actor = Depends(get_actor)):
    return await messaging.list_messages(db, actor, complaint_id)


@app.post(
    "/complaints/{complaint_id}/messages",
    response_model=MessageResponse,
    status_code=status.HTTP_201_CREATED
)
async def send_message(
    complaint_id: str,
    request: MessageCreate,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_actor)
):
    return await messaging.send_message(db, actor, complaint_id, request)


@app.post("/complaints/{complaint_id}/messages/read")
async def mark_messages_read(complaint_id: str, db: AsyncSession = Depends(get_db), actor: Actor = Depends(get_actor)):
    return {"marked_read": await messaging.mark_read(db, actor, complaint_id)}


@app.get("/conversations", response_model=List[ConversationResponse])
async def list_conversations(db: AsyncSession = Depends(get_db), actor: Actor = Depends(get_actor)):
    return await messaging.list_conversations(db, actor)


@app.get("/messages/unread", response_model=Dict[str, int])
async def unread_counts(db: AsyncSession = Depends(get_db), actor: Actor = Depends(get_actor)):
    return await messaging.unread_by_complaint(db, actor)


@app.get("/badges", response_model=BadgeCounts)
async def badge_counts(db: AsyncSession = Depends(get_db), actor: Actor = Depends(get_actor)):
    return await get_badge_counts(db, actor)


async def _authenticate_socket(websocket: WebSocket, api_key: str, user_id: str) -> Optional[Actor]:
    if api_key != config.API_KEY:
        return None
    async with session_factory() as db:
        return await load_actor(db, user_id)


async def _wait_for_disconnect(websocket: WebSocket) -> None:
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        return


async def _push_until_closed(websocket: WebSocket, next_payload, first_payload) -> None:
    """Send the first payload, then one payload per change batch until the client leaves."""
    await websocket.send_json(first_payload)
    closed = asyncio.create_task(_wait_for_disconnect(websocket))
    try:
        while True:
            update = asyncio.create_task(next_payload())
            done, _ = await asyncio.wait({update, closed}, return_when=asyncio.FIRST_COMPLETED)
            if closed in done:
                update.cancel()
                return
            await websocket.send_json(update.result())
    finally:
        closed.cancel()


@app.websocket("/ws/complaints/{complaint_id}/messages")
async def thread_socket(
    websocket: WebSocket,
    complaint_id: str,
    api_key: str = Query(...),
    user_id: str = Query(...)
):
    """Live thread: pushes the full refetched thread after every change."""
    actor = await _authenticate_socket(websocket, api_key, user_id)
    if actor is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    async def render():
        async with session_factory() as db:
            messages = await messaging.list_messages(db, actor, complaint_id)
        return [message.model_dump(mode="json") for message in messages]

    try:
        async with session_factory() as db:
            await load_visible_complaint(db, actor, complaint_id)
            await messaging.mark_read(db, actor, complaint_id)
    except ConnectError:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    with bus.subscribe("messages", "complaint_id", complaint_id) as subscription:
        async def next_thread():
            await subscription.next_batch()
            return await render()

        await _push_until_closed(websocket, next_thread, await render())


@app.websocket("/ws/badges")
async def badge_socket(websocket: WebSocket, api_key: str = Query(...), user_id: str = Query(...)):
    """Live badge counts for the connected viewer."""
    actor = await _authenticate_socket(websocket, api_key, user_id)
    if actor is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    async with BadgeWatcher(actor, session_factory, bus) as watcher:
        async def next_counts():
            return (await watcher.next_counts()).model_dump()

        await _push_until_closed(websocket, next_counts, watcher.current.model_dump())


# ---------------------------------------------------------------------------
# Feedback
# ---------------------------------------------------------------------------

@app.post(
    "/complaints/{complaint_id}/feedback",
    response_model=FeedbackResponse,
    status_code=status.HTTP_201_CREATED
)
async def submit_feedback(
    complaint_id: str,
    request: FeedbackCreate,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_actor)
):
    return await feedback_capture.submit_feedback(db, actor, complaint_id, request)


@app.get("/complaints/{complaint_id}/feedback", response_model=Optional[FeedbackResponse])
async def get_feedback(complaint_id: str, db: AsyncSession = Depends(get_db), actor: Actor = Depends(get_actor)):
    return await feedback_capture.get_feedback_for_complaint(db, actor, complaint_id)


@app.get("/feedback", response_model=List[FeedbackResponse])
async def list_feedback(db: AsyncSession = Depends(get_db), actor: Actor = Depends(get_actor)):
    return await feedback_capture.list_feedback(db, actor)


# ---------------------------------------------------------------------------
# Announcements, meetings, centers, analytics
# ---------------------------------------------------------------------------

@app.get("/announcements", response_model=List[AnnouncementResponse])
async def active_announcements(
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_actor)
):
    """Announcements visible to the viewer's center right now."""
    visible, expired = await announcement_service.list_active(db, actor.center)
    if expired:
        background_tasks.add_task(deactivate_expired, session_factory, expired)
    return visible


@app.get("/admin/announcements", response_model=List[AnnouncementResponse])
async def all_announcements(db: AsyncSession = Depends(get_db), actor: Actor = Depends(get_actor)):
    return await announcement_service.list_all(db, actor)


@app.post("/admin/announcements", response_model=AnnouncementResponse, status_code=status.HTTP_201_CREATED)
async def create_announcement(
    request: AnnouncementCreate,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_actor)
):
    return await announcement_service.create(db, actor, request)


@app.patch("/admin/announcements/{announcement_id}", response_model=AnnouncementResponse)
async def update_announcement(
    announcement_id: str,
    request: AnnouncementUpdate,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_actor)
):
    return await announcement_service.update(db, actor, announcement_id, request)


@app.delete("/admin/announcements/{announcement_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_announcement(
    announcement_id: str,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_actor)
):
    await announcement_service.delete(db, actor, announcement_id)


@app.get("/meetings", response_model=List[MeetingResponse])
async def list_meetings(db: AsyncSession = Depends(get_db), actor: Actor = Depends(get_actor)):
    return await meeting_service.list_meetings(db, actor)


@app.post("/meetings", response_model=MeetingResponse, status_code=status.HTTP_201_CREATED)
async def request_meeting(
    request: MeetingCreate,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_actor)
):
    return await meeting_service.request_meeting(db, actor, request)


@app.patch("/meetings/{meeting_id}", response_model=MeetingResponse)
async def update_meeting(
    meeting_id: str,
    request: MeetingUpdate,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_actor)
):
    return await meeting_service.update_meeting(db, actor, meeting_id, request)


@app.get("/centers")
async def list_centers(db: AsyncSession = Depends(get_db), actor: Actor = Depends(get_actor)):
    return [center.to_dict() for center in await center_service.list_centers(db)]


@app.post("/centers", status_code=status.HTTP_201_CREATED)
async def create_center(
    request: CenterCreate,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_actor)
):
    return (await center_service.save_center(db, actor, request)).to_dict()


@app.put("/centers/{center_id}")
async def update_center(
    center_id: str,
    request: CenterCreate,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_actor)
):
    return (await center_service.save_center(db, actor, request, center_id)).to_dict()


@app.delete("/centers/{center_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_center(center_id: str, db: AsyncSession = Depends(get_db), actor: Actor = Depends(get_actor)):
    await center_service.delete_center(db, actor, center_id)


@app.get("/analytics", response_model=AnalyticsSummary)
async def get_analytics(db: AsyncSession = Depends(get_db), actor: Actor = Depends(get_actor)):
    return await analytics.summarize(db, actor)

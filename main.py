"""
Zoom Insights Backend API

This FastAPI application is the backend for the meeting insights dashboard.
Users register, connect a Zoom account over OAuth, sync their meetings,
import recordings and transcripts, analyse transcripts with OpenAI, export
the results (PDF, Word, Markdown, JSON) and share summaries by email or
Slack. Supabase (Postgres) holds all rows; recordings and exports live on
local disk under ``STORAGE_DIR``.

Endpoints
---------

``GET /``
    Health check endpoint returning a simple message.

``/api/auth/*``
    Registration, login, session refresh, profile, account deletion and
    the Zoom connect / disconnect / status flow.

``/api/meetings/*``
    Meeting listing, detail and deletion, Zoom sync, transcript fetch,
    recording import (single and batch), CSV upload, analysis, transcript
    search and questions, personalized notes, speakers, sentiment, exports,
    tasks, task reminders and sharing.

``GET /api/transcripts/search``
    Search topics, transcripts and summaries across the user's meetings.

``POST /api/recordings/cleanup``
    Delete the user's recordings older than ``daysToKeep`` days.

``GET /api/recordings/{file_name}``
    Stream a stored recording, honouring HTTP ``Range`` requests.

Every error response has the shape
``{"success": false, "error": ..., "status": ..., "code": ...}``.
"""

import logging
from contextlib import asynccontextmanager
from datetime import date
from typing import Any, Dict, Optional

from dotenv import load_dotenv
load_dotenv()

from fastapi import Depends, FastAPI, File, Form, Header, Query, UploadFile, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, StreamingResponse

from models.data_models import (
    BatchImportRequest, CleanupRecordingsRequest, CreateTaskRequest, ExportRequest,
    ExtractRequest, ImportRecordingRequest, LoginRequest, PersonalizedNotesRequest,
    RefreshRequest, RegisterRequest, ShareRequest, SyncRequest, TaskReminderRequest,
    TranscriptSearchRequest, UpdateProfileRequest, UpdateTaskRequest, ZoomCallbackRequest,
)
from services.container import ServiceContainer, build_services
from services.storage_service import content_type_for, parse_range
from utils.auth import get_current_user, get_services, public_user, require_zoom_auth
from utils.config import get_settings
from utils.errors import ValidationError, register_exception_handlers

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------
settings = get_settings()
logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Wiring at startup makes missing or unsafe configuration fail fast.
    if app.state.services is None:
        app.state.services = build_services()
        logger.info("Services initialised")
    yield


app = FastAPI(title="Zoom Insights API", version="0.1.0", lifespan=lifespan)
# Importing the app needs no credentials; tests install their own container.
app.state.services = None

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
register_exception_handlers(app)


@app.get("/")
async def root() -> Dict[str, str]:
    """Health check endpoint."""
    return {"message": "Zoom Insights backend is running"}


# ---------------------------------------------------------------------------
# Auth Routes
# ---------------------------------------------------------------------------


@app.post("/api/auth/register", status_code=status.HTTP_201_CREATED)
async def register(
    req: RegisterRequest,
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    """Create an account and return a session."""
    session = services.auth.register(req.email, req.password, req.name)
    return {"success": True, **session}


@app.post("/api/auth/login")
async def login(
    req: LoginRequest,
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    session = services.auth.login(req.email, req.password)
    return {"success": True, **session}


@app.post("/api/auth/refresh")
async def refresh_session(
    req: RefreshRequest,
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    """Exchange a refresh token for a new token pair."""
    session = services.auth.refresh(req.refresh_token)
    return {"success": True, **session}


@app.post("/api/auth/logout")
async def logout(current_user: Dict[str, Any] = Depends(get_current_user)) -> Dict[str, Any]:
    """Sessions are stateless; the client discards its tokens."""
    return {"success": True, "message": "Logged out"}


@app.get("/api/auth/me")
async def get_me(current_user: Dict[str, Any] = Depends(get_current_user)) -> Dict[str, Any]:
    return {"success": True, "user": public_user(current_user)}


@app.put("/api/auth/profile")
async def update_profile(
    req: UpdateProfileRequest,
    current_user: Dict[str, Any] = Depends(get_current_user),
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    user = services.auth.update_profile(current_user, req.model_dump(exclude_unset=True))
    return {"success": True, "user": user}


@app.delete("/api/auth/account")
async def delete_account(
    current_user: Dict[str, Any] = Depends(get_current_user),
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    await services.auth.delete_account(current_user["id"])
    return {"success": True, "message": "Account deleted"}


# ---------------------------------------------------------------------------
# Zoom Connection Routes
# ---------------------------------------------------------------------------


@app.get("/api/auth/zoom")
async def get_zoom_auth_url(
    current_user: Dict[str, Any] = Depends(get_current_user),
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    """Get the Zoom OAuth authorization URL with a signed state."""
    return {"success": True, **services.auth.zoom_authorization(current_user["id"])}


@app.post("/api/auth/zoom/callback")
async def zoom_callback(
    req: ZoomCallbackRequest,
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    """Complete the OAuth flow. The signed state identifies the user."""
    session = await services.auth.connect_zoom(req.code, req.state)
    return {"success": True, "message": "Zoom account connected successfully", **session}


@app.post("/api/auth/zoom/disconnect")
async def disconnect_zoom(
    current_user: Dict[str, Any] = Depends(get_current_user),
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    await services.auth.disconnect_zoom(current_user["id"])
    return {"success": True, "message": "Zoom account disconnected successfully"}


@app.get("/api/auth/zoom/status")
async def zoom_status(
    current_user: Dict[str, Any] = Depends(get_current_user),
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    return {"success": True, **services.auth.zoom_status(current_user)}


# ---------------------------------------------------------------------------
# Meeting Routes
# ---------------------------------------------------------------------------


@app.get("/api/meetings")
async def list_meetings(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    search: Optional[str] = None,
    from_date: Optional[date] = Query(None, alias="from"),
    to_date: Optional[date] = Query(None, alias="to"),
    current_user: Dict[str, Any] = Depends(get_current_user),
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    result = services.meetings.list_meetings(current_user["id"], page, limit, search, from_date, to_date)
    return {"success": True, **result}


@app.post("/api/meetings/sync")
async def sync_meetings(
    req: Optional[SyncRequest] = None,
    current_user: Dict[str, Any] = Depends(require_zoom_auth),
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    """Pull the user's Zoom meetings into the database."""
    req = req or SyncRequest()
    result = await services.meetings.sync_meetings(current_user["id"], req.from_date, req.to_date)
    return {"success": True, **result.model_dump()}


@app.post("/api/meetings/batch-import-recordings")
async def batch_import_recordings(
    req: BatchImportRequest,
    current_user: Dict[str, Any] = Depends(require_zoom_auth),
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    result = await services.imports.batch_import(
        current_user["id"],
        req.recording_types,
        meeting_ids=req.meeting_ids,
        from_date=req.from_date,
        to_date=req.to_date,
        limit=req.limit,
    )
    return {"success": True, **result}


@app.post("/api/meetings/upload-csv")
async def upload_csv(
    file: UploadFile = File(...),
    analyze: bool = Form(False),
    current_user: Dict[str, Any] = Depends(get_current_user),
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    """Create meetings from a CSV with ``topic``, ``date`` and ``transcript`` columns."""
    if file.filename and not file.filename.lower().endswith(".csv"):
        raise ValidationError("Only CSV files are accepted")
    max_size = services.settings.max_upload_size
    contents = await file.read(max_size + 1)
    if len(contents) > max_size:
        raise ValidationError(f"File exceeds the maximum upload size of {max_size} bytes")

    result = await services.meetings.import_csv(current_user["id"], contents, analyze=analyze)
    return {
        "success": True,
        "message": f"Processed {result['processed']} meetings from CSV",
        **result,
    }


@app.get("/api/meetings/{meeting_id}")
async def get_meeting(
    meeting_id: str,
    current_user: Dict[str, Any] = Depends(get_current_user),
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    return {"success": True, "meeting": services.meetings.get_meeting_detail(current_user["id"], meeting_id)}


@app.delete("/api/meetings/{meeting_id}")
async def delete_meeting(
    meeting_id: str,
    current_user: Dict[str, Any] = Depends(get_current_user),
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    await services.meetings.delete_meeting(current_user["id"], meeting_id)
    return {"success": True, "message": "Meeting deleted"}


@app.get("/api/meetings/{meeting_id}/transcript")
async def fetch_transcript(
    meeting_id: str,
    current_user: Dict[str, Any] = Depends(require_zoom_auth),
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    """Fetch the meeting transcript from Zoom and store it."""
    transcript = await services.meetings.fetch_transcript(current_user["id"], meeting_id)
    if transcript is None:
        return {"success": True, "transcript": None, "message": "No transcript available for this meeting"}
    return {"success": True, "transcript": transcript}


# ---------------------------------------------------------------------------
# Transcript Routes
# ---------------------------------------------------------------------------


@app.get("/api/transcripts/search")
async def search_transcripts(
    q: Optional[str] = Query(None),
    limit: int = Query(20, ge=1),
    offset: int = Query(0, ge=0),
    current_user: Dict[str, Any] = Depends(get_current_user),
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    """Search topics, transcripts and summaries across the user's meetings."""
    result = services.transcripts.search_meetings(current_user["id"], q, limit=limit, offset=offset)
    return {"success": True, **result}


@app.post("/api/meetings/{meeting_id}/transcript/search")
async def search_transcript(
    meeting_id: str,
    req: TranscriptSearchRequest,
    current_user: Dict[str, Any] = Depends(get_current_user),
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    result = services.transcripts.search_in_meeting(current_user["id"], meeting_id, req.query, req.case_sensitive)
    return {"success": True, **result}


@app.post("/api/meetings/{meeting_id}/transcript/extract")
async def extract_from_transcript(
    meeting_id: str,
    req: ExtractRequest,
    current_user: Dict[str, Any] = Depends(get_current_user),
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    """Answer a question from the meeting transcript."""
    result = await services.transcripts.extract(current_user["id"], meeting_id, req.query)
    return {"success": True, **result}


@app.post("/api/meetings/{meeting_id}/personalized-notes")
async def personalized_notes(
    meeting_id: str,
    req: PersonalizedNotesRequest,
    current_user: Dict[str, Any] = Depends(get_current_user),
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    result = await services.transcripts.personalized_notes(current_user["id"], meeting_id, req.role, req.interests)
    return {"success": True, **result}


@app.get("/api/meetings/{meeting_id}/speakers")
async def meeting_speakers(
    meeting_id: str,
    current_user: Dict[str, Any] = Depends(get_current_user),
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    result = await services.transcripts.speakers(current_user["id"], meeting_id)
    return {"success": True, **result}


@app.post("/api/meetings/{meeting_id}/sentiment")
async def meeting_sentiment(
    meeting_id: str,
    current_user: Dict[str, Any] = Depends(get_current_user),
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    result = await services.transcripts.sentiment(current_user["id"], meeting_id)
    return {"success": True, **result}


# ---------------------------------------------------------------------------
# Recording Routes
# ---------------------------------------------------------------------------


@app.post("/api/meetings/{meeting_id}/import-recording")
async def import_recording(
    meeting_id: str,
    req: Optional[ImportRecordingRequest] = None,
    current_user: Dict[str, Any] = Depends(require_zoom_auth),
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    """Download the requested recording files for a meeting."""
    req = req or ImportRecordingRequest()
    result = await services.imports.import_recordings(current_user["id"], meeting_id, req.recording_types)
    return {
        "success": True,
        "imported": result.imported,
        "skipped": result.skipped,
        "errors": result.errors,
        "totalBytes": result.total_bytes,
    }


@app.get("/api/meetings/{meeting_id}/recordings")
async def list_recordings(
    meeting_id: str,
    current_user: Dict[str, Any] = Depends(get_current_user),
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    return {"success": True, "recordings": services.meetings.list_recordings(current_user["id"], meeting_id)}


@app.delete("/api/meetings/{meeting_id}/recordings/{recording_id}")
async def delete_recording(
    meeting_id: str,
    recording_id: str,
    current_user: Dict[str, Any] = Depends(get_current_user),
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    await services.meetings.delete_recording(current_user["id"], meeting_id, recording_id)
    return {"success": True, "message": "Recording deleted"}


@app.post("/api/recordings/cleanup")
async def cleanup_recordings(
    req: Optional[CleanupRecordingsRequest] = None,
    current_user: Dict[str, Any] = Depends(get_current_user),
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    """Delete the caller's recordings older than ``daysToKeep`` days."""
    req = req or CleanupRecordingsRequest()
    result = await services.meetings.cleanup_recordings(current_user["id"], req.days_to_keep)
    return {"success": True, "message": f"Cleaned up {result['deletedCount']} old recordings", **result}


@app.get("/api/recordings/{file_name}")
async def stream_recording(
    file_name: str,
    range_header: Optional[str] = Header(None, alias="Range"),
    current_user: Dict[str, Any] = Depends(get_current_user),
    services: ServiceContainer = Depends(get_services),
):
    """Stream a stored recording, with single-range support for seeking."""
    path = services.meetings.resolve_recording_path(current_user["id"], file_name)
    file_size = await services.storage.file_size(path)
    headers = {"Accept-Ranges": "bytes"}
    media_type = content_type_for(file_name)

    byte_range = parse_range(range_header, file_size)
    if byte_range is None:
        headers["Content-Length"] = str(file_size)
        return StreamingResponse(services.storage.iter_file(path), media_type=media_type, headers=headers)

    start, end = byte_range
    headers["Content-Range"] = f"bytes {start}-{end}/{file_size}"
    headers["Content-Length"] = str(end - start + 1)
    return StreamingResponse(
        services.storage.iter_file(path, start, end),
        status_code=status.HTTP_206_PARTIAL_CONTENT,
        media_type=media_type,
        headers=headers,
    )


# ---------------------------------------------------------------------------
# Analysis, Export and Sharing Routes
# ---------------------------------------------------------------------------


@app.post("/api/meetings/{meeting_id}/analyze")
async def analyze_meeting(
    meeting_id: str,
    current_user: Dict[str, Any] = Depends(get_current_user),
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    """Analyse the meeting transcript and replace its AI-generated tasks."""
    result = await services.analysis.analyze_meeting(current_user["id"], meeting_id)
    return {
        "success": True,
        "analysis": result["analysis"],
        "tasks": result["tasks"],
        "taskErrors": result["task_errors"],
    }


@app.post("/api/meetings/{meeting_id}/export", status_code=status.HTTP_201_CREATED)
async def export_meeting(
    meeting_id: str,
    req: ExportRequest,
    current_user: Dict[str, Any] = Depends(get_current_user),
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    record = await services.exports.export_meeting(current_user["id"], meeting_id, req)
    return {
        "success": True,
        "export": record,
        "fileName": record["file_name"],
        "downloadUrl": record["file_url"],
    }


@app.get("/api/meetings/{meeting_id}/exports/{file_name}")
async def download_export(
    meeting_id: str,
    file_name: str,
    current_user: Dict[str, Any] = Depends(get_current_user),
    services: ServiceContainer = Depends(get_services),
) -> FileResponse:
    path = await services.exports.get_export_file(current_user["id"], meeting_id, file_name)
    return FileResponse(path, media_type=content_type_for(file_name), filename=file_name)


@app.delete("/api/meetings/{meeting_id}/exports/{export_id}")
async def delete_export(
    meeting_id: str,
    export_id: str,
    current_user: Dict[str, Any] = Depends(get_current_user),
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    await services.exports.delete_export(current_user["id"], meeting_id, export_id)
    return {"success": True, "message": "Export deleted"}


@app.post("/api/meetings/{meeting_id}/share")
async def share_meeting(
    meeting_id: str,
    req: ShareRequest,
    current_user: Dict[str, Any] = Depends(get_current_user),
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    """Send the meeting summary by email and/or Slack."""
    results = await services.notifications.notify(
        current_user["id"],
        meeting_id,
        [str(r) for r in req.recipients],
        slack_channel=req.slack_channel,
        include_action_items=req.include_action_items,
    )
    return {"success": True, "message": "Meeting summary shared", "results": results}


# ---------------------------------------------------------------------------
# Task Routes
# ---------------------------------------------------------------------------


@app.get("/api/meetings/{meeting_id}/tasks")
async def list_tasks(
    meeting_id: str,
    current_user: Dict[str, Any] = Depends(get_current_user),
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    return {"success": True, "tasks": services.meetings.list_tasks(current_user["id"], meeting_id)}


@app.post("/api/meetings/{meeting_id}/tasks", status_code=status.HTTP_201_CREATED)
async def create_task(
    meeting_id: str,
    req: CreateTaskRequest,
    current_user: Dict[str, Any] = Depends(get_current_user),
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    task = services.meetings.create_task(current_user["id"], meeting_id, req.model_dump(mode="json"))
    return {"success": True, "task": task}


@app.put("/api/meetings/{meeting_id}/tasks/{task_id}")
async def update_task(
    meeting_id: str,
    task_id: str,
    req: UpdateTaskRequest,
    current_user: Dict[str, Any] = Depends(get_current_user),
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    changes = req.model_dump(mode="json", exclude_unset=True)
    task = services.meetings.update_task(current_user["id"], meeting_id, task_id, changes)
    return {"success": True, "task": task}


@app.delete("/api/meetings/{meeting_id}/tasks/{task_id}")
async def delete_task(
    meeting_id: str,
    task_id: str,
    current_user: Dict[str, Any] = Depends(get_current_user),
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    services.meetings.delete_task(current_user["id"], meeting_id, task_id)
    return {"success": True, "message": "Task deleted"}


@app.post("/api/meetings/{meeting_id}/tasks/remind")
async def remind_tasks(
    meeting_id: str,
    req: Optional[TaskReminderRequest] = None,
    current_user: Dict[str, Any] = Depends(get_current_user),
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    """Email reminders for the meeting's open tasks."""
    req = req or TaskReminderRequest()
    results = await services.notifications.send_task_reminders(current_user["id"], meeting_id, req.task_ids)
    return {"success": True, "message": f"Sent {len(results)} reminders", "results": results}

from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from pydantic.alias_generators import to_camel

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class TaskPriority(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    URGENT = "URGENT"

class TaskStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"

class TaskSource(str, Enum):
    AI = "AI"
    MANUAL = "MANUAL"

class MeetingSource(str, Enum):
    ZOOM = "ZOOM"
    CSV_UPLOAD = "CSV_UPLOAD"

class ExportFormat(str, Enum):
    PDF = "PDF"
    MARKDOWN = "MARKDOWN"
    WORD = "WORD"
    JSON = "JSON"


class RequestModel(BaseModel):
    """Request bodies accept both camelCase and snake_case keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------

class RegisterRequest(RequestModel):
    email: EmailStr
    password: str = Field(..., min_length=8)
    name: Optional[str] = None

class LoginRequest(RequestModel):
    email: EmailStr
    password: str

class RefreshRequest(RequestModel):
    refresh_token: str

class UpdateProfileRequest(RequestModel):
    name: Optional[str] = None
    email: Optional[EmailStr] = None

class ZoomCallbackRequest(RequestModel):
    code: str
    state: str

# ---------------------------------------------------------------------------
# Meetings
# ---------------------------------------------------------------------------

class SyncRequest(RequestModel):
    from_date: Optional[date] = Field(default=None, alias="from")
    to_date: Optional[date] = Field(default=None, alias="to")

class ImportRecordingRequest(RequestModel):
    recording_types: List[str] = Field(default_factory=lambda: ["MP4", "M4A", "TRANSCRIPT"])

    @field_validator("recording_types")
    @classmethod
    def normalise_types(cls, value: List[str]) -> List[str]:
        if not value:
            raise ValueError("recordingTypes must not be empty")
        return [item.upper() for item in value]

class BatchImportRequest(ImportRecordingRequest):
    meeting_ids: Optional[List[str]] = None
    from_date: Optional[date] = None
    to_date: Optional[date] = None
    limit: int = Field(default=10, ge=1, le=50)

class ExportRequest(RequestModel):
    format: ExportFormat
    include_summary: bool = True
    include_transcript: bool = False
    include_action_items: bool = True
    include_speaker_insights: bool = False

    @field_validator("format", mode="before")
    @classmethod
    def upper_format(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value

class ShareRequest(RequestModel):
    recipients: List[EmailStr] = Field(default_factory=list)
    slack_channel: Optional[str] = None
    include_action_items: bool = True

class TranscriptSearchRequest(RequestModel):
    query: Optional[str] = None
    case_sensitive: bool = False

class ExtractRequest(RequestModel):
    query: Optional[str] = None

class PersonalizedNotesRequest(RequestModel):
    role: Optional[str] = None
    interests: List[str] = Field(default_factory=list)

class CleanupRecordingsRequest(RequestModel):
    days_to_keep: int = Field(default=30, ge=1)

class TaskReminderRequest(RequestModel):
    task_ids: Optional[List[str]] = None

class CreateTaskRequest(RequestModel):
    description: str = Field(..., min_length=1)
    owner: Optional[str] = None
    deadline: Optional[date] = None
    priority: TaskPriority = TaskPriority.MEDIUM
    status: TaskStatus = TaskStatus.PENDING
    assigned_to_id: Optional[str] = None

class UpdateTaskRequest(RequestModel):
    description: Optional[str] = Field(default=None, min_length=1)
    owner: Optional[str] = None
    deadline: Optional[date] = None
    priority: Optional[TaskPriority] = None
    status: Optional[TaskStatus] = None
    assigned_to_id: Optional[str] = None

# ---------------------------------------------------------------------------
# LLM analysis payloads
# ---------------------------------------------------------------------------

class ActionItem(BaseModel):
    """An action item as returned by the model, before normalisation."""

    model_config = ConfigDict(extra="ignore")

    task: str
    owner: Optional[str] = None
    deadline: Optional[str] = None
    priority: Optional[str] = None

    @field_validator("owner", "deadline", "priority", mode="before")
    @classmethod
    def blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

class MeetingSummary(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    summary: str
    key_points: List[str] = Field(default_factory=list, alias="keyPoints")
    # Items are validated one by one so a malformed entry does not sink the batch.
    action_items: List[Dict[str, Any]] = Field(default_factory=list, alias="actionItems")
    sentiment: Optional[str] = None
    topics: List[str] = Field(default_factory=list)

class SpeakerInsight(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    name: str
    talk_time: Optional[float] = Field(default=None, alias="talkTime")
    key_contributions: List[str] = Field(default_factory=list, alias="keyContributions")
    sentiment: Optional[str] = None

class EffectivenessReport(BaseModel):
    model_config = ConfigDict(extra="ignore")

    score: float = Field(..., ge=1, le=10)
    recommendations: List[str] = Field(default_factory=list)

class TranscriptAnalysis(BaseModel):
    summary: MeetingSummary
    speaker_insights: List[SpeakerInsight] = Field(default_factory=list)
    effectiveness_score: Optional[float] = None
    recommendations: List[str] = Field(default_factory=list)

class NormalizedTask(BaseModel):
    description: str
    owner: Optional[str] = None
    deadline: Optional[date] = None
    priority: TaskPriority = TaskPriority.MEDIUM

# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------

class ImportResult(BaseModel):
    imported: List[Dict[str, Any]] = Field(default_factory=list)
    skipped: int = 0
    errors: List[str] = Field(default_factory=list)
    total_bytes: int = 0

class SyncResult(BaseModel):
    synced: int = 0
    skipped: int = 0
    errors: List[str] = Field(default_factory=list)

class ZoomConnectionStatus(BaseModel):
    connected: bool
    zoom_email: Optional[str] = None
    zoom_user_id: Optional[str] = None
    token_expired: Optional[bool] = None
    token_expires_at: Optional[datetime] = None

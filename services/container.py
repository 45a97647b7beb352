from dataclasses import dataclass
from typing import Optional

from openai import OpenAI

from services.analysis_service import AnalysisService, TranscriptAnalyzer
from services.auth_service import AuthService
from services.export_service import ExportService
from services.meeting_service import MeetingService
from services.notification_service import EmailSender, NotificationService, SlackClient
from services.recording_import import RecordingImportService
from services.repository import Repository
from services.storage_service import StorageService
from services.transcript_service import TranscriptService
from services.zoom_service import ZoomCredentialService, ZoomService
from utils.config import Settings, get_settings
from utils.supabase_client import get_supabase


@dataclass
class ServiceContainer:
    settings: Settings
    repository: Repository
    storage: StorageService
    zoom: ZoomService
    credentials: ZoomCredentialService
    auth: AuthService
    meetings: MeetingService
    imports: RecordingImportService
    analysis: AnalysisService
    transcripts: TranscriptService
    exports: ExportService
    notifications: NotificationService


def build_services(
    settings: Optional[Settings] = None,
    supabase_client=None,
    openai_client=None,
    zoom_transport=None,
    slack_transport=None,
    pdf_renderer=None,
) -> ServiceContainer:
    """Wire every service from explicit configuration.

    Any collaborator may be passed in, which is how tests substitute fakes.
    """
    settings = settings or get_settings()
    settings.validate_secrets()
    repository = Repository(supabase_client if supabase_client is not None else get_supabase())
    storage = StorageService(settings.storage_dir)

    zoom = ZoomService(settings, transport=zoom_transport)
    credentials = ZoomCredentialService(repository, zoom, refresh_leeway=settings.zoom_token_refresh_leeway)

    if openai_client is None and settings.openai_api_key:
        openai_client = OpenAI(api_key=settings.openai_api_key)
    analyzer = TranscriptAnalyzer(
        openai_client,
        model=settings.openai_model,
        max_tokens=settings.openai_max_tokens,
        temperature=settings.openai_temperature,
    )
    analysis = AnalysisService(analyzer, repository)
    notifications = NotificationService(
        repository,
        EmailSender(settings),
        SlackClient(settings, transport=slack_transport),
        frontend_url=settings.frontend_url,
    )

    return ServiceContainer(
        settings=settings,
        repository=repository,
        storage=storage,
        zoom=zoom,
        credentials=credentials,
        auth=AuthService(repository, settings, zoom, credentials, storage),
        meetings=MeetingService(
            repository,
            zoom,
            credentials,
            storage,
            analysis_service=analysis,
            notification_service=notifications,
            announce_channel=settings.slack_new_meeting_channel,
        ),
        imports=RecordingImportService(repository, zoom, credentials, storage),
        analysis=analysis,
        transcripts=TranscriptService(repository, analyzer),
        exports=ExportService(repository, storage, pdf_renderer=pdf_renderer),
        notifications=notifications,
    )

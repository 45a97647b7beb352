"""
Meeting lifecycle: Zoom sync, transcript fetch, CSV import, detail views,
deletion and manual task management.
"""

import csv
import io
import logging
import time
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from models.data_models import MeetingSource, SyncResult, TaskSource
from services.repository import parse_timestamp
from utils.errors import AppError, InvalidState, NotFoundError, ValidationError, ZoomAuthRequired

logger = logging.getLogger(__name__)

CSV_REQUIRED_COLUMNS = ("topic", "date", "transcript")
DEFAULT_RETENTION_DAYS = 30


def _end_time(start_time: Optional[str], duration: Optional[int]) -> Optional[str]:
    if not start_time or not duration:
        return None
    try:
        start = parse_timestamp(start_time)
    except ValueError:
        return None
    return (start + timedelta(minutes=int(duration))).isoformat()


def _parse_csv_datetime(value: str) -> datetime:
    parsed = parse_timestamp(value)
    if parsed is None:
        raise ValueError("empty date")
    return parsed


def transcript_fields(transcript: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Columns derived from a Zoom transcript payload."""
    if not transcript:
        return {}
    return {
        "transcript": transcript,
        "transcript_text": transcript.get("transcript_text") or "",
        "speakers": transcript.get("speakers"),
    }


class MeetingService:

    def __init__(
        self,
        repository,
        zoom_service,
        credential_service,
        storage,
        analysis_service=None,
        notification_service=None,
        announce_channel: Optional[str] = None,
    ):
        self.repository = repository
        self.zoom_service = zoom_service
        self.credential_service = credential_service
        self.storage = storage
        self.analysis_service = analysis_service
        self.notification_service = notification_service
        self.announce_channel = announce_channel

    # -- Zoom sync -----------------------------------------------------------

    async def sync_meetings(self, user_id: str, from_date: Optional[date] = None, to_date: Optional[date] = None) -> SyncResult:
        access_token = await self.credential_service.get_valid_access_token(user_id)
        result = SyncResult()
        next_page_token = None

        while True:
            try:
                page = await self.zoom_service.list_meetings(
                    access_token, from_date, to_date, page_size=300, next_page_token=next_page_token
                )
            except ZoomAuthRequired:
                raise
            except AppError as e:
                result.errors.append(f"Failed to fetch meetings page: {e.message}")
                break

            for zoom_meeting in page["meetings"]:
                try:
                    created = await self._sync_one(user_id, zoom_meeting, access_token)
                except ZoomAuthRequired:
                    raise
                except AppError as e:
                    result.errors.append(f"Failed to sync meeting {zoom_meeting.get('id')}: {e.message}")
                    continue
                if created:
                    result.synced += 1
                else:
                    result.skipped += 1

            next_page_token = page["next_page_token"]
            if not next_page_token:
                break

        logger.info(f"Synced {result.synced} meetings for user {user_id} ({result.skipped} already present)")
        return result

    async def _sync_one(self, user_id: str, zoom_meeting: Dict[str, Any], access_token: str) -> bool:
        zoom_meeting_id = str(zoom_meeting["id"])
        if self.repository.get_meeting_by_zoom_id(zoom_meeting_id):
            return False

        recordings = None
        try:
            recordings = await self.zoom_service.get_meeting_recordings(zoom_meeting_id, access_token)
        except NotFoundError:
            logger.debug(f"No recordings for Zoom meeting {zoom_meeting_id}")
        transcript = await self.zoom_service.get_meeting_transcript(zoom_meeting_id, access_token)

        files = (recordings or {}).get("recording_files") or []
        data = {
            "user_id": user_id,
            "zoom_meeting_id": zoom_meeting_id,
            "uuid": zoom_meeting.get("uuid"),
            "topic": zoom_meeting.get("topic") or "Untitled Meeting",
            "start_time": zoom_meeting.get("start_time"),
            "end_time": _end_time(zoom_meeting.get("start_time"), zoom_meeting.get("duration")),
            "duration": zoom_meeting.get("duration"),
            "recording_url": files[0].get("play_url") if files else None,
            "source": MeetingSource.ZOOM.value,
            **transcript_fields(transcript),
        }
        # The unique zoom_meeting_id makes a concurrent sync a no-op here.
        meeting = self.repository.insert_meeting_if_absent(data)
        if meeting is None:
            return False
        await self._announce(meeting)
        return True

    async def _announce(self, meeting: Dict[str, Any]) -> None:
        if not (self.notification_service and self.announce_channel):
            return
        try:
            await self.notification_service.announce_new_meeting(meeting, self.announce_channel)
        except AppError as e:
            # Losing an announcement must not fail the sync.
            logger.warning(f"New meeting announcement for {meeting['id']} failed: {e.message}")

    async def fetch_transcript(self, user_id: str, meeting_id: str) -> Optional[Dict[str, Any]]:
        meeting = self.get_owned_meeting(user_id, meeting_id)
        if not meeting.get("zoom_meeting_id") or meeting.get("source") == MeetingSource.CSV_UPLOAD.value:
            raise InvalidState("Meeting is not linked to a Zoom meeting")

        access_token = await self.credential_service.get_valid_access_token(user_id)
        transcript = await self.zoom_service.get_meeting_transcript(meeting["zoom_meeting_id"], access_token)
        if transcript:
            self.repository.update_meeting(meeting_id, transcript_fields(transcript))
        return transcript

    # -- CSV import ----------------------------------------------------------

    async def import_csv(self, user_id: str, content: bytes, analyze: bool = False) -> Dict[str, Any]:
        try:
            text = content.decode("utf-8-sig")
        except UnicodeDecodeError:
            raise ValidationError("CSV file must be UTF-8 encoded")

        reader = csv.DictReader(io.StringIO(text))
        headers = [h.strip().lower() for h in (reader.fieldnames or [])]
        if not headers:
            raise ValidationError("CSV file is empty or invalid")
        missing = [column for column in CSV_REQUIRED_COLUMNS if column not in headers]
        if missing:
            raise ValidationError(
                f"Missing required columns: {', '.join(missing)}. Required: {', '.join(CSV_REQUIRED_COLUMNS)}"
            )
        reader.fieldnames = headers

        meetings: List[Dict[str, Any]] = []
        errors: List[str] = []
        batch_ts = int(time.time() * 1000)
        # Row 1 is the header.
        for row_number, row in enumerate(reader, start=2):
            row = {key: (value or "").strip() for key, value in row.items() if key}
            if not row.get("topic") or not row.get("date") or not row.get("transcript"):
                errors.append(f"Row {row_number}: Missing required data")
                continue
            try:
                meeting = self._create_csv_meeting(user_id, row, f"csv_{batch_ts}_{row_number}")
            except (ValueError, AppError) as e:
                message = e.message if isinstance(e, AppError) else str(e)
                errors.append(f"Row {row_number}: {message}")
                continue
            if meeting is None:
                errors.append(f"Row {row_number}: Meeting already exists")
                continue
            meetings.append(meeting)

            if analyze and self.analysis_service is not None:
                try:
                    await self.analysis_service.analyze_and_store(meeting)
                except AppError as e:
                    errors.append(f"Row {row_number}: analysis failed: {e.message}")

        logger.info(f"CSV import for user {user_id}: {len(meetings)} meetings, {len(errors)} errors")
        return {
            "processed": len(meetings),
            "errors": errors,
            "meetings": [
                {"id": m["id"], "topic": m["topic"], "date": m["start_time"]} for m in meetings
            ],
        }

    def _create_csv_meeting(self, user_id: str, row: Dict[str, str], fallback_id: str) -> Optional[Dict[str, Any]]:
        try:
            start = _parse_csv_datetime(row["date"])
        except ValueError:
            raise ValueError(f"Invalid date {row['date']!r}")
        end = start
        if row.get("end_date"):
            try:
                end = _parse_csv_datetime(row["end_date"])
            except ValueError:
                raise ValueError(f"Invalid end_date {row['end_date']!r}")
        duration = None
        if row.get("duration"):
            try:
                duration = int(row["duration"])
            except ValueError:
                raise ValueError(f"Invalid duration {row['duration']!r}")

        return self.repository.insert_meeting_if_absent({
            "user_id": user_id,
            "zoom_meeting_id": row.get("meeting_id") or fallback_id,
            "topic": row["topic"],
            "start_time": start.isoformat(),
            "end_time": end.isoformat(),
            "duration": duration,
            "transcript_text": row["transcript"],
            "source": MeetingSource.CSV_UPLOAD.value,
        })

    # -- Reads / deletes -----------------------------------------------------

    def get_owned_meeting(self, user_id: str, meeting_id: str) -> Dict[str, Any]:
        meeting = self.repository.get_meeting(meeting_id, user_id)
        if not meeting:
            raise NotFoundError("Meeting not found")
        return meeting

    def list_meetings(self, user_id: str, page: int, limit: int, search=None, from_date=None, to_date=None) -> Dict[str, Any]:
        rows, total = self.repository.list_meetings(
            user_id,
            page=page,
            limit=limit,
            search=search,
            from_date=from_date.isoformat() if from_date else None,
            to_date=to_date.isoformat() if to_date else None,
        )
        for row in rows:
            row.pop("transcript", None)
        return {
            "meetings": rows,
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": (total + limit - 1) // limit if limit else 0,
            },
        }

    def get_meeting_detail(self, user_id: str, meeting_id: str) -> Dict[str, Any]:
        meeting = self.get_owned_meeting(user_id, meeting_id)
        meeting["tasks"] = self.repository.list_tasks(meeting_id)
        meeting["exports"] = self.repository.list_exports(meeting_id)
        meeting["recordings"] = self.repository.list_recordings(meeting_id)
        return meeting

    async def delete_meeting(self, user_id: str, meeting_id: str) -> None:
        self.get_owned_meeting(user_id, meeting_id)
        recordings = self.repository.list_recordings(meeting_id)
        exports = self.repository.list_exports(meeting_id)
        self.repository.delete_meeting(meeting_id)
        # Rows are gone first; a leftover file is an orphan, never a dangling row.
        for recording in recordings:
            await self.storage.delete_recording(recording.get("file_name"))
        for export in exports:
            await self.storage.delete_export(export.get("file_name"))

    def list_recordings(self, user_id: str, meeting_id: str) -> List[Dict[str, Any]]:
        self.get_owned_meeting(user_id, meeting_id)
        return self.repository.list_recordings(meeting_id)

    async def delete_recording(self, user_id: str, meeting_id: str, recording_id: str) -> None:
        meeting = self.get_owned_meeting(user_id, meeting_id)
        recording = self.repository.get_recording(recording_id, meeting_id)
        if not recording:
            raise NotFoundError("Recording not found")
        self.repository.delete_recording(recording_id)
        if meeting.get("recording_url") and meeting["recording_url"] == recording.get("file_url"):
            self.repository.update_meeting(meeting_id, {"recording_url": None})
        await self.storage.delete_recording(recording.get("file_name"))

    async def cleanup_recordings(self, user_id: str, days_to_keep: int = DEFAULT_RETENTION_DAYS) -> Dict[str, Any]:
        """Delete the user's recordings imported more than ``days_to_keep`` days ago.

        Rows go first so no row is left pointing at a deleted file.
        """
        if days_to_keep < 1:
            raise ValidationError("daysToKeep must be at least 1")
        cutoff = datetime.now(timezone.utc) - timedelta(days=days_to_keep)
        meeting_ids = self.repository.list_meeting_ids(user_id)
        expired = self.repository.list_recordings_for_meetings(meeting_ids, created_before=cutoff.isoformat())
        if not expired:
            return {"deletedCount": 0, "freedBytes": 0}

        self.repository.delete_recordings([recording["id"] for recording in expired])
        expired_urls = {recording.get("file_url") for recording in expired}
        for meeting_id in {recording["meeting_id"] for recording in expired}:
            meeting = self.repository.get_meeting(meeting_id)
            if meeting and meeting.get("recording_url") in expired_urls:
                self.repository.update_meeting(meeting_id, {"recording_url": None})
        for recording in expired:
            await self.storage.delete_recording(recording.get("file_name"))

        freed = sum(recording.get("file_size") or 0 for recording in expired)
        logger.info(f"Cleaned up {len(expired)} recordings older than {days_to_keep} days for user {user_id}")
        return {"deletedCount": len(expired), "freedBytes": freed}

    def resolve_recording_path(self, user_id: str, file_name: str) -> str:
        path = self.storage.recording_path(file_name)
        recording = self.repository.get_recording_by_file_name(file_name)
        if not recording or not self.repository.get_meeting(recording["meeting_id"], user_id):
            raise NotFoundError("Recording not found")
        return path

    # -- Tasks ---------------------------------------------------------------

    def list_tasks(self, user_id: str, meeting_id: str) -> List[Dict[str, Any]]:
        self.get_owned_meeting(user_id, meeting_id)
        return self.repository.list_tasks(meeting_id)

    def create_task(self, user_id: str, meeting_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        self.get_owned_meeting(user_id, meeting_id)
        return self.repository.create_task({
            **data,
            "meeting_id": meeting_id,
            "source": TaskSource.MANUAL.value,
        })

    def update_task(self, user_id: str, meeting_id: str, task_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        self.get_owned_meeting(user_id, meeting_id)
        if not self.repository.get_task(task_id, meeting_id):
            raise NotFoundError("Task not found")
        if not data:
            raise ValidationError("No fields to update")
        return self.repository.update_task(task_id, data)

    def delete_task(self, user_id: str, meeting_id: str, task_id: str) -> None:
        self.get_owned_meeting(user_id, meeting_id)
        if not self.repository.get_task(task_id, meeting_id):
            raise NotFoundError("Task not found")
        self.repository.delete_task(task_id)

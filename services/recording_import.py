"""
Recording import pipeline.

Pulls recording files for a stored meeting from Zoom, writes them to local
storage and records them in the ``recordings`` table. A file is always fully
written before its row is inserted, so a row never points at a missing or
partial file. Re-importing a meeting is idempotent: files whose
(meeting, download URL) pair is already recorded are skipped without being
downloaded again.
"""

import logging
from datetime import date
from typing import Any, Dict, Iterable, List, Optional

from models.data_models import ImportResult
from utils.errors import AppError, InvalidState, NotFoundError, ZoomAuthRequired

logger = logging.getLogger(__name__)

MAX_BATCH_LIMIT = 50


class RecordingImportService:

    def __init__(self, repository, zoom_service, credential_service, storage):
        self.repository = repository
        self.zoom_service = zoom_service
        self.credential_service = credential_service
        self.storage = storage

    async def import_recordings(self, user_id: str, meeting_id: str, recording_types: Iterable[str]) -> ImportResult:
        meeting = self.repository.get_meeting(meeting_id, user_id)
        if not meeting:
            raise NotFoundError("Meeting not found")
        if not meeting.get("zoom_meeting_id") or meeting.get("source") == "CSV_UPLOAD":
            raise InvalidState("Meeting is not linked to a Zoom meeting")

        access_token = await self.credential_service.get_valid_access_token(user_id)
        recordings = await self.zoom_service.get_meeting_recordings(meeting["zoom_meeting_id"], access_token)
        files = (recordings or {}).get("recording_files") or []
        if not files:
            raise NotFoundError("No recordings found for this meeting")

        wanted = {t.upper() for t in recording_types}
        result = ImportResult()
        for file_data in files:
            file_type = (file_data.get("file_type") or "").upper()
            if file_type not in wanted:
                continue
            try:
                await self._import_file(user_id, meeting, file_data, result, access_token)
            except ZoomAuthRequired:
                # Nothing further can succeed without a working token.
                raise
            except AppError as e:
                logger.warning(f"Import of {file_type} for meeting {meeting_id} failed: {e.message}")
                result.errors.append(f"{file_type} {file_data.get('id', '')}: {e.message}".strip())
            except Exception as e:
                logger.exception(f"Unexpected import failure for meeting {meeting_id}")
                result.errors.append(f"{file_type} {file_data.get('id', '')}: {e.__class__.__name__}".strip())

        logger.info(
            f"Imported {len(result.imported)} recordings for meeting {meeting_id} "
            f"({result.skipped} skipped, {len(result.errors)} errors, {result.total_bytes} bytes)"
        )
        return result

    async def _import_file(
        self,
        user_id: str,
        meeting: Dict[str, Any],
        file_data: Dict[str, Any],
        result: ImportResult,
        access_token: str,
    ) -> None:
        meeting_id = meeting["id"]
        file_type = (file_data.get("file_type") or "").upper()
        download_url = file_data.get("download_url")
        if not download_url:
            result.errors.append(f"{file_type} {file_data.get('id', '')}: missing download URL".strip())
            return
        if file_data.get("status") and file_data["status"] != "completed":
            result.errors.append(f"{file_type} {file_data.get('id', '')}: recording is still processing".strip())
            return
        if self.repository.recording_exists(meeting_id, download_url):
            result.skipped += 1
            return

        # The token may have aged past expiry during earlier downloads.
        access_token = await self.credential_service.get_valid_access_token(user_id)
        file_name, file_size = await self.storage.save_recording_stream(
            meeting_id, file_type, self.zoom_service.stream_recording_file(download_url, access_token)
        )
        file_url = f"/api/recordings/{file_name}"

        row = self.repository.insert_recording_if_absent({
            "meeting_id": meeting_id,
            "zoom_file_id": file_data.get("id"),
            "file_type": file_type,
            "file_size": file_size,
            "file_name": file_name,
            "file_url": file_url,
            "download_url": download_url,
            "play_url": file_data.get("play_url"),
            "recording_type": file_data.get("recording_type"),
            "recording_start": file_data.get("recording_start"),
            "recording_end": file_data.get("recording_end"),
        })
        if row is None:
            # A concurrent import recorded this file first.
            await self.storage.delete_recording(file_name)
            result.skipped += 1
            return

        result.imported.append(row)
        result.total_bytes += file_size
        if file_type == "MP4":
            self.repository.set_recording_url_if_empty(meeting_id, file_url)

    async def batch_import(
        self,
        user_id: str,
        recording_types: Iterable[str],
        meeting_ids: Optional[List[str]] = None,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None,
        limit: int = 10,
    ) -> Dict[str, Any]:
        """Run the import pipeline over several meetings.

        Meetings come from ``meeting_ids`` when given, otherwise from the
        user's stored Zoom meetings in the date range, newest first.
        """
        limit = max(1, min(limit, MAX_BATCH_LIMIT))
        recording_types = list(recording_types)
        if meeting_ids:
            targets = list(dict.fromkeys(meeting_ids))[:limit]
        else:
            rows, _ = self.repository.list_meetings(
                user_id,
                page=1,
                limit=limit,
                from_date=from_date.isoformat() if from_date else None,
                to_date=to_date.isoformat() if to_date else None,
            )
            targets = [row["id"] for row in rows if row.get("source") != "CSV_UPLOAD"]

        results = []
        total_bytes = 0
        for meeting_id in targets:
            try:
                outcome = await self.import_recordings(user_id, meeting_id, recording_types)
            except ZoomAuthRequired:
                raise
            except AppError as e:
                results.append({"meetingId": meeting_id, "success": False, "error": e.message})
                continue
            except Exception:
                logger.exception(f"Batch import of meeting {meeting_id} failed")
                results.append({"meetingId": meeting_id, "success": False, "error": "Import failed"})
                continue
            total_bytes += outcome.total_bytes
            results.append({
                "meetingId": meeting_id,
                "success": True,
                "imported": len(outcome.imported),
                "skipped": outcome.skipped,
                "errors": outcome.errors,
                "totalBytes": outcome.total_bytes,
            })

        succeeded = sum(1 for r in results if r["success"])
        return {
            "results": results,
            "processed": len(results),
            "succeeded": succeeded,
            "failed": len(results) - succeeded,
            "totalBytes": total_bytes,
        }

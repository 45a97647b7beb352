"""
Tests for the recording import pipeline.
"""
import asyncio
import os
from datetime import datetime, timedelta, timezone

import pytest
from postgrest.exceptions import APIError

from utils.errors import InvalidState, NotFoundError, ReauthRequired, StorageError

ALL_TYPES = ["MP4", "M4A", "TRANSCRIPT"]


def _stored_files(services):
    return sorted(os.listdir(services.storage.recordings_dir))


@pytest.mark.services
async def test_import_writes_files_then_rows(services, fake_zoom, zoom_user, zoom_meeting):
    fake_zoom.add_recording_file("111", "MP4", b"video" * 10)
    fake_zoom.add_recording_file("111", "TRANSCRIPT", b"WEBVTT")

    result = await services.imports.import_recordings(zoom_user["id"], zoom_meeting["id"], ALL_TYPES)

    assert len(result.imported) == 2
    assert result.skipped == 0
    assert result.errors == []
    assert result.total_bytes == 56
    for row in result.imported:
        path = services.storage.recording_path(row["file_name"])
        assert os.path.exists(path)
        assert row["file_url"] == f"/api/recordings/{row['file_name']}"
    assert len(_stored_files(services)) == 2

    mp4 = next(r for r in result.imported if r["file_type"] == "MP4")
    meeting = services.repository.get_meeting(zoom_meeting["id"])
    assert meeting["recording_url"] == mp4["file_url"]


@pytest.mark.services
async def test_reimport_is_idempotent(services, fake_zoom, zoom_user, zoom_meeting):
    fake_zoom.add_recording_file("111", "MP4", b"video")
    fake_zoom.add_recording_file("111", "M4A", b"audio")

    await services.imports.import_recordings(zoom_user["id"], zoom_meeting["id"], ALL_TYPES)
    downloads = len(fake_zoom.downloads)
    second = await services.imports.import_recordings(zoom_user["id"], zoom_meeting["id"], ALL_TYPES)

    assert second.imported == []
    assert second.skipped == 2
    assert len(fake_zoom.downloads) == downloads
    assert len(services.repository.list_recordings(zoom_meeting["id"])) == 2


@pytest.mark.services
async def test_unrequested_types_are_not_downloaded(services, fake_zoom, zoom_user, zoom_meeting):
    fake_zoom.add_recording_file("111", "MP4", b"video")
    fake_zoom.add_recording_file("111", "CHAT", b"hello")

    result = await services.imports.import_recordings(zoom_user["id"], zoom_meeting["id"], ["M4A"])

    assert result.imported == []
    assert result.skipped == 0
    assert result.errors == []
    assert fake_zoom.downloads == []


@pytest.mark.services
async def test_failed_download_does_not_block_other_files(services, fake_zoom, zoom_user, zoom_meeting):
    bad_url = fake_zoom.add_recording_file("111", "MP4", b"video")
    fake_zoom.add_recording_file("111", "M4A", b"audio")
    fake_zoom.failing_files[bad_url] = 500

    result = await services.imports.import_recordings(zoom_user["id"], zoom_meeting["id"], ALL_TYPES)

    assert [r["file_type"] for r in result.imported] == ["M4A"]
    assert len(result.errors) == 1
    assert result.errors[0].startswith("MP4")
    assert services.repository.get_meeting(zoom_meeting["id"]).get("recording_url") is None


@pytest.mark.services
async def test_processing_file_is_reported_without_download(services, fake_zoom, zoom_user, zoom_meeting):
    fake_zoom.add_recording_file("111", "MP4", b"video", status="processing")

    result = await services.imports.import_recordings(zoom_user["id"], zoom_meeting["id"], ALL_TYPES)

    assert result.imported == []
    assert "still processing" in result.errors[0]
    assert fake_zoom.downloads == []


@pytest.mark.services
async def test_storage_failure_leaves_no_row(services, fake_zoom, zoom_user, zoom_meeting, monkeypatch):
    fake_zoom.add_recording_file("111", "MP4", b"video")

    async def broken_save(*args, **kwargs):
        raise StorageError()

    monkeypatch.setattr(services.storage, "save_recording_stream", broken_save)
    result = await services.imports.import_recordings(zoom_user["id"], zoom_meeting["id"], ALL_TYPES)

    assert result.imported == []
    assert result.errors == ["MP4 111-mp4-0: File storage failed"]
    assert services.repository.list_recordings(zoom_meeting["id"]) == []


@pytest.mark.services
async def test_concurrent_imports_store_each_file_once(services, fake_zoom, zoom_user, zoom_meeting):
    fake_zoom.add_recording_file("111", "MP4", b"video")
    fake_zoom.add_recording_file("111", "M4A", b"audio")

    first, second = await asyncio.gather(
        services.imports.import_recordings(zoom_user["id"], zoom_meeting["id"], ALL_TYPES),
        services.imports.import_recordings(zoom_user["id"], zoom_meeting["id"], ALL_TYPES),
    )

    rows = services.repository.list_recordings(zoom_meeting["id"])
    assert len(rows) == 2
    assert len(first.imported) + len(second.imported) == 2
    assert first.skipped + second.skipped == 2
    # Every stored row has its file and no orphaned files remain.
    assert _stored_files(services) == sorted(r["file_name"] for r in rows)


@pytest.mark.services
async def test_csv_meeting_cannot_import(services, zoom_user):
    meeting = services.repository.insert_meeting_if_absent({
        "user_id": zoom_user["id"],
        "zoom_meeting_id": "csv_1_2",
        "topic": "Imported",
        "source": "CSV_UPLOAD",
    })

    with pytest.raises(InvalidState):
        await services.imports.import_recordings(zoom_user["id"], meeting["id"], ALL_TYPES)


@pytest.mark.services
async def test_meeting_without_recordings(services, fake_zoom, zoom_user, zoom_meeting):
    with pytest.raises(NotFoundError):
        await services.imports.import_recordings(zoom_user["id"], zoom_meeting["id"], ALL_TYPES)

    fake_zoom.recordings["111"] = []
    with pytest.raises(NotFoundError):
        await services.imports.import_recordings(zoom_user["id"], zoom_meeting["id"], ALL_TYPES)


@pytest.mark.services
async def test_other_users_meeting_is_not_found(services, fake_zoom, zoom_meeting):
    other = services.auth.register("other@example.com", "password123")["user"]
    fake_zoom.add_recording_file("111", "MP4", b"video")

    with pytest.raises(NotFoundError):
        await services.imports.import_recordings(other["id"], zoom_meeting["id"], ALL_TYPES)
    assert fake_zoom.downloads == []


@pytest.mark.services
async def test_expired_token_is_refreshed_before_download(services, fake_zoom, zoom_user, zoom_meeting):
    fake_zoom.add_recording_file("111", "MP4", b"video")
    services.repository.update_user(zoom_user["id"], {
        "token_expires_at": (datetime.now(timezone.utc) - timedelta(minutes=1)).isoformat(),
    })

    result = await services.imports.import_recordings(zoom_user["id"], zoom_meeting["id"], ALL_TYPES)

    assert len(result.imported) == 1
    assert fake_zoom.refresh_calls == 1


@pytest.mark.services
async def test_batch_import_reports_per_meeting(services, fake_zoom, zoom_user, zoom_meeting):
    empty = services.repository.insert_meeting_if_absent({
        "user_id": zoom_user["id"],
        "zoom_meeting_id": "333",
        "topic": "No Recording",
        "start_time": "2024-02-01T10:00:00+00:00",
        "source": "ZOOM",
    })
    fake_zoom.add_recording_file("111", "MP4", b"video")

    result = await services.imports.batch_import(zoom_user["id"], ALL_TYPES, meeting_ids=[zoom_meeting["id"], empty["id"]])

    assert result["processed"] == 2
    assert result["succeeded"] == 1
    assert result["failed"] == 1
    assert result["totalBytes"] == 5
    ok, failed = result["results"]
    assert ok == {
        "meetingId": zoom_meeting["id"],
        "success": True,
        "imported": 1,
        "skipped": 0,
        "errors": [],
        "totalBytes": 5,
    }
    assert failed["meetingId"] == empty["id"]
    assert failed["success"] is False


@pytest.mark.services
async def test_batch_import_defaults_to_recent_zoom_meetings(services, fake_zoom, zoom_user, zoom_meeting):
    services.repository.insert_meeting_if_absent({
        "user_id": zoom_user["id"],
        "zoom_meeting_id": "csv_1_2",
        "topic": "From CSV",
        "start_time": "2024-03-05T10:00:00+00:00",
        "source": "CSV_UPLOAD",
    })
    fake_zoom.add_recording_file("111", "M4A", b"audio")

    result = await services.imports.batch_import(zoom_user["id"], ["M4A"])

    assert [r["meetingId"] for r in result["results"]] == [zoom_meeting["id"]]


@pytest.mark.services
async def test_batch_import_stops_on_revoked_authorization(services, fake_zoom, zoom_user, zoom_meeting):
    fake_zoom.add_recording_file("111", "MP4", b"video")
    fake_zoom.valid_access_tokens.clear()

    with pytest.raises(ReauthRequired):
        await services.imports.batch_import(zoom_user["id"], ALL_TYPES, meeting_ids=[zoom_meeting["id"]])


@pytest.mark.services
async def test_batch_import_treats_malformed_id_as_missing(services, fake_zoom, zoom_user, zoom_meeting):
    fake_zoom.add_recording_file("111", "MP4", b"video")

    result = await services.imports.batch_import(zoom_user["id"], ALL_TYPES, meeting_ids=["not-a-uuid", zoom_meeting["id"]])

    assert result["succeeded"] == 1
    assert result["results"][0] == {"meetingId": "not-a-uuid", "success": False, "error": "Meeting not found"}


@pytest.mark.services
async def test_batch_import_survives_unexpected_errors(services, fake_zoom, zoom_user, zoom_meeting, monkeypatch):
    fake_zoom.add_recording_file("111", "MP4", b"video")
    broken_id = "00000000-0000-4000-8000-000000000000"
    get_meeting = services.repository.get_meeting

    def flaky_get_meeting(meeting_id, user_id=None):
        if meeting_id == broken_id:
            raise APIError({"code": "XX000", "message": "internal error", "details": None, "hint": None})
        return get_meeting(meeting_id, user_id)

    monkeypatch.setattr(services.repository, "get_meeting", flaky_get_meeting)
    result = await services.imports.batch_import(zoom_user["id"], ALL_TYPES, meeting_ids=[broken_id, zoom_meeting["id"]])

    assert result["processed"] == 2
    assert result["succeeded"] == 1
    assert result["results"][0] == {"meetingId": broken_id, "success": False, "error": "Import failed"}


@pytest.mark.services
async def test_large_download_is_written_in_chunks(services, fake_zoom, zoom_user, zoom_meeting):
    content = os.urandom(300 * 1024)
    fake_zoom.add_recording_file("111", "MP4", content)

    result = await services.imports.import_recordings(zoom_user["id"], zoom_meeting["id"], ["MP4"])

    row = result.imported[0]
    assert row["file_size"] == len(content)
    assert await services.storage.read_file(services.storage.recording_path(row["file_name"])) == content
    assert _stored_files(services) == [row["file_name"]]

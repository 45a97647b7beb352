"""
End-to-end flow: connect Zoom, sync, import, analyze, export, share.
"""
import smtplib
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient


@pytest.mark.integration
def test_complete_meeting_workflow(client: TestClient, fake_zoom, services, slack_messages, monkeypatch):
    """Test the full journey from sign-up to a shared summary."""
    monkeypatch.setattr(smtplib, "SMTP", MagicMock())

    # Step 1: register and connect Zoom
    session = client.post(
        "/api/auth/register",
        json={"email": "owner@example.com", "password": "long-password", "name": "Owner"},
    ).json()
    headers = {"Authorization": f"Bearer {session['tokens']['accessToken']}"}
    user_id = session["user"]["id"]

    state = client.get("/api/auth/zoom", headers=headers).json()["state"]
    response = client.post("/api/auth/zoom/callback", json={"code": "good-code", "state": state})
    assert response.status_code == 200

    # Step 2: Zoom has one recorded meeting with a transcript
    fake_zoom.add_meeting("1001", topic="Quarterly Planning", start_time="2024-03-10T14:00:00Z", duration=60)
    fake_zoom.add_recording_file("1001", "MP4", b"v" * 2048)
    fake_zoom.add_recording_file("1001", "TRANSCRIPT", b"WEBVTT\n\n00:00.000 --> 00:01.000\nHello")
    fake_zoom.add_transcript("1001", "Dana: We launch in June.\nLee: Copy is late.", speakers=[{"name": "Dana"}, {"name": "Lee"}])

    response = client.post("/api/meetings/sync", headers=headers)
    assert response.json()["synced"] == 1

    meetings = client.get("/api/meetings", headers=headers).json()["meetings"]
    assert len(meetings) == 1
    meeting_id = meetings[0]["id"]
    assert meetings[0]["transcript_text"].startswith("Dana:")

    # Step 3: import recordings and stream part of the video
    response = client.post(f"/api/meetings/{meeting_id}/import-recording", json={}, headers=headers)
    imported = response.json()["imported"]
    assert sorted(r["file_type"] for r in imported) == ["MP4", "TRANSCRIPT"]

    video = next(r for r in imported if r["file_type"] == "MP4")
    response = client.get(video["file_url"], headers={**headers, "Range": "bytes=0-1023"})
    assert response.status_code == 206
    assert len(response.content) == 1024

    # Step 4: analyze
    response = client.post(f"/api/meetings/{meeting_id}/analyze", headers=headers)
    assert response.status_code == 200
    assert len(response.json()["analysis"]["speaker_insights"]) == 2
    assert len(response.json()["tasks"]) == 2

    # Step 5: export
    for export_format in ("PDF", "WORD", "MARKDOWN", "JSON"):
        response = client.post(f"/api/meetings/{meeting_id}/export", json={"format": export_format}, headers=headers)
        assert response.status_code == 201
        download = client.get(response.json()["downloadUrl"], headers=headers)
        assert download.status_code == 200
        assert download.content

    detail = client.get(f"/api/meetings/{meeting_id}", headers=headers).json()["meeting"]
    assert len(detail["exports"]) == 4
    assert len(detail["recordings"]) == 2
    # Sync already pointed the meeting at the Zoom player, so the import left it alone.
    assert detail["recording_url"] == "https://zoom.us/rec/play/1001-mp4-0"

    # Step 6: share
    response = client.post(
        f"/api/meetings/{meeting_id}/share",
        json={"recipients": ["team@example.com"], "slackChannel": "#planning"},
        headers=headers,
    )
    assert response.status_code == 200
    assert "Quarterly Planning" in slack_messages[0]["text"]

    # Step 7: a later import after the token aged out refreshes once and skips existing files
    services.repository.update_user(user_id, {
        "token_expires_at": (datetime.now(timezone.utc) - timedelta(minutes=1)).isoformat(),
    })
    response = client.post(f"/api/meetings/{meeting_id}/import-recording", json={}, headers=headers)
    assert response.json()["imported"] == []
    assert response.json()["skipped"] == 2
    assert fake_zoom.refresh_calls == 1

    # Step 8: deleting the account removes everything
    assert client.delete("/api/auth/account", headers=headers).status_code == 200
    assert services.repository.get_meeting(meeting_id) is None


@pytest.mark.integration
def test_csv_upload_then_analyze_and_export(client: TestClient, zoom_user, auth_headers):
    content = b"topic,date,transcript,duration\nCustomer Call,2024-03-12T16:00:00Z,Customer asked for SSO.,30\n"

    response = client.post(
        "/api/meetings/upload-csv",
        files={"file": ("calls.csv", content, "text/csv")},
        data={"analyze": "true"},
        headers=auth_headers,
    )
    assert response.status_code == 200
    meeting_id = response.json()["meetings"][0]["id"]

    tasks = client.get(f"/api/meetings/{meeting_id}/tasks", headers=auth_headers).json()["tasks"]
    assert len(tasks) == 2

    response = client.post(
        f"/api/meetings/{meeting_id}/export",
        json={"format": "JSON", "includeTranscript": True},
        headers=auth_headers,
    )
    payload = client.get(response.json()["downloadUrl"], headers=auth_headers).json()
    assert payload["transcript"] == "Customer asked for SSO."
    assert len(payload["action_items"]) == 2

    # CSV meetings have no Zoom recordings to import.
    response = client.post(f"/api/meetings/{meeting_id}/import-recording", json={}, headers=auth_headers)
    assert response.status_code == 400
    assert response.json()["code"] == "INVALID_STATE"

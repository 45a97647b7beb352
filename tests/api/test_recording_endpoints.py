"""
Test recording listing, streaming and deletion.
"""
import pytest
from fastapi.testclient import TestClient

CONTENT = bytes(range(256)) * 4


@pytest.fixture
def recording(client: TestClient, zoom_meeting, auth_headers, fake_zoom):
    fake_zoom.add_recording_file("111", "MP4", CONTENT)
    response = client.post(
        f"/api/meetings/{zoom_meeting['id']}/import-recording",
        json={"recordingTypes": ["MP4"]},
        headers=auth_headers,
    )
    return response.json()["imported"][0]


@pytest.mark.api
def test_list_recordings(client: TestClient, zoom_meeting, auth_headers, recording):
    response = client.get(f"/api/meetings/{zoom_meeting['id']}/recordings", headers=auth_headers)

    assert response.status_code == 200
    assert [r["id"] for r in response.json()["recordings"]] == [recording["id"]]


@pytest.mark.api
def test_stream_whole_file(client: TestClient, auth_headers, recording):
    response = client.get(recording["file_url"], headers=auth_headers)

    assert response.status_code == 200
    assert response.content == CONTENT
    assert response.headers["content-type"] == "video/mp4"
    assert response.headers["accept-ranges"] == "bytes"


@pytest.mark.api
def test_stream_partial_content(client: TestClient, auth_headers, recording):
    response = client.get(recording["file_url"], headers={**auth_headers, "Range": "bytes=100-199"})

    assert response.status_code == 206
    assert response.headers["content-range"] == "bytes 100-199/1024"
    assert response.headers["content-length"] == "100"
    assert response.content == CONTENT[100:200]


@pytest.mark.api
def test_stream_suffix_range(client: TestClient, auth_headers, recording):
    response = client.get(recording["file_url"], headers={**auth_headers, "Range": "bytes=-24"})

    assert response.status_code == 206
    assert response.headers["content-range"] == "bytes 1000-1023/1024"
    assert response.content == CONTENT[-24:]


@pytest.mark.api
def test_stream_unsatisfiable_range(client: TestClient, auth_headers, recording):
    response = client.get(recording["file_url"], headers={**auth_headers, "Range": "bytes=5000-"})

    assert response.status_code == 416
    assert response.headers["content-range"] == "bytes */1024"
    assert response.json()["code"] == "RANGE_NOT_SATISFIABLE"


@pytest.mark.api
def test_stream_requires_ownership(client: TestClient, services, recording):
    other = services.auth.register("other@example.com", "password123")
    headers = {"Authorization": f"Bearer {other['tokens']['accessToken']}"}

    response = client.get(recording["file_url"], headers=headers)

    assert response.status_code == 404


@pytest.mark.api
def test_stream_unknown_file(client: TestClient, auth_headers):
    response = client.get("/api/recordings/recording-missing.mp4", headers=auth_headers)

    assert response.status_code == 404


@pytest.mark.api
def test_delete_recording(client: TestClient, zoom_meeting, auth_headers, recording):
    response = client.delete(
        f"/api/meetings/{zoom_meeting['id']}/recordings/{recording['id']}", headers=auth_headers
    )

    assert response.status_code == 200
    assert client.get(recording["file_url"], headers=auth_headers).status_code == 404
    assert client.get(f"/api/meetings/{zoom_meeting['id']}/recordings", headers=auth_headers).json()["recordings"] == []

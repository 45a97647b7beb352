"""
Fake Zoom REST and OAuth endpoints, mounted through ``httpx.MockTransport``.
"""
import json
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qs, unquote

import httpx

API_HOST = "api.zoom.us"
OAUTH_HOST = "zoom.us"
DOWNLOAD_HOST = "zoom.us"


class FakeZoomAPI:
    """Programmable Zoom backend for tests."""

    def __init__(self):
        self.meetings: List[Dict[str, Any]] = []
        self.page_size_override: Optional[int] = None
        self.recordings: Dict[str, List[Dict[str, Any]]] = {}
        self.transcripts: Dict[str, Dict[str, Any]] = {}
        self.files: Dict[str, bytes] = {}
        self.failing_files: Dict[str, int] = {}
        self.user = {"id": "zoom-user-1", "email": "host@example.com"}
        self.valid_access_tokens = {"zoom-access-token"}
        self.valid_refresh_tokens = {"zoom-refresh-token"}
        self.issued = 0
        self.rotate_refresh_tokens = True
        self.rate_limit_next = 0
        self.requests: List[httpx.Request] = []
        self.downloads: List[str] = []
        self.refresh_calls = 0

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    # -- setup helpers -------------------------------------------------------

    def add_meeting(self, meeting_id: str, topic: str = "Weekly Sync", start_time: str = "2024-03-01T15:00:00Z", duration: int = 30):
        meeting = {
            "id": meeting_id,
            "uuid": f"uuid-{meeting_id}",
            "topic": topic,
            "start_time": start_time,
            "duration": duration,
        }
        self.meetings.append(meeting)
        return meeting

    def add_recording_file(self, meeting_id: str, file_type: str, content: bytes = b"data", status: str = "completed", file_id: Optional[str] = None):
        files = self.recordings.setdefault(str(meeting_id), [])
        file_id = file_id or f"{meeting_id}-{file_type.lower()}-{len(files)}"
        url = f"https://{DOWNLOAD_HOST}/rec/download/{file_id}"
        files.append({
            "id": file_id,
            "file_type": file_type,
            "file_size": len(content),
            "download_url": url,
            "play_url": f"https://{DOWNLOAD_HOST}/rec/play/{file_id}",
            "status": status,
            "recording_type": "shared_screen_with_speaker_view" if file_type == "MP4" else file_type.lower(),
            "recording_start": "2024-03-01T15:00:05Z",
            "recording_end": "2024-03-01T15:30:00Z",
        })
        self.files[url] = content
        return url

    def add_transcript(self, meeting_id: str, text: str, speakers: Optional[List[Dict[str, Any]]] = None):
        self.transcripts[str(meeting_id)] = {
            "meeting_id": str(meeting_id),
            "transcript_text": text,
            "speakers": speakers or [],
        }

    # -- request handling ----------------------------------------------------

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.rate_limit_next > 0:
            self.rate_limit_next -= 1
            return httpx.Response(429, json={"code": 429, "message": "Too many requests"})

        path = request.url.path
        if request.url.host == OAUTH_HOST and path == "/oauth/token":
            return self._token(request)
        if request.url.host == DOWNLOAD_HOST and path.startswith("/rec/download/"):
            return self._download(request)
        if request.url.host == API_HOST:
            token = request.headers.get("authorization", "").removeprefix("Bearer ")
            if token not in self.valid_access_tokens:
                return httpx.Response(401, json={"code": 124, "message": "Invalid access token."})
            return self._api(request, path.removeprefix("/v2"))
        return httpx.Response(404)

    def _new_tokens(self) -> Dict[str, Any]:
        self.issued += 1
        access = f"zoom-access-token-{self.issued}"
        self.valid_access_tokens.add(access)
        body = {"access_token": access, "token_type": "bearer", "expires_in": 3600}
        if self.rotate_refresh_tokens:
            refresh = f"zoom-refresh-token-{self.issued}"
            self.valid_refresh_tokens.add(refresh)
            body["refresh_token"] = refresh
        return body

    def _token(self, request: httpx.Request) -> httpx.Response:
        form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
        if form.get("grant_type") == "authorization_code":
            if form.get("code") != "good-code":
                return httpx.Response(400, json={"reason": "Invalid authorization code", "error": "invalid_grant"})
            return httpx.Response(200, json=self._new_tokens())
        if form.get("grant_type") == "refresh_token":
            self.refresh_calls += 1
            token = form.get("refresh_token")
            if token not in self.valid_refresh_tokens:
                return httpx.Response(401, json={"reason": "Invalid Token!", "error": "invalid_request"})
            if self.rotate_refresh_tokens:
                self.valid_refresh_tokens.discard(token)
            return httpx.Response(200, json=self._new_tokens())
        return httpx.Response(400, json={"error": "unsupported_grant_type"})

    def _download(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        self.downloads.append(url)
        if url in self.failing_files:
            return httpx.Response(self.failing_files[url], text="download failed")
        if url not in self.files:
            return httpx.Response(404)
        return httpx.Response(200, content=self.files[url])

    def _api(self, request: httpx.Request, path: str) -> httpx.Response:
        if path == "/users/me":
            return httpx.Response(200, json=self.user)
        if path == "/users/me/meetings":
            return self._list_meetings(request)

        parts = [unquote(p) for p in path.strip("/").split("/")]
        if len(parts) == 3 and parts[0] == "meetings":
            meeting_id = parts[1]
            if parts[2] == "recordings":
                files = self.recordings.get(meeting_id)
                if files is None:
                    return httpx.Response(404, json={"code": 3301, "message": "This recording does not exist."})
                return httpx.Response(200, json={"id": meeting_id, "recording_files": files})
            if parts[2] == "transcript":
                transcript = self.transcripts.get(meeting_id)
                if transcript is None:
                    return httpx.Response(404, json={"code": 3322, "message": "Transcript not found."})
                return httpx.Response(200, json=transcript)
        return httpx.Response(404, json={"message": "Not found"})

    def _list_meetings(self, request: httpx.Request) -> httpx.Response:
        page_size = self.page_size_override or int(request.url.params.get("page_size", 300))
        offset = int(request.url.params.get("next_page_token") or 0)
        page = self.meetings[offset:offset + page_size]
        next_offset = offset + page_size
        body = {
            "page_size": page_size,
            "total_records": len(self.meetings),
            "next_page_token": str(next_offset) if next_offset < len(self.meetings) else "",
            "meetings": page,
        }
        return httpx.Response(200, content=json.dumps(body), headers={"content-type": "application/json"})

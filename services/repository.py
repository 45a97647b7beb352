"""
Data access for users, meetings, recordings, tasks and exports.

All queries go through the Supabase (PostgREST) client. Rows are plain
dicts keyed by column name. Inserts that must happen at most once use
``upsert(..., ignore_duplicates=True)`` against a unique constraint so a
concurrent duplicate is dropped by the database instead of stored twice.

Primary and foreign keys are uuids. Postgres rejects a malformed uuid with
an error rather than an empty result, so lookups by id check the format
first and treat a malformed id as "no such row".
"""

import logging
import re
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from pydantic import TypeAdapter
from supabase import Client

logger = logging.getLogger(__name__)

SEARCH_COLUMNS = ("topic", "transcript_text", "summary")
# Characters that carry meaning inside a PostgREST or=(...) filter.
_FILTER_SYNTAX = re.compile(r"[,()*%\\]")
_datetime_adapter = TypeAdapter(datetime)


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse a stored or user supplied timestamp into an aware UTC datetime.

    Accepts whatever Postgres hands back for ``timestamptz`` (any number of
    fractional digits, ``Z`` or offset suffix) as well as date-only strings.
    Raises ``ValueError`` for anything else.
    """
    if value is None or value == "":
        return None
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        # Bare numbers would otherwise be read as unix timestamps.
        raise ValueError(f"Invalid timestamp {value!r}")
    parsed = _datetime_adapter.validate_python(value.strip() if isinstance(value, str) else value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def is_uuid(value: Any) -> bool:
    try:
        uuid.UUID(str(value))
    except (TypeError, ValueError):
        return False
    return True


def search_filter(search: str) -> Optional[str]:
    """PostgREST ``or`` filter matching ``search`` in any searchable column."""
    term = " ".join(_FILTER_SYNTAX.sub(" ", search).split())
    if not term:
        return None
    return ",".join(f"{column}.ilike.*{term}*" for column in SEARCH_COLUMNS)


def _rows(response: Any) -> List[Dict[str, Any]]:
    if hasattr(response, "data"):
        data = response.data
    elif isinstance(response, dict):
        data = response.get("data")
    else:
        data = None
    if data is None:
        return []
    return data if isinstance(data, list) else [data]


def _first(response: Any) -> Optional[Dict[str, Any]]:
    rows = _rows(response)
    return rows[0] if rows else None


class Repository:
    """Thin typed-ish wrapper over the Supabase tables."""

    def __init__(self, client: Client):
        self.client = client

    # -- users ---------------------------------------------------------------

    def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        if not is_uuid(user_id):
            return None
        return _first(self.client.table("users").select("*").eq("id", user_id).limit(1).execute())

    def get_user_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        return _first(self.client.table("users").select("*").eq("email", email.lower()).limit(1).execute())

    def get_user_by_zoom_id(self, zoom_user_id: str) -> Optional[Dict[str, Any]]:
        return _first(
            self.client.table("users").select("*").eq("zoom_user_id", zoom_user_id).limit(1).execute()
        )

    def create_user(self, data: Dict[str, Any]) -> Dict[str, Any]:
        now = utcnow_iso()
        payload = {"zoom_connected": False, "created_at": now, "updated_at": now, **data}
        payload["email"] = payload["email"].lower()
        return _first(self.client.table("users").insert(payload).execute())

    def update_user(self, user_id: str, data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        payload = {**data, "updated_at": utcnow_iso()}
        return _first(self.client.table("users").update(payload).eq("id", user_id).execute())

    def delete_user(self, user_id: str) -> None:
        self.client.table("users").delete().eq("id", user_id).execute()

    # -- meetings ------------------------------------------------------------

    def get_meeting(self, meeting_id: str, user_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        if not is_uuid(meeting_id) or (user_id is not None and not is_uuid(user_id)):
            return None
        query = self.client.table("meetings").select("*").eq("id", meeting_id)
        if user_id is not None:
            query = query.eq("user_id", user_id)
        return _first(query.limit(1).execute())

    def get_meeting_by_zoom_id(self, zoom_meeting_id: str) -> Optional[Dict[str, Any]]:
        return _first(
            self.client.table("meetings")
            .select("id, user_id, zoom_meeting_id")
            .eq("zoom_meeting_id", zoom_meeting_id)
            .limit(1)
            .execute()
        )

    def list_meetings(
        self,
        user_id: str,
        page: int = 1,
        limit: int = 20,
        search: Optional[str] = None,
        from_date: Optional[str] = None,
        to_date: Optional[str] = None,
    ) -> Tuple[List[Dict[str, Any]], int]:
        query = self.client.table("meetings").select("*", count="exact").eq("user_id", user_id)
        condition = search_filter(search) if search else None
        if condition:
            query = query.or_(condition)
        if from_date:
            query = query.gte("start_time", from_date)
        if to_date:
            query = query.lte("start_time", to_date)
        start = (page - 1) * limit
        response = query.order("start_time", desc=True).range(start, start + limit - 1).execute()
        total = getattr(response, "count", None)
        rows = _rows(response)
        return rows, total if total is not None else len(rows)

    def search_meetings(self, user_id: str, search: str, limit: int = 20, offset: int = 0) -> List[Dict[str, Any]]:
        """Meetings whose topic, transcript or summary contain ``search``, newest first."""
        condition = search_filter(search)
        if not condition:
            return []
        return _rows(
            self.client.table("meetings")
            .select("id, topic, start_time, duration, summary, transcript_text")
            .eq("user_id", user_id)
            .or_(condition)
            .order("start_time", desc=True)
            .range(offset, offset + limit - 1)
            .execute()
        )

    def list_meeting_ids(self, user_id: str) -> List[str]:
        rows = _rows(self.client.table("meetings").select("id").eq("user_id", user_id).execute())
        return [row["id"] for row in rows]

    def insert_meeting_if_absent(self, data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Insert a meeting unless its ``zoom_meeting_id`` already exists.

        Returns the inserted row, or ``None`` when the row was a duplicate.
        """
        now = utcnow_iso()
        payload = {"created_at": now, "updated_at": now, **data}
        response = (
            self.client.table("meetings")
            .upsert(payload, on_conflict="zoom_meeting_id", ignore_duplicates=True)
            .execute()
        )
        return _first(response)

    def update_meeting(self, meeting_id: str, data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        payload = {**data, "updated_at": utcnow_iso()}
        return _first(self.client.table("meetings").update(payload).eq("id", meeting_id).execute())

    def set_recording_url_if_empty(self, meeting_id: str, url: str) -> None:
        (
            self.client.table("meetings")
            .update({"recording_url": url, "updated_at": utcnow_iso()})
            .eq("id", meeting_id)
            .is_("recording_url", "null")
            .execute()
        )

    def delete_meeting(self, meeting_id: str) -> None:
        self.client.table("meetings").delete().eq("id", meeting_id).execute()

    # -- recordings ----------------------------------------------------------

    def list_recordings(self, meeting_id: str) -> List[Dict[str, Any]]:
        return _rows(
            self.client.table("recordings")
            .select("*")
            .eq("meeting_id", meeting_id)
            .order("created_at")
            .execute()
        )

    def get_recording(self, recording_id: str, meeting_id: str) -> Optional[Dict[str, Any]]:
        if not is_uuid(recording_id):
            return None
        return _first(
            self.client.table("recordings")
            .select("*")
            .eq("id", recording_id)
            .eq("meeting_id", meeting_id)
            .limit(1)
            .execute()
        )

    def get_recording_by_file_name(self, file_name: str) -> Optional[Dict[str, Any]]:
        return _first(
            self.client.table("recordings").select("*").eq("file_name", file_name).limit(1).execute()
        )

    def recording_exists(self, meeting_id: str, download_url: str) -> bool:
        response = (
            self.client.table("recordings")
            .select("id")
            .eq("meeting_id", meeting_id)
            .eq("download_url", download_url)
            .limit(1)
            .execute()
        )
        return bool(_rows(response))

    def insert_recording_if_absent(self, data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Insert a recording unless (meeting_id, download_url) is already stored."""
        payload = {"created_at": utcnow_iso(), **data}
        response = (
            self.client.table("recordings")
            .upsert(payload, on_conflict="meeting_id,download_url", ignore_duplicates=True)
            .execute()
        )
        return _first(response)

    def delete_recording(self, recording_id: str) -> None:
        self.client.table("recordings").delete().eq("id", recording_id).execute()

    def list_recordings_for_meetings(
        self, meeting_ids: List[str], created_before: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        if not meeting_ids:
            return []
        query = self.client.table("recordings").select("*").in_("meeting_id", meeting_ids)
        if created_before:
            query = query.lt("created_at", created_before)
        return _rows(query.execute())

    def delete_recordings(self, recording_ids: List[str]) -> None:
        if recording_ids:
            self.client.table("recordings").delete().in_("id", recording_ids).execute()

    # -- tasks ---------------------------------------------------------------

    def list_tasks(self, meeting_id: str) -> List[Dict[str, Any]]:
        return _rows(
            self.client.table("tasks").select("*").eq("meeting_id", meeting_id).order("created_at").execute()
        )

    def get_task(self, task_id: str, meeting_id: str) -> Optional[Dict[str, Any]]:
        if not is_uuid(task_id):
            return None
        return _first(
            self.client.table("tasks")
            .select("*")
            .eq("id", task_id)
            .eq("meeting_id", meeting_id)
            .limit(1)
            .execute()
        )

    def create_task(self, data: Dict[str, Any]) -> Dict[str, Any]:
        now = utcnow_iso()
        return _first(self.client.table("tasks").insert({"created_at": now, "updated_at": now, **data}).execute())

    def create_tasks(self, rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        if not rows:
            return []
        now = utcnow_iso()
        payload = [{"created_at": now, "updated_at": now, **row} for row in rows]
        return _rows(self.client.table("tasks").insert(payload).execute())

    def update_task(self, task_id: str, data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        payload = {**data, "updated_at": utcnow_iso()}
        return _first(self.client.table("tasks").update(payload).eq("id", task_id).execute())

    def delete_task(self, task_id: str) -> None:
        self.client.table("tasks").delete().eq("id", task_id).execute()

    def delete_tasks_by_source(self, meeting_id: str, source: str) -> None:
        self.client.table("tasks").delete().eq("meeting_id", meeting_id).eq("source", source).execute()

    # -- exports -------------------------------------------------------------

    def list_exports(self, meeting_id: str) -> List[Dict[str, Any]]:
        return _rows(
            self.client.table("exports").select("*").eq("meeting_id", meeting_id).order("created_at").execute()
        )

    def list_exports_for_meetings(self, meeting_ids: List[str]) -> List[Dict[str, Any]]:
        if not meeting_ids:
            return []
        return _rows(self.client.table("exports").select("*").in_("meeting_id", meeting_ids).execute())

    def get_export(self, export_id: str, meeting_id: str) -> Optional[Dict[str, Any]]:
        if not is_uuid(export_id):
            return None
        return _first(
            self.client.table("exports")
            .select("*")
            .eq("id", export_id)
            .eq("meeting_id", meeting_id)
            .limit(1)
            .execute()
        )

    def get_export_by_file_name(self, meeting_id: str, file_name: str) -> Optional[Dict[str, Any]]:
        return _first(
            self.client.table("exports")
            .select("*")
            .eq("meeting_id", meeting_id)
            .eq("file_name", file_name)
            .limit(1)
            .execute()
        )

    def create_export(self, data: Dict[str, Any]) -> Dict[str, Any]:
        return _first(self.client.table("exports").insert({"created_at": utcnow_iso(), **data}).execute())

    def delete_export(self, export_id: str) -> None:
        self.client.table("exports").delete().eq("id", export_id).execute()

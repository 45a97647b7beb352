"""
Meeting exports.

A meeting is first assembled into a format-agnostic document that holds only
the sections the caller asked for, then handed to one of the renderers. A
section that was not requested is absent from the document, so no renderer
can leak it.
"""

import io
import json
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

from docx import Document

from models.data_models import ExportFormat, ExportRequest
from services.repository import parse_timestamp
from utils.errors import NotFoundError, RenderError
from utils.rendering import render_pdf_bytes_with_playwright, render_report_html

logger = logging.getLogger(__name__)

FILE_EXTENSIONS = {
    ExportFormat.PDF: "pdf",
    ExportFormat.WORD: "docx",
    ExportFormat.MARKDOWN: "md",
    ExportFormat.JSON: "json",
}


def _parse_datetime(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        return parse_timestamp(value)
    except ValueError:
        return None


def build_export_document(meeting: Dict[str, Any], tasks: list, options: ExportRequest) -> Dict[str, Any]:
    start = _parse_datetime(meeting.get("start_time"))
    document: Dict[str, Any] = {
        "title": meeting.get("topic") or "Untitled Meeting",
        "info": {
            "id": meeting["id"],
            "date": start.strftime("%Y-%m-%d") if start else None,
            "time": start.strftime("%H:%M %Z").strip() if start else None,
            "start_time": meeting.get("start_time"),
            "duration": meeting.get("duration"),
        },
    }

    if options.include_summary and meeting.get("summary"):
        document["summary"] = meeting["summary"]
        document["key_points"] = meeting.get("bullet_points") or []

    if options.include_action_items:
        document["action_items"] = [
            {
                "task": task["description"],
                "owner": task.get("owner"),
                "priority": task.get("priority") or "MEDIUM",
                "deadline": task.get("deadline"),
                "status": task.get("status"),
            }
            for task in tasks
        ]

    if options.include_speaker_insights:
        notes = meeting.get("ai_notes") or {}
        document["speaker_insights"] = notes.get("speaker_insights") or []

    if options.include_transcript and meeting.get("transcript_text"):
        document["transcript"] = meeting["transcript_text"]

    return document


def render_markdown(document: Dict[str, Any]) -> bytes:
    info = document["info"]
    lines = [f"# {document['title']}", "", "## Meeting Information", ""]
    lines.append(f"- **Date:** {info['date'] or 'Unknown'}")
    lines.append(f"- **Time:** {info['time'] or 'Unknown'}")
    lines.append(f"- **Duration:** {info['duration'] or 'Unknown'} minutes")
    lines.append("")

    if "summary" in document:
        lines += ["## Summary", "", document["summary"], ""]
        if document["key_points"]:
            lines += [f"- {point}" for point in document["key_points"]]
            lines.append("")

    if "action_items" in document:
        lines += ["## Action Items", ""]
        for index, item in enumerate(document["action_items"], start=1):
            lines += [
                f"### {index}. {item['task']}",
                "",
                f"- **Owner:** {item['owner'] or 'Unassigned'}",
                f"- **Priority:** {item['priority']}",
                f"- **Deadline:** {item['deadline'] or 'No deadline'}",
                "",
            ]

    if "speaker_insights" in document:
        lines += ["## Speaker Insights", ""]
        for speaker in document["speaker_insights"]:
            heading = f"### {speaker.get('name', 'Unknown speaker')}"
            if speaker.get("talk_time") is not None:
                heading += f" ({float(speaker['talk_time']):.1f}% talk time)"
            lines += [heading, ""]
            contributions = speaker.get("key_contributions") or []
            if contributions:
                lines.append("**Key Contributions:**")
                lines += [f"- {c}" for c in contributions]
                lines.append("")

    if "transcript" in document:
        lines += ["## Full Transcript", "", "```", document["transcript"], "```", ""]

    return "\n".join(lines).encode("utf-8")


def render_json(document: Dict[str, Any]) -> bytes:
    payload = dict(document)
    payload["exported_at"] = datetime.now(timezone.utc).isoformat()
    return json.dumps(payload, indent=2, default=str).encode("utf-8")


def render_word(document: Dict[str, Any]) -> bytes:
    doc = Document()
    doc.add_heading(document["title"], level=0)

    info = document["info"]
    doc.add_heading("Meeting Information", level=1)
    doc.add_paragraph(f"Date: {info['date'] or 'Unknown'}")
    doc.add_paragraph(f"Time: {info['time'] or 'Unknown'}")
    doc.add_paragraph(f"Duration: {info['duration'] or 'Unknown'} minutes")

    if "summary" in document:
        doc.add_heading("Summary", level=1)
        doc.add_paragraph(document["summary"])
        for point in document["key_points"]:
            doc.add_paragraph(point, style="List Bullet")

    if "action_items" in document:
        doc.add_heading("Action Items", level=1)
        for index, item in enumerate(document["action_items"], start=1):
            doc.add_heading(f"{index}. {item['task']}", level=2)
            doc.add_paragraph(f"Owner: {item['owner'] or 'Unassigned'}")
            doc.add_paragraph(f"Priority: {item['priority']}")
            doc.add_paragraph(f"Deadline: {item['deadline'] or 'No deadline'}")

    if "speaker_insights" in document:
        doc.add_heading("Speaker Insights", level=1)
        for speaker in document["speaker_insights"]:
            doc.add_heading(speaker.get("name", "Unknown speaker"), level=2)
            for contribution in speaker.get("key_contributions") or []:
                doc.add_paragraph(contribution, style="List Bullet")

    if "transcript" in document:
        doc.add_heading("Full Transcript", level=1)
        doc.add_paragraph(document["transcript"])

    buffer = io.BytesIO()
    doc.save(buffer)
    return buffer.getvalue()


class ExportService:

    def __init__(
        self,
        repository,
        storage,
        pdf_renderer: Optional[Callable[[str], Awaitable[bytes]]] = None,
    ):
        self.repository = repository
        self.storage = storage
        self.pdf_renderer = pdf_renderer or render_pdf_bytes_with_playwright

    async def render(self, document: Dict[str, Any], export_format: ExportFormat) -> bytes:
        try:
            if export_format == ExportFormat.MARKDOWN:
                return render_markdown(document)
            if export_format == ExportFormat.JSON:
                return render_json(document)
            if export_format == ExportFormat.WORD:
                return render_word(document)
            return await self.pdf_renderer(render_report_html(document))
        except Exception as exc:
            logger.error(f"Rendering {export_format.value} export failed: {exc}")
            raise RenderError(f"Failed to render {export_format.value} export") from exc

    async def export_meeting(self, user_id: str, meeting_id: str, options: ExportRequest) -> Dict[str, Any]:
        meeting = self.repository.get_meeting(meeting_id, user_id)
        if not meeting:
            raise NotFoundError("Meeting not found")

        tasks = self.repository.list_tasks(meeting_id) if options.include_action_items else []
        document = build_export_document(meeting, tasks, options)
        content = await self.render(document, options.format)

        stamp = f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:6]}"
        file_name = f"meeting-{meeting_id}-{stamp}.{FILE_EXTENSIONS[options.format]}"
        await self.storage.save_export(file_name, content)
        try:
            record = self.repository.create_export({
                "meeting_id": meeting_id,
                "format": options.format.value,
                "file_name": file_name,
                "file_url": f"/api/meetings/{meeting_id}/exports/{file_name}",
            })
        except Exception:
            await self.storage.delete_export(file_name)
            raise

        logger.info(f"Exported meeting {meeting_id} as {options.format.value} ({len(content)} bytes)")
        return record

    async def get_export_file(self, user_id: str, meeting_id: str, file_name: str) -> str:
        """Return the on-disk path of an export owned by the user."""
        if not self.repository.get_meeting(meeting_id, user_id):
            raise NotFoundError("Meeting not found")
        if not self.repository.get_export_by_file_name(meeting_id, file_name):
            raise NotFoundError("Export not found")
        path = self.storage.export_path(file_name)
        await self.storage.file_size(path)
        return path

    async def delete_export(self, user_id: str, meeting_id: str, export_id: str) -> None:
        if not self.repository.get_meeting(meeting_id, user_id):
            raise NotFoundError("Meeting not found")
        record = self.repository.get_export(export_id, meeting_id)
        if not record:
            raise NotFoundError("Export not found")
        await self.storage.delete_export(record["file_name"])
        self.repository.delete_export(export_id)

"""
Transcript search and on-demand questions about a meeting.

Searching is literal: the query is matched as plain text, never compiled as
a user supplied regular expression. Question answering, personalized notes,
speaker and sentiment views go through ``TranscriptAnalyzer`` and are not
persisted.
"""

import logging
import re
from typing import Any, Dict, List, Optional

from utils.errors import NoTranscript, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

CONTEXT_CHARS = 100
MAX_MATCHES = 50
MAX_SEARCH_LIMIT = 100

OVERALL_TONE = {
    "positive": "The meeting had a positive and productive tone",
    "negative": "The meeting had some tension or negative discussions",
}
NEUTRAL_TONE = "The meeting maintained a neutral, professional tone"


def _context(text: str, start: int, end: int) -> str:
    return text[max(0, start - CONTEXT_CHARS):min(len(text), end + CONTEXT_CHARS)]


def find_matches(text: str, query: str, case_sensitive: bool = False) -> List[Dict[str, Any]]:
    """Every literal occurrence of ``query`` with its surrounding context."""
    pattern = re.compile(re.escape(query), 0 if case_sensitive else re.IGNORECASE)
    return [
        {"text": match.group(0), "index": match.start(), "context": _context(text, match.start(), match.end())}
        for match in pattern.finditer(text)
    ]


def overall_tone(sentiment: Optional[str]) -> str:
    return OVERALL_TONE.get((sentiment or "").strip().lower(), NEUTRAL_TONE)


def _require_query(query: Optional[str], message: str) -> str:
    if not query or not query.strip():
        raise ValidationError(message)
    return query.strip()


class TranscriptService:

    def __init__(self, repository, analyzer):
        self.repository = repository
        self.analyzer = analyzer

    def _meeting_with_transcript(self, user_id: str, meeting_id: str) -> Dict[str, Any]:
        meeting = self.repository.get_meeting(meeting_id, user_id)
        if not meeting:
            raise NotFoundError("Meeting not found")
        if not (meeting.get("transcript_text") or "").strip():
            raise NoTranscript("Transcript not available for this meeting")
        return meeting

    def search_in_meeting(
        self, user_id: str, meeting_id: str, query: Optional[str], case_sensitive: bool = False
    ) -> Dict[str, Any]:
        query = _require_query(query, "Search query is required")
        meeting = self._meeting_with_transcript(user_id, meeting_id)
        matches = find_matches(meeting["transcript_text"], query, case_sensitive)
        return {"query": query, "matchCount": len(matches), "matches": matches[:MAX_MATCHES]}

    def search_meetings(self, user_id: str, query: Optional[str], limit: int = 20, offset: int = 0) -> Dict[str, Any]:
        """Search topic, transcript and summary across the user's meetings."""
        query = _require_query(query, "Search query is required")
        limit = max(1, min(limit, MAX_SEARCH_LIMIT))
        offset = max(0, offset)
        rows = self.repository.search_meetings(user_id, query, limit=limit, offset=offset)

        results = []
        for row in rows:
            text = row.get("transcript_text") or ""
            matches = find_matches(text, query)
            results.append({
                "meetingId": row["id"],
                "topic": row.get("topic"),
                "startTime": row.get("start_time"),
                "duration": row.get("duration"),
                "hasSummary": bool(row.get("summary")),
                "excerpt": matches[0]["context"] if matches else "",
            })
        return {
            "query": query,
            "results": results,
            "total": len(results),
            "hasMore": len(results) == limit,
        }

    async def extract(self, user_id: str, meeting_id: str, query: Optional[str]) -> Dict[str, Any]:
        query = _require_query(query, "Query is required")
        meeting = self._meeting_with_transcript(user_id, meeting_id)
        answer = await self.analyzer.extract_information(meeting["transcript_text"], query)
        return {"query": query, "result": answer}

    async def personalized_notes(
        self, user_id: str, meeting_id: str, role: Optional[str], interests: Optional[List[str]] = None
    ) -> Dict[str, Any]:
        role = _require_query(role, "User role is required")
        interests = [item.strip() for item in interests or [] if item and item.strip()]
        meeting = self._meeting_with_transcript(user_id, meeting_id)
        notes = await self.analyzer.personalized_notes(meeting["transcript_text"], role, interests)
        return {"personalizedNotes": notes, "role": role, "interests": interests}

    async def speakers(self, user_id: str, meeting_id: str) -> Dict[str, Any]:
        """Stored Zoom speakers, else stored insights, else a fresh analysis."""
        meeting = self.repository.get_meeting(meeting_id, user_id)
        if not meeting:
            raise NotFoundError("Meeting not found")

        speakers = meeting.get("speakers") or (meeting.get("ai_notes") or {}).get("speaker_insights")
        if not speakers:
            transcript = meeting.get("transcript_text") or ""
            if not transcript.strip():
                raise NotFoundError("Speaker information not available for this meeting")
            insights = await self.analyzer.speaker_insights(transcript, [])
            speakers = [insight.model_dump() for insight in insights]
        return {"meetingId": meeting["id"], "topic": meeting.get("topic"), "speakers": speakers}

    async def sentiment(self, user_id: str, meeting_id: str) -> Dict[str, Any]:
        meeting = self._meeting_with_transcript(user_id, meeting_id)
        notes = meeting.get("ai_notes") or {}
        if notes.get("sentiment"):
            sentiment, topics = notes["sentiment"], notes.get("topics") or []
        else:
            summary = await self.analyzer.summarize(meeting["transcript_text"], meeting.get("topic"))
            sentiment, topics = summary.sentiment, summary.topics
        return {"sentiment": sentiment, "topics": topics, "overallTone": overall_tone(sentiment)}

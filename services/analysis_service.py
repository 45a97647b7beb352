"""
Transcript analysis with OpenAI.

``TranscriptAnalyzer`` turns transcript text into a typed
``TranscriptAnalysis``. ``AnalysisService`` runs it for a stored meeting,
writes the derived fields back and replaces the meeting's AI-generated tasks.
"""

import asyncio
import json
import logging
from datetime import date
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError

from models.data_models import (
    ActionItem, EffectivenessReport, MeetingSummary, NormalizedTask,
    SpeakerInsight, TaskPriority, TaskSource, TaskStatus, TranscriptAnalysis,
)
from utils.errors import NoTranscript, NotFoundError, UpstreamError

logger = logging.getLogger(__name__)

SUMMARY_SYSTEM_PROMPT = (
    "You are an expert meeting analyst. Provide accurate, concise summaries "
    "and extract actionable items from meeting transcripts. Always respond "
    "with valid JSON."
)
SPEAKER_SYSTEM_PROMPT = (
    "You are an expert in meeting analysis and speaker behavior. Analyze "
    "speaker participation patterns and contributions accurately. Always "
    "respond with valid JSON."
)
EFFECTIVENESS_SYSTEM_PROMPT = (
    "You are a meeting effectiveness expert. Analyze meetings objectively and "
    "provide actionable recommendations for improvement. Always respond with "
    "valid JSON."
)
EXTRACT_SYSTEM_PROMPT = (
    "You are a helpful assistant that extracts specific information from "
    "meeting transcripts accurately."
)
NOTES_SYSTEM_PROMPT = (
    "You are an expert meeting note-taker who creates personalized, relevant "
    "summaries based on the user's role and interests."
)
EXTRACT_MAX_TOKENS = 500
EXTRACT_TEMPERATURE = 0.2
NOTES_TEMPERATURE = 0.4


def _summary_prompt(transcript: str, topic: Optional[str]) -> str:
    return (
        "Analyze the following meeting transcript and provide a summary in JSON format.\n\n"
        f"Meeting Topic: {topic or 'Not specified'}\n\n"
        f"Transcript:\n{transcript}\n\n"
        "Respond with a JSON object with the following keys:\n"
        "- summary: a concise 2-3 paragraph summary of the meeting\n"
        "- keyPoints: a list of the most important discussion points\n"
        "- actionItems: an array of objects with 'task', 'owner' (if mentioned), "
        "'deadline' (YYYY-MM-DD, if mentioned) and 'priority' (low|medium|high|urgent)\n"
        "- sentiment: positive|neutral|negative\n"
        "- topics: a list of topics discussed\n"
    )


def _speaker_prompt(transcript: str, speakers: List[Any]) -> str:
    return (
        "Analyze the meeting transcript for speaker insights and participation patterns.\n\n"
        f"Speaker Information:\n{json.dumps(speakers, indent=2, default=str)}\n\n"
        f"Transcript:\n{transcript}\n\n"
        "Respond with a JSON object {\"speakers\": [...]} where each entry has "
        "'name', 'talkTime' (percentage of the meeting), 'keyContributions' "
        "(list of strings) and 'sentiment' (positive|neutral|negative)."
    )


def _effectiveness_prompt(transcript: str, duration: int) -> str:
    return (
        "Analyze this meeting transcript for effectiveness and provide recommendations.\n\n"
        f"Meeting Duration: {duration} minutes\n\n"
        f"Transcript:\n{transcript}\n\n"
        "Evaluate agenda clarity, participation, decision making, action item "
        "clarity and time management. Respond with a JSON object with keys "
        "'score' (1-10) and 'recommendations' (list of strings)."
    )


def _extract_prompt(transcript: str, query: str) -> str:
    return (
        f"Based on the following meeting transcript, answer this specific query: \"{query}\"\n\n"
        f"Transcript:\n{transcript}\n\n"
        "Provide a clear, concise answer based on the information in the "
        "transcript. If the information is not available in the transcript, "
        "clearly state that."
    )


def _notes_prompt(transcript: str, role: str, interests: List[str]) -> str:
    return (
        f"Generate personalized meeting notes for a {role} based on their interests.\n\n"
        f"User Interests: {', '.join(interests) or 'Not specified'}\n\n"
        f"Meeting Transcript:\n{transcript}\n\n"
        "Create focused notes highlighting:\n"
        "1. Information relevant to their role and interests\n"
        "2. Action items they're responsible for or should be aware of\n"
        "3. Decisions that impact their area of responsibility\n"
        "4. Follow-up opportunities\n"
        "5. Key insights for their specific role\n\n"
        "Format as clear, organized notes with bullet points and sections."
    )


class TranscriptAnalyzer:
    """Calls the chat completions API and validates what comes back."""

    def __init__(self, client, model: str = "gpt-4o-mini", max_tokens: int = 2000, temperature: float = 0.3):
        self.client = client
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature

    def _complete(
        self,
        system_prompt: str,
        user_prompt: str,
        json_mode: bool = True,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> str:
        if self.client is None:
            raise UpstreamError("Analysis service is not configured")
        options: Dict[str, Any] = {}
        if json_mode:
            options["response_format"] = {"type": "json_object"}
        try:
            completion = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                temperature=self.temperature if temperature is None else temperature,
                max_tokens=max_tokens or self.max_tokens,
                **options,
            )
        except Exception as exc:
            logger.error(f"OpenAI request failed: {exc}")
            raise UpstreamError("Analysis service request failed") from exc

        content = completion.choices[0].message.content if completion.choices else None
        if not content or not content.strip():
            raise UpstreamError("Analysis service returned an empty response")
        return content

    def _complete_json(self, system_prompt: str, user_prompt: str) -> Dict[str, Any]:
        content = self._complete(system_prompt, user_prompt)
        try:
            data = json.loads(content)
        except (TypeError, json.JSONDecodeError) as exc:
            logger.error(f"OpenAI returned invalid JSON: {content!r}")
            raise UpstreamError("Analysis service returned invalid JSON") from exc
        if not isinstance(data, dict):
            raise UpstreamError("Analysis service returned an unexpected payload")
        return data

    async def _call(self, system_prompt: str, user_prompt: str) -> Dict[str, Any]:
        # The OpenAI client is synchronous; keep it off the event loop.
        return await asyncio.to_thread(self._complete_json, system_prompt, user_prompt)

    async def _call_text(self, system_prompt: str, user_prompt: str, **options) -> str:
        content = await asyncio.to_thread(self._complete, system_prompt, user_prompt, False, **options)
        return content.strip()

    async def summarize(self, transcript: str, topic: Optional[str] = None) -> MeetingSummary:
        data = await self._call(SUMMARY_SYSTEM_PROMPT, _summary_prompt(transcript, topic))
        return _parse(MeetingSummary, data, "summary")

    async def speaker_insights(self, transcript: str, speakers: List[Any]) -> List[SpeakerInsight]:
        data = await self._call(SPEAKER_SYSTEM_PROMPT, _speaker_prompt(transcript, speakers))
        entries = data.get("speakers") or []
        if not isinstance(entries, list):
            raise UpstreamError("Analysis service returned malformed speaker insights")
        return [_parse(SpeakerInsight, entry, "speaker insight") for entry in entries]

    async def effectiveness(self, transcript: str, duration: int) -> EffectivenessReport:
        data = await self._call(EFFECTIVENESS_SYSTEM_PROMPT, _effectiveness_prompt(transcript, duration))
        return _parse(EffectivenessReport, data, "effectiveness report")

    async def extract_information(self, transcript: str, query: str) -> str:
        """Answer a free-form question from the transcript."""
        return await self._call_text(
            EXTRACT_SYSTEM_PROMPT,
            _extract_prompt(transcript, query),
            max_tokens=EXTRACT_MAX_TOKENS,
            temperature=EXTRACT_TEMPERATURE,
        )

    async def personalized_notes(self, transcript: str, role: str, interests: List[str]) -> str:
        return await self._call_text(
            NOTES_SYSTEM_PROMPT,
            _notes_prompt(transcript, role, interests),
            temperature=NOTES_TEMPERATURE,
        )

    async def analyze(
        self,
        transcript: str,
        topic: Optional[str] = None,
        speakers: Optional[List[Any]] = None,
        duration: Optional[int] = None,
    ) -> TranscriptAnalysis:
        """Run the summary, speaker and effectiveness prompts concurrently.

        Parameters
        ----------
        transcript : str
            Plain transcript text. Must not be blank.
        topic : str, optional
            Meeting topic passed as context.
        speakers : list, optional
            Speaker records; speaker insights are only requested when present.
        duration : int, optional
            Meeting length in minutes; the effectiveness score is only
            requested when known.

        Returns
        -------
        TranscriptAnalysis
        """
        if not transcript or not transcript.strip():
            raise NoTranscript()

        calls = [self.summarize(transcript, topic)]
        if speakers:
            calls.append(self.speaker_insights(transcript, speakers))
        if duration:
            calls.append(self.effectiveness(transcript, duration))
        results = await asyncio.gather(*calls)

        summary = results[0]
        insights: List[SpeakerInsight] = results[1] if speakers else []
        report: Optional[EffectivenessReport] = results[-1] if duration else None
        return TranscriptAnalysis(
            summary=summary,
            speaker_insights=insights,
            effectiveness_score=report.score if report else None,
            recommendations=report.recommendations if report else [],
        )


def _parse(model, data: Any, label: str):
    try:
        return model.model_validate(data)
    except PydanticValidationError as exc:
        logger.error(f"Malformed {label} from OpenAI: {exc}")
        raise UpstreamError(f"Analysis service returned a malformed {label}") from exc


def normalize_action_item(raw: Any) -> NormalizedTask:
    """Convert one raw action item into task fields.

    Raises ``ValueError`` when the item cannot be turned into a task.
    """
    try:
        item = ActionItem.model_validate(raw)
    except PydanticValidationError as exc:
        raise ValueError("action item is missing a task description") from exc
    if not item.task.strip():
        raise ValueError("action item is missing a task description")

    priority = TaskPriority.MEDIUM
    if item.priority:
        try:
            priority = TaskPriority(item.priority.strip().upper())
        except ValueError:
            raise ValueError(f"unknown priority {item.priority!r}")

    deadline = None
    if item.deadline:
        try:
            deadline = date.fromisoformat(item.deadline.strip()[:10])
        except ValueError:
            raise ValueError(f"invalid deadline {item.deadline!r}")

    return NormalizedTask(description=item.task.strip(), owner=item.owner, deadline=deadline, priority=priority)


class AnalysisService:
    """Analyzes stored meetings and persists the results."""

    def __init__(self, analyzer: TranscriptAnalyzer, repository):
        self.analyzer = analyzer
        self.repository = repository

    async def analyze_meeting(self, user_id: str, meeting_id: str) -> Dict[str, Any]:
        meeting = self.repository.get_meeting(meeting_id, user_id)
        if not meeting:
            raise NotFoundError("Meeting not found")
        return await self.analyze_and_store(meeting)

    async def analyze_and_store(self, meeting: Dict[str, Any]) -> Dict[str, Any]:
        transcript = meeting.get("transcript_text") or ""
        if not transcript.strip():
            raise NoTranscript()

        analysis = await self.analyzer.analyze(
            transcript,
            topic=meeting.get("topic"),
            speakers=meeting.get("speakers") or None,
            duration=meeting.get("duration"),
        )
        summary = analysis.summary

        self.repository.update_meeting(meeting["id"], {
            "summary": summary.summary,
            "bullet_points": summary.key_points,
            "ai_notes": {
                "sentiment": summary.sentiment,
                "topics": summary.topics,
                "effectiveness_score": analysis.effectiveness_score,
                "recommendations": analysis.recommendations,
                "speaker_insights": [s.model_dump() for s in analysis.speaker_insights],
            },
        })

        tasks, task_errors = self._replace_ai_tasks(meeting["id"], summary.action_items)
        logger.info(f"Analyzed meeting {meeting['id']}: {len(tasks)} tasks, {len(task_errors)} rejected")
        return {
            "analysis": analysis.model_dump(mode="json"),
            "tasks": tasks,
            "task_errors": task_errors,
        }

    def _replace_ai_tasks(self, meeting_id: str, action_items: List[Any]) -> Tuple[List[Dict[str, Any]], List[str]]:
        rows = []
        errors = []
        for index, raw in enumerate(action_items, start=1):
            try:
                task = normalize_action_item(raw)
            except ValueError as exc:
                errors.append(f"Action item {index}: {exc}")
                continue
            rows.append({
                "meeting_id": meeting_id,
                "description": task.description,
                "owner": task.owner,
                "deadline": task.deadline.isoformat() if task.deadline else None,
                "priority": task.priority.value,
                "status": TaskStatus.PENDING.value,
                "source": TaskSource.AI.value,
            })

        # Re-analysis supersedes earlier AI output; manual tasks stay.
        self.repository.delete_tasks_by_source(meeting_id, TaskSource.AI.value)
        return self.repository.create_tasks(rows), errors

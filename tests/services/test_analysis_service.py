"""
Tests for transcript analysis and AI task replacement.
"""
import json
from datetime import date

import pytest

from models.data_models import TaskPriority
from services.analysis_service import normalize_action_item
from utils.errors import NoTranscript, NotFoundError, UpstreamError


@pytest.mark.services
async def test_analysis_updates_meeting_and_creates_tasks(services, analyzed_meeting, mock_openai):
    result = await services.analysis.analyze_meeting(analyzed_meeting["user_id"], analyzed_meeting["id"])

    meeting = services.repository.get_meeting(analyzed_meeting["id"])
    assert meeting["summary"].startswith("The team reviewed the Q2 launch plan")
    assert meeting["bullet_points"] == ["Launch moves to June", "Marketing needs final copy"]
    assert meeting["ai_notes"]["effectiveness_score"] == 8
    assert meeting["ai_notes"]["sentiment"] == "positive"

    tasks = result["tasks"]
    assert [t["description"] for t in tasks] == ["Send launch copy to marketing", "Book the release retro"]
    assert tasks[0]["priority"] == "HIGH"
    assert tasks[0]["deadline"] == "2024-04-01"
    assert tasks[1]["owner"] is None
    assert tasks[1]["deadline"] is None
    assert all(t["source"] == "AI" and t["status"] == "PENDING" for t in tasks)
    assert result["task_errors"] == []

    # No speakers on the meeting, so only summary and effectiveness are requested.
    assert mock_openai.chat.completions.create.call_count == 2


@pytest.mark.services
async def test_speaker_insights_requested_when_speakers_known(services, analyzed_meeting, mock_openai):
    services.repository.update_meeting(analyzed_meeting["id"], {"speakers": [{"name": "Dana"}, {"name": "Lee"}]})

    result = await services.analysis.analyze_meeting(analyzed_meeting["user_id"], analyzed_meeting["id"])

    assert mock_openai.chat.completions.create.call_count == 3
    insights = result["analysis"]["speaker_insights"]
    assert [s["name"] for s in insights] == ["Dana", "Lee"]
    assert insights[0]["talk_time"] == 55.0


@pytest.mark.services
async def test_missing_transcript_creates_no_tasks(services, test_user, mock_openai):
    meeting = services.repository.insert_meeting_if_absent({
        "user_id": test_user["id"],
        "zoom_meeting_id": "444",
        "topic": "Silent",
        "transcript_text": "   ",
        "source": "ZOOM",
    })

    with pytest.raises(NoTranscript):
        await services.analysis.analyze_meeting(test_user["id"], meeting["id"])

    assert services.repository.list_tasks(meeting["id"]) == []
    mock_openai.chat.completions.create.assert_not_called()


@pytest.mark.services
async def test_reanalysis_replaces_ai_tasks_and_keeps_manual_ones(services, analyzed_meeting):
    manual = services.meetings.create_task(
        analyzed_meeting["user_id"], analyzed_meeting["id"], {"description": "Call the vendor", "priority": "LOW"}
    )

    await services.analysis.analyze_meeting(analyzed_meeting["user_id"], analyzed_meeting["id"])
    await services.analysis.analyze_meeting(analyzed_meeting["user_id"], analyzed_meeting["id"])

    tasks = services.repository.list_tasks(analyzed_meeting["id"])
    descriptions = sorted(t["description"] for t in tasks)
    assert descriptions == ["Book the release retro", "Call the vendor", "Send launch copy to marketing"]
    assert manual["id"] in {t["id"] for t in tasks}
    assert "Update footer" not in descriptions


@pytest.mark.services
async def test_malformed_action_item_only_drops_that_item(services, analyzed_meeting, openai_responses):
    openai_responses["summary"] = json.dumps({
        "summary": "Short sync.",
        "keyPoints": [],
        "actionItems": [
            {"task": "Ship the build", "priority": "urgent"},
            {"task": "Panic", "priority": "critical"},
            {"owner": "Lee"},
            {"task": "Write notes", "deadline": "next week"},
        ],
    })

    result = await services.analysis.analyze_meeting(analyzed_meeting["user_id"], analyzed_meeting["id"])

    assert [t["description"] for t in result["tasks"]] == ["Ship the build"]
    assert result["tasks"][0]["priority"] == "URGENT"
    assert result["task_errors"] == [
        "Action item 2: unknown priority 'critical'",
        "Action item 3: action item is missing a task description",
        "Action item 4: invalid deadline 'next week'",
    ]


@pytest.mark.services
async def test_invalid_json_from_model_leaves_meeting_untouched(services, analyzed_meeting, openai_responses):
    openai_responses["summary"] = "not json at all"

    with pytest.raises(UpstreamError):
        await services.analysis.analyze_meeting(analyzed_meeting["user_id"], analyzed_meeting["id"])

    meeting = services.repository.get_meeting(analyzed_meeting["id"])
    assert meeting["summary"] == "Design approved with minor changes."
    assert [t["description"] for t in services.repository.list_tasks(analyzed_meeting["id"])] == ["Update footer"]


@pytest.mark.services
async def test_openai_failure_is_upstream_error(services, analyzed_meeting, mock_openai):
    mock_openai.chat.completions.create.side_effect = RuntimeError("connection reset")

    with pytest.raises(UpstreamError):
        await services.analysis.analyze_meeting(analyzed_meeting["user_id"], analyzed_meeting["id"])


@pytest.mark.services
async def test_unknown_meeting(services, test_user):
    with pytest.raises(NotFoundError):
        await services.analysis.analyze_meeting(test_user["id"], "missing")


@pytest.mark.services
def test_normalize_action_item_defaults():
    task = normalize_action_item({"task": "  Follow up  ", "owner": "", "deadline": "2024-05-01T12:00:00Z"})

    assert task.description == "Follow up"
    assert task.owner is None
    assert task.priority == TaskPriority.MEDIUM
    assert task.deadline == date(2024, 5, 1)


@pytest.mark.services
def test_normalize_action_item_rejects_blank_task():
    with pytest.raises(ValueError):
        normalize_action_item({"task": "   "})

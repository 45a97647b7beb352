"""
Meeting summary notifications over email (SMTP) and Slack.
"""

import asyncio
import logging
import re
import smtplib
import ssl
from datetime import date, datetime, timezone
from email.message import EmailMessage
from typing import Any, Dict, List, Optional

import httpx

from utils.config import Settings
from utils.errors import NotFoundError, NotificationError, UpstreamError, ValidationError
from utils.rendering import render_template

logger = logging.getLogger(__name__)

PRIORITY_EMOJI = {"URGENT": "🔴", "HIGH": "🟠", "MEDIUM": "🟡", "LOW": "🟢"}
STATUS_EMOJI = {"COMPLETED": "✅", "IN_PROGRESS": "🔄", "PENDING": "⏳", "CANCELLED": "❌"}
OPEN_TASK_STATUSES = ("PENDING", "IN_PROGRESS")


class EmailSender:

    def __init__(self, settings: Settings):
        self.host = settings.smtp_host
        self.port = settings.smtp_port
        self.user = settings.smtp_user
        self.password = settings.smtp_password
        self.sender = settings.email_from or settings.smtp_user

    @property
    def configured(self) -> bool:
        return bool(self.host and self.sender)

    def _send(self, recipients: List[str], subject: str, html: str, text: str) -> None:
        msg = EmailMessage()
        msg["From"] = self.sender
        msg["To"] = ", ".join(recipients)
        msg["Subject"] = subject
        msg.set_content(text)
        msg.add_alternative(html, subtype="html")

        context = ssl.create_default_context()
        with smtplib.SMTP(self.host, self.port, timeout=30) as server:
            server.ehlo()
            server.starttls(context=context)
            server.ehlo()
            if self.user and self.password:
                server.login(self.user, self.password)
            server.send_message(msg)

    async def send(self, recipients: List[str], subject: str, html: str, text: str) -> None:
        if not self.configured:
            raise UpstreamError("Email is not configured")
        try:
            await asyncio.to_thread(self._send, recipients, subject, html, text)
        except (smtplib.SMTPException, OSError) as exc:
            logger.error(f"SMTP delivery to {len(recipients)} recipients failed: {exc}")
            raise UpstreamError("Email delivery failed") from exc


class SlackClient:

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.token = settings.slack_bot_token
        self.api_url = settings.slack_api_url.rstrip("/")
        self._transport = transport

    async def post_message(self, channel: str, text: str) -> None:
        if not self.token:
            raise UpstreamError("Slack is not configured")
        try:
            async with httpx.AsyncClient(timeout=30.0, transport=self._transport) as client:
                response = await client.post(
                    f"{self.api_url}/chat.postMessage",
                    headers={"Authorization": f"Bearer {self.token}"},
                    json={"channel": channel, "text": text, "mrkdwn": True},
                )
        except httpx.HTTPError as exc:
            logger.error(f"Slack request failed: {exc}")
            raise UpstreamError("Slack delivery failed") from exc

        body = response.json() if response.headers.get("content-type", "").startswith("application/json") else {}
        # Slack reports most failures as HTTP 200 with ok=false.
        if response.status_code != 200 or not body.get("ok"):
            logger.error(f"Slack rejected message: {response.status_code} - {body.get('error', response.text)}")
            raise UpstreamError("Slack delivery failed")


def _html_to_text(html: str) -> str:
    text = re.sub(r"<br\s*/?>|</(p|li|h\d)>", "\n", html)
    text = re.sub(r"<[^>]+>", "", text)
    text = text.replace("&middot;", "-").replace("&amp;", "&")
    return re.sub(r"\n\s*\n+", "\n\n", text).strip()


def _days_until(deadline: Any, today: date) -> Optional[int]:
    if not deadline:
        return None
    if not isinstance(deadline, date):
        deadline = date.fromisoformat(str(deadline)[:10])
    return (deadline - today).days


def reminder_urgency(days_left: Optional[int]) -> str:
    if days_left is None:
        return ""
    if days_left <= 0:
        return "🚨 OVERDUE"
    if days_left <= 2:
        return "⚠️ DUE SOON"
    return ""


class NotificationService:

    def __init__(self, repository, email_sender: EmailSender, slack_client: SlackClient, frontend_url: str = ""):
        self.repository = repository
        self.email_sender = email_sender
        self.slack_client = slack_client
        self.frontend_url = frontend_url.split(",")[0].rstrip("/")

    def build_slack_text(self, meeting: Dict[str, Any], tasks: List[Dict[str, Any]], date: str) -> str:
        text = f"*Meeting Summary: {meeting.get('topic') or 'Untitled Meeting'}*\n_{date}_\n\n{meeting['summary']}"
        if tasks:
            text += "\n\n*Action Items:*"
            for index, task in enumerate(tasks, start=1):
                status_emoji = STATUS_EMOJI.get(task.get("status"), "❓")
                priority_emoji = PRIORITY_EMOJI.get(task.get("priority"), "⚪")
                text += f"\n{index}. {status_emoji} {priority_emoji} {task['description']}"
                text += f"\n   Owner: {task.get('owner') or 'Unassigned'} | Priority: {task.get('priority')}"
        return text

    async def notify(
        self,
        user_id: str,
        meeting_id: str,
        recipients: List[str],
        slack_channel: Optional[str] = None,
        include_action_items: bool = True,
    ) -> Dict[str, Any]:
        meeting = self.repository.get_meeting(meeting_id, user_id)
        if not meeting:
            raise NotFoundError("Meeting not found")
        if not meeting.get("summary"):
            raise NotFoundError("Meeting has no summary yet, analyze it before sharing")
        if not recipients and not slack_channel:
            raise ValidationError("Provide at least one email recipient or a Slack channel")

        tasks = self.repository.list_tasks(meeting_id) if include_action_items else []
        date = str(meeting.get("start_time") or "")[:10]
        results: Dict[str, Dict[str, Any]] = {}

        if recipients:
            html = render_template(
                "summary_email.html",
                topic=meeting.get("topic") or "Untitled Meeting",
                date=date,
                duration=meeting.get("duration"),
                summary=meeting["summary"],
                key_points=meeting.get("bullet_points") or [],
                tasks=tasks,
                meeting_url=f"{self.frontend_url}/meeting/{meeting_id}" if self.frontend_url else None,
            )
            subject = f"Meeting Summary: {meeting.get('topic') or 'Untitled Meeting'} - {date}"
            try:
                await self.email_sender.send(list(recipients), subject, html, _html_to_text(html))
                results["email"] = {"success": True, "recipients": len(recipients)}
            except UpstreamError as exc:
                results["email"] = {"success": False, "error": exc.message}

        if slack_channel:
            try:
                await self.slack_client.post_message(slack_channel, self.build_slack_text(meeting, tasks, date))
                results["slack"] = {"success": True, "channel": slack_channel}
            except UpstreamError as exc:
                results["slack"] = {"success": False, "error": exc.message}

        failed = [channel for channel, outcome in results.items() if not outcome["success"]]
        if failed:
            raise NotificationError(f"Failed to deliver via {', '.join(failed)}", details=results)
        return results

    async def send_task_reminders(
        self,
        user_id: str,
        meeting_id: str,
        task_ids: Optional[List[str]] = None,
        today: Optional[date] = None,
    ) -> List[Dict[str, Any]]:
        """Email a reminder for each open task to its assignee.

        Tasks without an assigned user go to the meeting owner. Only
        ``PENDING`` and ``IN_PROGRESS`` tasks are reminded.
        """
        meeting = self.repository.get_meeting(meeting_id, user_id)
        if not meeting:
            raise NotFoundError("Meeting not found")
        if not self.email_sender.configured:
            raise UpstreamError("Email is not configured")

        wanted = set(task_ids) if task_ids else None
        tasks = [
            task for task in self.repository.list_tasks(meeting_id)
            if task.get("status") in OPEN_TASK_STATUSES and (wanted is None or task["id"] in wanted)
        ]
        if not tasks:
            raise ValidationError("No open tasks to remind")

        today = today or datetime.now(timezone.utc).date()
        owner = self.repository.get_user(user_id) or {}
        date_text = str(meeting.get("start_time") or "")[:10]
        results = []
        for task in tasks:
            recipient = self.repository.get_user(task["assigned_to_id"]) if task.get("assigned_to_id") else None
            recipient = recipient or owner
            if not recipient.get("email"):
                results.append({"taskId": task["id"], "success": False, "error": "No recipient email"})
                continue

            days_left = _days_until(task.get("deadline"), today)
            html = render_template(
                "task_reminder.html",
                name=recipient.get("name"),
                urgency=reminder_urgency(days_left),
                topic=meeting.get("topic") or "Untitled Meeting",
                date=date_text,
                task=task,
                days_left=days_left,
                meeting_url=f"{self.frontend_url}/meeting/{meeting_id}" if self.frontend_url else None,
            )
            description = task["description"]
            subject = f"Action Item Reminder: {description[:50]}{'...' if len(description) > 50 else ''}"
            try:
                await self.email_sender.send([recipient["email"]], subject, html, _html_to_text(html))
            except UpstreamError as exc:
                results.append({"taskId": task["id"], "recipient": recipient["email"], "success": False, "error": exc.message})
                continue
            self.repository.update_task(task["id"], {"reminder_sent_at": datetime.now(timezone.utc).isoformat()})
            results.append({"taskId": task["id"], "recipient": recipient["email"], "success": True})

        failed = [r for r in results if not r["success"]]
        logger.info(f"Sent {len(results) - len(failed)} task reminders for meeting {meeting_id}, {len(failed)} failed")
        if failed:
            raise NotificationError(f"Failed to send {len(failed)} of {len(results)} reminders", details=results)
        return results

    async def announce_new_meeting(self, meeting: Dict[str, Any], channel: str) -> None:
        """Post a short Slack note that a meeting was added."""
        host = self.repository.get_user(meeting["user_id"]) or {}
        text = (
            f"🎥 *New Meeting Processed*: {meeting.get('topic') or 'Untitled Meeting'}\n"
            f"*Date:* {str(meeting.get('start_time') or '')[:10]}\n"
            f"*Host:* {host.get('name') or host.get('email') or 'Unknown'}"
        )
        if self.frontend_url:
            text += f"\n<{self.frontend_url}/meeting/{meeting['id']}|View Summary>"
        await self.slack_client.post_message(channel, text)

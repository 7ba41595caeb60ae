# notification orchestrator: compose, dedupe and schedule email + push jobs
# delivery is owned by a worker reading scheduled_jobs, this service only enqueues
#
# rules:
#   - one batch per event: the event claims a key in notification_batches first,
#     a second claim of the same key (e.g. the general path after a danger
#     escalation) schedules nothing
#   - one message per physical address per event: recipients are merged by
#     lowercased email before scheduling
#   - best effort: each channel is attempted independently, failures are logged
#     and never reach the caller

import html
import logging
import re
from enum import Enum
from typing import Iterable, Optional

from pydantic.networks import validate_email
from pymongo.errors import DuplicateKeyError, PyMongoError

from therapy_chat.config import Settings, settings as default_settings
from therapy_chat.errors import NotificationError
from therapy_chat.services.access import AccessResolver
from therapy_chat.services.clock import utcnow
from therapy_chat.services.db import Database

logger = logging.getLogger(__name__)

_TAG_RE = re.compile(r"<[^>]+>")
_SPLIT_RE = re.compile(r"[,;\n]+")
_WS_RE = re.compile(r"\s+")


class ChannelKind(str, Enum):
    EMAIL = "email"
    PUSH = "push"


def preview(text: str, limit: int) -> str:
    """plain-text preview truncated to `limit` characters with an ellipsis"""
    plain = _WS_RE.sub(" ", _TAG_RE.sub(" ", text or "")).strip()
    if len(plain) <= limit:
        return plain
    return plain[:limit].rstrip() + "..."


def render(template: str, values: dict[str, str]) -> str:
    """replace {{name}} and @name tokens, no templating engine"""
    out = template
    for key, value in values.items():
        out = out.replace("{{" + key + "}}", value).replace("@" + key, value)
    return out


def split_addresses(raw: str) -> list[str]:
    return [a.strip() for a in _SPLIT_RE.split(raw or "") if a.strip()]


def merge_recipients(*address_lists: Iterable[str]) -> list[str]:
    """merge address lists keeping the first spelling of each address, case-insensitively"""
    merged: dict[str, str] = {}
    for addresses in address_lists:
        for address in addresses:
            if not address:
                continue
            try:
                _, normalized = validate_email(address.strip())
            except ValueError:
                logger.warning(f"Dropping invalid notification address: {address!r}")
                continue
            merged.setdefault(normalized.lower(), normalized)
    return list(merged.values())


class JobQueueChannel:
    """writes composed notifications to scheduled_jobs"""

    def __init__(self, db: Database, config: Settings = default_settings):
        self.db = db
        self.settings = config

    async def schedule(
        self,
        kind: ChannelKind,
        recipient: str,
        subject: str,
        body: str,
        link: Optional[str] = None,
        event_key: Optional[str] = None,
        description: str = "",
    ) -> bool:
        job = {
            "kind": ChannelKind(kind).value,
            "recipient": recipient,
            "subject": subject,
            "body": body,
            "link": link,
            "event_key": event_key,
            "description": description,
            "status": "queued",
            "created_at": utcnow(),
        }
        if job["kind"] == ChannelKind.EMAIL.value:
            job["from_email"] = self.settings.NOTIFICATION_FROM_EMAIL
            job["from_name"] = self.settings.NOTIFICATION_FROM_NAME
        try:
            await self.db.scheduled_jobs.insert_one(job)
        except PyMongoError as e:
            raise NotificationError(f"Could not queue {job['kind']} job for {recipient}: {e}")
        return True


class NotificationOrchestrator:
    def __init__(
        self,
        db: Database,
        access: AccessResolver,
        channel: JobQueueChannel,
        config: Settings = default_settings,
    ):
        self.db = db
        self.access = access
        self.channel = channel
        self.settings = config

    async def claim(self, event_key: str) -> bool:
        """reserve an event so its notifications are scheduled at most once"""
        try:
            await self.db.notification_batches.insert_one({"_id": event_key, "created_at": utcnow()})
        except DuplicateKeyError:
            logger.info(f"Notification batch {event_key} already sent, skipping")
            return False
        except PyMongoError as e:
            logger.error(f"Could not claim notification batch {event_key}: {e}")
            return False
        return True

    async def _fan_out(
        self,
        kind: ChannelKind,
        recipients: list[str],
        subject: str,
        body: str,
        link: Optional[str],
        event_key: str,
        description: str,
    ) -> int:
        """schedule one job per recipient on one channel. never raises"""
        scheduled = 0
        try:
            for recipient in recipients:
                if await self.channel.schedule(kind, recipient, subject, body, link, event_key, description):
                    scheduled += 1
        except Exception as e:
            logger.error(f"{kind.value} notifications for {event_key} failed after {scheduled} jobs: {e}", exc_info=True)
        return scheduled

    def _therapist_link(self, conversation: dict) -> str:
        return f"{self.settings.THERAPIST_DASHBOARD_URL}?conversation={conversation['_id']}"

    async def notify_therapists_new_message(
        self,
        conversation: dict,
        patient: dict,
        message: dict,
        tagged: bool = False,
    ) -> int:
        """patient -> therapists, used when the ai will not answer (tag, ai off, failure)"""
        event_key = f"message:{message['_id']}:therapists"
        email_on = self.settings.ENABLE_THERAPIST_EMAIL_NOTIFICATION
        push_on = self.settings.ENABLE_THERAPIST_PUSH_NOTIFICATION
        if not (email_on or push_on) or not await self.claim(event_key):
            return 0

        try:
            therapists = await self.access.therapists_for_patient(patient)
        except PyMongoError as e:
            logger.error(f"Could not resolve therapists for {event_key}: {e}")
            return 0
        if not therapists:
            logger.info(f"No therapists assigned to patient {patient['id']}, nothing to notify")
            return 0

        link = self._therapist_link(conversation)
        patient_name = patient.get("name", "Patient")
        scheduled = 0

        if email_on:
            values = {
                "patient_name": html.escape(patient_name),
                "message_preview": html.escape(preview(message["content"], self.settings.THERAPIST_EMAIL_PREVIEW_LENGTH)),
                "link": link,
            }
            subject_template = self.settings.THERAPIST_EMAIL_TAG_SUBJECT if tagged else self.settings.THERAPIST_EMAIL_SUBJECT
            scheduled += await self._fan_out(
                ChannelKind.EMAIL,
                merge_recipients(t.get("email", "") for t in therapists),
                render(subject_template, {"patient_name": patient_name}),
                render(self.settings.THERAPIST_EMAIL_BODY, values),
                link,
                event_key,
                "therapist new message email",
            )

        if push_on:
            title_template = self.settings.THERAPIST_PUSH_TAG_TITLE if tagged else self.settings.THERAPIST_PUSH_TITLE
            values = {
                "patient_name": patient_name,
                "message_preview": preview(message["content"], self.settings.THERAPIST_PUSH_PREVIEW_LENGTH),
            }
            scheduled += await self._fan_out(
                ChannelKind.PUSH,
                sorted({t["id"] for t in therapists}),
                render(title_template, values),
                render(self.settings.THERAPIST_PUSH_BODY, values),
                link,
                event_key,
                "therapist new message push",
            )

        logger.info(f"Scheduled {scheduled} therapist notifications for {event_key}")
        return scheduled

    async def notify_patient_new_message(self, conversation: dict, therapist: dict, message: dict) -> int:
        """therapist -> patient"""
        event_key = f"message:{message['_id']}:patient"
        email_on = self.settings.ENABLE_PATIENT_EMAIL_NOTIFICATION
        push_on = self.settings.ENABLE_PATIENT_PUSH_NOTIFICATION
        if not (email_on or push_on) or not await self.claim(event_key):
            return 0

        try:
            patient = await self.access.get_user(conversation["patient_id"])
        except PyMongoError as e:
            logger.error(f"Could not load patient for {event_key}: {e}")
            return 0
        if patient is None:
            return 0

        link = self.settings.PATIENT_CHAT_URL
        values = {
            "user_name": patient.get("name", ""),
            "therapist_name": therapist.get("name", "your therapist"),
            "message_preview": preview(message["content"], self.settings.PATIENT_PUSH_PREVIEW_LENGTH),
            "link": link,
        }
        scheduled = 0

        if email_on:
            escaped = {k: html.escape(v) if k != "link" else v for k, v in values.items()}
            scheduled += await self._fan_out(
                ChannelKind.EMAIL,
                merge_recipients([patient.get("email", "")]),
                render(self.settings.PATIENT_EMAIL_SUBJECT, values),
                render(self.settings.PATIENT_EMAIL_BODY, escaped),
                link,
                event_key,
                "patient new message email",
            )

        if push_on:
            scheduled += await self._fan_out(
                ChannelKind.PUSH,
                [patient["id"]],
                render(self.settings.PATIENT_PUSH_TITLE, values),
                render(self.settings.PATIENT_PUSH_BODY, values),
                link,
                event_key,
                "patient new message push",
            )
        return scheduled

    async def notify_danger(
        self,
        conversation: dict,
        patient: dict,
        message: dict,
        alert: dict,
    ) -> int:
        """danger escalation batch. shares the therapist event key with the general path"""
        event_key = f"message:{message['_id']}:therapists"
        if not await self.claim(event_key):
            return 0
        if not self.settings.ENABLE_DANGER_NOTIFICATION:
            logger.warning(f"Danger notifications disabled, {event_key} claimed without sending")
            return 0

        try:
            therapists = await self.access.therapists_for_patient(patient)
        except PyMongoError as e:
            logger.error(f"Could not resolve therapists for danger batch {event_key}: {e}")
            therapists = []

        recipients = merge_recipients(
            (t.get("email", "") for t in therapists),
            split_addresses(self.settings.DANGER_NOTIFICATION_EMAILS),
        )
        patient_name = patient.get("name", "Patient")
        link = self._therapist_link(conversation)
        subject = f"[URGENT] Therapy Chat Alert - {patient_name}: Danger detected"
        body = (
            f"<p><strong>Danger detected</strong> in the conversation with {html.escape(patient_name)}.</p>"
            f"<p>{html.escape(alert['message']).replace(chr(10), '<br>')}</p>"
            "<p>AI responses have been disabled and the conversation risk set to critical.</p>"
            f'<p><a href="{link}">Open the conversation</a></p>'
        )

        scheduled = await self._fan_out(
            ChannelKind.EMAIL, recipients, subject, body, link, event_key, "danger alert email"
        )
        scheduled += await self._fan_out(
            ChannelKind.PUSH,
            sorted({t["id"] for t in therapists}),
            f"URGENT: {patient_name} may be in danger",
            preview(message["content"], self.settings.THERAPIST_PUSH_PREVIEW_LENGTH),
            link,
            event_key,
            "danger alert push",
        )
        logger.warning(
            f"Danger notification batch {event_key}: {scheduled} jobs",
            extra={"conversation_id": conversation["_id"], "recipients": len(recipients)},
        )
        return scheduled

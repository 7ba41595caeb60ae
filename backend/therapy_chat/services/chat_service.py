# chat service: the patient send flow and therapist direct messages
#
# patient send:
#   1. persist the message (idempotent per clientMessageId)
#   2. tag detection, a tag routes the message to therapists only
#   3. danger screening (moderation, then keywords), escalation stops the ai
#   4. ai inactive or tagged -> notify therapists, otherwise call the ai
#   5. persist the ai reply and assess its safety block
#
# steps 2-3 are marked on the message ("tagged", "screened") so a client retry
# after a failure resumes at the ai step instead of re-running them. a danger
# escalation cut short by a failed write is completed by the retry

import logging
from dataclasses import dataclass
from typing import Optional

from pymongo.errors import DuplicateKeyError

from therapy_chat.config import Settings, settings as default_settings
from therapy_chat.errors import GatewayError, ValidationError
from therapy_chat.models.enums import ConversationStatus, SenderType
from therapy_chat.models.message import AISender, SubjectSender, TherapistSender
from therapy_chat.services.access import AccessResolver
from therapy_chat.services.ai_gateway import AIGateway
from therapy_chat.services.conversation_service import ConversationService, ai_active
from therapy_chat.services.danger_detection import DangerPipeline
from therapy_chat.services.message_service import MessageService
from therapy_chat.services.notifications import NotificationOrchestrator
from therapy_chat.services.structured_response import RESPONSE_SCHEMA_INSTRUCTION, extract_display_content, extract_safety
from therapy_chat.services.sync import SyncService
from therapy_chat.services.tagging import TaggingEngine

logger = logging.getLogger(__name__)

AI_LABEL = "AI Assistant"
SYSTEM_LABEL = "System"


@dataclass
class SendOutcome:
    conversation: dict
    message: dict
    ai_message: Optional[dict] = None
    tagged: bool = False
    blocked: bool = False
    safety_message: Optional[str] = None


class ChatService:
    def __init__(
        self,
        access: AccessResolver,
        conversations: ConversationService,
        messages: MessageService,
        tagging: TaggingEngine,
        danger: DangerPipeline,
        notifier: NotificationOrchestrator,
        gateway: AIGateway,
        sync: SyncService,
        config: Settings = default_settings,
    ):
        self.access = access
        self.conversations = conversations
        self.messages = messages
        self.tagging = tagging
        self.danger = danger
        self.notifier = notifier
        self.gateway = gateway
        self.sync = sync
        self.settings = config

    def _clean(self, content: str) -> str:
        content = (content or "").strip()
        if not content:
            raise ValidationError("Message cannot be empty")
        if len(content) > self.settings.MAX_MESSAGE_LENGTH:
            raise ValidationError(f"Message exceeds {self.settings.MAX_MESSAGE_LENGTH} characters")
        return content

    async def patient_conversation(
        self,
        patient: dict,
        conversation_id: Optional[int] = None,
        group_id: Optional[str] = None,
    ) -> dict:
        """the conversation a patient writes to, created lazily on first contact"""
        if conversation_id is not None:
            conversation = await self.conversations.get_for_user(patient, conversation_id)
            if conversation["status"] == ConversationStatus.CLOSED.value:
                raise ValidationError("Conversation is closed")
            return conversation
        conversation, _ = await self.conversations.get_or_create_for_patient(patient, group_id)
        return conversation

    async def send_patient_message(
        self,
        patient: dict,
        content: str,
        conversation_id: Optional[int] = None,
        group_id: Optional[str] = None,
        client_message_id: Optional[str] = None,
        reason_code: Optional[str] = None,
    ) -> SendOutcome:
        content = self._clean(content)
        conversation = await self.patient_conversation(patient, conversation_id, group_id)

        message = None
        if client_message_id:
            message = await self.messages.find_by_client_id(conversation["_id"], client_message_id)
            if message is not None:
                logger.info(f"Retry of message {message['_id']} ({client_message_id}), resuming")
        if message is None:
            try:
                message = await self.messages.append(
                    conversation["_id"],
                    SubjectSender(id=patient["id"]),
                    content,
                    client_message_id=client_message_id,
                )
            except DuplicateKeyError:
                message = await self.messages.find_by_client_id(conversation["_id"], client_message_id)
                if message is None:
                    raise

        return await self._process(patient, conversation, message, reason_code)

    async def tag_therapist(
        self,
        patient: dict,
        reason_code: Optional[str] = None,
        note: Optional[str] = None,
        conversation_id: Optional[int] = None,
        group_id: Optional[str] = None,
    ) -> SendOutcome:
        """structured tag request, sent through the normal message flow"""
        if not self.tagging.enabled:
            raise ValidationError("Tagging is disabled")
        if reason_code and self.tagging.reason_for(reason_code) is None:
            raise ValidationError(f"Unknown tag reason '{reason_code}'")
        content = self.tagging.compose_tag_message(reason_code, note)
        return await self.send_patient_message(
            patient, content, conversation_id, group_id, reason_code=reason_code
        )

    async def _process(self, patient: dict, conversation: dict, message: dict, reason_code: Optional[str]) -> SendOutcome:
        # an escalation interrupted by a failed write is finished before anything else
        if await self.danger.resume(conversation, message, patient):
            await self.messages.set_flags(message["_id"], {"screened": True})
            return await self._blocked(patient, conversation["_id"], message, bool(message.get("tagged")))

        tagged = bool(message.get("tagged"))
        if not message.get("screened"):
            if "tagged" not in message:
                tagged = await self._apply_tags(patient, conversation, message, reason_code)
                await self.messages.set_flags(message["_id"], {"tagged": tagged})
            detection = await self.danger.screen(message["content"])
            if detection:
                await self.danger.escalate(conversation, message, patient, detection)
            await self.messages.set_flags(message["_id"], {"screened": True})
            if detection:
                return await self._blocked(patient, conversation["_id"], message, tagged)
        elif message.get("danger_escalation"):
            return await self._blocked(patient, conversation["_id"], message, tagged)

        if message.get("ai_reply_id"):
            ai_message = await self.messages.get(message["ai_reply_id"])
            current = await self.conversations.get(conversation["_id"])
            return SendOutcome(current, message, ai_message, tagged=tagged)

        return await self._respond(patient, conversation["_id"], message, tagged)

    async def _apply_tags(self, patient: dict, conversation: dict, message: dict, reason_code: Optional[str]) -> bool:
        if not self.tagging.enabled:
            return False
        therapists = await self.access.therapists_for_patient(patient)
        mention = self.tagging.detect(message["content"], therapists, reason_code)
        if mention is None:
            return False
        await self.tagging.apply(conversation, message, mention)
        return True

    async def _blocked(self, patient: dict, conversation_id: int, message: dict, tagged: bool) -> SendOutcome:
        await self.sync.mark_seen(patient, conversation_id)
        conversation = await self.conversations.get(conversation_id)
        return SendOutcome(
            conversation,
            message,
            tagged=tagged,
            blocked=True,
            safety_message=self.settings.DANGER_BLOCKED_MESSAGE,
        )

    async def _respond(self, patient: dict, conversation_id: int, message: dict, tagged: bool) -> SendOutcome:
        # fresh state, tagging or another request may have changed it
        conversation = await self.conversations.get(conversation_id)

        if tagged or not ai_active(conversation):
            await self.notifier.notify_therapists_new_message(conversation, patient, message, tagged=tagged)
            await self.sync.mark_seen(patient, conversation_id)
            return SendOutcome(conversation, message, tagged=tagged, blocked=bool(conversation.get("blocked")))

        context = await self.messages.build_ai_context(conversation_id, self.settings.CONVERSATION_CONTEXT)
        context.append({"role": "system", "content": RESPONSE_SCHEMA_INSTRUCTION})
        try:
            completion = await self.gateway.complete(context)
            display = extract_display_content(completion.content)
            if not display:
                raise GatewayError("AI did not generate a response. Please try again.")
        except GatewayError:
            # the patient message stays in the log, make sure a human sees it
            await self.notifier.notify_therapists_new_message(conversation, patient, message)
            raise

        ai_message = await self.messages.append(
            conversation_id,
            AISender(),
            display,
            raw={"content": completion.content, "tokens_used": completion.tokens_used, "response": completion.raw_response},
            reply_to=message["_id"],
        )
        await self.messages.link_ai_reply(message["_id"], ai_message["_id"])
        await self.sync.mark_seen(patient, conversation_id)

        detection = await self.danger.assess_response(completion.content)
        if detection:
            await self.danger.escalate(conversation, message, patient, detection)
            safety = extract_safety(completion.content) or {}
            return SendOutcome(
                await self.conversations.get(conversation_id),
                message,
                ai_message,
                tagged=tagged,
                blocked=True,
                safety_message=safety.get("safety_message") or self.settings.DANGER_BLOCKED_MESSAGE,
            )
        return SendOutcome(await self.conversations.get(conversation_id), message, ai_message, tagged=tagged)

    # therapist side

    async def send_therapist_message(self, therapist: dict, conversation_id: int, content: str) -> dict:
        content = self._clean(content)
        conversation = await self.conversations.get_for_user(therapist, conversation_id)
        if conversation["status"] == ConversationStatus.CLOSED.value:
            raise ValidationError("Conversation is closed")

        message = await self.messages.append(conversation_id, TherapistSender(id=therapist["id"]), content)
        await self.sync.mark_seen(therapist, conversation_id)
        await self.notifier.notify_patient_new_message(conversation, therapist, message)
        logger.info(f"Therapist {therapist['id']} sent message {message['_id']} in conversation {conversation_id}")
        return message

    async def read_messages(self, user: dict, conversation_id: int, after_id: Optional[int] = None) -> tuple[list[dict], int]:
        """phase 2 fetch. reading marks the conversation seen for the caller"""
        await self.conversations.get_for_user(user, conversation_id)
        messages, cursor = await self.messages.list_after(conversation_id, after_id)
        await self.sync.mark_seen(user, conversation_id)
        return messages, cursor

    async def sender_labels(self, messages: list[dict], patient_id: str) -> dict[str, str]:
        """display names keyed by sender id, plus labels for ai and system"""
        user_ids = {patient_id}
        user_ids.update(
            m["sender"]["id"] for m in messages
            if m["sender"].get("type") == SenderType.THERAPIST.value and m["sender"].get("id")
        )
        labels = {u["id"]: u.get("name", "") for u in await self.access.get_users(sorted(user_ids))}
        labels[SenderType.AI.value] = AI_LABEL
        labels[SenderType.SYSTEM.value] = SYSTEM_LABEL
        return labels

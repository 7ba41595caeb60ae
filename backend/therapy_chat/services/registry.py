# service wiring: builds the chat core services around one database and gateway
# routers get a fresh bundle per request through dependencies.get_services

from dataclasses import dataclass

from therapy_chat.config import Settings, settings as default_settings
from therapy_chat.services.access import AccessResolver
from therapy_chat.services.ai_gateway import AIGateway
from therapy_chat.services.alert_service import AlertService
from therapy_chat.services.audit import AuditLog
from therapy_chat.services.chat_service import ChatService
from therapy_chat.services.conversation_service import ConversationService
from therapy_chat.services.danger_detection import DangerPipeline
from therapy_chat.services.db import Database
from therapy_chat.services.drafts import DraftService
from therapy_chat.services.message_service import MessageService
from therapy_chat.services.notes import NoteService
from therapy_chat.services.notifications import JobQueueChannel, NotificationOrchestrator
from therapy_chat.services.speech import SpeechService
from therapy_chat.services.sync import SyncService
from therapy_chat.services.tagging import TaggingEngine


@dataclass
class TherapyServices:
    settings: Settings
    access: AccessResolver
    audit: AuditLog
    messages: MessageService
    conversations: ConversationService
    alerts: AlertService
    notifier: NotificationOrchestrator
    danger: DangerPipeline
    tagging: TaggingEngine
    sync: SyncService
    drafts: DraftService
    notes: NoteService
    speech: SpeechService
    chat: ChatService


def build_services(db: Database, gateway: AIGateway, config: Settings = default_settings) -> TherapyServices:
    access = AccessResolver(db)
    audit = AuditLog(db)
    messages = MessageService(db, config)
    conversations = ConversationService(db, access, audit, messages, config)
    alerts = AlertService(db, access)
    notifier = NotificationOrchestrator(db, access, JobQueueChannel(db, config), config)
    danger = DangerPipeline(db, conversations, alerts, notifier, gateway, config)
    tagging = TaggingEngine(db, conversations, alerts, config)
    sync = SyncService(db, access, alerts)
    drafts = DraftService(db, conversations, messages, notifier, gateway, audit, config)
    notes = NoteService(db, conversations, audit)
    speech = SpeechService(gateway, config)
    chat = ChatService(access, conversations, messages, tagging, danger, notifier, gateway, sync, config)
    return TherapyServices(
        settings=config,
        access=access,
        audit=audit,
        messages=messages,
        conversations=conversations,
        alerts=alerts,
        notifier=notifier,
        danger=danger,
        tagging=tagging,
        sync=sync,
        drafts=drafts,
        notes=notes,
        speech=speech,
        chat=chat,
    )

# backend configuration
# loads env vars for mongodb, jwt, gemini, danger detection, tagging, notifications, drafts

import os
from pathlib import Path
from pydantic_settings import BaseSettings
from dotenv import load_dotenv

# load .env from project root
load_dotenv(Path(__file__).parent.parent.parent / ".env")


DEFAULT_TAG_REASONS = (
    '[{"code": "overwhelmed", "label": "I\'m feeling overwhelmed", "urgency": "normal"},'
    ' {"code": "need_talk", "label": "I need to talk soon", "urgency": "urgent"},'
    ' {"code": "urgent", "label": "This feels urgent", "urgency": "urgent"},'
    ' {"code": "emergency", "label": "This is an emergency", "urgency": "emergency"}]'
)


class Settings(BaseSettings):
    # mongodb
    MONGODB_URI: str = os.getenv("MONGODB_URI", "")
    MONGODB_DATABASE: str = os.getenv("MONGODB_DATABASE", "therapy_chat_db")

    # jwt auth
    JWT_SECRET: str = os.getenv("JWT_SECRET", "therapy-chat-dev-secret-change-in-production")
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60

    # gemini (chat responses, drafts, summaries)
    GEMINI_API_KEY: str = os.getenv("GEMINI_API_KEY", "")
    GEMINI_MODEL: str = os.getenv("GEMINI_MODEL", "gemini-2.5-flash")
    LLM_TEMPERATURE: float = 1.0
    LLM_MAX_TOKENS: int = 2048
    LLM_TIMEOUT_SECONDS: float = 60.0

    # moderation classifier (danger detection primary layer)
    MODERATION_ENABLED: bool = os.getenv("MODERATION_ENABLED", "false").lower() == "true"
    MODERATION_MODEL: str = os.getenv("MODERATION_MODEL", "gemini-2.5-flash-lite")
    MODERATION_TIMEOUT_SECONDS: float = 5.0

    # cors
    FRONTEND_URL: str = os.getenv("FRONTEND_URL", "http://localhost:3000")

    # conversation defaults
    DEFAULT_MODE: str = "ai_hybrid"
    ENABLE_AI: bool = True
    AUTO_START: bool = False
    AUTO_START_CONTEXT: str = "Hello! I'm here to listen and support you. How are you feeling today?"
    CONVERSATION_CONTEXT: str = (
        "You are a supportive, empathetic assistant in a therapy chat supervised by licensed therapists. "
        "Listen carefully, respond warmly, and never give medical diagnoses. "
        "If the patient mentions self-harm or danger, encourage them to contact a crisis line."
    )
    AI_CONTEXT_WINDOW: int = 50
    MESSAGE_PAGE_LIMIT: int = 200
    MAX_MESSAGE_LENGTH: int = 10000

    # danger detection
    ENABLE_DANGER_DETECTION: bool = True
    DANGER_KEYWORDS: str = os.getenv(
        "DANGER_KEYWORDS",
        "kill myself, suicide, end my life, hurt myself, self-harm, want to die, overdose",
    )
    DANGER_NOTIFICATION_EMAILS: str = os.getenv("DANGER_NOTIFICATION_EMAILS", "")
    DANGER_BLOCKED_MESSAGE: str = (
        "I noticed some concerning content. Please consider reaching out to a trusted person or crisis hotline."
    )

    # tagging
    ENABLE_TAGGING: bool = True
    TAG_REASONS: str = os.getenv("TAG_REASONS", DEFAULT_TAG_REASONS)

    # notifications
    ENABLE_THERAPIST_EMAIL_NOTIFICATION: bool = True
    ENABLE_THERAPIST_PUSH_NOTIFICATION: bool = True
    ENABLE_PATIENT_EMAIL_NOTIFICATION: bool = True
    ENABLE_PATIENT_PUSH_NOTIFICATION: bool = True
    ENABLE_DANGER_NOTIFICATION: bool = True
    NOTIFICATION_FROM_EMAIL: str = os.getenv("NOTIFICATION_FROM_EMAIL", "noreply@therapychat.com")
    NOTIFICATION_FROM_NAME: str = "Therapy Chat"
    THERAPIST_DASHBOARD_URL: str = os.getenv("THERAPIST_DASHBOARD_URL", "http://localhost:3000/dashboard")
    PATIENT_CHAT_URL: str = os.getenv("PATIENT_CHAT_URL", "http://localhost:3000/chat")

    THERAPIST_EMAIL_SUBJECT: str = "[Therapy Chat] New message from {{patient_name}}"
    THERAPIST_EMAIL_TAG_SUBJECT: str = "[Therapy Chat] @therapist tag from {{patient_name}}"
    THERAPIST_EMAIL_BODY: str = (
        "<p>Hello,</p>"
        "<p>{{patient_name}} sent a new message in Therapy Chat:</p>"
        "<blockquote>{{message_preview}}</blockquote>"
        '<p><a href="{{link}}">Open the therapist dashboard</a></p>'
    )
    THERAPIST_PUSH_TITLE: str = "New message from {{patient_name}}"
    THERAPIST_PUSH_TAG_TITLE: str = "@therapist tag from {{patient_name}}"
    THERAPIST_PUSH_BODY: str = "{{message_preview}}"
    THERAPIST_EMAIL_PREVIEW_LENGTH: int = 200
    THERAPIST_PUSH_PREVIEW_LENGTH: int = 100

    PATIENT_EMAIL_SUBJECT: str = "[Therapy Chat] New message from your therapist"
    PATIENT_EMAIL_BODY: str = (
        "<p>Hello @user_name,</p>"
        "<p>Your therapist @therapist_name sent you a new message.</p>"
        '<p><a href="{{link}}">Open Therapy Chat</a></p>'
    )
    PATIENT_PUSH_TITLE: str = "New message from your therapist"
    PATIENT_PUSH_BODY: str = "Your therapist {{therapist_name}} sent you a new message. Tap to open."
    PATIENT_PUSH_PREVIEW_LENGTH: int = 80

    # drafts and summaries
    ENABLE_DRAFTS: bool = True
    DRAFT_CONTEXT: str = os.getenv("DRAFT_CONTEXT", "")
    DRAFT_UNDO_DEPTH: int = 10
    SUMMARY_CONTEXT: str = os.getenv("SUMMARY_CONTEXT", "")
    SUMMARY_MESSAGE_LIMIT: int = 200

    # speech to text, enabled only when a model is also set
    ENABLE_SPEECH_TO_TEXT: bool = os.getenv("ENABLE_SPEECH_TO_TEXT", "false").lower() == "true"
    SPEECH_TO_TEXT_MODEL: str = os.getenv("SPEECH_TO_TEXT_MODEL", "")
    SPEECH_TO_TEXT_LANGUAGE: str = os.getenv("SPEECH_TO_TEXT_LANGUAGE", "auto")
    SPEECH_TO_TEXT_TIMEOUT_SECONDS: float = 60.0
    MAX_AUDIO_BYTES: int = 25 * 1024 * 1024

    # polling
    POLLING_INTERVAL_SECONDS: int = 3

    model_config = {"env_file": ".env", "extra": "ignore"}


settings = Settings()

# speech to text: validates an uploaded voice clip and hands it to the gateway
# the text comes back to the client, which sends it through the normal message flow
#
# checks, in order: feature on (flag and model), clip present, size cap, audio format

import logging
from typing import Optional

from therapy_chat.config import Settings, settings as default_settings
from therapy_chat.errors import GatewayError, ValidationError
from therapy_chat.services.ai_gateway import AIGateway

logger = logging.getLogger(__name__)

ALLOWED_AUDIO_TYPES = frozenset({
    "audio/webm",
    "audio/webm;codecs=opus",
    "audio/wav",
    "audio/mp3",
    "audio/mpeg",
    "audio/mp4",
    "audio/ogg",
    "audio/flac",
    "video/webm",
})


def base_mime_type(mime_type: str) -> str:
    """'audio/webm;codecs=opus' -> 'audio/webm'"""
    return mime_type.split(";", 1)[0].strip().lower()


class SpeechService:

    def __init__(self, gateway: AIGateway, config: Settings = default_settings):
        self.gateway = gateway
        self.settings = config

    @property
    def enabled(self) -> bool:
        return self.settings.ENABLE_SPEECH_TO_TEXT and bool(self.settings.SPEECH_TO_TEXT_MODEL.strip())

    @property
    def language(self) -> Optional[str]:
        """configured language, None lets the model detect it"""
        language = (self.settings.SPEECH_TO_TEXT_LANGUAGE or "").strip()
        if not language or language.lower() == "auto":
            return None
        return language

    def _check_format(self, mime_type: Optional[str]) -> str:
        mime_type = (mime_type or "").replace(" ", "").lower()
        if mime_type in ALLOWED_AUDIO_TYPES:
            return mime_type
        if base_mime_type(mime_type) in ALLOWED_AUDIO_TYPES:
            return base_mime_type(mime_type)
        raise ValidationError(f"Invalid audio format: {mime_type or 'unknown'}. Supported: WebM, WAV, MP3, OGG, FLAC")

    async def transcribe(self, user: dict, audio: Optional[bytes], mime_type: Optional[str]) -> str:
        """transcribe a patient's voice clip. raises ValidationError or GatewayError"""
        if not self.enabled:
            raise ValidationError("Speech-to-text is not enabled")
        if not audio:
            raise ValidationError("No audio file uploaded")
        if len(audio) > self.settings.MAX_AUDIO_BYTES:
            limit_mb = self.settings.MAX_AUDIO_BYTES // (1024 * 1024)
            raise ValidationError(f"Audio file too large (max {limit_mb}MB)")
        mime_type = self._check_format(mime_type)

        text = await self.gateway.transcribe(
            audio,
            base_mime_type(mime_type),
            self.settings.SPEECH_TO_TEXT_MODEL.strip(),
            language=self.language,
        )
        if not text:
            logger.warning(f"Empty transcription for user {user['id']} ({len(audio)} bytes)")
            raise GatewayError("Speech transcription failed")
        logger.info(f"Transcribed voice clip for user {user['id']}: {len(text)} chars")
        return text

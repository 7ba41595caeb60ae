# ai gateway: langchain-powered gemini completions and moderation
# the chat core only sees complete(), moderate() and transcribe(); everything model-specific stays here
#
# complete():
#   1. convert role-tagged dicts to langchain messages
#   2. call gemini with a bounded timeout
#   3. return text + token usage + raw metadata, or raise GatewayError
#
# moderate():
#   tiny classifier chain, answers DANGER / SAFE. timeouts and errors raise GatewayError
#   so callers can treat the layer as unavailable rather than "no danger"
#
# transcribe():
#   audio bytes go to a multimodal model as an inline media block, text comes back

import asyncio
import base64
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from langchain_core.messages import AIMessage, HumanMessage, SystemMessage
from langchain_core.output_parsers import StrOutputParser
from langchain_core.prompts import ChatPromptTemplate
from langchain_google_genai import ChatGoogleGenerativeAI

from therapy_chat.config import Settings, settings as default_settings
from therapy_chat.errors import GatewayError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Completion:
    content: str
    tokens_used: int = 0
    raw_response: dict[str, Any] = field(default_factory=dict)


class ModerationVerdict(str, Enum):
    FLAGGED = "flagged"
    CLEAR = "clear"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ModerationResult:
    verdict: ModerationVerdict
    reason: str = ""


MODERATION_PROMPT = ChatPromptTemplate.from_messages([
    ("system", "You screen messages sent by patients in a supervised therapy chat.\n"
     "Respond with ONLY one line: DANGER: <short reason> or SAFE.\n"
     "DANGER = suicidal intent, self-harm, intent to harm others, or an immediate crisis.\n"
     "SAFE = everything else, including sadness or stress without danger."),
    ("human", "{message}"),
])

_LC_MESSAGE_TYPES = {
    "system": SystemMessage,
    "assistant": AIMessage,
    "user": HumanMessage,
}


def _to_langchain(messages: list[dict]) -> list:
    converted = []
    for m in messages:
        message_cls = _LC_MESSAGE_TYPES.get(m.get("role"), HumanMessage)
        converted.append(message_cls(content=m.get("content", "")))
    return converted


def _text_of(content) -> str:
    """gemini may return a list of content parts instead of a plain string"""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and part.get("type") == "text":
                parts.append(part.get("text", ""))
        return "".join(parts)
    return str(content or "")


def parse_moderation_output(output: str) -> ModerationResult:
    """map classifier output to a verdict, anything unexpected is UNKNOWN"""
    text = (output or "").strip()
    upper = text.upper()
    if upper.startswith("DANGER"):
        reason = text.split(":", 1)[1].strip() if ":" in text else ""
        return ModerationResult(ModerationVerdict.FLAGGED, reason)
    if upper.startswith("SAFE"):
        return ModerationResult(ModerationVerdict.CLEAR)
    return ModerationResult(ModerationVerdict.UNKNOWN, text[:100])


class AIGateway:
    """gemini-backed completion and moderation calls"""

    def __init__(self, config: Settings = default_settings):
        self.settings = config
        self._moderation_chain = None

    @property
    def moderation_available(self) -> bool:
        return self.settings.MODERATION_ENABLED and bool(self.settings.GEMINI_API_KEY)

    def _llm(self, model: str, temperature: float, max_tokens: int) -> ChatGoogleGenerativeAI:
        return ChatGoogleGenerativeAI(
            model=model,
            google_api_key=self.settings.GEMINI_API_KEY,
            temperature=temperature,
            max_output_tokens=max_tokens,
        )

    def _get_moderation_chain(self):
        """get or create the moderation classifier chain (tiny, fast)"""
        if self._moderation_chain is None:
            classifier = ChatGoogleGenerativeAI(
                model=self.settings.MODERATION_MODEL,
                google_api_key=self.settings.GEMINI_API_KEY,
                temperature=0.0,
                max_output_tokens=40,
            )
            self._moderation_chain = MODERATION_PROMPT | classifier | StrOutputParser()
        return self._moderation_chain

    async def complete(
        self,
        messages: list[dict],
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> Completion:
        """send role-tagged messages to gemini and return the generated text"""
        model = model or self.settings.GEMINI_MODEL
        llm = self._llm(
            model,
            self.settings.LLM_TEMPERATURE if temperature is None else temperature,
            max_tokens or self.settings.LLM_MAX_TOKENS,
        )
        try:
            result = await asyncio.wait_for(
                llm.ainvoke(_to_langchain(messages)),
                timeout=self.settings.LLM_TIMEOUT_SECONDS,
            )
        except asyncio.TimeoutError:
            logger.error(f"LLM call to {model} timed out after {self.settings.LLM_TIMEOUT_SECONDS}s")
            raise GatewayError("The AI service timed out. Please try again.")
        except Exception as e:
            logger.error(f"LLM call to {model} failed: {e}")
            raise GatewayError("The AI service is unavailable. Please try again.")

        usage = getattr(result, "usage_metadata", None) or {}
        raw = dict(getattr(result, "response_metadata", None) or {})
        content = _text_of(result.content)
        logger.info(f"LLM completion from {model}: {len(content)} chars, {usage.get('total_tokens', 0)} tokens")
        return Completion(
            content=content,
            tokens_used=int(usage.get("total_tokens", 0) or 0),
            raw_response=raw,
        )

    async def moderate(self, text: str) -> ModerationResult:
        """classify a patient message. raises GatewayError when the classifier is unavailable"""
        if not self.moderation_available:
            raise GatewayError("Moderation is not configured")
        try:
            output = await asyncio.wait_for(
                self._get_moderation_chain().ainvoke({"message": text}),
                timeout=self.settings.MODERATION_TIMEOUT_SECONDS,
            )
        except asyncio.TimeoutError:
            raise GatewayError("Moderation timed out")
        except Exception as e:
            raise GatewayError(f"Moderation failed: {e}")
        return parse_moderation_output(output)

    async def transcribe(self, audio: bytes, mime_type: str, model: str, language: Optional[str] = None) -> str:
        """send an audio clip to a multimodal gemini model and return the spoken words"""
        instruction = "Transcribe this audio recording verbatim. Reply with the spoken words only."
        if language:
            instruction += f" The speech is in {language}."
        message = HumanMessage(content=[
            {"type": "text", "text": instruction},
            {"type": "media", "mime_type": mime_type, "data": base64.b64encode(audio).decode("ascii")},
        ])
        llm = self._llm(model, 0.0, self.settings.LLM_MAX_TOKENS)
        try:
            result = await asyncio.wait_for(
                llm.ainvoke([message]),
                timeout=self.settings.SPEECH_TO_TEXT_TIMEOUT_SECONDS,
            )
        except asyncio.TimeoutError:
            logger.error(f"Transcription with {model} timed out")
            raise GatewayError("Speech transcription failed")
        except Exception as e:
            logger.error(f"Transcription with {model} failed: {e}")
            raise GatewayError("Speech transcription failed")

        text = _text_of(result.content).strip()
        logger.info(f"Transcribed {len(audio)} bytes of {mime_type} with {model}: {len(text)} chars")
        return text


_gateway: Optional[AIGateway] = None


def get_ai_gateway() -> AIGateway:
    """dependency injection for the shared gateway instance"""
    global _gateway
    if _gateway is None:
        _gateway = AIGateway()
    return _gateway

# structured llm responses: schema instruction, json parsing and display text extraction
# the chat model is asked for json carrying a safety block next to the text shown to the patient

import json
import logging
import re
from typing import Optional

logger = logging.getLogger(__name__)

RESPONSE_SCHEMA_INSTRUCTION = """Respond ONLY with a JSON object of this shape:
{
  "type": "response",
  "safety": {
    "is_safe": true,
    "danger_level": null,
    "detected_concerns": [],
    "requires_intervention": false,
    "safety_message": null
  },
  "content": {
    "text_blocks": [{"type": "paragraph", "content": "..."}]
  },
  "metadata": {}
}
danger_level is one of null, "warning", "critical", "emergency".
Use "critical" or "emergency" only when the patient may be in danger."""

_FENCE_RE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL | re.IGNORECASE)


def parse_llm_json(text: str) -> Optional[dict]:
    """parse a json object from model output, tolerating code fences and leading chatter"""
    if not text:
        return None
    candidate = text.strip()
    fenced = _FENCE_RE.match(candidate)
    if fenced:
        candidate = fenced.group(1)

    try:
        parsed = json.loads(candidate)
        return parsed if isinstance(parsed, dict) else None
    except ValueError:
        pass

    start, end = candidate.find("{"), candidate.rfind("}")
    if start == -1 or end <= start:
        return None
    try:
        parsed = json.loads(candidate[start:end + 1])
    except ValueError:
        return None
    return parsed if isinstance(parsed, dict) else None


def extract_display_content(text: str) -> str:
    """human-readable text from a possibly structured response"""
    parsed = parse_llm_json(text)
    if parsed is None:
        return (text or "").strip()

    content = parsed.get("content")
    if isinstance(content, str):
        return content.strip()
    if isinstance(content, dict):
        blocks = content.get("text_blocks") or []
        texts = [
            str(b.get("content", "")).strip() if isinstance(b, dict) else str(b).strip()
            for b in blocks
        ]
        joined = "\n\n".join(t for t in texts if t)
        if joined:
            return joined
        if isinstance(content.get("text"), str):
            return content["text"].strip()

    # json without a recognised content block, fall back to raw text
    logger.debug("Structured response had no text blocks, using raw output")
    return (text or "").strip()


def extract_safety(text: str) -> Optional[dict]:
    """the safety block of a structured response, if any"""
    parsed = parse_llm_json(text)
    if parsed is None:
        return None
    safety = parsed.get("safety")
    return safety if isinstance(safety, dict) else None

"""OpenAI-compatible chat client and tolerant JSON parsing for model replies."""

import json
import logging
import re
from typing import Any, Optional, Tuple

from openai import AsyncOpenAI

from config import settings
from services.errors import LLMUnavailableError, StageExecutionError

logger = logging.getLogger(__name__)

_FENCE_START = re.compile(r"^```(?:json)?\s*", re.IGNORECASE)
_FENCE_END = re.compile(r"\s*```$")
_TRAILING_COMMA = re.compile(r",(\s*[}\]])")


def get_llm_client() -> Optional[AsyncOpenAI]:
    """Get the LLM client, handling placeholders."""
    api_key = (settings.LLM_API_KEY or "").strip()
    if not api_key or "your_" in api_key or api_key == "test-key":
        return None
    return AsyncOpenAI(
        api_key=api_key,
        base_url=settings.LLM_BASE_URL or None,
        timeout=settings.LLM_TIMEOUT_SECONDS,
        max_retries=1,
    )


async def complete_json(prompt: str, temperature: float = 0.2, max_tokens: int = 2048) -> str:
    """Run one chat completion and return the raw text content."""
    client = get_llm_client()
    if client is None:
        raise LLMUnavailableError("LLM_API_KEY is not configured")

    try:
        response = await client.chat.completions.create(
            model=settings.LLM_MODEL,
            messages=[{"role": "user", "content": prompt}],
            temperature=temperature,
            max_tokens=max_tokens,
            response_format={"type": "json_object"},
        )
    except Exception as exc:
        raise StageExecutionError(f"LLM request failed: {exc}") from exc

    if not response.choices:
        raise StageExecutionError("LLM returned no choices")
    return response.choices[0].message.content or ""


def _close_truncated(text: str) -> str:
    stack = []
    in_string = False
    escaped = False
    for char in text:
        if escaped:
            escaped = False
            continue
        if char == "\\":
            escaped = True
            continue
        if char == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if char == "{":
            stack.append("}")
        elif char == "[":
            stack.append("]")
        elif char in "}]" and stack and stack[-1] == char:
            stack.pop()
    if in_string:
        text += '"'
    return text + "".join(reversed(stack))


def _repair(text: str) -> str:
    return _TRAILING_COMMA.sub(r"\1", _close_truncated(text.strip().rstrip(",")))


def _try_load(text: str) -> Tuple[bool, Any]:
    try:
        return True, json.loads(text)
    except (TypeError, ValueError):
        return False, None


def parse_llm_json(raw: Any) -> Tuple[bool, Any]:
    """
    Parse JSON out of model output.

    Tries, in order: the text with code fences stripped, a repaired copy
    (trailing commas dropped, truncated structures closed), then the outermost
    ``{...}`` or ``[...]`` slice. Returns ``(ok, data)``.
    """
    if not isinstance(raw, str) or not raw.strip():
        return False, None

    cleaned = _FENCE_END.sub("", _FENCE_START.sub("", raw.strip())).strip()
    for candidate in (cleaned, _repair(cleaned)):
        ok, data = _try_load(candidate)
        if ok:
            return True, data

    for opener, closer in (("{", "}"), ("[", "]")):
        first, last = cleaned.find(opener), cleaned.rfind(closer)
        if first == -1 or last <= first:
            continue
        segment = cleaned[first:last + 1]
        for candidate in (segment, _repair(segment)):
            ok, data = _try_load(candidate)
            if ok:
                return True, data

    logger.warning("LLM JSON parse failed: %s", cleaned[:200])
    return False, None

"""
Turns free-form user text into a scheduling intent using a chat-completion
provider. Every failure degrades to "not a scheduling request"; nothing here
raises to the caller and nothing is retried.
"""

import json
import logging
import os
import re
from dataclasses import dataclass
from typing import Optional, Sequence, Union

import httpx
from pydantic import ValidationError

from schemas import NotAScheduleRequest, SchedulingIntent

logger = logging.getLogger(__name__)

SCHEDULE_TIMEOUT_SECONDS = float(os.getenv("SCHEDULE_TIMEOUT_SECONDS", "15"))


@dataclass(frozen=True)
class CompletionProvider:
    name: str
    env_var: str
    api_url: str
    model: str

    @property
    def api_key(self) -> Optional[str]:
        return os.getenv(self.env_var) or None


# Priority order: the first provider with a key wins
DEFAULT_PROVIDERS = (
    CompletionProvider("xai", "XAI_API_KEY", "https://api.x.ai/v1/chat/completions", "grok-beta"),
    CompletionProvider("openai", "OPENAI_API_KEY", "https://api.openai.com/v1/chat/completions", "gpt-4o-mini"),
)

SYSTEM_PROMPT = """You are a scheduling assistant. Your job is to extract scheduling information from user requests and return ONLY valid JSON.

Be very forgiving of typos and misspellings:
- "shedule" = "schedule"
- "tomorow" = "tomorrow"
- "doctr" = "doctor"
- "apointment" = "appointment"
- "meetng" = "meeting"

Return ONLY a JSON object, no other text:
{
  "isSchedulingRequest": true/false,
  "title": "corrected event title (fix obvious typos)",
  "date": "YYYY-MM-DD or relative like 'tomorrow'",
  "time": "HH:MM or description like 'morning'",
  "duration": "duration in minutes or description",
  "location": "location if mentioned (correct spelling)",
  "guests": ["email1", "email2"] or [],
  "description": "additional details (correct spelling)",
  "missing": ["time", "date", "duration"]
}

The "missing" list names the fields that are still needed.
If it's not a scheduling request, return {"isSchedulingRequest": false}"""

COMMON_TYPOS = {
    "shedule": "schedule",
    "schedual": "schedule",
    "tomorow": "tomorrow",
    "tommorow": "tomorrow",
    "tommorrow": "tomorrow",
    "doctr": "doctor",
    "docter": "doctor",
    "apointment": "appointment",
    "appointmnet": "appointment",
    "meetng": "meeting",
    "dentst": "dentist",
}

_TYPO_RE = re.compile(r"\b(" + "|".join(COMMON_TYPOS) + r")\b", re.IGNORECASE)

ExtractionResult = Union[SchedulingIntent, NotAScheduleRequest]


def select_provider(providers: Sequence[CompletionProvider] = DEFAULT_PROVIDERS) -> Optional[CompletionProvider]:
    for provider in providers:
        if provider.api_key:
            return provider
    return None


def correct_typos(text: Optional[str]) -> Optional[str]:
    if not text:
        return text

    def _fix(match):
        word = match.group(0)
        fixed = COMMON_TYPOS[word.lower()]
        if word[0].isupper():
            fixed = fixed[0].upper() + fixed[1:]
        return fixed

    return _TYPO_RE.sub(_fix, text)


def parse_completion(content: str) -> ExtractionResult:
    """Parse the provider's answer, which must be exactly one JSON object."""
    try:
        data = json.loads(content.strip())
        if not isinstance(data, dict):
            raise ValueError("completion is not a JSON object")
        # only a JSON true counts; "false" or 1 must not be coerced into an intent
        if data.get("isSchedulingRequest") is not True:
            return NotAScheduleRequest()
        intent = SchedulingIntent.model_validate(data)
    except (ValueError, ValidationError) as e:
        # json.JSONDecodeError is a ValueError
        logger.error("Failed to parse scheduling JSON: %s. Content: %r", e, content[:500])
        return NotAScheduleRequest()

    return intent.model_copy(
        update={
            "title": correct_typos(intent.title),
            "location": correct_typos(intent.location),
            "description": correct_typos(intent.description),
        }
    )


def _completion_text(body) -> Optional[str]:
    try:
        content = body["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError):
        return None
    return content if isinstance(content, str) else None


async def extract_scheduling_intent(
    user_text: str,
    providers: Optional[Sequence[CompletionProvider]] = None,
    client: Optional[httpx.AsyncClient] = None,
    timeout: Optional[float] = None,
) -> ExtractionResult:
    provider = select_provider(providers if providers is not None else DEFAULT_PROVIDERS)
    if provider is None:
        logger.warning("No completion provider key configured, skipping scheduling extraction")
        return NotAScheduleRequest(error="No API key configured")

    payload = {
        "model": provider.model,
        "messages": [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": user_text},
        ],
        "temperature": 0.1,
        "max_tokens": 500,
    }
    headers = {"Authorization": f"Bearer {provider.api_key}"}
    timeout = timeout if timeout is not None else SCHEDULE_TIMEOUT_SECONDS

    try:
        if client is None:
            async with httpx.AsyncClient(timeout=timeout) as own_client:
                response = await own_client.post(provider.api_url, json=payload, headers=headers)
        else:
            response = await client.post(provider.api_url, json=payload, headers=headers, timeout=timeout)
    except httpx.HTTPError as e:
        logger.error("Scheduling extraction via %s failed: %s", provider.name, e)
        return NotAScheduleRequest()

    if not response.is_success:
        logger.error("Scheduling extraction via %s returned %s", provider.name, response.status_code)
        return NotAScheduleRequest()

    try:
        body = response.json()
    except ValueError:
        logger.error("Scheduling extraction via %s returned a non-JSON body", provider.name)
        return NotAScheduleRequest()

    content = _completion_text(body)
    if not content:
        logger.warning("Scheduling extraction via %s returned no completion text", provider.name)
        return NotAScheduleRequest()

    return parse_completion(content)

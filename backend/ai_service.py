"""
AI-assisted task entry: send a free-text request to Claude and turn the reply
into form fields the user can review before saving.
"""
import json
import logging
import re
from datetime import datetime

import anthropic

from config import DEFAULT_MODEL
from errors import (
    AIError,
    AIProcessingError,
    BlockedContentError,
    EmptyResponseError,
    InvalidApiKeyError,
    InvalidJSONError,
    MissingApiKeyError,
    ModelNotFoundError,
    NoCandidateError,
    QuotaExceededError,
    UnauthorizedApiKeyError,
)
from models import TASK_CATEGORIES, ParsedTaskData
from prompts import PARSE_TASK_PROMPT

logger = logging.getLogger(__name__)

DUE_DATE_RE = re.compile(r"\d{4}-\d{2}-\d{2}", re.ASCII)
CODE_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)

# Substrings of upstream error text, checked in order. First match wins.
INVALID_KEY_MARKERS = ("api key not valid", "invalid api key", "api_key_not_valid",
                       "invalid x-api-key", "authentication_error")
UNAUTHORIZED_MARKERS = ("permission denied", "permission_error", "api key not authorized",
                        "httpstatus 403", "credit balance")
QUOTA_MARKERS = ("quota", "resource has been exhausted", "rate_limit")
MODEL_MISSING_MARKERS = ("model not found", "not_found_error")


def make_client(api_key: str) -> anthropic.AsyncAnthropic:
    return anthropic.AsyncAnthropic(api_key=api_key)


def classify_upstream_error(message: str, model: str = DEFAULT_MODEL) -> AIError:
    """
    Map an upstream error message to the error shown to the user.

    Matching is by substring, so it only knows the wordings listed above.
    Anything unrecognized becomes AIProcessingError carrying the original text.
    """
    lowered = message.lower()
    if any(marker in lowered for marker in INVALID_KEY_MARKERS):
        return InvalidApiKeyError()
    if any(marker in lowered for marker in UNAUTHORIZED_MARKERS):
        return UnauthorizedApiKeyError()
    if any(marker in lowered for marker in QUOTA_MARKERS):
        return QuotaExceededError()
    if any(marker in lowered for marker in MODEL_MISSING_MARKERS):
        return ModelNotFoundError(model)
    return AIProcessingError(f"Failed to process task with AI: {message}")


def strip_code_fence(text: str) -> str:
    return CODE_FENCE_RE.sub("", text.strip()).strip()


def validate_ai_response(raw_text: str | None) -> ParsedTaskData:
    """
    Turn the model's raw reply into ParsedTaskData.

    Raises EmptyResponseError for an empty reply and InvalidJSONError when the
    reply isn't a JSON object. Unknown categories and malformed due dates are
    dropped rather than rejected; a missing title is allowed.
    """
    if raw_text is None or not raw_text.strip():
        raise EmptyResponseError()

    cleaned = strip_code_fence(raw_text)
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as e:
        logger.error("Failed to parse JSON response from AI: %r", cleaned)
        raise InvalidJSONError() from e
    if not isinstance(data, dict):
        logger.error("AI response is JSON but not an object: %r", cleaned)
        raise InvalidJSONError()

    result = {}

    for field in ("title", "description"):
        value = data.get(field)
        if value is None:
            continue
        if not isinstance(value, str):
            logger.warning("AI response '%s' is not a string, coercing: %r", field, value)
            value = str(value)
        result[field] = value

    if not result.get("title", "").strip():
        logger.warning("AI response missing title, or title is empty")

    allowed = {category.value for category in TASK_CATEGORIES}
    category = data.get("category")
    if category is not None:
        if isinstance(category, str) and category in allowed:
            result["category"] = category
        else:
            logger.warning("AI suggested an invalid category %r, ignoring it", category)

    due_date = data.get("dueDate")
    if due_date is not None:
        if isinstance(due_date, str) and DUE_DATE_RE.fullmatch(due_date):
            result["due_date"] = due_date
        else:
            logger.warning("AI suggested an invalid dueDate format %r, ignoring it", due_date)

    return ParsedTaskData(**result)


def build_prompt(natural_language_input: str, today: str | None = None) -> str:
    return PARSE_TASK_PROMPT.format(
        categories=", ".join(category.value for category in TASK_CATEGORIES),
        today=today or datetime.now().strftime("%Y-%m-%d"),
        request=natural_language_input,
    )


async def parse_task_with_ai(
    api_key: str | None,
    natural_language_input: str,
    model: str = DEFAULT_MODEL
) -> ParsedTaskData:
    """Ask Claude to extract task fields from natural_language_input."""
    if not api_key or not api_key.strip():
        logger.error("Anthropic API key is missing in parse_task_with_ai call")
        raise MissingApiKeyError()

    try:
        async with make_client(api_key.strip()) as client:
            response = await client.messages.create(
                model=model,
                max_tokens=512,
                messages=[{"role": "user", "content": build_prompt(natural_language_input)}]
            )
    except anthropic.APIError as e:
        logger.error("Error during AI task parsing: %s", e)
        raise classify_upstream_error(str(e), model) from e

    if response.stop_reason == "refusal":
        logger.error("AI request was refused for input of %d chars", len(natural_language_input))
        raise BlockedContentError(response.stop_reason)

    text_blocks = [block for block in (response.content or []) if getattr(block, "type", None) == "text"]
    if not text_blocks:
        logger.error("AI response had no text content: %r", response)
        raise NoCandidateError()

    ai_text = text_blocks[0].text
    logger.debug("Claude response: %s", ai_text)
    return validate_ai_response(ai_text)


def suggest_task_text(parsed: ParsedTaskData) -> str:
    """Text to pre-fill the task form with, e.g. 'Title - details (Category suggestion: Work)'."""
    text = parsed.title or ""
    if parsed.description:
        text = f"{text} - {parsed.description}" if text else parsed.description
    if parsed.category:
        text = f"{text} (Category suggestion: {parsed.category.value})".strip()
    return text

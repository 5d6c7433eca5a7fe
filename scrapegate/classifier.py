"""Error classification for extraction attempts.

Every failure an extraction attempt can raise is mapped here, once, onto a
closed taxonomy (``ErrorCategory``). The result is a ``ClassifiedError``
that carries:

- **category**: what kind of failure it was
- **should_fallback**: whether the next chain candidate is worth trying
- **retryable**: whether the same request may succeed later
- **user_message** / **detail_message**: what the caller may see

Callers with their own provider key (BYOK) see the raw provider text in
both messages. Everybody else gets one fixed sentence per category and an
empty detail message, so provider and infrastructure details never leak.

Classification order:
1. An already classified error is returned unchanged.
2. ``FetchError`` is a target-site failure: ``fetch_error``, no fallback.
3. Status codes (from the exception, else parsed from its message).
4. Message phrases.
5. Parse failures of the model output: ``invalid_response``.
6. Anything else: ``unknown``, fall back.
"""

from __future__ import annotations

import enum
import logging
import re
from typing import Dict, Optional, Tuple

from scrapegate.exceptions import (
    ClassifiedError,
    ExtractionError,
    FetchError,
    ProviderError,
)

__all__ = [
    "ErrorCategory",
    "SANITIZED_MESSAGES",
    "CONTEXT_LENGTH_KEYWORDS",
    "classify_error",
    "extract_status_code",
]

logger = logging.getLogger(__name__)


class ErrorCategory(str, enum.Enum):
    """The closed error taxonomy."""

    RATE_LIMIT = "rate_limit"
    QUOTA_EXCEEDED = "quota_exceeded"
    PROVIDER_ERROR = "provider_error"
    INVALID_KEY = "invalid_key"
    CONTEXT_LENGTH = "context_length"
    INVALID_RESPONSE = "invalid_response"
    FETCH_ERROR = "fetch_error"
    UNKNOWN = "unknown"


SANITIZED_MESSAGES: Dict[ErrorCategory, str] = {
    ErrorCategory.RATE_LIMIT: (
        "The service is experiencing high demand. Please try again in a few minutes."
    ),
    ErrorCategory.QUOTA_EXCEEDED: (
        "Service quota has been reached. Please try again later or upgrade your plan."
    ),
    ErrorCategory.PROVIDER_ERROR: (
        "The extraction service encountered a temporary issue. Please try again."
    ),
    ErrorCategory.INVALID_KEY: (
        "There was an authentication issue. Please contact support if this persists."
    ),
    ErrorCategory.CONTEXT_LENGTH: (
        "The content is too large to process. Try extracting from a smaller page."
    ),
    ErrorCategory.INVALID_RESPONSE: (
        "The extraction service returned an unreadable response. Please try again."
    ),
    ErrorCategory.FETCH_ERROR: (
        "The page could not be retrieved. Check that the URL is reachable and try again."
    ),
    ErrorCategory.UNKNOWN: (
        "An unexpected error occurred. Please try again or contact support."
    ),
}
"""The only messages non-BYOK callers ever see, one per category."""

# (should_fallback, retryable) per category
_POLICY: Dict[ErrorCategory, Tuple[bool, bool]] = {
    ErrorCategory.RATE_LIMIT: (True, True),
    ErrorCategory.QUOTA_EXCEEDED: (True, False),
    ErrorCategory.PROVIDER_ERROR: (True, True),
    ErrorCategory.INVALID_KEY: (False, False),
    ErrorCategory.CONTEXT_LENGTH: (True, False),
    ErrorCategory.INVALID_RESPONSE: (True, True),
    ErrorCategory.FETCH_ERROR: (False, True),
    ErrorCategory.UNKNOWN: (True, False),
}

CONTEXT_LENGTH_KEYWORDS: Tuple[str, ...] = (
    "context_length",
    "context length",
    "max_tokens",
    "token limit",
    "too long",
    "maximum context",
    "exceeds the limit",
    "too large",
)

_RATE_LIMIT_PHRASES = ("rate limit", "rate_limit", "ratelimit", "too many requests")
_QUOTA_PHRASES = ("quota", "payment required", "billing", "insufficient_quota")
_INVALID_KEY_PHRASES = (
    "invalid api key",
    "invalid_api_key",
    "incorrect api key",
    "invalid x-api-key",
    "authentication",
    "unauthorized",
    "permission denied",
)
_PROVIDER_PHRASES = (
    "overloaded",
    "capacity",
    "service unavailable",
    "temporarily unavailable",
    "bad gateway",
    "internal server error",
    "timeout",
    "timed out",
    "deadline exceeded",
    "model not found",
    "no endpoints found",
    "does not support",
    "not supported",
    "unsupported",
)

_STATUS_PATTERNS = (
    re.compile(r"status(?:[ _]code)?\s*[:=]?\s*(\d{3})\b", re.IGNORECASE),
    re.compile(r"\bhttp\s*/?\s*(?:\d(?:\.\d)?\s+)?(\d{3})\b", re.IGNORECASE),
    re.compile(r"\berror code:?\s*(\d{3})\b", re.IGNORECASE),
)
_BARE_STATUS = re.compile(r"(?<![\d.])(429|503)(?![\d.])")

_STATUS_CATEGORIES: Dict[int, ErrorCategory] = {
    429: ErrorCategory.RATE_LIMIT,
    402: ErrorCategory.QUOTA_EXCEEDED,
    401: ErrorCategory.INVALID_KEY,
    403: ErrorCategory.INVALID_KEY,
    500: ErrorCategory.PROVIDER_ERROR,
    502: ErrorCategory.PROVIDER_ERROR,
    503: ErrorCategory.PROVIDER_ERROR,
    504: ErrorCategory.PROVIDER_ERROR,
}


def extract_status_code(message: str) -> Optional[int]:
    """Find an HTTP status code mentioned in an error message.

    Recognizes ``status: 429``, ``status code 503``, ``HTTP 401``,
    ``Error code: 402`` and bare ``429``/``503`` tokens.

    Examples:
        >>> extract_status_code("request failed with status: 429")
        429
        >>> extract_status_code("upstream said 503")
        503
        >>> extract_status_code("no code here") is None
        True
    """
    for pattern in _STATUS_PATTERNS:
        match = pattern.search(message)
        if match:
            code = int(match.group(1))
            if 100 <= code <= 599:
                return code
    match = _BARE_STATUS.search(message)
    if match:
        return int(match.group(1))
    return None


def _status_of(error: BaseException, message: str) -> Optional[int]:
    if isinstance(error, ProviderError) and error.status_code is not None:
        return error.status_code
    return extract_status_code(message)


def _category_from_message(lowered: str) -> Optional[ErrorCategory]:
    if any(phrase in lowered for phrase in _RATE_LIMIT_PHRASES):
        return ErrorCategory.RATE_LIMIT
    if any(phrase in lowered for phrase in _QUOTA_PHRASES) or (
        "insufficient" in lowered and "credit" in lowered
    ):
        return ErrorCategory.QUOTA_EXCEEDED
    if any(phrase in lowered for phrase in _INVALID_KEY_PHRASES):
        return ErrorCategory.INVALID_KEY
    if any(keyword in lowered for keyword in CONTEXT_LENGTH_KEYWORDS):
        return ErrorCategory.CONTEXT_LENGTH
    if any(phrase in lowered for phrase in _PROVIDER_PHRASES):
        return ErrorCategory.PROVIDER_ERROR
    return None


def _categorize(error: BaseException, message: str) -> Tuple[ErrorCategory, Optional[int]]:
    if isinstance(error, FetchError):
        return ErrorCategory.FETCH_ERROR, error.status_code

    status = _status_of(error, message)
    if status in _STATUS_CATEGORIES:
        return _STATUS_CATEGORIES[status], status

    category = _category_from_message(message.lower())
    if category is not None:
        return category, status

    if isinstance(error, ExtractionError) and not isinstance(error, ProviderError):
        return ErrorCategory.INVALID_RESPONSE, status
    if isinstance(error, ValueError):
        # json.JSONDecodeError and pydantic validation errors land here
        return ErrorCategory.INVALID_RESPONSE, status

    return ErrorCategory.UNKNOWN, status


def _raw_message(error: BaseException) -> str:
    if isinstance(error, ExtractionError) or isinstance(error, FetchError):
        return error.message
    text = str(error)
    return text or type(error).__name__


def classify_error(
    error: BaseException,
    provider: str = "",
    model: str = "",
    is_byok: bool = False,
) -> ClassifiedError:
    """Map a raw failure onto the closed taxonomy.

    Args:
        error: The exception raised by an extraction attempt.
        provider: Provider of the candidate that failed.
        model: Model of the candidate that failed.
        is_byok: Whether the candidate used the caller's own key.

    Returns:
        A ClassifiedError with ``__cause__`` set to ``error``. An error that
        is already classified is returned unchanged.

    Examples:
        >>> err = classify_error(RuntimeError("status: 429"), "openai", "gpt-4o")
        >>> err.category.value, err.should_fallback
        ('rate_limit', True)
        >>> err.user_message == SANITIZED_MESSAGES[ErrorCategory.RATE_LIMIT]
        True
    """
    if isinstance(error, ClassifiedError):
        return error

    raw = _raw_message(error)
    category, status = _categorize(error, raw)
    should_fallback, retryable = _POLICY[category]

    if is_byok:
        user_message = raw
        detail_message = raw
    else:
        user_message = SANITIZED_MESSAGES[category]
        detail_message = ""

    classified = ClassifiedError(
        category,
        user_message,
        detail_message,
        retryable=retryable,
        should_fallback=should_fallback,
        provider=provider,
        model=model,
        status_code=status,
        is_byok=is_byok,
    )
    classified.__cause__ = error

    logger.debug(
        "Classified %s from %s/%s as %s (fallback=%s, status=%s)",
        type(error).__name__,
        provider or "?",
        model or "?",
        category.value,
        should_fallback,
        status,
    )
    return classified

"""Exception hierarchy for the scrapegate library.

All exceptions inherit from ScrapeGateError, which inherits from Exception.
This allows callers to catch every gateway-related error with a single
``except ScrapeGateError`` clause, or to catch specific categories.

Hierarchy::

    ScrapeGateError
    +-- FetchError                 -- target page unreachable (HTTP errors, timeouts, DNS)
    +-- ExtractionError            -- LLM output unusable (bad JSON, empty result)
    |   +-- ProviderError          -- the LLM provider call itself failed
    +-- ConfigError                -- invalid configuration or schema
    +-- NoProvidersConfiguredError -- no provider chain is configured anywhere
    +-- InsufficientBalanceError   -- the user cannot afford the operation
    +-- BillingError               -- the billing collaborator failed
    +-- ClassifiedError            -- a failure mapped onto the closed error taxonomy
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from scrapegate.classifier import ErrorCategory

__all__ = [
    "ScrapeGateError",
    "FetchError",
    "ExtractionError",
    "ProviderError",
    "ConfigError",
    "NoProvidersConfiguredError",
    "InsufficientBalanceError",
    "BillingError",
    "ClassifiedError",
]


class ScrapeGateError(Exception):
    """Base exception for all scrapegate errors.

    Attributes:
        message: Human-readable error description.
        details: Optional dictionary with additional context (URL, status code, etc.).
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            detail_str = ", ".join(f"{k}={v!r}" for k, v in self.details.items())
            return f"{self.message} ({detail_str})"
        return self.message


class FetchError(ScrapeGateError):
    """Raised when the target page cannot be fetched.

    This is about the page being scraped, never the LLM provider. Changing
    provider cannot fix it, so the classifier never falls back on it.

    Examples:
        - HTTP 404 or 500 responses from the target site
        - Connection timeout after configured timeout period
        - DNS resolution failure
    """

    def __init__(
        self,
        message: str,
        url: str | None = None,
        status_code: int | None = None,
        details: dict | None = None,
    ) -> None:
        combined = dict(details or {})
        if url is not None:
            combined["url"] = url
        if status_code is not None:
            combined["status_code"] = status_code
        super().__init__(message, combined)
        self.url = url
        self.status_code = status_code


class ExtractionError(ScrapeGateError):
    """Raised when the LLM returned something that cannot be used.

    Examples:
        - LLM returns malformed JSON
        - Extraction result is empty or has no object in it
    """

    def __init__(
        self,
        message: str,
        url: str | None = None,
        raw_response: str | None = None,
        details: dict | None = None,
    ) -> None:
        combined = dict(details or {})
        if url is not None:
            combined["url"] = url
        if raw_response is not None:
            combined["raw_response"] = raw_response[:500]  # Truncate for readability
        super().__init__(message, combined)
        self.url = url
        self.raw_response = raw_response


class ProviderError(ExtractionError):
    """Raised when the call to the LLM provider failed.

    crawl4ai reports provider failures as error blocks inside
    ``extracted_content``; the engine turns those into this exception so
    the classifier sees the provider's own message and status code.
    """

    def __init__(
        self,
        message: str,
        url: str | None = None,
        provider: str | None = None,
        model: str | None = None,
        status_code: int | None = None,
        details: dict | None = None,
    ) -> None:
        combined = dict(details or {})
        if provider is not None:
            combined["provider"] = provider
        if model is not None:
            combined["model"] = model
        if status_code is not None:
            combined["status_code"] = status_code
        super().__init__(message, url=url, details=combined)
        self.provider = provider
        self.model = model
        self.status_code = status_code


class ConfigError(ScrapeGateError):
    """Raised when the gateway configuration is invalid.

    Examples:
        - Backend set to "unknown" instead of "http" or "browser"
        - Field type set to "dict" which is not supported
        - Unknown override passed to ``load_config()``
    """

    pass


class NoProvidersConfiguredError(ScrapeGateError):
    """Raised when chain resolution produced no candidate at all.

    This is a configuration problem, never a transient provider failure:
    an operator has to configure at least one provider (system chain,
    user chain or override) before extraction can run.
    """

    def __init__(
        self,
        message: str = "No LLM providers are configured",
        details: dict | None = None,
    ) -> None:
        super().__init__(message, details)


class InsufficientBalanceError(ScrapeGateError):
    """Raised when the user's balance cannot cover the estimated cost.

    The ``details`` dict will contain:
        - ``required_usd``: the estimated cost of the operation
        - ``available_usd``: the balance found for the user
    """

    def __init__(
        self,
        message: str = "Insufficient balance for this operation",
        required_usd: float = 0.0,
        available_usd: float = 0.0,
        details: dict | None = None,
    ) -> None:
        combined = dict(details or {})
        combined["required_usd"] = round(required_usd, 6)
        combined["available_usd"] = round(available_usd, 6)
        super().__init__(message, combined)
        self.required_usd = required_usd
        self.available_usd = available_usd


class BillingError(ScrapeGateError):
    """Raised when the billing collaborator cannot complete a request."""

    pass


class ClassifiedError(ScrapeGateError):
    """A failure mapped onto the closed error taxonomy.

    Produced once by ``scrapegate.classifier.classify_error`` and carried as
    a typed value from then on. The raw failure is kept as ``__cause__``.

    ``str()`` returns ``user_message`` only, which is a fixed sanitized
    sentence for non-BYOK callers, so printing the exception never leaks
    provider text to them.

    Attributes:
        category: One of the ``ErrorCategory`` members.
        user_message: Message safe to show to the caller.
        detail_message: Raw provider text (BYOK only, empty otherwise).
        retryable: Whether retrying the same request later may succeed.
        should_fallback: Whether the next chain candidate should be tried.
        provider: Provider of the failing candidate, if known.
        model: Model of the failing candidate, if known.
        status_code: HTTP status code found in the failure, if any.
        is_byok: Whether the failing candidate used the caller's own key.
    """

    def __init__(
        self,
        category: "ErrorCategory",
        user_message: str,
        detail_message: str = "",
        *,
        retryable: bool = False,
        should_fallback: bool = False,
        provider: str = "",
        model: str = "",
        status_code: Optional[int] = None,
        is_byok: bool = False,
    ) -> None:
        super().__init__(user_message)
        self.category = category
        self.user_message = user_message
        self.detail_message = detail_message
        self.retryable = retryable
        self.should_fallback = should_fallback
        self.provider = provider
        self.model = model
        self.status_code = status_code
        self.is_byok = is_byok

    def __str__(self) -> str:
        return self.user_message

    def __repr__(self) -> str:
        return (
            f"ClassifiedError(category={self.category.value!r}, "
            f"provider={self.provider!r}, model={self.model!r}, "
            f"should_fallback={self.should_fallback})"
        )

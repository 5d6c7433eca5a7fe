"""Pydantic data models for the scrapegate library.

This module defines the data structures passed between the gateway's parts:

- **LLMConfig**: One provider + model + credential candidate.
- **ConfigChain**: The ordered, immutable list of candidates for one call.
- **FallbackChainEntry** / **ProviderKey**: Stored chain entries and keys.
- **ExtractContext**: Per-call billing and feature context.
- **FieldDefinition** / **ExtractionSchema**: What to extract.
- **PageOutcome**: One page as reported by the extraction engine.
- **PageResult** / **CrawlResult**: What a crawl hands back to the caller.
- **ExtractOutput**: What a single-page extraction hands back to the caller.
- **CostInput**, **CostBreakdown**, **ChargeDetails**, **ChargeResult**,
  **UsageRecord**, **BudgetSkip**: Billing payloads.

All models use Pydantic v2. Value types are frozen.
"""

from __future__ import annotations

import hashlib
import json
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

__all__ = [
    "DEFAULT_MAX_OUTPUT_TOKENS",
    "KEYLESS_PROVIDERS",
    "SCALAR_TYPES",
    "LIST_TYPE_PREFIX",
    "LLMConfig",
    "ConfigChain",
    "FallbackChainEntry",
    "ProviderKey",
    "ExtractContext",
    "FieldDefinition",
    "ExtractionSchema",
    "TokenUsage",
    "PageOutcome",
    "PageResult",
    "CrawlOptions",
    "CrawlRequest",
    "CrawlResult",
    "StopReason",
    "UsageInfo",
    "BudgetSkip",
    "ExtractMeta",
    "ExtractOutput",
    "CostInput",
    "CostBreakdown",
    "ChargeDetails",
    "ChargeResult",
    "UsageRecord",
]

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_MAX_OUTPUT_TOKENS: int = 16384
"""Output token cap applied when a chain entry does not set its own."""

KEYLESS_PROVIDERS: frozenset[str] = frozenset({"ollama"})
"""Providers that run without a credential (local inference)."""

SCALAR_TYPES: frozenset[str] = frozenset({"string", "number", "boolean", "integer"})
"""Field types that represent single scalar values."""

LIST_TYPE_PREFIX: str = "list["
"""Prefix used to identify list-type fields (e.g., 'list[string]', 'list[object]')."""

StopReason = Literal["", "insufficient_balance", "callback_error"]


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Provider configuration
# ---------------------------------------------------------------------------


class LLMConfig(BaseModel):
    """A single provider/model/credential candidate.

    Built fresh on every resolution and never persisted. The API key is
    excluded from ``repr()`` so configs can be logged safely.

    Attributes:
        provider: Provider name, lower-cased (``"openrouter"``, ``"anthropic"``,
                  ``"openai"``, ``"ollama"``, ...).
        model: Provider-specific model identifier.
        api_key: Credential for the provider; empty for key-less providers.
        base_url: Optional custom endpoint.
        strict_mode: Whether strict JSON-schema output is requested.
        max_tokens: Output token cap for the LLM call.
    """

    model_config = ConfigDict(frozen=True)

    provider: str = Field(..., min_length=1)
    model: str = Field(..., min_length=1)
    api_key: str = Field(default="", repr=False)
    base_url: str = ""
    strict_mode: bool = False
    max_tokens: int = Field(default=DEFAULT_MAX_OUTPUT_TOKENS, ge=1)

    @field_validator("provider")
    @classmethod
    def normalize_provider(cls, v: str) -> str:
        """Lower-case and strip the provider name."""
        return v.strip().lower()

    @property
    def litellm_model(self) -> str:
        """Return the ``provider/model`` identifier crawl4ai hands to litellm."""
        if self.model.startswith(f"{self.provider}/"):
            return self.model
        return f"{self.provider}/{self.model}"

    @property
    def masked_key(self) -> str:
        """Return the key with everything but the last four characters hidden."""
        if not self.api_key:
            return ""
        if len(self.api_key) <= 8:
            return "****"
        return f"****{self.api_key[-4:]}"


class ConfigChain(BaseModel):
    """An ordered, immutable sequence of candidates plus a chain-wide BYOK flag.

    The chain holds no cursor. Callers iterate it (or index into it) and
    keep their own position, so one chain can be shared safely.

    Examples:
        >>> chain = ConfigChain(configs=(LLMConfig(provider="openai", model="gpt-4o-mini"),))
        >>> chain.first.provider
        'openai'
        >>> len(chain)
        1
    """

    model_config = ConfigDict(frozen=True)

    configs: Tuple[LLMConfig, ...] = ()
    is_byok: bool = False

    @property
    def first(self) -> Optional[LLMConfig]:
        """Return the first candidate, or None for an empty chain."""
        return self.configs[0] if self.configs else None

    @property
    def is_empty(self) -> bool:
        return not self.configs

    def __len__(self) -> int:
        return len(self.configs)

    def __iter__(self) -> Iterator[LLMConfig]:  # type: ignore[override]
        return iter(self.configs)

    def __getitem__(self, index: int) -> LLMConfig:
        return self.configs[index]


class FallbackChainEntry(BaseModel):
    """A stored fallback-chain entry (system-wide or per user)."""

    model_config = ConfigDict(frozen=True)

    provider: str = Field(..., min_length=1)
    model: str = Field(..., min_length=1)
    position: int = 0
    enabled: bool = True
    tier: Optional[str] = None
    strict_mode: Optional[bool] = None
    max_tokens: Optional[int] = Field(default=None, ge=1)

    @field_validator("provider")
    @classmethod
    def normalize_provider(cls, v: str) -> str:
        return v.strip().lower()


class ProviderKey(BaseModel):
    """A stored per-provider credential."""

    model_config = ConfigDict(frozen=True)

    provider: str = Field(..., min_length=1)
    api_key: str = Field(default="", repr=False)
    base_url: str = ""
    enabled: bool = True

    @field_validator("provider")
    @classmethod
    def normalize_provider(cls, v: str) -> str:
        return v.strip().lower()


class ExtractContext(BaseModel):
    """Per-call billing and feature context.

    Attributes:
        user_id: The caller's user id.
        tier: Subscription tier (raw; normalized by the snapshot).
        schema_id: Identifier of the schema being extracted, for usage records.
        byok_allowed: Whether the caller may use their own provider keys.
        custom_models_allowed: Whether the caller may use their own chain.
        models_premium: Whether candidates may be skipped by budget.
        skip_credit_check: Whether pre-flight balance checks are bypassed.
        forced_provider: Provider pinned by a scoped inbound credential.
        forced_model: Model pinned by a scoped inbound credential.
        job_id: Optional job identifier for usage records and webhooks.
    """

    model_config = ConfigDict(frozen=True)

    user_id: str = ""
    tier: str = "free"
    schema_id: str = ""
    byok_allowed: bool = False
    custom_models_allowed: bool = False
    models_premium: bool = False
    skip_credit_check: bool = False
    forced_provider: str = ""
    forced_model: str = ""
    job_id: Optional[str] = None

    @property
    def has_forced_config(self) -> bool:
        """Return True when both a forced provider and model are set."""
        return bool(self.forced_provider and self.forced_model)


# ---------------------------------------------------------------------------
# Schema description
# ---------------------------------------------------------------------------


class FieldDefinition(BaseModel):
    """Describes a single field to extract from a web page.

    Attributes:
        name: The field name used as a key in the extracted data dict.
        description: Tells the LLM what to extract.
        type: ``"string"``, ``"number"``, ``"boolean"``, ``"integer"`` or one
              of the list types ``"list[string]"``, ``"list[number]"``,
              ``"list[object]"``, ``"list[boolean]"``.

    Examples:
        >>> FieldDefinition(name="company_name", description="Name of the company", type="string")
        >>> FieldDefinition(name="emails", description="All contact emails", type="list[string]")
    """

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    type: str = "string"

    @field_validator("type")
    @classmethod
    def validate_type(cls, v: str) -> str:
        """Validate that the type string is one of the supported types."""
        allowed_lists = {"list[string]", "list[number]", "list[object]", "list[boolean]"}
        allowed = set(SCALAR_TYPES) | allowed_lists
        if v not in allowed:
            raise ValueError(
                f"Invalid field type '{v}'. Must be one of: {sorted(allowed)}"
            )
        return v

    @property
    def is_list(self) -> bool:
        """Return True if this field is a list type."""
        return self.type.startswith(LIST_TYPE_PREFIX)


class ExtractionSchema(BaseModel):
    """What to extract: a JSON schema plus the instruction sent to the LLM.

    Build one from field definitions with
    ``scrapegate.extraction.build_schema()`` or pass a raw JSON schema.
    When ``fields`` is set, parsed results are normalized to exactly those
    keys; otherwise the parsed object is returned as-is.
    """

    model_config = ConfigDict(frozen=True)

    json_schema: Dict[str, Any]
    instruction: str = Field(..., min_length=1)
    fields: Tuple[FieldDefinition, ...] = ()

    @property
    def schema_id(self) -> str:
        """Stable identifier derived from the canonical JSON schema."""
        canonical = json.dumps(self.json_schema, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:16]


# ---------------------------------------------------------------------------
# Engine output
# ---------------------------------------------------------------------------


class TokenUsage(BaseModel):
    """Token counts reported by the provider."""

    model_config = ConfigDict(frozen=True)

    input_tokens: int = Field(default=0, ge=0)
    output_tokens: int = Field(default=0, ge=0)

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
        )


class PageOutcome(BaseModel):
    """One page as produced by the extraction engine.

    Exactly one of ``data`` / ``error`` is meaningful. ``error`` holds the
    raw exception; the orchestrators classify it.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    url: str
    data: Any = None
    error: Optional[BaseException] = None
    usage: TokenUsage = Field(default_factory=TokenUsage)
    fetch_duration_ms: int = 0
    extract_duration_ms: int = 0
    generation_id: str = ""
    raw_content: Optional[str] = Field(default=None, repr=False)

    @property
    def ok(self) -> bool:
        return self.error is None


# ---------------------------------------------------------------------------
# Crawl
# ---------------------------------------------------------------------------


class CrawlOptions(BaseModel):
    """Options controlling link discovery in a crawl.

    Attributes:
        follow_selector: CSS selector for links to follow.
        follow_pattern: URL pattern (glob) a link must match to be followed.
        next_selector: CSS selector of a "next page" link.
        max_depth: Maximum link-following depth.
        max_pages: Maximum pages to extract (0 means no limit).
        max_urls: Maximum URLs to queue (0 means no limit).
        delay_seconds: Delay between requests.
        concurrency: Concurrent page requests.
        same_domain_only: Only follow links on the seed's domain.
        extract_from_seeds: Whether seed pages themselves are extracted.
    """

    model_config = ConfigDict(frozen=True)

    follow_selector: str = ""
    follow_pattern: str = ""
    next_selector: str = ""
    max_depth: int = Field(default=1, ge=0)
    max_pages: int = Field(default=0, ge=0)
    max_urls: int = Field(default=0, ge=0)
    delay_seconds: float = Field(default=0.0, ge=0.0)
    concurrency: int = Field(default=3, ge=1, le=50)
    same_domain_only: bool = True
    extract_from_seeds: bool = True


class CrawlRequest(BaseModel):
    """A crawl to run: start URL, optional extra seeds, schema and options.

    ``chain`` lets a caller pass an already resolved chain; when it is
    None the crawl resolves one from the context.
    """

    model_config = ConfigDict(frozen=True)

    url: str = Field(..., min_length=1)
    extraction_schema: ExtractionSchema
    seed_urls: Tuple[str, ...] = ()
    options: CrawlOptions = Field(default_factory=CrawlOptions)
    chain: Optional[ConfigChain] = None

    @property
    def seeds(self) -> List[str]:
        """Return the seed list, defaulting to the start URL."""
        return list(self.seed_urls) if self.seed_urls else [self.url]


class PageResult(BaseModel):
    """One page's outcome within a crawl.

    Attributes:
        url: The page URL.
        parent_url: None for seeds, the first seed otherwise.
        depth: 0 for seeds, 1 for everything else.
        data: Extracted data on success.
        error: Message safe to show the caller on failure.
        error_details: Raw failure text (BYOK only).
        error_category: Taxonomy category on failure.
    """

    model_config = ConfigDict(frozen=True)

    url: str
    parent_url: Optional[str] = None
    depth: int = 0
    data: Any = None
    error: str = ""
    error_details: str = ""
    error_category: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0
    llm_cost_usd: float = 0.0
    fetch_duration_ms: int = 0
    extract_duration_ms: int = 0
    is_byok: bool = False
    generation_id: str = ""
    provider: str = ""
    model: str = ""

    @property
    def success(self) -> bool:
        return not self.error


class CrawlResult(BaseModel):
    """Aggregate of every PageResult produced by one crawl."""

    pages: List[PageResult] = Field(default_factory=list)
    page_count: int = 0
    failed_count: int = 0
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_cost_usd: float = 0.0
    total_llm_cost_usd: float = 0.0
    stopped_early: bool = False
    stop_reason: StopReason = ""
    provider: str = ""
    model: str = ""
    is_byok: bool = False
    started_at: str = Field(default_factory=_utc_now)
    finished_at: str = ""


# ---------------------------------------------------------------------------
# Single-page output
# ---------------------------------------------------------------------------


class UsageInfo(BaseModel):
    """Token usage and cost of one extraction."""

    model_config = ConfigDict(frozen=True)

    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0
    llm_cost_usd: float = 0.0
    is_byok: bool = False


class BudgetSkip(BaseModel):
    """A candidate skipped because its estimate exceeded the available balance."""

    model_config = ConfigDict(frozen=True)

    provider: str
    model: str
    estimated_cost_usd: float
    available_usd: float


class ExtractMeta(BaseModel):
    """Attribution and timing of one extraction."""

    model_config = ConfigDict(frozen=True)

    provider: str
    model: str
    attempts: int = 1
    fetch_duration_ms: int = 0
    extract_duration_ms: int = 0
    generation_id: str = ""
    budget_skips: Tuple[BudgetSkip, ...] = ()


class ExtractOutput(BaseModel):
    """Result of a successful single-page extraction."""

    model_config = ConfigDict(frozen=True)

    url: str
    data: Any
    usage: UsageInfo
    metadata: ExtractMeta
    fetched_at: str = Field(default_factory=_utc_now)


# ---------------------------------------------------------------------------
# Billing payloads
# ---------------------------------------------------------------------------


class CostInput(BaseModel):
    """Everything needed to price one piece of LLM work."""

    model_config = ConfigDict(frozen=True)

    provider: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    tier: str = "free"
    is_byok: bool = False
    generation_id: str = ""


class CostBreakdown(BaseModel):
    """Priced LLM work: provider cost and what the user is charged."""

    model_config = ConfigDict(frozen=True)

    llm_cost_usd: float = 0.0
    user_cost_usd: float = 0.0
    markup_rate: float = 0.0
    markup_usd: float = 0.0


class ChargeDetails(BaseModel):
    """A finished piece of work to charge for and record."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    tier: str = "free"
    job_id: Optional[str] = None
    job_type: Literal["extract", "crawl"] = "extract"
    schema_id: str = ""
    url: str = ""
    provider: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    is_byok: bool = False
    generation_id: str = ""
    pages_attempted: int = 1
    pages_successful: int = 1
    duration_ms: int = 0


class ChargeResult(BaseModel):
    """What a charge cost."""

    model_config = ConfigDict(frozen=True)

    total_cost_usd: float = 0.0
    llm_cost_usd: float = 0.0
    markup_rate: float = 0.0
    markup_usd: float = 0.0
    deducted: bool = False


class UsageRecord(BaseModel):
    """An entry in the usage ledger."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    job_id: Optional[str] = None
    job_type: str = "extract"
    status: Literal["success", "partial", "failed"] = "success"
    tier: str = "free"
    schema_id: str = ""
    url: str = ""
    provider: str = ""
    model: str = ""
    is_byok: bool = False
    input_tokens: int = 0
    output_tokens: int = 0
    llm_cost_usd: float = 0.0
    total_cost_usd: float = 0.0
    markup_rate: float = 0.0
    markup_usd: float = 0.0
    pages_attempted: int = 0
    pages_successful: int = 0
    duration_ms: int = 0
    error_message: str = ""
    error_code: str = ""
    created_at: str = Field(default_factory=_utc_now)

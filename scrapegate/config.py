"""Configuration management for the scrapegate library.

This module provides:

- **GatewayConfig**: Runtime settings (backend, timeouts, fallback delay,
  service keys, retry policies for detached work).
- **load_config()**: Factory that creates a GatewayConfig with
  environment-based defaults and user overrides.
- **ConfigSnapshot**: An immutable, versioned snapshot of tier metadata,
  per-provider/per-model settings and the static pricing table. It is
  injected into the resolver, the strict-mode advisor and the billing
  gate so that a given snapshot always produces the same decisions.
- **DEFAULT_SNAPSHOT**: The snapshot used when none is injected.

Service keys are resolved in this order:
1. Explicitly passed in ``service_keys``
2. ``OPENROUTER_API_KEY``, ``ANTHROPIC_API_KEY``, ``OPENAI_API_KEY`` and
   ``HELICONE_API_KEY`` environment variables
"""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

from scrapegate.exceptions import ConfigError
from scrapegate.models import DEFAULT_MAX_OUTPUT_TOKENS

__all__ = [
    "GatewayConfig",
    "load_config",
    "ModelSettings",
    "TierLimits",
    "PricingRule",
    "ConfigSnapshot",
    "DEFAULT_SNAPSHOT",
    "SERVICE_KEY_ENV_VARS",
]

logger = logging.getLogger(__name__)

SERVICE_KEY_ENV_VARS: Dict[str, str] = {
    "openrouter": "OPENROUTER_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
    "helicone": "HELICONE_API_KEY",
}
"""Environment variable holding the system key for each provider."""


# ---------------------------------------------------------------------------
# GatewayConfig
# ---------------------------------------------------------------------------


class GatewayConfig(BaseModel):
    """Runtime configuration for the gateway.

    Attributes:
        backend: Fetching backend for the crawl4ai engine. ``"http"`` for
                 static pages, ``"browser"`` for JS-rendered pages.
        timeout_ms: Page load timeout in milliseconds.
        llm_timeout_seconds: Upper bound for one extraction attempt.
        fallback_delay_seconds: Pause between two fallback candidates.
        input_format: Content format sent to the LLM for extraction.
        chunk_token_threshold: Maximum tokens per chunk sent to the LLM.
        headless: Run the browser headless (browser backend only).
        stealth: Enable anti-bot stealth mode (browser backend only).
        verbose: Enable verbose logging from crawl4ai internals.
        default_tier: Tier assumed when a context carries none.
        service_keys: System keys per provider, loaded from the environment
                      when not given.
        record_timeout_seconds: Timeout of one detached usage-record attempt.
        record_max_attempts: Attempts for a detached usage record.
        webhook_timeout_seconds: HTTP timeout of one webhook delivery.
        webhook_max_attempts: Attempts for one webhook delivery.
    """

    model_config = ConfigDict(validate_default=True)

    backend: Literal["http", "browser"] = "http"
    timeout_ms: int = Field(default=30000, ge=1000)
    llm_timeout_seconds: float = Field(default=120.0, gt=0)
    fallback_delay_seconds: float = Field(default=1.0, ge=0)
    input_format: Literal[
        "markdown", "html", "fit_markdown", "cleaned_html", "fit_html"
    ] = "markdown"
    chunk_token_threshold: int = Field(default=2048, ge=256)
    headless: bool = True
    stealth: bool = True
    verbose: bool = False
    default_tier: str = "free"
    service_keys: Dict[str, str] = Field(default_factory=dict)
    record_timeout_seconds: float = Field(default=10.0, gt=0)
    record_max_attempts: int = Field(default=3, ge=1)
    webhook_timeout_seconds: float = Field(default=30.0, gt=0)
    webhook_max_attempts: int = Field(default=3, ge=1)

    @field_validator("service_keys", mode="before")
    @classmethod
    def load_service_keys_from_env(cls, v: Optional[Dict[str, str]]) -> Dict[str, str]:
        """If no service keys were provided, load them from environment variables."""
        if v:
            return {provider.strip().lower(): key for provider, key in v.items() if key}

        keys: Dict[str, str] = {}
        for provider, env_var in SERVICE_KEY_ENV_VARS.items():
            value = os.environ.get(env_var)
            if value:
                keys[provider] = value
        return keys


def load_config(**overrides: Any) -> GatewayConfig:
    """Create a GatewayConfig with sensible defaults and optional overrides.

    Args:
        **overrides: Keyword arguments matching GatewayConfig field names.
                     For example: ``load_config(backend="browser", fallback_delay_seconds=0)``.

    Returns:
        A fully initialized GatewayConfig.

    Raises:
        ConfigError: If an override key does not match any config field, or
                     a value fails validation.

    Examples:
        >>> config = load_config(backend="browser")
        >>> config.backend
        'browser'
    """
    valid_fields = set(GatewayConfig.model_fields.keys())
    invalid = set(overrides.keys()) - valid_fields
    if invalid:
        raise ConfigError(
            f"Unknown config fields: {sorted(invalid)}. "
            f"Valid fields: {sorted(valid_fields)}"
        )

    try:
        return GatewayConfig(**overrides)
    except ValueError as exc:
        raise ConfigError(f"Invalid configuration: {exc}") from exc


# ---------------------------------------------------------------------------
# Snapshot building blocks
# ---------------------------------------------------------------------------


class ModelSettings(BaseModel):
    """Recommended call settings for a provider or a specific model."""

    model_config = ConfigDict(frozen=True)

    temperature: float = 0.2
    max_tokens: int = DEFAULT_MAX_OUTPUT_TOKENS
    strict_mode: bool = False


class TierLimits(BaseModel):
    """Billing-relevant limits of one subscription tier."""

    model_config = ConfigDict(frozen=True)

    display_name: str
    markup_rate: float = Field(default=0.02, ge=0)
    cost_per_transaction: float = Field(default=0.0, ge=0)
    balance_check: bool = True


class PricingRule(BaseModel):
    """A fallback price per million tokens for models whose name matches.

    A rule matches when every string in ``contains`` is a substring of the
    lower-cased model name and none in ``excludes`` is.
    """

    model_config = ConfigDict(frozen=True)

    contains: Tuple[str, ...]
    excludes: Tuple[str, ...] = ()
    input_per_million: float = 0.0
    output_per_million: float = 0.0

    def matches(self, model: str) -> bool:
        lowered = model.lower()
        return all(part in lowered for part in self.contains) and not any(
            part in lowered for part in self.excludes
        )


_FALLBACK_SETTINGS = ModelSettings(temperature=0.2, max_tokens=4096, strict_mode=False)


# ---------------------------------------------------------------------------
# ConfigSnapshot
# ---------------------------------------------------------------------------


class ConfigSnapshot(BaseModel):
    """Immutable, versioned configuration consulted during resolution and billing.

    Replace the whole snapshot to change behavior; never mutate one in place.

    Attributes:
        version: Identifier of this snapshot, logged with decisions.
        tier_aliases: Raw tier names mapped to canonical ones.
        tiers: Limits per canonical tier.
        provider_defaults: Settings per provider.
        model_overrides: Settings per model id, taking precedence over the
                         provider defaults.
        pricing_rules: Ordered fallback pricing; the first match wins.
        default_input_per_million: Price used when no rule matches.
        default_output_per_million: Price used when no rule matches.
    """

    model_config = ConfigDict(frozen=True)

    version: str = "builtin-1"
    tier_aliases: Dict[str, str] = Field(default_factory=dict)
    tiers: Dict[str, TierLimits] = Field(default_factory=dict)
    provider_defaults: Dict[str, ModelSettings] = Field(default_factory=dict)
    model_overrides: Dict[str, ModelSettings] = Field(default_factory=dict)
    pricing_rules: Tuple[PricingRule, ...] = ()
    default_input_per_million: float = 0.25
    default_output_per_million: float = 1.00

    def normalize_tier(self, tier: Optional[str]) -> str:
        """Map a raw tier name to its canonical name.

        Examples:
            >>> DEFAULT_SNAPSHOT.normalize_tier("tier_v1_pro")
            'pro'
            >>> DEFAULT_SNAPSHOT.normalize_tier("")
            'free'
        """
        cleaned = (tier or "").strip().lower()
        if not cleaned:
            return "free"
        return self.tier_aliases.get(cleaned, cleaned)

    def tier_limits(self, tier: Optional[str]) -> TierLimits:
        """Return the limits of a tier, falling back to the free tier."""
        canonical = self.normalize_tier(tier)
        limits = self.tiers.get(canonical) or self.tiers.get("free")
        if limits is None:
            return TierLimits(display_name=canonical)
        return limits

    def model_settings(self, provider: str, model: str) -> ModelSettings:
        """Return settings for a model: model override, provider default, fallback."""
        override = self.model_overrides.get(model)
        if override is not None:
            return override
        return self.provider_defaults.get(provider.lower(), _FALLBACK_SETTINGS)

    def price_per_million(self, model: str) -> Tuple[float, float]:
        """Return ``(input, output)`` USD per million tokens for a model."""
        if model.lower().endswith(":free"):
            return 0.0, 0.0
        for rule in self.pricing_rules:
            if rule.matches(model):
                return rule.input_per_million, rule.output_per_million
        return self.default_input_per_million, self.default_output_per_million


DEFAULT_SNAPSHOT = ConfigSnapshot(
    version="builtin-1",
    tier_aliases={
        "tier_v1_free": "free",
        "tier_v1_standard": "standard",
        "tier_v1_pro": "pro",
        "tier_v1_selfhosted": "selfhosted",
    },
    tiers={
        "free": TierLimits(display_name="Free", markup_rate=0.02, balance_check=False),
        "standard": TierLimits(display_name="Standard", markup_rate=0.02),
        "pro": TierLimits(display_name="Pro", markup_rate=0.02),
        "selfhosted": TierLimits(display_name="Self-Hosted", markup_rate=0.0),
    },
    provider_defaults={
        "anthropic": ModelSettings(strict_mode=False),
        "openai": ModelSettings(strict_mode=True),
        "openrouter": ModelSettings(strict_mode=False),
        "ollama": ModelSettings(temperature=0.1, strict_mode=False),
        "helicone": ModelSettings(strict_mode=True),
    },
    pricing_rules=(
        PricingRule(contains=("gpt-4",), excludes=("mini",), input_per_million=15.0, output_per_million=60.0),
        PricingRule(contains=("claude-3-opus",), input_per_million=15.0, output_per_million=75.0),
        PricingRule(contains=("gpt-3.5",), input_per_million=3.0, output_per_million=15.0),
        PricingRule(contains=("claude-3-sonnet",), input_per_million=3.0, output_per_million=15.0),
        PricingRule(contains=("claude-3.5",), input_per_million=3.0, output_per_million=15.0),
        PricingRule(contains=("gpt-4o-mini",), input_per_million=0.15, output_per_million=0.60),
        PricingRule(contains=("claude-3-haiku",), input_per_million=0.15, output_per_million=0.60),
        PricingRule(contains=("llama",), input_per_million=0.10, output_per_million=0.40),
        PricingRule(contains=("mixtral",), input_per_million=0.10, output_per_million=0.40),
        PricingRule(contains=("gemma",), input_per_million=0.10, output_per_million=0.40),
    ),
)

"""scrapegate -- An LLM extraction gateway with provider fallback and billing.

Quick start::

    from scrapegate import ExtractContext, Gateway, InMemoryCredentialStore, define_fields

    store = InMemoryCredentialStore.from_file("credentials.json")
    fields = define_fields(
        ("company_name", "The name of the company"),
        ("emails", "All contact email addresses", "list[string]"),
    )

    # Async usage (recommended)
    async with Gateway(store=store) as gateway:
        output = await gateway.extract("https://example.com", fields, ExtractContext(tier="pro"))
        print(output.data)

    # Sync usage (simple scripts)
    from scrapegate import extract_sync
    output = extract_sync("https://example.com", fields, store=store)

Two modes of operation:

1. **Single page** (``gateway.extract()``): Walk the resolved provider chain,
   falling back on provider failures, and return the first success.
2. **Crawl** (``gateway.crawl()``): Follow links from one or more seeds,
   extract each page with the chain's first candidate, and stop early when
   the caller's balance runs out.

Where the provider chain comes from is decided by ``ConfigChainResolver``
(forced credential, BYOK override, user chain, system chain). Failures are
classified once by ``classify_error`` into a closed taxonomy that decides
whether to fall back and what the caller may see.
"""

from scrapegate.api import Gateway, define_fields, extract_sync
from scrapegate.billing import BillingGate, LedgerBillingGate
from scrapegate.capabilities import (
    CapabilityCache,
    OpenRouterCapabilityLoader,
    StrictModeAdvisor,
)
from scrapegate.classifier import ErrorCategory, classify_error
from scrapegate.config import DEFAULT_SNAPSHOT, ConfigSnapshot, GatewayConfig, load_config
from scrapegate.crawl import CrawlOrchestrator
from scrapegate.engine import Crawl4AIEngine, ExtractionEngine
from scrapegate.exceptions import (
    BillingError,
    ClassifiedError,
    ConfigError,
    ExtractionError,
    FetchError,
    InsufficientBalanceError,
    NoProvidersConfiguredError,
    ProviderError,
    ScrapeGateError,
)
from scrapegate.extraction import build_schema, resolve_relative_urls, schema_from_json
from scrapegate.models import (
    ConfigChain,
    CrawlOptions,
    CrawlRequest,
    CrawlResult,
    ExtractContext,
    ExtractionSchema,
    ExtractOutput,
    FallbackChainEntry,
    FieldDefinition,
    LLMConfig,
    PageResult,
    ProviderKey,
)
from scrapegate.orchestrator import ExtractionOrchestrator
from scrapegate.resolver import ConfigChainResolver
from scrapegate.storage import CredentialStore, InMemoryCredentialStore
from scrapegate.tasks import DetachedTaskRunner
from scrapegate.webhooks import WebhookConfig, WebhookDispatcher

__all__ = [
    # Primary API
    "Gateway",
    "define_fields",
    "extract_sync",
    # Core
    "ConfigChainResolver",
    "ExtractionOrchestrator",
    "CrawlOrchestrator",
    "StrictModeAdvisor",
    "classify_error",
    "ErrorCategory",
    # Collaborators
    "BillingGate",
    "LedgerBillingGate",
    "CredentialStore",
    "InMemoryCredentialStore",
    "ExtractionEngine",
    "Crawl4AIEngine",
    "CapabilityCache",
    "OpenRouterCapabilityLoader",
    "DetachedTaskRunner",
    "WebhookConfig",
    "WebhookDispatcher",
    # Models
    "LLMConfig",
    "ConfigChain",
    "FallbackChainEntry",
    "ProviderKey",
    "ExtractContext",
    "FieldDefinition",
    "ExtractionSchema",
    "ExtractOutput",
    "CrawlOptions",
    "CrawlRequest",
    "CrawlResult",
    "PageResult",
    # Schema helpers
    "build_schema",
    "schema_from_json",
    "resolve_relative_urls",
    # Config
    "GatewayConfig",
    "load_config",
    "ConfigSnapshot",
    "DEFAULT_SNAPSHOT",
    # Exceptions
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

__version__ = "0.1.0"

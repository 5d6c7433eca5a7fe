"""Public API for the scrapegate library.

This module provides the primary interface that users interact with:

- **Gateway**: The main class, used as an async context manager. It wires
  the resolver, the orchestrators, billing, webhooks and the engine.
- **define_fields()**: Convenience helper for creating FieldDefinition lists.
- **extract_sync()**: Synchronous wrapper for simple single-URL extraction.

Usage::

    from scrapegate import (
        CrawlRequest,
        ExtractContext,
        Gateway,
        InMemoryCredentialStore,
        build_schema,
        define_fields,
    )

    store = InMemoryCredentialStore.from_file("credentials.json")
    fields = define_fields(
        ("company_name", "The name of the company", "string"),
        ("emails", "All contact email addresses", "list[string]"),
    )
    ctx = ExtractContext(user_id="user-1", tier="pro")

    async with Gateway(store=store) as gateway:
        output = await gateway.extract("https://example.com", fields, ctx)
        print(output.data, output.metadata.provider)

        request = CrawlRequest(url="https://example.com", extraction_schema=build_schema(fields))
        result = await gateway.crawl(request, ctx, on_result=print)
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, List, Optional, Sequence, Tuple, Union

from scrapegate.billing import BillingGate, LedgerBillingGate
from scrapegate.capabilities import StrictModeAdvisor
from scrapegate.config import DEFAULT_SNAPSHOT, ConfigSnapshot, GatewayConfig, load_config
from scrapegate.crawl import CrawlOrchestrator, QueuedCallback, ResultCallback
from scrapegate.engine import Crawl4AIEngine, ExtractionEngine
from scrapegate.exceptions import ClassifiedError, ConfigError, ScrapeGateError
from scrapegate.extraction import build_schema
from scrapegate.models import (
    ConfigChain,
    CrawlRequest,
    CrawlResult,
    ExtractContext,
    ExtractionSchema,
    ExtractOutput,
    FieldDefinition,
    LLMConfig,
)
from scrapegate.orchestrator import ExtractionOrchestrator
from scrapegate.resolver import ConfigChainResolver
from scrapegate.storage import CredentialStore
from scrapegate.tasks import DetachedTaskRunner
from scrapegate.webhooks import WebhookConfig, WebhookDispatcher

__all__ = [
    "Gateway",
    "define_fields",
    "extract_sync",
]

logger = logging.getLogger(__name__)

SchemaLike = Union[ExtractionSchema, Sequence[FieldDefinition]]


# ---------------------------------------------------------------------------
# Convenience helpers
# ---------------------------------------------------------------------------


def define_fields(
    *field_tuples: Union[
        Tuple[str, str],
        Tuple[str, str, str],
    ],
) -> List[FieldDefinition]:
    """Create a list of FieldDefinition objects from tuples.

    Each tuple can be:
    - ``(name, description)`` -- defaults to type ``"string"``
    - ``(name, description, type)`` -- explicit type

    Raises:
        ConfigError: If any tuple has invalid length.

    Examples:
        >>> fields = define_fields(
        ...     ("company_name", "The company's official name"),
        ...     ("employees", "List of employee names", "list[string]"),
        ... )
        >>> [f.type for f in fields]
        ['string', 'list[string]']
    """
    result: List[FieldDefinition] = []

    for i, t in enumerate(field_tuples):
        if len(t) == 2:
            name, description = t
            field_type = "string"
        elif len(t) == 3:
            name, description, field_type = t
        else:
            raise ConfigError(
                f"Field tuple at index {i} has {len(t)} elements; expected 2 or 3. "
                f"Format: (name, description) or (name, description, type)"
            )

        result.append(FieldDefinition(name=name, description=description, type=field_type))

    return result


def _as_schema(schema: SchemaLike) -> ExtractionSchema:
    if isinstance(schema, ExtractionSchema):
        return schema
    return build_schema(list(schema))


# ---------------------------------------------------------------------------
# Gateway class
# ---------------------------------------------------------------------------


class Gateway:
    """Extraction gateway with provider fallback and billing.

    Must be used as an async context manager. On exit, detached work
    (usage records, webhooks) is drained and an engine the gateway created
    itself is shut down.

    Args:
        config: Runtime settings (``load_config()`` when None).
        store: Credential and chain storage.
        billing: Billing gate (an in-memory ledger when None).
        engine: Extraction engine. When None, a ``Crawl4AIEngine`` for
                ``config.backend`` is created and owned by the gateway.
        snapshot: Tier, capability and pricing snapshot.
        advisor: Strict-mode advisor (static tables only when None).
        webhooks: Webhook dispatcher (built from ``config`` when None).
        tasks: Runner for detached work (built from ``config`` when None).
    """

    def __init__(
        self,
        config: Optional[GatewayConfig] = None,
        *,
        store: CredentialStore,
        billing: Optional[BillingGate] = None,
        engine: Optional[ExtractionEngine] = None,
        snapshot: Optional[ConfigSnapshot] = None,
        advisor: Optional[StrictModeAdvisor] = None,
        webhooks: Optional[WebhookDispatcher] = None,
        tasks: Optional[DetachedTaskRunner] = None,
    ) -> None:
        self._config = config or load_config()
        self._snapshot = snapshot or DEFAULT_SNAPSHOT
        self._tasks = tasks or DetachedTaskRunner(
            default_timeout=self._config.record_timeout_seconds,
            default_max_attempts=self._config.record_max_attempts,
        )
        self._billing: BillingGate = billing or LedgerBillingGate(
            self._snapshot,
            tasks=self._tasks,
            record_timeout=self._config.record_timeout_seconds,
            record_max_attempts=self._config.record_max_attempts,
        )
        self._advisor = advisor or StrictModeAdvisor(self._snapshot, tasks=self._tasks)
        self._webhooks = webhooks or WebhookDispatcher(
            self._tasks,
            timeout=self._config.webhook_timeout_seconds,
            max_attempts=self._config.webhook_max_attempts,
        )
        self._resolver = ConfigChainResolver(
            store,
            advisor=self._advisor,
            snapshot=self._snapshot,
            service_keys=self._config.service_keys,
        )
        self._owns_engine = engine is None
        self._engine: Optional[ExtractionEngine] = engine
        self._extractor: Optional[ExtractionOrchestrator] = None
        self._crawler: Optional[CrawlOrchestrator] = None

    @property
    def config(self) -> GatewayConfig:
        """Return the gateway configuration (read-only)."""
        return self._config

    @property
    def billing(self) -> BillingGate:
        return self._billing

    @property
    def tasks(self) -> DetachedTaskRunner:
        return self._tasks

    async def __aenter__(self) -> Gateway:
        if self._owns_engine:
            engine = Crawl4AIEngine(self._config)
            await engine.__aenter__()
            self._engine = engine

        if self._engine is None:
            raise RuntimeError("Gateway has no extraction engine")
        self._extractor = ExtractionOrchestrator(
            self._resolver,
            self._engine,
            self._billing,
            tasks=self._tasks,
            fallback_delay=self._config.fallback_delay_seconds,
            record_timeout=self._config.record_timeout_seconds,
            record_max_attempts=self._config.record_max_attempts,
        )
        self._crawler = CrawlOrchestrator(
            self._resolver,
            self._engine,
            self._billing,
            tasks=self._tasks,
            record_timeout=self._config.record_timeout_seconds,
            record_max_attempts=self._config.record_max_attempts,
        )
        logger.info("Gateway started (snapshot %s)", self._snapshot.version)
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        try:
            await self._tasks.drain()
        finally:
            if self._owns_engine and self._engine is not None:
                await self._engine.__aexit__(exc_type, exc_val, exc_tb)  # type: ignore[attr-defined]
                self._engine = None
            self._extractor = None
            self._crawler = None
        logger.info("Gateway shut down")

    def _ensure_entered(self) -> Tuple[ExtractionOrchestrator, CrawlOrchestrator]:
        if self._extractor is None or self._crawler is None:
            raise RuntimeError(
                "Gateway must be used as an async context manager: "
                "'async with Gateway(store=store) as gateway: ...'"
            )
        return self._extractor, self._crawler

    def _context(self, ctx: Optional[ExtractContext]) -> ExtractContext:
        if ctx is not None:
            return ctx
        return ExtractContext(tier=self._config.default_tier)

    # -------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------

    async def resolve_chain(
        self,
        ctx: Optional[ExtractContext] = None,
        override: Optional[LLMConfig] = None,
    ) -> ConfigChain:
        """Return the fallback chain a call with this context would use."""
        return await self._resolver.resolve(self._context(ctx), override)

    async def extract(
        self,
        url: str,
        schema: SchemaLike,
        ctx: Optional[ExtractContext] = None,
        override: Optional[LLMConfig] = None,
        *,
        webhook: Optional[WebhookConfig] = None,
    ) -> ExtractOutput:
        """Extract one page, falling back across the resolved chain.

        Args:
            url: Page to extract.
            schema: An ExtractionSchema or a list of FieldDefinitions.
            ctx: Caller context (anonymous on the default tier when None).
            override: Manual candidate, honored when BYOK is allowed.
            webhook: Notified with ``extract.completed`` or ``extract.failed``.
        """
        extractor, _ = self._ensure_entered()
        ctx = self._context(ctx)
        try:
            output = await extractor.extract(url, _as_schema(schema), ctx, override)
        except ScrapeGateError as exc:
            self._notify(webhook, "extract.failed", ctx, _failure_data(url, exc))
            raise
        self._notify(webhook, "extract.completed", ctx, output.model_dump(mode="json"))
        return output

    async def crawl(
        self,
        request: CrawlRequest,
        ctx: Optional[ExtractContext] = None,
        override: Optional[LLMConfig] = None,
        *,
        on_result: Optional[ResultCallback] = None,
        on_urls_queued: Optional[QueuedCallback] = None,
        webhook: Optional[WebhookConfig] = None,
    ) -> CrawlResult:
        """Crawl from the request's seeds and extract every visited page.

        See ``CrawlOrchestrator.crawl()`` for the callback contract.
        """
        _, crawler = self._ensure_entered()
        ctx = self._context(ctx)
        try:
            result = await crawler.crawl(
                request,
                ctx,
                override,
                on_result=on_result,
                on_urls_queued=on_urls_queued,
            )
        except ScrapeGateError as exc:
            self._notify(webhook, "crawl.failed", ctx, _failure_data(request.url, exc))
            raise
        self._notify(webhook, "crawl.completed", ctx, result.model_dump(mode="json"))
        return result

    def _notify(
        self,
        webhook: Optional[WebhookConfig],
        event: str,
        ctx: ExtractContext,
        data: Any,
    ) -> None:
        if webhook is None:
            return
        self._webhooks.send(webhook, event, ctx.job_id or "", data)


def _failure_data(url: str, exc: ScrapeGateError) -> dict:
    data = {"url": url, "error": str(exc)}
    if isinstance(exc, ClassifiedError):
        data["category"] = exc.category.value
    return data


# ---------------------------------------------------------------------------
# Module-level sync helper
# ---------------------------------------------------------------------------


def extract_sync(
    url: str,
    schema: SchemaLike,
    *,
    store: CredentialStore,
    ctx: Optional[ExtractContext] = None,
    override: Optional[LLMConfig] = None,
    billing: Optional[BillingGate] = None,
    **config_kwargs: Any,
) -> ExtractOutput:
    """Synchronous convenience function for single-URL extraction.

    Creates a Gateway, extracts one URL, and shuts everything down.
    For several URLs or crawling, use the async ``Gateway`` class.

    Args:
        url: The URL to extract.
        schema: An ExtractionSchema or a list of FieldDefinitions.
        store: Credential and chain storage.
        ctx: Caller context.
        override: Manual candidate, honored when BYOK is allowed.
        billing: Billing gate (in-memory ledger when None).
        **config_kwargs: Passed to ``load_config()``.

    Examples:
        >>> from scrapegate import extract_sync, define_fields
        >>> fields = define_fields(("title", "Page title"))
        >>> output = extract_sync("https://example.com", fields, store=store)
        >>> print(output.data)
    """
    config = load_config(**config_kwargs)

    async def _run() -> ExtractOutput:
        async with Gateway(config, store=store, billing=billing) as gateway:
            return await gateway.extract(url, schema, ctx, override)

    return asyncio.run(_run())

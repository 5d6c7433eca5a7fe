"""Strict-mode advice per provider and model.

"Strict mode" asks the provider to enforce the exact JSON schema on the
model's output. Not every provider or model supports it, so before a
candidate is built the resolver asks the ``StrictModeAdvisor``:

1. An explicit chain-level override always wins.
2. Otherwise the capability cache is consulted.
3. On a cache miss the static table of the injected ``ConfigSnapshot`` answers.

A cache miss also schedules a background refresh for that provider (when a
loader is registered for it) on the ``DetachedTaskRunner``. The refresh is
not part of the answer; the next resolution benefits from it.

Capability data comes from ``OpenRouterCapabilityLoader``, which reads the
public OpenRouter model list with ``httpx``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Dict, Optional, Protocol, Set, Tuple

import httpx
from pydantic import BaseModel, ConfigDict

from scrapegate.config import DEFAULT_SNAPSHOT, ConfigSnapshot
from scrapegate.models import DEFAULT_MAX_OUTPUT_TOKENS
from scrapegate.tasks import DetachedTaskRunner

__all__ = [
    "ModelCapabilities",
    "CapabilityLoader",
    "CapabilityCache",
    "OpenRouterCapabilityLoader",
    "StrictModeAdvisor",
    "parse_openrouter_models",
]

logger = logging.getLogger(__name__)

OPENROUTER_MODELS_URL = "https://openrouter.ai/api/v1/models"


class ModelCapabilities(BaseModel):
    """What a model is known to support."""

    model_config = ConfigDict(frozen=True)

    supports_structured_outputs: bool = False
    context_length: Optional[int] = None
    max_completion_tokens: Optional[int] = None


class CapabilityLoader(Protocol):
    """Fetches capabilities for every model of one provider."""

    async def load(self) -> Dict[str, ModelCapabilities]: ...


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------


class CapabilityCache:
    """Per-provider capability tables with a time-to-live.

    Args:
        ttl_seconds: How long a provider's table stays fresh.
        clock: Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        ttl_seconds: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._tables: Dict[str, Tuple[float, Dict[str, ModelCapabilities]]] = {}

    def get(self, provider: str, model: str) -> Optional[ModelCapabilities]:
        """Return cached capabilities, or None when missing or stale."""
        entry = self._tables.get(provider)
        if entry is None:
            return None
        stored_at, table = entry
        if self._clock() - stored_at > self._ttl:
            return None
        return table.get(model)

    def is_fresh(self, provider: str) -> bool:
        entry = self._tables.get(provider)
        return entry is not None and self._clock() - entry[0] <= self._ttl

    def put(self, provider: str, table: Dict[str, ModelCapabilities]) -> None:
        """Replace the table for a provider."""
        self._tables[provider] = (self._clock(), dict(table))


# ---------------------------------------------------------------------------
# OpenRouter loader
# ---------------------------------------------------------------------------


class OpenRouterCapabilityLoader:
    """Reads model capabilities from the OpenRouter model list.

    A model supports strict mode when ``supported_parameters`` lists
    ``structured_outputs``.

    Args:
        client: Optional shared ``httpx.AsyncClient``; a short-lived one is
                created per call otherwise.
        url: Model list endpoint.
        timeout: Request timeout in seconds.
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        url: str = OPENROUTER_MODELS_URL,
        timeout: float = 30.0,
    ) -> None:
        self._client = client
        self._url = url
        self._timeout = timeout

    async def load(self) -> Dict[str, ModelCapabilities]:
        if self._client is not None:
            payload = await self._fetch(self._client)
        else:
            async with httpx.AsyncClient() as client:
                payload = await self._fetch(client)
        return parse_openrouter_models(payload)

    async def _fetch(self, client: httpx.AsyncClient) -> Any:
        response = await client.get(self._url, timeout=self._timeout)
        response.raise_for_status()
        return response.json()


def parse_openrouter_models(payload: Any) -> Dict[str, ModelCapabilities]:
    """Turn an OpenRouter ``/models`` response into a capability table.

    Entries without an ``id`` are skipped.
    """
    table: Dict[str, ModelCapabilities] = {}
    for item in (payload or {}).get("data", []) or []:
        model_id = item.get("id")
        if not model_id:
            continue
        params = item.get("supported_parameters") or []
        top_provider = item.get("top_provider") or {}
        table[model_id] = ModelCapabilities(
            supports_structured_outputs="structured_outputs" in params,
            context_length=item.get("context_length"),
            max_completion_tokens=top_provider.get("max_completion_tokens"),
        )
    return table


# ---------------------------------------------------------------------------
# Advisor
# ---------------------------------------------------------------------------


class StrictModeAdvisor:
    """Decides whether strict JSON-schema mode is used for a provider/model.

    Args:
        snapshot: Static fallback tables.
        cache: Capability cache (a fresh one if None).
        loaders: Capability loaders keyed by provider.
        tasks: Runner used for background refreshes. Without one, misses
               never trigger a refresh.

    Examples:
        >>> advisor = StrictModeAdvisor()
        >>> advisor.strict_mode("openai", "gpt-4o-mini")
        True
        >>> advisor.strict_mode("openai", "gpt-4o-mini", override=False)
        False
    """

    def __init__(
        self,
        snapshot: ConfigSnapshot = DEFAULT_SNAPSHOT,
        cache: Optional[CapabilityCache] = None,
        loaders: Optional[Dict[str, CapabilityLoader]] = None,
        tasks: Optional[DetachedTaskRunner] = None,
    ) -> None:
        self._snapshot = snapshot
        self._cache = cache or CapabilityCache()
        self._loaders = dict(loaders or {})
        self._tasks = tasks
        self._refreshing: Set[str] = set()

    @property
    def cache(self) -> CapabilityCache:
        return self._cache

    def strict_mode(
        self,
        provider: str,
        model: str,
        override: Optional[bool] = None,
    ) -> bool:
        """Return whether strict mode should be requested."""
        if override is not None:
            return override

        provider = provider.lower()
        cached = self._cache.get(provider, model)
        if cached is not None:
            return cached.supports_structured_outputs

        self._schedule_refresh(provider)
        return self._snapshot.model_settings(provider, model).strict_mode

    def max_output_tokens(
        self,
        provider: str,
        model: str,
        override: Optional[int] = None,
    ) -> int:
        """Return the output token cap: override, cached capability, static settings."""
        if override:
            return override
        cached = self._cache.get(provider.lower(), model)
        if cached is not None and cached.max_completion_tokens:
            return cached.max_completion_tokens
        settings = self._snapshot.model_settings(provider, model)
        return settings.max_tokens or DEFAULT_MAX_OUTPUT_TOKENS

    async def refresh(self, provider: str) -> bool:
        """Reload the capability table of one provider.

        Returns:
            True when a table was loaded and stored.
        """
        loader = self._loaders.get(provider)
        if loader is None:
            return False
        table = await loader.load()
        self._cache.put(provider, table)
        logger.info("Loaded capabilities for %d %s model(s)", len(table), provider)
        return True

    def _schedule_refresh(self, provider: str) -> None:
        if self._tasks is None or provider not in self._loaders:
            return
        if provider in self._refreshing or self._cache.is_fresh(provider):
            return
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return

        self._refreshing.add(provider)
        task = self._tasks.submit(
            lambda: self.refresh(provider),
            name=f"capabilities:{provider}",
            max_attempts=1,
        )
        task.add_done_callback(lambda _: self._refreshing.discard(provider))

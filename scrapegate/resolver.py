"""Config chain resolution: which provider, model and key to try, in what order.

``ConfigChainResolver.resolve()`` turns a caller's context into an
immutable ``ConfigChain``. The first matching rule wins:

1. **Forced provider/model** (scoped inbound credential): one candidate with
   the system key for that provider. Not BYOK.
2. **Override + BYOK allowed**: the override, as given. BYOK.
3. **BYOK + custom models**: the user's chain with the user's keys. Entries
   whose provider has no user key are dropped, key-less providers are kept.
   BYOK when non-empty.
4. **Custom models only**: the user's chain with system keys. Not BYOK.
5. **BYOK only**: the system chain for the tier restricted to providers
   the user holds a key for, all using the user's keys. BYOK when non-empty.
6. **Default**: the system chain for the tier with system keys. Not BYOK.

System chains are looked up tier-specific, then tier-agnostic, then the
``free`` chain. There is no built-in chain: when nothing is configured the
result is empty and callers must report "no providers configured".

Resolution never raises. Storage failures are logged and treated as "no
data", so a broken store degrades to the next rule.

A chain is homogeneous: every candidate uses the caller's keys or every
candidate uses system keys.
"""

from __future__ import annotations

import logging
from typing import Awaitable, Dict, List, Optional, TypeVar

from scrapegate.capabilities import StrictModeAdvisor
from scrapegate.config import DEFAULT_SNAPSHOT, ConfigSnapshot
from scrapegate.models import (
    KEYLESS_PROVIDERS,
    ConfigChain,
    ExtractContext,
    FallbackChainEntry,
    LLMConfig,
    ProviderKey,
)
from scrapegate.storage import CredentialStore

__all__ = ["ConfigChainResolver"]

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ConfigChainResolver:
    """Builds the fallback chain for one call.

    Args:
        store: Where user/system chains and keys live.
        advisor: Strict-mode advisor.
        snapshot: Tier aliases and per-model settings.
        service_keys: System keys from the environment, used for providers
                      the store has no system key for.
    """

    def __init__(
        self,
        store: CredentialStore,
        advisor: Optional[StrictModeAdvisor] = None,
        snapshot: ConfigSnapshot = DEFAULT_SNAPSHOT,
        service_keys: Optional[Dict[str, str]] = None,
    ) -> None:
        self._store = store
        self._snapshot = snapshot
        self._advisor = advisor or StrictModeAdvisor(snapshot)
        self._service_keys = dict(service_keys or {})

    async def resolve(
        self,
        ctx: ExtractContext,
        override: Optional[LLMConfig] = None,
    ) -> ConfigChain:
        """Resolve the chain for a context and an optional manual override."""
        tier = self._snapshot.normalize_tier(ctx.tier)

        if ctx.has_forced_config:
            keys = await self.system_keys()
            config = self._build(
                ctx.forced_provider,
                ctx.forced_model,
                api_key=keys.get(ctx.forced_provider.lower(), ""),
            )
            logger.info(
                "Using forced provider %s/%s for user %s",
                config.provider,
                config.model,
                ctx.user_id,
            )
            return ConfigChain(configs=(config,), is_byok=False)

        if override is not None:
            if ctx.byok_allowed:
                logger.info(
                    "Using override %s/%s for user %s (BYOK)",
                    override.provider,
                    override.model,
                    ctx.user_id,
                )
                return ConfigChain(configs=(override,), is_byok=True)
            logger.debug("Override ignored for user %s: BYOK not allowed", ctx.user_id)

        if ctx.byok_allowed and ctx.custom_models_allowed:
            configs = await self._user_chain_with_user_keys(ctx.user_id)
            if configs:
                return self._chain(configs, True, "user chain with user keys", ctx)

        if ctx.custom_models_allowed and not ctx.byok_allowed:
            configs = await self._user_chain_with_system_keys(ctx.user_id)
            if configs:
                return self._chain(configs, False, "user chain with system keys", ctx)

        if ctx.byok_allowed and not ctx.custom_models_allowed:
            configs = await self._system_chain_with_user_keys(ctx.user_id, tier)
            if configs:
                return self._chain(configs, True, "system chain with user keys", ctx)

        configs = await self.default_configs_for_tier(tier)
        if not configs:
            logger.warning("No provider chain configured for tier %s", tier)
            return ConfigChain(configs=(), is_byok=False)
        return self._chain(configs, False, "system chain", ctx)

    async def default_configs_for_tier(self, tier: Optional[str]) -> List[LLMConfig]:
        """System chain for a tier with system keys, entries without a key dropped."""
        entries = await self._system_entries(self._snapshot.normalize_tier(tier))
        if not entries:
            return []

        keys = await self.system_keys()
        configs: List[LLMConfig] = []
        for entry in entries:
            api_key = keys.get(entry.provider, "")
            if not api_key and entry.provider not in KEYLESS_PROVIDERS:
                logger.debug(
                    "Skipping %s/%s: no system key configured",
                    entry.provider,
                    entry.model,
                )
                continue
            configs.append(self._from_entry(entry, api_key=api_key))
        return configs

    async def system_keys(self) -> Dict[str, str]:
        """System keys: the store first, the environment for anything missing."""
        keys = await self._safely(self._store.get_system_keys(), "system keys") or {}
        merged = {provider.lower(): key for provider, key in keys.items() if key}
        for provider, key in self._service_keys.items():
            if key and provider not in merged:
                merged[provider] = key
        return merged

    # -------------------------------------------------------------------
    # Rule helpers
    # -------------------------------------------------------------------

    async def _user_chain_with_user_keys(self, user_id: str) -> List[LLMConfig]:
        entries = await self._user_entries(user_id)
        if not entries:
            return []
        keys = await self._user_keys(user_id)

        configs: List[LLMConfig] = []
        for entry in entries:
            key = keys.get(entry.provider)
            if entry.provider in KEYLESS_PROVIDERS:
                configs.append(
                    self._from_entry(entry, base_url=key.base_url if key else "")
                )
            elif key is not None and key.api_key:
                configs.append(
                    self._from_entry(entry, api_key=key.api_key, base_url=key.base_url)
                )
        return configs

    async def _user_chain_with_system_keys(self, user_id: str) -> List[LLMConfig]:
        entries = await self._user_entries(user_id)
        if not entries:
            return []
        keys = await self.system_keys()

        configs: List[LLMConfig] = []
        for entry in entries:
            api_key = keys.get(entry.provider, "")
            if api_key or entry.provider in KEYLESS_PROVIDERS:
                configs.append(self._from_entry(entry, api_key=api_key))
        return configs

    async def _system_chain_with_user_keys(self, user_id: str, tier: str) -> List[LLMConfig]:
        keys = await self._user_keys(user_id)
        if not keys:
            return []
        entries = await self._system_entries(tier)

        configs: List[LLMConfig] = []
        for entry in entries:
            key = keys.get(entry.provider)
            if key is not None and key.api_key:
                configs.append(
                    self._from_entry(entry, api_key=key.api_key, base_url=key.base_url)
                )
        return configs

    # -------------------------------------------------------------------
    # Store access
    # -------------------------------------------------------------------

    async def _system_entries(self, tier: str) -> List[FallbackChainEntry]:
        for lookup in (tier, None, "free"):
            if lookup == "free" and tier == "free":
                break
            entries = await self._safely(
                self._store.get_system_chain(lookup),
                f"system chain ({lookup or 'default'})",
            )
            enabled = [entry for entry in entries or [] if entry.enabled]
            if enabled:
                return enabled
        return []

    async def _user_entries(self, user_id: str) -> List[FallbackChainEntry]:
        entries = await self._safely(self._store.get_user_chain(user_id), "user chain")
        return [entry for entry in entries or [] if entry.enabled]

    async def _user_keys(self, user_id: str) -> Dict[str, ProviderKey]:
        keys = await self._safely(self._store.get_user_keys(user_id), "user keys")
        return {
            provider.lower(): key
            for provider, key in (keys or {}).items()
            if key.enabled
        }

    async def _safely(self, pending: Awaitable[T], what: str) -> Optional[T]:
        try:
            return await pending
        except Exception as exc:
            logger.warning("Failed to load %s: %s", what, exc, exc_info=True)
            return None

    # -------------------------------------------------------------------
    # Config construction
    # -------------------------------------------------------------------

    def _from_entry(
        self,
        entry: FallbackChainEntry,
        *,
        api_key: str = "",
        base_url: str = "",
    ) -> LLMConfig:
        return self._build(
            entry.provider,
            entry.model,
            api_key=api_key,
            base_url=base_url,
            strict_override=entry.strict_mode,
            max_tokens=entry.max_tokens,
        )

    def _build(
        self,
        provider: str,
        model: str,
        *,
        api_key: str = "",
        base_url: str = "",
        strict_override: Optional[bool] = None,
        max_tokens: Optional[int] = None,
    ) -> LLMConfig:
        provider = provider.strip().lower()
        return LLMConfig(
            provider=provider,
            model=model,
            api_key=api_key,
            base_url=base_url,
            strict_mode=self._advisor.strict_mode(provider, model, strict_override),
            max_tokens=self._advisor.max_output_tokens(provider, model, max_tokens),
        )

    def _chain(
        self,
        configs: List[LLMConfig],
        is_byok: bool,
        source: str,
        ctx: ExtractContext,
    ) -> ConfigChain:
        logger.info(
            "Resolved %d candidate(s) from %s for user %s (first %s/%s, byok=%s, snapshot=%s)",
            len(configs),
            source,
            ctx.user_id or "anonymous",
            configs[0].provider,
            configs[0].model,
            is_byok,
            self._snapshot.version,
        )
        return ConfigChain(configs=tuple(configs), is_byok=is_byok)

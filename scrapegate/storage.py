"""Credential and fallback-chain storage.

The resolver only reads from storage. ``CredentialStore`` is the protocol
it depends on; ``InMemoryCredentialStore`` is a complete implementation
backed by dictionaries, which can also be loaded from a JSON file for the
CLI.

JSON layout accepted by ``InMemoryCredentialStore.from_file()``::

    {
      "system": {
        "keys": {"openrouter": "sk-or-...", "anthropic": "sk-ant-..."},
        "chains": {
          "default": [{"provider": "openrouter", "model": "openai/gpt-4o-mini"}],
          "pro": [{"provider": "anthropic", "model": "claude-3-5-haiku-latest"}]
        }
      },
      "users": {
        "user-1": {
          "keys": [{"provider": "openai", "api_key": "sk-..."}],
          "chain": [{"provider": "openai", "model": "gpt-4o-mini"}]
        }
      }
    }

Chain entries without a ``position`` keep their list order.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Protocol, Union

from scrapegate.exceptions import ConfigError
from scrapegate.models import FallbackChainEntry, ProviderKey

__all__ = [
    "DEFAULT_CHAIN_KEY",
    "CredentialStore",
    "InMemoryCredentialStore",
]

logger = logging.getLogger(__name__)

DEFAULT_CHAIN_KEY = "default"
"""Key of the tier-agnostic system chain."""


class CredentialStore(Protocol):
    """Read access to stored keys and fallback chains."""

    async def get_user_chain(self, user_id: str) -> List[FallbackChainEntry]: ...

    async def get_user_keys(self, user_id: str) -> Dict[str, ProviderKey]: ...

    async def get_system_chain(self, tier: Optional[str]) -> List[FallbackChainEntry]:
        """Return the chain for ``tier``, or the tier-agnostic one for None."""
        ...

    async def get_system_keys(self) -> Dict[str, str]: ...


def _ordered(entries: Iterable[FallbackChainEntry]) -> List[FallbackChainEntry]:
    return sorted(entries, key=lambda entry: entry.position)


def _parse_chain(raw: Any, where: str) -> List[FallbackChainEntry]:
    if not isinstance(raw, list):
        raise ConfigError(f"Chain at {where} must be a list")
    entries: List[FallbackChainEntry] = []
    for index, item in enumerate(raw):
        if not isinstance(item, dict):
            raise ConfigError(f"Chain entry {index} at {where} must be an object")
        data = dict(item)
        data.setdefault("position", index)
        try:
            entries.append(FallbackChainEntry.model_validate(data))
        except ValueError as exc:
            raise ConfigError(f"Invalid chain entry {index} at {where}: {exc}") from exc
    return entries


class InMemoryCredentialStore:
    """Dictionary-backed credential store.

    Examples:
        >>> store = InMemoryCredentialStore()
        >>> store.set_system_key("openrouter", "sk-or-test")
        >>> store.set_system_chain([FallbackChainEntry(provider="openrouter", model="openai/gpt-4o-mini")])
    """

    def __init__(self) -> None:
        self._system_keys: Dict[str, str] = {}
        self._system_chains: Dict[str, List[FallbackChainEntry]] = {}
        self._user_keys: Dict[str, Dict[str, ProviderKey]] = {}
        self._user_chains: Dict[str, List[FallbackChainEntry]] = {}

    # -------------------------------------------------------------------
    # Loading
    # -------------------------------------------------------------------

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> InMemoryCredentialStore:
        """Build a store from the JSON layout described in the module docstring.

        Raises:
            ConfigError: If the data does not follow the layout.
        """
        store = cls()
        system = data.get("system") or {}
        for provider, key in (system.get("keys") or {}).items():
            store.set_system_key(provider, key)
        for tier, raw_chain in (system.get("chains") or {}).items():
            chain_tier = None if tier == DEFAULT_CHAIN_KEY else tier
            store.set_system_chain(_parse_chain(raw_chain, f"system.chains.{tier}"), tier=chain_tier)

        for user_id, user in (data.get("users") or {}).items():
            for index, raw_key in enumerate(user.get("keys") or []):
                try:
                    store.set_user_key(user_id, ProviderKey.model_validate(raw_key))
                except ValueError as exc:
                    raise ConfigError(f"Invalid key {index} for user {user_id!r}: {exc}") from exc
            if "chain" in user:
                store.set_user_chain(user_id, _parse_chain(user["chain"], f"users.{user_id}.chain"))

        return store

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> InMemoryCredentialStore:
        """Load a store from a JSON file.

        Raises:
            ConfigError: If the file cannot be read or parsed.
        """
        try:
            raw = json.loads(Path(path).read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise ConfigError(f"Cannot load credentials from {path}: {exc}") from exc
        if not isinstance(raw, dict):
            raise ConfigError(f"Credentials file {path} must contain a JSON object")
        store = cls.from_dict(raw)
        logger.info("Loaded credentials from %s", path)
        return store

    # -------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------

    def set_system_key(self, provider: str, api_key: str) -> None:
        self._system_keys[provider.strip().lower()] = api_key

    def set_system_chain(
        self,
        entries: Iterable[FallbackChainEntry],
        tier: Optional[str] = None,
    ) -> None:
        """Replace the system chain for a tier (None for the tier-agnostic chain)."""
        self._system_chains[tier or DEFAULT_CHAIN_KEY] = _ordered(entries)

    def set_user_key(self, user_id: str, key: ProviderKey) -> None:
        self._user_keys.setdefault(user_id, {})[key.provider] = key

    def set_user_chain(self, user_id: str, entries: Iterable[FallbackChainEntry]) -> None:
        self._user_chains[user_id] = _ordered(entries)

    # -------------------------------------------------------------------
    # CredentialStore protocol
    # -------------------------------------------------------------------

    async def get_user_chain(self, user_id: str) -> List[FallbackChainEntry]:
        return list(self._user_chains.get(user_id, []))

    async def get_user_keys(self, user_id: str) -> Dict[str, ProviderKey]:
        return dict(self._user_keys.get(user_id, {}))

    async def get_system_chain(self, tier: Optional[str]) -> List[FallbackChainEntry]:
        return list(self._system_chains.get(tier or DEFAULT_CHAIN_KEY, []))

    async def get_system_keys(self) -> Dict[str, str]:
        return dict(self._system_keys)

"""Pytest configuration and shared fixtures.

Provides reusable test fixtures for:
- A scripted in-process extraction engine (no network, no browser)
- An in-memory credential store with system keys and chains
- Ledger billing and a detached task runner with no retry backoff
- Sample schemas and contexts
"""

import asyncio
from typing import Any, Dict, List, Optional, Tuple

import pytest

from scrapegate.billing import LedgerBillingGate
from scrapegate.config import DEFAULT_SNAPSHOT
from scrapegate.extraction import build_schema
from scrapegate.models import (
    ExtractContext,
    FallbackChainEntry,
    FieldDefinition,
    PageOutcome,
    TokenUsage,
)
from scrapegate.resolver import ConfigChainResolver
from scrapegate.storage import InMemoryCredentialStore
from scrapegate.tasks import DetachedTaskRunner


# =============================================================================
# Fake engine
# =============================================================================


class FakeEngine:
    """Scripted extraction engine.

    ``script(provider, model, *results)`` queues what ``extract_page`` returns
    for that candidate: a PageOutcome, a dict of data, or an exception to
    raise. Unscripted candidates succeed with ``default_data``.

    ``pages`` is what ``stream_crawl`` yields. Once ``cancel`` is set, only
    ``in_flight`` more pages are yielded. ``stream_error`` is raised after
    ``stream_error_after`` pages.
    """

    def __init__(self) -> None:
        self.calls: List[Tuple[str, str, str]] = []
        self.stream_calls: List[Dict[str, Any]] = []
        self.default_data: Any = {"title": "Example"}
        self.default_usage = TokenUsage(input_tokens=1000, output_tokens=200)
        self.pages: List[PageOutcome] = []
        self.in_flight = 0
        self.stream_error: Optional[BaseException] = None
        self.stream_error_after = 0
        self.yielded = 0
        self.closed = False
        self._scripts: Dict[Tuple[str, str], List[Any]] = {}

    def script(self, provider: str, model: str, *results: Any) -> None:
        self._scripts.setdefault((provider, model), []).extend(results)

    async def extract_page(self, config, schema, url):
        self.calls.append((config.provider, config.model, url))
        queue = self._scripts.get((config.provider, config.model))
        result = queue.pop(0) if queue else None

        if result is None:
            return PageOutcome(url=url, data=self.default_data, usage=self.default_usage)
        if isinstance(result, BaseException):
            raise result
        if isinstance(result, PageOutcome):
            return result
        return PageOutcome(url=url, data=result, usage=self.default_usage)

    async def stream_crawl(self, config, schema, seeds, options, *, cancel, on_urls_queued=None):
        self.stream_calls.append(
            {"provider": config.provider, "model": config.model, "seeds": list(seeds), "options": options}
        )
        try:
            if on_urls_queued is not None:
                await on_urls_queued(len(self.pages))

            remaining_after_cancel = self.in_flight
            for index, page in enumerate(self.pages):
                if self.stream_error is not None and index == self.stream_error_after:
                    raise self.stream_error
                if cancel.is_set():
                    if remaining_after_cancel <= 0:
                        return
                    remaining_after_cancel -= 1
                await asyncio.sleep(0)
                self.yielded += 1
                yield page

            if self.stream_error is not None and self.stream_error_after >= len(self.pages):
                raise self.stream_error
        finally:
            self.closed = True


def page(url: str, data: Any = None, error: Optional[BaseException] = None,
         input_tokens: int = 1000, output_tokens: int = 200) -> PageOutcome:
    """Build a PageOutcome for stream scripts."""
    return PageOutcome(
        url=url,
        data=data if error is None else None,
        error=error,
        usage=TokenUsage(input_tokens=input_tokens, output_tokens=output_tokens),
    )


# =============================================================================
# Collaborators
# =============================================================================


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def tasks():
    return DetachedTaskRunner(default_timeout=5.0, default_max_attempts=2, backoff_seconds=0.0)


@pytest.fixture
def billing(tasks):
    return LedgerBillingGate(DEFAULT_SNAPSHOT, tasks=tasks, balances={"user-1": 10.0})


@pytest.fixture
def store():
    """System keys for openai and anthropic and a two-entry default chain."""
    store = InMemoryCredentialStore()
    store.set_system_key("openai", "sk-system-openai")
    store.set_system_key("anthropic", "sk-system-anthropic")
    store.set_system_chain([
        FallbackChainEntry(provider="openai", model="gpt-4o-mini", position=0),
        FallbackChainEntry(provider="anthropic", model="claude-3-haiku", position=1),
    ])
    return store


@pytest.fixture
def resolver(store):
    return ConfigChainResolver(store)


# =============================================================================
# Sample data
# =============================================================================


@pytest.fixture
def fields():
    return [
        FieldDefinition(name="title", description="Page title"),
        FieldDefinition(name="url", description="Canonical link"),
        FieldDefinition(name="emails", description="Contact emails", type="list[string]"),
    ]


@pytest.fixture
def schema(fields):
    return build_schema(fields)


@pytest.fixture
def ctx():
    return ExtractContext(user_id="user-1", tier="free")

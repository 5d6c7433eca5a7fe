"""Shared extraction helpers used by the engine and the orchestrators.

- **Schema building**: JSON schema and LLM instruction from FieldDefinitions,
  or an ExtractionSchema around a raw JSON schema
- **Strategy creation**: crawl4ai ``LLMExtractionStrategy`` and
  ``CrawlerRunConfig`` for one LLMConfig candidate
- **Result parsing**: turning ``extracted_content`` into data, and provider
  error blocks into ``ProviderError``
- **URL post-processing**: resolving relative links in extracted data
  against the page URL
- **URL utilities**: normalization and domain extraction

Everything except strategy creation is pure Python.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional, Sequence
from urllib.parse import parse_qs, urlencode, urljoin, urlparse, urlunparse

from scrapegate.config import GatewayConfig
from scrapegate.exceptions import ConfigError, ExtractionError, ProviderError
from scrapegate.models import ExtractionSchema, FieldDefinition, LLMConfig

__all__ = [
    "build_json_schema",
    "build_instruction",
    "build_schema",
    "schema_from_json",
    "create_extraction_strategy",
    "create_run_config",
    "parse_extraction_result",
    "resolve_relative_urls",
    "is_url_key",
    "normalize_url",
    "get_domain",
]

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Field type to JSON Schema type mapping
# ---------------------------------------------------------------------------

_FIELD_TYPE_TO_JSON_SCHEMA: Dict[str, Dict[str, Any]] = {
    "string": {"type": "string"},
    "number": {"type": "number"},
    "integer": {"type": "integer"},
    "boolean": {"type": "boolean"},
    "list[string]": {"type": "array", "items": {"type": "string"}},
    "list[number]": {"type": "array", "items": {"type": "number"}},
    "list[boolean]": {"type": "array", "items": {"type": "boolean"}},
    "list[object]": {"type": "array", "items": {"type": "object"}},
}


# ---------------------------------------------------------------------------
# Schema generation
# ---------------------------------------------------------------------------


def build_json_schema(fields: Sequence[FieldDefinition]) -> Dict[str, Any]:
    """Build a JSON Schema dict from a list of FieldDefinitions.

    No ``required`` constraint is set, so the LLM can return null for
    fields it cannot find.

    Raises:
        ConfigError: If the fields list is empty or a type is unsupported.

    Examples:
        >>> fields = [FieldDefinition(name="company", description="Company name")]
        >>> build_json_schema(fields)["properties"]["company"]
        {'type': 'string', 'description': 'Company name'}
    """
    if not fields:
        raise ConfigError("At least one field definition is required")

    properties: Dict[str, Any] = {}
    for field in fields:
        json_type = _FIELD_TYPE_TO_JSON_SCHEMA.get(field.type)
        if json_type is None:
            raise ConfigError(f"Unsupported field type: {field.type!r}")

        prop = dict(json_type)
        prop["description"] = field.description
        properties[field.name] = prop

    return {
        "type": "object",
        "properties": properties,
        "description": "Extracted data from the web page",
    }


def build_instruction(fields: Sequence[FieldDefinition]) -> str:
    """Build the LLM instruction string from field definitions.

    Raises:
        ConfigError: If the fields list is empty.
    """
    if not fields:
        raise ConfigError("At least one field definition is required")

    lines = [
        "Extract the following fields from the page content.",
        "Return the result as a single JSON object with exactly these keys.",
        "If a field cannot be found on the page, set its value to null.",
        "Do NOT invent or hallucinate data that is not present on the page.",
        "",
        "Fields to extract:",
    ]

    for field in fields:
        type_hint = f" (type: {field.type})" if field.type != "string" else ""
        lines.append(f'  - "{field.name}": {field.description}{type_hint}')

    lines.extend([
        "",
        "Return ONLY the JSON object, no additional text or explanation.",
    ])

    return "\n".join(lines)


def build_schema(fields: Sequence[FieldDefinition]) -> ExtractionSchema:
    """Build an ExtractionSchema whose results are normalized to ``fields``."""
    return ExtractionSchema(
        json_schema=build_json_schema(fields),
        instruction=build_instruction(fields),
        fields=tuple(fields),
    )


def schema_from_json(
    json_schema: Dict[str, Any],
    instruction: Optional[str] = None,
) -> ExtractionSchema:
    """Wrap a raw JSON schema.

    When no instruction is given, one is derived from the schema's
    top-level property descriptions.

    Raises:
        ConfigError: If the schema is not a JSON object schema with properties
                     or items.
    """
    if not isinstance(json_schema, dict) or not (
        json_schema.get("properties") or json_schema.get("items")
    ):
        raise ConfigError("JSON schema must declare 'properties' or 'items'")

    if not instruction:
        target = json_schema.get("items") if json_schema.get("type") == "array" else json_schema
        properties = (target or {}).get("properties") or {}
        lines = [
            "Extract data from the page content matching the provided JSON schema.",
            "If a value cannot be found on the page, set it to null.",
            "Do NOT invent or hallucinate data that is not present on the page.",
        ]
        if properties:
            lines.extend(["", "Fields to extract:"])
            for name, prop in properties.items():
                description = prop.get("description", "") if isinstance(prop, dict) else ""
                lines.append(f'  - "{name}": {description}'.rstrip(": "))
        instruction = "\n".join(lines)

    return ExtractionSchema(json_schema=json_schema, instruction=instruction)


# ---------------------------------------------------------------------------
# crawl4ai strategy and config creation
# ---------------------------------------------------------------------------


def create_extraction_strategy(
    schema: ExtractionSchema,
    config: LLMConfig,
    settings: GatewayConfig,
) -> Any:
    """Create a crawl4ai LLMExtractionStrategy for one candidate.

    This is the only place an ``LLMExtractionStrategy`` is instantiated.
    Strict mode is requested through a ``json_schema`` response format.

    Args:
        schema: What to extract.
        config: The candidate (provider, model, key, base URL, limits).
        settings: Gateway settings (input format, chunking, verbosity).

    Returns:
        An ``LLMExtractionStrategy`` ready for a CrawlerRunConfig.
    """
    from crawl4ai import LLMConfig as Crawl4aiLLMConfig
    from crawl4ai import LLMExtractionStrategy

    llm_config = Crawl4aiLLMConfig(
        provider=config.litellm_model,
        api_token=config.api_key or None,
        base_url=config.base_url or None,
    )

    extra_args: Dict[str, Any] = {
        "max_tokens": config.max_tokens,
        "timeout": settings.llm_timeout_seconds,
    }
    if config.strict_mode:
        extra_args["response_format"] = {
            "type": "json_schema",
            "json_schema": {
                "name": "extraction",
                "schema": schema.json_schema,
                "strict": True,
            },
        }

    return LLMExtractionStrategy(
        llm_config=llm_config,
        instruction=schema.instruction,
        schema=schema.json_schema,
        extraction_type="schema",
        input_format=settings.input_format,
        chunk_token_threshold=settings.chunk_token_threshold,
        extra_args=extra_args,
        verbose=settings.verbose,
    )


def create_run_config(
    extraction_strategy: Any,
    *,
    stream: bool = False,
    page_timeout: int = 30000,
    deep_crawl_strategy: Any = None,
    semaphore_count: Optional[int] = None,
    mean_delay: Optional[float] = None,
) -> Any:
    """Create a crawl4ai CrawlerRunConfig with the given extraction strategy.

    Args:
        extraction_strategy: An LLMExtractionStrategy instance.
        stream: Whether to stream results (deep crawl / arun_many).
        page_timeout: Page load timeout in milliseconds.
        deep_crawl_strategy: Optional BFS strategy for link following.
        semaphore_count: Concurrent page requests.
        mean_delay: Mean delay in seconds between requests.
    """
    from crawl4ai import CacheMode, CrawlerRunConfig

    kwargs: Dict[str, Any] = {
        "extraction_strategy": extraction_strategy,
        "cache_mode": CacheMode.BYPASS,
        "stream": stream,
        "page_timeout": page_timeout,
    }
    if deep_crawl_strategy is not None:
        kwargs["deep_crawl_strategy"] = deep_crawl_strategy
    if semaphore_count is not None:
        kwargs["semaphore_count"] = semaphore_count
    if mean_delay:
        kwargs["mean_delay"] = mean_delay
        kwargs["max_range"] = mean_delay / 2

    return CrawlerRunConfig(**kwargs)


# ---------------------------------------------------------------------------
# Result parsing
# ---------------------------------------------------------------------------


def parse_extraction_result(
    raw: Optional[str],
    schema: ExtractionSchema,
    url: str = "",
    provider: Optional[str] = None,
    model: Optional[str] = None,
) -> Any:
    """Parse crawl4ai's ``extracted_content`` into extracted data.

    crawl4ai returns a JSON list of blocks. Provider failures show up as
    blocks with ``"error": true`` and the provider message in ``content``;
    when every block is such an error, a ``ProviderError`` is raised.

    For object schemas the first object is returned, normalized to the
    schema's fields when it has any. For array schemas every object is
    returned.

    Raises:
        ProviderError: If the LLM call failed.
        ExtractionError: If the content is empty or not usable JSON.

    Examples:
        >>> schema = build_schema([FieldDefinition(name="title", description="Page title")])
        >>> parse_extraction_result('[{"title": "Hello"}]', schema)
        {'title': 'Hello'}
    """
    if not raw or raw.strip() == "":
        raise ExtractionError("Empty extraction result", url=url, raw_response=raw)

    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ExtractionError(
            f"Failed to parse extraction result as JSON: {e}",
            url=url,
            raw_response=raw,
        ) from e

    blocks = _flatten_blocks(parsed)
    errors = [block for block in blocks if _is_error_block(block)]
    usable = [block for block in blocks if not _is_error_block(block)]

    if errors and not usable:
        message = str(errors[0].get("content") or "LLM provider call failed")
        raise ProviderError(message, url=url, provider=provider, model=model)
    if errors:
        logger.debug("Ignoring %d failed chunk(s) for %s", len(errors), url)

    if not usable:
        raise ExtractionError(
            "Extraction returned no object",
            url=url,
            raw_response=raw,
        )

    if schema.json_schema.get("type") == "array":
        return usable

    data = usable[0]
    if not schema.fields:
        return data
    return {field.name: _normalize_value(data.get(field.name), field) for field in schema.fields}


def _flatten_blocks(parsed: Any) -> List[Dict[str, Any]]:
    """Collect the dict blocks of a parsed result, one nesting level deep."""
    if isinstance(parsed, dict):
        return [parsed]
    if not isinstance(parsed, list):
        return []

    blocks: List[Dict[str, Any]] = []
    for item in parsed:
        if isinstance(item, dict):
            blocks.append(item)
        elif isinstance(item, list):
            blocks.extend(sub for sub in item if isinstance(sub, dict))
    return blocks


def _is_error_block(block: Dict[str, Any]) -> bool:
    return block.get("error") is True and "content" in block


def _normalize_value(value: Any, field: FieldDefinition) -> Any:
    """Make list fields always lists; leave scalars as they are."""
    if value is None:
        return [] if field.is_list else None

    if field.is_list:
        if isinstance(value, list):
            return value
        return [value]

    return value


# ---------------------------------------------------------------------------
# Relative URL resolution
# ---------------------------------------------------------------------------

_URL_KEYS = frozenset({"url", "link", "href"})
_NON_HTTP_PREFIXES = ("mailto:", "tel:", "javascript:", "data:", "sms:")


def is_url_key(key: str) -> bool:
    """Return True for keys that hold links: url, link, href, *_url, *_link.

    Examples:
        >>> is_url_key("Image_URL"), is_url_key("href"), is_url_key("urls")
        (True, True, False)
    """
    lowered = key.lower()
    return lowered in _URL_KEYS or lowered.endswith("_url") or lowered.endswith("_link")


def resolve_relative_urls(data: Any, page_url: str) -> Any:
    """Resolve link values in extracted data against the page URL.

    Walks mappings and sequences. For every string under a link key:
    absolute ``http(s)://`` values are kept, protocol-relative values
    (``//host/x``) take the page's scheme, and anything else is resolved
    as a relative reference. ``mailto:``/``tel:``/``javascript:``/``data:``
    values and empty strings are left alone. Returns new containers; the
    input is not modified.

    Examples:
        >>> resolve_relative_urls({"url": "/a/b"}, "https://x.com/c/d")
        {'url': 'https://x.com/a/b'}
        >>> resolve_relative_urls([{"link": "../e"}], "https://x.com/p/q/")
        [{'link': 'https://x.com/p/e'}]
    """
    base = urlparse(page_url)
    if not base.scheme or not base.netloc:
        return data
    return _walk(data, page_url, base.scheme)


def _walk(value: Any, base_url: str, scheme: str) -> Any:
    if isinstance(value, dict):
        resolved: Dict[Any, Any] = {}
        for key, item in value.items():
            if isinstance(key, str) and isinstance(item, str) and is_url_key(key):
                resolved[key] = _resolve_one(item, base_url, scheme)
            else:
                resolved[key] = _walk(item, base_url, scheme)
        return resolved
    if isinstance(value, list):
        return [_walk(item, base_url, scheme) for item in value]
    if isinstance(value, tuple):
        return tuple(_walk(item, base_url, scheme) for item in value)
    return value


def _resolve_one(value: str, base_url: str, scheme: str) -> str:
    candidate = value.strip()
    if not candidate:
        return value
    lowered = candidate.lower()
    if lowered.startswith(("http://", "https://")):
        return value
    if candidate.startswith("//"):
        return f"{scheme}:{candidate}"
    if lowered.startswith(_NON_HTTP_PREFIXES):
        return value
    return urljoin(base_url, candidate)


# ---------------------------------------------------------------------------
# URL normalization and domain utilities
# ---------------------------------------------------------------------------


def normalize_url(url: str) -> str:
    """Normalize a URL for deduplication purposes.

    Lower-cases scheme and host, drops default ports and the fragment,
    strips a trailing slash (except for the root path) and sorts the query.

    Examples:
        >>> normalize_url("https://Example.COM/about/#section")
        'https://example.com/about'
        >>> normalize_url("https://example.com/page?b=2&a=1")
        'https://example.com/page?a=1&b=2'
    """
    parsed = urlparse(url)

    scheme = parsed.scheme.lower()
    netloc = (parsed.hostname or "").lower()

    port = parsed.port
    if port:
        if (scheme == "http" and port == 80) or (scheme == "https" and port == 443):
            port = None
    if port:
        netloc = f"{netloc}:{port}"

    path = parsed.path or "/"
    if path != "/" and path.endswith("/"):
        path = path.rstrip("/")

    query_params = parse_qs(parsed.query, keep_blank_values=True)
    sorted_query = urlencode(
        sorted(
            [(k, v[0] if len(v) == 1 else v) for k, v in query_params.items()]
        ),
        doseq=True,
    )

    return urlunparse((scheme, netloc, path, parsed.params, sorted_query, ""))


def get_domain(url: str) -> str:
    """Extract the lower-cased host from a URL.

    Examples:
        >>> get_domain("https://www.Example.COM/page")
        'www.example.com'
    """
    parsed = urlparse(url)
    return (parsed.hostname or "").lower()

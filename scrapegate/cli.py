"""Command-line interface for the scrapegate library.

Provides a simple CLI for extracting data from the terminal::

    # Single page, provider chain from a credentials file
    scrapegate extract https://example.com --credentials creds.json \\
        -f "name:Company name:string" -f "emails:Contact emails:list[string]"

    # Single page with your own key (BYOK override)
    scrapegate extract https://example.com -f "title:Page title" \\
        --provider openai --model gpt-4o-mini --api-key sk-...

    # Crawl: one JSON line per page, then a summary line
    scrapegate crawl https://example.com -f "name:Company name" --max-pages 20

    # Show the chain a user would get
    scrapegate chain --credentials creds.json --user user-1 --tier pro

Entry point is configured in pyproject.toml as ``scrapegate = "scrapegate.cli:main"``.

Exit codes: 0 ok, 1 error, 2 no providers configured, 3 insufficient
balance, 130 interrupted.
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import io
import json
import logging
import os
import sys
from typing import Any, Dict, Optional

from scrapegate.api import Gateway, define_fields
from scrapegate.billing import LedgerBillingGate
from scrapegate.capabilities import OpenRouterCapabilityLoader, StrictModeAdvisor
from scrapegate.config import DEFAULT_SNAPSHOT, load_config
from scrapegate.exceptions import InsufficientBalanceError, NoProvidersConfiguredError
from scrapegate.extraction import build_schema
from scrapegate.models import (
    CrawlOptions,
    CrawlRequest,
    ExtractContext,
    LLMConfig,
    PageResult,
)
from scrapegate.storage import InMemoryCredentialStore
from scrapegate.tasks import DetachedTaskRunner

__all__ = ["main"]

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_NO_PROVIDERS = 2
EXIT_INSUFFICIENT_BALANCE = 3
EXIT_INTERRUPTED = 130


def _parse_field_arg(field_str: str) -> tuple[str, str, str]:
    """Parse a field argument string like 'name:Description:type'.

    Format: ``name:description[:type]``
    - name and description are required
    - type defaults to "string" if omitted

    Raises:
        argparse.ArgumentTypeError: If the format is invalid.
    """
    parts = field_str.split(":", maxsplit=2)
    if len(parts) < 2:
        raise argparse.ArgumentTypeError(
            f"Invalid field format: '{field_str}'. "
            "Expected 'name:description' or 'name:description:type'"
        )

    name = parts[0].strip()
    description = parts[1].strip()
    field_type = parts[2].strip() if len(parts) == 3 else "string"

    if not name:
        raise argparse.ArgumentTypeError("Field name cannot be empty")
    if not description:
        raise argparse.ArgumentTypeError("Field description cannot be empty")

    return (name, description, field_type)


def _add_context_args(parser: argparse.ArgumentParser) -> None:
    """Arguments shared by every command: credentials and caller context."""
    parser.add_argument(
        "--credentials",
        metavar="FILE",
        help="JSON file with system/user keys and chains",
    )
    parser.add_argument("--user", default="", help="User id to resolve for")
    parser.add_argument("--tier", default=None, help="Subscription tier (default: config default_tier)")
    parser.add_argument("--byok", action="store_true", help="Allow the user's own provider keys")
    parser.add_argument("--custom", action="store_true", help="Allow the user's own fallback chain")
    parser.add_argument(
        "--balance",
        type=float,
        default=None,
        help="Starting balance in USD for the user (in-memory ledger)",
    )
    parser.add_argument("--provider", help="Provider for a manual candidate")
    parser.add_argument("--model", help="Model for a manual candidate")
    parser.add_argument("--api-key", dest="api_key", help="Own API key (makes the candidate BYOK)")
    parser.add_argument("--base-url", dest="base_url", default="", help="Custom provider endpoint")


def _add_field_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--field", "-f",
        action="append",
        required=True,
        dest="fields",
        help="Field to extract: 'name:description[:type]' (repeatable)",
    )


def _build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for the CLI."""
    parser = argparse.ArgumentParser(
        prog="scrapegate",
        description="LLM extraction gateway with provider fallback",
    )
    parser.add_argument(
        "--backend",
        choices=["http", "browser"],
        default="http",
        help="Fetching backend (default: http)",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable verbose output",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command")

    # --- extract (single URL) ---
    extract_parser = subparsers.add_parser("extract", help="Extract a single URL")
    extract_parser.add_argument("url", help="URL to extract")
    _add_field_args(extract_parser)
    _add_context_args(extract_parser)

    # --- crawl ---
    crawl_parser = subparsers.add_parser("crawl", help="Crawl a site and extract every page")
    crawl_parser.add_argument("url", help="Starting URL")
    _add_field_args(crawl_parser)
    _add_context_args(crawl_parser)
    crawl_parser.add_argument(
        "--seed",
        action="append",
        default=[],
        dest="seeds",
        help="Additional seed URL (repeatable)",
    )
    crawl_parser.add_argument(
        "--max-pages",
        type=int,
        default=50,
        help="Maximum pages to extract (default: 50, 0 for no limit)",
    )
    crawl_parser.add_argument(
        "--max-depth",
        type=int,
        default=1,
        help="Maximum link-following depth (default: 1)",
    )
    crawl_parser.add_argument(
        "--concurrency",
        type=int,
        default=3,
        help="Concurrent page requests (default: 3)",
    )
    crawl_parser.add_argument(
        "--delay",
        type=float,
        default=0.0,
        help="Delay between requests in seconds (default: 0)",
    )
    crawl_parser.add_argument(
        "--follow-pattern",
        dest="follow_pattern",
        default="",
        help="Only follow links matching this glob pattern",
    )

    # --- chain ---
    chain_parser = subparsers.add_parser("chain", help="Print the resolved fallback chain")
    _add_context_args(chain_parser)

    return parser


@contextlib.contextmanager
def _suppress_crawl4ai_stdout():
    """Redirect stdout to devnull during crawl4ai operations.

    crawl4ai writes progress lines (e.g., '[FETCH]...') directly to stdout,
    polluting JSON output. The real stdout is yielded so results can still
    be printed to it.
    """
    real_stdout = sys.stdout
    sys.stdout = open(os.devnull, "w")
    try:
        yield real_stdout
    finally:
        sys.stdout.close()
        sys.stdout = real_stdout


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _build_gateway(args: argparse.Namespace) -> Gateway:
    """Wire a Gateway for one CLI invocation."""
    config = load_config(backend=args.backend, verbose=args.verbose)
    store = (
        InMemoryCredentialStore.from_file(args.credentials)
        if args.credentials
        else InMemoryCredentialStore()
    )
    tasks = DetachedTaskRunner(
        default_timeout=config.record_timeout_seconds,
        default_max_attempts=config.record_max_attempts,
    )
    balances = {args.user: args.balance} if args.user and args.balance is not None else None
    billing = LedgerBillingGate(
        DEFAULT_SNAPSHOT,
        tasks=tasks,
        balances=balances,
        record_timeout=config.record_timeout_seconds,
        record_max_attempts=config.record_max_attempts,
    )
    advisor = StrictModeAdvisor(
        DEFAULT_SNAPSHOT,
        loaders={"openrouter": OpenRouterCapabilityLoader()},
        tasks=tasks,
    )
    return Gateway(config, store=store, billing=billing, advisor=advisor, tasks=tasks)


def _context_and_override(
    args: argparse.Namespace,
    default_tier: str,
) -> tuple[ExtractContext, Optional[LLMConfig]]:
    """Turn context flags into an ExtractContext and an optional override.

    ``--provider``/``--model`` with ``--api-key`` is a BYOK override.
    Without a key they pin the candidate to the system key for that provider.
    """
    byok = args.byok
    override: Optional[LLMConfig] = None
    forced_provider = forced_model = ""

    if args.provider or args.model:
        if not (args.provider and args.model):
            raise SystemExit("--provider and --model must be given together")
        if args.api_key:
            override = LLMConfig(
                provider=args.provider,
                model=args.model,
                api_key=args.api_key,
                base_url=args.base_url,
            )
            byok = True
        else:
            forced_provider, forced_model = args.provider, args.model

    ctx = ExtractContext(
        user_id=args.user,
        tier=args.tier or default_tier,
        byok_allowed=byok,
        custom_models_allowed=args.custom,
        forced_provider=forced_provider,
        forced_model=forced_model,
    )
    return ctx, override


def _page_output(page: PageResult) -> Dict[str, Any]:
    output: Dict[str, Any] = {
        "url": page.url,
        "success": page.success,
        "depth": page.depth,
        "parent_url": page.parent_url,
        "data": page.data,
        "error": page.error or None,
        "error_category": page.error_category or None,
        "cost_usd": page.cost_usd,
    }
    if page.error_details:
        output["error_details"] = page.error_details
    return output


def _print_result(
    output: Dict[str, Any],
    *,
    jsonl: bool = False,
    file: "io.TextIOBase | None" = None,
) -> None:
    """Print a result dict as JSON.

    Args:
        output: The JSON-serializable result.
        jsonl: If True, output compact single-line JSON (JSONL format).
               If False, output pretty-printed JSON.
        file: Output stream (defaults to sys.stdout).
    """
    out = file or sys.stdout
    if jsonl:
        print(json.dumps(output, default=str), file=out, flush=True)
    else:
        print(json.dumps(output, indent=2, default=str), file=out)


async def _run_extract(args: argparse.Namespace) -> None:
    """Execute the extract command."""
    fields = define_fields(*[_parse_field_arg(f) for f in args.fields])
    gateway = _build_gateway(args)
    ctx, override = _context_and_override(args, gateway.config.default_tier)

    with _suppress_crawl4ai_stdout() as real_stdout:
        async with gateway:
            output = await gateway.extract(args.url, fields, ctx, override)
        _print_result(output.model_dump(mode="json"), file=real_stdout)


async def _run_crawl(args: argparse.Namespace) -> None:
    """Execute the crawl command."""
    fields = define_fields(*[_parse_field_arg(f) for f in args.fields])
    gateway = _build_gateway(args)
    ctx, override = _context_and_override(args, gateway.config.default_tier)
    seeds = tuple([args.url, *args.seeds]) if args.seeds else ()
    request = CrawlRequest(
        url=args.url,
        extraction_schema=build_schema(fields),
        seed_urls=seeds,
        options=CrawlOptions(
            max_pages=args.max_pages,
            max_depth=args.max_depth,
            concurrency=args.concurrency,
            delay_seconds=args.delay,
            follow_pattern=args.follow_pattern,
        ),
    )

    with _suppress_crawl4ai_stdout() as real_stdout:
        async with gateway:
            result = await gateway.crawl(
                request,
                ctx,
                override,
                on_result=lambda page: _print_result(_page_output(page), jsonl=True, file=real_stdout),
            )
        summary = result.model_dump(mode="json", exclude={"pages"})
        _print_result({"summary": summary}, jsonl=True, file=real_stdout)


async def _run_chain(args: argparse.Namespace) -> None:
    """Execute the chain command."""
    gateway = _build_gateway(args)
    ctx, override = _context_and_override(args, gateway.config.default_tier)
    chain = await gateway.resolve_chain(ctx, override)
    await gateway.tasks.drain(timeout=gateway.config.record_timeout_seconds)
    if chain.is_empty:
        raise NoProvidersConfiguredError(details={"tier": ctx.tier})

    _print_result(
        {
            "is_byok": chain.is_byok,
            "configs": [
                {
                    "provider": config.provider,
                    "model": config.model,
                    "api_key": config.masked_key,
                    "base_url": config.base_url or None,
                    "strict_mode": config.strict_mode,
                    "max_tokens": config.max_tokens,
                }
                for config in chain
            ],
        }
    )


def main() -> None:
    """CLI entry point."""
    parser = _build_parser()
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(EXIT_ERROR)

    commands = {
        "extract": _run_extract,
        "crawl": _run_crawl,
        "chain": _run_chain,
    }

    handler = commands.get(args.command)
    if handler is None:
        parser.print_help()
        sys.exit(EXIT_ERROR)

    _configure_logging(args.verbose)

    try:
        asyncio.run(handler(args))
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        sys.exit(EXIT_INTERRUPTED)
    except NoProvidersConfiguredError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(EXIT_NO_PROVIDERS)
    except InsufficientBalanceError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(EXIT_INSUFFICIENT_BALANCE)
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(EXIT_ERROR)


if __name__ == "__main__":
    main()

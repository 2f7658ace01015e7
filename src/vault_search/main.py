#!/usr/bin/env python
"""Command-line entry point for the vault search pipeline."""
import argparse
import asyncio
import json
import logging
import os
import sys
from pathlib import Path
from typing import Optional

from vault_search import __version__
from vault_search.config import config
from vault_search.exceptions import EmbeddingStoreError, ErrorCode
from vault_search.models.schema import SearchMode
from vault_search.observability import configure_logging
from vault_search.services.embedding_store import load_vectors
from vault_search.services.search_router import QueryRouter
from vault_search.storage.content_cache import VaultContentCache
from vault_search.storage.vault_client import LocalVault, ObsidianRestVault

logger = logging.getLogger(__name__)


def parse_args(argv: Optional[list] = None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="vault-search", description="Tiered related-note search"
    )
    parser.add_argument("--version", action="version", version=__version__)
    parser.add_argument(
        "--log-level",
        help="Logging level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=os.environ.get("VAULT_SEARCH_LOG_LEVEL", config.log_level).upper(),
    )
    parser.add_argument(
        "--log-file",
        help="Also write rotating logs under VAULT_SEARCH_LOG_DIR",
        action="store_true",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    search = subparsers.add_parser("search", help="Find notes related to a query or note")
    search.add_argument("--query", help="Free-text query")
    search.add_argument("--from-path", dest="from_path", help="Reference note path")
    search.add_argument("--limit", type=int, default=config.default_limit)
    search.add_argument(
        "--vault-dir",
        help="Read notes from this directory instead of the Obsidian REST API",
    )
    search.add_argument(
        "--mode",
        choices=["auto", "plugin", "files", "lexical"],
        help="Override SMART_SEARCH_MODE",
    )

    vectors = subparsers.add_parser("vectors", help="Summarize the embedding store")
    vectors.add_argument(
        "--dir", help="Embedding store root (defaults to SMART_ENV_DIR)"
    )
    return parser.parse_args(argv)


def _configure_logging(args) -> None:
    log_level = getattr(logging, args.log_level.upper(), logging.INFO)
    if not args.log_file:
        logging.basicConfig(level=log_level, stream=sys.stderr)
        return
    try:
        configure_logging(log_dir=config.log_dir, level=log_level, console=True)
    except Exception as e:
        logging.basicConfig(level=log_level, stream=sys.stderr)
        logger.warning(f"Failed to configure file logging: {e}")


async def run_search(args) -> dict:
    if args.vault_dir:
        vault = LocalVault(args.vault_dir)
    else:
        vault = ObsidianRestVault.from_config()

    cache = VaultContentCache.from_config(vault)
    try:
        await cache.build_cache()
        router = QueryRouter.from_config(content_cache=cache)
        if args.mode:
            router.mode = SearchMode(args.mode)
        outcome = await router.search(
            query=args.query, from_path=args.from_path, limit=args.limit
        )
    finally:
        if isinstance(vault, ObsidianRestVault):
            await vault.aclose()
    return outcome.to_dict()


def run_vectors(args) -> dict:
    directory = args.dir or config.get_smart_env_dir()
    if directory is None:
        raise EmbeddingStoreError(
            "SMART_ENV_DIR is not configured and --dir not given",
            code=ErrorCode.STORE_NOT_CONFIGURED,
        )
    vectors = load_vectors(Path(directory))
    return {
        "directory": str(directory),
        "vecCount": len(vectors),
        "dim": vectors[0].dimension if vectors else 0,
        "sample": [
            {"path": v.note_path, "dim": v.dimension, "model": v.model}
            for v in vectors[:3]
        ],
    }


def main(argv: Optional[list] = None) -> int:
    """Run the vault search CLI."""
    args = parse_args(argv)
    _configure_logging(args)

    if args.command == "search":
        if not (args.query or args.from_path):
            print("error: search needs --query or --from-path", file=sys.stderr)
            return 2
        result = asyncio.run(run_search(args))
    else:
        try:
            result = run_vectors(args)
        except EmbeddingStoreError as e:
            logger.error(f"Cannot load embedding store: {e}")
            return 1

    print(json.dumps(result, indent=2, ensure_ascii=False))
    return 0


if __name__ == "__main__":
    sys.exit(main())

#!/usr/bin/env python3
"""Cluster item mentions from a JSON file into a ranked menu."""
from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from backend.app.config import ConfigurationError, load_config
from backend.app.menu import EmbeddingError, MenuClusteringPipeline


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    """Parse command line arguments for the menu builder.

    Args:
        argv: Optional argument list; defaults to ``sys.argv[1:]``.

    Returns:
        argparse.Namespace: Parsed command line arguments.
    """
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "mentions_file",
        type=Path,
        help="JSON file holding a list of {item, rating} objects or an object with a 'mentions' key",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to config.yaml (default: repository config.yaml)",
    )
    parser.add_argument(
        "--provider",
        choices=["openai", "sentence_transformers", "hashing"],
        default=None,
        help="Override the configured embedding provider",
    )
    parser.add_argument(
        "--max-clusters",
        type=int,
        default=None,
        help="Override the upper bound on the cluster-count search",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    return parser.parse_args(argv)


def read_mentions(path: Path) -> List[Any]:
    """Read mentions from ``path``.

    Raises:
        ValueError: If the file does not hold a list of mentions.
    """

    with path.open("r", encoding="utf-8") as handle:
        payload = json.load(handle)
    if isinstance(payload, dict):
        payload = payload.get("mentions")
    if not isinstance(payload, list):
        raise ValueError("Expected a list of mentions or an object with a 'mentions' list")
    return [entry for entry in payload if isinstance(entry, dict)]


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Entry point for the menu builder.

    Returns:
        int: Exit status code where ``0`` indicates success.
    """
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="[%(levelname)s] %(message)s",
        stream=sys.stderr,
    )

    try:
        mentions = read_mentions(args.mentions_file)
    except (OSError, ValueError) as exc:
        print(f"Unable to read mentions: {exc}", file=sys.stderr)
        return 2

    try:
        config = load_config(args.config)
        updates: Dict[str, Any] = {}
        if args.provider is not None:
            updates["embedding"] = config.embedding.model_copy(update={"provider": args.provider})
        if args.max_clusters is not None:
            if args.max_clusters < 1:
                print("--max-clusters must be at least 1", file=sys.stderr)
                return 2
            updates["clustering"] = config.clustering.model_copy(update={"max_clusters": args.max_clusters})
        if updates:
            config = config.model_copy(update=updates)
        categories = MenuClusteringPipeline(config).build_menu(mentions)
    except ConfigurationError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 2
    except EmbeddingError as exc:
        print(f"Embedding failed: {exc}", file=sys.stderr)
        return 1

    print(json.dumps([category.model_dump(mode="json") for category in categories], indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

import argparse
from io import TextIOWrapper
import logging
import sys
from typing import Sequence, cast

import config
from ingestion.environment import EnvironmentManager, configure_logging
from ingestion.pipeline import run_embedding, show_status
from types_models import EmbedOptions


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Embed documents from the content store into per-chunk vectors"
    )
    subparsers = parser.add_subparsers(dest="action", required=True)

    embed = subparsers.add_parser(
        "embed", help="Embed every active document that has no vectors yet"
    )
    _ = embed.add_argument(
        "--db",
        default=config.DB_PATH,
        help=f"SQLite document store (default: {config.DB_PATH})",
    )
    _ = embed.add_argument(
        "--force",
        action="store_true",
        help="Re-embed every active document, replacing existing vectors",
    )
    _ = embed.add_argument(
        "--no-size-limit",
        action="store_true",
        help=f"Ignore {config.MAX_EMBED_BYTES_ENV} and embed documents of any size",
    )
    _ = embed.add_argument(
        "--no-gpu",
        action="store_true",
        help=f"Run the model on CPU only (same as {config.GPU_LAYERS_ENV}=0)",
    )
    _ = embed.add_argument(
        "--model",
        default=config.EMBED_MODEL,
        help=f"Sentence-transformers model name (default: {config.EMBED_MODEL})",
    )
    _ = embed.add_argument(
        "--verbose",
        action="store_true",
        help="Print per-document timings instead of the spinner.",
    )

    status = subparsers.add_parser(
        "status", help="Show embedded, pending and too-large document counts"
    )
    _ = status.add_argument(
        "--db",
        default=config.DB_PATH,
        help=f"SQLite document store (default: {config.DB_PATH})",
    )
    _ = status.add_argument(
        "--json",
        action="store_true",
        help="Print the counts as one JSON object (embedded, pending, tooLarge)",
    )
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point for embedding runs; returns the process exit code."""
    cast(TextIOWrapper, sys.stdout).reconfigure(encoding="utf-8", errors="replace")

    args = build_parser().parse_args(list(argv) if argv is not None else None)
    configure_logging(logging.DEBUG if getattr(args, "verbose", False) else logging.INFO)

    if args.action == "status":
        _ = show_status(args.db, as_json=args.json)
        return 0

    EnvironmentManager().apply()
    options = EmbedOptions(
        force=args.force,
        ignore_size_limit=args.no_size_limit,
        disable_accelerator=args.no_gpu,
        verbose=args.verbose,
    )
    try:
        summary = run_embedding(args.db, options, model_name=args.model)
    except KeyboardInterrupt:
        print("\n❌ Aborted. Documents embedded so far are kept.")
        return 130
    return 1 if summary.failed else 0


__all__ = ["build_parser", "main"]

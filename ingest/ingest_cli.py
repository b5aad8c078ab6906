"""
Index builder CLI.

Usage:
    python -m ingest.ingest_cli [--kb-dir knowledge_base] [--out vectorstore/index.json] [--full]
    python -m ingest.ingest_cli --qdrant [--recreate]

Builds the index artifact consumed by the local search backend, and
optionally pushes the same chunks to Qdrant.
"""
import argparse
import sys

from rag_api.config import settings
from rag_api.logging_config import setup_logging
from ingest.pipeline import build_index, push_to_qdrant


def main(argv: list[str] | None = None):
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Build the vector index of the knowledge base"
    )
    parser.add_argument(
        "--kb-dir",
        type=str,
        default=settings.kb_dir,
        help=f"Knowledge-base directory (default: {settings.kb_dir})",
    )
    parser.add_argument(
        "--out",
        type=str,
        default=settings.vector_index_path,
        help=f"Output artifact path (default: {settings.vector_index_path})",
    )
    parser.add_argument(
        "--full",
        action="store_true",
        help="Re-embed everything instead of reusing unchanged chunks",
    )
    parser.add_argument(
        "--qdrant",
        action="store_true",
        help="Also upsert the chunks into the Qdrant collection",
    )
    parser.add_argument(
        "--recreate",
        action="store_true",
        help="With --qdrant: recreate the collection (deletes existing data)",
    )

    args = parser.parse_args(argv)
    setup_logging(settings.log_level)

    if not settings.openai_api_key:
        print("Error: OPENAI_API_KEY is not set")
        sys.exit(1)

    try:
        artifact, stats = build_index(args.kb_dir, args.out, incremental=not args.full)
    except (FileNotFoundError, ValueError) as e:
        print(f"Error: {e}")
        sys.exit(1)

    if args.qdrant:
        push_to_qdrant(artifact, recreate=args.recreate)

    # Exit with warning if some files could not be read
    if stats.errors:
        sys.exit(2)


if __name__ == "__main__":
    main()

#!/usr/bin/env python
"""Ingest documents into an in-process index and ask one question about them.

The index lives in memory only, so ingestion and the question run in the
same process.

Usage:
    python scripts/ask.py notes.md faq.txt --question "What is X?"
    python scripts/ask.py notes.md -q "What is X?" --top-k 5
    python scripts/ask.py notes.md -q "What is X?" --no-llm   # print prompt only
"""
import argparse
import asyncio
import sys
from datetime import datetime
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from personachat import config
from personachat.errors import RetrievalError
from personachat.llm_client import openai_client
from personachat.logging_setup import configure_logging
from personachat.personas import build_system_prompt
from personachat.rag.ingest import IngestPipeline
from personachat.rag.retriever import Retriever
from personachat.rag.store import VectorIndex
import structlog

logger = structlog.get_logger()


class ProgressReporter:
    """Simple progress reporter for CLI."""

    def __init__(self):
        self.start_time = None

    def start(self, message: str):
        self.start_time = datetime.now()
        print(f"\n{'=' * 60}")
        print(f"  {message}")
        print(f"{'=' * 60}\n")

    def update(self, current: int, total: int, file_path: Path, chunk_count: int):
        print(f"  [{current}/{total}] {file_path.name[:40]:<40} {chunk_count} chunks")

    def finish(self, total_documents: int, failed: int):
        elapsed = (datetime.now() - self.start_time).total_seconds()
        print(f"\n  Documents in index: {total_documents}")
        print(f"  Files failed:       {failed}")
        print(f"  Time elapsed:       {elapsed:.1f}s\n")


async def main():
    """Main entry point for the ask script."""
    parser = argparse.ArgumentParser(
        description="Ingest documents and ask a question with RAG",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument("files", nargs="+", type=Path, help="TXT or MD files to ingest")
    parser.add_argument("--question", "-q", required=True, help="Question to ask")
    parser.add_argument(
        "--top-k",
        type=int,
        default=config.RETRIEVAL_TOP_K,
        help=f"Chunks to retrieve (default: {config.RETRIEVAL_TOP_K})",
    )
    parser.add_argument(
        "--chunk-size",
        type=int,
        default=config.CHUNK_SIZE,
        help=f"Chunk size in characters (default: {config.CHUNK_SIZE})",
    )
    parser.add_argument(
        "--no-llm",
        action="store_true",
        help="Print the augmented prompt without calling the chat model",
    )

    args = parser.parse_args()
    configure_logging("WARNING")

    index = VectorIndex()
    pipeline = IngestPipeline(vector_index=index, chunk_size=args.chunk_size)
    progress = ProgressReporter()
    failed = 0

    progress.start("Indexing Documents")

    for idx, file_path in enumerate(args.files, 1):
        try:
            report = await pipeline.ingest_upload(file_path.name, file_path.read_bytes())
            progress.update(idx, len(args.files), file_path, report.chunk_count)
        except (OSError, RetrievalError) as e:
            failed += 1
            print(f"  ❌ {file_path}: {e}")
            logger.error("file_ingestion_failed", path=str(file_path), error=str(e))

    progress.finish(index.count(), failed)

    try:
        augmentation = await Retriever(vector_index=index).augment(
            args.question, k=args.top_k
        )
    except RetrievalError as e:
        print(f"\n❌ Retrieval failed: {e}\n")
        sys.exit(1)

    print(f"📝 Retrieved {augmentation.result_count} chunk(s)")
    for result in augmentation.results:
        print(f"   {result.score:.3f}  {result.source} #{result.metadata.chunk_index}")

    if args.no_llm:
        print(f"\n{augmentation.augmented_prompt}\n")
        return

    answer = await openai_client.chat([
        {"role": "system", "content": build_system_prompt()},
        {"role": "user", "content": augmentation.augmented_prompt},
    ])
    print(f"\n{answer}\n")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\n\n⚠️  Cancelled by user.\n")
        sys.exit(1)

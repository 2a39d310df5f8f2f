"""Command-line interface for docrag.

Usage:
    docrag ingest --root docs/             # Incremental ingestion
    docrag ingest --root docs/ --rebuild   # Re-embed everything from scratch
    docrag ask "How do I register a command?" --show-sources
    docrag stats
"""
import argparse
import asyncio
import logging
import signal
import sys
from datetime import datetime
from pathlib import Path
from typing import List, Optional

import httpx
import structlog

from docrag import config
from docrag.config import RagSettings
from docrag.errors import DocRagError
from docrag.llm_client import OllamaClient
from docrag.rag.ingest import IngestPipeline, IngestReport
from docrag.rag.loader import CorpusLoader
from docrag.rag.query import Answer, QueryEngine
from docrag.rag.services import OllamaEmbeddingService, OllamaLanguageModel
from docrag.rag.store_faiss import FAISSVectorStore

logger = structlog.get_logger()


def configure_logging(level: str = None, fmt: str = None) -> None:
    """Route structlog through stdlib logging on stderr.

    Args:
        level: Log level name (default: config.LOG_LEVEL)
        fmt: "json" or "console" (default: config.LOG_FORMAT)
    """
    level = (level or config.LOG_LEVEL).upper()
    fmt = fmt or config.LOG_FORMAT

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, level, logging.INFO),
        force=True,
    )

    renderer = (
        structlog.processors.JSONRenderer()
        if fmt == "json"
        else structlog.dev.ConsoleRenderer(colors=False)
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
    )


class ProgressReporter:
    """Simple progress reporter for CLI."""

    def __init__(self, verbose: bool = False):
        self.verbose = verbose
        self.start_time = None

    def start(self, message: str):
        """Start progress reporting."""
        self.start_time = datetime.now()
        print(f"\n{'=' * 60}")
        print(f"  {message}")
        print(f"{'=' * 60}\n")

    def update(self, current: int, total: int, document_id: str):
        """Update progress."""
        total = max(total, current)
        percentage = (current / total) * 100 if total > 0 else 0
        bar_length = 40
        filled = int(bar_length * current / total) if total > 0 else 0
        bar = "█" * filled + "░" * (bar_length - filled)

        name = Path(document_id).name
        print(
            f"\r  [{bar}] {percentage:5.1f}% ({current}/{total}) {name[:30]:<30}",
            end="",
            flush=True,
        )

        if self.verbose:
            print()

    def finish(self, report: IngestReport, index_dir: Path):
        """Finish progress reporting."""
        print("\n")
        elapsed_seconds = (datetime.now() - self.start_time).total_seconds()

        title = "Indexing Cancelled" if report.cancelled else "Indexing Complete!"
        print(f"{'=' * 60}")
        print(f"  {title}")
        print(f"{'=' * 60}\n")
        print(f"  📁 Documents processed:  {report.documents_processed}")
        print(f"  ❌ Documents failed:     {report.documents_failed}")
        print(f"  🧹 Documents pruned:     {report.documents_pruned}")
        print(f"  📝 Chunks indexed:       {report.chunks_indexed}")
        print(f"  ♻️  Chunks reused:        {report.chunks_reused}")
        print(f"  ⚠️  Chunks failed:        {report.chunks_failed}")
        print(f"  ⏱️  Time elapsed:         {elapsed_seconds:.1f}s")

        if report.chunks_indexed > 0 and elapsed_seconds > 0:
            rate = report.chunks_indexed / elapsed_seconds
            print(f"  ⚡ Indexing rate:        {rate:.1f} chunks/sec")

        print(f"\n{'=' * 60}\n")

        if report.errors:
            print(f"⚠️  Warning: {len(report.errors)} error(s) during indexing:")
            for error in report.errors[:10]:
                print(f"   - {error}")
            if len(report.errors) > 10:
                print(f"   ... and {len(report.errors) - 10} more. Check logs for details.")
            print()

        if report.cancelled:
            print("⚠️  Completed documents were saved; run again to finish.\n")
        else:
            print(f"✅ Index ready at: {index_dir}\n")


def _print_answer(question: str, answer: Answer, show_sources: bool, numbered: bool):
    if numbered:
        print(f"\n❓ {question}\n")
    print(answer.answer_text)

    if show_sources:
        print("\nSources:")
        for i, source in enumerate(answer.source_chunks, 1):
            location = source.document_id
            if source.heading_path:
                location = f"{location} > {source.heading_path}"
            print(f"  [{i}] {location} (score {source.score:.3f}, {source.chunk_id})")
    print()


def install_cancel_handler(loop: asyncio.AbstractEventLoop, pipeline: IngestPipeline) -> bool:
    """Make the first Ctrl+C cancel the run cooperatively and the second one interrupt it.

    Returns False where the loop has no signal handlers (Windows); Ctrl+C then
    raises KeyboardInterrupt straight away.
    """

    def on_sigint() -> None:
        pipeline.cancel()
        # Restores the default handler, so the next Ctrl+C raises KeyboardInterrupt
        loop.remove_signal_handler(signal.SIGINT)
        print(
            "\n\n⚠️  Finishing in-flight documents; press Ctrl+C again to stop now.",
            file=sys.stderr,
        )

    try:
        loop.add_signal_handler(signal.SIGINT, on_sigint)
    except NotImplementedError:
        return False
    return True


async def _embedding_service(client: OllamaClient) -> OllamaEmbeddingService:
    embedder = OllamaEmbeddingService(client)
    await embedder.resolve_model_version()
    return embedder


async def run_ingest(args: argparse.Namespace) -> int:
    """Run an ingestion and print a summary; returns the exit code."""
    settings = RagSettings.from_env(
        chunk_length=args.chunk_length,
        chunk_overlap=args.chunk_overlap,
        concurrency_limit=args.concurrency,
        strict_mode=True if args.strict else None,
    )

    loader = CorpusLoader(roots=args.root or None)
    store = FAISSVectorStore(index_dir=args.index_dir)
    if not args.rebuild:
        store.init_or_load()

    embedder = await _embedding_service(OllamaClient(timeout=settings.embed_timeout))
    pipeline = IngestPipeline(store, embedder, loader=loader, settings=settings)

    print("\n📋 Configuration:")
    print(f"   Docs roots:       {', '.join(str(r) for r in loader.roots)}")
    print(f"   Index directory:  {store.index_dir}")
    print(f"   Embedding model:  {embedder.model_version}")
    print(f"   Chunk length:     {settings.chunk_length} chars")
    print(f"   Chunk overlap:    {settings.chunk_overlap} chars")
    print(f"   Concurrency:      {settings.concurrency_limit}")
    print(f"   Strict mode:      {settings.strict_mode}")

    total = len(loader.discover())
    progress = ProgressReporter(verbose=args.verbose)
    progress.start(f"{'Rebuilding' if args.rebuild else 'Indexing'} {total} documents")

    loop = asyncio.get_running_loop()
    handler_installed = install_cancel_handler(loop, pipeline)

    try:
        report = await pipeline.ingest_all(
            rebuild=args.rebuild,
            progress_callback=lambda done, doc_id: progress.update(done, total, doc_id),
        )
    finally:
        if handler_installed:
            loop.remove_signal_handler(signal.SIGINT)

    progress.finish(report, store.index_dir)
    return 0 if report.ok else 1


async def run_ask(args: argparse.Namespace) -> int:
    """Answer one or more questions; returns the exit code."""
    settings = RagSettings.from_env(
        top_k=args.top_k,
        min_score=args.min_score,
        llm_timeout=args.timeout,
    )

    store = FAISSVectorStore(index_dir=args.index_dir)
    if not store.exists_on_disk():
        print(f"\n❌ No index in {store.index_dir}; run `docrag ingest` first.\n", file=sys.stderr)
        return 1
    store.load()

    client = OllamaClient(timeout=settings.llm_timeout)
    engine = QueryEngine(
        store,
        await _embedding_service(client),
        OllamaLanguageModel(client),
        settings=settings,
    )

    outcomes = await engine.answer_many(args.questions)

    failed = 0
    for question, outcome in zip(args.questions, outcomes):
        if isinstance(outcome, Answer):
            _print_answer(question, outcome, args.show_sources, numbered=len(args.questions) > 1)
        else:
            failed += 1
            print(f"\n❌ {question}\n   {outcome}\n", file=sys.stderr)

    return 1 if failed else 0


def run_stats(args: argparse.Namespace) -> int:
    """Print index statistics and the latest run; returns the exit code."""
    store = FAISSVectorStore(index_dir=args.index_dir)
    store.init_or_load()
    stats = store.get_stats()

    print("\n📊 Index statistics:")
    print(f"   Index directory:  {store.index_dir}")
    print(f"   Documents:        {stats['document_count']}")
    print(f"   Chunks:           {stats['vector_count']}")
    print(f"   Dimension:        {stats['dimension']}")
    print(f"   Model version:    {stats['model_version']}")
    print(f"   Metric:           {stats['metric']}")

    run = store.latest_run()
    if run:
        print("\n🕑 Latest run:")
        print(f"   Indexed at:       {run['indexed_at']}")
        print(f"   Model version:    {run['model_version']}")
        print(f"   Chunk length:     {run['chunk_length']} (overlap {run['chunk_overlap']})")
        print(f"   Totals:           {run['total_documents']} documents, {run['total_chunks']} chunks")
    else:
        print("\n   No ingestion run recorded yet.")
    print()
    return 0


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--index-dir",
        type=Path,
        default=None,
        help=f"Index directory (default: {config.INDEX_DIR})",
    )
    common.add_argument(
        "--log-level",
        default=None,
        help=f"Log level (default: {config.LOG_LEVEL})",
    )
    common.add_argument(
        "--log-format",
        choices=["console", "json"],
        default=None,
        help=f"Log format (default: {config.LOG_FORMAT})",
    )

    parser = argparse.ArgumentParser(
        prog="docrag",
        description="Index markdown documentation and answer questions about it",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__.split("Usage:", 1)[1],
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    ingest = subparsers.add_parser("ingest", parents=[common], help="Index documentation")
    ingest.add_argument(
        "--root",
        type=Path,
        action="append",
        help="Documentation root; repeat for several (default: DOCS_ROOTS)",
    )
    ingest.add_argument(
        "--rebuild",
        action="store_true",
        help="Rebuild index from scratch (discards cached embeddings)",
    )
    ingest.add_argument(
        "--strict",
        action="store_true",
        help="Abort on the first embedding failure instead of skipping the chunk",
    )
    ingest.add_argument("--concurrency", type=int, default=None, help="Parallel embedding requests")
    ingest.add_argument("--chunk-length", type=int, default=None, help="Chunk length in characters")
    ingest.add_argument("--chunk-overlap", type=int, default=None, help="Chunk overlap in characters")
    ingest.add_argument("--verbose", "-v", action="store_true", help="Show verbose progress output")

    ask = subparsers.add_parser("ask", parents=[common], help="Answer questions")
    ask.add_argument("questions", nargs="+", metavar="QUESTION")
    ask.add_argument("--top-k", type=int, default=None, help="Chunks to retrieve per question")
    ask.add_argument("--timeout", type=float, default=None, help="Seconds to wait for an answer")
    ask.add_argument("--min-score", type=float, default=None, help="Minimum cosine similarity")
    ask.add_argument("--show-sources", action="store_true", help="List the chunks used")

    subparsers.add_parser("stats", parents=[common], help="Show index statistics")

    return parser


COMMANDS = {
    "ingest": run_ingest,
    "ask": run_ask,
}


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point for the docrag console script."""
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level, args.log_format)

    try:
        if args.command == "stats":
            return run_stats(args)
        return asyncio.run(COMMANDS[args.command](args))

    except KeyboardInterrupt:
        print("\n\n⚠️  Cancelled by user.\n", file=sys.stderr)
        return 1

    except (DocRagError, httpx.HTTPError, ValueError) as e:
        print(f"\n❌ Error: {e}\n", file=sys.stderr)
        logger.error("cli_command_failed", command=args.command, error=str(e), error_type=type(e).__name__)
        return 1


if __name__ == "__main__":
    sys.exit(main())

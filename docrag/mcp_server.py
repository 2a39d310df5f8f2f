"""MCP server exposing the documentation index as a query tool over stdio.

Usage:
    docrag-mcp --index-dir storage/

MCP client configuration:
    {"mcpServers": {"docs": {"command": "docrag-mcp", "args": ["--index-dir", "/abs/storage"]}}}

stdout carries the protocol, so logs go to stderr.
"""
import argparse
import asyncio
import sys
from pathlib import Path
from typing import List, Optional

import httpx
import structlog
from mcp.server.fastmcp import FastMCP
from mcp.server.fastmcp.exceptions import ToolError

from docrag import config
from docrag.cli import configure_logging
from docrag.config import RagSettings
from docrag.errors import ConfigurationError, DocRagError
from docrag.llm_client import OllamaClient
from docrag.rag.query import Answer, QueryEngine
from docrag.rag.services import OllamaEmbeddingService, OllamaLanguageModel
from docrag.rag.store_faiss import FAISSVectorStore

logger = structlog.get_logger()

TOOL_NAME = "query_docs"

TOOL_DESCRIPTION = (
    "Answer a question from the indexed Markdown documentation. "
    "The answer cites the documentation excerpts it used as [Source N], "
    "and the excerpts are listed after it. "
    "Use this whenever you need information that lives in the project docs."
)


def format_answer(answer: Answer) -> str:
    """Answer text followed by the list of sources it was built from."""
    lines = [answer.answer_text, "", "Sources:"]
    for i, source in enumerate(answer.source_chunks, 1):
        location = source.document_id
        if source.heading_path:
            location = f"{location} > {source.heading_path}"
        lines.append(f"[{i}] {location} (score {source.score:.3f})")
    return "\n".join(lines)


async def query_docs(engine: QueryEngine, question: str) -> str:
    """Run one question through the engine for an MCP tool call.

    Raises:
        ToolError: For a missing question or any failure answering it; the
            client receives the message as the tool's error result
    """
    if not isinstance(question, str) or not question.strip():
        raise ToolError('Missing or invalid "question" argument')

    logger.info("mcp_query_received", question_preview=question[:100])

    try:
        answer = await engine.answer(question)
    except (DocRagError, ValueError) as e:
        logger.warning("mcp_query_failed", error=str(e), error_type=type(e).__name__)
        raise ToolError(f"Documentation query failed: {e}") from e

    return format_answer(answer)


def build_server(engine: QueryEngine) -> FastMCP:
    """Create the MCP server with the query tool bound to ``engine``."""
    server = FastMCP("docrag")

    @server.tool(name=TOOL_NAME, description=TOOL_DESCRIPTION)
    async def query_docs_tool(question: str) -> str:
        return await query_docs(engine, question)

    return server


async def build_engine(index_dir: Optional[Path], top_k: Optional[int] = None) -> QueryEngine:
    """Open the persisted index and connect the Ollama services.

    Raises:
        IndexCorruptionError: If the index on disk fails validation
        ConfigurationError: If there is no index in index_dir
    """
    settings = RagSettings.from_env(top_k=top_k)
    store = FAISSVectorStore(index_dir=index_dir)
    if not store.exists_on_disk():
        raise ConfigurationError(f"No index in {store.index_dir}; run `docrag ingest` first")
    store.load()

    client = OllamaClient(timeout=settings.llm_timeout)
    embedder = OllamaEmbeddingService(client)
    await embedder.resolve_model_version()

    return QueryEngine(store, embedder, OllamaLanguageModel(client), settings=settings)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="docrag-mcp",
        description="Serve the documentation index as an MCP tool over stdio",
    )
    parser.add_argument(
        "--index-dir",
        type=Path,
        default=None,
        help=f"Index directory (default: {config.INDEX_DIR})",
    )
    parser.add_argument("--top-k", type=int, default=None, help="Chunks to retrieve per question")
    parser.add_argument("--log-level", default=None, help=f"Log level (default: {config.LOG_LEVEL})")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point for the docrag-mcp console script."""
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level, "json")

    try:
        engine = asyncio.run(build_engine(args.index_dir, top_k=args.top_k))
    except (DocRagError, httpx.HTTPError) as e:
        print(f"Error starting MCP server: {e}", file=sys.stderr)
        return 1

    logger.info("mcp_server_starting", tool=TOOL_NAME, index_dir=str(engine.store.index_dir))
    build_server(engine).run()
    return 0


if __name__ == "__main__":
    sys.exit(main())

"""Ingest pipeline for indexing markdown documentation.

Orchestrates:
- Document loading (lazy, per-file failure tolerant)
- Markdown parsing and text chunking
- Bounded-concurrency embedding with retry and backoff
- Per-document atomic writes to the vector store
- Pruning of documents that disappeared, persistence, run history
"""
import asyncio
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from docrag.config import RagSettings
from docrag.errors import (
    DocRagError,
    EmbeddingError,
    ModelVersionMismatchError,
    ReadError,
)
from docrag.rag.chunker import TextChunk, TextChunker
from docrag.rag.loader import CorpusLoader, Document
from docrag.rag.services import EmbeddingService
from docrag.rag.store_faiss import FAISSVectorStore, IndexEntry

logger = structlog.get_logger()

ProgressCallback = Callable[[int, str], None]


class _Stopped(Exception):
    """A chunk was not started because the run is stopping."""


def is_transient(exc: BaseException) -> bool:
    """Whether an embedding failure is worth retrying."""
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, httpx.TransportError)):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status == 429 or status >= 500
    return False


@dataclass
class DocumentOutcome:
    """What happened to one document during ingestion."""

    document_id: str
    chunk_count: int = 0
    entries_written: int = 0
    chunks_reused: int = 0
    errors: List[EmbeddingError] = field(default_factory=list)
    written: bool = False


@dataclass
class IngestReport:
    """Summary of an ingestion run, including every per-file/per-chunk error."""

    documents_processed: int = 0
    documents_failed: int = 0
    documents_pruned: int = 0
    chunks_indexed: int = 0
    chunks_reused: int = 0
    chunks_failed: int = 0
    cancelled: bool = False
    errors: List[DocRagError] = field(default_factory=list)

    @property
    def read_errors(self) -> List[ReadError]:
        return [e for e in self.errors if isinstance(e, ReadError)]

    @property
    def embedding_errors(self) -> List[EmbeddingError]:
        return [e for e in self.errors if isinstance(e, EmbeddingError)]

    @property
    def ok(self) -> bool:
        return not self.errors and not self.cancelled

    def as_dict(self) -> Dict[str, Any]:
        return {
            "documents_processed": self.documents_processed,
            "documents_failed": self.documents_failed,
            "documents_pruned": self.documents_pruned,
            "chunks_indexed": self.chunks_indexed,
            "chunks_reused": self.chunks_reused,
            "chunks_failed": self.chunks_failed,
            "cancelled": self.cancelled,
            "errors": [str(e) for e in self.errors],
        }


class IngestPipeline:
    """Pipeline for ingesting markdown documentation into the vector store."""

    def __init__(
        self,
        store: FAISSVectorStore,
        embedder: EmbeddingService,
        loader: Optional[CorpusLoader] = None,
        settings: Optional[RagSettings] = None,
        chunker: Optional[TextChunker] = None,
    ):
        """Initialize the ingest pipeline.

        Args:
            store: Vector store to write into (opened by the caller)
            embedder: Embedding service; its model_version tags every entry
            loader: Corpus loader (default: config.DOCS_ROOTS)
            settings: Pipeline settings (default: from environment)
            chunker: Text chunker (default: built from settings)
        """
        self.settings = settings or RagSettings.from_env()
        self.store = store
        self.embedder = embedder
        self.loader = loader or CorpusLoader()
        self.parser = self.loader.parser
        self.chunker = chunker or TextChunker(
            chunk_length=self.settings.chunk_length,
            chunk_overlap=self.settings.chunk_overlap,
        )

        self._cancel_requested = threading.Event()
        self._abort: Optional[BaseException] = None
        self._request_slots: Optional[asyncio.Semaphore] = None

        logger.info(
            "ingest_pipeline_initialized",
            roots=[str(r) for r in self.loader.roots],
            model_version=self.embedder.model_version,
            chunk_length=self.chunker.chunk_length,
            chunk_overlap=self.chunker.chunk_overlap,
            concurrency_limit=self.settings.concurrency_limit,
            strict_mode=self.settings.strict_mode,
        )

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def cancel(self) -> None:
        """Ask the current (or next) run to stop: in-flight requests finish, nothing new starts.

        Safe to call from another thread or a signal handler.
        """
        if not self._cancel_requested.is_set():
            logger.warning("ingest_cancel_requested")
        self._cancel_requested.set()

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested.is_set()

    def _should_stop(self) -> bool:
        return self._cancel_requested.is_set() or self._abort is not None

    def _fail(self, error: BaseException, document_id: str) -> None:
        """Record the error that ends the run; queued chunks will not start."""
        if self._abort is None:
            logger.error(
                "ingest_aborted",
                document_id=document_id,
                error=str(error),
                error_type=type(error).__name__,
            )
            self._abort = error

    # ------------------------------------------------------------------
    # Embedding
    # ------------------------------------------------------------------

    def _log_retry(self, chunk: TextChunk) -> Callable[[RetryCallState], None]:
        def before_sleep(retry_state: RetryCallState) -> None:
            logger.warning(
                "embedding_retry",
                chunk_id=chunk.chunk_id,
                attempt=retry_state.attempt_number,
                max_attempts=self.settings.embed_max_attempts,
                error=repr(retry_state.outcome.exception()),
            )

        return before_sleep

    async def _request_embedding(self, chunk: TextChunk) -> List[float]:
        """One embedding request, holding a concurrency slot for its duration."""
        async with self._slots():
            if self._should_stop():
                raise _Stopped(chunk.chunk_id)
            return await asyncio.wait_for(
                self.embedder.embed(chunk.content),
                timeout=self.settings.embed_timeout,
            )

    def _slots(self) -> asyncio.Semaphore:
        if self._request_slots is None:
            self._request_slots = asyncio.Semaphore(self.settings.concurrency_limit)
        return self._request_slots

    async def embed_chunk(self, chunk: TextChunk) -> List[float]:
        """Embed a chunk with bounded retry on transient failures.

        Raises:
            EmbeddingError: When retries are exhausted or the failure is permanent
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.settings.embed_max_attempts),
            wait=wait_exponential(
                multiplier=self.settings.retry_initial_wait,
                max=self.settings.retry_max_wait,
            ),
            retry=retry_if_exception(is_transient),
            before_sleep=self._log_retry(chunk),
            reraise=True,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    return await self._request_embedding(chunk)
        except _Stopped:
            raise
        except EmbeddingError as e:
            raise EmbeddingError(
                f"Embedding failed for {chunk.chunk_id}: {e.message}",
                chunk_id=chunk.chunk_id,
                provider_name=e.provider_name,
            ) from e
        except Exception as e:
            raise EmbeddingError(
                f"Embedding failed for {chunk.chunk_id}: {e!r}",
                chunk_id=chunk.chunk_id,
                provider_name=getattr(self.embedder, "provider_name", None),
            ) from e

    async def _entry_for_chunk(
        self,
        document: Document,
        chunk: TextChunk,
        cached: Optional[IndexEntry],
    ) -> Tuple[IndexEntry, bool]:
        """Build the index entry for a chunk, reusing a cached vector if valid."""
        model_version = self.embedder.model_version
        reused = (
            cached is not None
            and cached.text == chunk.content
            and cached.model_version == model_version
        )

        if reused:
            vector = cached.vector
        else:
            if self._should_stop():
                raise _Stopped(chunk.chunk_id)
            try:
                vector = tuple(await self.embed_chunk(chunk))
            except EmbeddingError as e:
                if self.settings.strict_mode:
                    self._fail(e, document.doc_id)
                raise

        metadata = dict(document.metadata)
        metadata.update(
            chunk_index=chunk.chunk_index,
            char_start=chunk.char_start,
            char_end=chunk.char_end,
            heading_path=chunk.heading_path,
        )

        entry = IndexEntry(
            chunk_id=chunk.chunk_id,
            document_id=document.doc_id,
            vector=vector,
            text=chunk.content,
            metadata=metadata,
            model_version=model_version,
        )
        return entry, reused

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    def chunk_document(self, document: Document) -> List[TextChunk]:
        """Chunk a document's body (frontmatter stripped), labelling heading paths."""
        parsed = self.parser.parse_text(document.text)
        return self.chunker.chunk_text(
            parsed.body,
            document_id=document.doc_id,
            heading_resolver=lambda pos: self.parser.get_heading_context(parsed.headings, pos),
        )

    async def ingest_document(self, document: Document) -> DocumentOutcome:
        """Chunk, embed and store one document, replacing its previous entries.

        In lenient mode a chunk whose embedding fails is skipped and reported in
        the outcome. If the run is stopping before every chunk was embedded the
        document is left as it was in the index.

        Raises:
            EmbeddingError: In strict mode, on the first chunk that fails
        """
        chunks = self.chunk_document(document)
        outcome = DocumentOutcome(document_id=document.doc_id, chunk_count=len(chunks))

        cached = {e.chunk_id: e for e in self.store.entries_for_document(document.doc_id)}
        results = await asyncio.gather(
            *(self._entry_for_chunk(document, c, cached.get(c.chunk_id)) for c in chunks),
            return_exceptions=True,
        )

        entries: List[IndexEntry] = []
        stopped = False
        for chunk, result in zip(chunks, results):
            if isinstance(result, _Stopped):
                stopped = True
            elif isinstance(result, EmbeddingError):
                logger.error(
                    "chunk_embedding_failed",
                    chunk_id=chunk.chunk_id,
                    error=str(result),
                )
                outcome.errors.append(result)
            elif isinstance(result, BaseException):
                raise result
            else:
                entry, reused = result
                entries.append(entry)
                outcome.chunks_reused += int(reused)

        if outcome.errors and self.settings.strict_mode:
            raise outcome.errors[0]

        if stopped:
            logger.info(
                "document_skipped_on_stop",
                document_id=document.doc_id,
                embedded=len(entries),
                chunk_count=len(chunks),
            )
            return outcome

        self.store.replace_document(document.doc_id, entries)
        outcome.entries_written = len(entries)
        outcome.written = True

        logger.info(
            "document_ingested",
            document_id=document.doc_id,
            chunks_created=len(chunks),
            entries_written=len(entries),
            chunks_reused=outcome.chunks_reused,
            chunks_failed=len(outcome.errors),
        )
        logger.debug("chunk_stats", document_id=document.doc_id, **self.chunker.get_chunk_stats(chunks))

        return outcome

    async def _run_document(
        self,
        document: Document,
        doc_slots: asyncio.Semaphore,
        report: IngestReport,
        progress_callback: Optional[ProgressCallback],
    ) -> None:
        try:
            outcome = await self.ingest_document(document)
        except Exception as e:
            # Strict-mode embedding failures and configuration errors end the run
            self._fail(e, document.doc_id)
            return
        finally:
            doc_slots.release()

        report.errors.extend(outcome.errors)
        report.chunks_failed += len(outcome.errors)
        if outcome.written:
            report.documents_processed += 1
            report.chunks_indexed += outcome.entries_written
            report.chunks_reused += outcome.chunks_reused

            if progress_callback:
                progress_callback(report.documents_processed, document.doc_id)

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    def _prepare_store(self, rebuild: bool) -> None:
        model_version = self.embedder.model_version

        if rebuild:
            self.store.clear(model_version=model_version)
            logger.info("index_cleared_for_rebuild", model_version=model_version)
        elif len(self.store) == 0:
            self.store.clear(model_version=model_version)
        elif self.store.model_version != model_version:
            raise ModelVersionMismatchError(
                f"Index was built with {self.store.model_version!r} but the embedding "
                f"model is {model_version!r}; run a rebuild to re-embed",
                expected=self.store.model_version,
                actual=model_version,
            )

    async def ingest_all(
        self,
        rebuild: bool = False,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> IngestReport:
        """Run a full ingestion over every document the loader yields.

        Args:
            rebuild: Discard the existing index (and its cached vectors) first
            progress_callback: Called as (documents_done, document_id)

        Returns:
            IngestReport; per-file and per-chunk errors are collected there

        Raises:
            ReadError: If a documentation root doesn't exist
            ModelVersionMismatchError: If the index was built with another model
                and rebuild is False
            EmbeddingError: In strict mode, on the first embedding failure
        """
        started = time.monotonic()
        self._abort = None
        self._request_slots = asyncio.Semaphore(self.settings.concurrency_limit)

        self.loader.check_roots()
        self._prepare_store(rebuild)

        logger.info("starting_ingest_all", rebuild=rebuild)

        report = IngestReport()
        doc_slots = asyncio.Semaphore(self.settings.concurrency_limit)
        seen_ids: Set[str] = set()
        tasks = []

        for document in self.loader.iter_documents():
            # Back-pressure: the loader is only advanced when a slot frees up
            await doc_slots.acquire()
            if self._should_stop():
                doc_slots.release()
                break

            seen_ids.add(document.doc_id)
            tasks.append(
                asyncio.create_task(
                    self._run_document(document, doc_slots, report, progress_callback)
                )
            )

        await asyncio.gather(*tasks)

        report.errors[:0] = self.loader.failures
        report.documents_failed = len(self.loader.failures)

        cancelled = self.cancel_requested
        self._cancel_requested.clear()

        if self._abort is not None:
            logger.error("ingest_all_failed", error=str(self._abort), stats=report.as_dict())
            raise self._abort

        if cancelled:
            report.cancelled = True
        else:
            keep = seen_ids | set(self.loader.failed_ids)
            for document_id in sorted(self.store.document_ids() - keep):
                self.store.delete_by_document(document_id)
                report.documents_pruned += 1

        await asyncio.to_thread(self.store.persist)

        if not report.cancelled:
            await asyncio.to_thread(
                self.store.record_run,
                model_version=self.embedder.model_version,
                embedding_dimension=self.store.dimension,
                chunk_length=self.chunker.chunk_length,
                chunk_overlap=self.chunker.chunk_overlap,
                total_chunks=len(self.store),
                total_documents=len(self.store.document_ids()),
                metadata=report.as_dict(),
            )

        logger.info(
            "ingest_all_completed",
            elapsed_seconds=round(time.monotonic() - started, 2),
            **report.as_dict(),
        )
        return report

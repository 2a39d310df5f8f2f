"""Text chunking with overlap for the RAG pipeline.

Implements character-based chunking to avoid tokenizer dependencies.
Boundaries depend only on the text and (chunk_length, chunk_overlap), so
re-chunking unchanged text always reproduces the same chunks.
"""
from dataclasses import dataclass
from typing import Callable, List, Optional

import structlog

from docrag import config

logger = structlog.get_logger()


@dataclass(frozen=True)
class TextChunk:
    """A contiguous slice of a document's text."""

    document_id: str
    chunk_index: int
    content: str
    char_start: int
    char_end: int
    heading_path: str = ""

    @property
    def chunk_id(self) -> str:
        return f"{self.document_id}#{self.chunk_index}"


class TextChunker:
    """Character-based text chunker with overlap support."""

    SENTENCE_BREAKS = (". ", "! ", "? ", ".\n", "!\n", "?\n")

    def __init__(
        self,
        chunk_length: int = None,
        chunk_overlap: int = None,
    ):
        """Initialize the text chunker.

        Args:
            chunk_length: Maximum chunk length in characters (default from config)
            chunk_overlap: Overlap between neighbouring chunks in characters
                (default from config)
        """
        self.chunk_length = chunk_length if chunk_length is not None else config.CHUNK_LENGTH
        self.chunk_overlap = chunk_overlap if chunk_overlap is not None else config.CHUNK_OVERLAP

        if self.chunk_length <= 0:
            raise ValueError(f"Chunk length must be positive, got {self.chunk_length}")
        if not 0 <= self.chunk_overlap < self.chunk_length:
            raise ValueError(
                f"Overlap ({self.chunk_overlap}) must be non-negative and less than "
                f"chunk length ({self.chunk_length})"
            )

        logger.debug(
            "chunker_initialized",
            chunk_length=self.chunk_length,
            chunk_overlap=self.chunk_overlap,
        )

    def chunk_text(
        self,
        text: str,
        document_id: str = "",
        heading_resolver: Optional[Callable[[int], str]] = None,
    ) -> List[TextChunk]:
        """Split text into overlapping chunks.

        Args:
            text: Text to chunk
            document_id: Identifier of the parent document
            heading_resolver: Maps a character offset to its heading path

        Returns:
            List of TextChunk objects in source order
        """
        if not text or not text.strip():
            return []

        text_length = len(text)
        chunks: List[TextChunk] = []
        start = 0

        while start < text_length:
            end = min(start + self.chunk_length, text_length)

            # Pull the end back to a natural break unless this is the last window
            if end < text_length:
                end = start + self._boundary_length(text[start:end])

            chunks.append(
                TextChunk(
                    document_id=document_id,
                    chunk_index=len(chunks),
                    content=text[start:end],
                    char_start=start,
                    char_end=end,
                    heading_path=heading_resolver(start) if heading_resolver else "",
                )
            )

            if end >= text_length:
                break

            next_start = end - self.chunk_overlap
            # Always move forward, even when a short boundary ate the overlap
            start = next_start if next_start > start else end

        logger.debug(
            "text_chunked",
            document_id=document_id,
            text_length=text_length,
            chunk_count=len(chunks),
        )

        return chunks

    def _boundary_length(self, window: str) -> int:
        """Length of the window once trimmed to a sentence/paragraph/word break.

        Returns the full window length when no break sits late enough.
        """
        # Sentence boundary (period, !, ?) at least 70% through the window
        for break_char in self.SENTENCE_BREAKS:
            last_break = window.rfind(break_char)
            if last_break > len(window) * 0.7:
                return last_break + len(break_char)

        last_paragraph = window.rfind("\n\n")
        if last_paragraph > len(window) * 0.7:
            return last_paragraph + 2

        last_newline = window.rfind("\n")
        if last_newline > len(window) * 0.7:
            return last_newline + 1

        # Word boundary at least 80% through
        last_space = window.rfind(" ")
        if last_space > len(window) * 0.8:
            return last_space + 1

        return len(window)

    def get_chunk_stats(self, chunks: List[TextChunk]) -> dict:
        """Get statistics about a set of chunks."""
        if not chunks:
            return {
                "chunk_count": 0,
                "total_chars": 0,
                "avg_chunk_size": 0,
                "min_chunk_size": 0,
                "max_chunk_size": 0,
            }

        chunk_sizes = [len(c.content) for c in chunks]

        return {
            "chunk_count": len(chunks),
            "total_chars": sum(chunk_sizes),
            "avg_chunk_size": sum(chunk_sizes) // len(chunks),
            "min_chunk_size": min(chunk_sizes),
            "max_chunk_size": max(chunk_sizes),
            "overlap": self.chunk_overlap,
        }

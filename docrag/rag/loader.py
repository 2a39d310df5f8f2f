"""Corpus loader: walks documentation roots and yields Documents.

Documents are produced lazily and in sorted path order, so re-running over
an unchanged tree yields the same sequence. Unreadable files are recorded
as ``ReadError`` in ``CorpusLoader.failures`` and skipped.
"""
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Set, Tuple

import structlog

from docrag import config
from docrag.errors import ReadError
from docrag.rag.md_parser import MarkdownParser

logger = structlog.get_logger()

EXCLUDED_DIRS = frozenset(
    {"node_modules", ".git", "dist", "build", ".vscode", ".docusaurus", "__pycache__"}
)


@dataclass(frozen=True)
class Document:
    """A loaded source document."""

    doc_id: str
    path: Path
    text: str
    metadata: Dict[str, Any] = field(default_factory=dict, compare=False)


class CorpusLoader:
    """Lazy, restartable loader over one or more documentation roots."""

    def __init__(
        self,
        roots: Iterable[Path] = None,
        pattern: str = None,
        excluded_dirs: Iterable[str] = EXCLUDED_DIRS,
        parser: Optional[MarkdownParser] = None,
    ):
        self.roots = [Path(r) for r in (roots or config.DOCS_ROOTS)]
        self.pattern = pattern or config.DOCS_PATTERN
        self.excluded_dirs = frozenset(excluded_dirs)
        self.parser = parser or MarkdownParser()
        self.failures: List[ReadError] = []
        # Ids of documents that exist but failed to load in the last pass
        self.failed_ids: List[str] = []

    def _discover(self, root: Path) -> List[Path]:
        """Find matching files under a root, pruning excluded directories."""
        found = []

        for dirpath, dirnames, filenames in os.walk(root):
            # Prune in place so os.walk never descends into them
            dirnames[:] = sorted(d for d in dirnames if d not in self.excluded_dirs)
            for name in filenames:
                path = Path(dirpath) / name
                if path.match(self.pattern):
                    found.append(path)

        return sorted(found)

    def check_roots(self) -> None:
        """Raise ReadError for the first root that isn't an existing directory."""
        for root in self.roots:
            if not root.is_dir():
                raise ReadError(f"Documentation root not found: {root}", path=root)

    def _iter_paths(self) -> Iterator[Tuple[Path, Path]]:
        """Yield (root, path) pairs; a file reachable from two roots comes once.

        Raises:
            ReadError: If a root directory doesn't exist
        """
        self.check_roots()
        seen: Set[Path] = set()

        for root in self.roots:
            for path in self._discover(root):
                resolved = path.resolve()
                if resolved in seen:
                    continue
                seen.add(resolved)
                yield root, path

    def discover(self) -> List[Path]:
        """List every file the loader would read."""
        paths = [path for _, path in self._iter_paths()]

        logger.info(
            "markdown_files_discovered",
            count=len(paths),
            roots=[str(r) for r in self.roots],
        )
        return paths

    def _document_id(self, root: Path, path: Path) -> str:
        relative = path.relative_to(root).as_posix()
        return f"{root.resolve().name}/{relative}"

    def load_file(self, root: Path, path: Path) -> Document:
        """Read one file into a Document.

        Raises:
            ReadError: If the file can't be read or decoded as UTF-8
        """
        try:
            text = path.read_text(encoding="utf-8")
            stat = path.stat()
        except (OSError, UnicodeDecodeError) as e:
            raise ReadError(f"Cannot read {path}: {e}", path=path) from e

        relative = path.relative_to(root)
        category = relative.parts[0] if len(relative.parts) > 1 else "root"

        parsed = self.parser.parse_text(text)
        metadata: Dict[str, Any] = {
            "file_path": str(path),
            "file_name": path.name,
            "category": category,
            "source_folder": root.resolve().name,
            "mtime": datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc).isoformat(),
        }
        metadata.update(self.parser.frontmatter_metadata(parsed))

        return Document(
            doc_id=self._document_id(root, path),
            path=path,
            text=text,
            metadata=metadata,
        )

    def iter_documents(self) -> Iterator[Document]:
        """Yield Documents lazily; unreadable files are recorded and skipped."""
        self.failures = []
        self.failed_ids = []

        for root, path in self._iter_paths():
            try:
                document = self.load_file(root, path)
            except ReadError as e:
                logger.error("document_read_failed", path=str(path), error=str(e))
                self.failures.append(e)
                self.failed_ids.append(self._document_id(root, path))
                continue

            yield document

    def __iter__(self) -> Iterator[Document]:
        return self.iter_documents()

"""Markdown parser for extracting content and metadata from .md files.

Handles:
- YAML frontmatter parsing
- Heading hierarchy extraction (ignoring '#' lines inside fenced code)
- Heading path lookup for a character offset
"""
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Tuple

import structlog
import yaml

logger = structlog.get_logger()


@dataclass
class Heading:
    """Represents a markdown heading with hierarchy."""

    level: int  # 1-6 for h1-h6
    text: str
    char_position: int
    line_number: int


@dataclass
class MarkdownDocument:
    """Parsed markdown document with content and metadata."""

    content: str
    frontmatter: Dict[str, Any]
    headings: List[Heading]
    body: str


class MarkdownParser:
    """Parser for markdown documents with frontmatter support."""

    # YAML frontmatter (must be at start of file)
    FRONTMATTER_PATTERN = re.compile(r"\A---\s*\n(.*?)\n---\s*(?:\n|\Z)", re.DOTALL)

    HEADING_PATTERN = re.compile(r"^(#{1,6})\s+(.+?)\s*#*\s*$", re.MULTILINE)

    FENCE_PATTERN = re.compile(r"^(```|~~~)", re.MULTILINE)

    def parse_text(self, content: str) -> MarkdownDocument:
        """Parse markdown text into frontmatter, body and headings."""
        frontmatter, body = self._parse_frontmatter(content)
        headings = self._extract_headings(body)

        logger.debug(
            "markdown_parsed",
            has_frontmatter=bool(frontmatter),
            heading_count=len(headings),
            content_length=len(body),
        )

        return MarkdownDocument(
            content=content,
            frontmatter=frontmatter,
            headings=headings,
            body=body,
        )

    def _parse_frontmatter(self, content: str) -> Tuple[Dict[str, Any], str]:
        """Extract YAML frontmatter from markdown content.

        Returns:
            Tuple of (frontmatter_dict, content_without_frontmatter)
        """
        match = self.FRONTMATTER_PATTERN.match(content)

        if not match:
            return {}, content

        yaml_content = match.group(1)
        try:
            frontmatter = yaml.safe_load(yaml_content)
        except yaml.YAMLError as e:
            logger.warning(
                "frontmatter_parse_error",
                error=str(e),
                yaml_preview=yaml_content[:100],
            )
            frontmatter = None

        if not isinstance(frontmatter, dict):
            frontmatter = {}

        return frontmatter, content[match.end():]

    def _fenced_ranges(self, content: str) -> List[Tuple[int, int]]:
        """Character ranges covered by fenced code blocks."""
        ranges = []
        open_at = None
        fence = None

        for match in self.FENCE_PATTERN.finditer(content):
            if open_at is None:
                open_at, fence = match.start(), match.group(1)
            elif match.group(1) == fence:
                ranges.append((open_at, match.end()))
                open_at, fence = None, None

        # Unclosed fence runs to the end of the document
        if open_at is not None:
            ranges.append((open_at, len(content)))

        return ranges

    def _extract_headings(self, content: str) -> List[Heading]:
        """Extract all markdown headings with their positions."""
        fenced = self._fenced_ranges(content)
        headings = []

        for match in self.HEADING_PATTERN.finditer(content):
            char_position = match.start()
            if any(start <= char_position < end for start, end in fenced):
                continue

            headings.append(
                Heading(
                    level=len(match.group(1)),
                    text=match.group(2).strip(),
                    char_position=char_position,
                    line_number=content.count("\n", 0, char_position) + 1,
                )
            )

        return headings

    def get_heading_context(self, headings: List[Heading], char_position: int) -> str:
        """Get hierarchical heading context for a given character position.

        A heading that starts exactly at ``char_position`` counts as enclosing
        it, so a chunk beginning with a heading is labelled by that heading.

        Returns:
            Heading context string like "# Main > ## Sub > ### Detail"
        """
        context_stack: List[Heading] = []

        for heading in headings:
            if heading.char_position > char_position:
                break
            while context_stack and context_stack[-1].level >= heading.level:
                context_stack.pop()
            context_stack.append(heading)

        return " > ".join(f"{'#' * h.level} {h.text}" for h in context_stack)

    def frontmatter_metadata(self, doc: MarkdownDocument) -> Dict[str, Any]:
        """Pick the frontmatter fields worth carrying into chunk metadata."""
        metadata: Dict[str, Any] = {}

        for field in ("title", "tags", "sidebar_label", "description", "author"):
            if field in doc.frontmatter:
                value = doc.frontmatter[field]
                # Convert date/datetime objects to ISO format strings
                if hasattr(value, "isoformat"):
                    value = value.isoformat()
                metadata[field] = value

        return metadata

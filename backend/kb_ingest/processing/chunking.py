"""
Text Chunker
════════════

Splits extracted document text into bounded, overlapping chunks for
embedding.

Boundary preference
───────────────────
  paragraph ("\n\n")  >  line ("\n")  >  sentence (". ")  >  word (" ")  >  character

  LangChain's RecursiveCharacterTextSplitter tries each separator in turn
  and only falls through to the next one when a piece is still larger than
  chunk_size. Separators are kept at the end of the piece they close, so a
  sentence keeps its full stop.

Guarantees
──────────
  • No chunk is longer than chunk_size characters.
  • No chunk is empty or whitespace-only.
  • Consecutive chunks share up to chunk_overlap characters of context.
  • Chunk order follows document order; chunk_index is 0-based.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass

from langchain_text_splitters import RecursiveCharacterTextSplitter

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration constants
# ---------------------------------------------------------------------------

DEFAULT_CHUNK_SIZE    = 1000   # characters
DEFAULT_CHUNK_OVERLAP = 200
CHARS_PER_TOKEN_EST   = 4      # ~4 chars per token for English text

SEPARATORS = ["\n\n", "\n", ". ", " ", ""]

_INLINE_WS_RE  = re.compile(r"[ \t\f\v\r]+")
_BLANK_LINES_RE = re.compile(r"\n\s*\n+")


@dataclass
class TextChunk:
    """A single chunk ready for embedding."""
    chunk_index: int
    text:        str
    token_count: int


def estimate_token_count(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_TOKEN_EST)


def normalize_text(text: str) -> str:
    """Collapse inline whitespace and runs of blank lines; keep paragraph breaks."""
    text = _INLINE_WS_RE.sub(" ", text)
    text = _BLANK_LINES_RE.sub("\n\n", text)
    lines = (line.strip() for line in text.split("\n"))
    return "\n".join(lines).strip()


class TextChunker:
    """
    Stateless; one instance is shared by every document processed in a
    worker process.
    """

    def __init__(
        self,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        chunk_overlap: int = DEFAULT_CHUNK_OVERLAP,
    ) -> None:
        if chunk_size <= 0:
            logger.error("chunk_size must be positive, using %d", DEFAULT_CHUNK_SIZE)
            chunk_size = DEFAULT_CHUNK_SIZE
        if chunk_overlap < 0:
            logger.error("chunk_overlap cannot be negative, using 0")
            chunk_overlap = 0
        if chunk_overlap >= chunk_size:
            adjusted = max(0, chunk_size // 2 - 1)
            logger.warning(
                "chunk_overlap (%d) >= chunk_size (%d), using %d",
                chunk_overlap, chunk_size, adjusted,
            )
            chunk_overlap = adjusted

        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self._splitter = RecursiveCharacterTextSplitter(
            chunk_size=chunk_size,
            chunk_overlap=chunk_overlap,
            separators=SEPARATORS,
            keep_separator="end",
            strip_whitespace=True,
            length_function=len,
        )

    def split(self, text: str) -> list[TextChunk]:
        cleaned = normalize_text(text)
        if not cleaned:
            return []

        pieces = [p.strip() for p in self._splitter.split_text(cleaned)]
        chunks = [
            TextChunk(chunk_index=i, text=p, token_count=estimate_token_count(p))
            for i, p in enumerate(p for p in pieces if p)
        ]
        logger.debug(
            "Chunked | chars=%d chunks=%d size=%d overlap=%d",
            len(cleaned), len(chunks), self.chunk_size, self.chunk_overlap,
        )
        return chunks

"""
Text Extraction
═══════════════

Turns a document record into plain text.

  pdf      → pypdf, pages joined by blank lines
  docx     → python-docx, non-empty paragraphs
  txt / md → UTF-8, latin-1 fallback
  webpage  → file_path is a URL; fetched with httpx, visible text
             extracted with BeautifulSoup (scripts, styles and page chrome
             dropped)

Every failure is raised as DocumentContentError or StorageError so the
processor can record which stage broke.
"""

from __future__ import annotations

import io
import logging
from typing import Protocol

import httpx
from bs4 import BeautifulSoup

from kb_ingest.core.exceptions import DocumentContentError, StorageError
from kb_ingest.schemas.documents import DocumentRecord

logger = logging.getLogger(__name__)

SUPPORTED_FILE_TYPES: frozenset[str] = frozenset({"pdf", "docx", "txt", "md", "webpage"})

_NON_CONTENT_TAGS = ("script", "style", "noscript", "nav", "header", "footer", "aside", "form")


class BlobSource(Protocol):
    async def get_bytes(self, key: str) -> bytes: ...


# ---------------------------------------------------------------------------
# Format-specific extractors
# ---------------------------------------------------------------------------

def _extract_pdf(data: bytes) -> str:
    from pypdf import PdfReader

    reader = PdfReader(io.BytesIO(data))
    pages = [page.extract_text() or "" for page in reader.pages]
    return "\n\n".join(pages)


def _extract_docx(data: bytes) -> str:
    import docx

    doc = docx.Document(io.BytesIO(data))
    return "\n".join(para.text for para in doc.paragraphs if para.text.strip())


def _decode_text(data: bytes) -> str:
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        return data.decode("latin-1", errors="replace")


def html_to_text(html: str) -> str:
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(_NON_CONTENT_TAGS):
        tag.decompose()
    root = soup.find("main") or soup.find("article") or soup.body or soup
    return root.get_text("\n", strip=True)


def extract_text(data: bytes, file_type: str) -> str:
    """Extract text from stored file bytes."""
    file_type = file_type.lower()
    try:
        if file_type == "pdf":
            return _extract_pdf(data)
        if file_type == "docx":
            return _extract_docx(data)
        if file_type in ("txt", "md"):
            return _decode_text(data)
    except Exception as exc:
        logger.warning("Text extraction failed | type=%s error=%s", file_type, exc)
        raise DocumentContentError(f"Failed to extract text from {file_type} file: {exc}") from exc
    raise DocumentContentError(f"Unsupported file type: {file_type}")


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class ContentExtractor:
    """Resolves a document's content from storage or the web."""

    def __init__(
        self,
        storage: BlobSource,
        *,
        fetch_timeout: float = 20.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._storage = storage
        self._fetch_timeout = fetch_timeout
        self._transport = transport

    async def load_text(self, document: DocumentRecord) -> str:
        if document.file_type == "webpage":
            return await self._fetch_webpage(document.file_path)

        data = await self._storage.get_bytes(document.file_path)
        if not data:
            raise DocumentContentError("Stored file is empty")
        return extract_text(data, document.file_type)

    async def _fetch_webpage(self, url: str) -> str:
        try:
            async with httpx.AsyncClient(
                timeout=self._fetch_timeout,
                follow_redirects=True,
                transport=self._transport,
                headers={"User-Agent": "kb-ingest/1.0"},
            ) as client:
                resp = await client.get(url)
        except httpx.HTTPError as exc:
            raise StorageError(f"Failed to fetch {url}: {exc}") from exc

        if resp.status_code >= 400:
            raise StorageError(f"Failed to fetch {url}: HTTP {resp.status_code}")

        content_type = resp.headers.get("content-type", "")
        if "html" in content_type:
            return html_to_text(resp.text)
        if content_type.startswith("text/"):
            return resp.text
        raise DocumentContentError(f"Unsupported webpage content type: {content_type or 'unknown'}")

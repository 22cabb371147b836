"""
Pinecone Vector Store — direct REST client

Talks to the index data plane with plain HTTP instead of the SDK:

    POST /vectors/upsert        {vectors: [{id, values, metadata}]}
    POST /query                 {vector, topK, includeMetadata, filter}
    POST /vectors/delete        {filter}
    GET  /describe_index_stats

Failure model:
  _call() never raises. Transport errors, HTTP >= 400 and non-JSON bodies
  all come back as a RemoteResponse with `error` set. Gateways and
  misconfigured hosts answer with HTML pages, so the content-type is
  checked before any JSON parsing and a readable message is pulled out of
  the page's <title> and first <p>.

Upsert pacing:
  Vectors go out in batches (default 20) with a short fixed delay
  between batches. A failed batch is retried one vector at a time and
  the run continues with the next batch; there is no backoff beyond that.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

import httpx
from bs4 import BeautifulSoup

from kb_ingest.core.config import Settings
from kb_ingest.vectorstore.base import (
    QueryMatch,
    StoreStatus,
    UpsertReport,
    VectorRecord,
    VectorStoreBase,
)

logger = logging.getLogger(__name__)

_SNIPPET_CHARS = 100


@dataclass
class RemoteResponse:
    status:      int
    status_text: str = ""
    data:        Any = None
    error:       str | None = None

    @property
    def failed(self) -> bool:
        return self.status >= 400 or self.error is not None

    def describe(self) -> str:
        return self.error or f"{self.status} {self.status_text}".strip()


# ---------------------------------------------------------------------------
# Response body helpers
# ---------------------------------------------------------------------------

def _looks_like_html(content_type: str, body: str) -> bool:
    if "html" in content_type:
        return True
    head = body.lstrip()[:15].lower()
    return head.startswith("<!doctype") or head.startswith("<html")


def summarize_html_error(body: str) -> str:
    """'HTML response: <title> - <first paragraph>' from an error page."""
    soup = BeautifulSoup(body, "html.parser")
    title = soup.title.get_text(strip=True) if soup.title else ""
    para = soup.find("p")
    message = para.get_text(" ", strip=True) if para else ""
    return (
        f"HTML response: {title or 'Unknown error'} - "
        f"{message or body[:_SNIPPET_CHARS]}"
    )


def summarize_non_json(content_type: str, body: str) -> str:
    if _looks_like_html(content_type, body):
        return summarize_html_error(body)
    return f"Non-JSON response: {body[:_SNIPPET_CHARS]}"


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class PineconeRestStore(VectorStoreBase):
    """
    One instance per process. The underlying httpx.AsyncClient is created
    lazily; pass `transport` to route requests through httpx.MockTransport.
    """

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str,
        batch_size: int = 20,
        batch_delay: float = 0.5,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._batch_size = max(1, batch_size)
        self._batch_delay = batch_delay
        self._timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @classmethod
    def from_settings(cls, cfg: Settings, **kwargs: Any) -> "PineconeRestStore":
        return cls(
            api_key=cfg.pinecone_api_key,
            base_url=cfg.pinecone_base_url,
            batch_size=cfg.vector_upsert_batch_size,
            batch_delay=cfg.vector_upsert_delay_seconds,
            timeout=cfg.vector_request_timeout,
            **kwargs,
        )

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout,
                transport=self._transport,
                headers={"Content-Type": "application/json", "Api-Key": self._api_key},
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    # ------------------------------------------------------------------
    # Single request
    # ------------------------------------------------------------------

    async def _call(self, method: str, endpoint: str, body: dict | None = None) -> RemoteResponse:
        if not self._api_key:
            logger.error("Pinecone API key is missing")
            return RemoteResponse(status=401, status_text="Unauthorized", error="API key is missing")

        try:
            resp = await self._http().request(method, endpoint, json=body)
        except httpx.HTTPError as exc:
            logger.error("Pinecone transport error | %s %s error=%s", method, endpoint, exc)
            return RemoteResponse(status=500, status_text="Internal Error", error=str(exc) or type(exc).__name__)

        content_type = resp.headers.get("content-type", "")
        if "application/json" in content_type:
            try:
                data = resp.json()
            except ValueError:
                return RemoteResponse(
                    status=resp.status_code,
                    status_text=resp.reason_phrase,
                    error=f"Invalid JSON response: {resp.text[:_SNIPPET_CHARS]}",
                )
            result = RemoteResponse(status=resp.status_code, status_text=resp.reason_phrase, data=data)
            if resp.status_code >= 400:
                message = data.get("message") if isinstance(data, dict) else None
                result.error = message or f"API error: {resp.status_code} {resp.reason_phrase}"
            return result

        text = resp.text
        logger.error(
            "Non-JSON response from Pinecone | status=%d content_type=%s body=%r",
            resp.status_code, content_type or "-", text[:200],
        )
        return RemoteResponse(
            status=resp.status_code,
            status_text=resp.reason_phrase,
            error=summarize_non_json(content_type, text),
        )

    # ------------------------------------------------------------------
    # Upsert
    # ------------------------------------------------------------------

    async def upsert(self, records: list[VectorRecord]) -> UpsertReport:
        report = UpsertReport(attempted=len(records))
        total_batches = (len(records) + self._batch_size - 1) // self._batch_size

        for batch_no, start in enumerate(range(0, len(records), self._batch_size), start=1):
            batch = records[start : start + self._batch_size]
            result = await self._call(
                "POST", "/vectors/upsert", {"vectors": [r.to_wire() for r in batch]},
            )

            if result.failed:
                logger.warning(
                    "Upsert batch failed, falling back to single vectors | batch=%d/%d error=%s",
                    batch_no, total_batches, result.describe(),
                )
                report.fallback_batches += 1
                await self._upsert_one_by_one(batch, report)
            else:
                report.upserted += len(batch)
                logger.debug("Upsert batch ok | batch=%d/%d size=%d", batch_no, total_batches, len(batch))

            if batch_no < total_batches and self._batch_delay > 0:
                await asyncio.sleep(self._batch_delay)

        log = logger.info if report.ok else logger.error
        log(
            "Upsert done | attempted=%d upserted=%d failed=%d fallback_batches=%d",
            report.attempted, report.upserted, len(report.failed_ids), report.fallback_batches,
        )
        return report

    async def _upsert_one_by_one(self, batch: list[VectorRecord], report: UpsertReport) -> None:
        for record in batch:
            single = await self._call("POST", "/vectors/upsert", {"vectors": [record.to_wire()]})
            if single.failed:
                logger.error("Upsert vector failed | id=%s error=%s", record.id, single.describe())
                report.failed_ids.append(record.id)
            else:
                report.upserted += 1

    # ------------------------------------------------------------------
    # Query / delete / stats
    # ------------------------------------------------------------------

    async def query(
        self,
        vector: list[float],
        chatbot_id: str,
        top_k: int = 5,
    ) -> list[QueryMatch]:
        result = await self._call(
            "POST",
            "/query",
            {
                "vector": vector,
                "topK": top_k,
                "includeMetadata": True,
                "filter": {"chatbotId": {"$eq": str(chatbot_id)}},
            },
        )
        if result.failed:
            logger.error("Query failed | chatbot=%s error=%s", chatbot_id, result.describe())
            return []

        try:
            matches = (result.data or {}).get("matches") or []
            return [
                QueryMatch(
                    id=m["id"],
                    score=float(m.get("score", 0.0)),
                    metadata=m.get("metadata") or {},
                )
                for m in matches
            ]
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            logger.error("Query returned malformed matches | chatbot=%s error=%r", chatbot_id, exc)
            return []

    async def _filter_delete(self, key: str, value: str) -> bool:
        result = await self._call("POST", "/vectors/delete", {"filter": {key: {"$eq": str(value)}}})
        if result.failed:
            logger.error("Delete failed | %s=%s error=%s", key, value, result.describe())
            return False
        logger.info("Vectors deleted | %s=%s", key, value)
        return True

    async def delete_document_vectors(self, document_id: str) -> bool:
        return await self._filter_delete("documentId", document_id)

    async def delete_chatbot_vectors(self, chatbot_id: str) -> bool:
        return await self._filter_delete("chatbotId", chatbot_id)

    async def check_status(self) -> StoreStatus:
        result = await self._call("GET", "/describe_index_stats")
        if result.failed:
            return StoreStatus(
                is_connected=False,
                details=result.error or f"API error: {result.status} {result.status_text}",
            )
        return StoreStatus(
            is_connected=True,
            details="Successfully connected to Pinecone",
            stats=result.data,
        )

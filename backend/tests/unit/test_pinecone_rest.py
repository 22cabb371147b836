"""
Unit Tests — Pinecone REST client
══════════════════════════════════
Tests for:
  • upsert            — batching, per-vector fallback, partial failure report
  • _call             — JSON errors, HTML error pages, plain-text bodies,
                        transport errors, missing API key
  • query             — chatbot filter, empty list on failure
  • delete / status   — filter delete body, describe_index_stats

Every request goes through httpx.MockTransport — zero network calls.
"""

from __future__ import annotations

import json

import httpx
import pytest

from kb_ingest.vectorstore.base import VectorRecord
from kb_ingest.vectorstore.pinecone_rest import (
    PineconeRestStore,
    summarize_html_error,
    summarize_non_json,
)

BASE_URL = "https://test-index.svc.pinecone.io"

GATEWAY_PAGE = (
    "<!DOCTYPE html><html><head><title>502 Bad Gateway</title></head>"
    "<body><h1>Bad Gateway</h1><p>The upstream server returned an invalid response.</p></body></html>"
)


def _records(n: int, document_id: str = "doc-1") -> list[VectorRecord]:
    return [
        VectorRecord(
            id=f"{document_id}:{i}",
            vector=[0.1, 0.2, 0.3],
            metadata={"chatbotId": "bot-1", "documentId": document_id, "chunkIndex": i, "text": f"chunk {i}"},
        )
        for i in range(n)
    ]


def _store(handler, **kwargs) -> PineconeRestStore:
    kwargs.setdefault("batch_delay", 0)
    return PineconeRestStore(
        api_key=kwargs.pop("api_key", "pc-test"),
        base_url=BASE_URL,
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


# ─────────────────────────────────────────────────────────────────────────────
# Upsert
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestUpsert:

    async def test_batches_of_configured_size(self):
        sizes: list[int] = []

        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            sizes.append(len(body["vectors"]))
            return httpx.Response(200, json={"upsertedCount": len(body["vectors"])})

        report = await _store(handler, batch_size=20).upsert(_records(45))

        assert sizes == [20, 20, 5]
        assert report.ok
        assert report.upserted == 45

    async def test_failed_batch_falls_back_to_single_vectors(self):
        """Second batch is rejected whole; every vector then succeeds on its own."""
        calls: list[int] = []

        def handler(request: httpx.Request) -> httpx.Response:
            n = len(json.loads(request.content)["vectors"])
            calls.append(n)
            if len(calls) == 2:
                return httpx.Response(500, json={"message": "internal error"})
            return httpx.Response(200, json={"upsertedCount": n})

        report = await _store(handler, batch_size=20).upsert(_records(45))

        assert calls[:2] == [20, 20]
        assert calls[2:22] == [1] * 20
        assert calls[22:] == [5]
        assert report.ok
        assert report.upserted == 45
        assert report.fallback_batches == 1

    async def test_html_gateway_error_on_full_batch_recovers(self):
        """A proxy error page on a 20-vector batch; the 20 single upserts all land."""
        calls: list[int] = []

        def handler(request: httpx.Request) -> httpx.Response:
            n = len(json.loads(request.content)["vectors"])
            calls.append(n)
            if n > 1:
                return httpx.Response(500, text=GATEWAY_PAGE, headers={"content-type": "text/html"})
            return httpx.Response(200, json={"upsertedCount": 1})

        report = await _store(handler, batch_size=20).upsert(_records(20))

        assert calls == [20] + [1] * 20
        assert report.ok
        assert report.fallback_batches == 1

    async def test_single_vector_failures_are_reported(self):
        def handler(request: httpx.Request) -> httpx.Response:
            vectors = json.loads(request.content)["vectors"]
            if len(vectors) > 1 or vectors[0]["id"] == "doc-1:3":
                return httpx.Response(400, json={"message": "bad vector"})
            return httpx.Response(200, json={"upsertedCount": 1})

        report = await _store(handler, batch_size=5).upsert(_records(5))

        assert not report.ok
        assert report.failed_ids == ["doc-1:3"]
        assert report.upserted == 4

    async def test_wire_format(self):
        seen: dict = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["api_key"] = request.headers.get("Api-Key")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"upsertedCount": 1})

        await _store(handler).upsert(_records(1))

        assert seen["path"] == "/vectors/upsert"
        assert seen["api_key"] == "pc-test"
        assert seen["body"]["vectors"][0] == {
            "id": "doc-1:0",
            "values": [0.1, 0.2, 0.3],
            "metadata": {"chatbotId": "bot-1", "documentId": "doc-1", "chunkIndex": 0, "text": "chunk 0"},
        }


# ─────────────────────────────────────────────────────────────────────────────
# Response parsing
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestResponseParsing:

    async def test_html_error_page_is_summarized(self):
        def handler(request):
            return httpx.Response(502, text=GATEWAY_PAGE, headers={"content-type": "text/html"})

        result = await _store(handler)._call("GET", "/describe_index_stats")

        assert result.failed
        assert result.status == 502
        assert result.error == (
            "HTML response: 502 Bad Gateway - The upstream server returned an invalid response."
        )

    async def test_html_without_content_type_is_detected(self):
        def handler(request):
            return httpx.Response(200, content=GATEWAY_PAGE.encode(), headers={"content-type": ""})

        result = await _store(handler)._call("GET", "/describe_index_stats")

        assert result.error.startswith("HTML response: 502 Bad Gateway")

    async def test_plain_text_body(self):
        def handler(request):
            return httpx.Response(503, text="upstream connect error", headers={"content-type": "text/plain"})

        result = await _store(handler)._call("GET", "/describe_index_stats")

        assert result.error == "Non-JSON response: upstream connect error"

    async def test_json_error_uses_message_field(self):
        def handler(request):
            return httpx.Response(404, json={"code": 5, "message": "Index not found"})

        result = await _store(handler)._call("GET", "/describe_index_stats")

        assert result.error == "Index not found"

    async def test_json_error_without_message(self):
        def handler(request):
            return httpx.Response(429, json={"code": 8})

        result = await _store(handler)._call("GET", "/describe_index_stats")

        assert result.error == "API error: 429 Too Many Requests"

    async def test_transport_error_becomes_500(self):
        def handler(request):
            raise httpx.ConnectError("connection refused")

        result = await _store(handler)._call("GET", "/describe_index_stats")

        assert result.status == 500
        assert "connection refused" in result.error

    async def test_missing_api_key_makes_no_request(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json={})

        result = await _store(handler, api_key="")._call("GET", "/describe_index_stats")

        assert result.status == 401
        assert result.error == "API key is missing"
        assert calls == []

    def test_html_summary_without_title_or_paragraph(self):
        assert summarize_html_error("<html><body>oops</body></html>") == (
            "HTML response: Unknown error - <html><body>oops</body></html>"
        )

    def test_long_non_json_body_is_truncated(self):
        assert summarize_non_json("text/plain", "x" * 500) == "Non-JSON response: " + "x" * 100


# ─────────────────────────────────────────────────────────────────────────────
# Query, delete, status
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestQueryDeleteStatus:

    async def test_query_filters_by_chatbot(self):
        seen: dict = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"matches": [
                {"id": "doc-1:0", "score": 0.91, "metadata": {"text": "chunk 0", "documentId": "doc-1"}},
            ]})

        matches = await _store(handler).query([0.1, 0.2], "bot-1", top_k=3)

        assert seen["body"] == {
            "vector": [0.1, 0.2],
            "topK": 3,
            "includeMetadata": True,
            "filter": {"chatbotId": {"$eq": "bot-1"}},
        }
        assert len(matches) == 1
        assert matches[0].text == "chunk 0"
        assert matches[0].score == pytest.approx(0.91)

    async def test_query_failure_returns_empty_list(self):
        def handler(request):
            return httpx.Response(500, text="boom", headers={"content-type": "text/plain"})

        assert await _store(handler).query([0.1], "bot-1") == []

    @pytest.mark.parametrize("matches", [
        [{"score": 0.9}],
        [{"id": "doc-1:0", "score": None}],
        ["doc-1:0"],
    ])
    async def test_query_malformed_match_returns_empty_list(self, matches):
        def handler(request):
            return httpx.Response(200, json={"matches": matches})

        assert await _store(handler).query([0.1], "bot-1") == []

    async def test_delete_document_vectors_sends_filter(self):
        seen: dict = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={})

        assert await _store(handler).delete_document_vectors("doc-9") is True
        assert seen["path"] == "/vectors/delete"
        assert seen["body"] == {"filter": {"documentId": {"$eq": "doc-9"}}}

    async def test_delete_failure_returns_false(self):
        def handler(request):
            return httpx.Response(500, json={"message": "nope"})

        assert await _store(handler).delete_chatbot_vectors("bot-1") is False

    async def test_check_status_connected(self):
        def handler(request):
            assert request.method == "GET"
            return httpx.Response(200, json={"dimension": 1536, "totalVectorCount": 42})

        status = await _store(handler).check_status()

        assert status.is_connected
        assert status.details == "Successfully connected to Pinecone"
        assert status.stats["totalVectorCount"] == 42

    async def test_check_status_disconnected(self):
        def handler(request):
            return httpx.Response(403, json={"message": "Forbidden"})

        status = await _store(handler).check_status()

        assert not status.is_connected
        assert status.details == "Forbidden"

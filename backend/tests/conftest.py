"""
Root conftest.py — Shared fixtures for ALL tests (unit + integration)

Fixture hierarchy:
  session-scoped  : rsa key pair, test_jwks
  function-scoped : store, content, embedder, vector_store, processor,
                    pipeline, token payloads, app_with_overrides, async_client

Environment strategy:
  - No PostgreSQL, Redis, Pinecone or OpenAI is needed: the pipeline is
    assembled from the in-memory fakes in tests/fakes.py.
  - JWT tokens are built with a test RSA key — no live identity provider.
  - Dispatch runs in scan mode unless a test swaps in a queue dispatcher.

How to run:
  pytest                          # all tests
  pytest -m unit                  # unit tests only
  pytest -m integration           # API tests through the ASGI app
"""

from __future__ import annotations

import base64
import os
import time
import uuid
from datetime import timedelta
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from httpx import AsyncClient

# ─────────────────────────────────────────────────────────────────────────────
# Patch settings BEFORE any app imports so modules read test config
# ─────────────────────────────────────────────────────────────────────────────

os.environ.setdefault("DATABASE_URL",
    "postgresql+asyncpg://kb:kb@localhost:5432/kb_ingest_test")
os.environ.setdefault("OPENAI_API_KEY",        "sk-test-key")
os.environ.setdefault("PINECONE_API_KEY",      "pc-test-key")
os.environ.setdefault("PINECONE_INDEX_HOST",   "https://test-index.svc.pinecone.io")
os.environ.setdefault("CELERY_BROKER_URL",     "memory://")
os.environ.setdefault("CELERY_RESULT_BACKEND", "cache+memory://")
os.environ.setdefault("DISPATCH_MODE",         "scan")
os.environ.setdefault("APP_ENV",               "development")
os.environ.setdefault("CRON_SECRET",           "")
os.environ.setdefault("AUTH_ISSUER",   "https://test.auth.example.com/")
os.environ.setdefault("AUTH_AUDIENCE", "test-api-audience")

from tests.fakes import (  # noqa: E402
    TEACHER_SUB,
    FakeContentSource,
    FakeEmbedder,
    FakeVectorStore,
    InMemoryDocumentStore,
)

TEST_KID      = "test-key-id-2026"
TEST_ISSUER   = "https://test.auth.example.com/"
TEST_AUDIENCE = "test-api-audience"

SAMPLE_TEXT = (
    "Photosynthesis converts light energy into chemical energy.\n\n"
    "Chlorophyll absorbs mostly blue and red light. "
    "The light-dependent reactions happen in the thylakoid membranes.\n\n"
    "The Calvin cycle fixes carbon dioxide into sugars in the stroma."
)


# ─────────────────────────────────────────────────────────────────────────────
# RSA key pair for signing test JWTs (generated once per session)
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture(scope="session")
def rsa_private_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def rsa_private_key_pem(rsa_private_key) -> bytes:
    return rsa_private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )


@pytest.fixture(scope="session")
def test_jwks(rsa_private_key) -> dict:
    """What the provider's /.well-known/jwks.json would return."""
    numbers = rsa_private_key.public_key().public_numbers()

    def _b64url(n: int) -> str:
        length = (n.bit_length() + 7) // 8
        return base64.urlsafe_b64encode(n.to_bytes(length, "big")).rstrip(b"=").decode()

    return {
        "keys": [
            {
                "kty": "RSA",
                "use": "sig",
                "alg": "RS256",
                "kid": TEST_KID,
                "n":   _b64url(numbers.n),
                "e":   _b64url(numbers.e),
            }
        ]
    }


@pytest.fixture
def make_token(rsa_private_key_pem):
    """
    Factory fixture: returns a function that builds signed test JWTs.

        token = make_token(role="teacher")
        token = make_token(expired=True)
    """
    from jose import jwt as jose_jwt

    def _build(
        role:     str | None = "teacher",
        sub:      str = TEACHER_SUB,
        expired:  bool = False,
        audience: str = TEST_AUDIENCE,
        issuer:   str = TEST_ISSUER,
        kid:      str = TEST_KID,
    ) -> str:
        now = int(time.time())
        claims: dict = {
            "sub":   sub,
            "email": "teacher@school.example.com",
            "iss":   issuer,
            "aud":   audience,
            "exp":   now - 60 if expired else now + 3600,
            "iat":   now,
        }
        if role is not None:
            claims["custom:role"] = role
        return jose_jwt.encode(claims, rsa_private_key_pem, algorithm="RS256", headers={"kid": kid})

    return _build


# ─────────────────────────────────────────────────────────────────────────────
# TokenPayload fixtures
# ─────────────────────────────────────────────────────────────────────────────

def _payload(role: str, sub: str):
    from kb_ingest.auth.token import TokenPayload
    return TokenPayload(
        sub=sub,
        email=f"{role}@school.example.com",
        role=role,
        exp=int(time.time()) + 3600,
        iss=TEST_ISSUER,
    )


@pytest.fixture
def teacher_payload():
    return _payload("teacher", TEACHER_SUB)


@pytest.fixture
def admin_payload():
    return _payload("admin", "admin-0001")


@pytest.fixture
def student_payload():
    return _payload("student", "student-0001")


# ─────────────────────────────────────────────────────────────────────────────
# Pipeline collaborators
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def chatbot_id() -> uuid.UUID:
    return uuid.UUID("aaaaaaaa-aaaa-aaaa-aaaa-aaaaaaaaaaaa")


@pytest.fixture
def store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture
def content() -> FakeContentSource:
    return FakeContentSource(default_text=SAMPLE_TEXT)


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def vector_store() -> FakeVectorStore:
    return FakeVectorStore()


@pytest.fixture
def chunker():
    from kb_ingest.processing.chunking import TextChunker
    return TextChunker(chunk_size=80, chunk_overlap=10)


@pytest.fixture
def processor(store, content, chunker, embedder, vector_store):
    from kb_ingest.services.processor import DocumentProcessor
    return DocumentProcessor(
        store=store,
        content=content,
        chunker=chunker,
        embedder=embedder,
        vector_store=vector_store,
    )


@pytest.fixture
def pipeline(store, processor, embedder, vector_store):
    """Scan-mode Pipeline assembled from fakes; tests may swap `dispatch`."""
    from kb_ingest.core.config import get_settings
    from kb_ingest.services.diagnostics import DiagnosticsService
    from kb_ingest.services.dispatch import ScanDispatch
    from kb_ingest.services.manual import ManualProcessingService
    from kb_ingest.services.pipeline import Pipeline
    from kb_ingest.services.rate_limit import InMemoryCounterStore, RateLimiter
    from kb_ingest.services.reconciler import BatchReconciler
    from kb_ingest.services.retrieval import RetrievalService

    stuck = timedelta(minutes=10)
    dispatch = ScanDispatch(processor)
    counters = InMemoryCounterStore()
    return Pipeline(
        settings=get_settings(),
        store=store,
        processor=processor,
        reconciler=BatchReconciler(store=store, processor=processor, stuck_threshold=stuck),
        dispatch=dispatch,
        manual=ManualProcessingService(
            store=store, processor=processor, dispatch=dispatch, stuck_threshold=stuck,
        ),
        diagnostics=DiagnosticsService(
            store=store, dispatch=dispatch, stuck_threshold=stuck, max_retries=3,
        ),
        retrieval=RetrievalService(embedder=embedder, vector_store=vector_store),
        rate_limiter=RateLimiter(counters, limit=20, window_seconds=60),
        counters=counters,
        vector_store=vector_store,
        embedder=embedder,
    )


# ─────────────────────────────────────────────────────────────────────────────
# FastAPI test client with auth dependency override
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def app_with_overrides(pipeline, teacher_payload):
    """
    The real app with:
      - app.state.pipeline → fake-backed pipeline (lifespan is not run)
      - get_current_user   → teacher_payload (no JWT verification)

    Tests change the caller with app.dependency_overrides[get_current_user].
    """
    from kb_ingest.auth.token import get_current_user
    from kb_ingest.main import app

    app.state.pipeline = pipeline
    app.dependency_overrides[get_current_user] = lambda: teacher_payload

    yield app

    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def async_client(app_with_overrides) -> AsyncGenerator[AsyncClient, None]:
    from httpx import ASGITransport
    transport = ASGITransport(app=app_with_overrides)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

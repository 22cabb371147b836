"""
Vector Store Factory

The rest of the app only imports get_vector_store(); it never constructs
the REST client directly.
"""

from __future__ import annotations

from kb_ingest.core.config import Settings, settings
from kb_ingest.vectorstore.base import VectorStoreBase


def get_vector_store(cfg: Settings | None = None) -> VectorStoreBase:
    """Build the configured vector store (one per process)."""
    from kb_ingest.vectorstore.pinecone_rest import PineconeRestStore

    return PineconeRestStore.from_settings(cfg or settings)

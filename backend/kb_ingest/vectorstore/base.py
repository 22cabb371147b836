"""
Vector Store — Abstract Base

The processor, retrieval service and diagnostics only speak this
interface, so the REST client can be swapped for a fake in tests.

Scoping contract (enforced by ALL implementations):
  - Every vector carries chatbotId and documentId in its metadata.
  - Queries are always filtered to one chatbot.
  - Deletes are filter deletes by documentId or chatbotId; there is no
    unfiltered delete on this interface.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any


# ---------------------------------------------------------------------------
# Shared data types
# ---------------------------------------------------------------------------

@dataclass
class VectorRecord:
    """A single embedding record to upsert into the vector store."""
    id:       str               # deterministic: "<document_id>:<chunk_index>"
    vector:   list[float]
    metadata: dict[str, Any]
    # Required fields inside metadata:
    # - chatbotId: str
    # - documentId: str
    # - chunkIndex: int
    # - text: str
    # - fileName / fileType: str

    def to_wire(self) -> dict[str, Any]:
        return {"id": self.id, "values": self.vector, "metadata": self.metadata}


@dataclass
class QueryMatch:
    """One result returned from a similarity search."""
    id:       str
    score:    float
    metadata: dict[str, Any] = field(default_factory=dict)
    text:     str = ""   # convenience alias for metadata["text"]

    def __post_init__(self) -> None:
        if not self.text and "text" in self.metadata:
            self.text = self.metadata["text"]


@dataclass
class UpsertReport:
    """
    Outcome of upsert(). `upserted` counts vectors the remote index
    acknowledged, either in a batch call or in the per-vector fallback.
    """
    attempted:  int
    upserted:   int = 0
    failed_ids: list[str] = field(default_factory=list)
    fallback_batches: int = 0

    @property
    def ok(self) -> bool:
        return not self.failed_ids and self.upserted == self.attempted


@dataclass
class StoreStatus:
    is_connected: bool
    details:      str
    stats:        dict[str, Any] | None = None


# ---------------------------------------------------------------------------
# Abstract interface
# ---------------------------------------------------------------------------

class VectorStoreBase(ABC):

    @abstractmethod
    async def upsert(self, records: list[VectorRecord]) -> UpsertReport:
        """Insert or overwrite records. Never raises for remote failures."""

    @abstractmethod
    async def query(
        self,
        vector: list[float],
        chatbot_id: str,
        top_k: int = 5,
    ) -> list[QueryMatch]:
        """Nearest-neighbour search within one chatbot. Empty list on any error."""

    @abstractmethod
    async def delete_document_vectors(self, document_id: str) -> bool: ...

    @abstractmethod
    async def delete_chatbot_vectors(self, chatbot_id: str) -> bool: ...

    @abstractmethod
    async def check_status(self) -> StoreStatus: ...

    async def aclose(self) -> None:
        """Release network resources; no-op by default."""

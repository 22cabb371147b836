from kb_ingest.vectorstore.base import (
    QueryMatch,
    StoreStatus,
    UpsertReport,
    VectorRecord,
    VectorStoreBase,
)
from kb_ingest.vectorstore.factory import get_vector_store

__all__ = [
    "VectorStoreBase", "VectorRecord", "QueryMatch", "UpsertReport", "StoreStatus",
    "get_vector_store",
]

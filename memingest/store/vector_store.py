"""
Memingest Vector Store
----------------------
Qdrant-backed storage for embedded memories.
Point ids are the content-addressed memory ids, so upserts are idempotent.
"""

import logging
from pathlib import Path
from typing import Optional, List, Dict, Any, Sequence

from qdrant_client import QdrantClient
from qdrant_client.models import (
    Distance,
    VectorParams,
    PointStruct,
    PayloadSchemaType,
    Filter,
    FieldCondition,
    MatchValue,
)

from memingest.core.errors import VectorStoreError
from memingest.core.types import MemoryRecord

logger = logging.getLogger("Memingest.Vector")

DEFAULT_COLLECTION = "memingest_memories"
DEFAULT_DIMS = 768

PAYLOAD_INDEXES = {
    "persona_id": PayloadSchemaType.KEYWORD,
    "source_system_id": PayloadSchemaType.KEYWORD,
    "context_id": PayloadSchemaType.KEYWORD,
    "created_at": PayloadSchemaType.FLOAT,
}


class VectorStore:
    """Manages memory points in Qdrant (embedded local mode or remote)."""

    def __init__(
        self,
        data_path=None,
        collection_name: str = DEFAULT_COLLECTION,
        embedding_dims: int = DEFAULT_DIMS,
        url: Optional[str] = None,
        api_key: Optional[str] = None,
        on_disk: bool = True,
    ):
        if data_path is None and url is None:
            raise ValueError("VectorStore requires either data_path or url")
        self.data_path = Path(data_path) if data_path is not None else None
        self.url = url
        self.api_key = api_key
        self.collection_name = collection_name
        self.embedding_dims = embedding_dims
        self.on_disk = on_disk
        self._client: Optional[QdrantClient] = None
        self._initialize()

    def _get_client(self) -> QdrantClient:
        if self._client is None:
            if self.url:
                self._client = QdrantClient(url=self.url, api_key=self.api_key)
            else:
                self._client = QdrantClient(path=str(self.data_path))
        return self._client

    def _initialize(self):
        client = self._get_client()
        if not client.collection_exists(self.collection_name):
            client.create_collection(
                collection_name=self.collection_name,
                vectors_config=VectorParams(
                    size=self.embedding_dims,
                    distance=Distance.COSINE,
                    on_disk=self.on_disk,
                ),
            )
            # Local mode ignores payload indexes; remote servers use them for filtering.
            if self.url:
                for field_name, schema in PAYLOAD_INDEXES.items():
                    client.create_payload_index(
                        collection_name=self.collection_name,
                        field_name=field_name,
                        field_schema=schema,
                    )
            logger.info("Created vector collection '%s' (%d dims)", self.collection_name, self.embedding_dims)
        else:
            logger.info("Vector collection '%s' exists", self.collection_name)

    def _point(self, record: MemoryRecord) -> PointStruct:
        if record.embedding is None:
            raise VectorStoreError(f"Memory {record.id} has no embedding", operation="upsert")
        if len(record.embedding) != self.embedding_dims:
            raise VectorStoreError(
                f"Memory {record.id} embedding has {len(record.embedding)} dims, "
                f"collection expects {self.embedding_dims}",
                operation="upsert",
            )
        return PointStruct(id=record.id, vector=record.embedding, payload=record.payload())

    def upsert(self, record: MemoryRecord) -> str:
        """Insert or overwrite one memory point. Returns the point id."""
        return self.upsert_many([record])[0]

    def upsert_many(self, records: Sequence[MemoryRecord]) -> List[str]:
        points = [self._point(record) for record in records]
        if not points:
            return []
        try:
            self._get_client().upsert(collection_name=self.collection_name, points=points)
        except Exception as e:
            raise VectorStoreError(str(e), operation="upsert") from e
        return [str(point.id) for point in points]

    def exists(self, memory_id: str) -> bool:
        try:
            results = self._get_client().retrieve(
                collection_name=self.collection_name,
                ids=[memory_id],
                with_payload=False,
                with_vectors=False,
            )
        except Exception as e:
            raise VectorStoreError(str(e), operation="exists") from e
        return bool(results)

    def get_payload(self, memory_id: str) -> Optional[Dict[str, Any]]:
        results = self._get_client().retrieve(
            collection_name=self.collection_name,
            ids=[memory_id],
            with_payload=True,
        )
        if results:
            return dict(results[0].payload or {})
        return None

    def count(self, filters: Optional[Dict[str, str]] = None) -> int:
        client = self._get_client()
        count_filter = None
        if filters:
            count_filter = Filter(
                must=[
                    FieldCondition(key=key, match=MatchValue(value=value))
                    for key, value in filters.items()
                ]
            )
        return client.count(
            collection_name=self.collection_name,
            count_filter=count_filter,
            exact=True,
        ).count

    def close(self):
        if self._client:
            self._client.close()
            self._client = None

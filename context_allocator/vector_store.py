"""
Persistent search backend using ChromaDB.

Read-only from the allocator's point of view: the index is built and
maintained elsewhere. Chunks are expected to carry entity_id, domain,
title and start/end offsets in their metadata.
"""

import asyncio
import logging
from typing import Dict, List, Optional, Sequence

import chromadb
from chromadb.config import Settings as ChromaSettings

from .backends import SearchBackend
from .config import settings
from .embeddings import EmbeddingService, get_embedding_service
from .exceptions import BackendUnavailableError
from .schemas import SearchHit

logger = logging.getLogger(__name__)


def build_where(entities: Sequence[dict], domains: Sequence[str]) -> Optional[Dict]:
    """Translate entity/domain scoping into a Chroma metadata filter."""
    conditions = []
    entity_ids = [e["entity_id"] for e in entities if e.get("entity_id")]
    if entity_ids:
        conditions.append({"entity_id": {"$in": entity_ids}})
    if domains:
        conditions.append({"domain": {"$in": list(domains)}})

    if not conditions:
        return None
    if len(conditions) == 1:
        return conditions[0]
    return {"$and": conditions}


class ChromaSearchBackend(SearchBackend):
    """
    Search backend over a Chroma collection.

    Usage:
        backend = ChromaSearchBackend(path="./chroma_data")
        hits = await backend.search("payment terms", entities=[...], domains=["document"])
    """

    def __init__(
        self,
        path: str = None,
        collection_name: str = None,
        host: str = None,
        port: int = None,
        embedding_service: Optional[EmbeddingService] = None,
    ):
        self.path = path or settings.CHROMA_PATH
        self.collection_name = collection_name or settings.get_index_name()
        self.host = host or settings.CHROMA_HOST
        self.port = port or settings.CHROMA_PORT
        self._embedding_service = embedding_service

        self._client: Optional[chromadb.ClientAPI] = None
        self._collection = None

    @property
    def embedding_service(self) -> EmbeddingService:
        if self._embedding_service is None:
            self._embedding_service = get_embedding_service()
        return self._embedding_service

    @property
    def client(self) -> chromadb.ClientAPI:
        """Get or create Chroma client."""
        if self._client is None:
            if self.host:
                self._client = chromadb.HttpClient(host=self.host, port=self.port)
            else:
                self._client = chromadb.PersistentClient(
                    path=self.path, settings=ChromaSettings(anonymized_telemetry=False)
                )
        return self._client

    @property
    def collection(self):
        """Get or create collection."""
        if self._collection is None:
            self._collection = self.client.get_or_create_collection(
                name=self.collection_name,
                metadata={"hnsw:space": "cosine"},
            )
        return self._collection

    def _query(self, query: str, limit: int, where: Optional[Dict]) -> Dict:
        query_embedding = self.embedding_service.embed_query(query)
        return self.collection.query(
            query_embeddings=[query_embedding.tolist()],
            n_results=limit,
            where=where,
            include=["documents", "metadatas", "distances"],
        )

    async def search(
        self,
        query: str,
        entities: Sequence[dict],
        domains: Sequence[str],
        limit: int = 10,
        mode: str = "vector",
    ) -> List[SearchHit]:
        if mode != "vector":
            logger.debug(f"Chroma backend only supports vector search, got mode={mode}")

        where = build_where(entities, domains)
        try:
            results = await asyncio.to_thread(self._query, query, limit, where)
        except Exception as e:
            raise BackendUnavailableError(f"Chroma query failed: {e}") from e

        if not results["ids"] or not results["ids"][0]:
            return []

        hits = []
        for hit_id, text, meta, dist in zip(
            results["ids"][0],
            results["documents"][0],
            results["metadatas"][0],
            results["distances"][0],
        ):
            meta = meta or {}
            hits.append(
                SearchHit(
                    id=hit_id,
                    domain=meta.get("domain", ""),
                    title=meta.get("title"),
                    snippets=[text or ""],
                    # Cosine distance to similarity
                    score=1 - (dist / 2),
                    metadata=meta,
                )
            )

        return hits

    def count(self) -> int:
        """Get chunk count."""
        return self.collection.count()

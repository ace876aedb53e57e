from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Dict, List, Optional

import chromadb
from pydantic import BaseModel

from .settings import AppSettings, get_settings

logger = logging.getLogger(__name__)


class MetadataFilter(BaseModel):
    """Equality-style predicate on a chunk tag, evaluated by the index."""

    field: str
    operator: str = "eq"
    value: Any = None

    @classmethod
    def equals(cls, field: str, value: Any) -> "MetadataFilter":
        return cls(field=field, operator="eq", value=value)


@dataclass
class IndexEntry:
    id: str
    text: str
    vector: List[float]
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SearchHit:
    id: str
    text: str
    score: float
    metadata: Dict[str, Any] = field(default_factory=dict)


class VectorIndexBase(ABC):
    def __init__(self, collection_name: str) -> None:
        self.collection_name = collection_name

    @abstractmethod
    def upsert(self, entries: List[IndexEntry]) -> int:
        """Write all entries in one call; existing ids are overwritten."""

    @abstractmethod
    def query(
        self,
        embedding: List[float],
        *,
        k: int,
        filters: Optional[List[MetadataFilter]] = None,
    ) -> List[SearchHit]:
        """Return up to ``k`` nearest entries that satisfy every filter."""


_OP_MAP = {
    "eq": "$eq",
}


def _build_chroma_where(filters: Optional[List[MetadataFilter]]) -> Optional[Dict[str, Any]]:
    if not filters:
        return None
    clauses: List[Dict[str, Any]] = []
    for f in filters:
        chroma_op = _OP_MAP.get(f.operator)
        if chroma_op is None:
            raise ValueError(f"Unsupported filter operator: {f.operator!r}")
        clauses.append({f.field: {chroma_op: f.value}})
    if len(clauses) == 1:
        return clauses[0]
    return {"$and": clauses}


class ChromaVectorIndex(VectorIndexBase):
    """Chroma collection holding pre-computed chunk embeddings.

    Embeddings are always supplied by the caller, so the collection is
    created without an embedding function.
    """

    def __init__(self, collection_name: str, *, client=None) -> None:
        super().__init__(collection_name)
        self._client = client
        self._collection = self._client.get_or_create_collection(
            name=collection_name,
            embedding_function=None,
            metadata={"hnsw:space": "cosine"},
        )

    def upsert(self, entries: List[IndexEntry]) -> int:
        if not entries:
            return 0
        self._collection.upsert(
            ids=[e.id for e in entries],
            embeddings=[list(e.vector) for e in entries],
            documents=[e.text for e in entries],
            metadatas=[e.metadata for e in entries],
        )
        return len(entries)

    def query(
        self,
        embedding: List[float],
        *,
        k: int,
        filters: Optional[List[MetadataFilter]] = None,
    ) -> List[SearchHit]:
        results = self._collection.query(
            query_embeddings=[list(embedding)],
            n_results=k,
            where=_build_chroma_where(filters),
            include=["documents", "metadatas", "distances"],
        )
        ids = (results.get("ids") or [[]])[0]
        docs = (results.get("documents") or [[]])[0]
        metas = (results.get("metadatas") or [[]])[0]
        distances = (results.get("distances") or [[]])[0]
        hits: List[SearchHit] = []
        for hit_id, text, meta, dist in zip(ids, docs, metas, distances):
            # cosine distance -> similarity
            hits.append(SearchHit(id=hit_id, text=text or "", score=1.0 - float(dist), metadata=meta or {}))
        return hits


def build_vector_index(settings: Optional[AppSettings] = None) -> VectorIndexBase:
    settings = settings or get_settings()
    if settings.chroma_host:
        client = chromadb.HttpClient(host=settings.chroma_host, port=settings.chroma_port)
    else:
        client = chromadb.PersistentClient(path=settings.chroma_path)
    logger.info(
        "vector index ready collection=%s backend=%s",
        settings.chroma_collection,
        "http" if settings.chroma_host else "persistent",
    )
    return ChromaVectorIndex(settings.chroma_collection, client=client)


@lru_cache(maxsize=1)
def get_vector_index() -> VectorIndexBase:
    return build_vector_index()

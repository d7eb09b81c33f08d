"""Vector index contract and concrete adapters."""

from __future__ import annotations

import uuid
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol

from langchain_core.embeddings import Embeddings
from langchain_core.vectorstores import VectorStore

from advisor_pipeline.retrieval.embedder import HashingEmbedder, cosine_similarity
from advisor_pipeline.types import RetrievedDocument


class VectorIndex(Protocol):
    """Similarity search over an external document index."""

    async def search(
        self, query_text: str, top_k: int, similarity_threshold: float
    ) -> list[RetrievedDocument]:
        """Return up to ``top_k`` hits scoring at least ``similarity_threshold``."""


@dataclass(slots=True)
class _StoredVector:
    source_id: str
    text: str
    embedding: list[float]


class InMemoryVectorIndex:
    """Deterministic index used for tests and local prototyping."""

    def __init__(self, embedder: Embeddings | None = None) -> None:
        self.embedder = embedder or HashingEmbedder()
        self._store: dict[str, _StoredVector] = {}

    def add(self, texts: Sequence[str], source_ids: Sequence[str] | None = None) -> list[str]:
        ids = list(source_ids) if source_ids is not None else [str(uuid.uuid4()) for _ in texts]
        if len(ids) != len(texts):
            raise ValueError("texts and source_ids must have the same length")
        embeddings = self.embedder.embed_documents(list(texts))
        for source_id, text, embedding in zip(ids, texts, embeddings, strict=True):
            self._store[source_id] = _StoredVector(source_id, text, embedding)
        return ids

    async def search(
        self, query_text: str, top_k: int, similarity_threshold: float
    ) -> list[RetrievedDocument]:
        query_embedding = self.embedder.embed_query(query_text)
        scored = (
            RetrievedDocument(
                text=record.text,
                score=_clamp(cosine_similarity(query_embedding, record.embedding)),
                source_id=record.source_id,
            )
            for record in self._store.values()
        )
        ranked = sorted(
            (doc for doc in scored if doc.score >= similarity_threshold),
            key=lambda doc: doc.score,
            reverse=True,
        )
        return ranked[:top_k]


class LangChainVectorIndex:
    """Adapter for any langchain-core ``VectorStore`` reporting similarity scores.

    Stores whose ``similarity_search_with_score`` returns distances (lower is
    better) must be wrapped so that higher means more similar.
    """

    def __init__(self, store: VectorStore, *, source_key: str = "source") -> None:
        self.store = store
        self.source_key = source_key

    async def search(
        self, query_text: str, top_k: int, similarity_threshold: float
    ) -> list[RetrievedDocument]:
        hits = await self.store.asimilarity_search_with_score(query_text, k=top_k)
        documents = [
            RetrievedDocument(
                text=document.page_content,
                score=_clamp(float(score)),
                source_id=str(document.metadata.get(self.source_key) or document.id or ""),
            )
            for document, score in hits
        ]
        return [doc for doc in documents if doc.score >= similarity_threshold]


def _clamp(score: float) -> float:
    return min(1.0, max(0.0, score))

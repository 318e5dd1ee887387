"""Retrieval module for the policy RAG pipeline.

This module provides:
- cosine_similarity: similarity of two vectors, rejecting undefined cases
- rank_by_cosine: score and order candidate records against a query vector
- SimilarityRetriever: embed a query and return the top-k chunks of a corpus
"""

from collections.abc import Sequence

import numpy as np
from loguru import logger

from policy_rag.core.config import DEFAULT_EMBEDDING_MODEL, RetrievalConfig
from policy_rag.core.exceptions import DimensionMismatch, InvalidVector
from policy_rag.pipeline.documents import DocumentRepository
from policy_rag.pipeline.models import EmbeddingRecord, ScoredRecord
from policy_rag.pipeline.orchestrator import Embedder
from policy_rag.pipeline.store import VectorStore


def _as_vector(
    vector: Sequence[float], label: str = "Query"
) -> tuple[np.ndarray, float]:
    array = np.asarray(vector, dtype=np.float64)
    if array.ndim != 1 or array.size == 0:
        raise InvalidVector(f"{label} vector is empty")
    norm = float(np.linalg.norm(array))
    if norm == 0.0:
        raise InvalidVector(f"{label} vector has zero norm")
    return array, norm


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity of two equal-length, non-zero vectors.

    Raises:
        DimensionMismatch: If the vectors differ in length
        InvalidVector: If either vector is empty or all zeros
    """
    if len(a) != len(b):
        raise DimensionMismatch(len(a), len(b))
    left, left_norm = _as_vector(a, "First")
    right, right_norm = _as_vector(b, "Second")
    return float(np.dot(left, right) / (left_norm * right_norm))


def rank_by_cosine(
    query_vector: Sequence[float],
    candidates: Sequence[EmbeddingRecord],
    k: int,
) -> list[ScoredRecord]:
    """Return the ``k`` candidates most similar to ``query_vector``.

    Scores sort descending; equal scores keep ``(document_id, chunk_index)``
    ascending so results are reproducible.
    """
    if k < 1:
        raise ValueError(f"k must be at least 1, got {k}")
    if not candidates:
        return []

    query, query_norm = _as_vector(query_vector)
    dimensions = query.size
    for record in candidates:
        if record.dimensions != dimensions:
            raise DimensionMismatch(
                dimensions,
                record.dimensions,
                {"document_id": record.document_id, "chunk_index": record.chunk_index},
            )

    matrix = np.asarray([record.vector for record in candidates], dtype=np.float64)
    norms = np.linalg.norm(matrix, axis=1)
    zero = np.flatnonzero(norms == 0.0)
    if zero.size:
        record = candidates[int(zero[0])]
        raise InvalidVector(
            "Stored vector has zero norm",
            {"document_id": record.document_id, "chunk_index": record.chunk_index},
        )

    scores = (matrix @ query) / (norms * query_norm)
    order = sorted(
        range(len(candidates)),
        key=lambda i: (-scores[i], candidates[i].document_id, candidates[i].chunk_index),
    )
    return [ScoredRecord(record=candidates[i], score=float(scores[i])) for i in order[:k]]


class SimilarityRetriever:
    """Ranks a corpus scope's stored chunks against a natural-language query."""

    def __init__(
        self,
        client: Embedder,
        store: VectorStore,
        documents: DocumentRepository,
        config: RetrievalConfig | None = None,
        default_model: str = DEFAULT_EMBEDDING_MODEL,
    ) -> None:
        self._client = client
        self._store = store
        self._documents = documents
        self._config = config or RetrievalConfig()
        self._default_model = default_model

    async def query(
        self,
        query_text: str,
        corpus_scope: str | None = None,
        k: int | None = None,
        model: str | None = None,
    ) -> list[ScoredRecord]:
        """Return up to ``k`` records of ``corpus_scope`` ranked by similarity.

        Only records embedded with the query's model are ranked; records from
        other models are skipped with a warning. An empty scope, or one with
        no records from that model, yields an empty list without embedding
        the query. Embedding and dimensionality errors propagate to the
        caller without retry.
        """
        k = self._config.top_k if k is None else k
        if k < 1:
            raise ValueError(f"k must be at least 1, got {k}")
        scope = corpus_scope or self._config.default_scope
        model = model or self._default_model

        document_ids = await self._documents.list_document_ids(scope)
        records = await self._store.get_by_documents(document_ids)
        candidates = [record for record in records if record.model == model]
        skipped = {record.model for record in records if record.model != model}
        if skipped:
            logger.warning(
                "Skipping {} chunks in scope {} embedded with {}; querying with {}",
                len(records) - len(candidates),
                scope,
                sorted(skipped),
                model,
            )
        if not candidates:
            logger.info("No chunks embedded with {} in scope {}", model, scope)
            return []

        query_vector = await self._client.embed(query_text, model)
        results = rank_by_cosine(query_vector, candidates, k)

        threshold = self._config.similarity_threshold
        if threshold is not None:
            results = [result for result in results if result.score >= threshold]

        logger.info(
            "Query returned {} of {} candidates in scope {}",
            len(results),
            len(candidates),
            scope,
        )
        return results

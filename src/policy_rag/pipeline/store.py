"""Vector store for embedding records.

Records are keyed by ``(document_id, chunk_index)`` and are insert-only:
there is no update path, and a duplicate key raises ``DuplicateRecord``.
Deleting a document's records is all-or-nothing.

Two backends are provided:
- InMemoryVectorStore: process-local, used for development and tests
- PostgresVectorStore: asyncpg over the ``document_embeddings`` table
"""

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Iterable

import asyncpg
from loguru import logger

from policy_rag.core.config import StoreConfig
from policy_rag.core.database import get_db_connection
from policy_rag.core.exceptions import DuplicateRecord
from policy_rag.pipeline.models import EmbeddingRecord


class VectorStore(ABC):
    """Durable keyed storage of embedding records."""

    @abstractmethod
    async def put(self, record: EmbeddingRecord) -> None:
        """Insert a record; raise DuplicateRecord if its key exists."""

    @abstractmethod
    async def get_by_document(self, document_id: str) -> list[EmbeddingRecord]:
        """Return a document's records ordered by chunk index."""

    @abstractmethod
    async def delete_by_document(self, document_id: str) -> int:
        """Remove every record of a document atomically; return the count."""

    async def get_by_documents(
        self, document_ids: Iterable[str]
    ) -> list[EmbeddingRecord]:
        """Return the records of several documents, grouped per document."""
        records: list[EmbeddingRecord] = []
        for document_id in document_ids:
            records.extend(await self.get_by_document(document_id))
        return records

    async def count(self, document_id: str) -> int:  # noqa: D102
        return len(await self.get_by_document(document_id))


class InMemoryVectorStore(VectorStore):
    """Dictionary-backed store.

    Each operation completes without yielding to the event loop, so readers
    never observe a half-deleted document.
    """

    def __init__(self) -> None:
        self._records: dict[str, dict[int, EmbeddingRecord]] = {}

    async def put(self, record: EmbeddingRecord) -> None:  # noqa: D102
        chunks = self._records.setdefault(record.document_id, {})
        if record.chunk_index in chunks:
            raise DuplicateRecord(record.document_id, record.chunk_index)
        chunks[record.chunk_index] = record

    async def get_by_document(self, document_id: str) -> list[EmbeddingRecord]:  # noqa: D102
        chunks = self._records.get(document_id, {})
        return [chunks[index] for index in sorted(chunks)]

    async def delete_by_document(self, document_id: str) -> int:  # noqa: D102
        removed = self._records.pop(document_id, {})
        return len(removed)

    async def count(self, document_id: str) -> int:  # noqa: D102
        return len(self._records.get(document_id, {}))


def _record_from_row(row: asyncpg.Record) -> EmbeddingRecord:
    return EmbeddingRecord(
        document_id=row["document_id"],
        chunk_index=row["chunk_index"],
        text=row["content"],
        vector=tuple(row["embedding"]),
        model=row["model"],
        created_at=row["created_at"],
    )


class PostgresVectorStore(VectorStore):
    """Embedding records in PostgreSQL.

    Uniqueness is enforced by the table's primary key; vectors are stored as
    ``DOUBLE PRECISION[]`` so they read back bit-for-bit.
    """

    def __init__(
        self,
        connect: Callable[[], Awaitable[asyncpg.Connection]] = get_db_connection,
    ) -> None:
        self._connect = connect

    async def put(self, record: EmbeddingRecord) -> None:  # noqa: D102
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO document_embeddings
                    (document_id, chunk_index, content, embedding, model, created_at)
                VALUES ($1, $2, $3, $4, $5, $6)
            """,
                record.document_id,
                record.chunk_index,
                record.text,
                list(record.vector),
                record.model,
                record.created_at,
            )
        except asyncpg.UniqueViolationError as e:
            raise DuplicateRecord(record.document_id, record.chunk_index) from e
        finally:
            await conn.close()

    async def get_by_document(self, document_id: str) -> list[EmbeddingRecord]:  # noqa: D102
        return await self.get_by_documents([document_id])

    async def get_by_documents(
        self, document_ids: Iterable[str]
    ) -> list[EmbeddingRecord]:
        """Fetch the records of several documents in one query."""
        ids = list(document_ids)
        if not ids:
            return []
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                """
                SELECT document_id, chunk_index, content, embedding, model, created_at
                FROM document_embeddings
                WHERE document_id = ANY($1::text[])
                ORDER BY document_id, chunk_index;
            """,
                ids,
            )
        finally:
            await conn.close()
        return [_record_from_row(row) for row in rows]

    async def delete_by_document(self, document_id: str) -> int:  # noqa: D102
        conn = await self._connect()
        try:
            async with conn.transaction():
                status = await conn.execute(
                    "DELETE FROM document_embeddings WHERE document_id = $1",
                    document_id,
                )
        finally:
            await conn.close()
        # asyncpg returns the command tag, e.g. "DELETE 5".
        removed = int(status.split()[-1])
        logger.debug("Deleted {} embedding records for {}", removed, document_id)
        return removed

    async def count(self, document_id: str) -> int:  # noqa: D102
        conn = await self._connect()
        try:
            value = await conn.fetchval(
                "SELECT COUNT(*) FROM document_embeddings WHERE document_id = $1",
                document_id,
            )
        finally:
            await conn.close()
        return int(value)


def create_vector_store(config: StoreConfig) -> VectorStore:
    """Factory for the configured vector store backend.

    Raises:
        ValueError: If the backend name is unknown
    """
    backend = config.backend.lower()
    if backend == "memory":
        logger.info("Using in-memory vector store")
        return InMemoryVectorStore()
    if backend == "postgres":
        logger.info("Using PostgreSQL vector store")
        return PostgresVectorStore()
    raise ValueError(
        f"Invalid store backend: {config.backend}. Must be 'memory' or 'postgres'."
    )

"""Boundary to the document ingestion collaborator.

The pipeline reads documents' embedding status, writes it back when a run
finishes, and asks which documents belong to a corpus scope. Documents
themselves are created elsewhere.
"""

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from datetime import datetime

import asyncpg
from loguru import logger

from policy_rag.core.config import StoreConfig
from policy_rag.core.database import get_db_connection
from policy_rag.core.exceptions import DocumentNotFound
from policy_rag.pipeline.models import Document, DocumentSummary, EmbeddingStatus


class DocumentRepository(ABC):
    """Document status and scope lookups used by the pipeline."""

    @abstractmethod
    async def add(self, document: Document) -> Document:
        """Register or replace a document."""

    @abstractmethod
    async def get_status(self, document_id: str) -> EmbeddingStatus:
        """Return the document's embedding status or raise DocumentNotFound."""

    @abstractmethod
    async def update_embedding_status(
        self,
        document_id: str,
        status: EmbeddingStatus,
        embedded_at: datetime | None = None,
    ) -> None:
        """Move the document to ``status``; reject illegal transitions."""

    @abstractmethod
    async def list_document_ids(self, scope: str) -> list[str]:
        """Return the ids of documents inside a corpus scope."""

    @abstractmethod
    async def list_documents(
        self, scope: str, embedded_ids: set[str] | None = None
    ) -> list[DocumentSummary]:
        """Return listing rows for a scope; ``embedded_ids`` marks stored records."""

    @abstractmethod
    async def delete(self, document_id: str) -> None:
        """Remove the document itself."""


class InMemoryDocumentRepository(DocumentRepository):
    """Process-local document registry."""

    def __init__(self, documents: list[Document] | None = None) -> None:
        self._documents: dict[str, Document] = {
            document.document_id: document for document in documents or []
        }

    async def add(self, document: Document) -> Document:
        """Insert or replace a document; a replacement keeps its embedding status."""
        existing = self._documents.get(document.document_id)
        if existing is not None:
            document = document.model_copy(
                update={
                    "embedding_status": existing.embedding_status,
                    "embedded_at": existing.embedded_at,
                }
            )
        self._documents[document.document_id] = document
        return document

    def get(self, document_id: str) -> Document:  # noqa: D102
        try:
            return self._documents[document_id]
        except KeyError:
            raise DocumentNotFound(document_id) from None

    async def get_status(self, document_id: str) -> EmbeddingStatus:  # noqa: D102
        return self.get(document_id).embedding_status

    async def update_embedding_status(  # noqa: D102
        self,
        document_id: str,
        status: EmbeddingStatus,
        embedded_at: datetime | None = None,
    ) -> None:
        document = self.get(document_id)
        document.embedding_status.ensure_transition(status)
        update: dict = {"embedding_status": status}
        if status.is_terminal:
            update["embedded_at"] = (
                embedded_at if status is EmbeddingStatus.COMPLETED else None
            )
        self._documents[document_id] = document.model_copy(update=update)

    async def list_document_ids(self, scope: str) -> list[str]:  # noqa: D102
        return [
            document.document_id
            for document in self._documents.values()
            if document.organization_id == scope
        ]

    async def list_documents(  # noqa: D102
        self, scope: str, embedded_ids: set[str] | None = None
    ) -> list[DocumentSummary]:
        embedded_ids = embedded_ids or set()
        return [
            DocumentSummary(
                document_id=document.document_id,
                name=document.name,
                type=document.type,
                uploaded_at=document.uploaded_at,
                embedding_status=document.embedding_status,
                embedded_at=document.embedded_at,
                has_embeddings=document.document_id in embedded_ids,
            )
            for document in self._documents.values()
            if document.organization_id == scope
        ]

    async def delete(self, document_id: str) -> None:  # noqa: D102
        self._documents.pop(document_id, None)


class PostgresDocumentRepository(DocumentRepository):
    """Documents table accessed through asyncpg."""

    def __init__(
        self,
        connect: Callable[[], Awaitable[asyncpg.Connection]] = get_db_connection,
    ) -> None:
        self._connect = connect

    async def add(self, document: Document) -> Document:
        """Insert or replace a document row."""
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO documents
                    (document_id, name, organization_id, type, content,
                     uploaded_at, embedding_status, embedded_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                ON CONFLICT (document_id) DO UPDATE
                SET name = EXCLUDED.name,
                    organization_id = EXCLUDED.organization_id,
                    type = EXCLUDED.type,
                    content = EXCLUDED.content
            """,
                document.document_id,
                document.name,
                document.organization_id,
                document.type,
                document.content,
                document.uploaded_at,
                document.embedding_status.value,
                document.embedded_at,
            )
        finally:
            await conn.close()
        return document

    async def get_status(self, document_id: str) -> EmbeddingStatus:  # noqa: D102
        conn = await self._connect()
        try:
            value = await conn.fetchval(
                "SELECT embedding_status FROM documents WHERE document_id = $1",
                document_id,
            )
        finally:
            await conn.close()
        if value is None:
            raise DocumentNotFound(document_id)
        return EmbeddingStatus(value)

    async def update_embedding_status(  # noqa: D102
        self,
        document_id: str,
        status: EmbeddingStatus,
        embedded_at: datetime | None = None,
    ) -> None:
        conn = await self._connect()
        try:
            async with conn.transaction():
                current = await conn.fetchval(
                    """
                    SELECT embedding_status FROM documents
                    WHERE document_id = $1 FOR UPDATE
                """,
                    document_id,
                )
                if current is None:
                    raise DocumentNotFound(document_id)
                EmbeddingStatus(current).ensure_transition(status)
                if status.is_terminal:
                    await conn.execute(
                        """
                        UPDATE documents
                        SET embedding_status = $2, embedded_at = $3
                        WHERE document_id = $1
                    """,
                        document_id,
                        status.value,
                        embedded_at if status is EmbeddingStatus.COMPLETED else None,
                    )
                else:
                    await conn.execute(
                        "UPDATE documents SET embedding_status = $2 WHERE document_id = $1",
                        document_id,
                        status.value,
                    )
        finally:
            await conn.close()
        logger.debug("Document {} embedding status -> {}", document_id, status.value)

    async def list_document_ids(self, scope: str) -> list[str]:  # noqa: D102
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                """
                SELECT document_id FROM documents
                WHERE organization_id = $1
                ORDER BY document_id
            """,
                scope,
            )
        finally:
            await conn.close()
        return [row["document_id"] for row in rows]

    async def list_documents(  # noqa: D102
        self, scope: str, embedded_ids: set[str] | None = None
    ) -> list[DocumentSummary]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                """
                SELECT d.document_id, d.name, d.type, d.uploaded_at,
                       d.embedding_status, d.embedded_at,
                       EXISTS (
                           SELECT 1 FROM document_embeddings e
                           WHERE e.document_id = d.document_id
                       ) AS has_embeddings
                FROM documents d
                WHERE d.organization_id = $1
                ORDER BY d.uploaded_at
            """,
                scope,
            )
        finally:
            await conn.close()
        return [
            DocumentSummary(
                document_id=row["document_id"],
                name=row["name"],
                type=row["type"],
                uploaded_at=row["uploaded_at"],
                embedding_status=EmbeddingStatus(row["embedding_status"]),
                embedded_at=row["embedded_at"],
                has_embeddings=row["has_embeddings"],
            )
            for row in rows
        ]

    async def delete(self, document_id: str) -> None:  # noqa: D102
        conn = await self._connect()
        try:
            await conn.execute(
                "DELETE FROM documents WHERE document_id = $1", document_id
            )
        finally:
            await conn.close()


def create_document_repository(config: StoreConfig) -> DocumentRepository:
    """Factory for the document backend matching the vector store backend."""
    backend = config.backend.lower()
    if backend == "memory":
        return InMemoryDocumentRepository()
    if backend == "postgres":
        return PostgresDocumentRepository()
    raise ValueError(
        f"Invalid store backend: {config.backend}. Must be 'memory' or 'postgres'."
    )

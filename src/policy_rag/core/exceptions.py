"""Exception hierarchy for the policy RAG pipeline.

Every error carries a human-readable message plus a ``details`` dictionary
with the identifiers needed to trace it in the logs.
"""

from typing import Any


class PolicyRagError(Exception):
    """Base exception for all pipeline errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        """Return string representation including details."""
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ChunkingProducedNoUnits(PolicyRagError):
    """Raised when a document's text yields no chunk worth embedding."""

    def __init__(self, document_id: str) -> None:
        super().__init__(
            f"Document {document_id} produced no chunks to embed",
            {"document_id": document_id},
        )


class EmbeddingUnavailable(PolicyRagError):
    """Raised when the inference service cannot produce a usable vector."""

    def __init__(self, message: str, model: str, details: dict[str, Any] | None = None) -> None:
        details = details or {}
        details["model"] = model
        super().__init__(message, details)


class AllChunksFailed(PolicyRagError):
    """Raised when every chunk of a non-empty document failed to embed."""

    def __init__(self, document_id: str, total: int) -> None:
        super().__init__(
            f"All {total} chunks of document {document_id} failed to embed",
            {"document_id": document_id, "total": total},
        )


class DuplicateRecord(PolicyRagError):
    """Raised when an embedding record already exists for a chunk."""

    def __init__(self, document_id: str, chunk_index: int) -> None:
        super().__init__(
            f"Embedding record already exists for {document_id}#{chunk_index}",
            {"document_id": document_id, "chunk_index": chunk_index},
        )


class DimensionMismatch(PolicyRagError):
    """Raised when two vectors compared together differ in length."""

    def __init__(self, expected: int, actual: int, details: dict[str, Any] | None = None) -> None:
        details = details or {}
        details.update({"expected": expected, "actual": actual})
        super().__init__(
            f"Vector dimensionality mismatch: expected {expected}, got {actual}",
            details,
        )


class InvalidVector(PolicyRagError):
    """Raised when a vector has no direction (empty or all zeros)."""


class EmbeddingAlreadyRunning(PolicyRagError):
    """Raised when a second run is requested for a document being embedded."""

    def __init__(self, document_id: str) -> None:
        super().__init__(
            f"An embedding run is already active for document {document_id}",
            {"document_id": document_id},
        )


class InvalidStatusTransition(PolicyRagError):
    """Raised when an embedding status change is not allowed."""

    def __init__(self, current: str, target: str) -> None:
        super().__init__(
            f"Cannot move embedding status from {current} to {target}",
            {"current": current, "target": target},
        )


class DocumentNotFound(PolicyRagError):
    """Raised when the document collaborator does not know a document."""

    def __init__(self, document_id: str) -> None:
        super().__init__(
            f"Document not found: {document_id}", {"document_id": document_id}
        )

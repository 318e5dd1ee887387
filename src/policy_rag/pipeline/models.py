"""Data model for the embedding and retrieval pipeline.

This module defines:
- EmbeddingStatus: the closed set of per-document embedding states
- Chunk: a retrievable span of document text, before embedding
- EmbeddingRecord: the persisted (chunk, vector) unit
- JobState: counters for an active embedding run
- EmbeddingOutcome: the result of a finished run
- ScoredRecord: a ranked retrieval hit
- Document / DocumentSummary: the document collaborator's view
"""

import enum
from dataclasses import dataclass, field
from datetime import UTC, datetime

from pydantic import BaseModel, ConfigDict, Field

from policy_rag.core.config import DEFAULT_SCOPE
from policy_rag.core.exceptions import InvalidStatusTransition, PolicyRagError


def utc_now() -> datetime:  # noqa: D103
    return datetime.now(UTC)


class EmbeddingStatus(str, enum.Enum):
    """Embedding lifecycle of a document.

    NOT_STARTED: no run has been requested
    PENDING: a background run is queued, waiting for a job slot
    PROCESSING: chunks are being embedded
    COMPLETED: at least one chunk is searchable
    FAILED: no content, every chunk failed, or the run was cancelled
    """

    NOT_STARTED = "not_started"
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    def can_transition_to(self, target: "EmbeddingStatus") -> bool:
        """Return True when moving from this status to ``target`` is allowed."""
        return target in _TRANSITIONS[self]

    def ensure_transition(self, target: "EmbeddingStatus") -> None:
        """Raise InvalidStatusTransition unless ``target`` is reachable."""
        if not self.can_transition_to(target):
            raise InvalidStatusTransition(self.value, target.value)

    @property
    def is_terminal(self) -> bool:  # noqa: D102
        return self in (EmbeddingStatus.COMPLETED, EmbeddingStatus.FAILED)


_TRANSITIONS: dict[EmbeddingStatus, frozenset[EmbeddingStatus]] = {
    EmbeddingStatus.NOT_STARTED: frozenset(
        {EmbeddingStatus.PENDING, EmbeddingStatus.PROCESSING}
    ),
    EmbeddingStatus.PENDING: frozenset(
        {EmbeddingStatus.PROCESSING, EmbeddingStatus.FAILED}
    ),
    EmbeddingStatus.PROCESSING: frozenset(
        {EmbeddingStatus.COMPLETED, EmbeddingStatus.FAILED}
    ),
    EmbeddingStatus.COMPLETED: frozenset(
        {EmbeddingStatus.PENDING, EmbeddingStatus.PROCESSING}
    ),
    EmbeddingStatus.FAILED: frozenset(
        {EmbeddingStatus.PENDING, EmbeddingStatus.PROCESSING}
    ),
}


class FailureReason(str, enum.Enum):
    """Why a run ended in FAILED."""

    NO_CHUNKS = "no_chunks"
    ALL_CHUNKS_FAILED = "all_chunks_failed"


@dataclass(frozen=True)
class Chunk:
    """A trimmed paragraph of a document, identified by its filtered position."""

    document_id: str
    chunk_index: int
    text: str
    created_at: datetime = field(default_factory=utc_now, compare=False)


class EmbeddingRecord(BaseModel):
    """Persisted embedding of one chunk. Never mutated, only deleted."""

    model_config = ConfigDict(frozen=True)

    document_id: str
    chunk_index: int = Field(ge=0)
    text: str
    vector: tuple[float, ...]
    model: str
    created_at: datetime = Field(default_factory=utc_now)

    @property
    def key(self) -> tuple[str, int]:  # noqa: D102
        return (self.document_id, self.chunk_index)

    @property
    def dimensions(self) -> int:  # noqa: D102
        return len(self.vector)


@dataclass
class JobState:
    """Chunk counters for a run in progress."""

    total: int = 0
    succeeded: int = 0
    failed: int = 0

    @property
    def pending(self) -> int:  # noqa: D102
        return self.total - self.succeeded - self.failed


@dataclass
class EmbeddingOutcome:
    """Result of an embedding run, reported back to the triggering caller.

    ``degraded`` marks a COMPLETED run that lost some chunks; ``error`` holds
    the aggregate failure for FAILED runs.
    """

    document_id: str
    model: str
    status: EmbeddingStatus
    total_chunks: int = 0
    succeeded: int = 0
    failed: int = 0
    failure_reason: FailureReason | None = None
    error: PolicyRagError | None = None
    embedded_at: datetime | None = None

    @property
    def degraded(self) -> bool:  # noqa: D102
        return self.status is EmbeddingStatus.COMPLETED and self.failed > 0

    def raise_for_status(self) -> None:
        """Raise the aggregate error when the run failed."""
        if self.error is not None:
            raise self.error


@dataclass(frozen=True)
class ScoredRecord:
    """A retrieval hit and its cosine similarity to the query."""

    record: EmbeddingRecord
    score: float


class Document(BaseModel):
    """A document as known to the ingestion collaborator."""

    document_id: str
    name: str = ""
    organization_id: str = DEFAULT_SCOPE
    type: str | None = None
    content: str = ""
    uploaded_at: datetime = Field(default_factory=utc_now)
    embedding_status: EmbeddingStatus = EmbeddingStatus.NOT_STARTED
    embedded_at: datetime | None = None


class DocumentSummary(BaseModel):
    """Listing view of a document, without its content."""

    document_id: str
    name: str
    type: str | None = None
    uploaded_at: datetime
    embedding_status: EmbeddingStatus
    embedded_at: datetime | None = None
    has_embeddings: bool = False

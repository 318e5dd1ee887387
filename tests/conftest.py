"""
Shared test fixtures for the pipeline test suite.

Provides: a deterministic fake embedder with scripted failures, in-memory
stores, a status-recording document repository, zero-backoff configuration.
"""

import asyncio
import hashlib

import pytest

from policy_rag.core.config import AppConfig, ChunkingConfig, EmbeddingConfig
from policy_rag.core.exceptions import EmbeddingUnavailable
from policy_rag.pipeline.documents import InMemoryDocumentRepository
from policy_rag.pipeline.models import Document, EmbeddingStatus
from policy_rag.pipeline.orchestrator import EmbeddingOrchestrator
from policy_rag.pipeline.store import InMemoryVectorStore

PARAGRAPH_ONE = (
    "Access control policy: only authorised personnel may access systems "
    "that process controlled unclassified information."
)
PARAGRAPH_TWO = (
    "Audit logs must be retained for at least ninety days and reviewed weekly "
    "by the security operations team."
)
PARAGRAPH_THREE = (
    "Incident response procedures require notification of the security "
    "officer within one hour of detection."
)
POLICY_A = f"{PARAGRAPH_ONE}\n\n{PARAGRAPH_TWO}"


def hash_vector(text: str, dimensions: int) -> list[float]:
    """Deterministic, never-zero vector derived from the text."""
    digest = hashlib.sha256(text.encode()).digest()
    return [digest[i % len(digest)] / 255.0 + 0.01 for i in range(dimensions)]


class FakeEmbedder:
    """In-process stand-in for the embedding client.

    ``failures`` maps a substring to how many times texts containing it fail
    (-1 fails forever). ``vectors`` pins exact vectors for exact texts.
    """

    def __init__(
        self,
        vectors: dict[str, list[float]] | None = None,
        failures: dict[str, int] | None = None,
        dimensions: int = 8,
        dimensions_by_model: dict[str, int] | None = None,
        delay: float = 0.0,
    ) -> None:
        self.vectors = vectors or {}
        self.failures = dict(failures or {})
        self.dimensions = dimensions
        self.dimensions_by_model = dimensions_by_model or {}
        self.delay = delay
        self.calls: list[tuple[str, str | None]] = []
        self.in_flight = 0
        self.max_in_flight = 0

    def calls_for(self, fragment: str) -> int:
        return sum(1 for text, _ in self.calls if fragment in text)

    async def embed(self, text: str, model: str | None = None) -> list[float]:
        self.calls.append((text, model))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            for marker, remaining in self.failures.items():
                if marker in text and remaining != 0:
                    if remaining > 0:
                        self.failures[marker] = remaining - 1
                    raise EmbeddingUnavailable("scripted failure", model or "fake")
            if text in self.vectors:
                return list(self.vectors[text])
            dimensions = self.dimensions_by_model.get(model or "", self.dimensions)
            return hash_vector(text, dimensions)
        finally:
            self.in_flight -= 1


class RecordingDocumentRepository(InMemoryDocumentRepository):
    """Keeps every status written, in order, per document."""

    def __init__(self, documents: list[Document] | None = None) -> None:
        super().__init__(documents)
        self.history: dict[str, list[EmbeddingStatus]] = {}

    async def update_embedding_status(self, document_id, status, embedded_at=None):
        await super().update_embedding_status(document_id, status, embedded_at)
        self.history.setdefault(document_id, []).append(status)


async def wait_for(predicate, timeout: float = 2.0) -> None:
    """Poll ``predicate`` until it holds, failing the test on timeout."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached before timeout")
        await asyncio.sleep(0.005)


@pytest.fixture
def embedding_config() -> EmbeddingConfig:
    return EmbeddingConfig(backoff_base_seconds=0.0, max_workers=4)


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def store() -> InMemoryVectorStore:
    return InMemoryVectorStore()


@pytest.fixture
def documents() -> RecordingDocumentRepository:
    return RecordingDocumentRepository(
        [
            Document(document_id="policy-a", name="Policy A", content=POLICY_A),
            Document(document_id="empty", name="Empty", content="   "),
            Document(document_id="other-org", name="Other", organization_id="acme"),
        ]
    )


@pytest.fixture
def orchestrator(embedder, store, documents, embedding_config) -> EmbeddingOrchestrator:
    return EmbeddingOrchestrator(
        embedder,
        store,
        documents,
        config=embedding_config,
        chunking=ChunkingConfig(),
        default_model="test-embed",
    )


@pytest.fixture
def app_config() -> AppConfig:
    config = AppConfig()
    config.pipeline.embeddings.model = "test-embed"
    config.embedding.backoff_base_seconds = 0.0
    return config

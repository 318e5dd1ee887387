"""Tests for the RagPipeline facade."""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from policy_rag.pipeline.documents import InMemoryDocumentRepository
from policy_rag.pipeline.embeddings import EmbeddingClient, ModelCatalog
from policy_rag.pipeline.models import Document, EmbeddingStatus
from policy_rag.pipeline.service import RagPipeline, build_pipeline
from policy_rag.pipeline.store import InMemoryVectorStore

from conftest import PARAGRAPH_ONE, PARAGRAPH_THREE, POLICY_A, FakeEmbedder, wait_for

S = EmbeddingStatus


@pytest.fixture
def pipeline(app_config, embedder, store, documents) -> RagPipeline:
    return RagPipeline(app_config, client=embedder, store=store, documents=documents)


class TestBuildPipeline:
    """Tests for build_pipeline."""

    def test_memory_backend(self, app_config):
        """Should wire the configured client and in-memory backends."""
        pipeline = build_pipeline(app_config)

        assert isinstance(pipeline.store, InMemoryVectorStore)
        assert isinstance(pipeline.documents, InMemoryDocumentRepository)
        assert isinstance(pipeline.orchestrator._client, EmbeddingClient)
        assert pipeline.orchestrator._client.default_model == "test-embed"


class TestRagPipeline:
    """Tests for the pipeline entry points."""

    async def test_embed_then_search(self, pipeline):
        """Should find a freshly embedded chunk by its own text."""
        job = pipeline.start_embedding("policy-a", POLICY_A)
        outcome = await job

        results = await pipeline.search(PARAGRAPH_ONE, k=1)

        assert outcome.status is S.COMPLETED
        assert [r.record.key for r in results] == [("policy-a", 0)]
        assert results[0].score == pytest.approx(1.0)

    async def test_list_documents_flags_embeddings(self, pipeline):
        """Should mark which documents of the scope have stored records."""
        await pipeline.embed_document("policy-a", POLICY_A)

        summaries = {s.document_id: s for s in await pipeline.list_documents()}

        assert set(summaries) == {"policy-a", "empty"}
        assert summaries["policy-a"].has_embeddings is True
        assert summaries["policy-a"].embedding_status is S.COMPLETED
        assert summaries["empty"].has_embeddings is False

    async def test_delete_cascades_to_records(self, pipeline, store, documents):
        """Should remove the document and all of its embedding records."""
        text = "\n\n".join(f"{PARAGRAPH_THREE} Clause {i}." for i in range(5))
        await documents.add(Document(document_id="five", content=text))
        await pipeline.embed_document("five", text)
        assert await store.count("five") == 5

        removed = await pipeline.delete_document("five")

        assert removed == 5
        assert await store.get_by_document("five") == []
        assert "five" not in await documents.list_document_ids("default_org")
        results = await pipeline.search(PARAGRAPH_THREE, k=10)
        assert all(r.record.document_id != "five" for r in results)

    async def test_delete_cancels_active_run(self, app_config, store, documents):
        """Should stop a running job before deleting the document."""
        embedder = FakeEmbedder(delay=0.05)
        pipeline = RagPipeline(app_config, client=embedder, store=store, documents=documents)

        job = pipeline.start_embedding("policy-a", POLICY_A)
        await wait_for(lambda: len(embedder.calls) >= 1)

        await pipeline.delete_document("policy-a")

        assert job.cancelled()
        assert await store.count("policy-a") == 0
        assert "policy-a" not in await documents.list_document_ids("default_org")

    async def test_delete_stops_awaited_embedding(self, app_config, store, documents):
        """Should cancel an embed_document call so no records outlive the document."""
        text = "\n\n".join(f"{PARAGRAPH_THREE} Clause {i}." for i in range(6))
        await documents.add(Document(document_id="six", content=text))
        embedder = FakeEmbedder(delay=0.02)
        pipeline = RagPipeline(app_config, client=embedder, store=store, documents=documents)

        caller = asyncio.create_task(pipeline.embed_document("six", text))
        await wait_for(lambda: len(embedder.calls) >= 1)

        await pipeline.delete_document("six")
        with pytest.raises(asyncio.CancelledError):
            await caller
        await asyncio.sleep(0.05)

        assert await store.count("six") == 0
        assert "six" not in await documents.list_document_ids("default_org")

    async def test_close_cancels_jobs(self, app_config, store, documents):
        """Should cancel background runs on close."""
        embedder = FakeEmbedder(delay=0.05)
        pipeline = RagPipeline(app_config, client=embedder, store=store, documents=documents)
        job = pipeline.start_embedding("policy-a", POLICY_A)

        await pipeline.close()

        assert job.cancelled()

    async def test_detect_models_ollama(self, pipeline):
        """Should query the configured Ollama host."""
        catalog = ModelCatalog(available=True)
        with patch(
            "policy_rag.pipeline.service.detect_models", AsyncMock(return_value=catalog)
        ) as detect:
            assert await pipeline.detect_models() is catalog

        detect.assert_awaited_once_with("http://localhost:11434")

    async def test_detect_models_other_provider(self, pipeline):
        """Should report an empty catalog for non-Ollama providers."""
        pipeline.config.pipeline.embeddings.provider = "openai"

        catalog = await pipeline.detect_models()

        assert catalog.available is False

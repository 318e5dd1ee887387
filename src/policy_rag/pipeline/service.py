"""Entry points used by the ingestion and chat collaborators.

``RagPipeline`` bundles the orchestrator and retriever behind the calls other
parts of the system make: start embedding a document, search a corpus,
list and delete documents, and detect which models are available.
"""

import asyncio

from loguru import logger

from policy_rag.core.config import AppConfig
from policy_rag.pipeline.documents import DocumentRepository, create_document_repository
from policy_rag.pipeline.embeddings import EmbeddingClient, ModelCatalog, detect_models
from policy_rag.pipeline.models import DocumentSummary, EmbeddingOutcome, ScoredRecord
from policy_rag.pipeline.orchestrator import Embedder, EmbeddingJob, EmbeddingOrchestrator
from policy_rag.pipeline.retrieve import SimilarityRetriever
from policy_rag.pipeline.store import VectorStore, create_vector_store


class RagPipeline:
    """Facade over embedding runs and similarity search."""

    def __init__(
        self,
        config: AppConfig,
        client: Embedder,
        store: VectorStore,
        documents: DocumentRepository,
    ) -> None:
        self.config = config
        self.store = store
        self.documents = documents
        default_model = config.pipeline.embeddings.model
        self.orchestrator = EmbeddingOrchestrator(
            client,
            store,
            documents,
            config=config.embedding,
            chunking=config.chunking,
            default_model=default_model,
        )
        self.retriever = SimilarityRetriever(
            client,
            store,
            documents,
            config=config.retrieval,
            default_model=default_model,
        )

    def start_embedding(
        self, document_id: str, text: str, model: str | None = None
    ) -> EmbeddingJob:
        """Kick off a background embedding run; the handle may be ignored."""
        return self.orchestrator.start(document_id, text, model)

    async def embed_document(
        self, document_id: str, text: str, model: str | None = None
    ) -> EmbeddingOutcome:
        """Embed a document and wait for the outcome."""
        return await self.orchestrator.run(document_id, text, model)

    async def search(
        self, query_text: str, corpus_scope: str | None = None, k: int | None = None
    ) -> list[ScoredRecord]:
        """Return the chunks of ``corpus_scope`` most relevant to the query."""
        return await self.retriever.query(query_text, corpus_scope, k)

    async def list_documents(self, corpus_scope: str | None = None) -> list[DocumentSummary]:
        """List a scope's documents, flagging those with stored embeddings."""
        scope = corpus_scope or self.config.retrieval.default_scope
        document_ids = await self.documents.list_document_ids(scope)
        embedded = {
            document_id
            for document_id in document_ids
            if await self.store.count(document_id)
        }
        return await self.documents.list_documents(scope, embedded)

    async def delete_document(self, document_id: str) -> int:
        """Stop any active run, then delete the document and its records.

        Returns the number of embedding records removed.
        """
        job = self.orchestrator.job_for(document_id)
        if job is not None:
            job.cancel()
            try:
                await job.wait()
            except asyncio.CancelledError:
                if not job.cancelled():
                    raise
            except Exception as e:
                logger.warning("Embedding job for {} ended with {}", document_id, e)

        removed = await self.store.delete_by_document(document_id)
        await self.documents.delete(document_id)
        logger.info("Deleted document {} and {} embedding records", document_id, removed)
        return removed

    async def detect_models(self) -> ModelCatalog:
        """Ask the inference host which models are available."""
        embeddings = self.config.pipeline.embeddings
        if embeddings.provider != "ollama":
            logger.info("Model detection is only supported for Ollama")
            return ModelCatalog()
        return await detect_models(embeddings.base_url)

    async def close(self) -> None:
        """Cancel outstanding background runs."""
        await self.orchestrator.shutdown()


def build_pipeline(config: AppConfig) -> RagPipeline:
    """Wire the pipeline from configuration."""
    client = EmbeddingClient(
        config.pipeline.embeddings, timeout_seconds=config.embedding.timeout_seconds
    )
    return RagPipeline(
        config,
        client=client,
        store=create_vector_store(config.store),
        documents=create_document_repository(config.store),
    )

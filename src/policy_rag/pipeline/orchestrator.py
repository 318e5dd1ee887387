"""Embedding job orchestration.

An embedding run takes one document from its current status through
PROCESSING to COMPLETED or FAILED:

1) clear records left by an earlier run,
2) chunk the text,
3) embed chunks concurrently (bounded), retrying each with backoff,
4) persist every successful chunk as soon as it is embedded,
5) write the terminal status back to the document collaborator.

Every run executes in its own task with a cancellable handle. ``run`` starts
it immediately and waits for it; ``start`` queues it on a bounded job pool
and returns the handle. Only one run per document may be active.
"""

import asyncio
import contextlib
from collections.abc import Generator
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from loguru import logger
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from policy_rag.core.config import (
    DEFAULT_EMBEDDING_MODEL,
    ChunkingConfig,
    EmbeddingConfig,
)
from policy_rag.core.exceptions import (
    AllChunksFailed,
    ChunkingProducedNoUnits,
    DocumentNotFound,
    EmbeddingAlreadyRunning,
    EmbeddingUnavailable,
    InvalidStatusTransition,
    PolicyRagError,
)
from policy_rag.pipeline.chunking import chunk_text
from policy_rag.pipeline.documents import DocumentRepository
from policy_rag.pipeline.models import (
    Chunk,
    EmbeddingOutcome,
    EmbeddingRecord,
    EmbeddingStatus,
    FailureReason,
    JobState,
    utc_now,
)
from policy_rag.pipeline.store import VectorStore


class Embedder(Protocol):
    """Anything that turns text into a vector with a named model."""

    async def embed(self, text: str, model: str | None = None) -> list[float]: ...


class EmbeddingJob:
    """Handle on a running embedding job.

    The run's outcome is available through ``await job`` or ``job.wait()``.
    Cancelling stops new chunk calls; records already written stay in place.
    """

    def __init__(self, document_id: str, task: "asyncio.Task[EmbeddingOutcome]") -> None:
        self.document_id = document_id
        self._task = task

    def cancel(self) -> bool:  # noqa: D102
        return self._task.cancel()

    def done(self) -> bool:  # noqa: D102
        return self._task.done()

    def cancelled(self) -> bool:  # noqa: D102
        return self._task.cancelled()

    async def wait(self) -> EmbeddingOutcome:
        """Wait for the run; raises CancelledError if it was cancelled."""
        return await self._task

    def __await__(self) -> Generator[Any, None, EmbeddingOutcome]:
        return self._task.__await__()

    def __repr__(self) -> str:
        state = "done" if self.done() else "running"
        return f"EmbeddingJob(document_id={self.document_id!r}, {state})"


@dataclass
class _RunContext:
    document_id: str
    model: str
    prior: EmbeddingStatus
    status: EmbeddingStatus
    state: JobState = field(default_factory=JobState)


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
    logger.warning(
        "Embedding attempt {} failed ({}); retrying in {:.2f}s",
        retry_state.attempt_number,
        exc,
        delay,
    )


class EmbeddingOrchestrator:
    """Coordinates chunking, embedding, persistence and document status."""

    def __init__(
        self,
        client: Embedder,
        store: VectorStore,
        documents: DocumentRepository,
        config: EmbeddingConfig | None = None,
        chunking: ChunkingConfig | None = None,
        default_model: str = DEFAULT_EMBEDDING_MODEL,
    ) -> None:
        self._client = client
        self._store = store
        self._documents = documents
        self._config = config or EmbeddingConfig()
        self._chunking = chunking or ChunkingConfig()
        self._default_model = default_model
        self._job_slots = asyncio.Semaphore(self._config.max_concurrent_jobs)
        self._active: dict[str, EmbeddingJob | None] = {}

    # ------------------------------------------------------------------
    # Run registry
    # ------------------------------------------------------------------

    def is_running(self, document_id: str) -> bool:  # noqa: D102
        return document_id in self._active

    def active_documents(self) -> list[str]:  # noqa: D102
        return list(self._active)

    def job_for(self, document_id: str) -> EmbeddingJob | None:
        """Return the job embedding a document, if any."""
        return self._active.get(document_id)

    def _claim(self, document_id: str) -> None:
        if document_id in self._active:
            raise EmbeddingAlreadyRunning(document_id)
        self._active[document_id] = None

    def _release(self, document_id: str, job: EmbeddingJob | None = None) -> None:
        if document_id in self._active and self._active[document_id] is job:
            del self._active[document_id]

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def run(
        self, document_id: str, text: str, model: str | None = None
    ) -> EmbeddingOutcome:
        """Embed a document immediately, bypassing the job pool, and wait for it.

        The run is registered like a background job, so ``cancel`` and
        ``job_for`` reach it. Cancelling it raises CancelledError here.
        """
        job = self._submit(document_id, text, model, queued=False)
        return await job

    def start(
        self, document_id: str, text: str, model: str | None = None
    ) -> EmbeddingJob:
        """Submit a background run to the job pool and return its handle.

        Must be called from a running event loop.
        """
        job = self._submit(document_id, text, model, queued=True)
        logger.info("Queued embedding job for document {}", document_id)
        return job

    def _submit(
        self, document_id: str, text: str, model: str | None, queued: bool
    ) -> EmbeddingJob:
        self._claim(document_id)
        try:
            task = asyncio.create_task(
                self._execute(
                    document_id, text, model or self._default_model, queued=queued
                ),
                name=f"embed:{document_id}",
            )
        except BaseException:
            self._release(document_id)
            raise

        job = EmbeddingJob(document_id, task)
        self._active[document_id] = job
        task.add_done_callback(lambda t: self._on_job_done(job, t))
        return job

    def cancel(self, document_id: str) -> bool:
        """Cancel the active job for a document, if there is one."""
        job = self.job_for(document_id)
        if job is None:
            return False
        return job.cancel()

    async def shutdown(self) -> None:
        """Cancel every active job and wait for them to settle."""
        jobs = [job for job in self._active.values() if job is not None]
        for job in jobs:
            job.cancel()
        await asyncio.gather(*(job.wait() for job in jobs), return_exceptions=True)

    def _on_job_done(self, job: EmbeddingJob, task: asyncio.Task) -> None:
        self._release(job.document_id, job)
        if task.cancelled():
            logger.info("Embedding job for document {} was cancelled", job.document_id)
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Embedding job for document {} failed: {}", job.document_id, exc)

    # ------------------------------------------------------------------
    # Run lifecycle
    # ------------------------------------------------------------------

    async def _execute(
        self, document_id: str, text: str, model: str, queued: bool
    ) -> EmbeddingOutcome:
        prior = await self._documents.get_status(document_id)
        ctx = _RunContext(
            document_id=document_id, model=model, prior=prior, status=prior
        )
        if prior in (EmbeddingStatus.PENDING, EmbeddingStatus.PROCESSING):
            # Left behind by a run that never finished, e.g. a crashed process.
            logger.warning(
                "Document {} was left {} by an interrupted run", document_id, prior.value
            )
            await self._set_status(ctx, EmbeddingStatus.FAILED)
        slot = self._job_slots if queued else contextlib.nullcontext()

        try:
            if queued:
                await self._set_status(ctx, EmbeddingStatus.PENDING)
            async with slot:
                await self._set_status(ctx, EmbeddingStatus.PROCESSING)
                return await self._process(ctx, text)
        except asyncio.CancelledError:
            logger.warning(
                "Embedding run for {} cancelled after {}/{} chunks",
                document_id,
                ctx.state.succeeded,
                ctx.state.total,
            )
            if ctx.status in (EmbeddingStatus.PENDING, EmbeddingStatus.PROCESSING):
                await self._mark_failed_quietly(ctx)
            raise
        except Exception as e:
            logger.error("Embedding run for {} aborted: {}", document_id, e)
            if ctx.status is EmbeddingStatus.PROCESSING:
                await self._mark_failed_quietly(ctx)
            raise

    async def _process(self, ctx: _RunContext, text: str) -> EmbeddingOutcome:
        removed = await self._store.delete_by_document(ctx.document_id)
        if removed:
            logger.info(
                "Cleared {} previous records for document {}", removed, ctx.document_id
            )

        chunks = chunk_text(
            text,
            ctx.document_id,
            min_chars=self._chunking.min_chars,
            max_chars=self._chunking.max_chars,
            overlap=self._chunking.overlap,
        )
        ctx.state.total = len(chunks)
        if not chunks:
            error = ChunkingProducedNoUnits(ctx.document_id)
            logger.warning(str(error))
            return await self._finish(
                ctx, EmbeddingStatus.FAILED, FailureReason.NO_CHUNKS, error
            )

        logger.info(
            "Embedding {} chunks of document {} with {}",
            len(chunks),
            ctx.document_id,
            ctx.model,
        )
        workers = asyncio.Semaphore(self._config.max_workers)
        tasks = [
            asyncio.create_task(self._embed_chunk(ctx, chunk, workers))
            for chunk in chunks
        ]
        try:
            await asyncio.gather(*tasks)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        if ctx.state.succeeded == 0:
            error = AllChunksFailed(ctx.document_id, ctx.state.total)
            logger.error(str(error))
            return await self._finish(
                ctx, EmbeddingStatus.FAILED, FailureReason.ALL_CHUNKS_FAILED, error
            )
        if ctx.state.failed:
            logger.warning(
                "Document {} embedded with degraded coverage: {}/{} chunks failed",
                ctx.document_id,
                ctx.state.failed,
                ctx.state.total,
            )
        return await self._finish(ctx, EmbeddingStatus.COMPLETED)

    async def _embed_chunk(
        self, ctx: _RunContext, chunk: Chunk, workers: asyncio.Semaphore
    ) -> None:
        async with workers:
            try:
                vector = await self._embed_with_retry(chunk.text, ctx.model)
            except EmbeddingUnavailable as e:
                ctx.state.failed += 1
                logger.error(
                    "Chunk {} of document {} failed after {} attempts: {}",
                    chunk.chunk_index,
                    ctx.document_id,
                    self._config.max_retries + 1,
                    e,
                )
                return

            await self._store.put(
                EmbeddingRecord(
                    document_id=ctx.document_id,
                    chunk_index=chunk.chunk_index,
                    text=chunk.text,
                    vector=tuple(vector),
                    model=ctx.model,
                )
            )
            ctx.state.succeeded += 1
            logger.debug(
                "Stored chunk {}/{} of document {}",
                chunk.chunk_index + 1,
                ctx.state.total,
                ctx.document_id,
            )

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self._config.max_retries + 1),
            wait=wait_exponential(
                multiplier=self._config.backoff_base_seconds,
                exp_base=self._config.backoff_factor,
                max=self._config.backoff_cap_seconds,
            ),
            retry=retry_if_exception_type(EmbeddingUnavailable),
            before_sleep=_log_retry,
            reraise=True,
        )

    async def _embed_with_retry(self, text: str, model: str) -> list[float]:
        return await self._retrying()(self._client.embed, text, model)

    async def _set_status(
        self,
        ctx: _RunContext,
        status: EmbeddingStatus,
        embedded_at: datetime | None = None,
    ) -> None:
        await self._documents.update_embedding_status(
            ctx.document_id, status, embedded_at
        )
        ctx.status = status

    async def _mark_failed_quietly(self, ctx: _RunContext) -> None:
        try:
            await self._set_status(ctx, EmbeddingStatus.FAILED)
        except (DocumentNotFound, InvalidStatusTransition) as e:
            logger.warning("Could not mark document {} failed: {}", ctx.document_id, e)

    async def _finish(
        self,
        ctx: _RunContext,
        status: EmbeddingStatus,
        reason: FailureReason | None = None,
        error: PolicyRagError | None = None,
    ) -> EmbeddingOutcome:
        embedded_at = utc_now() if status is EmbeddingStatus.COMPLETED else None
        await self._set_status(ctx, status, embedded_at)
        logger.info(
            "Document {} {}: {}/{} chunks embedded with {}",
            ctx.document_id,
            status.value,
            ctx.state.succeeded,
            ctx.state.total,
            ctx.model,
        )
        return EmbeddingOutcome(
            document_id=ctx.document_id,
            model=ctx.model,
            status=status,
            total_chunks=ctx.state.total,
            succeeded=ctx.state.succeeded,
            failed=ctx.state.failed,
            failure_reason=reason,
            error=error,
            embedded_at=embedded_at,
        )

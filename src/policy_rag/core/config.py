"""Configuration management for the policy RAG pipeline.

This module provides:
- ModelConfig: configuration for the embedding model and its provider
- ChunkingConfig: configuration for paragraph chunking
- EmbeddingConfig: timeouts, concurrency and retry policy for embedding runs
- RetrievalConfig: configuration for retrieval parameters
- StoreConfig: selection of the vector store backend
- AppConfig: main application configuration
- load_config: function to load configuration from YAML files
"""

from pathlib import Path

from pydantic import BaseModel, Field
import yaml

DEFAULT_EMBEDDING_MODEL = "mxbai-embed-large:latest"
DEFAULT_SCOPE = "default_org"


class ModelConfig(BaseModel):
    """Configuration for the embedding model.

    ----------
    model : str
        The model identifier or name.
    provider : str
        The provider of the model (e.g., 'ollama', 'openai').
    base_url : str | None
        Optional base URL for the model API endpoint.
    """

    model: str = DEFAULT_EMBEDDING_MODEL
    provider: str = "ollama"
    base_url: str | None = "http://localhost:11434"


class PipelineConfig(BaseModel):
    """Configuration for the RAG pipeline.

    ----------
    embeddings : ModelConfig
        Configuration for the embeddings model.
    """

    embeddings: ModelConfig = Field(default_factory=ModelConfig)


class ChunkingConfig(BaseModel):
    """Configuration for paragraph chunking.

    ----------
    min_chars : int
        Paragraphs shorter than this after trimming are dropped (default: 50).
    max_chars : int | None
        Paragraphs longer than this are split further. Disabled when None.
    overlap : int
        Character overlap used when splitting oversized paragraphs.
    """

    min_chars: int = Field(default=50, ge=1)
    max_chars: int | None = Field(default=None, ge=1)
    overlap: int = Field(default=200, ge=0)


class EmbeddingConfig(BaseModel):
    """Configuration for embedding runs.

    ----------
    timeout_seconds : float
        Bound on a single call to the inference endpoint.
    max_workers : int
        Concurrent chunk embedding calls per document.
    max_concurrent_jobs : int
        Documents embedded at the same time by background jobs.
    max_retries : int
        Retries per chunk after the first failed attempt.
    backoff_base_seconds : float
        First backoff delay; 0 disables waiting between attempts.
    backoff_factor : float
        Multiplier applied to the delay after each retry.
    backoff_cap_seconds : float
        Upper bound on a single backoff delay.
    """

    timeout_seconds: float = Field(default=30.0, gt=0)
    max_workers: int = Field(default=4, ge=1)
    max_concurrent_jobs: int = Field(default=4, ge=1)
    max_retries: int = Field(default=2, ge=0)
    backoff_base_seconds: float = Field(default=0.5, ge=0)
    backoff_factor: float = Field(default=2.0, ge=1)
    backoff_cap_seconds: float = Field(default=5.0, ge=0)


class RetrievalConfig(BaseModel):
    """Configuration for retrieval parameters.

    ----------
    top_k : int
        The number of top results to retrieve (default: 5).
    similarity_threshold : float | None
        Optional threshold for similarity filtering.
    default_scope : str
        Corpus scope used when a query does not name one.
    """

    top_k: int = Field(default=5, ge=1)
    similarity_threshold: float | None = None
    default_scope: str = DEFAULT_SCOPE


class StoreConfig(BaseModel):
    """Vector store and document backend selection ('memory' or 'postgres')."""

    backend: str = "memory"


class AppConfig(BaseModel):
    """Main application configuration.

    ----------
    pipeline : PipelineConfig
        Configuration for the RAG pipeline.
    chunking : ChunkingConfig
        Configuration for the chunker.
    embedding : EmbeddingConfig
        Configuration for embedding runs.
    retrieval : RetrievalConfig
        Configuration for retrieval parameters.
    store : StoreConfig
        Configuration for persistence.
    """

    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    chunking: ChunkingConfig = Field(default_factory=ChunkingConfig)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)


def load_config(path: Path | None = None) -> AppConfig:
    """Load application configuration from a YAML file.

    Parameters
    ----------
    path : Path | None
        Path to the YAML configuration file. Defaults are used when None.

    Returns:
    -------
    AppConfig
        Parsed application configuration object.
    """
    if path is None:
        return AppConfig()
    with open(path) as f:
        raw = yaml.safe_load(f)
    return AppConfig.model_validate(raw or {})

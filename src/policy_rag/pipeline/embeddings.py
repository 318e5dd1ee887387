"""Embedding client and model discovery for the inference service.

- EmbeddingClient: one bounded, validated embedding call per ``embed``
- detect_models: list models served by Ollama and classify their capabilities
"""

import asyncio
import math
from collections.abc import Callable, Sequence
from numbers import Real

from langchain_core.embeddings import Embeddings
from loguru import logger
from ollama import AsyncClient
from pydantic import BaseModel, Field

from policy_rag.core.config import ModelConfig
from policy_rag.core.exceptions import EmbeddingUnavailable
from policy_rag.pipeline.utils import get_embedding_model

DEFAULT_TIMEOUT_SECONDS = 30.0
DETECTION_TIMEOUT_SECONDS = 5.0

EMBEDDING_MODEL_MARKERS = ("nomic-embed", "embed", "sentence")
TEXT_MODEL_MARKERS = ("llama", "gemma", "mistral", "qwen", "codellama")


def _validate_vector(raw: object, model: str) -> list[float]:
    """Check the provider payload is a non-empty sequence of finite numbers."""
    if raw is None:
        raise EmbeddingUnavailable("Embedding response has no vector", model)
    if isinstance(raw, (str, bytes)) or not isinstance(raw, Sequence):
        raise EmbeddingUnavailable(
            "Embedding response is not a sequence",
            model,
            {"type": type(raw).__name__},
        )
    if len(raw) == 0:
        raise EmbeddingUnavailable("Embedding response vector is empty", model)

    vector: list[float] = []
    for position, value in enumerate(raw):
        if isinstance(value, bool) or not isinstance(value, Real):
            raise EmbeddingUnavailable(
                "Embedding response contains a non-numeric entry",
                model,
                {"position": position},
            )
        number = float(value)
        if not math.isfinite(number):
            raise EmbeddingUnavailable(
                "Embedding response contains a non-finite entry",
                model,
                {"position": position},
            )
        vector.append(number)
    return vector


class EmbeddingClient:
    """Single-attempt adapter over a langchain embedding provider.

    Every failure of the call (transport, timeout, provider error or a
    malformed payload) is reported as ``EmbeddingUnavailable``. The client
    never retries; callers own the retry policy.
    """

    def __init__(
        self,
        model_config: ModelConfig,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        embeddings_factory: Callable[[ModelConfig], Embeddings] = get_embedding_model,
    ) -> None:
        self.model_config = model_config
        self.timeout_seconds = timeout_seconds
        self._embeddings_factory = embeddings_factory
        self._providers: dict[str, Embeddings] = {}

    @property
    def default_model(self) -> str:  # noqa: D102
        return self.model_config.model

    def _provider(self, model: str) -> Embeddings:
        provider = self._providers.get(model)
        if provider is None:
            config = self.model_config.model_copy(update={"model": model})
            try:
                provider = self._embeddings_factory(config)
            except ValueError as e:
                raise EmbeddingUnavailable(str(e), model) from e
            self._providers[model] = provider
        return provider

    async def embed(self, text: str, model: str | None = None) -> list[float]:
        """Embed ``text`` with ``model`` (defaults to the configured model)."""
        model = model or self.default_model
        provider = self._provider(model)
        try:
            raw = await asyncio.wait_for(
                provider.aembed_query(text), timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError as e:
            raise EmbeddingUnavailable(
                f"Embedding request timed out after {self.timeout_seconds}s",
                model,
            ) from e
        except Exception as e:
            raise EmbeddingUnavailable(
                f"Embedding request failed: {e}",
                model,
                {"provider": self.model_config.provider},
            ) from e

        vector = _validate_vector(raw, model)
        logger.debug("Embedded {} chars with {} ({} dims)", len(text), model, len(vector))
        return vector


class ModelInfo(BaseModel):
    """A model served by the inference host."""

    name: str
    size: int = 0
    digest: str = ""
    family: str = "unknown"
    parameter_size: str = "unknown"
    quantization_level: str = "unknown"


class ModelCapabilities(BaseModel):  # noqa: D101
    embeddings: bool = False
    text_generation: bool = False


class ModelCatalog(BaseModel):
    """Result of probing the inference host for models."""

    available: bool = False
    models: list[ModelInfo] = Field(default_factory=list)
    capabilities: ModelCapabilities = Field(default_factory=ModelCapabilities)

    @property
    def embedding_models(self) -> list[str]:  # noqa: D102
        return [m.name for m in self.models if is_embedding_model(m.name)]


def is_embedding_model(name: str) -> bool:  # noqa: D103
    return any(marker in name for marker in EMBEDDING_MODEL_MARKERS)


def is_text_model(name: str) -> bool:  # noqa: D103
    return any(marker in name for marker in TEXT_MODEL_MARKERS)


async def detect_models(
    base_url: str | None = None, timeout_seconds: float = DETECTION_TIMEOUT_SECONDS
) -> ModelCatalog:
    """Ask the Ollama host which models it serves.

    An unreachable host is not an error: the catalog comes back unavailable.
    """
    client = AsyncClient(host=base_url, timeout=timeout_seconds)
    try:
        response = await client.list()
    except Exception as e:
        logger.warning("Cannot reach Ollama at {}: {}", base_url or "default host", e)
        return ModelCatalog()

    models: list[ModelInfo] = []
    for entry in response.models:
        details = entry.details
        models.append(
            ModelInfo(
                name=entry.model or "",
                size=entry.size or 0,
                digest=entry.digest or "",
                family=(details.family if details and details.family else "unknown"),
                parameter_size=(
                    details.parameter_size
                    if details and details.parameter_size
                    else "unknown"
                ),
                quantization_level=(
                    details.quantization_level
                    if details and details.quantization_level
                    else "unknown"
                ),
            )
        )
    logger.info("Found {} Ollama models: {}", len(models), [m.name for m in models])

    return ModelCatalog(
        available=bool(models),
        models=models,
        capabilities=ModelCapabilities(
            embeddings=any(is_embedding_model(m.name) for m in models),
            text_generation=any(is_text_model(m.name) for m in models),
        ),
    )

"""Embedding provider registry.

Maps a ``ModelConfig.provider`` name to a builder returning a langchain
``Embeddings``. Provider packages other than Ollama are optional extras and
are imported only when selected.
"""

from collections.abc import Callable

from langchain_core.embeddings import Embeddings

from policy_rag.core.config import ModelConfig


def _ollama(model_config: ModelConfig) -> Embeddings:
    from langchain_ollama import OllamaEmbeddings

    return OllamaEmbeddings(model=model_config.model, base_url=model_config.base_url)


def _openai(model_config: ModelConfig) -> Embeddings:
    from langchain_openai import OpenAIEmbeddings

    # Retries are owned by the orchestrator.
    return OpenAIEmbeddings(
        model=model_config.model, base_url=model_config.base_url, max_retries=0
    )


def _google(model_config: ModelConfig) -> Embeddings:
    from langchain_google_genai import GoogleGenerativeAIEmbeddings

    return GoogleGenerativeAIEmbeddings(model=model_config.model)


EMBEDDING_PROVIDERS: dict[str, Callable[[ModelConfig], Embeddings]] = {
    "ollama": _ollama,
    "openai": _openai,
    "google": _google,
}


def get_embedding_model(model_config: ModelConfig) -> Embeddings:
    """Build the embeddings backend named by ``model_config.provider``.

    Raises:
        ValueError: If the provider is not registered
    """
    try:
        builder = EMBEDDING_PROVIDERS[model_config.provider.lower()]
    except KeyError:
        raise ValueError(
            f"Unsupported embedding provider: {model_config.provider}. "
            f"Must be one of {sorted(EMBEDDING_PROVIDERS)}."
        ) from None
    return builder(model_config)

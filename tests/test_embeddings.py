"""Tests for the embedding client and Ollama model detection."""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from policy_rag.core.config import ModelConfig
from policy_rag.core.exceptions import EmbeddingUnavailable
from policy_rag.pipeline.embeddings import (
    EmbeddingClient,
    detect_models,
    is_embedding_model,
    is_text_model,
)


def _provider(return_value=None, side_effect=None) -> MagicMock:
    provider = MagicMock()
    provider.aembed_query = AsyncMock(return_value=return_value, side_effect=side_effect)
    return provider


def _client(provider, **kwargs) -> tuple[EmbeddingClient, MagicMock]:
    factory = MagicMock(return_value=provider)
    client = EmbeddingClient(
        ModelConfig(model="mxbai-embed-large:latest"),
        embeddings_factory=factory,
        **kwargs,
    )
    return client, factory


class TestEmbeddingClient:
    """Tests for EmbeddingClient.embed."""

    async def test_returns_vector_of_floats(self):
        """Should return the provider's vector as floats."""
        client, _ = _client(_provider([1, 0.5, -2]))

        vector = await client.embed("access control")

        assert vector == [1.0, 0.5, -2.0]
        assert all(isinstance(v, float) for v in vector)

    async def test_uses_default_model(self):
        """Should build the provider for the configured model."""
        client, factory = _client(_provider([0.1, 0.2]))

        await client.embed("text")

        assert factory.call_args.args[0].model == "mxbai-embed-large:latest"

    async def test_caches_provider_per_model(self):
        """Should build one provider per model name."""
        client, factory = _client(_provider([0.1, 0.2]))

        await client.embed("a")
        await client.embed("b")
        await client.embed("c", model="nomic-embed-text")

        assert factory.call_count == 2
        assert factory.call_args.args[0].model == "nomic-embed-text"

    @pytest.mark.parametrize(
        "payload",
        [None, [], "0.1,0.2", [0.1, "x"], [0.1, float("nan")], [float("inf")], [True, 1.0], 3.0],
    )
    async def test_malformed_payload(self, payload):
        """Should reject payloads that are not non-empty finite number sequences."""
        client, _ = _client(_provider(payload))

        with pytest.raises(EmbeddingUnavailable) as exc_info:
            await client.embed("text")

        assert exc_info.value.details["model"] == "mxbai-embed-large:latest"

    async def test_transport_error_is_wrapped(self):
        """Should report provider errors as EmbeddingUnavailable."""
        error = ConnectionError("connection refused")
        client, _ = _client(_provider(side_effect=error))

        with pytest.raises(EmbeddingUnavailable) as exc_info:
            await client.embed("text")

        assert exc_info.value.__cause__ is error

    async def test_timeout(self):
        """Should give up on a call that exceeds the timeout."""

        async def slow(text):
            await asyncio.sleep(1)
            return [0.1]

        provider = MagicMock()
        provider.aembed_query = slow
        client, _ = _client(provider, timeout_seconds=0.01)

        with pytest.raises(EmbeddingUnavailable, match="timed out"):
            await client.embed("text")

    async def test_single_attempt(self):
        """Should not retry on its own."""
        provider = _provider(side_effect=RuntimeError("boom"))
        client, _ = _client(provider)

        with pytest.raises(EmbeddingUnavailable):
            await client.embed("text")

        assert provider.aembed_query.await_count == 1

    async def test_unsupported_provider(self):
        """Should report an unknown provider as EmbeddingUnavailable."""
        client = EmbeddingClient(ModelConfig(provider="unknown"))

        with pytest.raises(EmbeddingUnavailable, match="Unsupported embedding provider"):
            await client.embed("text")


def _ollama_list_response():
    return SimpleNamespace(
        models=[
            SimpleNamespace(
                model="mxbai-embed-large:latest",
                size=669_000_000,
                digest="468836162de7",
                details=SimpleNamespace(
                    family="bert", parameter_size="334M", quantization_level="F16"
                ),
            ),
            SimpleNamespace(
                model="llama3.2:3b",
                size=2_000_000_000,
                digest="a80c4f17acd5",
                details=None,
            ),
        ]
    )


class TestDetectModels:
    """Tests for detect_models."""

    async def test_lists_models_and_capabilities(self):
        """Should map served models and classify them."""
        with patch("policy_rag.pipeline.embeddings.AsyncClient") as client_cls:
            client_cls.return_value.list = AsyncMock(return_value=_ollama_list_response())

            catalog = await detect_models("http://ollama:11434")

        client_cls.assert_called_once_with(host="http://ollama:11434", timeout=5.0)
        assert catalog.available is True
        assert [m.name for m in catalog.models] == ["mxbai-embed-large:latest", "llama3.2:3b"]
        assert catalog.models[0].family == "bert"
        assert catalog.models[1].family == "unknown"
        assert catalog.capabilities.embeddings is True
        assert catalog.capabilities.text_generation is True
        assert catalog.embedding_models == ["mxbai-embed-large:latest"]

    async def test_unreachable_host(self):
        """Should return an unavailable catalog instead of raising."""
        with patch("policy_rag.pipeline.embeddings.AsyncClient") as client_cls:
            client_cls.return_value.list = AsyncMock(side_effect=ConnectionError("refused"))

            catalog = await detect_models()

        assert catalog.available is False
        assert catalog.models == []
        assert catalog.capabilities.embeddings is False

    async def test_no_models_served(self):
        """Should mark an empty host as unavailable."""
        with patch("policy_rag.pipeline.embeddings.AsyncClient") as client_cls:
            client_cls.return_value.list = AsyncMock(return_value=SimpleNamespace(models=[]))

            catalog = await detect_models()

        assert catalog.available is False


class TestModelNames:
    """Tests for name-based capability checks."""

    def test_embedding_models(self):
        """Should recognise embedding model names."""
        assert is_embedding_model("nomic-embed-text:latest")
        assert is_embedding_model("mxbai-embed-large")
        assert not is_embedding_model("llama3:8b")

    def test_text_models(self):
        """Should recognise text generation model names."""
        assert is_text_model("gemma2:9b")
        assert not is_text_model("mxbai-embed-large")

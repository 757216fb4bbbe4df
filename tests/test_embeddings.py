"""Tests for the embedders and provider clients."""

from __future__ import annotations

import json

import httpx
import numpy as np
import pytest

from memroute.config import MemrouteConfig
from memroute.embeddings import (
    Embedder,
    HashEmbedder,
    OpenAIEmbeddingClient,
    ProviderEmbedder,
    SentenceTransformerClient,
    _hyperplane_signs,
    build_embedder,
)
from memroute.errors import (
    ConfigurationError,
    DimensionMismatchError,
    EmbeddingFailedError,
    ProviderError,
)


def _cos(a, b) -> float:
    return float(np.dot(a, b) / (np.linalg.norm(a) * np.linalg.norm(b)))


# ---------------------------------------------------------------------------
# HashEmbedder
# ---------------------------------------------------------------------------


class TestHashEmbedder:
    def test_implements_protocol(self):
        assert isinstance(HashEmbedder(), Embedder)

    def test_default_dimension(self):
        assert HashEmbedder().dimension() == 384
        assert len(HashEmbedder().embed("hello")) == 384

    def test_deterministic_across_instances(self):
        text = "JWT tokens expire after 24 hours"
        assert HashEmbedder(384).embed(text) == HashEmbedder(384).embed(text)

    def test_unit_length(self):
        vector = HashEmbedder(128).embed("some words to embed")
        assert np.linalg.norm(vector) == pytest.approx(1.0)

    @pytest.mark.parametrize("text", ["", "   ", "\n\t"])
    def test_blank_text_is_zero_vector(self, text):
        assert HashEmbedder(64).embed(text) == [0.0] * 64

    def test_dimension_above_one_digest_block(self):
        assert len(HashEmbedder(700).embed("hello world")) == 700

    def test_case_insensitive(self):
        embedder = HashEmbedder(256)
        assert embedder.embed("Hello World") == embedder.embed("hello world")

    def test_related_texts_are_closer_than_unrelated(self):
        embedder = HashEmbedder(384)
        base = embedder.embed("JWT tokens expire after 24 hours")
        related = embedder.embed("How long do JWT tokens last?")
        unrelated = embedder.embed("The database runs PostgreSQL on port 5432")
        assert _cos(base, related) > _cos(base, unrelated)

    def test_embed_batch_matches_embed(self):
        embedder = HashEmbedder(64)
        texts = ["alpha", "beta gamma"]
        assert embedder.embed_batch(texts) == [embedder.embed(t) for t in texts]

    def test_repeated_shingles_are_projected_once(self):
        embedder = HashEmbedder(96)
        text = " ".join(["token"] * 300)
        _hyperplane_signs.cache_clear()
        vector = embedder.embed(text)
        info = _hyperplane_signs.cache_info()
        # w:token, b:token token and the five trigrams of "#token#".
        assert info.misses == 7
        assert info.hits == 0
        assert np.linalg.norm(vector) == pytest.approx(1.0)

    def test_non_positive_dimension_rejected(self):
        with pytest.raises(ConfigurationError):
            HashEmbedder(0)


# ---------------------------------------------------------------------------
# ProviderEmbedder
# ---------------------------------------------------------------------------


class FakeClient:
    """Provider client that fails a fixed number of times before answering."""

    def __init__(self, dimension: int = 8, failures: int = 0, retryable: bool = True):
        self.dimension = dimension
        self.failures = failures
        self.retryable = retryable
        self.calls: list[list[str]] = []

    def embed_batch(self, texts):
        self.calls.append(list(texts))
        if self.failures > 0:
            self.failures -= 1
            raise ProviderError("boom", retryable=self.retryable)
        return [[float(len(t))] * self.dimension for t in texts]

    def embed(self, text):
        return self.embed_batch([text])[0]


class SingleTextClient:
    def embed(self, text):
        return [1.0, 0.0]


def _embedder(client, dimension=8, **kwargs) -> tuple[ProviderEmbedder, list[float]]:
    sleeps: list[float] = []
    return ProviderEmbedder(client, dimension, sleep=sleeps.append, **kwargs), sleeps


class TestProviderEmbedder:
    def test_embed_returns_provider_vector(self):
        embedder, _ = _embedder(FakeClient())
        assert embedder.embed("abc") == [3.0] * 8
        assert embedder.dimension() == 8

    def test_batches_are_capped_at_ten(self):
        client = FakeClient()
        embedder, _ = _embedder(client)
        vectors = embedder.embed_batch([f"t{i}" for i in range(25)])
        assert len(vectors) == 25
        assert [len(c) for c in client.calls] == [10, 10, 5]

    def test_client_without_embed_batch(self):
        embedder, _ = _embedder(SingleTextClient(), dimension=2)
        assert embedder.embed_batch(["a", "b"]) == [[1.0, 0.0], [1.0, 0.0]]

    def test_retries_transient_failures(self):
        client = FakeClient(failures=2)
        embedder, sleeps = _embedder(client)
        assert embedder.embed("ab") == [2.0] * 8
        assert len(client.calls) == 3
        assert len(sleeps) == 2
        assert sleeps[1] > sleeps[0] >= 0.5

    def test_gives_up_after_three_attempts(self):
        client = FakeClient(failures=5)
        embedder, sleeps = _embedder(client)
        with pytest.raises(EmbeddingFailedError):
            embedder.embed("ab")
        assert len(client.calls) == 3
        assert len(sleeps) == 2

    def test_non_retryable_failure_is_immediate(self):
        client = FakeClient(failures=1, retryable=False)
        embedder, sleeps = _embedder(client)
        with pytest.raises(EmbeddingFailedError):
            embedder.embed("ab")
        assert len(client.calls) == 1
        assert sleeps == []

    def test_wrong_length_vector_rejected(self):
        embedder, _ = _embedder(FakeClient(dimension=4), dimension=8)
        with pytest.raises(DimensionMismatchError):
            embedder.embed("ab")

    def test_declared_dimension_checked_at_construction(self):
        client = SentenceTransformerClient(_model=FakeSentenceModel(dimension=16))
        with pytest.raises(DimensionMismatchError):
            ProviderEmbedder(client, dimension=384)


# ---------------------------------------------------------------------------
# OpenAI-compatible client
# ---------------------------------------------------------------------------


def _openai_client(handler, **kwargs) -> OpenAIEmbeddingClient:
    return OpenAIEmbeddingClient(
        api_key="test-key",
        dimensions=3,
        _transport=httpx.MockTransport(handler),
        **kwargs,
    )


class TestOpenAIEmbeddingClient:
    def test_posts_batch_and_orders_by_index(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "data": [
                        {"index": 1, "embedding": [0.0, 1.0, 0.0]},
                        {"index": 0, "embedding": [1.0, 0.0, 0.0]},
                    ]
                },
            )

        client = _openai_client(handler)
        vectors = client.embed_batch(["first", "second"])
        assert vectors == [[1.0, 0.0, 0.0], [0.0, 1.0, 0.0]]
        assert seen["url"] == "https://api.openai.com/v1/embeddings"
        assert seen["auth"] == "Bearer test-key"
        assert seen["body"]["input"] == ["first", "second"]
        assert seen["body"]["dimensions"] == 3

    @pytest.mark.parametrize("status", [429, 500, 503])
    def test_throttling_and_server_errors_are_retryable(self, status):
        client = _openai_client(lambda request: httpx.Response(status))
        with pytest.raises(ProviderError) as excinfo:
            client.embed("x")
        assert excinfo.value.retryable

    def test_client_errors_are_not_retryable(self):
        client = _openai_client(lambda request: httpx.Response(400, text="bad input"))
        with pytest.raises(ProviderError) as excinfo:
            client.embed("x")
        assert not excinfo.value.retryable

    def test_connection_errors_are_retryable(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(ProviderError) as excinfo:
            _openai_client(handler).embed("x")
        assert excinfo.value.retryable

    def test_malformed_response(self):
        client = _openai_client(lambda request: httpx.Response(200, json={"nope": []}))
        with pytest.raises(ProviderError):
            client.embed("x")

    def test_missing_api_key_is_configuration_error(self, monkeypatch):
        monkeypatch.delenv("MEMROUTE_TEST_KEY", raising=False)
        with pytest.raises(ConfigurationError):
            OpenAIEmbeddingClient(api_key_env="MEMROUTE_TEST_KEY")

    def test_provider_embedder_retries_over_http(self):
        responses = iter(
            [
                httpx.Response(503),
                httpx.Response(200, json={"data": [{"index": 0, "embedding": [1, 2, 3]}]}),
            ]
        )
        client = _openai_client(lambda request: next(responses))
        embedder = ProviderEmbedder(client, dimension=3, sleep=lambda s: None)
        assert embedder.embed("x") == [1.0, 2.0, 3.0]


# ---------------------------------------------------------------------------
# sentence-transformers client
# ---------------------------------------------------------------------------


class FakeSentenceModel:
    def __init__(self, dimension: int = 4):
        self.dimension = dimension

    def get_sentence_embedding_dimension(self) -> int:
        return self.dimension

    def encode(self, texts, convert_to_numpy=True):
        return np.ones((len(texts), self.dimension), dtype=np.float32)


class TestSentenceTransformerClient:
    def test_encodes_with_injected_model(self):
        client = SentenceTransformerClient(_model=FakeSentenceModel(4))
        embedder = ProviderEmbedder(client, dimension=4)
        assert embedder.embed_batch(["a", "b"]) == [[1.0] * 4, [1.0] * 4]


# ---------------------------------------------------------------------------
# build_embedder
# ---------------------------------------------------------------------------


class TestBuildEmbedder:
    def test_hash_variant(self, tmp_path):
        embedder = build_embedder(MemrouteConfig(data_dir=str(tmp_path), dimension=64))
        assert isinstance(embedder, HashEmbedder)
        assert embedder.dimension() == 64

    def test_openai_variant_requires_key(self, tmp_path, monkeypatch):
        monkeypatch.delenv("MEMROUTE_TEST_KEY", raising=False)
        config = MemrouteConfig(data_dir=str(tmp_path), embedder="openai", api_key_env="MEMROUTE_TEST_KEY")
        with pytest.raises(ConfigurationError):
            build_embedder(config)

    def test_openai_variant(self, tmp_path, monkeypatch):
        monkeypatch.setenv("MEMROUTE_TEST_KEY", "k")
        config = MemrouteConfig(data_dir=str(tmp_path), embedder="openai", api_key_env="MEMROUTE_TEST_KEY")
        embedder = build_embedder(config)
        assert isinstance(embedder, ProviderEmbedder)
        assert embedder.dimension() == 384

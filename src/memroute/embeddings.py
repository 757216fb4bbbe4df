"""
Embedders: turn text into fixed-dimension vectors.

Two interchangeable variants implement the :class:`Embedder` protocol:

* :class:`HashEmbedder` - deterministic, offline locality-sensitive hash
  projection.  No network, identical output for identical input.
* :class:`ProviderEmbedder` - delegates to a provider client (an
  OpenAI-compatible HTTP endpoint or a local sentence-transformers model),
  retrying transient failures with bounded exponential backoff.

There is no implicit fallback between them; :func:`build_embedder` picks
one at construction time.
"""

from __future__ import annotations

import hashlib
import logging
import math
import os
import random
import time
from functools import lru_cache
from typing import Any, Callable, Optional, Protocol, Sequence, runtime_checkable

import httpx
import numpy as np

from .config import MemrouteConfig
from .errors import (
    ConfigurationError,
    DimensionMismatchError,
    EmbeddingFailedError,
    ProviderError,
)
from .intelligence import shingles

logger = logging.getLogger(__name__)


@runtime_checkable
class Embedder(Protocol):
    """Capability interface shared by every embedder."""

    def embed(self, text: str) -> list[float]: ...

    def embed_batch(self, texts: Sequence[str]) -> list[list[float]]: ...

    def dimension(self) -> int: ...


class ProviderClient(Protocol):
    """What a provider must expose.  ``embed_batch`` is optional."""

    def embed(self, text: str) -> list[float]: ...


# ---------------------------------------------------------------------------
# Offline hash embedder
# ---------------------------------------------------------------------------

_BITS_PER_BLOCK = 512  # one 64-byte BLAKE2b digest


@lru_cache(maxsize=65536)
def _hyperplane_signs(shingle: str, dimension: int) -> np.ndarray:
    """±1 coordinates of *shingle* on *dimension* pseudo-random hyperplanes."""
    data = shingle.encode("utf-8")
    blocks = [
        hashlib.blake2b(data, digest_size=64, salt=block.to_bytes(16, "little")).digest()
        for block in range(math.ceil(dimension / _BITS_PER_BLOCK))
    ]
    bits = np.unpackbits(np.frombuffer(b"".join(blocks), dtype=np.uint8))[:dimension]
    signs = bits.astype(np.float64) * 2.0 - 1.0
    signs.setflags(write=False)
    return signs


class HashEmbedder:
    """
    Deterministic locality-sensitive hash embedder.

    Text is broken into weighted overlapping shingles (see
    :func:`memroute.intelligence.shingles`).  Every shingle hashes to a
    vector of signs, one per dimension, which acts as its projection onto a
    fixed set of random hyperplanes.  The weighted sum is normalised to unit
    length, so texts sharing many shingles end up with a high cosine
    similarity.  Empty text maps to the zero vector.
    """

    def __init__(self, dimension: int = 384) -> None:
        if dimension <= 0:
            raise ConfigurationError(f"dimension must be positive, got {dimension}")
        self._dimension = dimension

    def dimension(self) -> int:
        return self._dimension

    def embed(self, text: str) -> list[float]:
        # Repeated shingles (mostly character trigrams) are hashed and
        # projected once, with their weights summed.
        merged: dict[str, float] = {}
        for gram, weight in shingles(text):
            merged[gram] = merged.get(gram, 0.0) + weight
        if not merged:
            return [0.0] * self._dimension
        signs = np.vstack([_hyperplane_signs(gram, self._dimension) for gram in merged])
        weights = np.fromiter(merged.values(), dtype=np.float64, count=len(merged))
        vector = weights @ signs
        norm = float(np.linalg.norm(vector))
        if norm == 0.0:
            return [0.0] * self._dimension
        return (vector / norm).tolist()

    def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        return [self.embed(text) for text in texts]


# ---------------------------------------------------------------------------
# Provider-backed embedder
# ---------------------------------------------------------------------------


class ProviderEmbedder:
    """
    Embedder that delegates to a provider client.

    Batches are capped at ``batch_size`` texts per provider call.  A
    ``ProviderError`` marked retryable is retried up to ``max_attempts``
    times in total with exponential backoff plus jitter; anything else, or
    the last failed attempt, surfaces as :class:`EmbeddingFailedError`.
    """

    def __init__(
        self,
        client: ProviderClient,
        dimension: int,
        batch_size: int = 10,
        max_attempts: int = 3,
        backoff_seconds: float = 0.5,
        jitter_seconds: float = 0.25,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if batch_size <= 0 or max_attempts <= 0:
            raise ConfigurationError("batch_size and max_attempts must be positive")
        self.client = client
        self._dimension = dimension
        self.batch_size = batch_size
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.jitter_seconds = jitter_seconds
        self._sleep = sleep

        declared = self._declared_dimension()
        if declared is not None and declared != dimension:
            raise DimensionMismatchError(dimension, declared, where="provider embedder")

    def dimension(self) -> int:
        return self._dimension

    def embed(self, text: str) -> list[float]:
        return self._call([text])[0]

    def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        vectors: list[list[float]] = []
        for start in range(0, len(texts), self.batch_size):
            vectors.extend(self._call(list(texts[start:start + self.batch_size])))
        return vectors

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _declared_dimension(self) -> Optional[int]:
        probe = getattr(self.client, "declared_dimension", None)
        return probe() if callable(probe) else None

    def _call(self, batch: list[str]) -> list[list[float]]:
        for attempt in range(self.max_attempts):
            try:
                vectors = self._request(batch)
            except ProviderError as exc:
                if not exc.retryable:
                    raise EmbeddingFailedError(f"provider rejected request: {exc}") from exc
                if attempt + 1 >= self.max_attempts:
                    raise EmbeddingFailedError(
                        f"provider failed after {self.max_attempts} attempts: {exc}"
                    ) from exc
                logger.warning(
                    "Embedding attempt %d/%d failed: %s; retrying", attempt + 1, self.max_attempts, exc
                )
                self._sleep_backoff(attempt)
                continue
            return self._validate(vectors, len(batch))
        raise EmbeddingFailedError("provider returned no result")

    def _request(self, batch: list[str]) -> list[list[float]]:
        embed_batch = getattr(self.client, "embed_batch", None)
        if callable(embed_batch):
            return embed_batch(batch)
        return [self.client.embed(text) for text in batch]

    def _validate(self, vectors: list[list[float]], expected: int) -> list[list[float]]:
        if len(vectors) != expected:
            raise EmbeddingFailedError(f"provider returned {len(vectors)} vectors for {expected} texts")
        for vector in vectors:
            if len(vector) != self._dimension:
                raise DimensionMismatchError(self._dimension, len(vector), where="provider vector")
        return [[float(x) for x in vector] for vector in vectors]

    def _sleep_backoff(self, attempt: int) -> None:
        base = self.backoff_seconds * (2 ** attempt)
        jitter = random.uniform(0, self.jitter_seconds)
        self._sleep(base + jitter)


# ---------------------------------------------------------------------------
# Provider clients
# ---------------------------------------------------------------------------


class OpenAIEmbeddingClient:
    """Client for an OpenAI-compatible ``/embeddings`` endpoint."""

    RETRYABLE_STATUS = frozenset({429, 500, 502, 503, 504})

    def __init__(
        self,
        model: str = "text-embedding-3-small",
        base_url: str = "https://api.openai.com/v1",
        api_key: str | None = None,
        api_key_env: str = "OPENAI_API_KEY",
        dimensions: int | None = None,
        timeout: float = 30.0,
        _transport: httpx.BaseTransport | None = None,
    ) -> None:
        key = api_key or os.environ.get(api_key_env)
        if not key:
            raise ConfigurationError(f"embedding API key missing: set {api_key_env}")
        self.model = model
        self.dimensions = dimensions
        self._http = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout),
            headers={"Authorization": f"Bearer {key}", "Content-Type": "application/json"},
            transport=_transport,
        )

    def declared_dimension(self) -> Optional[int]:
        return self.dimensions

    def embed(self, text: str) -> list[float]:
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        body: dict[str, Any] = {"model": self.model, "input": list(texts)}
        if self.dimensions:
            body["dimensions"] = self.dimensions
        try:
            response = self._http.post("/embeddings", json=body)
        except httpx.TimeoutException as exc:
            raise ProviderError(f"request timed out: {exc}", retryable=True) from exc
        except httpx.RequestError as exc:
            raise ProviderError(f"request failed: {exc}", retryable=True) from exc

        if response.status_code in self.RETRYABLE_STATUS:
            raise ProviderError(f"HTTP {response.status_code}", retryable=True)
        if response.status_code >= 400:
            raise ProviderError(f"HTTP {response.status_code}: {response.text[:200]}")

        try:
            items = sorted(response.json()["data"], key=lambda item: item.get("index", 0))
            return [item["embedding"] for item in items]
        except (KeyError, TypeError, ValueError) as exc:
            raise ProviderError(f"malformed embedding response: {exc}") from exc

    def close(self) -> None:
        self._http.close()


class SentenceTransformerClient:
    """Local sentence-transformers model, loaded on first use."""

    def __init__(self, model_name: str = "all-MiniLM-L6-v2", _model: Any | None = None) -> None:
        self.model_name = model_name
        self._model = _model

    @property
    def model(self) -> Any:
        if self._model is None:
            from sentence_transformers import SentenceTransformer

            self._model = SentenceTransformer(self.model_name)
        return self._model

    def declared_dimension(self) -> Optional[int]:
        return self.model.get_sentence_embedding_dimension()

    def embed(self, text: str) -> list[float]:
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        try:
            vectors = self.model.encode(list(texts), convert_to_numpy=True)
        except (RuntimeError, ValueError) as exc:
            raise ProviderError(f"sentence-transformers encode failed: {exc}") from exc
        return [[float(x) for x in vector] for vector in vectors]


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def build_embedder(config: MemrouteConfig) -> Embedder:
    """Construct the embedder variant named by ``config.embedder``."""
    if config.embedder == "hash":
        return HashEmbedder(config.dimension)

    if config.embedder == "openai":
        client: ProviderClient = OpenAIEmbeddingClient(
            model=config.embedding_model,
            base_url=config.api_base_url,
            api_key_env=config.api_key_env,
            dimensions=config.dimension,
            timeout=config.embedding_timeout,
        )
    elif config.embedder == "sentence-transformers":
        client = SentenceTransformerClient(config.embedding_model)
    else:
        raise ConfigurationError(f"unknown embedder {config.embedder!r}")

    return ProviderEmbedder(
        client,
        dimension=config.dimension,
        batch_size=config.embedding_batch_size,
        max_attempts=config.embedding_max_attempts,
    )

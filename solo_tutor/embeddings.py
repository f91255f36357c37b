"""Text embedding client.

Backends are selected by ``Settings.embedding_backend``:

- ``mock``: deterministic hash-seeded random vectors, for tests and offline runs.
  Identical text (case-insensitive) always maps to the identical vector.
- ``ollama``: the ``/api/embed`` endpoint of a local Ollama server.
- ``openai``: the embeddings API; ``dimensions`` is requested explicitly so the
  vector length matches the system-wide D.

Every backend returns a float32 vector of exactly ``embedding_dim`` entries or
raises ``EmbeddingUnavailable``. There is no silent fallback to another
backend or to a zero vector.
"""

import hashlib
import logging
from typing import Optional

import numpy as np
import requests
from openai import OpenAI, OpenAIError

from .config import Settings
from .errors import EmbeddingUnavailable

logger = logging.getLogger(__name__)


def mock_embedding(text: str, dim: int) -> np.ndarray:
    """Deterministic pseudo-embedding seeded from the text hash."""
    text_norm = text.lower()
    seed = int(hashlib.md5(text_norm.encode()).hexdigest(), 16) % (2**32)
    rng = np.random.default_rng(seed)
    return rng.standard_normal(dim).astype(np.float32)


class EmbeddingClient:
    """Turns text into a fixed-length vector. Holds no per-request state."""

    def __init__(self, settings: Settings, client: Optional[OpenAI] = None):
        self.backend = settings.embedding_backend
        self.model = settings.embedding_model
        self.dim = settings.embedding_dim
        self.ollama_url = settings.ollama_url
        self.timeout = settings.provider_timeout
        self._api_key = settings.openai_api_key
        self._client = client

        if self.backend not in {"mock", "ollama", "openai"}:
            raise ValueError(f"Unknown embedding backend: {self.backend}")

    def _get_client(self) -> OpenAI:
        # Constructed lazily so the mock and ollama backends never need a key.
        if self._client is None:
            if not self._api_key:
                raise EmbeddingUnavailable("OPENAI_API_KEY is not set")
            self._client = OpenAI(api_key=self._api_key, timeout=self.timeout)
        return self._client

    def embed(self, text: str) -> np.ndarray:
        """Return the embedding for ``text``.

        Raises:
            ValueError: if ``text`` is empty. Callers skip embedding for
                image-only messages instead of embedding an empty string.
            EmbeddingUnavailable: if the provider fails or returns a vector
                of the wrong dimension.
        """
        if not text or not text.strip():
            raise ValueError("Refusing to embed empty text")

        if self.backend == "mock":
            return mock_embedding(text, self.dim)

        if self.backend == "ollama":
            raw = self._embed_ollama(text)
        else:
            raw = self._embed_openai(text)

        vec = np.asarray(raw, dtype=np.float32)
        if vec.ndim != 1 or vec.shape[0] != self.dim:
            raise EmbeddingUnavailable(
                f"{self.backend} returned embedding of shape {vec.shape}, expected ({self.dim},)"
            )
        if not np.all(np.isfinite(vec)) or not np.any(vec):
            raise EmbeddingUnavailable(f"{self.backend} returned a degenerate embedding")

        logger.debug("Embedded %d chars with %s/%s", len(text), self.backend, self.model)
        return vec

    def _embed_ollama(self, text: str):
        url = f"{self.ollama_url}/api/embed"
        try:
            resp = requests.post(
                url,
                json={"model": self.model, "input": text},
                timeout=self.timeout,
            )
            resp.raise_for_status()
            data = resp.json()
        except (requests.RequestException, ValueError) as exc:
            raise EmbeddingUnavailable(f"Ollama embedding request failed: {exc}") from exc

        if not isinstance(data, dict):
            raise EmbeddingUnavailable(f"Unexpected Ollama embed response: {type(data).__name__}")
        # /api/embed returns {"embeddings": [[...]]}; older servers {"embedding": [...]}
        if isinstance(data.get("embeddings"), list) and data["embeddings"]:
            return data["embeddings"][0]
        if isinstance(data.get("embedding"), list) and data["embedding"]:
            return data["embedding"]
        raise EmbeddingUnavailable(f"Unexpected Ollama embed response keys: {sorted(data)}")

    def _embed_openai(self, text: str):
        client = self._get_client()
        try:
            response = client.embeddings.create(
                model=self.model,
                input=text,
                dimensions=self.dim,
                encoding_format="float",
            )
        except OpenAIError as exc:
            raise EmbeddingUnavailable(f"OpenAI embedding request failed: {exc}") from exc

        if not response.data:
            raise EmbeddingUnavailable("OpenAI returned no embedding data")
        return response.data[0].embedding

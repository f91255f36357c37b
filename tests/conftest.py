"""Test configuration and helpers.

Ensures the project root (where cli.py and the solo_tutor package live) is on
sys.path so tests can reliably import them regardless of how pytest is invoked,
and provides fake providers so no test touches the network.
"""

from __future__ import annotations

import sys
from pathlib import Path

import numpy as np
import pytest

# Project root is the parent of the tests/ directory.
PROJECT_ROOT = Path(__file__).resolve().parents[1]

# Prepend to sys.path so it takes precedence over any installed packages.
project_root_str = str(PROJECT_ROOT)
if project_root_str not in sys.path:
    sys.path.insert(0, project_root_str)

from solo_tutor.config import Settings  # noqa: E402
from solo_tutor.embeddings import mock_embedding  # noqa: E402
from solo_tutor.errors import EmbeddingUnavailable  # noqa: E402
from solo_tutor.service import SoloTutor  # noqa: E402
from solo_tutor.store import ConversationStore  # noqa: E402
from solo_tutor.vector_store import VectorStore  # noqa: E402

DIM = 64


def axis(i: int, dim: int = DIM) -> np.ndarray:
    """Unit vector along axis ``i``."""
    vec = np.zeros(dim, dtype=np.float32)
    vec[i] = 1.0
    return vec


def near(i: int, similarity: float, other: int = DIM - 1, dim: int = DIM) -> np.ndarray:
    """Unit vector whose cosine similarity with ``axis(i)`` is ``similarity``."""
    vec = np.zeros(dim, dtype=np.float32)
    vec[i] = similarity
    vec[other] = np.sqrt(1.0 - similarity ** 2)
    return vec


class FakeEmbedder:
    """Embedding client with pinned vectors for chosen texts.

    Unknown texts get hash-seeded random vectors, which in 64 dimensions are
    practically never above the 0.6 similarity threshold.
    """

    def __init__(self, dim: int = DIM, vectors=None):
        self.dim = dim
        self.vectors = dict(vectors or {})
        self.fail = False
        self.calls = []

    def embed(self, text: str) -> np.ndarray:
        self.calls.append(text)
        if not text or not text.strip():
            raise ValueError("Refusing to embed empty text")
        if self.fail:
            raise EmbeddingUnavailable("embedding provider down")
        if text in self.vectors:
            return np.asarray(self.vectors[text], dtype=np.float32)
        return mock_embedding(text, self.dim)


class FakeCompleter:
    """Completion client that records prompts and returns scripted replies."""

    def __init__(self, reply: str = "Try a soft round brush and scumble the edges."):
        self.reply = reply
        self.error = None
        self.prompts = []

    def complete(self, prompt) -> str:
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return self.reply

    @property
    def last_prompt(self):
        return self.prompts[-1]


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        db_path=str(tmp_path / "tutor.db"),
        embedding_backend="mock",
        embedding_model="fake",
        embedding_dim=DIM,
        completion_backend="offline",
        long_term_top_k=5,
        short_term_limit=6,
        similarity_threshold=0.6,
        request_timeout=5.0,
    )


@pytest.fixture
def store(settings) -> ConversationStore:
    return ConversationStore(settings.db_path)


@pytest.fixture
def index() -> VectorStore:
    return VectorStore(dim=DIM)


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def completer() -> FakeCompleter:
    return FakeCompleter()


@pytest.fixture
def tutor(settings, store, index, embedder, completer) -> SoloTutor:
    return SoloTutor(
        settings=settings,
        store=store,
        index=index,
        embedder=embedder,
        completer=completer,
    )

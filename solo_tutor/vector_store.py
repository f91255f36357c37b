"""In-memory similarity index over message embeddings."""

import threading
from typing import Dict, Iterable, List, Optional, Tuple

import numpy as np

from .errors import SearchUnavailable
from .models import Message


def normalize(embedding, dim: int) -> np.ndarray:
    """Return ``embedding`` as a unit-length float32 vector of length ``dim``."""
    vec = np.asarray(embedding, dtype=np.float32)
    if vec.ndim != 1 or vec.shape[0] != dim:
        raise ValueError(f"Expected embedding of dimension {dim}, got shape {vec.shape}")
    norm = np.linalg.norm(vec)
    if norm > 0:
        vec = vec / norm
    return vec


class VectorStore:
    """Numpy-matrix-backed vector store with vectorized cosine search.

    Rows are message embeddings tagged with the owning user, the conversation
    and the message creation time. Messages without an embedding are never
    added, so they can never be returned by ``search``.

    Safe to share between threads: writers hold ``_lock`` and ``search`` scores
    a consistent snapshot taken under it.
    """

    def __init__(self, dim: int = 384):
        self.embedding_dim = dim
        self._lock = threading.RLock()
        self.vectors = np.empty((0, dim), dtype=np.float32)  # N x D, unit rows
        self.ids: List[str] = []
        self.owner_ids: List[str] = []
        self.conversation_ids: List[str] = []
        self.created_ts = np.empty((0,), dtype=np.float64)
        self.id_to_index: Dict[str, int] = {}

    def __len__(self) -> int:
        return len(self.ids)

    def __contains__(self, message_id: str) -> bool:
        return message_id in self.id_to_index

    def clear(self):
        with self._lock:
            self.vectors = np.empty((0, self.embedding_dim), dtype=np.float32)
            self.ids = []
            self.owner_ids = []
            self.conversation_ids = []
            self.created_ts = np.empty((0,), dtype=np.float64)
            self.id_to_index = {}

    def add(self, message: Message, owner_id: str):
        """Index ``message`` for ``owner_id``. Messages without embeddings are ignored."""
        if message.embedding is None:
            return
        emb = normalize(message.embedding, self.embedding_dim)
        ts = message.created_at.timestamp()

        with self._lock:
            if message.id in self.id_to_index:
                idx = self.id_to_index[message.id]
                # Copy so a snapshot held by a running search is never written to
                vectors = self.vectors.copy()
                vectors[idx] = emb
                created_ts = self.created_ts.copy()
                created_ts[idx] = ts
                owner_ids = list(self.owner_ids)
                owner_ids[idx] = owner_id
                conversation_ids = list(self.conversation_ids)
                conversation_ids[idx] = message.conversation_id
                self.vectors, self.created_ts = vectors, created_ts
                self.owner_ids, self.conversation_ids = owner_ids, conversation_ids
                return

            self.id_to_index[message.id] = len(self.ids)
            self.ids = self.ids + [message.id]
            self.owner_ids = self.owner_ids + [owner_id]
            self.conversation_ids = self.conversation_ids + [message.conversation_id]
            self.vectors = np.vstack([self.vectors, emb.reshape(1, -1)])
            self.created_ts = np.append(self.created_ts, ts)

    def load(self, records: Iterable[Tuple[Message, str]]) -> int:
        """Bulk-add ``(message, owner_id)`` pairs; returns how many were indexed."""
        count = 0
        with self._lock:
            for message, owner_id in records:
                if message.embedding is not None:
                    self.add(message, owner_id)
                    count += 1
        return count

    def remove(self, message_ids: Iterable[str]) -> int:
        """Drop the given messages from the index; unknown ids are ignored."""
        with self._lock:
            drop = sorted({self.id_to_index[mid] for mid in message_ids if mid in self.id_to_index})
            if not drop:
                return 0

            keep = np.setdiff1d(np.arange(len(self.ids)), drop)
            self.vectors = self.vectors[keep]
            self.created_ts = self.created_ts[keep]
            self.ids = [self.ids[i] for i in keep]
            self.owner_ids = [self.owner_ids[i] for i in keep]
            self.conversation_ids = [self.conversation_ids[i] for i in keep]
            self.id_to_index = {mid: i for i, mid in enumerate(self.ids)}
            return len(drop)

    def search(
        self,
        query_emb: np.ndarray,
        owner_id: str,
        top_k: int = 5,
        min_score: Optional[float] = None,
        exclude_conversation_id: Optional[str] = None,
    ) -> List[Tuple[str, float]]:
        """Return up to ``top_k`` ``(message_id, score)`` pairs for ``owner_id``.

        Ranked by cosine similarity descending, ties broken by newer message
        first. Only scores strictly above ``min_score`` are kept. Any failure
        is raised as ``SearchUnavailable``.
        """
        if top_k <= 0:
            return []

        # Writers replace these containers rather than mutating them in place
        with self._lock:
            vectors = self.vectors
            created_ts = self.created_ts
            ids = self.ids
            owner_ids = self.owner_ids
            conversation_ids = self.conversation_ids

        if not ids:
            return []

        try:
            query = normalize(query_emb, self.embedding_dim)

            # Single BLAS-backed matrix.dot(query) for all similarities
            scores = np.clip(vectors.dot(query), -1.0, 1.0)

            mask = np.array([owner == owner_id for owner in owner_ids], dtype=bool)
            if exclude_conversation_id is not None:
                mask &= np.array(
                    [cid != exclude_conversation_id for cid in conversation_ids], dtype=bool
                )
            if min_score is not None:
                mask &= scores > min_score

            candidates = np.flatnonzero(mask)
            if candidates.size == 0:
                return []

            # lexsort uses the last key as primary: score desc, then recency desc
            order = np.lexsort((-created_ts[candidates], -scores[candidates]))
            top = candidates[order[:top_k]]
        except ValueError as exc:
            raise SearchUnavailable(f"Vector search failed: {exc}") from exc
        return [(ids[idx], float(scores[idx])) for idx in top]

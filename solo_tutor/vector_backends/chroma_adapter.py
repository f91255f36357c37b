"""ChromaDB adapter implementing the VectorStore API."""

import logging
from typing import Iterable, List, Optional, Tuple

import numpy as np

from ..errors import SearchUnavailable
from ..models import Message
from ..vector_store import normalize

logger = logging.getLogger(__name__)


class ChromaAdapter:
    """Chroma-backed similarity index compatible with VectorStore.

    Implements the API used by the fusion engine and committer:
    - add(message, owner_id)
    - remove(message_ids)
    - search(query_emb, owner_id, top_k, min_score, exclude_conversation_id)

    Uses chromadb.PersistentClient, so the index survives restarts without
    being rebuilt from the conversation store. Chroma cosine distances are
    converted into similarity scores (1 - distance).
    """

    def __init__(self, dim: int = 384, persist_dir: str = "./chroma_db",
                 collection_name: str = "message_embeddings"):
        try:
            import chromadb
        except ImportError:
            raise ImportError(
                "chromadb is not installed. Install it with: pip install 'solo-tutor[chroma]'"
            )

        self.embedding_dim = dim
        self.persist_dir = persist_dir
        self.client = chromadb.PersistentClient(path=self.persist_dir)
        self.collection_name = collection_name
        self.collection = self.client.get_or_create_collection(
            name=collection_name,
            metadata={"hnsw:space": "cosine"},
        )

    def __len__(self) -> int:
        return self.collection.count()

    def clear(self):
        """Drop every indexed vector, e.g. after the embedding space changed."""
        self.client.delete_collection(self.collection_name)
        self.collection = self.client.get_or_create_collection(
            name=self.collection_name,
            metadata={"hnsw:space": "cosine"},
        )

    def add(self, message: Message, owner_id: str):
        if message.embedding is None:
            return
        vec = normalize(message.embedding, self.embedding_dim)
        self.collection.upsert(
            ids=[message.id],
            embeddings=[vec.tolist()],
            metadatas=[{
                "owner_id": owner_id,
                "conversation_id": message.conversation_id,
                "created_ts": message.created_at.timestamp(),
            }],
        )

    def load(self, records: Iterable[Tuple[Message, str]]) -> int:
        count = 0
        for message, owner_id in records:
            if message.embedding is not None:
                self.add(message, owner_id)
                count += 1
        return count

    def remove(self, message_ids: Iterable[str]) -> int:
        ids = list(message_ids)
        if ids:
            self.collection.delete(ids=ids)
        return len(ids)

    def search(
        self,
        query_emb: np.ndarray,
        owner_id: str,
        top_k: int = 5,
        min_score: Optional[float] = None,
        exclude_conversation_id: Optional[str] = None,
    ) -> List[Tuple[str, float]]:
        if top_k <= 0:
            return []

        where = {"owner_id": owner_id}
        if exclude_conversation_id is not None:
            where = {"$and": [
                {"owner_id": owner_id},
                {"conversation_id": {"$ne": exclude_conversation_id}},
            ]}

        try:
            query_vec = normalize(query_emb, self.embedding_dim)
            total = self.collection.count()
            if total == 0:
                return []
            # Query more to leave room for threshold filtering and tie-breaking
            results = self.collection.query(
                query_embeddings=[query_vec.tolist()],
                n_results=min(max(top_k * 10, top_k), 100, total),
                where=where,
                include=["distances", "metadatas"],
            )
        except Exception as exc:
            raise SearchUnavailable(f"Chroma query failed: {exc}") from exc

        if not results or not results["ids"] or not results["ids"][0]:
            return []

        matches = []
        for doc_id, distance, meta in zip(
            results["ids"][0], results["distances"][0], results["metadatas"][0]
        ):
            similarity = max(-1.0, min(1.0, 1.0 - float(distance)))
            if min_score is not None and similarity <= min_score:
                continue
            matches.append((doc_id, similarity, float((meta or {}).get("created_ts", 0.0))))

        matches.sort(key=lambda m: (m[1], m[2]), reverse=True)
        return [(doc_id, score) for doc_id, score, _ in matches[:top_k]]

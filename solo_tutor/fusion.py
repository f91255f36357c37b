"""Memory fusion: long-term similarity recall merged with short-term recent turns."""

import asyncio
import logging
from typing import List, Optional, Tuple

import numpy as np

from .config import Settings
from .embeddings import EmbeddingClient
from .errors import EmbeddingUnavailable, PersistenceFailure, SearchUnavailable
from .models import FusedContext, Message, RetrievedMemory
from .store import ConversationStore

logger = logging.getLogger(__name__)


class MemoryFusionEngine:
    """Builds the FusedContext for one chat turn.

    Long-term memory is a similarity search over every embedded message the
    user owns, across all conversations. Short-term memory is the last N
    messages of the active conversation. The two lookups are independent and
    run concurrently.

    Long-term memory is optional: if embedding or search fails the turn goes
    ahead with short-term memory only. Short-term memory is required, so a
    ``PersistenceFailure`` from the store propagates.
    """

    def __init__(self, embedder: EmbeddingClient, index, store: ConversationStore,
                 settings: Settings):
        self.embedder = embedder
        self.index = index
        self.store = store
        self.top_k = settings.long_term_top_k
        self.recent_limit = settings.short_term_limit
        self.similarity_threshold = settings.similarity_threshold
        self.exclude_active = settings.exclude_active_conversation

    async def fuse(self, conversation_id: str, user_id: str, query_text: str) -> FusedContext:
        (long_term, query_vec, degraded), short_term = await asyncio.gather(
            self._long_term(conversation_id, user_id, query_text),
            self._short_term(conversation_id),
        )

        # A message in both sets stays in short-term only
        recent_ids = {m.id for m in short_term}
        long_term_only = [item for item in long_term if item.message.id not in recent_ids]

        if len(long_term_only) != len(long_term):
            logger.debug(
                "Dropped %d long-term hits already in recent context",
                len(long_term) - len(long_term_only),
            )

        return FusedContext(
            long_term_only=long_term_only,
            short_term=short_term,
            degraded=degraded,
            query_embedding=query_vec,
        )

    async def _short_term(self, conversation_id: str) -> List[Message]:
        messages = await asyncio.to_thread(self.store.recent, conversation_id, self.recent_limit)
        logger.debug("Short-term memory: %d messages", len(messages))
        return messages

    async def _long_term(
        self, conversation_id: str, user_id: str, query_text: str
    ) -> Tuple[List[RetrievedMemory], Optional[np.ndarray], bool]:
        # Image-only turn: nothing to embed, rely on recent context
        if not query_text.strip():
            return [], None, False

        query_vec = None
        try:
            query_vec = await asyncio.to_thread(self.embedder.embed, query_text)
            hits = await asyncio.to_thread(
                self.index.search,
                query_vec,
                user_id,
                top_k=self.top_k,
                min_score=self.similarity_threshold,
                exclude_conversation_id=conversation_id if self.exclude_active else None,
            )
            messages = await asyncio.to_thread(
                self.store.get_messages_by_ids, [mid for mid, _ in hits]
            )
        except (EmbeddingUnavailable, SearchUnavailable, PersistenceFailure) as exc:
            logger.warning("Long-term memory unavailable, using recent context only: %s", exc)
            return [], query_vec, True
        except Exception:
            # The index is pluggable; any failure here still only costs long-term recall
            logger.exception("Long-term retrieval failed unexpectedly, using recent context only")
            return [], query_vec, True

        # Index entries whose message has since been deleted are skipped
        long_term = [
            RetrievedMemory(message=messages[mid], score=score)
            for mid, score in hits
            if mid in messages
        ]
        for item in long_term:
            logger.debug("Recalled %s (similarity %.4f)", item.message.id, item.score)
        return long_term, query_vec, False

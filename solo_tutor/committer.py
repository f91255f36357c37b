"""Persistence of a completed chat turn."""

import asyncio
import logging
from typing import Optional, Tuple

import numpy as np

from .embeddings import EmbeddingClient
from .errors import EmbeddingUnavailable
from .models import Message, Role
from .store import ConversationStore

logger = logging.getLogger(__name__)


class PersistenceCommitter:
    """Writes the user message and the assistant reply, each with its embedding.

    The user message is appended before the assistant reply is embedded or
    written, so an interrupted commit can leave an unanswered question but
    never an answer without its question. An embedding failure only makes
    that message invisible to future similarity search; the message itself is
    still stored. A failed append raises ``PersistenceFailure``.
    """

    def __init__(self, embedder: EmbeddingClient, store: ConversationStore, index):
        self.embedder = embedder
        self.store = store
        self.index = index

    async def commit(
        self,
        conversation_id: str,
        owner_id: str,
        query_text: str,
        response_text: str,
        image_ref: Optional[str] = None,
        query_embedding: Optional[np.ndarray] = None,
    ) -> Tuple[Message, Message]:
        # Reuse the retrieval vector when there is one; it is the embedding of the same text
        user_embedding = query_embedding
        if user_embedding is None:
            user_embedding = await self._embed_or_none(query_text)
        user_message = await asyncio.to_thread(
            self.store.append, conversation_id, Role.USER, query_text, image_ref, user_embedding
        )
        self._index(user_message, owner_id)

        assistant_embedding = await self._embed_or_none(response_text)
        assistant_message = await asyncio.to_thread(
            self.store.append, conversation_id, Role.ASSISTANT, response_text, None,
            assistant_embedding,
        )
        self._index(assistant_message, owner_id)

        logger.info(
            "Committed turn in %s (user %s embedded=%s, assistant %s embedded=%s)",
            conversation_id,
            user_message.id, user_message.has_embedding,
            assistant_message.id, assistant_message.has_embedding,
        )
        return user_message, assistant_message

    async def _embed_or_none(self, text: str) -> Optional[np.ndarray]:
        if not text.strip():
            return None
        try:
            return await asyncio.to_thread(self.embedder.embed, text)
        except EmbeddingUnavailable as exc:
            logger.warning("Storing message without embedding: %s", exc)
            return None

    def _index(self, message: Message, owner_id: str):
        if message.embedding is None:
            return
        try:
            self.index.add(message, owner_id)
        except Exception:
            # The message is durable; a backfill with reindexing restores visibility
            logger.exception("Failed to index message %s", message.id)

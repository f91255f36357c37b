"""Embedding maintenance: backfill missing embeddings and rebuild the index."""

import logging
from typing import Dict, Optional

from .embeddings import EmbeddingClient
from .errors import EmbeddingUnavailable
from .store import ConversationStore

logger = logging.getLogger(__name__)


def backfill_embeddings(
    store: ConversationStore,
    embedder: EmbeddingClient,
    index,
    user_id: Optional[str] = None,
    limit: Optional[int] = None,
) -> Dict[str, int]:
    """Embed messages stored without an embedding and make them searchable.

    Covers messages saved while the embedding provider was down and every
    message after the embedding space changed. Messages that still fail to
    embed stay as they are and are counted as skipped.
    """
    pending = store.messages_missing_embeddings(user_id=user_id, limit=limit)
    owners = {}
    embedded = 0
    skipped = 0

    for message in pending:
        try:
            vec = embedder.embed(message.content)
        except EmbeddingUnavailable as exc:
            logger.warning("Could not embed message %s: %s", message.id, exc)
            skipped += 1
            continue

        if not store.set_embedding(message.id, vec):
            # Embedded concurrently or deleted since it was listed
            skipped += 1
            continue

        if message.conversation_id not in owners:
            conversation = store.get_conversation(message.conversation_id)
            owners[message.conversation_id] = conversation.user_id if conversation else None
        owner_id = owners[message.conversation_id]
        if owner_id is not None:
            message.embedding = vec
            index.add(message, owner_id)
        embedded += 1

    logger.info("Backfill: %d pending, %d embedded, %d skipped", len(pending), embedded, skipped)
    return {"pending": len(pending), "embedded": embedded, "skipped": skipped}


def reindex(store: ConversationStore, index) -> int:
    """Rebuild ``index`` from every embedded message in the store."""
    index.clear()
    count = index.load(store.embedded_messages())
    logger.info("Reindexed %d messages", count)
    return count

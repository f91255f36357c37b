"""Chat turn pipeline and conversation management for the solo tutor.

One turn runs as a sequence of awaited stages:

    resolve conversation -> fuse memory -> assemble prompt -> complete -> commit

Retrieval and completion share a single timeout. The commit only starts after
a successful completion, so a failure or timeout before that point leaves the
stores untouched.
"""

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional, Union

from .committer import PersistenceCommitter
from .completion import CompletionClient
from .config import Settings
from .embeddings import EmbeddingClient
from .errors import ConversationNotFound, InvalidRequest, TutorError, USER_FACING_ERROR
from .fusion import MemoryFusionEngine
from .models import ChatRequest, ChatResponse, Conversation, FusedContext, Message, RagDetails
from .prompt import PromptAssembler
from .store import ConversationStore
from .vector_store import VectorStore

logger = logging.getLogger(__name__)


def build_index(settings: Settings):
    """Create the similarity index selected by ``VECTOR_DB``."""
    if settings.vector_backend == "chroma":
        # lazy import so chromadb is optional
        try:
            from .vector_backends.chroma_adapter import ChromaAdapter
            return ChromaAdapter(dim=settings.embedding_dim, persist_dir=settings.chroma_persist_dir)
        except Exception as exc:
            logger.warning("Failed to initialize Chroma backend, falling back to in-memory VectorStore: %s", exc)
    return VectorStore(dim=settings.embedding_dim)


class SoloTutor:
    """Entry point for chat turns and conversation bookkeeping."""

    def __init__(
        self,
        settings: Settings,
        store: ConversationStore,
        index,
        embedder: EmbeddingClient,
        completer: CompletionClient,
        assembler: Optional[PromptAssembler] = None,
    ):
        self.settings = settings
        self.store = store
        self.index = index
        self.embedder = embedder
        self.completer = completer
        self.assembler = assembler or PromptAssembler(max_context_chars=settings.max_context_chars)
        self.fusion = MemoryFusionEngine(embedder, index, store, settings)
        self.committer = PersistenceCommitter(embedder, store, index)

    @classmethod
    def from_settings(cls, settings: Settings) -> "SoloTutor":
        """Wire up real components and bring the index in line with the store."""
        store = ConversationStore(settings.db_path)
        invalidated = store.ensure_embedding_space(settings.embedding_model, settings.embedding_dim)

        index = build_index(settings)
        if isinstance(index, VectorStore):
            loaded = index.load(store.embedded_messages())
            logger.info("Loaded %d message embeddings into the in-memory index", loaded)
        elif invalidated:
            index.clear()

        return cls(
            settings=settings,
            store=store,
            index=index,
            embedder=EmbeddingClient(settings),
            completer=CompletionClient(settings),
        )

    # -- chat turns ----------------------------------------------------------

    async def handle(self, request: Union[ChatRequest, Dict[str, Any]]) -> ChatResponse:
        """Run one chat turn. Never raises for pipeline failures."""
        started = time.monotonic()

        def elapsed_ms() -> int:
            return int((time.monotonic() - started) * 1000)

        try:
            if not isinstance(request, ChatRequest):
                request = ChatRequest.from_dict(request)
        except InvalidRequest as exc:
            logger.info("Rejected chat request: %s", exc)
            return ChatResponse(success=False, error=str(exc), error_kind="InvalidRequest",
                                processing_time_ms=elapsed_ms())

        conversation_id = request.conversation_id
        try:
            conversation = await asyncio.to_thread(self._resolve_conversation, request)
            conversation_id = conversation.id

            context, reply = await asyncio.wait_for(
                self._generate(conversation, request),
                timeout=self.settings.request_timeout,
            )

            # Shielded so a caller that gives up mid-commit does not cut it short
            user_message, assistant_message = await asyncio.shield(self.committer.commit(
                conversation.id,
                conversation.user_id,
                request.query_text,
                reply,
                image_ref=request.image_ref,
                query_embedding=context.query_embedding,
            ))
        except asyncio.TimeoutError:
            logger.error(
                "Chat turn in %s timed out after %.0fs", conversation_id, self.settings.request_timeout
            )
            return ChatResponse(success=False, error=USER_FACING_ERROR, error_kind="TimeoutError",
                                conversation_id=conversation_id, processing_time_ms=elapsed_ms())
        except TutorError as exc:
            logger.error("Chat turn in %s failed (%s): %s", conversation_id, type(exc).__name__, exc)
            return ChatResponse(success=False, error=USER_FACING_ERROR,
                                error_kind=type(exc).__name__, conversation_id=conversation_id,
                                processing_time_ms=elapsed_ms())

        processing_ms = elapsed_ms()
        logger.info("Chat turn in %s completed in %d ms", conversation.id, processing_ms)
        return ChatResponse(
            success=True,
            user_message=user_message,
            assistant_message=assistant_message,
            conversation_id=conversation.id,
            processing_time_ms=processing_ms,
            rag_details=RagDetails.from_context(context, self.settings.similarity_threshold),
        )

    async def _generate(self, conversation: Conversation, request: ChatRequest):
        context = await self.fusion.fuse(conversation.id, conversation.user_id, request.query_text)
        logger.info(
            "Fused context for %s: %d recalled, %d recent%s",
            conversation.id,
            len(context.long_term_only),
            len(context.short_term),
            " (long-term degraded)" if context.degraded else "",
        )
        prompt = self.assembler.assemble(context, request.query_text, request.image_ref)
        reply = await asyncio.to_thread(self.completer.complete, prompt)
        return context, reply

    def _resolve_conversation(self, request: ChatRequest) -> Conversation:
        if request.conversation_id is None:
            return self.store.get_or_create_default(request.user_id)
        conversation = self.store.get_conversation(request.conversation_id)
        if conversation is None or conversation.user_id != request.user_id:
            raise ConversationNotFound(
                f"Conversation {request.conversation_id} not found for user {request.user_id}"
            )
        return conversation

    async def explain(self, user_id: str, query_text: str,
                      conversation_id: Optional[str] = None) -> FusedContext:
        """Return the fused context a message would get, without calling the model."""
        request = ChatRequest(user_id=user_id, message=query_text, conversation_id=conversation_id)
        conversation = await asyncio.to_thread(self._resolve_conversation, request)
        return await self.fusion.fuse(conversation.id, user_id, request.query_text)

    # -- conversation management ---------------------------------------------

    def create_conversation(self, user_id: str, title: Optional[str] = None) -> Conversation:
        return self.store.create_conversation(user_id, title)

    def list_conversations(self, user_id: str) -> List[Conversation]:
        return self.store.list_conversations(user_id)

    def get_history(self, conversation_id: str, user_id: str) -> List[Message]:
        self._owned(conversation_id, user_id)
        return self.store.get_messages(conversation_id)

    def rename_conversation(self, conversation_id: str, user_id: str, title: str) -> Conversation:
        self._owned(conversation_id, user_id)
        return self.store.update_title(conversation_id, title.strip() or None)

    def delete_conversation(self, conversation_id: str, user_id: str) -> int:
        """Delete a conversation with its messages; returns the number of messages removed."""
        self._owned(conversation_id, user_id)
        message_ids = self.store.delete_conversation(conversation_id)
        self.index.remove(message_ids)
        return len(message_ids)

    def _owned(self, conversation_id: str, user_id: str) -> Conversation:
        conversation = self.store.get_conversation(conversation_id)
        if conversation is None or conversation.user_id != user_id:
            raise ConversationNotFound(f"Conversation {conversation_id} not found for user {user_id}")
        return conversation

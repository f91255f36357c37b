"""Data model for conversations, messages and per-request derived records."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

import numpy as np

from .errors import InvalidRequest


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


@dataclass
class Conversation:
    id: str
    user_id: str
    title: Optional[str]
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "title": self.title,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class Message:
    """One turn in a conversation.

    ``embedding`` is None until computed and is set at most once. It is derived
    from ``content`` only; ``image_ref`` is an opaque URI that is never embedded.
    """

    id: str
    conversation_id: str
    role: Role
    content: str
    created_at: datetime
    image_ref: Optional[str] = None
    embedding: Optional[np.ndarray] = field(default=None, repr=False)

    @property
    def has_embedding(self) -> bool:
        return self.embedding is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "conversation_id": self.conversation_id,
            "role": self.role.value,
            "content": self.content,
            "image_ref": self.image_ref,
            "has_embedding": self.has_embedding,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class RetrievedMemory:
    """A message surfaced by similarity search, with its score against the query."""

    message: Message
    score: float


@dataclass
class FusedContext:
    """Deduplicated long-term and short-term memory for one request.

    ``long_term_only`` is ranked by similarity (ties: newer first) and never
    contains a message that is also in ``short_term``. ``short_term`` is
    chronological.
    """

    long_term_only: List[RetrievedMemory] = field(default_factory=list)
    short_term: List[Message] = field(default_factory=list)
    # True when long-term retrieval was skipped because a provider failed.
    degraded: bool = False
    query_embedding: Optional[np.ndarray] = field(default=None, repr=False)

    @property
    def is_empty(self) -> bool:
        return not self.long_term_only and not self.short_term

    def __len__(self) -> int:
        return len(self.long_term_only) + len(self.short_term)

    def message_ids(self) -> List[str]:
        return [m.message.id for m in self.long_term_only] + [m.id for m in self.short_term]


_REQUEST_ALIASES = {
    "conversationId": "conversation_id",
    "userId": "user_id",
    "imageRef": "image_ref",
}


@dataclass(frozen=True)
class ChatRequest:
    """One inbound chat turn. ``conversation_id=None`` resolves the user's default."""

    user_id: str
    message: str = ""
    conversation_id: Optional[str] = None
    image_ref: Optional[str] = None

    def __post_init__(self):
        if not isinstance(self.user_id, str) or not self.user_id.strip():
            raise InvalidRequest("user_id is required")
        if not isinstance(self.message, str):
            raise InvalidRequest("message must be a string")
        if self.conversation_id is not None and not isinstance(self.conversation_id, str):
            raise InvalidRequest("conversation_id must be a string or null")
        if self.image_ref is not None and not isinstance(self.image_ref, str):
            raise InvalidRequest("image_ref must be a string or null")
        if not self.message.strip() and not self.image_ref:
            raise InvalidRequest("message or image_ref is required")

    @property
    def query_text(self) -> str:
        return self.message.strip()

    @classmethod
    def from_dict(cls, payload: Optional[Dict[str, Any]]) -> "ChatRequest":
        """Build a request from a JSON-style payload (snake_case or camelCase keys)."""
        if not payload:
            raise InvalidRequest("empty request body")
        if not isinstance(payload, dict):
            raise InvalidRequest("request body must be an object")

        data = {_REQUEST_ALIASES.get(k, k): v for k, v in payload.items()}
        if "user_id" not in data:
            raise InvalidRequest("user_id is required")
        return cls(
            user_id=data["user_id"],
            message=data.get("message") or "",
            conversation_id=data.get("conversation_id") or None,
            image_ref=data.get("image_ref") or None,
        )


@dataclass
class RagDetails:
    relevant_history_count: int
    recent_conversation_count: int
    similarity_threshold: float
    degraded: bool
    relevant_messages: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def context_used(self) -> bool:
        return self.relevant_history_count > 0 or self.recent_conversation_count > 0

    @property
    def context_type(self) -> str:
        if self.relevant_history_count > 0:
            return "RAG with history"
        if self.recent_conversation_count > 0:
            return "Recent only"
        return "None"

    @classmethod
    def from_context(cls, context: FusedContext, threshold: float) -> "RagDetails":
        return cls(
            relevant_history_count=len(context.long_term_only),
            recent_conversation_count=len(context.short_term),
            similarity_threshold=threshold,
            degraded=context.degraded,
            relevant_messages=[
                {
                    "id": item.message.id,
                    "content": item.message.content,
                    "similarity": item.score,
                    "created_at": item.message.created_at.isoformat(),
                }
                for item in context.long_term_only
            ],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "relevant_history_count": self.relevant_history_count,
            "recent_conversation_count": self.recent_conversation_count,
            "similarity_threshold": self.similarity_threshold,
            "context_used": self.context_used,
            "context_type": self.context_type,
            "degraded": self.degraded,
            "relevant_messages": self.relevant_messages,
        }


@dataclass
class ChatResponse:
    success: bool
    user_message: Optional[Message] = None
    assistant_message: Optional[Message] = None
    error: Optional[str] = None
    # Exception class name behind a failure; for logs and diagnostics only.
    error_kind: Optional[str] = None
    conversation_id: Optional[str] = None
    processing_time_ms: int = 0
    rag_details: Optional[RagDetails] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "userMessage": self.user_message.to_dict() if self.user_message else None,
            "assistantMessage": self.assistant_message.to_dict() if self.assistant_message else None,
            "error": self.error,
            "error_kind": self.error_kind,
            "conversation_id": self.conversation_id,
            "processing_time_ms": self.processing_time_ms,
            "rag_details": self.rag_details.to_dict() if self.rag_details else None,
        }

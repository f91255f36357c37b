"""Conversational memory and retrieval pipeline for the solo art tutor."""

from .config import Settings
from .errors import (
    CompletionRejected,
    CompletionUnavailable,
    ConversationNotFound,
    EmbeddingUnavailable,
    InvalidRequest,
    PersistenceFailure,
    SearchUnavailable,
    TutorError,
)
from .models import ChatRequest, ChatResponse, Conversation, FusedContext, Message, Role
from .service import SoloTutor

__all__ = [
    "Settings",
    "SoloTutor",
    "ChatRequest",
    "ChatResponse",
    "Conversation",
    "FusedContext",
    "Message",
    "Role",
    "TutorError",
    "InvalidRequest",
    "ConversationNotFound",
    "EmbeddingUnavailable",
    "SearchUnavailable",
    "PersistenceFailure",
    "CompletionUnavailable",
    "CompletionRejected",
]

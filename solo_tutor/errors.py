"""Error taxonomy for the tutor memory pipeline.

Only failures on the required path (short-term fetch, completion, persistence)
reach the caller. Embedding and search failures are recovered where they
happen and only logged.
"""

# Shown to the user for every failed turn; the class name is kept for diagnosis.
USER_FACING_ERROR = "Couldn't get a response, please try again."


class TutorError(Exception):
    """Base class for all pipeline errors."""


class InvalidRequest(TutorError, ValueError):
    """Inbound request failed boundary validation."""


class ConversationNotFound(TutorError):
    """Conversation does not exist or is not owned by the requesting user."""


class EmbeddingUnavailable(TutorError):
    """Embedding provider errored, timed out, or returned an unusable vector."""


class SearchUnavailable(TutorError):
    """Similarity index query failed."""


class PersistenceFailure(TutorError):
    """Reading from or appending to the conversation log failed."""


class CompletionUnavailable(TutorError):
    """Completion provider errored or timed out."""


class CompletionRejected(TutorError):
    """Completion provider refused the request (content policy, malformed input)."""

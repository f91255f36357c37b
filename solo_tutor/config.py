"""Runtime settings read from environment variables.

Entry points call ``dotenv.load_dotenv()`` first so values from a local
``.env`` file are picked up; tests build ``Settings`` directly.
"""

import os
from dataclasses import dataclass, replace
from typing import Optional

_DEFAULT_EMBED_MODELS = {
    "openai": "text-embedding-3-large",
    "ollama": "qwen3-embedding:0.6b",
    "mock": "mock-hash",
}

_DEFAULT_CHAT_MODELS = {
    "openai": "gpt-4o",
    "ollama": "llama3.2-vision",
    "offline": "offline",
}


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except ValueError:
        return default


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    db_path: str = os.path.join("data", "solo_tutor.db")

    # Embeddings
    embedding_backend: str = "mock"
    embedding_model: str = "mock-hash"
    embedding_dim: int = 384

    # Completions
    completion_backend: str = "offline"
    completion_model: str = "offline"
    temperature: float = 0.8
    max_tokens: int = 500

    openai_api_key: Optional[str] = None
    ollama_url: str = "http://localhost:11434"
    provider_timeout: float = 30.0

    # Similarity index
    vector_backend: str = "memory"
    chroma_persist_dir: str = "./chroma_db"

    # Memory fusion
    long_term_top_k: int = 5
    short_term_limit: int = 6
    similarity_threshold: float = 0.6
    exclude_active_conversation: bool = False
    max_context_chars: int = 0

    request_timeout: float = 60.0

    @classmethod
    def from_env(cls) -> "Settings":
        embedding_backend = os.getenv("AI_EMBEDDING_BACKEND", "mock").lower()

        if os.getenv("AI_MEMORY_OFFLINE"):
            completion_backend = "offline"
        else:
            completion_backend = os.getenv("AI_BACKEND", "openai").lower()

        return cls(
            db_path=os.getenv("TUTOR_DB_PATH", cls.db_path),
            embedding_backend=embedding_backend,
            embedding_model=os.getenv(
                "AI_EMBED_MODEL", _DEFAULT_EMBED_MODELS.get(embedding_backend, "mock-hash")
            ),
            embedding_dim=_env_int("EMBEDDING_DIM", cls.embedding_dim),
            completion_backend=completion_backend,
            completion_model=os.getenv(
                "AI_MODEL", _DEFAULT_CHAT_MODELS.get(completion_backend, "gpt-4o")
            ),
            temperature=_env_float("AI_TEMPERATURE", cls.temperature),
            max_tokens=_env_int("AI_MAX_TOKENS", cls.max_tokens),
            openai_api_key=os.getenv("OPENAI_API_KEY") or None,
            ollama_url=os.getenv("OLLAMA_URL", cls.ollama_url).rstrip("/"),
            provider_timeout=_env_float("PROVIDER_TIMEOUT", cls.provider_timeout),
            vector_backend=os.getenv("VECTOR_DB", "memory").lower(),
            chroma_persist_dir=os.getenv("CHROMA_PERSIST_DIR", cls.chroma_persist_dir),
            long_term_top_k=_env_int("LONG_TERM_TOP_K", cls.long_term_top_k),
            short_term_limit=_env_int("SHORT_TERM_LIMIT", cls.short_term_limit),
            similarity_threshold=_env_float("SIMILARITY_THRESHOLD", cls.similarity_threshold),
            exclude_active_conversation=_env_bool("EXCLUDE_ACTIVE_CONVERSATION"),
            max_context_chars=_env_int("MAX_CONTEXT_CHARS", cls.max_context_chars),
            request_timeout=_env_float("REQUEST_TIMEOUT", cls.request_timeout),
        )

    def with_overrides(self, **changes) -> "Settings":
        return replace(self, **changes)

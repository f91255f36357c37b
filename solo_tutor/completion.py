"""Chat completion client for the tutor.

Backends are selected by ``Settings.completion_backend``:

- ``openai``: Chat Completions with multimodal user content.
- ``ollama``: ``/api/chat`` on a local Ollama server.
- ``offline``: no network; echoes a short summary of the prompt. Used by tests
  and when ``AI_MEMORY_OFFLINE`` is set.

Failures raise ``CompletionUnavailable`` (provider error, timeout, empty reply)
or ``CompletionRejected`` (content policy or malformed request). Neither is
retried here; retry policy belongs to the caller.
"""

import logging
from typing import Optional

import openai
import requests
from openai import OpenAI

from .config import Settings
from .errors import CompletionRejected, CompletionUnavailable
from .prompt import PromptRequest

logger = logging.getLogger(__name__)

# Provider responses that mean "this request will never succeed as sent".
_REJECTED_ERRORS = (
    openai.BadRequestError,
    openai.PermissionDeniedError,
    openai.UnprocessableEntityError,
)


class CompletionClient:
    def __init__(self, settings: Settings, client: Optional[OpenAI] = None):
        self.backend = settings.completion_backend
        self.model = settings.completion_model
        self.temperature = settings.temperature
        self.max_tokens = settings.max_tokens
        self.ollama_url = settings.ollama_url
        self.timeout = settings.provider_timeout
        self._api_key = settings.openai_api_key
        self._client = client

        if self.backend not in {"openai", "ollama", "offline"}:
            raise ValueError(f"Unknown completion backend: {self.backend}")

    def _get_client(self) -> OpenAI:
        if self._client is None:
            if not self._api_key:
                raise CompletionUnavailable("OPENAI_API_KEY must be set or AI_MEMORY_OFFLINE enabled")
            self._client = OpenAI(api_key=self._api_key, timeout=self.timeout)
        return self._client

    def complete(self, prompt: PromptRequest) -> str:
        if self.backend == "offline":
            text = self._complete_offline(prompt)
        elif self.backend == "ollama":
            text = self._complete_ollama(prompt)
        else:
            text = self._complete_openai(prompt)

        if not text or not text.strip():
            raise CompletionUnavailable(f"{self.backend} returned an empty completion")
        logger.debug("Completion from %s/%s: %d chars", self.backend, self.model, len(text))
        return text.strip()

    def _complete_offline(self, prompt: PromptRequest) -> str:
        query = (prompt.user_text or "image")[:50]
        if prompt.history:
            return (
                f"[offline-test] Using {len(prompt.recalled)} recalled and "
                f"{len(prompt.recent)} recent turns for: {query}"
            )
        return f"[offline-test] No context for: {query}"

    def _complete_openai(self, prompt: PromptRequest) -> str:
        client = self._get_client()
        try:
            response = client.chat.completions.create(
                model=self.model,
                messages=prompt.to_openai_messages(),
                temperature=self.temperature,
                max_tokens=self.max_tokens,
            )
        except _REJECTED_ERRORS as exc:
            raise CompletionRejected(f"OpenAI rejected the request: {exc}") from exc
        except openai.OpenAIError as exc:
            raise CompletionUnavailable(f"OpenAI chat request failed: {exc}") from exc

        if not response.choices:
            raise CompletionUnavailable("OpenAI returned no choices")
        choice = response.choices[0]
        if getattr(choice, "finish_reason", None) == "content_filter":
            raise CompletionRejected("OpenAI content filter blocked the completion")
        return choice.message.content or ""

    def _complete_ollama(self, prompt: PromptRequest) -> str:
        url = f"{self.ollama_url}/api/chat"
        payload = {
            "model": self.model,
            "messages": prompt.to_ollama_messages(),
            "stream": False,
            "options": {"temperature": self.temperature, "num_predict": self.max_tokens},
        }
        try:
            resp = requests.post(url, json=payload, timeout=self.timeout)
            resp.raise_for_status()
            data = resp.json()
        except requests.HTTPError as exc:
            status = exc.response.status_code if exc.response is not None else None
            if status is not None and 400 <= status < 500 and status not in (408, 429):
                raise CompletionRejected(f"Ollama rejected the request ({status})") from exc
            raise CompletionUnavailable(f"Ollama chat request failed: {exc}") from exc
        except (requests.RequestException, ValueError) as exc:
            raise CompletionUnavailable(f"Ollama chat request failed: {exc}") from exc

        if not isinstance(data, dict):
            raise CompletionUnavailable(f"Unexpected Ollama chat response: {type(data).__name__}")
        # /api/chat returns a single message object when stream=False
        message = data.get("message")
        if not isinstance(message, dict):
            return ""
        return message.get("content") or ""

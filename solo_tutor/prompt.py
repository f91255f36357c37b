"""Prompt assembly for the Canvas tutor persona."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from .models import FusedContext, Role

RECALLED_LABEL = "Recalled from earlier conversations"
RECENT_LABEL = "Recent conversation"

# Sent as the user text when a turn carries only an image.
IMAGE_ONLY_PROMPT = "Please take a look at this artwork and give me feedback."

SYSTEM_PERSONA = """
You are Canvas, a warm and encouraging art tutor who remembers this student's learning journey.
Help the student grow through constructive feedback, technical guidance and creative inspiration.
Use art vocabulary naturally (composition, value, hue, saturation, perspective) and keep answers
to one short paragraph.

Earlier turns are provided before the student's new message, each tagged with where it came from:
- "[Recalled from earlier conversations]" turns were retrieved from past sessions because they are
  related to the new message. Build on them explicitly when they are relevant
  (for example "Last time we talked about...") and ignore them when they are not.
- "[Recent conversation]" turns are the immediate flow of this session. Keep continuity with them;
  they take priority over recalled turns.
Never repeat these tags in your reply. If no earlier context is relevant, answer from general
art knowledge.

When the student shares an image, comment on composition, color, technique and overall impact,
say what is working, and suggest concrete next steps that connect to what you know of their goals.
""".strip()


@dataclass
class PromptTurn:
    role: Role
    text: str
    label: str
    created_at: datetime
    image_ref: Optional[str] = None
    similarity: Optional[float] = None

    def render(self) -> str:
        stamp = self.created_at.strftime("%Y-%m-%d")
        body = self.text
        if self.image_ref:
            body = f"{body} (shared an image)" if body else "(shared an image)"
        return f"[{self.label}, {stamp}] {body}"


@dataclass
class PromptRequest:
    """Structured request for the completion client.

    ``history`` holds recalled turns first (by similarity) and then recent
    turns (chronological). Every turn keeps its original role.
    """

    system: str
    history: List[PromptTurn] = field(default_factory=list)
    user_text: str = ""
    image_ref: Optional[str] = None

    @property
    def recalled(self) -> List[PromptTurn]:
        return [t for t in self.history if t.label == RECALLED_LABEL]

    @property
    def recent(self) -> List[PromptTurn]:
        return [t for t in self.history if t.label == RECENT_LABEL]

    def _history_messages(self) -> List[Dict[str, Any]]:
        return [{"role": t.role.value, "content": t.render()} for t in self.history]

    def to_openai_messages(self) -> List[Dict[str, Any]]:
        text = self.user_text or IMAGE_ONLY_PROMPT
        if self.image_ref:
            user_content: Any = [
                {"type": "text", "text": text},
                {"type": "image_url", "image_url": {"url": self.image_ref}},
            ]
        else:
            user_content = text
        return (
            [{"role": "system", "content": self.system}]
            + self._history_messages()
            + [{"role": "user", "content": user_content}]
        )

    def to_ollama_messages(self) -> List[Dict[str, Any]]:
        # Ollama wants base64 image bytes; the reference is passed as a note instead
        text = self.user_text or IMAGE_ONLY_PROMPT
        if self.image_ref:
            text = f"{text}\n\n[Attached image: {self.image_ref}]"
        return (
            [{"role": "system", "content": self.system}]
            + self._history_messages()
            + [{"role": "user", "content": text}]
        )


class PromptAssembler:
    """Turns a FusedContext and the new message into a PromptRequest.

    Turn text is never summarized or cut. When ``max_context_chars`` is set
    and the history exceeds it, recalled turns are dropped lowest similarity
    first; recent turns are always kept.
    """

    def __init__(self, persona: str = SYSTEM_PERSONA, max_context_chars: int = 0):
        self.persona = persona
        self.max_context_chars = max_context_chars

    def assemble(self, context: FusedContext, user_text: str,
                 image_ref: Optional[str] = None) -> PromptRequest:
        recalled = [
            PromptTurn(
                role=item.message.role,
                text=item.message.content,
                label=RECALLED_LABEL,
                created_at=item.message.created_at,
                image_ref=item.message.image_ref,
                similarity=item.score,
            )
            for item in context.long_term_only
        ]
        recent = [
            PromptTurn(
                role=msg.role,
                text=msg.content,
                label=RECENT_LABEL,
                created_at=msg.created_at,
                image_ref=msg.image_ref,
            )
            for msg in context.short_term
        ]

        recalled = self._fit_budget(recalled, recent)
        return PromptRequest(
            system=self.persona,
            history=recalled + recent,
            user_text=user_text.strip(),
            image_ref=image_ref,
        )

    def _fit_budget(self, recalled: List[PromptTurn], recent: List[PromptTurn]) -> List[PromptTurn]:
        if self.max_context_chars <= 0:
            return recalled

        total = sum(len(t.text) for t in recalled) + sum(len(t.text) for t in recent)
        kept = list(recalled)
        while kept and total > self.max_context_chars:
            weakest = min(kept, key=lambda t: (t.similarity or 0.0, t.created_at))
            kept.remove(weakest)
            total -= len(weakest.text)
        return kept

"""End-to-end chat turns through SoloTutor with fake providers."""

import asyncio
import time

import numpy as np
import pytest

from solo_tutor import ChatRequest, SoloTutor
from solo_tutor.errors import (
    USER_FACING_ERROR,
    CompletionRejected,
    CompletionUnavailable,
    PersistenceFailure,
    SearchUnavailable,
)
from solo_tutor.models import Role

from conftest import FakeCompleter, axis, near


class SlowCompleter(FakeCompleter):
    def __init__(self, delay: float):
        super().__init__()
        self.delay = delay

    def complete(self, prompt) -> str:
        time.sleep(self.delay)
        return super().complete(prompt)


class FailingIndex:
    def __len__(self):
        return 0

    def add(self, message, owner_id):
        pass

    def search(self, *args, **kwargs):
        raise SearchUnavailable("index offline")


def ask(text, user_id="user1", conversation_id=None, image_ref=None):
    return ChatRequest(user_id=user_id, message=text, conversation_id=conversation_id,
                       image_ref=image_ref)


@pytest.mark.asyncio
async def test_cold_start_turn_persists_both_messages(tutor, store, completer):
    conv = tutor.create_conversation("user1")

    response = await tutor.handle(ask("What brush should I use for clouds?", conversation_id=conv.id))

    assert response.success is True
    assert response.error is None
    assert completer.last_prompt.history == []

    messages = store.get_messages(conv.id)
    assert [(m.role, m.content) for m in messages] == [
        (Role.USER, "What brush should I use for clouds?"),
        (Role.ASSISTANT, completer.reply),
    ]
    assert all(m.has_embedding for m in messages)
    assert response.user_message.id == messages[0].id
    assert response.assistant_message.id == messages[1].id


@pytest.mark.asyncio
async def test_recall_from_earlier_conversation(tutor, embedder, completer):
    first = tutor.create_conversation("user1", "Sky studies")
    embedder.vectors["I invented the Crossflow Technique: diagonal wet edges"] = axis(0)
    await tutor.handle(ask("I invented the Crossflow Technique: diagonal wet edges",
                           conversation_id=first.id))

    second = tutor.create_conversation("user1", "Portraits")
    embedder.vectors["remind me about the Crossflow technique"] = near(0, 0.9)
    response = await tutor.handle(ask("remind me about the Crossflow technique",
                                      conversation_id=second.id))

    assert response.success is True
    recalled = completer.last_prompt.recalled
    assert [t.text for t in recalled] == ["I invented the Crossflow Technique: diagonal wet edges"]
    assert recalled[0].similarity > 0.7
    assert response.rag_details.relevant_history_count == 1
    assert response.rag_details.context_type == "RAG with history"


@pytest.mark.asyncio
async def test_embedding_outage_still_answers_and_stores_without_embeddings(
    tutor, store, index, embedder, completer
):
    conv = tutor.create_conversation("user1")
    await tutor.handle(ask("How do I mix a warm grey?", conversation_id=conv.id))
    indexed_before = len(index)
    embedder.fail = True

    response = await tutor.handle(ask("And a cool grey?", conversation_id=conv.id))

    assert response.success is True
    assert response.rag_details.degraded is True
    assert len(completer.last_prompt.recent) == 2
    assert response.user_message.has_embedding is False
    assert response.assistant_message.has_embedding is False
    assert len(index) == indexed_before
    assert len(store.get_messages(conv.id)) == 4


@pytest.mark.asyncio
async def test_image_only_turn_skips_query_embedding(tutor, store, embedder, completer):
    conv = tutor.create_conversation("user1")

    response = await tutor.handle(ask("", conversation_id=conv.id,
                                      image_ref="https://img.example/sketch.png"))

    assert response.success is True
    # Only the assistant reply is embedded
    assert embedder.calls == [completer.reply]
    user_message = store.get_messages(conv.id)[0]
    assert user_message.content == ""
    assert user_message.image_ref == "https://img.example/sketch.png"
    assert user_message.has_embedding is False


@pytest.mark.asyncio
async def test_repeated_question_appears_once(tutor, embedder, completer):
    conv = tutor.create_conversation("user1")
    embedder.vectors["how do I blend skies"] = axis(0)
    await tutor.handle(ask("how do I blend skies", conversation_id=conv.id))

    response = await tutor.handle(ask("how do I blend skies", conversation_id=conv.id))

    prompt = completer.last_prompt
    assert prompt.recalled == []
    assert [t.text for t in prompt.recent] == ["how do I blend skies", completer.reply]
    assert response.rag_details.relevant_history_count == 0
    assert response.rag_details.context_type == "Recent only"


@pytest.mark.asyncio
async def test_search_outage_degrades(settings, store, embedder, completer):
    tutor = SoloTutor(settings, store, FailingIndex(), embedder, completer)
    conv = tutor.create_conversation("user1")

    response = await tutor.handle(ask("hello", conversation_id=conv.id))

    assert response.success is True
    assert response.rag_details.degraded is True
    assert len(store.get_messages(conv.id)) == 2


@pytest.mark.asyncio
@pytest.mark.parametrize("error", [
    CompletionUnavailable("provider down"),
    CompletionRejected("content policy"),
])
async def test_completion_failure_persists_nothing(tutor, store, index, completer, error):
    conv = tutor.create_conversation("user1")
    completer.error = error

    response = await tutor.handle(ask("Critique my sunset", conversation_id=conv.id))

    assert response.success is False
    assert response.error == USER_FACING_ERROR
    assert response.error_kind == type(error).__name__
    assert response.conversation_id == conv.id
    assert store.get_messages(conv.id) == []
    assert len(index) == 0


@pytest.mark.asyncio
async def test_recent_failure_is_fatal(tutor, store, completer, monkeypatch):
    conv = tutor.create_conversation("user1")

    def broken_recent(*args, **kwargs):
        raise PersistenceFailure("database is locked")

    monkeypatch.setattr(store, "recent", broken_recent)
    response = await tutor.handle(ask("hello", conversation_id=conv.id))

    assert response.success is False
    assert response.error_kind == "PersistenceFailure"
    assert completer.prompts == []


@pytest.mark.asyncio
async def test_append_failure_is_reported(tutor, store, monkeypatch):
    conv = tutor.create_conversation("user1")

    def broken_append(*args, **kwargs):
        raise PersistenceFailure("disk full")

    monkeypatch.setattr(store, "append", broken_append)
    response = await tutor.handle(ask("hello", conversation_id=conv.id))

    assert response.success is False
    assert response.error == USER_FACING_ERROR
    assert response.error_kind == "PersistenceFailure"


@pytest.mark.asyncio
@pytest.mark.parametrize("payload, error", [
    ({}, "empty request body"),
    ({"message": "hi"}, "user_id is required"),
    ({"user_id": "user1"}, "message or image_ref is required"),
    ({"user_id": "user1", "message": "   "}, "message or image_ref is required"),
])
async def test_invalid_requests_are_rejected(tutor, completer, payload, error):
    response = await tutor.handle(payload)

    assert response.success is False
    assert response.error == error
    assert response.error_kind == "InvalidRequest"
    assert completer.prompts == []


@pytest.mark.asyncio
async def test_camel_case_payload(tutor, store):
    conv = tutor.create_conversation("user1")

    response = await tutor.handle({"userId": "user1", "conversationId": conv.id,
                                   "message": "hi there"})

    assert response.success is True
    assert response.to_dict()["userMessage"]["content"] == "hi there"


@pytest.mark.asyncio
async def test_foreign_or_missing_conversation(tutor, store, completer):
    theirs = tutor.create_conversation("user2")

    for conversation_id in (theirs.id, "does-not-exist"):
        response = await tutor.handle(ask("hello", conversation_id=conversation_id))
        assert response.success is False
        assert response.error_kind == "ConversationNotFound"

    assert store.get_messages(theirs.id) == []
    assert completer.prompts == []


@pytest.mark.asyncio
async def test_default_conversation_is_created_once(tutor):
    first = await tutor.handle(ask("first message"))
    second = await tutor.handle(ask("second message"))

    assert first.success and second.success
    assert first.conversation_id == second.conversation_id
    assert len(tutor.list_conversations("user1")) == 1


@pytest.mark.asyncio
async def test_timeout_persists_nothing(settings, store, index, embedder):
    tutor = SoloTutor(settings.with_overrides(request_timeout=0.1), store, index, embedder,
                      SlowCompleter(delay=0.5))
    conv = tutor.create_conversation("user1")

    response = await tutor.handle(ask("hello", conversation_id=conv.id))

    assert response.success is False
    assert response.error == USER_FACING_ERROR
    assert response.error_kind == "TimeoutError"
    assert store.get_messages(conv.id) == []


@pytest.mark.asyncio
async def test_stored_message_is_found_by_its_own_text(tutor, index, embedder):
    response = await tutor.handle(ask("Layering glazes over a dry underpainting"))

    hits = index.search(embedder.embed("Layering glazes over a dry underpainting"), "user1", top_k=1)

    assert hits[0][0] == response.user_message.id
    assert hits[0][1] == pytest.approx(1.0, abs=1e-5)
    assert np.allclose(response.user_message.embedding,
                       embedder.embed("Layering glazes over a dry underpainting"))

    reply = response.assistant_message
    reply_hits = index.search(reply.embedding, "user1", top_k=1)
    assert reply_hits[0][0] == reply.id
    assert reply_hits[0][1] == pytest.approx(1.0, abs=1e-5)


@pytest.mark.asyncio
async def test_deleted_conversation_leaves_the_index(tutor, index):
    response = await tutor.handle(ask("something to forget"))
    assert len(index) == 2

    removed = tutor.delete_conversation(response.conversation_id, "user1")

    assert removed == 2
    assert len(index) == 0
    assert tutor.list_conversations("user1") == []


@pytest.mark.asyncio
async def test_explain_does_not_call_the_model(tutor, store, completer):
    conv = tutor.create_conversation("user1")
    store.append(conv.id, Role.USER, "earlier")

    context = await tutor.explain("user1", "what next?", conv.id)

    assert [m.content for m in context.short_term] == ["earlier"]
    assert completer.prompts == []
    assert store.get_messages(conv.id)[-1].content == "earlier"


@pytest.mark.asyncio
async def test_rag_details_shape(tutor, embedder):
    past = tutor.create_conversation("user1")
    embedder.vectors["glaze order"] = axis(2)
    await tutor.handle(ask("glaze order", conversation_id=past.id))

    current = tutor.create_conversation("user1")
    embedder.vectors["what was the glaze order?"] = near(2, 0.8)
    response = await tutor.handle(ask("what was the glaze order?", conversation_id=current.id))

    details = response.to_dict()["rag_details"]
    assert details["relevant_history_count"] == 1
    assert details["recent_conversation_count"] == 0
    assert details["similarity_threshold"] == 0.6
    assert details["context_used"] is True
    assert details["relevant_messages"][0]["content"] == "glaze order"
    assert details["relevant_messages"][0]["similarity"] == pytest.approx(0.8, abs=1e-4)
    assert details["context_type"] == "RAG with history"


class BrokenIndex(FailingIndex):
    def search(self, *args, **kwargs):
        raise ValueError("operands could not be broadcast together")


@pytest.mark.asyncio
async def test_unexpected_index_error_still_answers(settings, store, embedder, completer):
    tutor = SoloTutor(settings, store, BrokenIndex(), embedder, completer)

    response = await tutor.handle({"user_id": "user1", "message": "hello"})

    assert response.success is True
    assert response.rag_details.degraded is True
    assert len(store.get_messages(response.conversation_id)) == 2


@pytest.mark.asyncio
async def test_concurrent_turns_across_conversations_and_users(tutor, store, index, embedder):
    conversations = [
        tutor.create_conversation("user1"),
        tutor.create_conversation("user1"),
        tutor.create_conversation("user2"),
    ]
    for i, conv in enumerate(conversations):
        embedder.vectors[f"question {i}"] = near(0, 0.9, other=10 + i)

    rounds = 3
    for r in range(rounds):
        responses = await asyncio.gather(*[
            tutor.handle(ask(f"question {i}", user_id=conv.user_id, conversation_id=conv.id))
            for i, conv in enumerate(conversations)
        ])
        assert all(response.success for response in responses)

    for conv in conversations:
        messages = store.recent(conv.id, 2 * rounds)
        assert [m.role for m in messages] == [Role.USER, Role.ASSISTANT] * rounds
        stamps = [m.created_at for m in messages]
        assert stamps == sorted(stamps) and len(set(stamps)) == len(stamps)

    assert len(index) == 2 * rounds * len(conversations)
    # Nothing from user2 is ever recalled for user1
    user2_ids = {m.id for m in store.get_messages(conversations[2].id)}
    assert not user2_ids & {mid for mid, _ in index.search(axis(0), "user1", top_k=50)}


@pytest.mark.asyncio
async def test_concurrent_turns_in_one_conversation(tutor, store):
    conv = tutor.create_conversation("user1")

    responses = await asyncio.gather(*[
        tutor.handle(ask(f"message {i}", conversation_id=conv.id)) for i in range(4)
    ])

    assert all(response.success for response in responses)
    messages = store.recent(conv.id, 8)
    assert len(messages) == 8
    stamps = [m.created_at for m in messages]
    assert stamps == sorted(stamps) and len(set(stamps)) == len(stamps)
    position = {m.id: i for i, m in enumerate(messages)}
    for response in responses:
        assert position[response.user_message.id] < position[response.assistant_message.id]

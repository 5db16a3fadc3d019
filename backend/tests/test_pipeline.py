"""Tests for pipeline.ChatPipeline — one turn end to end over in-memory fakes.

Events are collected through ``run_turn(turn, emit)`` directly; the
threaded ``stream_turn`` path is covered once at the end.
"""

import pytest

from errors import ProviderError
from pipeline import ChatPipeline, ChatTurn, TurnStage
from vector_store import SimilarityRetriever


def _pipeline(store, embedder, llm, **kw):
    retriever = SimilarityRetriever(store, embedder, boost=1.5, enforce_min_similarity=False)
    return ChatPipeline(store, embedder, retriever, llm, top_k=5, min_similarity=0.75, queue_size=8, **kw)


def _run(pipe, **turn):
    events = []
    turn.setdefault("model", "llama3.2")
    state = pipe.run_turn(ChatTurn(**turn), events.append)
    return state, events


def _types(events):
    return [e["type"] for e in events]


# ═══════════════════════════════════════════════════════════════════════════
#  Happy path
# ═══════════════════════════════════════════════════════════════════════════

class TestHappyPath:
    def test_new_conversation_stream_and_persist(self, store, embedder, llm):
        state, events = _run(_pipeline(store, embedder, llm), message="Hi")

        assert _types(events) == ["chunk", "chunk", "done"]
        assert [e["content"] for e in events[:2]] == ["Hello", " there"]
        assert events[-1] == {"type": "done", "conversationId": state.conversation_id}

        assert state.stage is TurnStage.DONE
        assert state.degraded == []
        roles = [(m["role"], m["content"]) for m in store.get_conversation_messages(state.conversation_id)]
        assert roles == [("user", "Hi"), ("assistant", "Hello there")]
        assert set(store.embeddings) == {state.user_message_id, state.assistant_message_id}

    def test_default_title_is_timestamped(self, store, embedder, llm):
        state, _ = _run(_pipeline(store, embedder, llm), message="Hi")
        assert store.get_conversation(state.conversation_id)["title"].startswith("Chat started at ")

    def test_supplied_title_used(self, store, embedder, llm):
        state, _ = _run(_pipeline(store, embedder, llm), message="Hi", title="Mine")
        assert store.get_conversation(state.conversation_id)["title"] == "Mine"

    def test_query_embedded_once_and_reused(self, store, embedder, llm):
        _run(_pipeline(store, embedder, llm), message="Hi")
        # once for the query (reused for the user message), once for the reply
        assert embedder.calls == ["Hi", "Hello there"]

    def test_chunks_forwarded_verbatim(self, store, embedder, make_llm):
        deltas = ["<thi", "nk>plan", "ning</th", "ink>\n\n", "Answer", " "]
        state, events = _run(_pipeline(store, embedder, make_llm(deltas)), message="q")
        assert [e["content"] for e in events if e["type"] == "chunk"] == deltas
        assert state.raw_response == "".join(deltas)

    def test_thinking_once_per_toggle_with_split_tags(self, store, embedder, make_llm):
        deltas = ["<thi", "nk>plan", "<think>more", "ning</th", "ink>", "Answer"]
        _, events = _run(_pipeline(store, embedder, make_llm(deltas)), message="q")
        thinking = [e["content"] for e in events if e["type"] == "thinking"]
        assert thinking == [True, False]
        # the toggle precedes the chunk that completed the tag
        i = events.index({"type": "thinking", "content": True})
        assert events[i + 1] == {"type": "chunk", "content": "nk>plan"}

    def test_assistant_stored_in_formatted_form(self, store, embedder, make_llm):
        state, _ = _run(_pipeline(store, embedder, make_llm(["<think>why</think>", "Because."])), message="q")
        assert state.stored_response == "*why*Because."
        assert store.get_conversation_messages(state.conversation_id)[-1]["content"] == "*why*Because."


# ═══════════════════════════════════════════════════════════════════════════
#  Context and prompt
# ═══════════════════════════════════════════════════════════════════════════

class TestContext:
    def test_retrieved_context_on_last_user_turn(self, store, embedder, llm):
        old = store.create_conversation("old")
        mid = store.store_message(old, "user", "pgvector stores embeddings")
        store.store_embedding(mid, [1.0, 0.0, 0.0, 0.0])

        state, _ = _run(_pipeline(store, embedder, llm), message="What is pgvector?")
        sent = llm.stream_calls[0]
        assert sent[0]["role"] == "system"
        assert sent[-1]["role"] == "user"
        assert sent[-1]["content"].startswith("What is pgvector?\nRelevant context from previous conversations:\n")
        assert "pgvector stores embeddings" in sent[-1]["content"]
        assert state.context_matches == 1
        # the stored user message does not carry the context
        assert store.get_conversation_messages(state.conversation_id)[0]["content"] == "What is pgvector?"

    def test_history_sent_in_order(self, store, embedder, llm):
        pipe = _pipeline(store, embedder, llm)
        first, _ = _run(pipe, message="one")
        _run(pipe, message="two", conversation_id=first.conversation_id)
        sent = llm.stream_calls[1]
        assert [m["role"] for m in sent] == ["system", "user", "assistant", "user"]
        assert sent[1]["content"] == "one"
        assert sent[3]["content"].startswith("two")


# ═══════════════════════════════════════════════════════════════════════════
#  Titles
# ═══════════════════════════════════════════════════════════════════════════

class TestTitle:
    def test_title_generated_on_second_user_turn_only(self, store, embedder, llm):
        pipe = _pipeline(store, embedder, llm)
        first, _ = _run(pipe, message="one")
        assert llm.complete_calls == []

        second, events = _run(pipe, message="two", conversation_id=first.conversation_id)
        assert len(llm.complete_calls) == 1
        assert second.title == "Talking About Things"
        assert store.get_conversation(first.conversation_id)["title"] == "Talking About Things"
        assert events[-1]["type"] == "done"

        _run(pipe, message="three", conversation_id=first.conversation_id)
        assert len(llm.complete_calls) == 1

    def test_explicit_title_suppresses_generation(self, store, embedder, llm):
        pipe = _pipeline(store, embedder, llm)
        first, _ = _run(pipe, message="one", title="Keep me")
        _run(pipe, message="two", conversation_id=first.conversation_id, title="Keep me")
        assert llm.complete_calls == []
        assert store.get_conversation(first.conversation_id)["title"] == "Keep me"

    def test_title_failure_falls_back_and_still_done(self, store, embedder, llm):
        llm.title = ProviderError("busy")
        pipe = _pipeline(store, embedder, llm)
        first, _ = _run(pipe, message="one")
        _, events = _run(pipe, message="two", conversation_id=first.conversation_id)
        assert store.get_conversation(first.conversation_id)["title"] == "New Conversation"
        assert events[-1]["type"] == "done"

    def test_title_store_failure_is_degraded(self, store, embedder, llm):
        pipe = _pipeline(store, embedder, llm)
        first, _ = _run(pipe, message="one")
        store.fail_on.add("update_conversation_title")
        state, events = _run(pipe, message="two", conversation_id=first.conversation_id)
        assert TurnStage.MAYBE_TITLE.value in state.degraded
        assert events[-1]["type"] == "done"


# ═══════════════════════════════════════════════════════════════════════════
#  Failures
# ═══════════════════════════════════════════════════════════════════════════

class TestFailures:
    def test_inference_failure_keeps_user_message(self, store, embedder, make_llm):
        llm = make_llm(["partial"], stream_error=ProviderError("Ollama API error: 500"))
        state, events = _run(_pipeline(store, embedder, llm), message="Hi")

        assert _types(events) == ["chunk", "error"]
        assert events[-1] == {"type": "error", "error": "Ollama API error: 500"}
        assert state.stage is TurnStage.ERROR
        msgs = store.get_conversation_messages(state.conversation_id)
        assert [(m["role"], m["content"]) for m in msgs] == [("user", "Hi")]

    def test_inference_failure_before_first_chunk(self, store, embedder, make_llm):
        llm = make_llm(["never"], stream_error=ProviderError("connection refused"), fail_after=0)
        _, events = _run(_pipeline(store, embedder, llm), message="Hi")
        assert _types(events) == ["error"]

    def test_user_persist_failure_is_fatal(self, store, embedder, llm):
        store.fail_on.add("store_message:user")
        state, events = _run(_pipeline(store, embedder, llm), message="Hi")
        assert _types(events) == ["error"]
        assert state.stage is TurnStage.ERROR
        assert llm.stream_calls == []

    def test_unknown_conversation_is_error_event(self, store, embedder, llm):
        state, events = _run(_pipeline(store, embedder, llm), message="Hi", conversation_id="missing")
        assert _types(events) == ["error"]
        assert "missing" in events[0]["error"]
        assert store.messages == []

    def test_embedding_outage_still_done(self, store, llm, make_embedder):
        embedder = make_embedder(fail=True)
        state, events = _run(_pipeline(store, embedder, llm), message="Hi")
        assert events[-1]["type"] == "done"
        assert TurnStage.RETRIEVE_CONTEXT.value in state.degraded
        assert store.embeddings == {}
        assert len(store.messages) == 2

    def test_retrieval_failure_still_done(self, store, embedder, llm):
        store.fail_on.add("search_embeddings")
        state, events = _run(_pipeline(store, embedder, llm), message="Hi")
        assert events[-1]["type"] == "done"
        assert state.degraded == [TurnStage.RETRIEVE_CONTEXT.value]
        # vector still reused for the user message
        assert state.user_message_id in store.embeddings

    def test_assistant_persist_failure_is_degraded(self, store, embedder, llm):
        store.fail_on.add("store_message:assistant")
        state, events = _run(_pipeline(store, embedder, llm), message="Hi")
        assert events[-1]["type"] == "done"
        assert state.assistant_message_id is None
        assert TurnStage.PERSIST_ASSISTANT_MSG.value in state.degraded

    def test_blank_reply_not_embedded(self, store, embedder, make_llm):
        state, events = _run(_pipeline(store, embedder, make_llm(["<think>", "</think>"])), message="Hi")
        assert events[-1]["type"] == "done"
        assert state.stored_response == ""
        assert state.assistant_message_id not in store.embeddings

    def test_exactly_one_terminal_event(self, store, embedder, llm):
        _, events = _run(_pipeline(store, embedder, llm), message="Hi")
        assert sum(e["type"] in ("done", "error") for e in events) == 1


# ═══════════════════════════════════════════════════════════════════════════
#  Threaded stream
# ═══════════════════════════════════════════════════════════════════════════

def test_stream_turn_yields_same_events(store, embedder, llm):
    events = list(_pipeline(store, embedder, llm).stream_turn(ChatTurn(message="Hi", model="m")))
    assert _types(events) == ["chunk", "chunk", "done"]


@pytest.mark.parametrize("stage", list(TurnStage))
def test_stage_values_are_strings(stage):
    assert isinstance(stage.value, str)

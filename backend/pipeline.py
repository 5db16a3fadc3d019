"""Chat turn pipeline — retrieval-augmented, streamed, persisted.

Stages of one turn (``TurnStage``):

  1. RESOLVE_CONVERSATION   create one when no id is given
  2. RETRIEVE_CONTEXT       embed the message, find similar prior messages   (best effort)
  3. PERSIST_USER_MSG       store the user message                           (required)
  4. EMBED_USER_MSG         store its vector                                 (best effort)
  5. BUILD_PROMPT           system prompt + history + retrieved context
  6. STREAM_MODEL           forward deltas verbatim, report thinking toggles
  7. PERSIST_ASSISTANT_MSG  store the reply in its formatted form           (best effort)
  8. EMBED_ASSISTANT_MSG    store its vector                                 (best effort)
  9. MAYBE_TITLE            title the conversation on its second user turn   (best effort)
 10. DONE

A failure in a required stage moves the turn to ERROR and emits a single
``error`` event.  Nothing already stored is rolled back.

Events are plain dicts, serialized by the HTTP layer:

    {"type": "thinking", "content": bool}
    {"type": "chunk",    "content": str}
    {"type": "done",     "conversationId": str}
    {"type": "error",    "error": str}
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Iterator, Optional

import worker
from errors import ChatError, ValidationError
from llm.generators import generate_title
from llm.prompt_orchestrator import build_messages, format_retrieved_context, should_generate_title
from settings import settings
from thought_parser import ThinkingTracker, format_thinking

logger = logging.getLogger(__name__)

Emit = Callable[[dict], Any]


class TurnStage(str, Enum):
    INIT = "init"
    RESOLVE_CONVERSATION = "resolve_conversation"
    RETRIEVE_CONTEXT = "retrieve_context"
    PERSIST_USER_MSG = "persist_user_msg"
    EMBED_USER_MSG = "embed_user_msg"
    BUILD_PROMPT = "build_prompt"
    STREAM_MODEL = "stream_model"
    PERSIST_ASSISTANT_MSG = "persist_assistant_msg"
    EMBED_ASSISTANT_MSG = "embed_assistant_msg"
    MAYBE_TITLE = "maybe_title"
    DONE = "done"
    ERROR = "error"


# ── Events ────────────────────────────────────────────────────────────────

def thinking_event(thinking: bool) -> dict:
    return {"type": "thinking", "content": thinking}


def chunk_event(text: str) -> dict:
    return {"type": "chunk", "content": text}


def done_event(conversation_id: str) -> dict:
    return {"type": "done", "conversationId": conversation_id}


def error_event(message: str) -> dict:
    return {"type": "error", "error": message}


# ── Turn records ──────────────────────────────────────────────────────────

@dataclass
class ChatTurn:
    """One inbound user message."""
    message: str
    model: str
    conversation_id: Optional[str] = None
    title: Optional[str] = None


@dataclass
class TurnState:
    """What happened during a turn; returned by ``run_turn``."""
    stage: TurnStage = TurnStage.INIT
    conversation_id: Optional[str] = None
    user_message_id: Optional[str] = None
    assistant_message_id: Optional[str] = None
    context_matches: int = 0
    raw_response: str = ""
    stored_response: str = ""
    title: Optional[str] = None
    degraded: list[str] = field(default_factory=list)
    error: Optional[str] = None


def default_conversation_title() -> str:
    return f"Chat started at {datetime.now():%Y-%m-%d %H:%M:%S}"


class ChatPipeline:
    """Drives one chat turn through every stage.

    Collaborators are injected:
      store      query_db.ConversationStore (or anything with its methods)
      embedder   embeddings.EmbeddingService
      retriever  vector_store.SimilarityRetriever
      llm        llm.providers.base.LLMProvider
    """

    def __init__(
        self,
        store,
        embedder,
        retriever,
        llm,
        *,
        top_k: int = settings.RETRIEVAL_K,
        min_similarity: float = settings.RETRIEVAL_MIN_SIMILARITY,
        queue_size: int = settings.STREAM_QUEUE_SIZE,
    ):
        self.store = store
        self.embedder = embedder
        self.retriever = retriever
        self.llm = llm
        self.top_k = top_k
        self.min_similarity = min_similarity
        self.queue_size = queue_size

    def stream_turn(self, turn: ChatTurn) -> Iterator[dict]:
        """Run the turn on a worker thread and yield its events in order."""
        return worker.stream(lambda emit: self.run_turn(turn, emit), maxsize=self.queue_size)

    def run_turn(self, turn: ChatTurn, emit: Emit) -> TurnState:
        """Execute every stage, pushing events through *emit*.

        Always ends with exactly one ``done`` or ``error`` event.
        """
        state = TurnState()
        try:
            self._run(turn, state, emit)
        except Exception as e:
            message = str(e) or "Unknown error occurred"
            logger.error(f"Turn failed at {state.stage.value} (conv={state.conversation_id}): {message}")
            state.error = message
            state.stage = TurnStage.ERROR
            emit(error_event(message))
        return state

    # ── Stages ────────────────────────────────────────────────────────────

    def _run(self, turn: ChatTurn, state: TurnState, emit: Emit) -> None:
        state.stage = TurnStage.RESOLVE_CONVERSATION
        cid = self._resolve_conversation(turn)
        state.conversation_id = cid

        state.stage = TurnStage.RETRIEVE_CONTEXT
        query_vector, context_text = self._retrieve_context(turn.message, cid, state)

        state.stage = TurnStage.PERSIST_USER_MSG
        state.user_message_id = self.store.store_message(cid, "user", turn.message)

        state.stage = TurnStage.EMBED_USER_MSG
        self._embed_message(state.user_message_id, turn.message, state, vector=query_vector)

        state.stage = TurnStage.BUILD_PROMPT
        history = self.store.get_conversation_messages(cid)
        wants_title = should_generate_title(turn.title, len(history))
        messages = build_messages(history, context_text=context_text)

        state.stage = TurnStage.STREAM_MODEL
        state.raw_response = self._stream_model(messages, turn.model, emit)

        state.stage = TurnStage.PERSIST_ASSISTANT_MSG
        state.stored_response = format_thinking(state.raw_response)
        try:
            state.assistant_message_id = self.store.store_message(cid, "assistant", state.stored_response)
        except ChatError as e:
            logger.error(f"Assistant message not stored (conv={cid}): {e}")
            state.degraded.append(TurnStage.PERSIST_ASSISTANT_MSG.value)

        if state.assistant_message_id:
            state.stage = TurnStage.EMBED_ASSISTANT_MSG
            self._embed_message(state.assistant_message_id, state.stored_response, state)

        if wants_title:
            state.stage = TurnStage.MAYBE_TITLE
            self._title_conversation(cid, messages, turn.model, state)

        state.stage = TurnStage.DONE
        logger.info(
            f"Turn done (conv={cid}, context={state.context_matches}, "
            f"chars={len(state.raw_response)}, degraded={state.degraded or 'none'})"
        )
        emit(done_event(cid))

    def _resolve_conversation(self, turn: ChatTurn) -> str:
        if turn.conversation_id:
            if self.store.get_conversation(turn.conversation_id) is None:
                raise ValidationError(f"Conversation {turn.conversation_id} not found")
            return turn.conversation_id
        return self.store.create_conversation(turn.title or default_conversation_title())

    def _retrieve_context(self, message: str, cid: str, state: TurnState):
        """Returns (query vector or None, context text).  Never raises ChatError."""
        try:
            vector = self.embedder.embed(message)
        except ChatError as e:
            logger.warning(f"Query embedding failed, continuing without context: {e}")
            state.degraded.append(TurnStage.RETRIEVE_CONTEXT.value)
            return None, ""

        try:
            matches = self.retriever.find_similar_by_vector(
                vector, cid, min_similarity=self.min_similarity, top_k=self.top_k,
            )
        except ChatError as e:
            logger.warning(f"Retrieval failed, continuing without context: {e}")
            state.degraded.append(TurnStage.RETRIEVE_CONTEXT.value)
            return vector, ""

        state.context_matches = len(matches)
        return vector, format_retrieved_context(matches)

    def _embed_message(self, message_id: str, content: str, state: TurnState, vector=None) -> None:
        if not content.strip():
            return
        try:
            if vector is None:
                vector = self.embedder.embed(content)
            self.store.store_embedding(message_id, vector)
        except ChatError as e:
            logger.warning(f"Embedding not stored for message {message_id}: {e}")
            state.degraded.append(state.stage.value)

    def _stream_model(self, messages: list[dict], model: str, emit: Emit) -> str:
        """Forward each delta as it arrives; return the concatenated text."""
        tracker = ThinkingTracker()
        parts: list[str] = []
        for delta in self.llm.stream_text_deltas(messages, model=model):
            parts.append(delta)
            for thinking in tracker.feed(delta):
                logger.debug("Model is %s", "thinking" if thinking else "answering")
                emit(thinking_event(thinking))
            emit(chunk_event(delta))
        return "".join(parts)

    def _title_conversation(self, cid: str, messages: list[dict], model: str, state: TurnState) -> None:
        title = generate_title(messages, model, self.llm)
        try:
            self.store.update_conversation_title(cid, title)
            state.title = title
            logger.info(f"Auto-titled {cid}: {title}")
        except ChatError as e:
            logger.error(f"Title not stored (conv={cid}): {e}")
            state.degraded.append(TurnStage.MAYBE_TITLE.value)

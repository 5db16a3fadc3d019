"""Pytest conftest — flat module imports plus in-memory collaborators."""

import sys
import uuid
from pathlib import Path

import numpy as np
import pytest

# Add backend/ to sys.path so `import pipeline`, `from llm.providers import ...` etc. work
_backend_dir = str(Path(__file__).resolve().parent.parent)
if _backend_dir not in sys.path:
    sys.path.insert(0, _backend_dir)

from errors import PersistenceError, ProviderError  # noqa: E402


class FakeStore:
    """ConversationStore stand-in; same methods, plain dicts underneath."""

    def __init__(self):
        self.conversations: dict[str, dict] = {}
        self.messages: list[dict] = []
        self.embeddings: dict[str, list[float]] = {}
        self.fail_on: set[str] = set()   # method names that raise PersistenceError

    def _check(self, name):
        if name in self.fail_on:
            raise PersistenceError(f"{name} failed")

    def create_conversation(self, title):
        self._check("create_conversation")
        cid = str(uuid.uuid4())
        self.conversations[cid] = {"id": cid, "title": title, "created_at": None, "updated_at": None}
        return cid

    def get_conversation(self, conversation_id):
        self._check("get_conversation")
        return self.conversations.get(conversation_id)

    def list_conversations(self, limit=20):
        self._check("list_conversations")
        return list(self.conversations.values())[:limit]

    def update_conversation_title(self, conversation_id, title):
        self._check("update_conversation_title")
        if conversation_id not in self.conversations:
            return False
        self.conversations[conversation_id]["title"] = title
        return True

    def delete_conversation(self, conversation_id):
        self._check("delete_conversation")
        if self.conversations.pop(conversation_id, None) is None:
            return False
        gone = {m["id"] for m in self.messages if m["conversation_id"] == conversation_id}
        self.messages = [m for m in self.messages if m["id"] not in gone]
        for mid in gone:
            self.embeddings.pop(mid, None)
        return True

    def store_message(self, conversation_id, role, content):
        self._check(f"store_message:{role}")
        mid = str(uuid.uuid4())
        self.messages.append({
            "id": mid, "conversation_id": conversation_id,
            "role": role, "content": content, "created_at": None,
        })
        return mid

    def get_conversation_messages(self, conversation_id):
        self._check("get_conversation_messages")
        return [dict(m) for m in self.messages if m["conversation_id"] == conversation_id]

    def store_embedding(self, message_id, vector):
        self._check("store_embedding")
        if message_id in self.embeddings:
            return None
        self.embeddings[message_id] = list(vector)
        return str(uuid.uuid4())

    def get_message_embedding(self, message_id):
        return self.embeddings.get(message_id)

    def search_embeddings(self, vector, limit):
        self._check("search_embeddings")
        q = np.asarray(vector, dtype=float)
        by_id = {m["id"]: m for m in self.messages}
        rows = []
        for mid, emb in self.embeddings.items():
            v = np.asarray(emb, dtype=float)
            distance = 1.0 - float(q @ v / (np.linalg.norm(q) * np.linalg.norm(v)))
            m = by_id[mid]
            rows.append({
                "message_id": mid, "conversation_id": m["conversation_id"],
                "content": m["content"], "distance": distance,
            })
        rows.sort(key=lambda r: r["distance"])
        return rows[:limit]


class FakeEmbedder:
    """EmbeddingService stand-in: a fixed unit vector for every text."""

    def __init__(self, vector=None, fail=False):
        self.vector = vector or [1.0, 0.0, 0.0, 0.0]
        self.fail = fail
        self.calls: list[str] = []

    def embed(self, text):
        self.calls.append(text)
        if self.fail:
            raise ProviderError("embedding endpoint down")
        return list(self.vector)


class FakeLLM:
    """LLMProvider stand-in that replays canned deltas."""

    name = "fake"

    def __init__(self, deltas=None, title="Talking About Things", stream_error=None, fail_after=None):
        self.deltas = list(deltas if deltas is not None else ["Hello", " there"])
        self.title = title
        self.stream_error = stream_error
        self.fail_after = fail_after
        self.stream_calls: list[list[dict]] = []
        self.complete_calls: list[list[dict]] = []
        self.models = [{"name": "llama3.2"}]

    def stream_text_deltas(self, messages, *, model):
        self.stream_calls.append([dict(m) for m in messages])
        for i, delta in enumerate(self.deltas):
            if self.fail_after is not None and i == self.fail_after:
                raise self.stream_error or ProviderError("model went away")
            yield delta
        if self.stream_error is not None and self.fail_after is None:
            raise self.stream_error

    def complete(self, messages, *, model):
        self.complete_calls.append([dict(m) for m in messages])
        if isinstance(self.title, Exception):
            raise self.title
        return self.title

    def list_models(self):
        if isinstance(self.models, Exception):
            raise self.models
        return self.models

    def close(self):
        pass


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def llm():
    return FakeLLM()


@pytest.fixture
def make_llm():
    return FakeLLM


@pytest.fixture
def make_embedder():
    return FakeEmbedder

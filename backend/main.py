"""FastAPI application — local-model chat with retrieval-augmented context.

Architecture layers:
  1. Settings        (settings.py)       — centralized configuration
  2. Errors          (errors.py)         — failure taxonomy
  3. Database        (query_db.py)       — conversations, messages, embeddings (pgvector)
  4. Embeddings      (embeddings.py)     — text → vector, with retry
  5. Retriever       (vector_store.py)   — affinity-boosted similarity search
  6. LLM Package     (llm/)              — prompt assembly, titles, providers
  7. Thought parser  (thought_parser.py) — <think> span handling
  8. Pipeline        (pipeline.py)       — one chat turn, streamed
  9. Worker          (worker.py)         — producer thread + bounded channel

Streaming protocol (``POST /chat``), server-sent events::

    data: {"type": "thinking", "content": true}
    data: {"type": "chunk", "content": "token"}
    data: {"type": "done", "conversationId": "…"}
    data: {"type": "error", "error": "…"}
"""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from typing import Iterator, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

import worker
from embeddings import load_embedding_service
from errors import ChatError, PersistenceError, ValidationError
from llm.providers import provider as get_provider
from llm.providers import reset as reset_provider
from pipeline import ChatPipeline, ChatTurn
from query_db import ConversationStore, Database
from settings import settings
from vector_store import SimilarityRetriever

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

GENERIC_CHAT_ERROR = "Failed to process chat message"


# ---------------------------------------------------------------------------
#  Application lifespan
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):  # noqa: D401
    """Open the pool, wire the components; close everything on shutdown."""
    db = Database.from_settings()
    db.open()
    db.init_schema()

    store = ConversationStore(db)
    embedder = load_embedding_service()
    retriever = SimilarityRetriever(store, embedder)
    llm = get_provider()

    app.state.store = store
    app.state.llm = llm
    app.state.pipeline = ChatPipeline(store, embedder, retriever, llm)
    logger.info(
        f"Ready (llm={llm.name} @ {settings.LLM_BASE_URL}, "
        f"embeddings={embedder.provider.name}/{settings.EMBEDDING_DIMENSION}d)"
    )

    yield  # ← application runs here

    # Shutdown: let in-flight turns finish persisting, then release resources
    worker.shutdown(wait=True)
    reset_provider()
    db.close()


# ---------------------------------------------------------------------------
#  App
# ---------------------------------------------------------------------------
app = FastAPI(title="Local RAG Chat", version="1.0.0", lifespan=lifespan)
_raw_origins = [o.strip() for o in settings.ALLOWED_ORIGINS.split(",") if o.strip()]
_allowed_origins = _raw_origins if _raw_origins else ["*"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
#  Request models
# ---------------------------------------------------------------------------

class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message: str
    model: str
    conversation_id: Optional[str] = Field(default=None, alias="conversationId")
    title: Optional[str] = None


class NewConversationRequest(BaseModel):
    title: Optional[str] = None


class RenameRequest(BaseModel):
    title: str


# ---------------------------------------------------------------------------
#  Error responses
# ---------------------------------------------------------------------------

@app.exception_handler(RequestValidationError)
async def _request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    if any(e.get("type") == "json_invalid" for e in errors):
        logger.error(f"Malformed request body on {request.url.path}")
        return JSONResponse({"error": GENERIC_CHAT_ERROR}, status_code=500)
    fields = sorted({".".join(str(p) for p in e.get("loc", ())[1:]) or "body" for e in errors})
    return JSONResponse({"error": f"Invalid request: {', '.join(fields)}"}, status_code=400)


@app.exception_handler(ValidationError)
async def _validation_handler(request: Request, exc: ValidationError):
    return JSONResponse({"error": str(exc)}, status_code=400)


@app.exception_handler(ChatError)
async def _chat_error_handler(request: Request, exc: ChatError):
    logger.error(f"{type(exc).__name__} on {request.url.path}: {exc}")
    return JSONResponse({"error": str(exc)}, status_code=500)


@app.exception_handler(Exception)
async def _unexpected_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.url.path}")
    return JSONResponse({"error": GENERIC_CHAT_ERROR}, status_code=500)


def _not_found() -> JSONResponse:
    return JSONResponse({"error": "Conversation not found"}, status_code=404)


def _store(request: Request) -> ConversationStore:
    return request.app.state.store


def _sse(event: dict) -> str:
    return f"data: {json.dumps(event)}\n\n"


def _sse_stream(events: Iterator[dict]) -> Iterator[str]:
    for event in events:
        yield _sse(event)


# ═══════════════════════════════════════════════════════════════════════════
#  CHAT
# ═══════════════════════════════════════════════════════════════════════════

@app.post("/chat")
def chat(body: ChatRequest, request: Request):
    """Stream one chat turn as server-sent events.

    Validation happens before the stream opens (400).  Everything after,
    including failures to store the user message or reach the model, is
    reported inside the stream as a single ``error`` event.
    """
    if not body.message.strip():
        raise ValidationError("message must not be blank")
    if not body.model.strip():
        raise ValidationError("model must not be blank")

    turn = ChatTurn(
        message=body.message,
        model=body.model,
        conversation_id=body.conversation_id or None,
        title=body.title or None,
    )
    pipeline: ChatPipeline = request.app.state.pipeline
    return StreamingResponse(
        _sse_stream(pipeline.stream_turn(turn)),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive", "X-Accel-Buffering": "no"},
    )


# ═══════════════════════════════════════════════════════════════════════════
#  CONVERSATION CRUD
# ═══════════════════════════════════════════════════════════════════════════

@app.post("/conversations")
def create_conversation(request: Request, req: Optional[NewConversationRequest] = None):
    title = (req.title if req else None) or settings.TITLE_FALLBACK
    cid = _store(request).create_conversation(title)
    return {"id": cid}


@app.get("/conversations")
def list_conversations(request: Request, limit: int = 20):
    convs = _store(request).list_conversations(limit=limit)
    return {"conversations": convs, "count": len(convs)}


@app.get("/conversations/{conversation_id}")
def get_conversation(conversation_id: str, request: Request):
    store = _store(request)
    conv = store.get_conversation(conversation_id)
    if not conv:
        return _not_found()
    return {"conversation": conv, "messages": store.get_conversation_messages(conversation_id)}


@app.put("/conversations/{conversation_id}")
def rename_conversation(conversation_id: str, req: RenameRequest, request: Request):
    if not req.title.strip():
        raise ValidationError("title must not be blank")
    if not _store(request).update_conversation_title(conversation_id, req.title.strip()):
        return _not_found()
    return {"success": True}


@app.delete("/conversations/{conversation_id}")
def delete_conversation(conversation_id: str, request: Request):
    if not _store(request).delete_conversation(conversation_id):
        return _not_found()
    return {"success": True}


# ═══════════════════════════════════════════════════════════════════════════
#  MODELS + HEALTH
# ═══════════════════════════════════════════════════════════════════════════

@app.get("/models")
def list_models(request: Request):
    """Models installed on the inference server."""
    return {"models": request.app.state.llm.list_models()}


@app.get("/health")
def health_check(request: Request):
    """Returns provider info and whether the store answers."""
    database = "connected"
    try:
        _store(request).list_conversations(limit=1)
    except PersistenceError as e:
        logger.warning(f"Health check: database unavailable ({e})")
        database = "unavailable"

    llm = request.app.state.llm
    return {
        "status": "ok" if database == "connected" else "degraded",
        "database": database,
        "llm_provider": llm.name,
        "embedding_provider": settings.EMBEDDING_PROVIDER,
        "embedding_dimension": settings.EMBEDDING_DIMENSION,
        "version": app.version,
    }


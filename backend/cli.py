"""Local RAG Chat CLI — schema, dev server, terminal chat, store inspection.

Usage:
    python cli.py init                      Create the pgvector extension and tables
    python cli.py dev                       Start uvicorn with hot-reload
    python cli.py chat [MESSAGE]            Chat with a running server (REPL without MESSAGE)
    python cli.py conversations [ID]        List conversations, or show one
    python cli.py similar "query"           Probe the retriever
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Iterable, Iterator

logging.basicConfig(level=logging.INFO, format="%(message)s")
logger = logging.getLogger("chat-cli")

DIM = "\033[2m"
RESET = "\033[0m"


def _ensure_db():
    """Open the pool and make sure the schema exists; exit if unavailable."""
    from errors import PersistenceError
    from query_db import ConversationStore, Database

    db = Database.from_settings()
    try:
        db.open()
        db.init_schema()
    except PersistenceError as e:
        logger.error(f"Database connection failed.  Is PostgreSQL running?  ({e})")
        sys.exit(1)
    return db, ConversationStore(db)


def cmd_init(args):
    """Create the vector extension, tables and indexes."""
    from settings import settings

    db, _ = _ensure_db()
    db.close()
    logger.info(f"[+] Schema ready (embedding dimension {settings.EMBEDDING_DIMENSION})")

    env_file = Path(__file__).resolve().parent.parent / ".env"
    if not env_file.exists():
        logger.info("[!] No .env found; defaults and environment variables are in effect")

    logger.info("")
    logger.info("Next steps:")
    logger.info("  1. Start Ollama and pull a model: ollama pull llama3.2")
    logger.info("  2. Run: python cli.py dev")
    logger.info("  3. In another terminal: python cli.py chat")


def cmd_dev(args):
    """Start uvicorn development server with hot-reload."""
    import subprocess

    from settings import settings

    host = args.host or settings.HOST
    port = args.port or settings.PORT

    backend_dir = Path(__file__).resolve().parent
    logger.info(f"Starting dev server at http://{host}:{port}")
    subprocess.run(
        [
            sys.executable, "-m", "uvicorn",
            "main:app",
            "--host", host,
            "--port", str(port),
            "--reload",
        ],
        cwd=str(backend_dir),
        check=False,
    )


# ---------------------------------------------------------------------------
#  Terminal chat client
# ---------------------------------------------------------------------------

def _iter_sse_events(lines: Iterable[str]) -> Iterator[dict]:
    """Decode ``data: {...}`` frames; other lines are ignored."""
    for line in lines:
        if not line.startswith("data:"):
            continue
        payload = line[len("data:"):].strip()
        if not payload:
            continue
        try:
            yield json.loads(payload)
        except json.JSONDecodeError:
            logger.debug(f"Skipping malformed frame: {payload[:80]}")


def _render_reply(text: str, color: bool = True) -> str:
    """Answer text as-is, thoughts dimmed; an unfinished thought is marked."""
    from thought_parser import split_thought_spans

    parts = []
    for seg in split_thought_spans(text):
        if not seg.is_thought:
            parts.append(seg.text)
            continue
        label = "(thinking) " if seg.complete else "(thinking…) "
        body = label + seg.text.strip()
        parts.append(f"{DIM}{body}{RESET}\n" if color else f"{body}\n")
    return "".join(parts).strip()


def _send_turn(client, url: str, payload: dict, *, live: bool, color: bool) -> str | None:
    """Stream one turn; print the reply.  Returns the conversation id, or None on error."""
    parts: list[str] = []
    conversation_id = None
    error = None

    with client.stream("POST", f"{url}/chat", json=payload) as response:
        if response.status_code != 200:
            response.read()
            try:
                error = response.json().get("error")
            except ValueError:
                error = response.text
            print(f"\n[error {response.status_code}] {error}")
            return None

        for event in _iter_sse_events(response.iter_lines()):
            kind = event.get("type")
            if kind == "chunk":
                parts.append(event["content"])
                if live:
                    print(event["content"], end="", flush=True)
            elif kind == "thinking" and not live:
                print("… thinking" if event["content"] else "… answering", flush=True)
            elif kind == "done":
                conversation_id = event.get("conversationId")
            elif kind == "error":
                error = event.get("error") or "Unknown error"

    if live:
        print()
    elif parts:
        print(_render_reply("".join(parts), color=color))

    if error:
        print(f"\n[error] {error}")
        return None
    return conversation_id


def cmd_chat(args):
    """Chat with a running server.  One turn with MESSAGE, otherwise a REPL."""
    import httpx

    from settings import settings

    url = (args.url or f"http://localhost:{settings.PORT}").rstrip("/")
    model = args.model or settings.DEFAULT_MODEL
    conversation_id = args.conversation
    color = sys.stdout.isatty()

    def turn(client, message):
        payload = {"message": message, "model": model}
        if conversation_id:
            payload["conversationId"] = conversation_id
        return _send_turn(client, url, payload, live=args.live, color=color)

    timeout = httpx.Timeout(settings.INFERENCE_TIMEOUT, connect=settings.INFERENCE_CONNECT_TIMEOUT)
    with httpx.Client(timeout=timeout) as client:
        try:
            if args.message:
                cid = turn(client, args.message)
                if cid:
                    print(f"\n{DIM if color else ''}conversation {cid}{RESET if color else ''}")
                return

            print(f"Chatting with {model} at {url}.  Ctrl-D to quit.\n")
            while True:
                try:
                    message = input("you> ").strip()
                except EOFError:
                    print()
                    break
                if not message:
                    continue
                if message in ("/quit", "/exit"):
                    break
                cid = turn(client, message)
                conversation_id = cid or conversation_id
                print()
        except httpx.HTTPError as e:
            logger.error(f"Cannot reach {url}: {e}")
            sys.exit(1)


# ---------------------------------------------------------------------------
#  Store inspection
# ---------------------------------------------------------------------------

def cmd_conversations(args):
    """List recent conversations, or print one with its messages."""
    db, store = _ensure_db()
    try:
        if args.id:
            conv = store.get_conversation(args.id)
            if not conv:
                logger.error(f"Conversation {args.id} not found")
                sys.exit(1)
            print(f"\n═══ \"{conv['title']}\"  {conv['id']}\n")
            for m in store.get_conversation_messages(args.id):
                print(f"  ┌─ {m['role']}  {m['created_at']}")
                _print_wrapped(m["content"], indent=5, width=70)
                print(f"  └{'─' * 60}\n")
            return

        convs = store.list_conversations(limit=args.limit)
        if not convs:
            logger.info("No conversations found.")
            return
        print(f"\n─── Conversations {'─' * 47}\n")
        for c in convs:
            print(f"  {c['id']}  {c['updated_at'] or '':<32}  {c['title']}")
        print(f"\n{'─' * 65}\n")
    finally:
        db.close()


def cmd_similar(args):
    """Run the retriever for a query and print what it would inject."""
    from embeddings import load_embedding_service
    from errors import ChatError
    from settings import settings
    from vector_store import SimilarityRetriever

    db, store = _ensure_db()
    try:
        retriever = SimilarityRetriever(store, load_embedding_service())
        try:
            matches = retriever.find_similar(
                args.query_text,
                args.conversation,
                min_similarity=args.min_similarity,
                top_k=args.k,
            )
        except ChatError as e:
            logger.error(f"Retrieval failed: {e}")
            sys.exit(1)

        print(f"\n─── Similar Messages {'─' * 44}\n")
        print(f"  Query: \"{args.query_text}\"")
        if args.conversation:
            print(f"  Boosting conversation {args.conversation} (×{settings.CONVERSATION_AFFINITY_BOOST})")
        print()
        if not matches:
            print("  No matches.\n")
        for i, m in enumerate(matches, 1):
            text = m.content.replace("\n", " ")
            if len(text) > 60:
                text = text[:57] + "..."
            here = "*" if args.conversation and m.conversation_id == args.conversation else " "
            print(f"  {i}.{here}\"{text}\"")
            print(f"       Score: {m.score:.3f} │ Sim: {m.similarity:.3f} │ Conv: {(m.conversation_id or '—')[:8]}")
        print(f"\n{'─' * 65}\n")
    finally:
        db.close()


def _print_wrapped(text: str, indent: int = 4, width: int = 60):
    """Print text wrapped to *width* with leading indent inside a box."""
    prefix = "  │" + " " * (indent - 3)
    words = text.split()
    line = ""
    for w in words:
        if len(line) + len(w) + 1 > width:
            print(f"{prefix}{line}")
            line = w
        else:
            line = f"{line} {w}" if line else w
    if line:
        print(f"{prefix}{line}")


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="chat",
        description="Local-model chat with retrieval-augmented context — CLI tools",
    )
    sub = parser.add_subparsers(dest="command", help="Available commands")

    # init
    sub.add_parser("init", help="Create database schema")

    # dev
    p_dev = sub.add_parser("dev", help="Start development server")
    p_dev.add_argument("--host", help="Bind host")
    p_dev.add_argument("--port", type=int, help="Bind port")

    # chat
    p_chat = sub.add_parser("chat", help="Chat with a running server")
    p_chat.add_argument("message", nargs="?", help="Send one message and exit")
    p_chat.add_argument("--model", "-m", help="Model name (default: DEFAULT_MODEL)")
    p_chat.add_argument("--conversation", "-c", help="Continue an existing conversation")
    p_chat.add_argument("--url", help="Server base URL (default: http://localhost:PORT)")
    p_chat.add_argument("--live", action="store_true", help="Echo raw chunks as they arrive")

    # conversations
    p_conv = sub.add_parser("conversations", help="List conversations or show one")
    p_conv.add_argument("id", nargs="?", help="Conversation ID to show")
    p_conv.add_argument("--limit", type=int, default=20, help="Max conversations (default: 20)")

    # similar
    p_sim = sub.add_parser("similar", help="Probe similarity retrieval")
    p_sim.add_argument("query_text", help="Natural-language query")
    p_sim.add_argument("--conversation", "-c", help="Current conversation (receives the affinity boost)")
    p_sim.add_argument("-k", type=int, default=5, help="Max results (default: 5)")
    p_sim.add_argument("--min-similarity", type=float, default=0.75, help="Similarity floor (default: 0.75)")

    args = parser.parse_args(argv)

    if args.command == "init":
        cmd_init(args)
    elif args.command == "dev":
        cmd_dev(args)
    elif args.command == "chat":
        cmd_chat(args)
    elif args.command == "conversations":
        cmd_conversations(args)
    elif args.command == "similar":
        cmd_similar(args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()

"""Non-streaming generation helpers.

Streaming lives in the provider (``stream_text_deltas``) and is driven by
``pipeline.ChatPipeline``; this module only holds one-shot calls.
"""

import logging

from settings import settings
from thought_parser import split_thought_spans
from .prompts import TITLE_PROMPT

logger = logging.getLogger(__name__)

MAX_TITLE_CHARS = 50


def generate_title(messages: list[dict], model: str, llm) -> str:
    """Ask the model for a short title for the conversation so far.

    *messages* is the prompt just sent for the turn; the title instruction
    is appended as a final user message.  Any failure, or a blank answer,
    yields ``settings.TITLE_FALLBACK``.
    """
    try:
        prompt = [*messages, {"role": "user", "content": TITLE_PROMPT}]
        raw = llm.complete(prompt, model=model)
        # Reasoning models may think before answering; keep only the answer.
        answer = "".join(s.text for s in split_thought_spans(raw) if not s.is_thought)
        title = answer.strip().strip('"').strip("'").strip()
        if len(title) > MAX_TITLE_CHARS:
            title = title[:MAX_TITLE_CHARS].rsplit(" ", 1)[0] or title[:MAX_TITLE_CHARS]
        return title or settings.TITLE_FALLBACK
    except Exception as e:
        logger.error("Title generation error: %s", e)
        return settings.TITLE_FALLBACK

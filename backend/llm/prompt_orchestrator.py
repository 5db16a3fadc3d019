"""Prompt orchestrator — builds the message list for one chat turn.

Order is fixed:

  1. system prompt (formatting rules + the ``<think>`` convention)
  2. every stored turn of the conversation, oldest first
  3. retrieved context, appended to the content of the final user turn

The history already ends with the just-stored user message, so there is no
separate "current query" argument.
"""

import logging

from .prompts import RETRIEVED_CONTEXT_FRAME, SYSTEM_PROMPT

logger = logging.getLogger(__name__)

# History length (user turn included) at which a conversation is titled:
# user, assistant, user.
TITLE_TRIGGER_HISTORY_LENGTH = 3


def format_retrieved_context(matches) -> str:
    """Render retriever matches as a prompt addendum ("" when none)."""
    if not matches:
        return ""
    return RETRIEVED_CONTEXT_FRAME.format(context="\n".join(m.content for m in matches))


def build_messages(
    history: list[dict],
    *,
    context_text: str = "",
    system_prompt: str = SYSTEM_PROMPT,
) -> list[dict]:
    """Assemble the chat-format message list for the model.

    Parameters
    ----------
    history : list[dict]
        Stored messages in creation order (``role`` / ``content`` keys;
        extra keys are ignored).
    context_text : str
        Output of :func:`format_retrieved_context`.  Only attached when the
        last message is the outgoing user turn.
    system_prompt : str
        Override for tests or alternative personas.
    """
    messages: list[dict] = [{"role": "system", "content": system_prompt}]
    messages.extend({"role": m["role"], "content": m["content"]} for m in history)

    attached = False
    if context_text and len(messages) > 1 and messages[-1]["role"] == "user":
        messages[-1]["content"] += context_text
        attached = True

    logger.info(
        "Messages: %d total (history=%d, context=%s)",
        len(messages), len(history), "yes" if attached else "no",
    )
    return messages


def should_generate_title(title: str | None, history_length: int) -> bool:
    """True exactly once per untitled conversation: on its second user turn."""
    return not title and history_length == TITLE_TRIGGER_HISTORY_LENGTH

"""LLM package — prompt assembly, title generation, inference providers.

For new code, import from submodules directly::

    from llm.prompt_orchestrator import build_messages
    from llm.providers import provider
"""

from .generators import generate_title
from .prompt_orchestrator import build_messages, format_retrieved_context, should_generate_title

__all__ = [
    "build_messages",
    "format_retrieved_context",
    "generate_title",
    "should_generate_title",
]

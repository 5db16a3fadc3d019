"""Error taxonomy shared by every layer.

Which errors end a chat turn and which only degrade it is decided by
``pipeline.ChatPipeline``; the HTTP mapping lives in ``main.py``.
"""


class ChatError(Exception):
    """Base class for all expected failures."""


class ProviderError(ChatError):
    """Embedding or inference endpoint unreachable, or answered non-2xx."""


class PersistenceError(ChatError):
    """Store read or write failed."""


class ProtocolError(ChatError):
    """One upstream stream fragment could not be parsed."""


class ValidationError(ChatError):
    """A request is missing a required field or references unknown data."""

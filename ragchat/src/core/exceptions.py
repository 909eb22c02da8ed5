"""
RAGChat - Exceptions
=====================
Error hierarchy for the chat pipeline.

Exception Hierarchy:
    RAGChatError (base)
    ├── ConfigurationError   required client / credentials missing
    ├── ValidationError      malformed input, raised before any store call
    ├── StoreFailure         vector, history or rate-limit store call failed
    └── GenerationFailure    the language-model call failed or was cut short

Rate-limit denial is *not* an exception: ``RAGChat.chat`` returns a
``ChatResponse`` with ``status == ChatStatus.DENIED``.

Usage:
    from ragchat.src.core.exceptions import StoreFailure

    try:
        messages = await history.get_messages(session_id="abc")
    except StoreFailure as e:
        logger.error("History unavailable: %s", e)
"""

from __future__ import annotations


class RAGChatError(Exception):
    """
    Base exception for all RAGChat errors.

    Attributes:
        message: Human-readable error description
        details: Additional technical details (optional)
    """

    def __init__(self, message: str = "A RAGChat error occurred", details: str | None = None):
        self.message = message
        self.details = details

        full_message = message
        if details:
            full_message = f"{message} | Details: {details}"

        super().__init__(full_message)


class ConfigurationError(RAGChatError):
    """Raised at construction when neither a client nor its config is available."""


class ValidationError(RAGChatError):
    """Raised for malformed input before any external call is attempted."""


class StoreFailure(RAGChatError):
    """
    Raised when a backing store call fails or the store is unreachable.

    Attributes:
        store: Which store failed (``"vector"``, ``"history"``, ``"ratelimit"``)
        original_error: The underlying client exception, if any
    """

    def __init__(self, store: str, original_error: BaseException | None = None, message: str | None = None):
        self.store = store
        self.original_error = original_error
        details = f"{type(original_error).__name__}: {original_error}" if original_error else None
        super().__init__(message or f"{store} store operation failed", details)


class GenerationFailure(RAGChatError):
    """
    Raised when the language model fails; history is left untouched.

    Attributes:
        original_error: The underlying model exception, if any
    """

    def __init__(self, original_error: BaseException | None = None, message: str = "Language model generation failed"):
        self.original_error = original_error
        details = f"{type(original_error).__name__}: {original_error}" if original_error else None
        super().__init__(message, details)

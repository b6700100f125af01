from __future__ import annotations


class ConversationError(Exception):
    """Base class for failures scoped to a single thread or session."""

    code = "conversation_error"


class ValidationError(ConversationError, ValueError):
    """Raised for empty content or malformed input that never leaves the caller."""

    code = "validation_error"


class GateError(ConversationError):
    """Raised when content is not sendable in the thread's current gate mode."""

    code = "gate_restricted"


class NotFoundError(ConversationError, KeyError):
    """Raised when a thread or a sender/participant pairing does not exist."""

    code = "not_found"

    def __str__(self) -> str:
        # KeyError quotes its argument; keep plain messages for logs and HTTP details.
        return Exception.__str__(self)


class TransientWriteError(ConversationError):
    """Raised when the thread store fails a read or write for a retryable reason."""

    code = "transient_write_error"


class ChannelDisconnected(ConversationError):
    """Raised on a change-feed subscription that has been dropped."""

    code = "channel_disconnected"

"""Error taxonomy shared by every replyrag component.

Each error carries a stable ``kind`` used by the inbound operation envelope
and by the HTTP layer for status mapping.
"""

from __future__ import annotations


class ReplyRagError(Exception):
    """Base class for domain errors."""

    kind: str = "internal"
    retryable: bool = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(ReplyRagError):
    """Malformed input; fatal to the single call, never retried."""

    kind = "validation"


class ConflictError(ReplyRagError):
    """Duplicate ingestion without overwrite, or a job already running."""

    kind = "conflict"


class NotFoundError(ReplyRagError):
    """The addressed document or content item does not exist."""

    kind = "not_found"


class DependencyError(ReplyRagError):
    """Embedding/completion gateway failure after bounded retries."""

    kind = "dependency"

    def __init__(self, message: str, *, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable


class IntegrityError(ReplyRagError):
    """An answer referenced an item outside the supplied candidate set.

    Repaired internally by dropping the reference; never surfaced to callers.
    """

    kind = "integrity"


class StaleStateError(ReplyRagError):
    """Content item not ready (or pool missing) so a grounded answer is impossible."""

    kind = "not_ready"
    retryable = True


class AnswerFormatError(ReplyRagError):
    """The completion kept returning malformed structured output."""

    kind = "answer_format"


__all__ = [
    "AnswerFormatError",
    "ConflictError",
    "DependencyError",
    "IntegrityError",
    "NotFoundError",
    "ReplyRagError",
    "StaleStateError",
    "ValidationError",
]

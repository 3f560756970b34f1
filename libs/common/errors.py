"""Error taxonomy for the retrieval-answer pipeline.

Three classes of failure are distinguished:

1. Upstream unavailable: the vector index, embedder, language model or
   relational store could not be reached or timed out.
2. Validation failed: never raised, carried on ``ValidationResult``.
3. Data inconsistency: a cached answer's embedding no longer resolves to
   a backing row. Logged and treated as a no-op.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, TypeVar

T = TypeVar("T")

GENERIC_FAILURE_MESSAGE = (
    "No pudimos procesar tu consulta en este momento. Por favor, intenta de nuevo."
)
TEMPORARILY_UNAVAILABLE_MESSAGE = (
    "El servicio no está disponible temporalmente. Intenta de nuevo en unos momentos."
)


class PipelineError(Exception):
    """Base class for every error raised by the pipeline."""


class UpstreamUnavailableError(PipelineError):
    """An external collaborator could not be reached."""


class EmbeddingError(UpstreamUnavailableError):
    """The embedder failed or returned no vector."""


class VectorIndexError(UpstreamUnavailableError):
    """The vector index rejected or failed a request."""


class LanguageModelError(UpstreamUnavailableError):
    """The language model call failed."""


class UpstreamTimeoutError(UpstreamUnavailableError):
    """An external call exceeded its time budget."""

    def __init__(self, operation: str, timeout_seconds: float):
        self.operation = operation
        self.timeout_seconds = timeout_seconds
        super().__init__(f"{operation} timed out after {timeout_seconds:g}s")


class CircuitOpenError(UpstreamUnavailableError):
    """The circuit breaker rejected the call without attempting it."""

    def __init__(self, operation: str, retry_after_seconds: float | None = None):
        self.operation = operation
        self.retry_after_seconds = retry_after_seconds
        super().__init__(
            f"Circuit breaker is OPEN. {operation} rejected. The database may be unavailable."
        )


class StoreError(PipelineError):
    """Application-level relational store error (bad query, constraint)."""


class NotFoundError(StoreError):
    """A row the caller referenced does not exist."""


class DataInconsistencyError(PipelineError):
    """A cache embedding no longer matches its backing row."""


class JobAlreadyRunningError(PipelineError):
    """A batch job found its single-instance lock already held."""

    def __init__(self, job_name: str):
        self.job_name = job_name
        super().__init__(f"Job '{job_name}' is already running")


def user_message_for(exc: BaseException) -> str:
    """Map a failure to the text shown to the end user."""
    if isinstance(exc, CircuitOpenError):
        return TEMPORARILY_UNAVAILABLE_MESSAGE
    return GENERIC_FAILURE_MESSAGE


async def with_timeout(awaitable: Awaitable[T], seconds: float, operation: str) -> T:
    """Await ``awaitable`` for at most ``seconds``.

    Raises:
        UpstreamTimeoutError: when the budget is exceeded. The pending call
            is cancelled by ``asyncio.wait_for``.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=seconds)
    except asyncio.TimeoutError as e:
        raise UpstreamTimeoutError(operation, seconds) from e

"""Error taxonomy for the memory graph engine.

Every failure the engine surfaces to callers derives from
:class:`MemoryGraphError` so the (excluded) HTTP layer can map the whole
family onto status codes with a single ``except`` clause.

Lookups do not raise a "not found" error: :meth:`get_memory_by_id` returns
``None`` instead, because callers routinely pass client-controlled ids.
"""

from __future__ import annotations


class MemoryGraphError(Exception):
    """Base class for all memory graph errors."""


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class InvalidInput(MemoryGraphError):
    """Raised for missing, empty or whitespace-only content."""


class ContentTooLarge(MemoryGraphError):
    """Raised when trimmed content exceeds the configured length ceiling.

    Attributes:
        length: Length of the trimmed content in characters.
        limit: The ceiling that was exceeded.
    """

    def __init__(self, length: int, limit: int) -> None:
        self.length = length
        self.limit = limit
        super().__init__(
            f"Content is {length} characters after trimming; the limit is {limit}."
        )


# ---------------------------------------------------------------------------
# Upstream providers
# ---------------------------------------------------------------------------


class ProviderError(MemoryGraphError):
    """Raised when the embedding or categorization provider fails.

    Attributes:
        provider: Short name of the failing provider (``"embedding"``,
            ``"categorization"``, ``"openrouter"``, ...), if known.
    """

    def __init__(self, message: str, provider: str | None = None) -> None:
        self.provider = provider
        prefix = f"{provider} provider error" if provider else "provider error"
        super().__init__(f"{prefix}: {message}")


class UpstreamTimeout(ProviderError):
    """Raised when a provider call does not complete within its timeout."""

    def __init__(self, provider: str, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(f"timed out after {timeout:.1f}s", provider=provider)


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------


class PersistenceError(MemoryGraphError):
    """Raised when the vector store fails to read or write."""


class StoreTimeout(PersistenceError):
    """Raised when a bounded store read does not complete in time."""

    def __init__(self, operation: str, timeout: float) -> None:
        self.operation = operation
        self.timeout = timeout
        super().__init__(f"Store operation '{operation}' timed out after {timeout:.1f}s.")

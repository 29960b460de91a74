"""Cortex exception hierarchy."""


class CortexError(Exception):
    """Base class for memory subsystem failures."""


class StoreBusyError(CortexError):
    """The store stayed locked or busy after every retry attempt."""

    def __init__(self, operation: str, attempts: int):
        super().__init__(f"{operation} failed: database busy after {attempts} attempts")
        self.operation = operation
        self.attempts = attempts


class EmbeddingUnavailableError(CortexError):
    """No embedding backend could be initialized (or embeddings are disabled)."""

"""Error taxonomy shared by the ledger, outbox, index and retriever.

Unknown ids and citations are not errors: lookups return ``None`` and
searches return an empty index with reason ``no-results``.
"""

from __future__ import annotations


class MemlayerError(Exception):
    """Base class for all memlayer errors."""


class ValidationError(MemlayerError):
    """Malformed event or query input. Raised before any write, never retried."""


class StorageUnavailable(MemlayerError):
    """Ledger or index cannot be reached. Fatal for the current call."""


class StorageBusy(StorageUnavailable):
    """Another process holds the ledger write lock past the busy timeout."""


class OperationTimeout(MemlayerError, TimeoutError):
    """An embedding or index call exceeded its time budget."""

    def __init__(self, operation: str, timeout: float) -> None:
        super().__init__(f"{operation} timed out after {timeout:.1f}s")
        self.operation = operation
        self.timeout = timeout


class BackendUnavailable(MemlayerError):
    """The embedding backend or similarity index raised while serving a call."""


class GenerationExhausted(MemlayerError):
    """Citation id generation collided on every salted attempt."""

    def __init__(self, event_id: str, attempts: int) -> None:
        super().__init__(f"citation id generation exhausted for {event_id} after {attempts} attempts")
        self.event_id = event_id
        self.attempts = attempts

"""Domain exceptions raised by the engine and its storage layer."""


class EngramError(Exception):
    """Base class for engine errors."""


class StorageError(EngramError):
    """Storage-related errors."""


class EmbeddingError(EngramError):
    """Raised when an embedding cannot be generated."""


class MemoryNotFoundError(EngramError):
    """Raised when a memory id does not resolve to a stored memory."""

    def __init__(self, memory_id: str):
        self.memory_id = memory_id
        super().__init__(f"Memory not found: {memory_id}")


class ContradictionNotFoundError(EngramError):
    """Raised when a contradiction id does not resolve to a stored record."""

    def __init__(self, contradiction_id: str):
        self.contradiction_id = contradiction_id
        super().__init__(f"Contradiction not found: {contradiction_id}")


class ContradictionAlreadyResolvedError(EngramError):
    """Raised when resolving a contradiction that is no longer unresolved."""

    def __init__(self, contradiction_id: str, status: str):
        self.contradiction_id = contradiction_id
        self.status = status
        super().__init__(f"Contradiction {contradiction_id} is already {status}")


class ConsolidationInProgressError(EngramError):
    """Raised when a consolidation run is requested while another is in flight."""


class ConsolidationCancelledError(EngramError):
    """Raised inside a pairwise sweep when its cancellation token fires."""

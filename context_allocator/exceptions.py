"""
Exceptions raised inside the allocator.

None of these escape prepare_context: they drive the fallback chain.
"""


class ContextAllocatorError(Exception):
    """Base error for the context allocator."""

    pass


class BackendUnavailableError(ContextAllocatorError):
    """A search, index or network backend could not serve the request."""

    pass


class CircuitOpenError(BackendUnavailableError):
    """Raised when a circuit breaker is open."""

    pass

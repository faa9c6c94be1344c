"""Error taxonomy for the catalog engine.

Client input errors are raised before any state is touched and map to 400.
Catalog availability errors are retryable and map to 503. Invariant
violations stop an aggregation that hit a safety bound.
"""


class PeekError(Exception):
    """Base class for all engine errors."""


class ClientInputError(PeekError):
    """Malformed filter value, unknown entity kind or invalid sort request."""


class UnknownEntityKindError(ClientInputError):
    """Entity kind outside the eight catalog kinds."""

    def __init__(self, kind: str):
        super().__init__(f"Unknown entity kind: {kind!r}")
        self.kind = kind


class CatalogUnavailableError(PeekError):
    """The catalog mirror has no snapshot to serve yet."""

    def __init__(self, message: str = "Catalog is not loaded yet", retry_after: int = 30):
        super().__init__(message)
        self.retry_after = retry_after


class InvariantViolation(PeekError):
    """A safety bound was hit (e.g. runaway hierarchy expansion)."""

"""Error kinds raised by the series engine.

Every error aborts the enclosing transaction. Calling layers translate them
into user-facing messages.
"""


class SeriesError(Exception):
    """Base class for all engine errors."""


class NotFound(SeriesError):
    """A master, exception or occurrence instant could not be resolved."""


class Conflict(SeriesError):
    """The request collides with existing state (frontier, cancellation...)."""


class InvariantViolation(SeriesError):
    """Persisted state would become inconsistent; never user-recoverable."""


class InvalidChanges(SeriesError, ValueError):
    """The request combines fields that make no sense together."""

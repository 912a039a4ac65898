"""
Error Taxonomy

Every error raised by the grounding layer derives from GroundingError.
"""


class GroundingError(Exception):
    """Base class for grounding layer errors."""


class ValidationError(GroundingError, ValueError):
    """Malformed request, rejected before any I/O."""


class NotFoundError(GroundingError):
    """A referenced memory, source or entry does not exist."""

    def __init__(self, kind: str, identifier: object):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found: {identifier}")


class StoreError(GroundingError):
    """Persistence failure reported by the backing store."""


class OptimizationFailure(GroundingError):
    """Internal context optimization error. Never leaves the optimizer."""

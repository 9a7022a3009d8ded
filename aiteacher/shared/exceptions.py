"""
Exception hierarchy for the AI Teacher service.
"""


class AITeacherError(Exception):
    """Base exception for all AI Teacher errors."""
    pass


class MemoryStoreError(AITeacherError):
    """Raised when a user memory write fails."""
    pass


class MemoryNotFoundError(MemoryStoreError):
    """Raised when a user memory record does not exist."""
    pass


class InteractionNotFoundError(MemoryNotFoundError):
    """Raised when feedback targets an unknown interaction."""
    pass


class HealthCheckError(AITeacherError):
    """Raised by health probes on a non-ok or malformed reply."""
    pass

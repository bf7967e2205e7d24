"""
Access-control error taxonomy.

Mapped to HTTP status codes by the exception handlers in ``app.main``.
"""


class AccessControlError(Exception):
    """Base class for errors raised by the permission engine."""


class NotFoundError(AccessControlError):
    """A referenced user, role, retreat or delegation does not exist."""


class PolicyViolationError(AccessControlError):
    """A delegation or override request exceeds the static rules."""


class UnauthorizedError(AccessControlError):
    """The acting user may not perform this mutation."""

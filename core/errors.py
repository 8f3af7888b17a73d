"""
core/errors.py -- Domain exceptions shared across PostureWatch layers.

Messages carried by these exceptions are safe to show to end users: they
never include internal identifiers, stack traces, or credentials.
"""


class InvalidTargetError(ValueError):
    """A submitted URL was malformed or disallowed. Never reaches the fetcher."""


class DeliveryError(RuntimeError):
    """The notification transport rejected a message.

    The digest dispatcher leaves the affected alerts unsent so the next pass
    retries them.
    """


class LeaseUnavailableError(RuntimeError):
    """Another scan for the same target is already in flight."""

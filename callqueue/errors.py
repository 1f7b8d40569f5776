"""Exceptions raised by the call queue."""


class CallQueueError(Exception):
    """Base class for call queue errors."""


class ValidationError(CallQueueError, ValueError):
    """An admin operation was given an out-of-range value."""


class NotFoundError(CallQueueError, LookupError):
    """A referenced agent or phone number does not exist."""


class DispatchError(CallQueueError):
    """The calling provider rejected or failed an outbound call request."""


class MissingReferenceError(CallQueueError):
    """A queue entry points at an agent or phone number that no longer exists.

    Retrying cannot fix this, so the entry fails without spending its retry budget.
    """

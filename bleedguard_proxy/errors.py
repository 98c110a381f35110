class ReputationError(Exception):
    """Base class for reputation lookup failures. Never reaches the user."""


class TransportError(ReputationError):
    """The lookup did not complete: connection error, timeout or non-2xx status."""


class MalformedResponse(ReputationError):
    """A body came back but it is not the expected {"code": <int>} envelope."""

"""Errors raised by persistence gateways."""


class GatewayError(Exception):
    """A backing store could not complete an operation."""

    def __init__(self, message: str, backend: str = "unknown"):
        super().__init__(message)
        self.backend = backend


class GatewayUnavailable(GatewayError):
    """Both the primary store and its local fallback failed."""

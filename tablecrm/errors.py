"""Error taxonomy shared by the gateway, pipeline, batch runner and API.

Only ConfigurationError and ValidationError are meant to reach a caller.
GatewayError and ParseError are recovered where they occur; partial failures
are reported as tallies, never raised.
"""
from __future__ import annotations

from tablecrm.retry import RetryableError


class ConfigurationError(Exception):
    """Missing credentials or settings; the operation is not attempted."""


class ValidationError(ValueError):
    """Bad input (no key column, empty prompt, bad count) caught before any external call."""


class GatewayError(RetryableError):
    """Model, search or network failure in the generative gateway."""


class ParseError(Exception):
    """Model output could not be read as the expected JSON shape."""

    def __init__(self, message: str, raw: str = ""):
        super().__init__(message)
        self.raw = raw

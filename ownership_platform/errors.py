from __future__ import annotations


class OwnershipPlatformError(RuntimeError):
    """Base class for platform errors."""


class ValidationError(ValueError, OwnershipPlatformError):
    """Invalid identifier or argument supplied by a caller.

    Raised synchronously, before any SQL is built. Never coerced.
    """


class ConfigurationError(OwnershipPlatformError):
    """A required credential or setting is missing. Fatal at startup."""


class TransientIOError(OwnershipPlatformError):
    """Network or connection failure that survived the retry budget."""


class MalformedInputError(OwnershipPlatformError):
    """A filing document that matches no known shape.

    Parsers raise this internally and convert it to a None/empty result.
    """


class SecRequestError(TransientIOError):
    def __init__(self, url: str, status_code: int, body: str = ""):
        super().__init__(f"SEC request failed {status_code}: {url} {body[:200]}")
        self.url = url
        self.status_code = status_code

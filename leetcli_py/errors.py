"""Exception types shared by the client and the engine."""

from typing import Optional


class LeetCliError(Exception):
    """Base class for all leetcli_py errors."""


class RemoteError(LeetCliError):
    """The remote platform could not serve a request."""


class NetworkError(RemoteError):
    """Transport failure or server-side error. Retriable."""


class AuthError(RemoteError):
    """Session is missing, expired or rejected. Not retried by the engine."""


class RateLimited(RemoteError):
    """The platform asked us to slow down."""

    def __init__(self, message: str = "Rate limited", retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class CacheCorruption(LeetCliError):
    """The on-disk cache could not be decoded."""


class JobTimeout(LeetCliError):
    """A run/submit job did not reach a verdict before its deadline."""


class JobCancelled(LeetCliError):
    """A run/submit job was cancelled before it finished."""


def is_retriable(error: BaseException) -> bool:
    """Return True if the engine may retry after this error."""
    return isinstance(error, (NetworkError, RateLimited))

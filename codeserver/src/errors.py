from __future__ import annotations

from kubernetes.client import ApiException
from urllib3.exceptions import HTTPError as Urllib3HTTPError

RETRYABLE_API_STATUSES = frozenset({409, 429, 500, 502, 503, 504})


class ReconcileError(Exception):
    """Base class for errors raised while reconciling a CodeServer."""


class ValidationError(ReconcileError):
    """The CodeServer spec is malformed.

    Terminal for the current generation: the resource is marked ``Failed`` and
    only a new spec generation triggers another attempt.
    """


class TransientError(ReconcileError):
    """A condition expected to clear on its own, such as cleanup still in progress."""


class LXDError(TransientError):
    """The LXD host rejected a request or could not be reached."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


def is_not_found(exc: BaseException) -> bool:
    return isinstance(exc, ApiException) and exc.status == 404


def is_conflict(exc: BaseException) -> bool:
    return isinstance(exc, ApiException) and exc.status == 409


def is_transient(exc: BaseException) -> bool:
    """Return True when *exc* is worth retrying with backoff.

    Auth failures (401/403) and other client errors are not transient; they
    are still retried by the reconciler, but logged at error level.
    """
    if isinstance(exc, TransientError):
        return True
    if isinstance(exc, ApiException):
        return exc.status in RETRYABLE_API_STATUSES or exc.status == 0
    return isinstance(exc, (Urllib3HTTPError, ConnectionError, TimeoutError))

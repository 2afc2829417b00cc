"""Errors raised by the download-service API client."""

from __future__ import annotations

RETRYABLE_STATUS_CODES = frozenset({429, 502, 503, 504})
AUTH_ERROR_CODES = frozenset({"AUTH_ERROR", "NO_AUTH", "BAD_TOKEN"})


class RemoteApiError(Exception):
    """A request to the download-service API failed."""

    retryable = False

    def __init__(self, message: str, *, status_code: int | None = None, endpoint: str | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.endpoint = endpoint


class TransientRemoteError(RemoteApiError):
    """Timeouts, connection failures, 429 and gateway errors."""

    retryable = True


class RemoteAuthError(RemoteApiError):
    """The account credential was rejected (401/403)."""


def classify_status(status_code: int, body: object, endpoint: str) -> RemoteApiError:
    """Map a failed HTTP status to the matching error type."""
    detail = ""
    if isinstance(body, dict):
        detail = str(body.get("detail") or body.get("error") or "")
    message = f"{endpoint} returned HTTP {status_code}" + (f": {detail}" if detail else "")

    if status_code == 401:
        return RemoteAuthError(message, status_code=status_code, endpoint=endpoint)
    if status_code == 403:
        # Some 403s are plan/permission errors rather than bad credentials.
        code = body.get("error") if isinstance(body, dict) else None
        if code in AUTH_ERROR_CODES or code is None:
            return RemoteAuthError(message, status_code=status_code, endpoint=endpoint)
        return RemoteApiError(message, status_code=status_code, endpoint=endpoint)
    if status_code in RETRYABLE_STATUS_CODES:
        return TransientRemoteError(message, status_code=status_code, endpoint=endpoint)
    return RemoteApiError(message, status_code=status_code, endpoint=endpoint)

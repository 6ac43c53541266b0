"""
Custom Exception Classes for the Practice Sync service.

This module defines the error taxonomy of the sync core. Every failure that
crosses a component boundary is one of these exceptions, so callers can decide
precisely what is retryable and what is not.

Key Components:
- `SyncAPIException`: The base class. Carries a message, a stable error code and
  an optional details dictionary.
- Transport-level errors: `NotConfiguredError`, `InvalidURLError`,
  `HTTPStatusError`, `TransportError`.
- Payload-level errors: `EncodingError`, `DecodingError`, `QueueDecodeError`.
- `to_http_exception`: Maps the taxonomy onto FastAPI `HTTPException`s for the
  companion API.

Retry policy is not encoded here: the transport retries only its single
auth-challenge pass, and the flush engine recovers only the duplicate-key
conflict. Everything else is surfaced.
"""

from typing import Any, Dict, Iterable, Optional, Union

from fastapi import HTTPException

BODY_SNIPPET_LIMIT = 512


class SyncAPIException(Exception):
    """Base exception class for the sync core"""

    status_code = 500

    def __init__(
        self,
        message: str,
        error_code: str = "SYNC_API_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)


class ConfigurationError(SyncAPIException):
    """Raised when configuration validation fails"""

    def __init__(self, problems: Union[str, Iterable[str]]):
        if isinstance(problems, str):
            problems = [problems]
        problems = list(problems)
        super().__init__(
            "Configuration validation failed:\n"
            + "\n".join(f"  - {p}" for p in problems),
            "CONFIGURATION_ERROR",
            {"problems": problems},
        )


class NotConfiguredError(SyncAPIException):
    """Raised when no backend base endpoint is configured"""

    status_code = 503

    def __init__(self, reason: str = "No backend base URL configured"):
        super().__init__(reason, "NOT_CONFIGURED", {"reason": reason})


class InvalidURLError(SyncAPIException):
    """Raised when a request path or query cannot form a valid URL"""

    status_code = 400

    def __init__(self, path: str, reason: str):
        super().__init__(
            f"Invalid URL for path '{path}': {reason}",
            "INVALID_URL",
            {"path": path, "reason": reason},
        )


class HTTPStatusError(SyncAPIException):
    """Raised when the backend answers with a non-2xx status"""

    status_code = 502

    def __init__(self, status: int, body: bytes = b""):
        self.status = status
        self.body = body or b""
        self.body_snippet = self.body[:BODY_SNIPPET_LIMIT].decode(
            "utf-8", errors="replace"
        )
        super().__init__(
            f"HTTP {status}: {self.body_snippet}",
            "HTTP_ERROR",
            {"status": status, "body": self.body_snippet},
        )

    @property
    def is_auth_challenge(self) -> bool:
        return self.status in (401, 403)

    @property
    def is_conflict(self) -> bool:
        return self.status == 409


class TransportError(SyncAPIException):
    """Raised when the backend cannot be reached at all"""

    status_code = 504

    def __init__(self, url: str, reason: str):
        super().__init__(
            f"Transport failure for {url}: {reason}",
            "TRANSPORT_ERROR",
            {"url": url, "reason": reason},
        )


class EncodingError(SyncAPIException):
    """Raised when a request payload cannot be serialized"""

    status_code = 500

    def __init__(self, what: str, reason: str):
        super().__init__(
            f"Could not encode {what}: {reason}",
            "ENCODING_ERROR",
            {"what": what, "reason": reason},
        )


class DecodingError(SyncAPIException):
    """Raised when a response or stored payload has an unexpected shape"""

    status_code = 502

    def __init__(self, what: str, reason: str):
        super().__init__(
            f"Could not decode {what}: {reason}",
            "DECODING_ERROR",
            {"what": what, "reason": reason},
        )


class QueueDecodeError(DecodingError):
    """Raised when the persisted publish queue matches neither known schema"""

    status_code = 500

    def __init__(self, path: str, reason: str):
        super().__init__(f"publish queue file {path}", reason)
        self.error_code = "QUEUE_DECODE_ERROR"


class MissingOwnerError(SyncAPIException):
    """Raised when an owner-scoped write is attempted without an owner id"""

    status_code = 409

    def __init__(self, operation: str):
        super().__init__(
            f"Operation '{operation}' requires an owner user id",
            "MISSING_OWNER",
            {"operation": operation},
        )


class ValidationError(SyncAPIException):
    """Raised when input validation fails"""

    status_code = 400

    def __init__(self, field: str, value: Any, reason: str):
        super().__init__(
            f"Validation failed for field '{field}': {reason}",
            "VALIDATION_ERROR",
            {"field": field, "value": str(value), "reason": reason},
        )


def to_http_exception(exc: SyncAPIException) -> HTTPException:
    """Convert SyncAPIException to FastAPI HTTPException"""
    return HTTPException(
        status_code=exc.status_code,
        detail={
            "error_code": exc.error_code,
            "message": exc.message,
            "details": exc.details,
        },
    )

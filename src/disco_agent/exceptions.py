"""
Exception classes for the disco agent upload pipeline.

All exceptions inherit from DiscoAgentError and provide structured
error information with codes, messages, and optional details.
"""

from typing import Optional

from .enums import ErrorCode


class DiscoAgentError(Exception):
    """Base exception for all disco agent errors."""

    default_code = ErrorCode.CONFIGURATION

    def __init__(
        self,
        message: str,
        code: Optional[ErrorCode] = None,
        details: Optional[dict] = None,
    ) -> None:
        self.code = code or self.default_code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(code={self.code.value!r}, message={self.message!r})"

    def to_dict(self) -> dict:
        """Convert exception to dictionary for serialization."""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code.value,
            "message": self.message,
            "details": self.details,
        }


class ConfigurationError(DiscoAgentError):
    """Raised for caller mistakes: missing credentials, empty cluster ID, empty endpoints."""

    default_code = ErrorCode.CONFIGURATION


class NetworkError(DiscoAgentError):
    """Raised when the HTTP request could not be performed at all."""

    default_code = ErrorCode.NETWORK_ERROR


class UnexpectedStatusError(DiscoAgentError):
    """Raised when a server answers with a status code we don't handle."""

    default_code = ErrorCode.UNEXPECTED_STATUS

    def __init__(
        self,
        message: str,
        status_code: int,
        code: Optional[ErrorCode] = None,
        details: Optional[dict] = None,
    ) -> None:
        self.status_code = status_code
        details = dict(details or {})
        details.setdefault("status_code", status_code)
        super().__init__(message, code=code, details=details)

    @property
    def is_server_error(self) -> bool:
        return self.status_code >= 500


class ProtocolError(DiscoAgentError):
    """Raised when a response body can't be used (malformed, truncated, too large)."""

    default_code = ErrorCode.PARSE_ERROR


class ResponseParseError(ProtocolError):
    """Raised when an otherwise successful response contains invalid JSON."""

    default_code = ErrorCode.PARSE_ERROR


class OversizedResponseError(ProtocolError):
    """Raised when a JSON response exceeds its size limit or is truncated."""

    default_code = ErrorCode.OVERSIZED_RESPONSE


class NotFoundError(DiscoAgentError):
    """Raised when service discovery doesn't know the subdomain."""

    default_code = ErrorCode.NOT_FOUND


class MissingServiceError(DiscoAgentError):
    """Raised when the identity service is absent from a discovery response."""

    default_code = ErrorCode.MISSING_SERVICE


class AuthenticationError(DiscoAgentError):
    """Raised when the identity service reports a failed login."""

    default_code = ErrorCode.AUTHENTICATION_FAILED


class UnsupportedMechanismError(AuthenticationError):
    """Raised when the login requires anything other than a single username/password answer."""

    default_code = ErrorCode.UNSUPPORTED_MECHANISM


class NoCredentialError(DiscoAgentError):
    """Raised when signing a request before any successful login."""

    default_code = ErrorCode.NO_CREDENTIAL


class UploadError(DiscoAgentError):
    """Raised when either phase of a snapshot upload fails."""

    default_code = ErrorCode.UPLOAD_FAILED

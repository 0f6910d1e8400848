"""
Enumeration types for the disco agent upload pipeline.

These enums provide type-safe constants for error codes, log levels and
the login state machine.
"""

from enum import Enum


class LogLevel(Enum):
    """Logging severity levels."""

    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"

    @property
    def rank(self) -> int:
        return _LEVEL_RANKS[self]


_LEVEL_RANKS = {
    LogLevel.DEBUG: 10,
    LogLevel.INFO: 20,
    LogLevel.WARN: 30,
    LogLevel.ERROR: 40,
}


class ErrorCode(Enum):
    """Stable error codes carried by every DiscoAgentError."""

    CONFIGURATION = "configuration"
    NETWORK_ERROR = "network_error"
    UNEXPECTED_STATUS = "unexpected_status"
    PARSE_ERROR = "parse_error"
    OVERSIZED_RESPONSE = "oversized_response"
    NOT_FOUND = "not_found"
    MISSING_SERVICE = "missing_service"
    AUTHENTICATION_FAILED = "authentication_failed"
    UNSUPPORTED_MECHANISM = "unsupported_mechanism"
    NO_CREDENTIAL = "no_credential"
    UPLOAD_FAILED = "upload_failed"


class LoginState(Enum):
    """States of a single username/password login attempt."""

    NOT_STARTED = "not_started"
    AWAITING_CHALLENGE_SELECTION = "awaiting_challenge_selection"
    AWAITING_ANSWER = "awaiting_answer"
    AUTHENTICATED = "authenticated"
    FAILED = "failed"


class UploadPhase(Enum):
    """The two phases of a snapshot upload."""

    RETRIEVE_URL = "retrieve_presigned_url"
    PUT_OBJECT = "put_presigned_object"

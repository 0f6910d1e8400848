"""
CyberArk Identity client.

This module logs in to the CyberArk Identity API as a service user with a
username and password, caches the bearer token it receives, and signs
outgoing requests with it.

A login is a two-step challenge-response exchange:

1. StartAuthentication names the user and returns a session ID plus the
   challenges the user must answer, each a list of mechanisms.
2. AdvanceAuthentication answers the single username/password ("UP")
   mechanism with the password and returns the token.

Only a single challenge holding a single enrolled UP mechanism is
supported. Anything else means MFA is configured for the user and the
login is rejected without calling AdvanceAuthentication.

Both steps run inside one retry loop with a constant backoff. Transport
errors and HTTP 5xx responses are retried; every other failure ends the
login immediately.
"""

import asyncio
import json
import threading
from typing import Any, Awaitable, Callable, Optional, Union

import httpx

from .audit_logger import AuditLogger
from .config import RetryConfig
from .enums import LoginState, LogLevel
from .exceptions import (
    AuthenticationError,
    DiscoAgentError,
    NoCredentialError,
    ResponseParseError,
    UnexpectedStatusError,
    UnsupportedMechanismError,
)
from .models import AuthSession, CachedCredential
from .responses import open_response, read_limited_json, status_text
from .retry_manager import Permanent, Retryable, RetryManager, classify_error
from .telemetry import Telemetry

START_AUTHENTICATION_PATH = "/Security/StartAuthentication"
ADVANCE_AUTHENTICATION_PATH = "/Security/AdvanceAuthentication"

# Response body limits
MAX_START_AUTHENTICATION_BODY_BYTES = 10 * 1024
MAX_ADVANCE_AUTHENTICATION_BODY_BYTES = 30 * 1024

# Mechanism name for a username/password challenge
MECHANISM_USERNAME_PASSWORD = "UP"

ACTION_ANSWER = "Answer"
SUMMARY_LOGIN_SUCCESS = "LoginSuccess"

NATIVE_CLIENT_HEADER = "X-IDAP-NATIVE-CLIENT"

COMPONENT = "identity"


def _field(data: Any, name: str) -> Any:
    """Look up a JSON object member, ignoring case as the Identity API isn't consistent."""
    if not isinstance(data, dict):
        return None
    if name in data:
        return data[name]
    lowered = name.lower()
    for key, value in data.items():
        if isinstance(key, str) and key.lower() == lowered:
            return value
    return None


def _failure_message(step: str, body: dict) -> str:
    message = _field(body, "Message") or ""
    error_id = _field(body, "ErrorID") or ""
    return (
        f"got a failure response from request to {step}: "
        f"message={json.dumps(str(message))}, error={json.dumps(str(error_id))}"
    )


def zero_buffer(buffer: bytearray) -> None:
    """Overwrite a mutable buffer with zero bytes in place."""
    buffer[:] = bytes(len(buffer))


def select_mechanism(result: Any) -> tuple[str, str]:
    """
    Check the challenges from StartAuthentication and pick the UP mechanism.

    Args:
        result: The "Result" object of a successful StartAuthentication response

    Returns:
        Tuple of (session_id, mechanism_id)

    Raises:
        UnsupportedMechanismError: Unless there is exactly one challenge with
            exactly one enrolled UP mechanism
        ResponseParseError: If the session or mechanism ID is missing
    """
    challenges = _field(result, "Challenges") or []
    if not isinstance(challenges, list) or len(challenges) == 0:
        raise UnsupportedMechanismError(
            "got no challenges in response to start authentication; "
            "unable to log in with a username and password"
        )

    if len(challenges) > 1:
        raise UnsupportedMechanismError(
            f"got {len(challenges)} challenges in response to start authentication, "
            "which means MFA may be enabled; MFA is not supported",
            details={"challenges": len(challenges)},
        )

    mechanisms = _field(challenges[0], "Mechanisms") or []
    if not isinstance(mechanisms, list) or len(mechanisms) == 0:
        raise UnsupportedMechanismError(
            "got no mechanisms in the challenge from start authentication; "
            "unable to log in with a username and password"
        )

    if len(mechanisms) > 1:
        raise UnsupportedMechanismError(
            f"got {len(mechanisms)} mechanisms in the challenge from start authentication, "
            "which means MFA may be enabled; MFA is not supported",
            details={"mechanisms": len(mechanisms)},
        )

    mechanism = mechanisms[0]
    name = _field(mechanism, "Name")
    if name != MECHANISM_USERNAME_PASSWORD:
        raise UnsupportedMechanismError(
            f"the only mechanism offered by start authentication is {name!r}, "
            f"not the {MECHANISM_USERNAME_PASSWORD!r} username/password mechanism",
            details={"mechanism": name},
        )

    if _field(mechanism, "Enrolled") is not True:
        raise UnsupportedMechanismError(
            "the username/password mechanism offered by start authentication "
            "is not enrolled for this user"
        )

    session_id = _field(result, "SessionId")
    mechanism_id = _field(mechanism, "MechanismId")
    if not session_id or not mechanism_id:
        raise ResponseParseError(
            "start authentication response is missing the session ID or mechanism ID"
        )

    return str(session_id), str(mechanism_id)


class IdentityClient:
    """
    Client for the CyberArk Identity API.

    The cached credential is written by login() and read by sign(), which
    may run concurrently, possibly from other threads; both hold a
    threading.Lock for the read or the replacement only.
    """

    def __init__(
        self,
        identity_api: str,
        subdomain: str,
        telemetry: Telemetry,
        http_client: Optional[httpx.AsyncClient] = None,
        retry_config: Optional[RetryConfig] = None,
        logger: Optional[AuditLogger] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        timeout: float = 30.0,
    ) -> None:
        """
        Initialize the identity client.

        Args:
            identity_api: Base URL of the Identity API, from service discovery
            subdomain: Tenant subdomain, sent as the TenantId
            telemetry: Telemetry header value attached to every request
            http_client: Optional shared HTTP client; one is created if omitted
            retry_config: Backoff configuration for the login loop
            logger: Optional audit logger
            sleep: Awaitable sleep used between login attempts
            timeout: Request timeout in seconds for an owned HTTP client
        """
        self._identity_api = identity_api.rstrip("/")
        self._subdomain = subdomain
        self._telemetry = telemetry
        self._logger = logger
        self._timeout = timeout

        self._client = http_client
        self._owns_client = http_client is None

        self._retry = RetryManager(
            retry_config or RetryConfig(),
            logger=logger,
            component=COMPONENT,
            sleep=sleep,
        )

        self._credential: Optional[CachedCredential] = None
        self._credential_lock = threading.Lock()
        self._state = LoginState.NOT_STARTED

    async def __aenter__(self) -> "IdentityClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    @property
    def login_state(self) -> LoginState:
        """State reached by the most recent login attempt."""
        return self._state

    @property
    def is_authenticated(self) -> bool:
        with self._credential_lock:
            return self._credential is not None

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                verify=True,
                timeout=httpx.Timeout(self._timeout),
            )
        return self._client

    def _set_state(self, state: LoginState) -> None:
        self._state = state
        self._log(LogLevel.DEBUG, "login state changed", {"state": state.value})

    async def login(self, username: str, password: bytearray) -> None:
        """
        Log in with a username and password and cache the resulting token.

        The password buffer is zeroed before this method returns, whether
        the login succeeded, failed, or was cancelled.

        Args:
            username: The service user to log in as
            password: The password, as a mutable buffer owned by this call

        Raises:
            AuthenticationError: If the server rejected the login
            UnsupportedMechanismError: If MFA or another mechanism is required
            UnexpectedStatusError: On a 4xx response (or 5xx once attempts run out)
            ProtocolError: If a response was malformed, truncated or too large
            NetworkError: If attempts ran out on transport failures
        """
        if not isinstance(password, bytearray):
            raise TypeError("password must be a bytearray so it can be zeroed after use")

        try:
            self._log(LogLevel.INFO, "logging in", {"username": username})
            result = await self._retry.execute_with_retry(
                lambda: self._attempt_login(username, password)
            )
        finally:
            zero_buffer(password)

        if not result.success:
            error = result.last_error
            if self._logger:
                self._logger.log_error(
                    COMPONENT,
                    "login failed",
                    error=error,
                    additional_data={"username": username, "attempts": result.attempts},
                )
            if error is None:
                raise AuthenticationError("login failed without an error")
            raise error

        self._log(LogLevel.INFO, "logged in", {
            "username": username,
            "attempts": result.attempts,
        })

    async def _attempt_login(
        self,
        username: str,
        password: bytearray,
    ) -> Union[None, Retryable, Permanent]:
        self._set_state(LoginState.NOT_STARTED)
        try:
            session = await self._start_authentication(username)
            token = await self._advance_authentication(password, session)
        except DiscoAgentError as e:
            self._set_state(LoginState.FAILED)
            return classify_error(e)

        with self._credential_lock:
            self._credential = CachedCredential(token=token, principal=username)
        self._set_state(LoginState.AUTHENTICATED)
        return None

    def _request_headers(self) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            NATIVE_CLIENT_HEADER: "true",
            "User-Agent": self._telemetry.user_agent,
        }
        self._telemetry.apply(headers)
        return headers

    async def _post(self, path: str, body: dict, step: str, limit: int) -> dict:
        client = self._http()
        request = client.build_request(
            "POST",
            self._identity_api + path,
            content=json.dumps(body).encode("utf-8"),
            headers=self._request_headers(),
        )

        async with open_response(client, request, step) as response:
            if not response.is_success:
                raise UnexpectedStatusError(
                    f"got unexpected status code {status_text(response)} "
                    f"from request to {step} in CyberArk Identity API",
                    status_code=response.status_code,
                )
            decoded = await read_limited_json(response, limit, step)

        if not isinstance(decoded, dict):
            raise ResponseParseError(
                f"failed to parse JSON from otherwise successful request to {step}: "
                "expected a JSON object"
            )
        return decoded

    async def _start_authentication(self, username: str) -> AuthSession:
        step = "start authentication"
        self._set_state(LoginState.AWAITING_CHALLENGE_SELECTION)

        body = await self._post(
            START_AUTHENTICATION_PATH,
            {
                "TenantId": self._subdomain,
                "User": username,
                "Version": "1.0",
            },
            step,
            MAX_START_AUTHENTICATION_BODY_BYTES,
        )

        if _field(body, "Success") is not True:
            raise AuthenticationError(_failure_message(step, body))

        session_id, mechanism_id = select_mechanism(_field(body, "Result"))
        self._set_state(LoginState.AWAITING_ANSWER)

        return AuthSession(
            session_id=session_id,
            mechanism_id=mechanism_id,
            tenant_id=self._subdomain,
        )

    async def _advance_authentication(self, password: bytearray, session: AuthSession) -> str:
        step = "advance authentication"

        body = await self._post(
            ADVANCE_AUTHENTICATION_PATH,
            {
                "Action": ACTION_ANSWER,
                "Answer": password.decode("utf-8"),
                "MechanismId": session.mechanism_id,
                "SessionId": session.session_id,
                "TenantId": session.tenant_id,
                "PersistentLogin": session.persistent_login,
            },
            step,
            MAX_ADVANCE_AUTHENTICATION_BODY_BYTES,
        )

        # The server answers 200 OK even when the password is wrong
        if _field(body, "Success") is not True:
            raise AuthenticationError(_failure_message(step, body))

        result = _field(body, "Result")
        summary = _field(result, "Summary")
        if summary != SUMMARY_LOGIN_SUCCESS:
            raise UnsupportedMechanismError(
                f"got a success response from {step} but the summary was {summary!r}, "
                f"not {SUMMARY_LOGIN_SUCCESS!r}; further challenges such as MFA are not supported",
                details={"summary": summary},
            )

        token = _field(result, "Token")
        if not token:
            raise ResponseParseError(f"got a success response from {step} without a token")

        return str(token)

    def sign(self, request: httpx.Request) -> str:
        """
        Add the cached bearer token to a request.

        Args:
            request: The outgoing request; its Authorization header is set

        Returns:
            The principal the token belongs to

        Raises:
            NoCredentialError: If no login has succeeded yet
        """
        with self._credential_lock:
            credential = self._credential

        if credential is None:
            raise NoCredentialError("no token cached; log in before signing requests")

        request.headers["Authorization"] = f"Bearer {credential.token}"
        return credential.principal

    def clear_credential(self) -> None:
        """Drop the cached token so the next use has to log in again."""
        with self._credential_lock:
            had_credential = self._credential is not None
            self._credential = None
        if had_credential:
            self._set_state(LoginState.NOT_STARTED)
            self._log(LogLevel.INFO, "cleared cached token", {})

    def _log(self, level: LogLevel, message: str, data: dict) -> None:
        if self._logger:
            self._logger.log(level, COMPONENT, message, data)

    async def close(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

"""
Helpers for reading HTTP responses safely.

Every JSON body is read through a hard byte limit. A body that goes over
its limit, or that ends in the middle of a JSON value, is rejected with
OversizedResponseError instead of being reported as a generic parse error.
"""

import json
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import httpx

from .exceptions import NetworkError, OversizedResponseError, ResponseParseError

# Bytes of a failed response body included in error messages
MAX_ERROR_BODY_BYTES = 500

TRUNCATED_MESSAGE = "rejecting JSON response from server as it was too large or was truncated"


@asynccontextmanager
async def open_response(
    client: httpx.AsyncClient,
    request: httpx.Request,
    description: str,
) -> AsyncIterator[httpx.Response]:
    """
    Send a request in streaming mode and close the response afterwards.

    Transport failures, including those raised while the body is being
    read, are converted to NetworkError. A body that can't be decoded
    (a bad Content-Encoding, for instance) becomes ResponseParseError.

    Args:
        client: The HTTP client to send with
        request: A request built with client.build_request
        description: What the request is for, used in error messages
    """
    try:
        response = await client.send(request, stream=True)
    except httpx.TransportError as e:
        raise NetworkError(
            f"failed to perform HTTP request to {description}: {e}",
            details={"url": str(request.url), "error_type": type(e).__name__},
        ) from e

    try:
        yield response
    except httpx.TransportError as e:
        raise NetworkError(
            f"failed to read HTTP response from {description}: {e}",
            details={"url": str(request.url), "error_type": type(e).__name__},
        ) from e
    except httpx.DecodingError as e:
        raise ResponseParseError(
            f"failed to decode HTTP response body from {description}: {e}",
            details={"url": str(request.url), "error_type": type(e).__name__},
        ) from e
    finally:
        await response.aclose()


async def read_limited(response: httpx.Response, limit: int) -> tuple[bytes, bool]:
    """
    Read at most `limit` bytes of a streamed response body.

    Returns:
        Tuple of (body, exceeded) where exceeded is True if more data followed
    """
    buffer = bytearray()
    async for chunk in response.aiter_bytes():
        remaining = limit - len(buffer)
        if len(chunk) > remaining:
            buffer.extend(chunk[:remaining])
            return bytes(buffer), True
        buffer.extend(chunk)
    return bytes(buffer), False


def _is_truncation(error: json.JSONDecodeError, document: str) -> bool:
    if error.msg.startswith("Unterminated string"):
        return True
    # A \uXXXX escape cut short by the end of the document
    if error.msg.startswith("Invalid \\uXXXX escape") and error.pos + 5 >= len(document):
        return True
    return error.pos >= len(document.rstrip())


def decode_json_document(body: bytes, description: str) -> Any:
    """
    Decode the first JSON value in `body`, ignoring anything after it.

    Raises:
        OversizedResponseError: If the document ends before the value does
        ResponseParseError: If the body is empty or not valid JSON
    """
    try:
        text = body.decode("utf-8")
    except UnicodeDecodeError as e:
        raise ResponseParseError(
            f"failed to parse JSON from otherwise successful request to {description}: {e}"
        ) from e

    document = text.lstrip()
    if not document:
        raise ResponseParseError(
            f"failed to parse JSON from otherwise successful request to {description}: empty body"
        )

    try:
        value, _ = json.JSONDecoder().raw_decode(document)
    except json.JSONDecodeError as e:
        if _is_truncation(e, document):
            raise OversizedResponseError(
                TRUNCATED_MESSAGE,
                details={"description": description, "body_bytes": len(body)},
            ) from e
        raise ResponseParseError(
            f"failed to parse JSON from otherwise successful request to {description}: {e}"
        ) from e
    return value


async def read_limited_json(
    response: httpx.Response,
    limit: int,
    description: str,
) -> Any:
    """Read and decode a JSON body of at most `limit` bytes."""
    body, exceeded = await read_limited(response, limit)
    if exceeded:
        raise OversizedResponseError(
            TRUNCATED_MESSAGE,
            details={"description": description, "limit_bytes": limit},
        )
    return decode_json_document(body, description)


async def read_error_body(response: httpx.Response, limit: int = MAX_ERROR_BODY_BYTES) -> str:
    """Up to `limit` bytes of a failed response, for diagnostics."""
    body, _ = await read_limited(response, limit)
    text = body.decode("utf-8", errors="replace").strip()
    return text or "<empty body>"


def status_text(response: httpx.Response) -> str:
    """Status in the `404 Not Found` form."""
    reason = response.reason_phrase
    return f"{response.status_code} {reason}" if reason else str(response.status_code)

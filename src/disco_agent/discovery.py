"""
Service Discovery client.

This module resolves a CyberArk tenant subdomain to the API endpoints the
upload pipeline needs (the Identity API and the Discovery and Context API)
and to the tenant UUID. Results are cached per client for an hour so that
repeated login/upload cycles don't hit the discovery service every time.
"""

import asyncio
import time
from typing import Callable, Optional

import httpx

from .audit_logger import AuditLogger
from .config import DiscoveryConfig
from .enums import LogLevel
from .exceptions import (
    DiscoAgentError,
    MissingServiceError,
    NotFoundError,
    ResponseParseError,
    UnexpectedStatusError,
)
from .models import DiscoveryCacheEntry, DiscoveryResult, ServiceEndpoint, ServiceEndpointSet
from .responses import open_response, read_limited_json, status_text
from .telemetry import Telemetry

# Service names in discovery responses. identity_administration is the
# API to use, not identity_user_portal.
IDENTITY_SERVICE_NAME = "identity_administration"
DISCOVERY_CONTEXT_SERVICE_NAME = "discoverycontext"

TENANT_DISCOVERY_PATH = "api/public/tenant-discovery"

COMPONENT = "discovery"


def select_endpoints(services: list) -> dict[str, str]:
    """
    Pick the API URL of each service we care about.

    For each service name the first endpoint of type "main" that is active
    and has a non-empty API URL wins; later matches are ignored.

    Args:
        services: The "services" list of a discovery response

    Returns:
        Mapping of service name to API URL, only for services that matched
    """
    wanted = (IDENTITY_SERVICE_NAME, DISCOVERY_CONTEXT_SERVICE_NAME)
    selected: dict[str, str] = {}

    for service in services:
        if not isinstance(service, dict):
            continue
        name = service.get("service_name")
        if name not in wanted or name in selected:
            continue
        endpoints = service.get("endpoints") or []
        if not isinstance(endpoints, list):
            continue
        for raw_endpoint in endpoints:
            if not isinstance(raw_endpoint, dict):
                continue
            endpoint = ServiceEndpoint.from_dict(raw_endpoint)
            if endpoint.is_usable:
                selected[name] = endpoint.api
                break

    return selected


class DiscoveryClient:
    """
    Client for the CyberArk Service Discovery API.

    One client targets exactly one subdomain for its lifetime, and holds a
    single cache entry for it. Concurrent resolve() calls serialize on one
    asyncio.Lock, which covers the cache check, the request and the update.
    """

    def __init__(
        self,
        subdomain: str,
        telemetry: Telemetry,
        http_client: Optional[httpx.AsyncClient] = None,
        config: Optional[DiscoveryConfig] = None,
        logger: Optional[AuditLogger] = None,
        clock: Callable[[], float] = time.monotonic,
        timeout: float = 30.0,
    ) -> None:
        """
        Initialize the discovery client.

        Args:
            subdomain: The tenant subdomain to resolve
            telemetry: Telemetry header value attached to the request
            http_client: Optional shared HTTP client; one is created if omitted
            config: Discovery configuration (base URL, cache TTL, size limit)
            logger: Optional audit logger
            clock: Monotonic clock used for cache expiry
            timeout: Request timeout in seconds for an owned HTTP client
        """
        self._subdomain = subdomain
        self._telemetry = telemetry
        self._config = config or DiscoveryConfig()
        self._base_url = self._config.resolved_base_url()
        self._logger = logger
        self._clock = clock
        self._timeout = timeout

        self._client = http_client
        self._owns_client = http_client is None

        self._cache: Optional[DiscoveryCacheEntry] = None
        self._cache_lock = asyncio.Lock()

    async def __aenter__(self) -> "DiscoveryClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    @property
    def subdomain(self) -> str:
        return self._subdomain

    @property
    def base_url(self) -> str:
        return self._base_url

    def discovery_url(self) -> str:
        """The tenant discovery endpoint, without the query string."""
        return f"{self._base_url.rstrip('/')}/{TENANT_DISCOVERY_PATH}"

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                verify=True,
                timeout=httpx.Timeout(self._timeout),
            )
        return self._client

    def invalidate(self) -> None:
        """Drop the cached result so the next resolve() fetches again."""
        self._cache = None

    async def resolve(self) -> DiscoveryResult:
        """
        Resolve the subdomain to its service endpoints and tenant ID.

        A cached result younger than the cache TTL is returned without any
        network call. Otherwise the discovery API is queried and the cache
        entry is replaced.

        Returns:
            DiscoveryResult with the endpoints and tenant UUID

        Raises:
            NotFoundError: On HTTP 404, i.e. an unknown subdomain
            MissingServiceError: If no usable identity endpoint is listed
            OversizedResponseError: If the body is over 2 MiB or truncated
            ResponseParseError: If the body is not valid JSON
            UnexpectedStatusError: On any other non-2xx status
            NetworkError: If the request could not be performed
        """
        async with self._cache_lock:
            now = self._clock()
            cached = self._cache
            if cached is not None and cached.is_fresh(now, self._config.cache_ttl_seconds):
                self._log(LogLevel.DEBUG, "using cached service discovery result", {
                    "subdomain": self._subdomain,
                    "age_seconds": round(now - cached.fetched_at, 3),
                })
                return cached.result

            try:
                result = await self._fetch()
            except DiscoAgentError as e:
                if self._logger:
                    self._logger.log_error(
                        COMPONENT,
                        "service discovery failed",
                        error=e,
                        request_url=self.discovery_url(),
                        additional_data={"subdomain": self._subdomain},
                    )
                raise

            self._cache = DiscoveryCacheEntry(result=result, fetched_at=self._clock())
            self._log(LogLevel.INFO, "resolved service endpoints", {
                "subdomain": self._subdomain,
                "tenant_id": result.tenant_id,
                "identity_api": result.endpoints.identity_api,
                "discovery_context_api": result.endpoints.discovery_context_api,
            })
            return result

    async def _fetch(self) -> DiscoveryResult:
        client = self._http()
        request = client.build_request(
            "GET",
            self.discovery_url(),
            params={"bySubdomain": self._subdomain},
            headers={
                "Accept": "application/json",
                "User-Agent": self._telemetry.user_agent,
            },
        )
        self._telemetry.apply(request)

        async with open_response(client, request, "service discovery") as response:
            if response.status_code == 404:
                # An unknown subdomain gets a 404 with an empty "{}" body
                raise NotFoundError(
                    "got an HTTP 404 response from service discovery; maybe the "
                    f"subdomain {self._subdomain!r} is incorrect or does not exist?",
                    details={"subdomain": self._subdomain},
                )

            if not response.is_success:
                raise UnexpectedStatusError(
                    f"got unexpected status code {status_text(response)} "
                    "from request to service discovery API",
                    status_code=response.status_code,
                )

            body = await read_limited_json(
                response,
                self._config.max_body_bytes,
                "service discovery endpoint",
            )

        if not isinstance(body, dict):
            raise ResponseParseError(
                "failed to parse JSON from otherwise successful request to "
                "service discovery endpoint: expected a JSON object"
            )

        services = body.get("services") or []
        if not isinstance(services, list):
            services = []
        selected = select_endpoints(services)

        identity_api = selected.get(IDENTITY_SERVICE_NAME, "")
        if not identity_api:
            raise MissingServiceError(
                f"didn't find {IDENTITY_SERVICE_NAME} in service discovery response, "
                "which may indicate a suspended tenant; unable to detect CyberArk Identity API URL",
                details={"subdomain": self._subdomain},
            )

        return DiscoveryResult(
            endpoints=ServiceEndpointSet(
                identity_api=identity_api,
                discovery_context_api=selected.get(DISCOVERY_CONTEXT_SERVICE_NAME, ""),
            ),
            tenant_id=str(body.get("tenant_id") or ""),
        )

    def _log(self, level: LogLevel, message: str, data: dict) -> None:
        if self._logger:
            self._logger.log(level, COMPONENT, message, data)

    async def close(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

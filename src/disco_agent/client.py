"""
Upload pipeline for the CyberArk Discovery and Context API.

This module wires the service discovery, identity and upload clients
together for one tenant:

    resolve endpoints -> log in (only when not yet authenticated) -> upload

All three clients share one HTTP client and one Telemetry value.
"""

import asyncio
from typing import Awaitable, Callable, Optional

import httpx

from .audit_logger import AuditLogger
from .config import AgentConfig, ClientConfig
from .discovery import DiscoveryClient
from .enums import LogLevel, UploadPhase
from .exceptions import ConfigurationError, UploadError
from .identity import IdentityClient
from .models import DiscoveryResult, Snapshot
from .telemetry import Telemetry
from .upload import UploadClient

COMPONENT = "pipeline"

# Phase 1 statuses meaning the bearer token was not accepted
REJECTED_TOKEN_STATUS_CODES = (401, 403)


class UploadPipeline:
    """
    Discovers, authenticates and uploads snapshots for one tenant.

    The identity client is created on the first upload, once the Identity
    API URL is known, and reused afterwards so its token stays cached. A
    token that the inventory API rejects is dropped, so the next upload
    logs in again.
    """

    async def __aenter__(self) -> "UploadPipeline":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def __init__(
        self,
        client_config: ClientConfig,
        config: Optional[AgentConfig] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        logger: Optional[AuditLogger] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """
        Initialize the pipeline.

        Args:
            client_config: Subdomain, username and secret of the service user
            config: Agent configuration; defaults are used if omitted
            http_client: Optional shared HTTP client; one is created if omitted
            logger: Optional audit logger shared by all clients
            sleep: Awaitable sleep used between login attempts
        """
        self._client_config = client_config
        self._config = config or AgentConfig()
        self._logger = logger
        self._sleep = sleep

        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(
            verify=True,
            timeout=httpx.Timeout(self._config.timeout_seconds),
        )

        self._telemetry = Telemetry.for_version(self._config.agent_version)

        self._discovery = DiscoveryClient(
            subdomain=client_config.subdomain,
            telemetry=self._telemetry,
            http_client=self._http,
            config=self._config.discovery,
            logger=logger,
        )
        self._identity: Optional[IdentityClient] = None
        self._identity_api: Optional[str] = None

    @property
    def telemetry(self) -> Telemetry:
        return self._telemetry

    @property
    def discovery(self) -> DiscoveryClient:
        return self._discovery

    @property
    def identity(self) -> Optional[IdentityClient]:
        return self._identity

    def _identity_for(self, identity_api: str) -> IdentityClient:
        if self._identity is None or self._identity_api != identity_api:
            self._identity = IdentityClient(
                identity_api=identity_api,
                subdomain=self._client_config.subdomain,
                telemetry=self._telemetry,
                http_client=self._http,
                retry_config=self._config.retry,
                logger=self._logger,
                sleep=self._sleep,
            )
            self._identity_api = identity_api
        return self._identity

    async def login(self) -> DiscoveryResult:
        """
        Resolve the tenant's endpoints and log in unless already authenticated.

        Returns:
            The discovery result used for the login
        """
        discovered = await self._discovery.resolve()
        identity = self._identity_for(discovered.endpoints.identity_api)

        if not identity.is_authenticated:
            # login() zeroes the buffer; the configured secret stays intact
            password = bytearray(self._client_config.secret.encode("utf-8"))
            await identity.login(self._client_config.username, password)

        return discovered

    async def new_upload_client(self) -> UploadClient:
        """Log in if needed and return an upload client for the inventory API."""
        discovered = await self.login()

        inventory_api = discovered.endpoints.discovery_context_api
        if not inventory_api:
            raise ConfigurationError("service discovery returned an empty discovery API")

        assert self._identity is not None
        return UploadClient(
            inventory_api=inventory_api,
            tenant_id=discovered.tenant_id,
            sign=self._identity.sign,
            telemetry=self._telemetry,
            http_client=self._http,
            logger=self._logger,
        )

    async def upload(self, snapshot: Snapshot) -> None:
        """Run one full cycle: discovery, login if needed, two-phase upload."""
        if snapshot.cluster_id == "":
            raise ConfigurationError(
                "programmer mistake: the snapshot cluster ID cannot be left empty"
            )

        upload_client = await self.new_upload_client()
        try:
            await upload_client.put_snapshot(snapshot)
        except UploadError as e:
            if (e.details.get("phase") == UploadPhase.RETRIEVE_URL.value
                    and e.details.get("status_code") in REJECTED_TOKEN_STATUS_CODES):
                # Expired or revoked token; the next cycle logs in again
                assert self._identity is not None
                self._identity.clear_credential()
            raise

        if self._logger:
            self._logger.log(LogLevel.INFO, COMPONENT, "upload cycle complete", {
                "cluster_id": snapshot.cluster_id,
                "subdomain": self._client_config.subdomain,
            })

    async def close(self) -> None:
        """Close the shared HTTP client if this pipeline created it."""
        if self._owns_client:
            await self._http.aclose()

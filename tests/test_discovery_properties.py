"""
Property-based tests for the Service Discovery client.

Runs the client against the in-memory discovery fake to check endpoint
selection, caching, size limits and error mapping.
"""

import asyncio
import json
from io import StringIO

import httpx
import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from disco_agent.audit_logger import AuditLogger
from disco_agent.config import DISCOVERY_API_ENV, PROD_DISCOVERY_API_BASE_URL, DiscoveryConfig
from disco_agent.discovery import (
    DISCOVERY_CONTEXT_SERVICE_NAME,
    IDENTITY_SERVICE_NAME,
    DiscoveryClient,
    select_endpoints,
)
from disco_agent.enums import ErrorCode, LogLevel
from disco_agent.exceptions import (
    MissingServiceError,
    NetworkError,
    NotFoundError,
    OversizedResponseError,
    ResponseParseError,
    UnexpectedStatusError,
)
from disco_agent.telemetry import Telemetry

from fake_cyberark import (
    AGENT_VERSION,
    DISCOVERY_BASE_URL,
    IDENTITY_API,
    INVENTORY_API,
    MOCK_SUBDOMAIN,
    TENANT_ID,
    FakeCyberArk,
)


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def make_client(fake: FakeCyberArk, http: httpx.AsyncClient, subdomain: str = MOCK_SUBDOMAIN, **kwargs) -> DiscoveryClient:
    return DiscoveryClient(
        subdomain=subdomain,
        telemetry=Telemetry.for_version(AGENT_VERSION),
        http_client=http,
        config=kwargs.pop("config", DiscoveryConfig(base_url=DISCOVERY_BASE_URL)),
        **kwargs,
    )


async def resolve(fake: FakeCyberArk, subdomain: str = MOCK_SUBDOMAIN, **kwargs):
    async with fake.client() as http:
        client = make_client(fake, http, subdomain, **kwargs)
        return await client.resolve()


@st.composite
def endpoint_strategy(draw) -> dict:
    """Generate raw endpoint objects, usable or not."""
    return {
        "api": draw(st.sampled_from(["", "https://a.fake.test", "https://b.fake.test"])),
        "ui": "",
        "type": draw(st.sampled_from(["main", "crdr", "other"])),
        "is_active": draw(st.booleans()),
    }


@st.composite
def services_strategy(draw) -> list:
    """Generate service lists mixing relevant and irrelevant services."""
    names = st.sampled_from([IDENTITY_SERVICE_NAME, DISCOVERY_CONTEXT_SERVICE_NAME, "data_privacy"])
    return draw(st.lists(
        st.fixed_dictionaries({
            "service_name": names,
            "endpoints": st.lists(endpoint_strategy(), max_size=4),
        }),
        max_size=6,
    ))


class TestEndpointSelectionProperty:
    """
    Property 1: Endpoint selection

    For each wanted service, the selected API is the first endpoint (in
    document order) that is of type main, active and has an API URL.
    """

    @given(services=services_strategy())
    @settings(max_examples=200, deadline=None)
    def test_first_usable_endpoint_wins(self, services: list):
        selected = select_endpoints(services)

        for name in (IDENTITY_SERVICE_NAME, DISCOVERY_CONTEXT_SERVICE_NAME):
            expected = None
            for service in services:
                if service["service_name"] != name:
                    continue
                for endpoint in service["endpoints"]:
                    if endpoint["type"] == "main" and endpoint["is_active"] and endpoint["api"]:
                        expected = endpoint["api"]
                        break
                if expected is not None:
                    break
            assert selected.get(name) == expected

        assert set(selected) <= {IDENTITY_SERVICE_NAME, DISCOVERY_CONTEXT_SERVICE_NAME}

    def test_ignores_malformed_entries(self):
        services = [
            "not a service",
            {"service_name": IDENTITY_SERVICE_NAME, "endpoints": "not a list"},
            {"service_name": IDENTITY_SERVICE_NAME, "endpoints": [None, {"type": "main", "is_active": True, "api": "https://x"}]},
        ]

        assert select_endpoints(services) == {IDENTITY_SERVICE_NAME: "https://x"}


class TestResolveProperty:
    """
    Property 2: Successful resolution

    A known subdomain resolves to the main identity endpoint, the
    discovery context endpoint and the tenant UUID.
    """

    def test_resolves_known_subdomain(self):
        fake = FakeCyberArk()

        result = asyncio.run(resolve(fake))

        assert result.endpoints.identity_api == IDENTITY_API
        assert result.endpoints.discovery_context_api == INVENTORY_API
        assert result.tenant_id == TENANT_ID
        assert fake.discovery_calls == 1

    def test_request_shape(self):
        fake = FakeCyberArk()

        asyncio.run(resolve(fake))

        request = fake.requests[0]
        assert str(request.url) == f"{DISCOVERY_BASE_URL}api/public/tenant-discovery?bySubdomain={MOCK_SUBDOMAIN}"
        assert request.headers["Accept"] == "application/json"
        assert request.headers["User-Agent"] == f"disco-agent/{AGENT_VERSION}"
        assert request.headers["X-Cybr-Telemetry"] == Telemetry.for_version(AGENT_VERSION).value

    def test_missing_discovery_context_is_empty(self):
        document = {
            "tenant_id": TENANT_ID,
            "services": [{
                "service_name": IDENTITY_SERVICE_NAME,
                "endpoints": [{"type": "main", "is_active": True, "api": IDENTITY_API}],
            }],
        }
        fake = FakeCyberArk(discovery_document=document)

        result = asyncio.run(resolve(fake))

        assert result.endpoints.identity_api == IDENTITY_API
        assert result.endpoints.discovery_context_api == ""


class TestCacheProperty:
    """
    Property 3: Cache window

    Within the cache TTL at most one request is made; once the entry is
    older than the TTL, the next resolve fetches again.
    """

    @given(
        calls=st.integers(min_value=1, max_value=10),
        step=st.floats(min_value=0.0, max_value=300.0, allow_nan=False),
    )
    @settings(max_examples=50, deadline=None)
    def test_single_request_within_ttl(self, calls: int, step: float):
        fake = FakeCyberArk()
        clock = FakeClock()

        async def run():
            async with fake.client() as http:
                client = make_client(fake, http, clock=clock)
                results = []
                for _ in range(calls):
                    results.append(await client.resolve())
                    clock.now += min(step, 3599.0 / calls)
                return results

        results = asyncio.run(run())

        assert fake.discovery_calls == 1
        assert all(r == results[0] for r in results)

    def test_refetch_after_ttl(self):
        fake = FakeCyberArk()
        clock = FakeClock()

        async def run():
            async with fake.client() as http:
                client = make_client(fake, http, clock=clock)
                await client.resolve()
                clock.now += 3599.0
                await client.resolve()
                first = fake.discovery_calls
                clock.now += 2.0
                await client.resolve()
                return first

        first = asyncio.run(run())

        assert first == 1
        assert fake.discovery_calls == 2

    def test_invalidate_forces_refetch(self):
        fake = FakeCyberArk()

        async def run():
            async with fake.client() as http:
                client = make_client(fake, http, clock=FakeClock())
                await client.resolve()
                client.invalidate()
                await client.resolve()

        asyncio.run(run())

        assert fake.discovery_calls == 2

    def test_concurrent_resolves_share_one_request(self):
        fake = FakeCyberArk()

        async def run():
            async with fake.client() as http:
                client = make_client(fake, http, clock=FakeClock())
                return await asyncio.gather(*(client.resolve() for _ in range(8)))

        results = asyncio.run(run())

        assert fake.discovery_calls == 1
        assert len(set(results)) == 1

    def test_failures_are_not_cached(self):
        fake = FakeCyberArk()

        async def run():
            async with fake.client() as http:
                client = make_client(fake, http, subdomain="bad-request", clock=FakeClock())
                for _ in range(2):
                    with pytest.raises(UnexpectedStatusError):
                        await client.resolve()

        asyncio.run(run())

        assert fake.discovery_calls == 2


class TestDiscoveryErrorsProperty:
    """
    Property 4: Error mapping

    Each failure mode of the discovery API maps to its own error type.
    """

    def test_unknown_subdomain(self):
        with pytest.raises(NotFoundError) as exc_info:
            asyncio.run(resolve(FakeCyberArk(), subdomain="unknown-tenant"))

        assert "maybe the subdomain 'unknown-tenant' is incorrect or does not exist?" in str(exc_info.value)
        assert exc_info.value.code == ErrorCode.NOT_FOUND

    @pytest.mark.parametrize("subdomain,status_code", [("bad-request", 400), ("server-error", 503)])
    def test_unexpected_status(self, subdomain: str, status_code: int):
        with pytest.raises(UnexpectedStatusError) as exc_info:
            asyncio.run(resolve(FakeCyberArk(), subdomain=subdomain))

        assert exc_info.value.status_code == status_code

    @pytest.mark.parametrize("subdomain", ["no-identity", "inactive-identity"])
    def test_missing_identity_service(self, subdomain: str):
        with pytest.raises(MissingServiceError) as exc_info:
            asyncio.run(resolve(FakeCyberArk(), subdomain=subdomain))

        assert "identity_administration" in str(exc_info.value)

    def test_invalid_json(self):
        with pytest.raises(ResponseParseError):
            asyncio.run(resolve(FakeCyberArk(), subdomain="json-invalid"))

    def test_truncated_json(self):
        with pytest.raises(OversizedResponseError):
            asyncio.run(resolve(FakeCyberArk(), subdomain="json-truncated"))

    def test_oversized_json(self):
        with pytest.raises(OversizedResponseError) as exc_info:
            asyncio.run(resolve(FakeCyberArk(), subdomain="json-too-long"))

        assert "too large or was truncated" in str(exc_info.value)

    def test_non_object_body(self):
        fake = FakeCyberArk(discovery_document=["not", "an", "object"])

        with pytest.raises(ResponseParseError):
            asyncio.run(resolve(fake))

    def test_network_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("name resolution failed", request=request)

        async def run():
            async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
                client = make_client(FakeCyberArk(), http)
                await client.resolve()

        with pytest.raises(NetworkError):
            asyncio.run(run())

    def test_failure_is_logged(self):
        stream = StringIO()
        logger = AuditLogger(output_format="json", output_stream=stream)

        with pytest.raises(NotFoundError):
            asyncio.run(resolve(FakeCyberArk(), subdomain="unknown-tenant", logger=logger))

        entry = json.loads(stream.getvalue().strip().splitlines()[-1])
        assert entry["level"] == LogLevel.ERROR.value
        assert entry["component"] == "discovery"
        assert entry["data"]["error_code"] == ErrorCode.NOT_FOUND.value


class TestBaseUrlProperty:
    """
    Property 5: Base URL resolution

    An explicit base URL wins over ARK_DISCOVERY_API, which wins over the
    production endpoint.
    """

    def test_production_default(self, monkeypatch):
        monkeypatch.delenv(DISCOVERY_API_ENV, raising=False)

        assert DiscoveryConfig().resolved_base_url() == PROD_DISCOVERY_API_BASE_URL

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv(DISCOVERY_API_ENV, "https://discovery.integration.test/")

        assert DiscoveryConfig().resolved_base_url() == "https://discovery.integration.test/"

    def test_explicit_base_url_wins(self, monkeypatch):
        monkeypatch.setenv(DISCOVERY_API_ENV, "https://discovery.integration.test/")

        assert DiscoveryConfig(base_url=DISCOVERY_BASE_URL).resolved_base_url() == DISCOVERY_BASE_URL

    @pytest.mark.parametrize("base_url", ["https://d.fake.test", "https://d.fake.test/"])
    def test_discovery_url_joins_cleanly(self, base_url: str):
        client = DiscoveryClient(
            subdomain=MOCK_SUBDOMAIN,
            telemetry=Telemetry.for_version(AGENT_VERSION),
            config=DiscoveryConfig(base_url=base_url),
        )

        assert client.discovery_url() == "https://d.fake.test/api/public/tenant-discovery"

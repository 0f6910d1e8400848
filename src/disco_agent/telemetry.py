"""
Telemetry and client identification headers.

Integrations with the Identity Security Platform add metadata to their API
calls so the platform can tell how each API is used:

- in: integration name
- vn: vendor name
- it: integration type
- iv: integration version

The encoded value is computed once per Telemetry instance and attached to
every request that targets a CyberArk API. Requests to presigned object
storage URLs never carry it.
"""

import base64
from dataclasses import dataclass
from typing import MutableMapping, Union
from urllib.parse import urlencode

import httpx

TELEMETRY_HEADER = "X-Cybr-Telemetry"

INTEGRATION_NAME = "cyberark-disco-agent"
VENDOR_NAME = "CyberArk"
INTEGRATION_TYPE = "KubernetesAgent"

USER_AGENT_PRODUCT = "disco-agent"


def encode_telemetry_value(agent_version: str) -> str:
    """Query-encode the telemetry fields (sorted by key) and base64url the result."""
    values = {
        "in": INTEGRATION_NAME,
        "vn": VENDOR_NAME,
        "it": INTEGRATION_TYPE,
        "iv": agent_version,
    }
    query = urlencode(sorted(values.items()))
    return base64.urlsafe_b64encode(query.encode("utf-8")).decode("ascii")


def user_agent(agent_version: str) -> str:
    """The User-Agent value identifying this process."""
    return f"{USER_AGENT_PRODUCT}/{agent_version}"


@dataclass(frozen=True)
class Telemetry:
    """Immutable telemetry header value, injected into each API client."""

    agent_version: str
    value: str

    @classmethod
    def for_version(cls, agent_version: str) -> "Telemetry":
        return cls(agent_version=agent_version, value=encode_telemetry_value(agent_version))

    @property
    def user_agent(self) -> str:
        return user_agent(self.agent_version)

    def apply(self, target: Union[httpx.Request, MutableMapping[str, str]]) -> None:
        """Set the telemetry header on a request or a header mapping."""
        headers = target.headers if isinstance(target, httpx.Request) else target
        headers[TELEMETRY_HEADER] = self.value

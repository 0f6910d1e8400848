"""
Data models for the disco agent upload pipeline.

This module defines the service discovery results, the transient login
values, the cached credential and the snapshot document that is uploaded.
"""

from dataclasses import dataclass, field
from typing import Any, Optional


@dataclass(frozen=True)
class ServiceEndpoint:
    """A single endpoint of a service, as listed by service discovery."""

    api: str = ""
    ui: str = ""
    type: str = ""
    is_active: bool = False

    @classmethod
    def from_dict(cls, data: dict) -> "ServiceEndpoint":
        return cls(
            api=str(data.get("api") or ""),
            ui=str(data.get("ui") or ""),
            type=str(data.get("type") or ""),
            is_active=data.get("is_active") is True,
        )

    @property
    def is_usable(self) -> bool:
        return self.type == "main" and self.is_active and self.api != ""


@dataclass(frozen=True)
class ServiceEndpointSet:
    """The two API endpoints the upload pipeline needs."""

    identity_api: str
    discovery_context_api: str = ""


@dataclass(frozen=True)
class DiscoveryResult:
    """Resolved endpoints plus the tenant UUID for a subdomain."""

    endpoints: ServiceEndpointSet
    tenant_id: str


@dataclass(frozen=True)
class DiscoveryCacheEntry:
    """A cached discovery result; fetched_at is a monotonic timestamp."""

    result: DiscoveryResult
    fetched_at: float

    def is_fresh(self, now: float, ttl_seconds: float) -> bool:
        return now - self.fetched_at < ttl_seconds


@dataclass(frozen=True)
class AuthSession:
    """Values from StartAuthentication that AdvanceAuthentication must echo back."""

    session_id: str
    mechanism_id: str
    tenant_id: str
    persistent_login: bool = True


@dataclass(frozen=True)
class CachedCredential:
    """Bearer token and the principal it was issued to."""

    token: str
    principal: str


@dataclass(frozen=True)
class PresignedUpload:
    """A single-use object storage URL for one snapshot."""

    url: str


# Resource lists in upload order; each holds opaque Kubernetes objects.
RESOURCE_FIELDS = (
    "secrets",
    "serviceaccounts",
    "configmaps",
    "externalsecrets",
    "secretstores",
    "clusterexternalsecrets",
    "clustersecretstores",
    "roles",
    "clusterroles",
    "rolebindings",
    "clusterrolebindings",
    "jobs",
    "cronjobs",
    "deployments",
    "statefulsets",
    "daemonsets",
    "pods",
)


@dataclass
class Snapshot:
    """
    The JSON document the Discovery and Context API expects at the presigned URL.

    Only cluster_id and agent_version matter to the upload protocol; the
    rest is payload produced by the data gatherers.
    """

    cluster_id: str
    agent_version: str
    cluster_name: str = ""
    cluster_description: str = ""
    k8s_version: str = ""
    openid_configuration: Optional[dict[str, Any]] = None
    openid_configuration_error: str = ""
    jwks: Optional[dict[str, Any]] = None
    jwks_error: str = ""
    secrets: list[dict[str, Any]] = field(default_factory=list)
    serviceaccounts: list[dict[str, Any]] = field(default_factory=list)
    configmaps: list[dict[str, Any]] = field(default_factory=list)
    externalsecrets: list[dict[str, Any]] = field(default_factory=list)
    secretstores: list[dict[str, Any]] = field(default_factory=list)
    clusterexternalsecrets: list[dict[str, Any]] = field(default_factory=list)
    clustersecretstores: list[dict[str, Any]] = field(default_factory=list)
    roles: list[dict[str, Any]] = field(default_factory=list)
    clusterroles: list[dict[str, Any]] = field(default_factory=list)
    rolebindings: list[dict[str, Any]] = field(default_factory=list)
    clusterrolebindings: list[dict[str, Any]] = field(default_factory=list)
    jobs: list[dict[str, Any]] = field(default_factory=list)
    cronjobs: list[dict[str, Any]] = field(default_factory=list)
    deployments: list[dict[str, Any]] = field(default_factory=list)
    statefulsets: list[dict[str, Any]] = field(default_factory=list)
    daemonsets: list[dict[str, Any]] = field(default_factory=list)
    pods: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Wire representation; optional fields are omitted when empty."""
        data: dict[str, Any] = {
            "agent_version": self.agent_version,
            "cluster_id": self.cluster_id,
            "cluster_name": self.cluster_name,
        }
        if self.cluster_description:
            data["cluster_description"] = self.cluster_description
        data["k8s_version"] = self.k8s_version
        if self.openid_configuration:
            data["openid_configuration"] = self.openid_configuration
        if self.openid_configuration_error:
            data["openid_configuration_error"] = self.openid_configuration_error
        if self.jwks:
            data["jwks"] = self.jwks
        if self.jwks_error:
            data["jwks_error"] = self.jwks_error
        for name in RESOURCE_FIELDS:
            data[name] = getattr(self, name)
        return data

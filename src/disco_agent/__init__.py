"""
Disco Agent - CyberArk secure-upload pipeline for Kubernetes inventory snapshots.

This package locates a tenant's API endpoints through service discovery,
logs in to CyberArk Identity as a service user, and uploads cluster
snapshots to object storage through checksum-verified presigned URLs.
"""

__version__ = "0.1.0"

from disco_agent.exceptions import (
    DiscoAgentError,
    ConfigurationError,
    NetworkError,
    UnexpectedStatusError,
    ProtocolError,
    ResponseParseError,
    OversizedResponseError,
    NotFoundError,
    MissingServiceError,
    AuthenticationError,
    UnsupportedMechanismError,
    NoCredentialError,
    UploadError,
)
from disco_agent.enums import (
    ErrorCode,
    LogLevel,
    LoginState,
    UploadPhase,
)
from disco_agent.config import (
    AgentConfig,
    ClientConfig,
    DiscoveryConfig,
    LoggingConfig,
    RetryConfig,
    load_client_config_from_environment,
)
from disco_agent.models import (
    AuthSession,
    CachedCredential,
    DiscoveryCacheEntry,
    DiscoveryResult,
    PresignedUpload,
    ServiceEndpoint,
    ServiceEndpointSet,
    Snapshot,
)
from disco_agent.audit_logger import (
    AuditLogger,
    LogEntry,
)
from disco_agent.telemetry import (
    TELEMETRY_HEADER,
    Telemetry,
    user_agent,
)
from disco_agent.retry_manager import (
    Permanent,
    Retryable,
    RetryManager,
    RetryResult,
)
from disco_agent.discovery import DiscoveryClient
from disco_agent.identity import IdentityClient
from disco_agent.upload import UploadClient, encode_snapshot
from disco_agent.client import UploadPipeline

__all__ = [
    # Exceptions
    "DiscoAgentError",
    "ConfigurationError",
    "NetworkError",
    "UnexpectedStatusError",
    "ProtocolError",
    "ResponseParseError",
    "OversizedResponseError",
    "NotFoundError",
    "MissingServiceError",
    "AuthenticationError",
    "UnsupportedMechanismError",
    "NoCredentialError",
    "UploadError",
    # Enums
    "ErrorCode",
    "LogLevel",
    "LoginState",
    "UploadPhase",
    # Configuration
    "AgentConfig",
    "ClientConfig",
    "DiscoveryConfig",
    "LoggingConfig",
    "RetryConfig",
    "load_client_config_from_environment",
    # Models
    "AuthSession",
    "CachedCredential",
    "DiscoveryCacheEntry",
    "DiscoveryResult",
    "PresignedUpload",
    "ServiceEndpoint",
    "ServiceEndpointSet",
    "Snapshot",
    # Audit Logger
    "AuditLogger",
    "LogEntry",
    # Telemetry
    "TELEMETRY_HEADER",
    "Telemetry",
    "user_agent",
    # Retry Manager
    "Permanent",
    "Retryable",
    "RetryManager",
    "RetryResult",
    # Clients
    "DiscoveryClient",
    "IdentityClient",
    "UploadClient",
    "encode_snapshot",
    "UploadPipeline",
]

"""
Configuration dataclasses for the disco agent upload pipeline.

This module defines the configuration structures shared by the discovery,
identity and upload clients, and the loader for the credential inputs
which are sourced from the environment.
"""

import os
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv

from .exceptions import ConfigurationError

# Production endpoint of the CyberArk Service Discovery API
PROD_DISCOVERY_API_BASE_URL = "https://platform-discovery.cyberark.cloud/"

# Environment variables
DISCOVERY_API_ENV = "ARK_DISCOVERY_API"
SUBDOMAIN_ENV = "ARK_SUBDOMAIN"
USERNAME_ENV = "ARK_USERNAME"
SECRET_ENV = "ARK_SECRET"

DEFAULT_AGENT_VERSION = "v0.0.0-dev"


@dataclass
class RetryConfig:
    """Retry behavior configuration for the identity login loop."""

    backoff_seconds: float = 10.0
    # None means retry until the caller cancels
    max_attempts: Optional[int] = None


@dataclass
class DiscoveryConfig:
    """Service discovery configuration."""

    base_url: Optional[str] = None
    cache_ttl_seconds: float = 3600.0
    max_body_bytes: int = 2 * 1024 * 1024

    def resolved_base_url(self) -> str:
        """Explicit base URL, then ARK_DISCOVERY_API, then production."""
        if self.base_url:
            return self.base_url
        return os.getenv(DISCOVERY_API_ENV) or PROD_DISCOVERY_API_BASE_URL


@dataclass
class LoggingConfig:
    """Logging configuration."""

    level: str = "info"
    output_format: str = "text"  # 'json', 'text', 'both'


@dataclass
class AgentConfig:
    """Main configuration combining all sub-configurations."""

    agent_version: str = DEFAULT_AGENT_VERSION
    timeout_seconds: float = 30.0
    retry: RetryConfig = field(default_factory=RetryConfig)
    discovery: DiscoveryConfig = field(default_factory=DiscoveryConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


@dataclass
class ClientConfig:
    """Credential inputs needed to log in to a CyberArk tenant."""

    subdomain: str
    username: str
    secret: str

    def __repr__(self) -> str:
        return (
            f"ClientConfig(subdomain={self.subdomain!r}, "
            f"username={self.username!r}, secret='***')"
        )


def load_client_config_from_environment(
    dotenv_path: Optional[str] = None,
) -> ClientConfig:
    """
    Load the CyberArk client configuration from environment variables.

    A .env file is read first (without overriding variables that are
    already set), then ARK_SUBDOMAIN, ARK_USERNAME and ARK_SECRET are
    required to be non-empty.

    Args:
        dotenv_path: Optional explicit path to a .env file

    Returns:
        The loaded ClientConfig

    Raises:
        ConfigurationError: If any of the three variables is missing
    """
    load_dotenv(dotenv_path)

    subdomain = os.getenv(SUBDOMAIN_ENV, "")
    username = os.getenv(USERNAME_ENV, "")
    secret = os.getenv(SECRET_ENV, "")

    if not subdomain or not username or not secret:
        missing = [
            name
            for name, value in (
                (SUBDOMAIN_ENV, subdomain),
                (USERNAME_ENV, username),
                (SECRET_ENV, secret),
            )
            if not value
        ]
        raise ConfigurationError(
            f"missing environment variables: {SUBDOMAIN_ENV}, {USERNAME_ENV}, {SECRET_ENV}",
            details={"missing": missing},
        )

    return ClientConfig(subdomain=subdomain, username=username, secret=secret)

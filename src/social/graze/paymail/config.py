"""
Configuration Module for the Paymail Resolver

This module defines the configuration system for the paymail resolver, using Pydantic
for settings validation and an immutable options struct for each resolution.

The configuration follows these principles:
1. Environment-based configuration with sensible defaults
2. Strong validation and typing through Pydantic
3. No process-wide mutable state inside the resolver: callers build a frozen
   ResolveOptions and pass it in explicitly

The Settings class is loaded from environment variables (prefixed with PAYMAIL_)
with defaults matching the public paymail network. ResolveOptions.from_settings turns
settings plus per-call overrides (skip flags, sender details) into the options a
single resolution runs with.

Key configuration areas include:
- DNS discovery (nameserver, SRV service name and protocol)
- Expected SRV record values used by validation
- HTTP behaviour (timeouts, retries, user agent, certificate checks)
- Which capabilities to query and which checks to skip
- Error reporting
"""

import logging
from typing import FrozenSet, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

DEFAULT_BSVALIAS_VERSION = "1.0"
DEFAULT_NAME_SERVER = "8.8.8.8"
DEFAULT_SERVICE_NAME = "bsvalias"
DEFAULT_PROTOCOL = "tcp"
DEFAULT_PORT = 443
DEFAULT_PRIORITY = 10
DEFAULT_WEIGHT = 10

DEFAULT_CAPABILITIES: FrozenSet[str] = frozenset(
    {
        "pki",
        "payment_destination",
        "public_profile",
        "verify_pubkey",
        "sender_validation",
    }
)


class Settings(BaseSettings):
    """
    Environment settings for the paymail resolver.

    Environment variables are mapped to fields with the PAYMAIL_ prefix, for example
    PAYMAIL_NAME_SERVER=1.1.1.1 overrides the nameserver used for SRV lookups.
    """

    model_config = SettingsConfigDict(env_prefix="PAYMAIL_")

    debug: bool = False
    """
    Enable debug logging.
    Set with PAYMAIL_DEBUG=true environment variable.
    """

    name_server: str = DEFAULT_NAME_SERVER
    """
    Nameserver used for SRV lookups.
    Set with PAYMAIL_NAME_SERVER environment variable.
    """

    bsvalias_version: str = DEFAULT_BSVALIAS_VERSION
    """
    The bsvalias protocol version expected in discovery documents.
    Set with PAYMAIL_BSVALIAS_VERSION environment variable.
    """

    service_name: str = DEFAULT_SERVICE_NAME
    """SRV service label, queried as _{service_name}._{protocol}.{domain}"""

    protocol: str = DEFAULT_PROTOCOL
    """SRV protocol label"""

    port: int = DEFAULT_PORT
    """Expected SRV port"""

    priority: int = DEFAULT_PRIORITY
    """Expected SRV priority"""

    weight: int = DEFAULT_WEIGHT
    """Expected SRV weight"""

    request_timeout: float = 10.0
    """
    Timeout in seconds for a single DNS query or HTTPS request.
    Set with PAYMAIL_REQUEST_TIMEOUT environment variable.
    """

    deadline: float = 30.0
    """
    Upper bound in seconds for a whole resolution, after which unfinished
    capabilities are reported as cancelled.
    Set with PAYMAIL_DEADLINE environment variable.
    """

    http_retry_count: int = 2
    """
    Number of retries for capability requests answered with 429 or 5xx.
    Set with PAYMAIL_HTTP_RETRY_COUNT environment variable.
    """

    user_agent: str = "social.graze.paymail/0.1"
    """User-Agent header sent with every HTTPS request"""

    dnssec_resolver_url: str = "https://dns.google/resolve"
    """
    DNS-over-HTTPS JSON endpoint used for the DNSSEC check.
    Set with PAYMAIL_DNSSEC_RESOLVER_URL environment variable.
    """

    sentry_dsn: Optional[str] = None
    """
    Sentry DSN for error reporting. Optional, no error reporting if not set.
    Set with PAYMAIL_SENTRY_DSN environment variable.
    """


class ResolveOptions(BaseModel):
    """
    Immutable options for one resolution.

    Skip flags turn individual checks off:
    - skip_dns_check: don't check DNSSEC for the domain
    - skip_ssl_check: don't verify TLS certificates (insecure mode)
    - skip_srv_check: don't query SRV, use https://{domain}:443 directly
    - skip_pki: don't fetch the PKI key (signature checks are skipped too)
    - skip_public_profile: don't fetch the public profile
    - skip_tracing: don't record trace entries
    - skip_brfc_validation: don't check capability codes against the BRFC id format
    """

    model_config = ConfigDict(frozen=True)

    capabilities: FrozenSet[str] = DEFAULT_CAPABILITIES

    skip_dns_check: bool = False
    skip_ssl_check: bool = False
    skip_srv_check: bool = False
    skip_pki: bool = False
    skip_public_profile: bool = False
    skip_tracing: bool = False
    skip_brfc_validation: bool = False
    strict_brfc: bool = False

    name_server: str = DEFAULT_NAME_SERVER
    bsvalias_version: str = DEFAULT_BSVALIAS_VERSION
    service_name: str = DEFAULT_SERVICE_NAME
    protocol: str = DEFAULT_PROTOCOL
    port: int = DEFAULT_PORT
    priority: int = DEFAULT_PRIORITY
    weight: int = DEFAULT_WEIGHT

    request_timeout: float = Field(default=10.0, gt=0)
    deadline: float = Field(default=30.0, gt=0)
    http_retry_count: int = Field(default=2, ge=0)
    user_agent: str = "social.graze.paymail/0.1"
    dnssec_resolver_url: str = "https://dns.google/resolve"

    sender_handle: Optional[str] = None
    sender_name: Optional[str] = None
    amount: Optional[int] = None
    purpose: Optional[str] = None
    signature: Optional[str] = None
    verify_pubkey: Optional[str] = None

    @field_validator("capabilities", mode="before")
    @classmethod
    def decode_capabilities(cls, v) -> FrozenSet[str]:
        """
        Accept any iterable of capability names, or a comma separated string.
        """
        if isinstance(v, str):
            return frozenset(part.strip() for part in v.split(",") if part.strip())
        return frozenset(v)

    @staticmethod
    def from_settings(settings: Settings, **overrides) -> "ResolveOptions":
        values = {
            "name_server": settings.name_server,
            "bsvalias_version": settings.bsvalias_version,
            "service_name": settings.service_name,
            "protocol": settings.protocol,
            "port": settings.port,
            "priority": settings.priority,
            "weight": settings.weight,
            "request_timeout": settings.request_timeout,
            "deadline": settings.deadline,
            "http_retry_count": settings.http_retry_count,
            "user_agent": settings.user_agent,
            "dnssec_resolver_url": settings.dnssec_resolver_url,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return ResolveOptions(**values)

    def is_skipped(self, capability: str) -> bool:
        if capability == "pki":
            return self.skip_pki
        if capability == "public_profile":
            return self.skip_public_profile
        return False

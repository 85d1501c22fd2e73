"""
convstream - Configuration

This module contains configuration classes and defaults for the client.
Every setting can be overridden from the environment with the
``CONVSTREAM_`` prefix (for example ``CONVSTREAM_BASE_URL``).
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ClientConfig(BaseSettings):
    """
    Configuration for the conversation client.

    Attributes:
        base_url: Base URL of the agent runtime (http(s) or ws(s))
        organization_id: Organization identifier sent on connect
        tenant_id: Tenant identifier sent on connect
        external_user_id: Optional identifier of the end user
        timeout: Connect and request timeout in seconds
        reconnection: Whether the transport reconnects on its own
        reconnection_attempts: Maximum reconnect attempts, ``None`` for unlimited
        reconnection_delay: Initial reconnect delay in seconds
        reconnection_delay_max: Upper bound for the reconnect delay
        debug: Enable debug logging
    """

    model_config = SettingsConfigDict(
        env_prefix="CONVSTREAM_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    base_url: str = Field(
        default="http://localhost:8080",
        description="Base URL of the agent runtime",
    )
    organization_id: str = Field(
        default="",
        description="Organization identifier, omitted from the query when empty",
    )
    tenant_id: str = Field(
        default="",
        description="Tenant identifier, omitted from the query when empty",
    )
    external_user_id: str = Field(
        default="",
        description="External user identifier, omitted from the query when empty",
    )

    # Connection
    timeout: float = Field(
        default=5.0,
        gt=0,
        description="Connect and request timeout in seconds",
    )
    reconnection: bool = Field(
        default=True,
        description="Reconnect automatically after a dropped connection",
    )
    reconnection_attempts: Optional[int] = Field(
        default=None,
        ge=0,
        description="Maximum reconnect attempts, unlimited when unset",
    )
    reconnection_delay: float = Field(
        default=0.2,
        gt=0,
        description="Initial reconnect delay in seconds",
    )
    reconnection_delay_max: float = Field(
        default=30.0,
        gt=0,
        description="Maximum reconnect delay in seconds",
    )
    ping_interval: Optional[float] = Field(
        default=30.0,
        description="Keepalive ping interval in seconds",
    )
    ping_timeout: Optional[float] = Field(
        default=10.0,
        description="Keepalive pong timeout in seconds",
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Log level used by configure_logging",
    )
    debug: bool = Field(
        default=False,
        description="Enable debug logging",
    )


# API version
API_VERSION = "v1"


class Endpoints:
    """Endpoint paths."""

    # Streaming
    SOCKET_LOCAL = "/ws"
    SOCKET = "/conversations_/ws"

    # Exchanges
    EXCHANGES = "/api/v1/conversation/{conversation_id}/exchange"
    EXCHANGE = "/api/v1/conversation/{conversation_id}/exchange/{exchange_id}"
    EXCHANGE_FEEDBACK = "/api/v1/conversation/{conversation_id}/exchange/{exchange_id}/feedback"

    # Messages
    MESSAGE = "/api/v1/conversation/{conversation_id}/exchange/{exchange_id}/message/{message_id}"


class QueryParams:
    """Query parameter names sent when the socket connects."""

    ORGANIZATION_ID = "organizationId"
    TENANT_ID = "tenantId"
    EXTERNAL_USER_ID = "externalUserId"


class Limits:
    """Client limits and constraints."""

    # Pagination
    MAX_PAGE_SIZE = 100
    DEFAULT_PAGE_SIZE = 20

    # Outbound queue, 0 means unbounded
    MAX_PENDING_EVENTS = 0


@lru_cache
def get_config() -> ClientConfig:
    """Get cached configuration loaded from the environment."""
    return ClientConfig()

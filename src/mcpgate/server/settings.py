"""Gateway configuration."""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, PositiveInt, SecretStr
from pydantic.alias_generators import to_camel
from pydantic_settings import BaseSettings, SettingsConfigDict

from mcpgate.server.transport_security import TransportSecuritySettings


class LimitSettings(BaseModel):
    """Resource limits applied uniformly to every tool.

    Each option is also accepted under its camelCase name (``maxRequestBytes``).
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    max_request_bytes: PositiveInt = 1024 * 1024
    max_tool_runtime_ms: PositiveInt = 30_000
    max_search_results: PositiveInt = 100
    max_snippet_lines: PositiveInt = 200
    max_memory_content_bytes: PositiveInt = 64 * 1024


class GatewaySettings(BaseSettings):
    """Gateway settings.

    All settings can be configured via environment variables with the prefix MCPGATE_.
    For example, MCPGATE_AUTH_TOKEN=s3cret configures the bearer credential and
    MCPGATE_LIMITS__MAX_REQUEST_BYTES=4096 overrides a single limit.
    """

    model_config = SettingsConfigDict(
        env_prefix="MCPGATE_",
        env_file=".env",
        env_nested_delimiter="__",
        nested_model_default_partial_update=True,
        extra="ignore",
    )

    # Server settings
    server_name: str = "mcpgate"
    instructions: str | None = None
    debug: bool = False
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"

    # HTTP settings
    host: str = "127.0.0.1"
    port: int = Field(default=8000, ge=0, le=65535)
    published: bool = False
    """Bind to a non-loopback interface. Refused without a credential unless
    ``allow_unauthenticated_publish`` is also set."""
    allow_unauthenticated_publish: bool = False
    streamable_http_path: str = "/mcp"
    health_path: str = "/healthz"
    version_path: str = "/version"

    auth_token: SecretStr | None = None
    """Bearer credential required on every /mcp request when set."""

    limits: LimitSettings = Field(default_factory=LimitSettings)

    # Session settings
    idle_session_timeout_s: float = Field(default=300.0, gt=0)
    session_reap_interval_s: float = Field(default=5.0, gt=0)
    notification_queue_depth: PositiveInt = 100
    cancel_grace_ms: int = Field(default=2_000, ge=0)
    sse_ping_interval_s: float = Field(default=15.0, gt=0)

    roots: dict[str, Path] = Field(default_factory=dict)
    """Allowlist of host-mounted locations addressable through ``root`` / ``project_id``."""

    cursor_secret: SecretStr | None = None
    """Key for signing pagination cursors. A random per-process key is used if unset."""

    transport_security: TransportSecuritySettings | None = None

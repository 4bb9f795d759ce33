"""Settings and configuration management for GPU DevBox."""

from functools import lru_cache
from typing import Dict, List, Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="DEVBOX_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # State database configuration
    state_db: str = Field(
        default="./devbox.db",
        description="Path to SQLite state database or a full SQLAlchemy URL",
    )

    # Engine configuration
    docker_binary: str = Field(
        default="docker",
        description="Container engine CLI executable",
    )

    dns_servers: str = Field(
        default="8.8.8.8,8.8.4.4",
        description="Comma-separated list of DNS resolvers passed to every container",
    )

    container_label_prefix: str = Field(
        default="devbox",
        description="Label namespace applied to containers managed by GPU DevBox",
    )

    engine_timeout_s: float = Field(
        default=60.0,
        description="Deadline in seconds for ordinary engine invocations",
    )

    create_timeout_s: float = Field(
        default=900.0,
        description="Deadline in seconds for container creation (bootstrap installs packages)",
    )

    benign_engine_warnings: str = Field(
        default="Your kernel does not support swap limit capabilities",
        description="'|'-separated stderr fragments that do not fail a container run",
    )

    gpu_spec_pattern: str = Field(
        default=r'^(all|[0-9]+|"?device=[0-9A-Za-z,:-]+"?)$',
        description="Allow-list regex for GPU reservation values",
    )

    # Port allocation
    port_range_min: int = Field(
        default=20000,
        description="Lowest host port handed out for SSH and Jupyter bindings",
    )

    port_range_max: int = Field(
        default=21000,
        description="Highest host port handed out for SSH and Jupyter bindings",
    )

    port_allocation_attempts: int = Field(
        default=64,
        description="Random candidates tried before scanning the whole port range",
    )

    # Container lifecycle configuration
    status_fanout_limit: int = Field(
        default=8,
        description="Maximum concurrent per-container status queries",
    )

    min_password_length: int = Field(
        default=8,
        description="Minimum length accepted by change-password",
    )

    generated_password_length: int = Field(
        default=8,
        description="Length of generated root passwords",
    )

    reconcile_interval_s: int = Field(
        default=3600,
        description="Interval in seconds for the background orphan sweep (0 disables it)",
    )

    # Deployment configuration
    deployment_mode: Literal["local", "production"] = Field(
        default="local",
        description="Deployment mode; selects the host used in Jupyter links",
    )

    api_host: str = Field(
        default="localhost",
        description="Public host name used for Jupyter links outside local mode",
    )

    # Logging configuration
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )

    log_format: str = Field(
        default="json",
        description="Log format (json or text)",
    )

    # Server configuration
    host: str = Field(
        default="0.0.0.0",
        description="Server host to bind to",
    )

    port: int = Field(
        default=8000,
        description="Server port to bind to",
    )

    # Authentication configuration
    auth_mode: Literal["header", "bearer"] = Field(
        default="header",
        description="How the acting user is identified (trusted X-User-Id header or bearer token)",
    )

    bearer_tokens: str = Field(
        default="",
        description="Comma-separated token:user_id pairs for bearer authentication mode",
    )

    @property
    def dns_servers_list(self) -> List[str]:
        """Parse DNS servers into a list."""
        return [s.strip() for s in self.dns_servers.split(",") if s.strip()]

    @property
    def benign_engine_warnings_list(self) -> List[str]:
        """Parse benign engine warnings into a list."""
        return [w.strip() for w in self.benign_engine_warnings.split("|") if w.strip()]

    @property
    def bearer_tokens_map(self) -> Dict[str, int]:
        """Parse bearer tokens into a token -> user id mapping."""
        tokens: Dict[str, int] = {}
        for pair in self.bearer_tokens.split(","):
            token, sep, user_id = pair.strip().rpartition(":")
            if sep and token and user_id.isdigit():
                tokens[token] = int(user_id)
        return tokens

    @property
    def jupyter_host(self) -> str:
        """Host used when building Jupyter access links."""
        return "localhost" if self.deployment_mode == "local" else self.api_host


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()

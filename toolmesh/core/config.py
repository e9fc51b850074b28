"""
Configuration Settings.

This module defines the runtime configuration using Pydantic's BaseSettings.
Every value is bound from a ``TOOLMESH_*`` environment variable or the ``.env``
file; grouped value objects (retry policy, confirmation and validation config)
are derived from the flat settings on demand.
"""

from pathlib import Path
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..capabilities.base import PermissionClass
from ..policy.models import ConfirmationConfig, RiskLevel, ValidationConfig
from ..runtime.retry import RetryPolicy
from ..schemas.config import ServerConfig, load_server_configs

__all__ = ["ToolmeshSettings", "load_server_configs", "ServerConfig"]


class ToolmeshSettings(BaseSettings):
    """
    Runtime settings model.

    All properties are automatically bound from environment variables and .env file.
    Field names can be used directly as keyword arguments (handy in tests).
    """

    # =====================================================================
    # Pydantic Configuration
    # =====================================================================
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=True,
        populate_by_name=True,
    )

    # =====================================================================
    # Execution
    # =====================================================================
    max_concurrency: int = Field(
        default=4,
        ge=1,
        description="Maximum number of capability calls running at once",
        alias="TOOLMESH_MAX_CONCURRENCY",
    )
    default_timeout_ms: int = Field(
        default=30_000,
        gt=0,
        description="Timeout for capabilities that do not declare their own",
        alias="TOOLMESH_DEFAULT_TIMEOUT_MS",
    )
    trust_level: PermissionClass = Field(
        default=PermissionClass.write,
        description="Highest permission class callers are trusted with (none, read, network, write, shell)",
        alias="TOOLMESH_TRUST_LEVEL",
    )
    max_argument_bytes: int = Field(
        default=64_000,
        ge=1,
        description="Upper bound for serialized call arguments",
        alias="TOOLMESH_MAX_ARGUMENT_BYTES",
    )
    workspace_root: Path = Field(
        default_factory=Path.cwd,
        description="Root directory the builtin capabilities are confined to",
        alias="TOOLMESH_WORKSPACE_ROOT",
    )

    # =====================================================================
    # Remote servers
    # =====================================================================
    request_timeout_ms: int = Field(
        default=30_000,
        gt=0,
        description="Default per-request deadline for protocol calls",
        alias="TOOLMESH_REQUEST_TIMEOUT_MS",
    )
    retry_max_attempts: int = Field(default=3, ge=1, alias="TOOLMESH_RETRY_MAX_ATTEMPTS")
    retry_base_delay: float = Field(default=0.5, ge=0, alias="TOOLMESH_RETRY_BASE_DELAY")
    retry_max_delay: float = Field(default=8.0, ge=0, alias="TOOLMESH_RETRY_MAX_DELAY")
    retry_jitter: float = Field(default=0.1, ge=0, le=1, alias="TOOLMESH_RETRY_JITTER")
    pool_max_clients_per_server: int = Field(
        default=2,
        ge=1,
        description="Upper bound of protocol clients kept per remote server",
        alias="TOOLMESH_POOL_MAX_CLIENTS_PER_SERVER",
    )
    servers_file: Optional[Path] = Field(
        default=None,
        description="JSON file with remote server configurations",
        alias="TOOLMESH_SERVERS_FILE",
    )

    http_host: str = Field(default="127.0.0.1", description="Bind address of the HTTP protocol server", alias="TOOLMESH_HTTP_HOST")
    http_port: int = Field(default=8765, ge=1, le=65535, alias="TOOLMESH_HTTP_PORT")

    # =====================================================================
    # Registry / confirmation
    # =====================================================================
    allow_capability_overwrite: bool = Field(default=True, alias="TOOLMESH_ALLOW_CAPABILITY_OVERWRITE")
    adaptive_risk_threshold: RiskLevel = Field(
        default=RiskLevel.medium,
        description="Lowest risk level at which the adaptive policy asks for approval",
        alias="TOOLMESH_ADAPTIVE_RISK_THRESHOLD",
    )

    # =====================================================================
    # Logging
    # =====================================================================
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
        alias="TOOLMESH_LOG_LEVEL",
    )
    log_format: Literal["simple", "detailed", "json"] = Field(default="detailed", alias="TOOLMESH_LOG_FORMAT")
    log_file_dir: Optional[Path] = Field(
        default=None,
        description="Directory for the log file; unset disables file logging",
        alias="TOOLMESH_LOG_FILE_DIR",
    )

    # =====================================================================
    # Computed Properties (Grouped Configurations)
    # =====================================================================

    def retry_policy(self) -> RetryPolicy:
        """Backoff shared by connect, reconnect and request retries."""
        return RetryPolicy(
            max_attempts=self.retry_max_attempts,
            base_delay=self.retry_base_delay,
            max_delay=self.retry_max_delay,
            jitter=self.retry_jitter,
        )

    def confirmation_config(self) -> ConfirmationConfig:
        return ConfirmationConfig(adaptive_risk_threshold=self.adaptive_risk_threshold)

    def validation_config(self) -> ValidationConfig:
        return ValidationConfig(trust_level=self.trust_level, max_argument_bytes=self.max_argument_bytes)

    def server_configs(self) -> list[ServerConfig]:
        """Load ``servers_file`` if one is configured."""
        if self.servers_file is None:
            return []
        return load_server_configs(self.servers_file)

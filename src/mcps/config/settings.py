"""Application configuration settings."""

from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_PORT = 4100
DEFAULT_HOST = "127.0.0.1"


class LoggingConfig(BaseSettings):
    """Logging configuration settings."""

    model_config = SettingsConfigDict(env_prefix="MCPS_LOG_")

    level: str = Field(default="INFO", description="Log level")
    file_path: Optional[str] = Field(default=None, description="Log file path")
    json_format: bool = Field(default=False, description="Use JSON log format")


class DaemonConfig(BaseSettings):
    """Control daemon settings."""

    model_config = SettingsConfigDict(env_prefix="MCPS_")

    host: str = Field(default=DEFAULT_HOST, description="Control listener host")
    port: int = Field(default=DEFAULT_PORT, description="Control listener port")
    verbose: bool = Field(default=False, description="Enable debug logging")
    connect_timeout: float = Field(
        default=30.0, description="Backend connect timeout in seconds"
    )
    init_timeout: float = Field(
        default=30.0,
        description="Per-backend connect timeout during bulk initialization",
    )
    start_timeout: float = Field(
        default=30.0, description="How long to wait for a spawned daemon"
    )
    disconnect_timeout: float = Field(
        default=2.0, description="Upper bound on a transport disconnect"
    )
    settle_delay: float = Field(
        default=0.5,
        description="Delay before snapshotting processes spawned by a connect",
    )
    shutdown_timeout: float = Field(
        default=5.0, description="In-flight request drain time on shutdown"
    )
    poll_interval: float = Field(
        default=0.2, description="Readiness poll interval of the launcher"
    )


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(env_prefix="MCPS_")

    # Sub-configurations
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    daemon: DaemonConfig = Field(default_factory=DaemonConfig)

    config_dir: Path = Field(
        default_factory=lambda: Path.home() / ".mcps",
        description="Directory holding mcp.json and daemon logs",
    )

    @property
    def config_file(self) -> Path:
        """Get the server descriptor file path."""
        return self.config_dir / "mcp.json"

    @property
    def log_dir(self) -> Path:
        """Get the daemon log directory."""
        return self.config_dir / "logs"

    @property
    def log_level(self) -> str:
        """Effective log level, honouring verbose mode."""
        if self.daemon.verbose:
            return "DEBUG"
        return self.logging.level


def load_settings() -> Settings:
    """Build settings from the current environment."""
    return Settings()

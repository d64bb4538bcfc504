"""Application configuration loaded from environment variables."""

from __future__ import annotations

import tempfile
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_LOOPBACK_HOSTS = frozenset({"127.0.0.1", "localhost", "::1"})


class Settings(BaseSettings):
    """rclonetray application settings."""

    model_config = SettingsConfigDict(
        env_prefix="RCLONETRAY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Core
    debug: bool = False

    # Control API server
    host: str = "127.0.0.1"
    port: int = Field(default=5580, ge=1, le=65535)
    cors_origins: list[str] = Field(default_factory=list)

    # rclone binary and config file
    rclone_binary: str = "rclone"
    rclone_use_bundled: bool = False
    rclone_bundled_path: Path | None = None
    rclone_config: Path = Field(
        default_factory=lambda: Path.home() / ".config" / "rclone" / "rclone.conf"
    )

    # Paths
    data_dir: Path = Path("./data")
    mount_dir: Path | None = None

    # Remote control daemon
    rc_enabled: bool = True
    rc_host: str = "127.0.0.1"
    rc_port: int = Field(default=5572, ge=1, le=65535)
    rc_user: str = "user"
    rc_pass: str = "pass"
    rc_allow_origin: str = "*"

    # RPC client
    rpc_timeout: float = Field(default=15.0, gt=0)
    rpc_status_timeout: float = Field(default=5.0, gt=0)
    rpc_retry_delay: float = Field(default=1.0, ge=0)
    cli_timeout: float = Field(default=30.0, gt=0)

    # Daemon supervisor
    daemon_startup_grace: float = Field(default=2.0, ge=0)
    daemon_poll_interval: float = Field(default=1.0, gt=0)
    daemon_startup_deadline: float = Field(default=15.0, gt=0)
    daemon_stop_timeout: float = Field(default=5.0, gt=0)

    # Mounts
    mount_verify_attempts: int = Field(default=3, ge=1, le=10)
    mount_retry_delay: float = Field(default=1.0, ge=0)

    # Syncs
    sync_health_check_interval: float = Field(default=30.0, gt=0)
    sync_job_poll_interval: float = Field(default=1.0, gt=0)
    sync_job_timeout: float = Field(default=3600.0, gt=0)
    sync_cleanup_timeout: float = Field(default=10.0, gt=0)
    sync_default_transfers: int = Field(default=4, ge=1)
    sync_default_checkers: int = Field(default=8, ge=1)

    @property
    def rclone_executable(self) -> str:
        """Path of the rclone binary to run, preferring the bundled one when enabled."""
        if (
            self.rclone_use_bundled
            and self.rclone_bundled_path is not None
            and self.rclone_bundled_path.is_file()
        ):
            return str(self.rclone_bundled_path)
        return self.rclone_binary

    @property
    def rc_base_url(self) -> str:
        """HTTP base URL of the remote control daemon."""
        return f"http://{self.rc_host}:{self.rc_port}"

    @property
    def cache_dir(self) -> Path:
        """Cache directory handed to the daemon."""
        return self.data_dir / "cache"

    @property
    def mount_base_dir(self) -> Path:
        """Directory under which generated mount points are created."""
        if self.mount_dir is not None:
            return self.mount_dir
        return Path(tempfile.gettempdir()) / "rclonetray-mounts"

    def validate_runtime_security(self) -> None:
        """Refuse to expose the daemon beyond loopback with default credentials."""
        if self.rc_host in _LOOPBACK_HOSTS:
            return

        violations: list[str] = []
        if self.rc_user == "user" and self.rc_pass == "pass":
            violations.append("RC_USER/RC_PASS must be overridden when RC_HOST is not loopback")
        if self.rc_allow_origin == "*":
            violations.append("RC_ALLOW_ORIGIN must not be '*' when RC_HOST is not loopback")

        if violations:
            joined = "; ".join(violations)
            raise ValueError(f"Insecure daemon configuration: {joined}")

"""Configuration management using Pydantic settings."""

import re
from typing import List, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application settings
    app_name: str = "HostPulse"
    debug: bool = False

    # Monitored endpoints
    monitored_hosts: str = ""  # Comma-separated list of hosts

    # WinRM connection settings
    winrm_port: int = 5985
    winrm_username: Optional[str] = None
    winrm_password: Optional[str] = None
    winrm_auth: str = "negotiate"  # pypsrp auth provider
    winrm_cert_validation: bool = True
    winrm_operation_timeout: float = 15.0  # seconds to wait for WinRM calls
    winrm_connection_timeout: float = 30.0  # network connect timeout in seconds
    winrm_read_timeout: float = 30.0  # HTTP read timeout in seconds
    max_winrm_connections: int = 16  # concurrent WinRM calls across all nodes

    # Polling settings
    node_info_poll_interval: int = 60  # seconds between inventory polls
    node_stats_poll_interval: int = 15  # seconds between stats polls
    history_capacity: int = 1024  # samples kept per history stream

    # Regex selecting the interfaces summed into the combined network stream
    primary_interface_pattern: Optional[str] = None

    # Domain resolution
    machine_domain: Optional[str] = None  # Override for the agent's own domain
    domain_discovery_enabled: bool = True

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False)

    @field_validator("primary_interface_pattern")
    @classmethod
    def _validate_primary_pattern(cls, value: Optional[str]) -> Optional[str]:
        if value is None or not value.strip():
            return None
        try:
            re.compile(value)
        except re.error as exc:
            raise ValueError(f"Invalid primary interface pattern {value!r}: {exc}") from exc
        return value

    @field_validator("history_capacity")
    @classmethod
    def _validate_history_capacity(cls, value: int) -> int:
        if value < 1:
            raise ValueError("history_capacity must be at least 1")
        return value

    def get_monitored_hosts_list(self) -> List[str]:
        """Parse comma-separated host list."""
        if not self.monitored_hosts:
            return []
        return [h.strip() for h in self.monitored_hosts.split(",") if h.strip()]

    def get_primary_interface_regex(self) -> Optional["re.Pattern[str]"]:
        """Compile the primary interface pattern if configured."""
        if not self.primary_interface_pattern:
            return None
        return re.compile(self.primary_interface_pattern, re.IGNORECASE)

    @property
    def winrm_use_ssl(self) -> bool:
        return self.winrm_port == 5986


settings = Settings()

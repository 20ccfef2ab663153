"""Configuration management for the Ocea exporter service."""

from pydantic_settings import BaseSettings
from pydantic import Field
from typing import Literal, Optional
from pathlib import Path
import os

from .models import Credentials


def load_secrets_file(secrets_path: str = ".secrets") -> dict:
    """Load secrets from a separate secrets file.

    The secrets file uses the same format as .env files.
    Returns a dict of key-value pairs.
    """
    secrets = {}

    # Check multiple locations for secrets file
    paths_to_check = [
        Path(secrets_path),  # Current directory
        Path("/app/.secrets"),  # Docker container path
        Path.home() / ".secrets",  # Home directory
    ]

    for path in paths_to_check:
        if path.exists():
            with open(path, "r") as f:
                for line in f:
                    line = line.strip()
                    # Skip comments and empty lines
                    if not line or line.startswith("#"):
                        continue
                    # Parse key=value
                    if "=" in line:
                        key, value = line.split("=", 1)
                        secrets[key.strip()] = value.strip()
            break  # Use first secrets file found

    return secrets


def default_state_file() -> Path:
    """Location of the state file when STATE_FILE_PATH is not set.

    Follows the XDG convention: $XDG_CONFIG_HOME/ocea-exporter/state.json,
    falling back to ~/.config.
    """
    config_home = os.environ.get("XDG_CONFIG_HOME")
    base = Path(config_home) if config_home else Path.home() / ".config"
    return base / "ocea-exporter" / "state.json"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Ocea resident portal account
    ocea_username: str = Field(default="", alias="OCEA_USERNAME")
    # Usually provided through the .secrets file
    ocea_password: str = Field(default="", alias="OCEA_PASSWORD")
    ocea_api_base_url: str = Field(
        default="https://espace-resident-api.ocea-sb.com/api/v1", alias="OCEA_API_BASE_URL"
    )

    # Polling (seconds)
    # The portal only publishes new readings a few times a day
    poll_interval: int = Field(default=1800, alias="POLL_INTERVAL")
    crash_backoff: int = Field(default=60, alias="CRASH_BACKOFF")
    http_timeout: float = Field(default=10.0, alias="HTTP_TIMEOUT")

    # Counter state
    state_file_path: Path = Field(default_factory=default_state_file, alias="STATE_FILE_PATH")
    # "annual": absolute index + year-to-date deltas from dashboards (cheap, default)
    # "direct": absolute device readings on every cycle (audited endpoint, use sparingly)
    reconcile_strategy: Literal["annual", "direct"] = Field(default="annual", alias="RECONCILE_STRATEGY")

    # Prometheus
    prometheus_enabled: bool = Field(default=True, alias="PROMETHEUS_ENABLED")
    prometheus_listen_addr: str = Field(default="127.0.0.1", alias="PROMETHEUS_LISTEN_ADDR")
    prometheus_port: int = Field(default=9001, alias="PROMETHEUS_PORT")

    # Home Assistant (MQTT discovery)
    homeassistant_enabled: bool = Field(default=False, alias="HOMEASSISTANT_ENABLED")
    mqtt_host: str = Field(default="localhost", alias="MQTT_HOST")
    mqtt_port: int = Field(default=1883, alias="MQTT_PORT")
    mqtt_username: Optional[str] = Field(default=None, alias="MQTT_USERNAME")
    mqtt_password: Optional[str] = Field(default=None, alias="MQTT_PASSWORD")
    mqtt_discovery_prefix: str = Field(default="homeassistant", alias="MQTT_DISCOVERY_PREFIX")

    # InfluxDB
    influxdb_enabled: bool = Field(default=False, alias="INFLUXDB_ENABLED")
    influxdb_url: str = Field(default="http://localhost:8086", alias="INFLUXDB_URL")
    influxdb_token: Optional[str] = Field(default=None, alias="INFLUXDB_TOKEN")
    influxdb_org: str = Field(default="home", alias="INFLUXDB_ORG")
    influxdb_bucket: str = Field(default="ocea", alias="INFLUXDB_BUCKET")

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    class Config:
        env_file = ".env"
        extra = "ignore"
        populate_by_name = True

    @property
    def credentials(self) -> Credentials:
        """Portal credentials, immutable for the process lifetime."""
        return Credentials(username=self.ocea_username, password=self.ocea_password)

    @property
    def has_credentials(self) -> bool:
        return bool(self.ocea_username and self.ocea_password)


def create_settings() -> Settings:
    """Create settings instance, loading secrets from .secrets file.

    Called once by the entry point; the result is handed to every component
    that needs it.
    """
    secrets = load_secrets_file()

    # Secrets file is authoritative for sensitive values
    for key, value in secrets.items():
        if key.startswith("OCEA_") or key.endswith("_TOKEN") or key.endswith("_PASSWORD"):
            os.environ[key] = value

    return Settings()

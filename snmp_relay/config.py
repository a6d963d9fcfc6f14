"""
Configuration for the SNMP relay.

Two layers:
- RelayConfig: the static settings document (settings.json) describing
  the MQTT endpoint and the SNMP device to poll.
- RelaySettings: process-level settings read from the environment
  (prefix SNMP_RELAY_) and an optional .env file.
"""
import json
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import ConfigurationError


class OverflowPolicy(str, Enum):
    """What to do when a bounded sample buffer is full."""
    DROP_OLDEST = "drop_oldest"
    REJECT = "reject"


class MqttSettings(BaseModel):
    """MQTT section of the settings document."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    url: str = Field(description="Broker URL, e.g. mqtt://broker:1883")
    username: str = Field(description="Broker username")
    topic: str = Field(description="Topic samples are published to")
    password: Optional[str] = Field(default=None, description="Broker password")
    client_id: str = Field(default="snmpClient", alias="clientId")
    clean: bool = Field(default=False, description="Start with a clean session")
    qos: int = Field(default=1, ge=1, le=2, description="Delivery guarantee")


class RelayConfig(BaseModel):
    """The settings document."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    mqtt: MqttSettings
    interval: int = Field(gt=0, description="Poll interval (milliseconds)")
    submit_every: float = Field(
        ge=0, alias="submitEvery", description="Quiet period after a sample (minutes)"
    )
    community: str = Field(description="SNMP community string")
    ip: str = Field(description="Device address")
    oids: Dict[str, str] = Field(description="OID to output field name")

    # SNMP session options, defaulting to the usual agent settings
    port: int = Field(default=161, gt=0, lt=65536)
    version: str = Field(default="1", description="SNMP version: 1 or 2c")
    timeout: int = Field(default=5000, gt=0, description="Request timeout (milliseconds)")
    retries: int = Field(default=1, ge=0)

    @field_validator("oids")
    @classmethod
    def _normalize_oids(cls, value: Dict[str, str]) -> Dict[str, str]:
        if not value:
            raise ValueError("at least one OID is required")
        return {oid.strip().lstrip("."): name for oid, name in value.items()}

    @field_validator("version", mode="before")
    @classmethod
    def _normalize_version(cls, value: Any) -> str:
        version = str(value).lower().lstrip("v")
        if version == "2":
            version = "2c"
        if version not in ("1", "2c"):
            raise ValueError("supported SNMP versions are 1 and 2c")
        return version

    @property
    def poll_interval_seconds(self) -> float:
        return self.interval / 1000.0

    @property
    def quiet_period_seconds(self) -> float:
        return self.submit_every * 60.0

    @property
    def timeout_seconds(self) -> float:
        return self.timeout / 1000.0


class RelaySettings(BaseSettings):
    """Process-level relay settings."""

    model_config = SettingsConfigDict(
        env_prefix="SNMP_RELAY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    settings_file: Path = Field(
        default=Path("settings.json"),
        description="Path to the settings document",
    )
    log_level: str = Field(default="INFO")

    # Delivery
    flush_interval: float = Field(default=1.0, gt=0, description="Flush tick period (seconds)")
    publish_delay: float = Field(default=0.2, ge=0, description="Delay between publishes (seconds)")
    max_chunk: int = Field(default=1, ge=1, description="Records per published message")

    # Buffer
    buffer_capacity: Optional[int] = Field(
        default=None, ge=1, description="Maximum buffered records; unset for unbounded"
    )
    overflow_policy: OverflowPolicy = Field(default=OverflowPolicy.DROP_OLDEST)


@lru_cache()
def get_relay_settings() -> RelaySettings:
    """
    Get cached relay settings.

    Uses LRU cache to avoid re-reading environment variables on every access.
    """
    return RelaySettings()


def load_config(path: Union[str, Path]) -> RelayConfig:
    """
    Load and validate the settings document.

    Args:
        path: Path to the JSON settings document.

    Returns:
        Validated configuration.

    Raises:
        ConfigurationError: If the file is missing, unreadable or invalid.
    """
    path = Path(path)
    name = path.name

    if not path.exists():
        raise ConfigurationError(f"Unable to find file {name}", path=str(path))

    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(f"Unable to read file {name}: {e}", path=str(path)) from e

    try:
        document = json.loads(text)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Unable to parse {name} file: {e}", path=str(path)) from e

    if not isinstance(document, dict):
        raise ConfigurationError(
            f"Unable to parse {name} file: expected a JSON object", path=str(path)
        )

    try:
        return RelayConfig.model_validate(document)
    except ValidationError as e:
        errors = e.errors(include_url=False, include_context=False)
        raise ConfigurationError(
            _describe_error(errors[0], name), path=str(path), errors=errors
        ) from e


def _describe_error(error: Dict[str, Any], file_name: str) -> str:
    """Turn the first validation error into a readable message."""
    loc = [str(part) for part in error.get("loc", ())]

    if error.get("type") == "missing" and loc:
        key = loc[-1]
        if len(loc) > 1:
            return f"Missing {key} key in {loc[-2]} object of {file_name} file"
        return f"Missing {key} key in {file_name} file"

    where = ".".join(loc) or "document"
    return f"Invalid value for {where} in {file_name} file: {error.get('msg')}"

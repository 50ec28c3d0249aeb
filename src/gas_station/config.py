"""
Configuration for gas-station.

Settings load from environment variables with prefix GAS_STATION_ (nested
groups use a double underscore, e.g. GAS_STATION_TIMEOUTS__SUBMISSION_SECONDS)
and from an optional .env file.
"""
from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

NODE_URL_TEMPLATE = "https://api.us1.shinami.com/node/v1/{access_key}"
DEFAULT_GAS_STATION_URL = "https://api.us1.shinami.com/sui/gas/v1"
NATIVE_RESOURCE_TYPE = "0x2::sui::SUI"


class TimeoutConfig(BaseModel):
    """Per-stage timeouts; each network call is bounded independently."""
    resource_query_seconds: float = Field(default=15.0, gt=0)
    sponsorship_seconds: float = Field(default=30.0, gt=0)
    # wallet prompts wait on a human
    user_authorization_seconds: float = Field(default=300.0, gt=0)
    submission_seconds: float = Field(default=60.0, gt=0)
    http_timeout_seconds: float = Field(default=30.0, gt=0)


class LoggingConfig(BaseModel):
    """Logging behaviour for sponsored operations."""
    stage_level: str = "DEBUG"
    operation_level: str = "INFO"
    rejection_level: str = "WARNING"
    integrity_level: str = "ERROR"

    # Sensitive data handling
    mask_addresses: bool = False

    # Audit logging
    audit_log_enabled: bool = True
    audit_log_path: Optional[str] = None  # None = use default logger


class GasStationSettings(BaseSettings):
    """Main gas-station configuration."""

    environment: Literal["dev", "sandbox", "prod"] = "dev"
    network: Literal["testnet", "mainnet", "devnet"] = "testnet"

    # simulated = in-process ledger and sponsor, live = remote node + gas station
    mode: Literal["simulated", "live"] = "simulated"

    # Access keys
    node_access_key: str = ""
    gas_station_access_key: str = ""

    # Endpoints (node_url defaults to the keyed node URL)
    node_url: str = ""
    gas_station_url: str = DEFAULT_GAS_STATION_URL

    # Contract used by the demo move-call route
    move_package_id: str = ""

    native_resource_type: str = NATIVE_RESOURCE_TYPE

    # Applied when a caller gives no explicit ceiling; None trusts the sponsor's estimate
    default_fee_ceiling: Optional[int] = Field(default=None, gt=0)

    timeouts: TimeoutConfig = Field(default_factory=TimeoutConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    class Config:
        env_prefix = "GAS_STATION_"
        env_nested_delimiter = "__"
        env_file = ".env"
        extra = "ignore"

    @field_validator("default_fee_ceiling", mode="before")
    @classmethod
    def parse_empty_ceiling(cls, v):
        """Treat an empty env var as 'no default ceiling'."""
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @property
    def resolved_node_url(self) -> str:
        if self.node_url:
            return self.node_url
        if self.node_access_key:
            return NODE_URL_TEMPLATE.format(access_key=self.node_access_key)
        return ""

    def validate_live(self) -> None:
        """Raise if live mode is selected without the credentials it needs."""
        if self.mode != "live":
            return
        missing = []
        if not self.gas_station_access_key:
            missing.append("GAS_STATION_GAS_STATION_ACCESS_KEY")
        if not self.resolved_node_url:
            missing.append("GAS_STATION_NODE_ACCESS_KEY")
        if missing:
            raise ValueError(f"Live mode requires: {', '.join(missing)}")
        if self.default_fee_ceiling is None and self.environment == "prod":
            logger.warning(
                "No default fee ceiling configured; sponsor estimates are trusted as-is"
            )


@lru_cache
def load_settings(env_file: str | None = None) -> GasStationSettings:
    """Load GasStationSettings once per process to keep services consistent."""
    env_path = Path(env_file) if env_file else None
    return GasStationSettings(_env_file=env_path)

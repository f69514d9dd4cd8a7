"""
runlens configuration.

Two layers:
- SourceConfig: the explicit data-source value passed to every facade call.
  A missing database is a ConfigurationError, raised before any query.
- DashboardSettings: process settings read from RUNLENS_* environment
  variables and validated with pydantic.

Security Warning:
-----------------
The API binds to localhost by default. Binding to 0.0.0.0 exposes execution
history to the network without authentication. Only enable RUNLENS_LAN on
trusted networks.
"""

import os
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from runlens.errors import ConfigurationError


DEFAULT_HOST = "127.0.0.1"
LAN_HOST = "0.0.0.0"
DEFAULT_PORT = 8642

DEFAULT_QUERY_TIMEOUT_SECONDS = 30.0
DEFAULT_CACHE_TTL_SECONDS = 30.0
DEFAULT_MAX_WORKERS = 8


@dataclass(frozen=True)
class SourceConfig:
    """Connection details for one execution catalog."""

    database: Optional[str] = None
    """Path to the SQLite catalog. None means not configured."""

    timeout_seconds: float = DEFAULT_QUERY_TIMEOUT_SECONDS
    """Per-query timeout."""

    name: str = "default"
    """Namespace for cache keys, so two catalogs never share entries."""

    @property
    def is_configured(self) -> bool:
        return bool(self.database and self.database.strip())

    def require(self) -> "SourceConfig":
        """
        Return self if usable.

        Raises:
            ConfigurationError: If no database is configured
        """
        if not self.is_configured:
            raise ConfigurationError("Not configured: no execution catalog database set")
        if self.timeout_seconds <= 0:
            raise ConfigurationError(
                f"Invalid query timeout: {self.timeout_seconds}. Must be positive."
            )
        return self


def _env_bool(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class DashboardSettings(BaseModel):
    """Process-wide settings for the dashboard service."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    database: Optional[str] = None
    source_name: str = "default"
    query_timeout_seconds: float = Field(default=DEFAULT_QUERY_TIMEOUT_SECONDS, gt=0)
    cache_ttl_seconds: float = Field(default=DEFAULT_CACHE_TTL_SECONDS, gt=0)
    metric_ttl_overrides: Dict[str, float] = Field(default_factory=dict)
    single_flight: bool = False
    max_workers: int = Field(default=DEFAULT_MAX_WORKERS, ge=1, le=64)
    host: str = DEFAULT_HOST
    port: int = Field(default=DEFAULT_PORT, ge=1, le=65535)
    lan_exposure: bool = False
    cors_origins: List[str] = Field(
        default_factory=lambda: ["http://localhost:5173", "http://127.0.0.1:5173"]
    )

    @field_validator("metric_ttl_overrides")
    @classmethod
    def _positive_ttls(cls, value: Dict[str, float]) -> Dict[str, float]:
        for metric, ttl in value.items():
            if ttl <= 0:
                raise ValueError(f"TTL for '{metric}' must be positive, got {ttl}")
        return value

    @property
    def bind_host(self) -> str:
        """Host to bind. LAN exposure overrides the configured host."""
        return LAN_HOST if self.lan_exposure else self.host

    def source(self) -> SourceConfig:
        """The configured data source (may be unconfigured)."""
        return SourceConfig(
            database=self.database,
            timeout_seconds=self.query_timeout_seconds,
            name=self.source_name,
        )

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "DashboardSettings":
        """
        Load settings from RUNLENS_* environment variables.

        RUNLENS_METRIC_TTLS takes comma-separated name=seconds pairs,
        e.g. "current_executions=5,heatmap=300".
        """
        env = os.environ if environ is None else environ
        values: Dict[str, object] = {}

        if env.get("RUNLENS_DATABASE"):
            values["database"] = env["RUNLENS_DATABASE"]
        if env.get("RUNLENS_SOURCE_NAME"):
            values["source_name"] = env["RUNLENS_SOURCE_NAME"]
        if env.get("RUNLENS_QUERY_TIMEOUT"):
            values["query_timeout_seconds"] = env["RUNLENS_QUERY_TIMEOUT"]
        if env.get("RUNLENS_CACHE_TTL"):
            values["cache_ttl_seconds"] = env["RUNLENS_CACHE_TTL"]
        if env.get("RUNLENS_METRIC_TTLS"):
            values["metric_ttl_overrides"] = _parse_ttl_overrides(env["RUNLENS_METRIC_TTLS"])
        if env.get("RUNLENS_MAX_WORKERS"):
            values["max_workers"] = env["RUNLENS_MAX_WORKERS"]
        if env.get("RUNLENS_HOST"):
            values["host"] = env["RUNLENS_HOST"]
        if env.get("RUNLENS_PORT"):
            values["port"] = env["RUNLENS_PORT"]
        if env.get("RUNLENS_CORS_ORIGINS"):
            values["cors_origins"] = [
                o.strip() for o in env["RUNLENS_CORS_ORIGINS"].split(",") if o.strip()
            ]
        values["single_flight"] = _env_bool(env.get("RUNLENS_SINGLE_FLIGHT"))
        values["lan_exposure"] = _env_bool(env.get("RUNLENS_LAN"))

        return cls(**values)


def _parse_ttl_overrides(raw: str) -> Dict[str, float]:
    overrides: Dict[str, float] = {}
    for item in raw.split(","):
        item = item.strip()
        if not item:
            continue
        if "=" not in item:
            raise ValueError(f"Invalid TTL override '{item}'. Expected name=seconds.")
        name, seconds = item.split("=", 1)
        overrides[name.strip()] = float(seconds)
    return overrides

"""Configuration for lb-sync.

Process settings come from environment variables (see :func:`load_settings`);
the services to watch and the HAProxy generator options come from a JSON
config file (see :func:`load_config`). All models are immutable once built.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from lb_sync.core.errors import ConfigError
from lb_sync.models.schemas import Backend

DEFAULT_STATE_FILE_TTL = 60 * 60 * 24
DEFAULT_BIND_ADDRESS = "localhost"
MAX_SERVER_ID = 2**16 - 1


class Settings(BaseModel):
    """Pydantic settings for the lb-sync process."""
    config_path: Path
    log_level: str = "INFO"
    tick_interval_s: float = 1.0
    api_host: str = "127.0.0.1"
    api_port: int = 3212


def load_settings() -> Settings:
    """Load settings from environment variables and return a Settings object."""
    try:
        return Settings(
            config_path=os.getenv("LB_SYNC_CONFIG", "/etc/lb-sync/config.json"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            tick_interval_s=float(os.getenv("TICK_INTERVAL_S", "1.0")),
            api_host=os.getenv("API_HOST", "127.0.0.1"),
            api_port=int(os.getenv("API_PORT", "3212")),
        )
    except (ValidationError, ValueError) as e:
        raise RuntimeError(f"Invalid configuration: {e}") from e


class HaproxyOptions(BaseModel):
    """Options of the ``haproxy`` section of the config file."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    global_: tuple[str, ...] = Field(alias="global")
    defaults: tuple[str, ...]
    extra_sections: dict[str, tuple[str, ...]] = Field(default_factory=dict)
    shared_frontend: Optional[tuple[str, ...]] = None
    bind_address: Optional[str] = None

    do_writes: bool = True
    do_socket: bool = True
    do_reloads: bool = True
    config_file_path: Optional[str] = None
    socket_file_path: Union[str, tuple[str, ...], None] = None
    socket_timeout_s: Optional[float] = None
    reload_command: Optional[str] = None
    check_command: Optional[str] = None

    restart_interval: int = 2
    restart_jitter: float = 0.0
    state_file_path: Optional[str] = None
    state_file_ttl: int = DEFAULT_STATE_FILE_TTL
    max_server_id: int = Field(default=MAX_SERVER_ID, ge=1, le=MAX_SERVER_ID)

    @model_validator(mode="before")
    @classmethod
    def _require_sections(cls, data: Any) -> Any:
        if isinstance(data, dict):
            for req in ("global", "defaults"):
                if req not in data and not (req == "global" and "global_" in data):
                    raise ValueError(f"haproxy requires a {req} section")
        return data

    @model_validator(mode="after")
    def _require_paths(self) -> "HaproxyOptions":
        pairs = (
            ("do_writes", "config_file_path"),
            ("do_socket", "socket_file_path"),
            ("do_reloads", "reload_command"),
        )
        for cond, req in pairs:
            if getattr(self, cond) and not getattr(self, req):
                raise ValueError(f"the `{req}` option is required when `{cond}` is true")
        return self

    @property
    def socket_file_paths(self) -> tuple[str, ...]:
        if self.socket_file_path is None:
            return ()
        if isinstance(self.socket_file_path, str):
            return (self.socket_file_path,)
        return tuple(self.socket_file_path)


class ServiceConfig(BaseModel):
    """One entry of the ``services`` map."""

    model_config = ConfigDict(frozen=True)

    discovery: dict[str, Any]
    default_servers: tuple[Backend, ...] = ()
    haproxy: dict[str, Any] = Field(default_factory=dict)

    @field_validator("discovery")
    @classmethod
    def _require_method(cls, v: dict[str, Any]) -> dict[str, Any]:
        if "method" not in v:
            raise ValueError("missing discovery method")
        return v


class AppConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    services: dict[str, ServiceConfig]
    haproxy: HaproxyOptions


def build_haproxy_options(data: dict[str, Any]) -> HaproxyOptions:
    try:
        return HaproxyOptions.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"invalid haproxy section: {e}") from e


def build_config(data: dict[str, Any]) -> AppConfig:
    """Validate an already parsed config mapping."""
    if "services" not in data:
        raise ConfigError("specify a list of services to connect in the config")
    if "haproxy" not in data:
        raise ConfigError("haproxy config section is missing")
    try:
        return AppConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"invalid configuration: {e}") from e


def load_config(path: Union[str, Path]) -> AppConfig:
    """Read and validate the JSON config file at ``path``."""
    try:
        data = json.loads(Path(path).read_text())
    except (OSError, ValueError) as e:
        raise ConfigError(f"could not read config file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"config file {path} must contain a JSON object")
    return build_config(data)

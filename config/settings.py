"""
Configuration loader for the bulk dispatcher.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class DispatchConfig:
    default_interval_seconds: float = 1.0     # delay between two sends of one job
    batch_size: int = 25                      # max recipients per processor pass
    max_pass_seconds: float = 45.0            # execution budget of a single pass
    lease_seconds: float = 60.0               # claim expiry if a pass dies
    snapshot_audience: bool = True            # freeze recipient list at creation
    min_chat_address_length: int = 8
    start_immediately: bool = True            # pending → running on create


@dataclass
class SchedulerConfig:
    enabled: bool = True
    interval_seconds: int = 30                # continuation tick period
    activate_pending: bool = True


@dataclass
class AudienceConfig:
    backend: str = "static"                   # "static" | "rest"
    base_url: str = ""
    auth_type: str = "bearer"
    auth_credentials: dict[str, Any] = field(default_factory=dict)
    endpoints: dict[str, str] = field(default_factory=dict)
    segments: dict[str, list[dict[str, Any]]] = field(default_factory=dict)


@dataclass
class ChannelConfig:
    enabled: bool = False
    credentials: dict[str, Any] = field(default_factory=dict)


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./dispatcher.db"             # postgresql:// | mysql:// | sqlite://
    store_backend: str = "memory"                      # "sql" | "memory" | "file"
    store_file_dir: str = "./data"                     # directory for file backend
    pool_size: int = 10
    max_overflow: int = 20


@dataclass
class Settings:
    app_name: str = "BulkDispatcher"
    debug: bool = False
    timezone: str = "UTC"
    dispatch: DispatchConfig = field(default_factory=DispatchConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    audience: AudienceConfig = field(default_factory=AudienceConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    channels: dict[str, ChannelConfig] = field(default_factory=dict)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "DISPATCHER_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)
        settings.timezone = raw.get("timezone", settings.timezone)

        if "dispatch" in raw:
            d = raw["dispatch"]
            defaults = DispatchConfig()
            settings.dispatch = DispatchConfig(
                default_interval_seconds=float(d.get("default_interval_seconds", defaults.default_interval_seconds)),
                batch_size=int(d.get("batch_size", defaults.batch_size)),
                max_pass_seconds=float(d.get("max_pass_seconds", defaults.max_pass_seconds)),
                lease_seconds=float(d.get("lease_seconds", defaults.lease_seconds)),
                snapshot_audience=d.get("snapshot_audience", defaults.snapshot_audience),
                min_chat_address_length=int(d.get("min_chat_address_length", defaults.min_chat_address_length)),
                start_immediately=d.get("start_immediately", defaults.start_immediately),
            )

        if "scheduler" in raw:
            s = raw["scheduler"]
            settings.scheduler = SchedulerConfig(
                enabled=s.get("enabled", True),
                interval_seconds=int(s.get("interval_seconds", 30)),
                activate_pending=s.get("activate_pending", True),
            )

        if "audience" in raw:
            a = raw["audience"]
            settings.audience = AudienceConfig(
                backend=a.get("backend", "static"),
                base_url=a.get("base_url", ""),
                auth_type=a.get("auth_type", "bearer"),
                auth_credentials=a.get("auth_credentials", {}),
                endpoints=a.get("endpoints", {}),
                segments=a.get("segments", {}),
            )

        if "database" in raw:
            db = raw["database"]
            settings.database = DatabaseConfig(
                url=db.get("url", settings.database.url),
                store_backend=db.get("store_backend", settings.database.store_backend),
                store_file_dir=db.get("store_file_dir", settings.database.store_file_dir),
                pool_size=int(db.get("pool_size", settings.database.pool_size)),
                max_overflow=int(db.get("max_overflow", settings.database.max_overflow)),
            )

        if "channels" in raw:
            for ch_name, ch_data in raw["channels"].items():
                settings.channels[ch_name] = ChannelConfig(
                    enabled=ch_data.get("enabled", False),
                    credentials=ch_data.get("credentials", {}),
                )

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Drop cached settings (for testing)."""
    global _settings
    _settings = None

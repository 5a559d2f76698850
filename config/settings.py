"""
Configuration loader for the flow engine.
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
class MessagingConfig:
    graph_base_url: str = "https://graph.facebook.com"
    api_version: str = "v21.0"
    timeout_seconds: float = 15.0
    max_attempts: int = 3
    base_delay_seconds: float = 1.0       # first backoff; doubles per attempt
    max_delay_seconds: float = 30.0       # cap for server-supplied Retry-After
    jitter_seconds: float = 0.5
    max_quick_replies: int = 13
    max_label_length: int = 20
    max_payload_length: int = 1000


@dataclass
class ReservationConfig:
    type: str = "mock"                    # "rest" | "mock"
    base_url: str = ""
    endpoint: str = "/reservations"
    auth_type: str = "bearer"
    auth_credentials: dict[str, Any] = field(default_factory=dict)
    timeout_seconds: float = 10.0


@dataclass
class StoreConfig:
    backend: str = "memory"               # "memory" | "file"
    flows_dir: str = "./data/flows"       # for file backend: one JSON/YAML file per flow


@dataclass
class LoggingConfig:
    level: str = "INFO"
    json: bool = False


@dataclass
class IntegrationConfig:
    integration_id: str = ""
    tenant_id: str = ""
    channel_account_id: str = ""
    access_token: str = ""


@dataclass
class Settings:
    app_name: str = "FlowEngine"
    debug: bool = False
    timezone: str = "Europe/Berlin"
    messaging: MessagingConfig = field(default_factory=MessagingConfig)
    reservation: ReservationConfig = field(default_factory=ReservationConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    integrations: list[IntegrationConfig] = field(default_factory=list)


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


def _build(cls, raw: Optional[dict[str, Any]]):
    """Instantiate a config dataclass from a YAML section, ignoring unknown keys."""
    if not raw:
        return cls()
    known = cls.__dataclass_fields__
    return cls(**{k: v for k, v in raw.items() if k in known})


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "FLOWENGINE_CONFIG",
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
        settings.messaging = _build(MessagingConfig, raw.get("messaging"))
        settings.reservation = _build(ReservationConfig, raw.get("reservation"))
        settings.store = _build(StoreConfig, raw.get("store"))
        settings.logging = _build(LoggingConfig, raw.get("logging"))
        settings.integrations = [
            _build(IntegrationConfig, item) for item in raw.get("integrations") or []
        ]

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings

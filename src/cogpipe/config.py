"""
Runtime configuration.

Resolution order for each setting:
1. Explicit keyword arguments to load_settings()
2. YAML file (COGPIPE_CONFIG, or cogpipe.yaml in the working directory)
3. Environment variables (COGPIPE_DB, COGPIPE_COMPLETION_URL, ...)
4. Defaults below

Example cogpipe.yaml:

    db_path: research.db
    completion:
      base_url: https://llm.example.com/v1
      model: small-model
    retry:
      max_attempts: 3
      base_delay: 0.5
    profiles:
      expansive: {temperature: 0.9, max_tokens: 3000}
    connectors:
      search: {url: https://search.example.com/api}
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .kernel.completion import DEFAULT_PROFILES, GenerationProfile, RetryPolicy
from .lib.connectors import StalenessPolicy

CONFIG_FILENAME = "cogpipe.yaml"


@dataclass
class ConnectorConfig:
    name: str
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    timeout: float = 30.0


@dataclass
class Settings:
    db_path: str = "cogpipe.db"
    worker_db_path: str = "cogpipe-worker.db"
    completion_url: Optional[str] = None
    api_key: Optional[str] = None
    model: str = "default"
    timeout: float = 60.0
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    parse_attempts: int = 2
    staleness: StalenessPolicy = field(default_factory=StalenessPolicy)
    profiles: Dict[str, GenerationProfile] = field(default_factory=lambda: dict(DEFAULT_PROFILES))
    connectors: Dict[str, ConnectorConfig] = field(default_factory=dict)
    log_level: str = "WARNING"


def get_config_path(explicit: Optional[str] = None) -> Optional[Path]:
    if explicit:
        return Path(explicit)
    env_path = os.environ.get("COGPIPE_CONFIG")
    if env_path:
        return Path(env_path)
    local = Path.cwd() / CONFIG_FILENAME
    if local.exists():
        return local
    return None


def load_yaml(path: Optional[Path]) -> Dict[str, Any]:
    if path is None:
        return {}
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping")
    return data


def _env_layer() -> Dict[str, Any]:
    mapping = {
        "COGPIPE_DB": "db_path",
        "COGPIPE_WORKER_DB": "worker_db_path",
        "COGPIPE_COMPLETION_URL": "completion_url",
        "COGPIPE_API_KEY": "api_key",
        "COGPIPE_MODEL": "model",
        "COGPIPE_LOG_LEVEL": "log_level",
    }
    return {key: os.environ[env] for env, key in mapping.items() if os.environ.get(env)}


def load_settings(config_path: Optional[str] = None, **overrides: Any) -> Settings:
    """Build Settings from file, environment and explicit overrides."""
    raw = load_yaml(get_config_path(config_path))
    settings = Settings()

    flat: Dict[str, Any] = {}
    flat.update(_env_layer())
    for key in ("db_path", "worker_db_path", "model", "log_level", "parse_attempts"):
        if key in raw:
            flat[key] = raw[key]
    completion = raw.get("completion") or {}
    for src, dst in (("base_url", "completion_url"), ("api_key", "api_key"),
                     ("model", "model"), ("timeout", "timeout")):
        if src in completion:
            flat[dst] = completion[src]
    flat.update({k: v for k, v in overrides.items() if v is not None})

    for key, value in flat.items():
        if not hasattr(settings, key):
            raise ValueError(f"Unknown setting: {key}")
        setattr(settings, key, value)

    if "retry" in raw:
        settings.retry = RetryPolicy(**raw["retry"])
    if "staleness_seconds" in raw:
        settings.staleness = StalenessPolicy(max_age_seconds=raw["staleness_seconds"])

    for name, values in (raw.get("profiles") or {}).items():
        base = settings.profiles.get(name, GenerationProfile(name, 0.2, 800))
        settings.profiles[name] = GenerationProfile(
            name=name,
            temperature=float(values.get("temperature", base.temperature)),
            max_tokens=int(values.get("max_tokens", base.max_tokens)),
        )

    for name, values in (raw.get("connectors") or {}).items():
        settings.connectors[name] = ConnectorConfig(name=name, **values)

    return settings

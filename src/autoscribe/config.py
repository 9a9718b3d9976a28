from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Any

import jsonschema
import yaml

from .errors import ConfigError
from .storage import get_setting, set_setting, upsert_campaign

__all__ = [
    "CAMPAIGN_SCHEMA",
    "Config",
    "ConfigError",
    "DEFAULT_CONFIG",
    "bootstrap_runtime_config",
    "import_campaigns",
    "load_campaigns_file",
    "load_config",
    "load_runtime_config",
    "set_runtime_config",
    "validate_config",
]


@dataclass(frozen=True)
class PathsConfig:
    data_dir: str
    state_db: str
    output_dir: str


@dataclass(frozen=True)
class HttpConfig:
    timeout_seconds: int
    user_agent: str
    max_retries: int
    backoff_seconds: int


@dataclass(frozen=True)
class DiscoveryConfig:
    max_depth: int
    auto_pause_after: int
    default_priority: int
    freshness_window: str
    excerpt_length: int
    provider_failure_threshold: int
    provider_cooldown_seconds: int


@dataclass(frozen=True)
class QueueConfig:
    max_retries: int
    lease_ttl_seconds: int
    backoff_base_seconds: int
    backoff_max_seconds: int
    retention_days: int


@dataclass(frozen=True)
class RotationConfig:
    default_strategy: str
    suspension_threshold: int


@dataclass(frozen=True)
class DispatchConfig:
    max_concurrent_campaigns: int
    max_concurrent_calls: int
    max_batch_per_campaign: int


@dataclass(frozen=True)
class SignalsConfig:
    backlog_snapshots: int
    error_rate_window_minutes: int
    error_rate_threshold: float


@dataclass(frozen=True)
class Config:
    paths: PathsConfig
    http: HttpConfig
    discovery: DiscoveryConfig
    queue: QueueConfig
    rotation: RotationConfig
    dispatch: DispatchConfig
    signals: SignalsConfig
    providers: dict[str, Any]


DEFAULT_CONFIG: dict[str, Any] = {
    "paths": {
        "data_dir": "/data",
        "state_db": "/data/state.sqlite3",
        "output_dir": "/data/output",
    },
    "http": {
        "timeout_seconds": 20,
        "user_agent": "autoscribe/0.1",
        "max_retries": 2,
        "backoff_seconds": 2,
    },
    "discovery": {
        "max_depth": 3,
        "auto_pause_after": 5,
        "default_priority": 50,
        "freshness_window": "24h",
        "excerpt_length": 500,
        "provider_failure_threshold": 10,
        "provider_cooldown_seconds": 300,
    },
    "queue": {
        "max_retries": 3,
        "lease_ttl_seconds": 1800,
        "backoff_base_seconds": 60,
        "backoff_max_seconds": 3600,
        "retention_days": 30,
    },
    "rotation": {
        "default_strategy": "round_robin",
        "suspension_threshold": 5,
    },
    "dispatch": {
        "max_concurrent_campaigns": 3,
        "max_concurrent_calls": 10,
        "max_batch_per_campaign": 5,
    },
    "signals": {
        "backlog_snapshots": 3,
        "error_rate_window_minutes": 60,
        "error_rate_threshold": 0.5,
    },
    # Free-form per-provider settings, keyed by provider name.
    "providers": {},
}

CONFIG_KEY = "config.runtime"

_SOURCE_TYPES = ["feed", "sitemap", "scrape", "search", "video", "marketplace"]

CAMPAIGN_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["campaigns"],
    "properties": {
        "campaigns": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["id", "sources", "provider_chain"],
                "additionalProperties": False,
                "properties": {
                    "id": {"type": "string", "minLength": 1},
                    "name": {"type": "string"},
                    "status": {"enum": ["active", "paused"]},
                    "rotation_strategy": {"type": "string"},
                    "max_concurrent": {"type": "integer", "minimum": 1},
                    "max_retries": {"type": "integer", "minimum": 0},
                    "provider_chain": {
                        "type": "array",
                        "minItems": 1,
                        "items": {"type": "string", "minLength": 1},
                    },
                    "parameters": {"type": "object"},
                    "sources": {
                        "type": "array",
                        "items": {
                            "type": "object",
                            "required": ["type"],
                            "properties": {
                                "type": {"enum": _SOURCE_TYPES},
                                "url": {"type": "string"},
                                "name": {"type": "string"},
                                "options": {"type": "object"},
                            },
                        },
                    },
                },
            },
        }
    },
}


def load_config(path: str | None = None) -> Config:
    path = path or os.environ.get("AS_CONFIG_PATH")
    cfg = _deep_copy(DEFAULT_CONFIG)
    if path:
        try:
            with open(path, "r", encoding="utf-8") as handle:
                loaded = yaml.safe_load(handle) or {}
        except OSError as exc:
            raise ConfigError(f"cannot read config {path}: {exc}") from exc
        except yaml.YAMLError as exc:
            raise ConfigError(f"invalid YAML in {path}: {exc}") from exc
        if not isinstance(loaded, dict):
            raise ConfigError(f"{path} must contain a mapping")
        cfg = _deep_merge(cfg, loaded)
    errors = validate_config(cfg)
    if errors:
        raise ConfigError("Invalid config: " + "; ".join(errors))
    return _build_config(cfg)


def bootstrap_runtime_config(conn) -> dict[str, Any]:
    cfg = get_setting(conn, CONFIG_KEY, None)
    if cfg is None:
        set_setting(conn, CONFIG_KEY, _deep_copy(DEFAULT_CONFIG))
        cfg = get_setting(conn, CONFIG_KEY, None)
    if not isinstance(cfg, dict):
        raise ConfigError("config.runtime must be a JSON object")
    return cfg


def set_runtime_config(conn, cfg: dict[str, Any]) -> None:
    errors = validate_config(cfg)
    if errors:
        raise ConfigError("Invalid config.runtime: " + "; ".join(errors))
    set_setting(conn, CONFIG_KEY, _deep_copy(cfg))


def load_runtime_config(conn) -> Config:
    cfg = bootstrap_runtime_config(conn)
    errors = validate_config(cfg)
    if errors:
        raise ConfigError("Invalid config.runtime: " + "; ".join(errors))
    return _build_config(cfg)


def validate_config(cfg: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    _validate_dict(cfg, DEFAULT_CONFIG, "config", errors)
    if not errors:
        _validate_ranges(cfg, errors)
    return errors


def load_campaigns_file(path: str) -> list[dict[str, Any]]:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            document = yaml.safe_load(handle) or {}
    except OSError as exc:
        raise ConfigError(f"cannot read campaigns {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"invalid YAML in {path}: {exc}") from exc
    try:
        jsonschema.validate(document, CAMPAIGN_SCHEMA)
    except jsonschema.ValidationError as exc:
        location = "/".join(str(part) for part in exc.absolute_path) or "<root>"
        raise ConfigError(f"invalid campaign definition at {location}: {exc.message}") from exc
    return list(document["campaigns"])


def import_campaigns(conn, path: str) -> list[str]:
    imported: list[str] = []
    for entry in load_campaigns_file(path):
        upsert_campaign(conn, entry)
        imported.append(entry["id"])
    return imported


def _validate_dict(value: dict[str, Any], schema: dict[str, Any], path: str, errors: list[str]) -> None:
    if not isinstance(value, dict):
        errors.append(f"{path} must be an object")
        return
    for key in schema.keys():
        if key not in value:
            errors.append(f"missing {path}.{key}")
    for key in value.keys():
        if key not in schema:
            errors.append(f"unknown {path}.{key}")
    for key, default in schema.items():
        if key not in value:
            continue
        _validate_value(value[key], default, f"{path}.{key}", errors)


def _validate_value(value: Any, default: Any, path: str, errors: list[str]) -> None:
    if isinstance(default, dict):
        if not isinstance(value, dict):
            errors.append(f"{path} must be an object")
            return
        if default:
            _validate_dict(value, default, path, errors)
        return
    if isinstance(default, list):
        if not isinstance(value, list):
            errors.append(f"{path} must be a list")
        return
    if isinstance(default, bool):
        if not isinstance(value, bool):
            errors.append(f"{path} must be a boolean")
        return
    if isinstance(default, int):
        if not isinstance(value, int) or isinstance(value, bool):
            errors.append(f"{path} must be an integer")
        return
    if isinstance(default, float):
        if not isinstance(value, (int, float)) or isinstance(value, bool):
            errors.append(f"{path} must be a number")
        return
    if isinstance(default, str):
        if not isinstance(value, str):
            errors.append(f"{path} must be a string")
        return


def _validate_ranges(cfg: dict[str, Any], errors: list[str]) -> None:
    positive = [
        ("http", "timeout_seconds"),
        ("discovery", "max_depth"),
        ("queue", "lease_ttl_seconds"),
        ("rotation", "suspension_threshold"),
        ("dispatch", "max_concurrent_campaigns"),
        ("dispatch", "max_concurrent_calls"),
        ("dispatch", "max_batch_per_campaign"),
    ]
    for section, key in positive:
        if cfg[section][key] < 1:
            errors.append(f"config.{section}.{key} must be >= 1")
    if cfg["queue"]["max_retries"] < 0:
        errors.append("config.queue.max_retries must be >= 0")
    if not 0 <= cfg["discovery"]["default_priority"] <= 100:
        errors.append("config.discovery.default_priority must be between 0 and 100")
    strategy = cfg["rotation"]["default_strategy"]
    if strategy not in {"round_robin", "least_used", "random", "priority"}:
        errors.append(f"config.rotation.default_strategy unknown: {strategy}")
    for name, provider in cfg["providers"].items():
        if not isinstance(provider, dict):
            errors.append(f"config.providers.{name} must be an object")


def _build_config(cfg: dict[str, Any]) -> Config:
    paths_cfg = cfg.get("paths") or {}
    http_cfg = cfg.get("http") or {}
    discovery_cfg = cfg.get("discovery") or {}
    queue_cfg = cfg.get("queue") or {}
    rotation_cfg = cfg.get("rotation") or {}
    dispatch_cfg = cfg.get("dispatch") or {}
    signals_cfg = cfg.get("signals") or {}

    paths = PathsConfig(
        data_dir=str(paths_cfg.get("data_dir")),
        state_db=str(paths_cfg.get("state_db")),
        output_dir=str(paths_cfg.get("output_dir")),
    )

    http = HttpConfig(
        timeout_seconds=int(http_cfg.get("timeout_seconds")),
        user_agent=str(http_cfg.get("user_agent")),
        max_retries=int(http_cfg.get("max_retries")),
        backoff_seconds=int(http_cfg.get("backoff_seconds")),
    )

    discovery = DiscoveryConfig(
        max_depth=int(discovery_cfg.get("max_depth")),
        auto_pause_after=int(discovery_cfg.get("auto_pause_after")),
        default_priority=int(discovery_cfg.get("default_priority")),
        freshness_window=str(discovery_cfg.get("freshness_window")),
        excerpt_length=int(discovery_cfg.get("excerpt_length")),
        provider_failure_threshold=int(discovery_cfg.get("provider_failure_threshold")),
        provider_cooldown_seconds=int(discovery_cfg.get("provider_cooldown_seconds")),
    )

    queue = QueueConfig(
        max_retries=int(queue_cfg.get("max_retries")),
        lease_ttl_seconds=int(queue_cfg.get("lease_ttl_seconds")),
        backoff_base_seconds=int(queue_cfg.get("backoff_base_seconds")),
        backoff_max_seconds=int(queue_cfg.get("backoff_max_seconds")),
        retention_days=int(queue_cfg.get("retention_days")),
    )

    rotation = RotationConfig(
        default_strategy=str(rotation_cfg.get("default_strategy")),
        suspension_threshold=int(rotation_cfg.get("suspension_threshold")),
    )

    dispatch = DispatchConfig(
        max_concurrent_campaigns=int(dispatch_cfg.get("max_concurrent_campaigns")),
        max_concurrent_calls=int(dispatch_cfg.get("max_concurrent_calls")),
        max_batch_per_campaign=int(dispatch_cfg.get("max_batch_per_campaign")),
    )

    signals = SignalsConfig(
        backlog_snapshots=int(signals_cfg.get("backlog_snapshots")),
        error_rate_window_minutes=int(signals_cfg.get("error_rate_window_minutes")),
        error_rate_threshold=float(signals_cfg.get("error_rate_threshold")),
    )

    return Config(
        paths=paths,
        http=http,
        discovery=discovery,
        queue=queue,
        rotation=rotation,
        dispatch=dispatch,
        signals=signals,
        providers=dict(cfg.get("providers") or {}),
    )


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict) and merged[key]:
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _deep_copy(value: dict[str, Any]) -> dict[str, Any]:
    return json.loads(json.dumps(value))

"""Configuration loading and validation for loreforge."""

from __future__ import annotations

import copy
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Tuple

import yaml


PROJECT_ROOT = Path(__file__).resolve().parents[2]
CONFIG_DIR = PROJECT_ROOT / "config"
CONFIG_PATH = CONFIG_DIR / "config.yaml"
ENV_CONFIG_PATH = "LOREFORGE_CONFIG"


DEFAULT_CONFIG: Dict[str, Any] = {
    "service": {
        "base_url": "https://openrouter.ai/api/v1",
        "api_key_env": "OPENROUTER_API_KEY",
        "model": "z-ai/glm-4.5-air:free",
        "timeout": 30,
        "max_tokens": 8000,
        "referer": "http://localhost:3000",
        "title": "loreforge",
    },
    "assets": {
        "base_url": "http://localhost:3000",
        "route": "/api/generate-portrait",
        "timeout": 60,
    },
    # Per-kind overrides of the fixed endpoint table (see loreforge.endpoints).
    "endpoints": {},
    "queue": {
        "concurrency_limit": 3,
        "rate_limit": {
            "max_attempts": 5,
            "backoff_seconds": 1.0,
            "max_backoff_seconds": 30.0,
        },
    },
    "jobs": {
        "snapshot_path": "data/jobs.json",
        "stale_after_seconds": 600,
        "retain_settled_seconds": 86400,
        "maintenance_interval": 60,
    },
    "paths": {
        "data": "data",
        "logs": "logs",
        "metrics": "data/metrics",
    },
    "logging": {
        "console_level": "INFO",
        "file_level": "DEBUG",
        "json_logs": False,
        "color": True,
        "max_bytes": 10 * 1024 * 1024,
        "backup_count": 5,
    },
    "metrics": {
        "report_interval": 10,
        "include_system": True,
        "system_interval": 5.0,
    },
}


@dataclass(frozen=True)
class ConfigLoadResult:
    """Container for the merged configuration."""

    config: Dict[str, Any]
    sources: Tuple[str, ...]


_DEFAULT_FILE_HEADER = (
    "# loreforge configuration. Values here override the built-in defaults.\n"
    "# The API key itself is read from the environment variable named by\n"
    "# service.api_key_env and never stored in this file.\n"
)

# (section, key) pairs holding filesystem paths; key None means every entry.
_PATH_SETTINGS: Tuple[Tuple[str, str | None], ...] = (("paths", None), ("jobs", "snapshot_path"))


def _ensure_default_config(path: Path) -> None:
    if path.exists():
        return
    path.parent.mkdir(parents=True, exist_ok=True)
    body = yaml.safe_dump(DEFAULT_CONFIG, sort_keys=False, default_flow_style=False)
    tmp = path.with_name(path.name + ".tmp")
    tmp.write_text(_DEFAULT_FILE_HEADER + body, encoding="utf-8")
    tmp.replace(path)


def _load_yaml(path: Path) -> Dict[str, Any]:
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ValueError(f"Invalid YAML in {path}: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise ValueError(f"Configuration file {path} must contain a mapping at the root")
    return dict(data)


def _deep_merge(base: Mapping[str, Any], overlay: Mapping[str, Any]) -> Dict[str, Any]:
    """Merge ``overlay`` into a copy of ``base``; nested mappings merge key by key."""

    merged = copy.deepcopy(dict(base))
    for key, value in overlay.items():
        current = merged.get(key)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            merged[key] = _deep_merge(current, value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _resolve_path(base_dir: Path, value: str) -> str:
    path = Path(value).expanduser()
    return str(path if path.is_absolute() else (base_dir / path).resolve())


def _apply_path_defaults(config: Dict[str, Any], base_dir: Path) -> Dict[str, Any]:
    for section, key in _PATH_SETTINGS:
        values = dict(config.get(section) or {})
        keys = list(values) if key is None else [key]
        for name in keys:
            if isinstance(values.get(name), str) and values[name]:
                values[name] = _resolve_path(base_dir, values[name])
        config[section] = values
    return config


def _collect_sources(explicit: str | Path | None) -> Iterable[Tuple[Path, bool]]:
    yield CONFIG_PATH, explicit is None
    env_path = os.getenv(ENV_CONFIG_PATH)
    if env_path:
        yield Path(env_path), False
    if explicit is not None:
        yield Path(explicit), False


def _validate_config(config: Dict[str, Any]) -> Dict[str, Any]:
    queue = config.get("queue", {})
    if int(queue.get("concurrency_limit") or 0) <= 0:
        raise ValueError("queue.concurrency_limit must be a positive integer")
    rate_limit = queue.get("rate_limit", {})
    max_attempts = rate_limit.get("max_attempts")
    if max_attempts is not None and int(max_attempts) <= 0:
        raise ValueError("queue.rate_limit.max_attempts must be positive or null")
    if float(rate_limit.get("backoff_seconds", 0)) < 0:
        raise ValueError("queue.rate_limit.backoff_seconds must be >= 0")
    for section in ("service", "assets"):
        timeout = config.get(section, {}).get("timeout")
        if timeout is None or float(timeout) <= 0:
            raise ValueError(f"{section}.timeout must be a positive number")
    jobs = config.get("jobs", {})
    for key in ("stale_after_seconds", "retain_settled_seconds", "maintenance_interval"):
        if float(jobs.get(key, 0)) <= 0:
            raise ValueError(f"jobs.{key} must be > 0")
    endpoints = config.get("endpoints") or {}
    if not isinstance(endpoints, Mapping):
        raise ValueError("endpoints must be a mapping of kind -> overrides")
    return config


def load_config(
    path: str | Path | None = None,
    *,
    include_sources: bool = False,
    base_dir: Path | None = None,
) -> ConfigLoadResult | Dict[str, Any]:
    """Load and validate configuration settings.

    ``path`` layers an explicit file on top of the project config and the
    ``LOREFORGE_CONFIG`` environment override. Relative paths inside the
    configuration resolve against ``base_dir`` (the project root by default).
    """

    config: Dict[str, Any] = copy.deepcopy(DEFAULT_CONFIG)
    sources: list[str] = []

    for source, required in _collect_sources(path):
        if required:
            _ensure_default_config(source)
        if not source.exists():
            if path is not None and source == Path(path):
                raise FileNotFoundError(f"Configuration file not found: {source}")
            continue
        data = _load_yaml(source)
        config = _deep_merge(config, data)
        sources.append(str(source.resolve()))

    config = _apply_path_defaults(config, base_dir or PROJECT_ROOT)
    config = _validate_config(config)

    result = ConfigLoadResult(config=config, sources=tuple(sources))
    if include_sources:
        return result
    return result.config


__all__ = ["DEFAULT_CONFIG", "ConfigLoadResult", "load_config"]

"""Configuration bundle discovery and per-invocation fleet configuration."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Mapping

import yaml
from pydantic import BaseModel, ConfigDict

from cloudcrowd.errors import ConfigNotFound

logger = logging.getLogger("cloudcrowd.config")

CONFIG_ENV_VAR = "CLOUD_CROWD_CONFIG"
CONFIG_FILES = ("config.yml", "database.yml")
DEFAULT_PORT = 9173
DEFAULT_NUM_WORKERS = 1
DEFAULT_GRACE_PERIOD = 10.0
DEFAULT_CHECK_IN_INTERVAL = 30.0


class FleetConfiguration(BaseModel):
    """Read-only settings for one command invocation."""

    model_config = ConfigDict(frozen=True)

    worker_count: int
    worker_count_explicit: bool = False
    config_location: Path
    port: int = DEFAULT_PORT
    database_config: Path
    central_server: str
    pid_dir: Path
    log_dir: Path
    grace_period: float = DEFAULT_GRACE_PERIOD
    check_in_interval: float = DEFAULT_CHECK_IN_INTERVAL


def find_config_dir(directory: str | Path | None = None, environ: Mapping[str, str] | None = None) -> Path:
    """Locate the configuration bundle or raise ConfigNotFound."""
    env = os.environ if environ is None else environ
    raw = directory if directory is not None else env.get(CONFIG_ENV_VAR) or "."
    config_dir = Path(raw).expanduser().resolve()
    if not config_dir.is_dir():
        raise ConfigNotFound(directory=str(config_dir))
    missing = [name for name in CONFIG_FILES if not (config_dir / name).is_file()]
    if missing:
        logger.debug("Configuration bundle %s is missing %s", config_dir, ", ".join(missing))
        raise ConfigNotFound(directory=str(config_dir))
    return config_dir


def _load_yaml_mapping(path: Path) -> dict[str, Any]:
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigNotFound(f"unable to read {path}: {exc}", directory=str(path.parent)) from exc
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigNotFound(f"{path} must contain a mapping", directory=str(path.parent))
    return raw


def load_settings(config_dir: Path) -> dict[str, Any]:
    """Load config.yml from a validated bundle."""
    return _load_yaml_mapping(config_dir / "config.yml")


def load_database_settings(path: Path) -> dict[str, Any]:
    """Load database.yml settings."""
    return _load_yaml_mapping(path)


def _non_negative_int(value: Any, key: str, config_dir: Path) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        number = -1
    if number < 0 or isinstance(value, bool):
        raise ConfigNotFound(
            f"config.yml: {key} must be a non-negative integer, got {value!r}",
            directory=str(config_dir),
        )
    return number


def _positive_float(value: Any, key: str, config_dir: Path) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        number = 0.0
    if number <= 0:
        raise ConfigNotFound(
            f"config.yml: {key} must be a positive number, got {value!r}",
            directory=str(config_dir),
        )
    return number


def _bundle_path(config_dir: Path, value: str | Path) -> Path:
    path = Path(value).expanduser()
    if not path.is_absolute():
        path = config_dir / path
    return path


def resolve(
    directory: str | Path | None = None,
    *,
    num_workers: int | None = None,
    port: int | None = None,
    database_config: str | Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> FleetConfiguration:
    """Resolve flags plus the configuration bundle into a FleetConfiguration."""
    config_dir = find_config_dir(directory, environ)
    settings = load_settings(config_dir)

    if num_workers is not None:
        worker_count = _non_negative_int(num_workers, "num_workers", config_dir)
    else:
        worker_count = _non_negative_int(
            settings.get("num_workers", DEFAULT_NUM_WORKERS), "num_workers", config_dir
        )
    port_value = _non_negative_int(
        port if port is not None else settings.get("port", DEFAULT_PORT), "port", config_dir
    )
    central_server = str(settings.get("central_server") or f"http://localhost:{port_value}").rstrip("/")

    config = FleetConfiguration(
        worker_count=worker_count,
        worker_count_explicit=num_workers is not None,
        config_location=config_dir,
        port=port_value,
        database_config=_bundle_path(config_dir, database_config or "database.yml"),
        central_server=central_server,
        pid_dir=_bundle_path(config_dir, settings.get("pid_dir") or "tmp/pids"),
        log_dir=_bundle_path(config_dir, settings.get("log_dir") or "log"),
        grace_period=_positive_float(
            settings.get("worker_grace_period", DEFAULT_GRACE_PERIOD), "worker_grace_period", config_dir
        ),
        check_in_interval=_positive_float(
            settings.get("check_in_interval", DEFAULT_CHECK_IN_INTERVAL), "check_in_interval", config_dir
        ),
    )
    logger.info(
        "Resolved configuration at %s (workers=%s, port=%s)",
        config.config_location,
        config.worker_count,
        config.port,
    )
    return config

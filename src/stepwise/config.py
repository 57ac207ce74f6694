"""YAML configuration for the stepwise runtime."""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from .planning.dependencies import CascadeMode
from .policy.intervention import InterventionThresholds

DEFAULT_CONFIG_NAME = "stepwise.yaml"

DEFAULT_CONFIG_TEMPLATE: Dict[str, Any] = {
    "project": {
        "name": "",
        "repo_root": ".",
    },
    "execution": {
        "total_iteration_budget": 30,
        "max_iterations_per_step": 10,
        "max_retries": 3,
        "reflection_interval": 3,
        "cascade_mode": CascadeMode.SINGLE_PASS.value,
    },
    "intervention": {
        "low_confidence": 30,
        "declining_checkpoints": 3,
        "declining_drop": 20,
        "multiple_blockers": 3,
        "stalled_checkpoints": 3,
    },
    "models": {
        "default": "offline",
        "base_url": "https://api.anthropic.com/v1/messages",
        "timeout": 120,
        "max_attempts": 3,
        "retry_delay": 0.5,
        "max_tokens": 4096,
    },
    "paths": {
        "data": "data",
        "db_path": "data/stepwise.sqlite",
        "config": DEFAULT_CONFIG_NAME,
    },
    "logging": {
        "level": "INFO",
    },
}

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class ConfigError(ValueError):
    """Raised when a configuration file is missing, malformed, or mistyped."""


def default_config() -> Dict[str, Any]:
    """Return a deep copy of the default configuration template."""
    return copy.deepcopy(DEFAULT_CONFIG_TEMPLATE)


def load_config(config_path: Path) -> Dict[str, Any]:
    """Load YAML configuration from disk and return it as a dictionary."""
    if not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}")
    try:
        with config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as error:
        raise ConfigError(f"Failed to parse config: {error}") from error
    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a mapping at the top level.")
    return data


def write_config(config_path: Path, config_data: Mapping[str, Any]) -> None:
    """Persist configuration data to disk with stable formatting."""
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(dict(config_data), handle, sort_keys=False)


def resolve_repo_root(config: Mapping[str, Any], config_path: Path) -> Path:
    """Resolve the workspace root from configuration, relative to the config file."""
    project_cfg = config.get("project") or {}
    repo_root_path = Path(project_cfg.get("repo_root") or ".")
    if not repo_root_path.is_absolute():
        repo_root_path = (config_path.parent / repo_root_path).resolve()
    return repo_root_path


def _positive_int(section: Mapping[str, Any], key: str, default: int, *, prefix: str) -> int:
    value = section.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ConfigError(f"{prefix}.{key} must be a positive integer, got {value!r}")
    return value


@dataclass(slots=True)
class ExecutionSettings:
    """Limits and policies applied by the step executor."""

    total_iteration_budget: int = 30
    max_iterations_per_step: int = 10
    max_retries: int = 3
    reflection_interval: int = 3
    cascade_mode: CascadeMode = CascadeMode.SINGLE_PASS
    thresholds: InterventionThresholds = field(default_factory=InterventionThresholds)

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "ExecutionSettings":
        section = config.get("execution") or {}
        if not isinstance(section, Mapping):
            raise ConfigError("execution must be a mapping")
        defaults = cls()
        raw_mode = section.get("cascade_mode", defaults.cascade_mode.value)
        try:
            cascade_mode = CascadeMode(str(raw_mode).strip().lower())
        except ValueError as error:
            allowed = ", ".join(mode.value for mode in CascadeMode)
            raise ConfigError(f"execution.cascade_mode must be one of {allowed}, got {raw_mode!r}") from error
        max_retries = section.get("max_retries", defaults.max_retries)
        if isinstance(max_retries, bool) or not isinstance(max_retries, int) or max_retries < 0:
            raise ConfigError(f"execution.max_retries must be a non-negative integer, got {max_retries!r}")
        try:
            thresholds = InterventionThresholds.from_mapping(config.get("intervention"))
        except ValueError as error:
            raise ConfigError(str(error)) from error
        return cls(
            total_iteration_budget=_positive_int(
                section, "total_iteration_budget", defaults.total_iteration_budget, prefix="execution"
            ),
            max_iterations_per_step=_positive_int(
                section, "max_iterations_per_step", defaults.max_iterations_per_step, prefix="execution"
            ),
            max_retries=max_retries,
            reflection_interval=_positive_int(
                section, "reflection_interval", defaults.reflection_interval, prefix="execution"
            ),
            cascade_mode=cascade_mode,
            thresholds=thresholds,
        )


def configure_logging(config: Optional[Mapping[str, Any]] = None, *, verbose: bool = False) -> None:
    """Configure root logging from the ``logging.level`` key."""
    level_name = "DEBUG" if verbose else str(((config or {}).get("logging") or {}).get("level", "INFO"))
    level = logging.getLevelName(level_name.upper())
    if not isinstance(level, int):
        raise ConfigError(f"logging.level is not a valid level: {level_name!r}")
    logging.basicConfig(level=level, format=_LOG_FORMAT)


__all__ = [
    "ConfigError",
    "DEFAULT_CONFIG_NAME",
    "DEFAULT_CONFIG_TEMPLATE",
    "ExecutionSettings",
    "configure_logging",
    "default_config",
    "load_config",
    "resolve_repo_root",
    "write_config",
]

"""TOML-based rollout configuration.

Loads ~/.kuberoll/defaults.toml (global) and kuberoll.toml (project),
merges them, and applies command line overrides on top.

    [rollout]
    region = "us-west-2"
    drain_timeout = 900
    sleep_between_retries = 15

    [kube]
    context = "prod"

    [registration]
    max_attempts = 40
    interval = 15

    [logging]
    level = "DEBUG"
    file = "kuberoll.log"
"""

from __future__ import annotations

import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

from kuberoll.aws.loadbalancers import RegistrationPolicy
from kuberoll.errors import ConfigError
from kuberoll.kube.client import KubeOptions
from kuberoll.logging import LogConfig
from kuberoll.state import DEFAULT_STATE_FILE

type RawConfig = dict[str, Any]

GLOBAL_CONFIG_PATH = Path.home() / ".kuberoll" / "defaults.toml"
PROJECT_CONFIG_NAME = "kuberoll.toml"


@dataclass(frozen=True, slots=True)
class RolloutOptions:
    """Options of the rollout itself.

    Attributes:
        region: AWS region of the group.
        drain_timeout: Seconds allowed to drain each node; 0 means no limit.
        delete_local_data: Allow evicting pods that use emptyDir volumes.
        max_retries: Polls before a capacity or readiness wait gives up;
            0 derives it from the group size.
        sleep_between_retries: Seconds between polls.
        state_file: Where rollout progress is saved.
    """

    region: str = "us-east-1"
    drain_timeout: float = 900.0
    delete_local_data: bool = False
    max_retries: int = 0
    sleep_between_retries: float = 15.0
    state_file: str = DEFAULT_STATE_FILE


@dataclass(frozen=True, slots=True)
class Settings:
    rollout: RolloutOptions = field(default_factory=RolloutOptions)
    kube: KubeOptions = field(default_factory=KubeOptions)
    registration: RegistrationPolicy = field(default_factory=RegistrationPolicy)
    logging: LogConfig = field(default_factory=LogConfig)


_SECTIONS: dict[str, type] = {
    "rollout": RolloutOptions,
    "kube": KubeOptions,
    "registration": RegistrationPolicy,
    "logging": LogConfig,
}


def _deep_merge(base: RawConfig, override: RawConfig) -> RawConfig:
    result = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _read_toml(path: Path) -> RawConfig:
    if not path.is_file():
        return {}
    try:
        with path.open("rb") as f:
            return tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML in {path}: {e}", cause=e) from e


def load_config(
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
) -> RawConfig:
    global_cfg = _read_toml(global_path or GLOBAL_CONFIG_PATH)
    project_path = (project_dir or Path.cwd()) / PROJECT_CONFIG_NAME
    project_cfg = _read_toml(project_path)
    return _deep_merge(global_cfg, project_cfg)


def _build_section(name: str, raw: Any) -> Any:
    cls = _SECTIONS[name]
    if not isinstance(raw, dict):
        raise ConfigError(f"[{name}] must be a table")

    known = {f.name for f in fields(cls)}
    unknown = sorted(set(raw) - known)
    if unknown:
        raise ConfigError(
            f"Unknown keys in [{name}]: {', '.join(unknown)}. Valid: {', '.join(sorted(known))}"
        )
    try:
        return cls(**raw)
    except TypeError as e:
        raise ConfigError(f"Invalid [{name}] section: {e}", cause=e) from e


def _validate(settings: Settings) -> None:
    rollout = settings.rollout
    if rollout.sleep_between_retries <= 0:
        raise ConfigError("sleep_between_retries must be > 0")
    if rollout.max_retries < 0:
        raise ConfigError("max_retries must be >= 0")
    if rollout.drain_timeout < 0:
        raise ConfigError("drain_timeout must be >= 0")
    if settings.registration.max_attempts < 1:
        raise ConfigError("registration max_attempts must be >= 1")
    if settings.registration.interval < 0:
        raise ConfigError("registration interval must be >= 0")


def resolve_settings(
    overrides: RawConfig | None = None,
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
) -> Settings:
    """Merge config files with ``overrides`` and build Settings.

    ``overrides`` has the same shape as the TOML files; ``None`` values are
    dropped so unset command line flags fall through to the files.

    >>> settings = resolve_settings({"rollout": {"max_retries": 10}})
    >>> settings.rollout.max_retries
    10
    """
    config = load_config(project_dir=project_dir, global_path=global_path)

    cleaned = {
        section: {k: v for k, v in values.items() if v is not None}
        for section, values in (overrides or {}).items()
    }
    merged = _deep_merge(config, cleaned)

    unknown = sorted(set(merged) - set(_SECTIONS))
    if unknown:
        raise ConfigError(f"Unknown config sections: {', '.join(unknown)}")

    settings = Settings(**{name: _build_section(name, raw) for name, raw in merged.items()})
    _validate(settings)
    return settings

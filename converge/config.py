"""
Settings loaded from converge.yaml.
"""
import os
from dataclasses import dataclass, field, fields
from typing import Any, Dict, FrozenSet, Optional

import yaml

from converge.errors import ConfigError

CONFIG_FILE = "converge.yaml"

# Attributes that are always assigned by the provider and never diffed.
DEFAULT_COMPUTED_ONLY = frozenset({"id", "arn"})


@dataclass
class Settings:
    state_path: str = "converge.state.json"
    cloud_path: str = ".converge/cloud.json"
    parallelism: int = 4
    max_retries: int = 4
    backoff_base: float = 0.5
    backoff_max: float = 30.0
    call_timeout: float = 60.0
    computed_only: FrozenSet[str] = field(default_factory=lambda: DEFAULT_COMPUTED_ONLY)

    def with_overrides(self, **overrides: Any) -> "Settings":
        """Return a copy with every non-None override applied."""
        values = {f.name: getattr(self, f.name) for f in fields(self)}
        for key, val in overrides.items():
            if val is None:
                continue
            if key not in values:
                raise ConfigError(f"unknown setting '{key}'")
            values[key] = val
        return _validate(Settings(**values))


def _validate(settings: Settings) -> Settings:
    if settings.parallelism < 1:
        raise ConfigError("parallelism must be at least 1")
    if settings.max_retries < 0:
        raise ConfigError("max_retries cannot be negative")
    if settings.backoff_base < 0 or settings.backoff_max < 0:
        raise ConfigError("backoff values cannot be negative")
    if settings.call_timeout <= 0:
        raise ConfigError("call_timeout must be positive")
    return settings


def load_settings(path: Optional[str] = None) -> Settings:
    """
    Load settings from *path*, or from converge.yaml in the working directory.
    A missing default file yields the built-in defaults; a missing explicit
    file is an error.
    """
    explicit = path is not None
    path = path or CONFIG_FILE
    if not os.path.exists(path):
        if explicit:
            raise ConfigError(f"config file '{path}' does not exist")
        return Settings()

    try:
        with open(path, "r") as fh:
            raw = yaml.safe_load(fh) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"failed to parse {path}: {exc}") from exc

    if not isinstance(raw, dict):
        raise ConfigError(f"{path} must contain a mapping")

    known = {f.name for f in fields(Settings)}
    unknown = sorted(set(raw) - known)
    if unknown:
        raise ConfigError(f"{path}: unknown setting(s): {', '.join(unknown)}")

    values: Dict[str, Any] = dict(raw)
    if "computed_only" in values:
        extra = values["computed_only"] or []
        if not isinstance(extra, list):
            raise ConfigError(f"{path}: computed_only must be a list of attribute names")
        values["computed_only"] = DEFAULT_COMPUTED_ONLY | frozenset(str(a) for a in extra)

    try:
        return _validate(Settings(**values))
    except TypeError as exc:
        raise ConfigError(f"{path}: {exc}") from exc

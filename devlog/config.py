"""Configuration for the devlog daemon and CLI.

Resolution order, later wins:
1. Defaults on DevlogConfig
2. ``<base>/config.json``
3. DEVLOG_* environment variables
"""

import json
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional, Union

from devlog.protocols import ConfigError
from devlog.types import Granularity

# env var -> (field, converter)
ENV_OVERRIDES = {
    "DEVLOG_BATCH_SIZE": ("batch_size", int),
    "DEVLOG_POLL_INTERVAL": ("poll_interval", float),
    "DEVLOG_MAX_ATTEMPTS": ("max_attempts", int),
    "DEVLOG_WATCHDOG_SECONDS": ("watchdog_seconds", float),
    "DEVLOG_EXTRACTOR": ("extractor", str),
    "DEVLOG_LOG_LEVEL": ("log_level", str),
}


def get_devlog_home() -> Path:
    """$DEVLOG_HOME, or ~/.devlog."""
    env_home = os.environ.get("DEVLOG_HOME")
    if env_home:
        return Path(env_home).expanduser()
    return Path.home() / ".devlog"


def _default_factors() -> Dict[str, float]:
    return {"daily": 0.9, "weekly": 0.75, "monthly": 0.5}


@dataclass
class DevlogConfig:
    base_dir: Path = field(default_factory=get_devlog_home)
    # Watcher
    batch_size: int = 5
    poll_interval: float = 5.0
    max_attempts: int = 3
    watchdog_seconds: float = 600.0
    extractor: str = "tool-usage"
    # Decay
    decay_check_interval: float = 60.0
    decay_factors: Dict[str, float] = field(default_factory=_default_factors)
    prune_floor: float = 0.05
    # Promotion
    min_occurrences: int = 3
    min_score: float = 3.0
    candidate_max_age_days: float = 30.0
    # Queue maintenance
    completed_retention_days: float = 7.0
    log_level: str = "INFO"

    @property
    def factors(self) -> Dict[Granularity, float]:
        return {Granularity(k): v for k, v in self.decay_factors.items()}

    def validate(self) -> "DevlogConfig":
        """Check every value, raising ConfigError on the first bad one."""
        base = Path(self.base_dir).expanduser()
        if base.exists() and not base.is_dir():
            raise ConfigError(f"Base directory is not a directory: {base}")
        try:
            base.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ConfigError(f"Cannot create base directory {base}: {e}") from e
        self.base_dir = base

        for name in ("batch_size", "max_attempts", "min_occurrences"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value < 1:
                raise ConfigError(f"{name} must be a positive integer, got {value!r}")
        for name in (
            "poll_interval",
            "watchdog_seconds",
            "decay_check_interval",
            "min_score",
            "candidate_max_age_days",
            "completed_retention_days",
        ):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
                raise ConfigError(f"{name} must be a positive number, got {value!r}")

        if not isinstance(self.decay_factors, dict):
            raise ConfigError("decay_factors must be an object")
        factors = _default_factors()
        for key, value in self.decay_factors.items():
            try:
                Granularity(key)
            except ValueError:
                raise ConfigError(f"Unknown decay granularity: {key!r}") from None
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ConfigError(f"decay factor for {key} must be a number")
            if not 0.0 < value <= 1.0:
                raise ConfigError(f"decay factor for {key} must be in (0, 1], got {value}")
            factors[key] = float(value)
        self.decay_factors = factors

        if isinstance(self.prune_floor, bool) or not isinstance(self.prune_floor, (int, float)):
            raise ConfigError("prune_floor must be a number")
        if not 0.0 <= self.prune_floor < 1.0:
            raise ConfigError(f"prune_floor must be in [0, 1), got {self.prune_floor}")

        if not isinstance(self.extractor, str) or not self.extractor.strip():
            raise ConfigError("extractor must be a non-empty string")
        return self

    def to_dict(self) -> Dict[str, Any]:
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        data["base_dir"] = str(self.base_dir)
        return data


def _read_config_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        raise ConfigError(f"Cannot read config file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a JSON object")
    return data


def load_config(
    base_dir: Optional[Union[str, Path]] = None,
    config_path: Optional[Union[str, Path]] = None,
) -> DevlogConfig:
    """Build and validate the effective configuration.

    Args:
        base_dir: Overrides DEVLOG_HOME and the default home
        config_path: Config file; defaults to ``<base>/config.json``

    Raises:
        ConfigError: On unreadable config, unknown keys or invalid values
    """
    base = Path(base_dir).expanduser() if base_dir else get_devlog_home()
    path = Path(config_path).expanduser() if config_path else base / "config.json"

    known = {f.name for f in fields(DevlogConfig)} - {"base_dir"}
    overrides = _read_config_file(path)
    unknown = set(overrides) - known
    if unknown:
        raise ConfigError(f"Unknown config keys in {path}: {', '.join(sorted(unknown))}")

    for env_name, (name, convert) in ENV_OVERRIDES.items():
        raw = os.environ.get(env_name)
        if raw is None or raw == "":
            continue
        try:
            overrides[name] = convert(raw)
        except ValueError:
            raise ConfigError(f"{env_name} has invalid value {raw!r}") from None

    config = DevlogConfig(base_dir=base, **overrides)
    return config.validate()

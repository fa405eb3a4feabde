"""Configuration for envshield."""

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import List, Optional

import yaml

from .secrets import EnvshieldError

LOCAL_CONFIG_NAME = ".envshield.yaml"
REDACT_MODES = ("placeholder", "asterisk", "partial")


class ConfigError(EnvshieldError):
    """Configuration file could not be parsed or validated."""
    pass


@dataclass(frozen=True)
class RateLimitConfig:
    """Sliding-window limit on run_with_secrets calls."""

    enabled: bool = False
    max_requests: int = 30
    window_ms: int = 60000


@dataclass(frozen=True)
class EnvshieldConfig:
    """Merged global + project configuration."""

    env_files: List[str] = field(default_factory=lambda: [".env", ".env.local"])
    redact_mode: str = "placeholder"
    redact_patterns: List[str] = field(default_factory=list)
    blocked_commands: List[str] = field(default_factory=lambda: ["rm -rf", "sudo"])
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)


DEFAULT_CONFIG = EnvshieldConfig()

DEFAULT_CONFIG_TEMPLATE = """\
# Secret files to load, in order. Later files override earlier ones.
env_files:
  - .env
  - .env.local

# How to redact secrets: placeholder, asterisk or partial
redact_mode: placeholder

# Extra regex patterns to redact (built-in: Stripe, GitHub, AWS, OpenAI, JWT)
redact_patterns: []

# Commands rejected before anything is spawned
blocked_commands:
  - rm -rf
  - sudo

# Throttle command execution (disabled by default for local use)
rate_limit:
  enabled: false
  max_requests: 30
  window_ms: 60000
"""


def get_config_dir() -> Path:
    """Get config directory following XDG spec."""
    xdg_config = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config:
        base = Path(xdg_config)
    else:
        base = Path.home() / ".config"
    return base / "envshield"


def get_global_config_file() -> Path:
    """Get global config file path."""
    # Check environment variable first
    env_file = os.environ.get("ENVSHIELD_CONFIG")
    if env_file:
        return Path(env_file).expanduser()
    return get_config_dir() / "config.yaml"


def load_config(project_dir: Path, global_file: Optional[Path] = None) -> EnvshieldConfig:
    """
    Load configuration: defaults, then global file, then project file.

    Top-level keys from the project file replace global ones; the
    rate_limit mapping is merged key by key.
    """
    global_file = global_file or get_global_config_file()
    local_file = Path(project_dir) / LOCAL_CONFIG_NAME

    merged: dict = {}
    for path in (global_file, local_file):
        data = _read_config_file(path)
        for key, value in data.items():
            if key == "rate_limit" and isinstance(value, dict) and isinstance(merged.get(key), dict):
                merged[key] = {**merged[key], **value}
            else:
                merged[key] = value

    return config_from_dict(merged)


def _read_config_file(path: Path) -> dict:
    if not path.exists():
        return {}

    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot read config {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config {path} must be a mapping")
    return data


def config_from_dict(data: dict) -> EnvshieldConfig:
    """Validate a plain dict and build an EnvshieldConfig."""
    config = DEFAULT_CONFIG

    if "env_files" in data:
        config = replace(config, env_files=_as_string_list(data["env_files"], "env_files"))

    if "redact_mode" in data:
        mode = data["redact_mode"]
        if mode not in REDACT_MODES:
            raise ConfigError(f"redact_mode must be one of {', '.join(REDACT_MODES)}")
        config = replace(config, redact_mode=mode)

    if "redact_patterns" in data:
        config = replace(
            config, redact_patterns=_as_string_list(data["redact_patterns"], "redact_patterns")
        )

    if "blocked_commands" in data:
        config = replace(
            config, blocked_commands=_as_string_list(data["blocked_commands"], "blocked_commands")
        )

    rate_limit = data.get("rate_limit")
    if rate_limit is not None:
        if not isinstance(rate_limit, dict):
            raise ConfigError("rate_limit must be a mapping")
        defaults = RateLimitConfig()
        enabled = rate_limit.get("enabled", defaults.enabled)
        if not isinstance(enabled, bool):
            raise ConfigError("rate_limit.enabled must be a boolean")
        config = replace(
            config,
            rate_limit=RateLimitConfig(
                enabled=enabled,
                max_requests=_as_positive_int(
                    rate_limit.get("max_requests", defaults.max_requests), "rate_limit.max_requests"
                ),
                window_ms=_as_positive_int(
                    rate_limit.get("window_ms", defaults.window_ms), "rate_limit.window_ms"
                ),
            ),
        )

    return config


def _as_string_list(value: object, name: str) -> List[str]:
    if value is None:
        return []
    if not isinstance(value, list) or any(not isinstance(item, str) for item in value):
        raise ConfigError(f"{name} must be a list of strings")
    return list(value)


def _as_positive_int(value: object, name: str) -> int:
    # bool is an int subclass
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ConfigError(f"{name} must be a positive integer")
    return value

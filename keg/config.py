"""
config.py

Responsibility: Resolve runtime settings and the on-disk layout.

Precedence (highest first): explicit overrides (CLI flags), `KEG_*`
environment variables, a YAML config file, built-in defaults.

Layout mirrors a Homebrew prefix:
- `<root>/Cellar/<name>/<version>`: versioned install prefixes
- `<root>/opt/<name>`: stable symlink to the linked version
"""

from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Mapping

import yaml

from keg.errors import ConfigError

DEFAULT_ROOT = Path("~/.keg")
DEFAULT_CONFIG_PATH = Path("~/.config/keg/config.yaml")

_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


@dataclass(frozen=True)
class Settings:
    root: Path = DEFAULT_ROOT
    fetch_timeout: float = 30.0
    test_timeout: float = 60.0
    strict_dependencies: bool = False
    log_level: str = "WARNING"

    @property
    def layout(self) -> "Layout":
        return Layout(self.root.expanduser())


@dataclass(frozen=True)
class Layout:
    root: Path

    @property
    def cellar(self) -> Path:
        return self.root / "Cellar"

    @property
    def opt(self) -> Path:
        return self.root / "opt"

    @property
    def etc(self) -> Path:
        return self.root / "etc"

    def prefix_for(self, name: str, version: str) -> Path:
        return self.cellar / name / version

    def opt_prefix_for(self, name: str) -> Path:
        return self.opt / name


def _as_bool(key: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in {"1", "true", "yes", "on"}:
        return True
    if text in {"0", "false", "no", "off", ""}:
        return False
    raise ConfigError(f"`{key}` must be a boolean, got {value!r}")


def _as_timeout(key: str, value: Any) -> float:
    try:
        out = float(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"`{key}` must be a number of seconds, got {value!r}") from e
    if out <= 0:
        raise ConfigError(f"`{key}` must be positive, got {value!r}")
    return out


def _coerce(raw: Mapping[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for key, value in raw.items():
        if value is None:
            continue
        if key == "root":
            out["root"] = Path(str(value))
        elif key in ("fetch_timeout", "test_timeout"):
            out[key] = _as_timeout(key, value)
        elif key == "strict_dependencies":
            out[key] = _as_bool(key, value)
        elif key == "log_level":
            level = str(value).strip().upper()
            if level not in _LOG_LEVELS:
                raise ConfigError(f"`log_level` must be one of {sorted(_LOG_LEVELS)}, got {value!r}")
            out[key] = level
        else:
            raise ConfigError(f"Unknown config key: {key}")
    return out


def _load_file(path: Path) -> dict[str, Any]:
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Config file is not valid YAML: {path}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Config file must be a mapping at the top level: {path}")
    return data


def _from_env(env: Mapping[str, str]) -> dict[str, Any]:
    names = {
        "KEG_ROOT": "root",
        "KEG_FETCH_TIMEOUT": "fetch_timeout",
        "KEG_TEST_TIMEOUT": "test_timeout",
        "KEG_STRICT_DEPS": "strict_dependencies",
        "KEG_LOG_LEVEL": "log_level",
    }
    return {key: env[var] for var, key in names.items() if env.get(var)}


def load_settings(
    overrides: Mapping[str, Any] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    config_path: str | Path | None = None,
) -> Settings:
    """
    Build `Settings` from defaults, a YAML config file, the environment and overrides.

    A config file named explicitly (argument or `KEG_CONFIG`) must exist; the
    default location is optional.
    """
    env = os.environ if env is None else env

    explicit = config_path or env.get("KEG_CONFIG")
    path = Path(explicit).expanduser() if explicit else DEFAULT_CONFIG_PATH.expanduser()
    file_values: dict[str, Any] = {}
    if path.exists():
        file_values = _load_file(path)
    elif explicit:
        raise ConfigError(f"Config file does not exist: {path}")

    settings = Settings()
    for layer in (file_values, _from_env(env), dict(overrides or {})):
        settings = replace(settings, **_coerce(layer))
    return settings

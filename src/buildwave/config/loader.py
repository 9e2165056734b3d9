"""
buildwave: runtime config loader.

Purpose
- Build the effective config from built-in defaults, ``buildwave.toml``, environment
  variables and CLI overrides.

Functional requirements
- Precedence: CLI > env (``BUILDWAVE_SECTION__KEY``) > file > defaults.
- Env values are coerced to the type of the setting they override; an uncoercible value
  is a ``ConfigLoadError`` naming the variable.
- Path fields are normalized relative to the directory holding the config file.
- Invalid values surface as ``ConfigValidationError`` listing every issue.
"""

from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Callable, Iterator, Mapping
from pathlib import Path
from typing import Any, Final

from buildwave.config.schema import (
    PATH_FIELDS,
    STAGE_NAMES,
    assert_valid_config,
    default_config,
    merge_config,
)
from buildwave.domain.roles import RoleId

DEFAULT_CONFIG_FILE: Final[str] = "buildwave.toml"
ENV_PREFIX: Final[str] = "BUILDWAVE_"
ENV_SEPARATOR: Final[str] = "__"

_TRUTHY: Final[frozenset[str]] = frozenset({"1", "true", "yes", "on"})
_FALSY: Final[frozenset[str]] = frozenset({"0", "false", "no", "off"})

ConfigPath = tuple[str, ...]


class ConfigLoadError(ValueError):
    """Raised when config cannot be loaded or overrides cannot be coerced."""


def load_config(
    config_path: str | Path | None = None,
    *,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Effective config for ``config_path`` (default ``./buildwave.toml`` when present)."""
    source = _config_file(config_path)
    layers = (
        _read_toml(source, required=config_path is not None),
        env_overrides(os.environ if environ is None else environ),
        _dotted_overrides(cli_overrides or {}),
    )
    effective = default_config()
    for layer in layers:
        effective = merge_config(effective, layer)
    return normalize_paths(assert_valid_config(effective), base_dir=source.parent)


def env_overrides(environ: Mapping[str, str]) -> dict[str, Any]:
    """Nested overrides for every recognised ``BUILDWAVE_*`` variable in ``environ``."""
    known = dict(_overridable_settings())
    overrides: dict[str, Any] = {}
    for name in sorted(environ):
        if not name.startswith(ENV_PREFIX):
            continue
        path = tuple(part.lower() for part in name[len(ENV_PREFIX) :].split(ENV_SEPARATOR))
        if path not in known:
            continue
        try:
            value = _coercer_for(known[path])(environ[name].strip())
        except ValueError as exc:
            raise ConfigLoadError(f"{name} ({'.'.join(path)}): {exc}") from exc
        _assign(overrides, path, value)
    return overrides


def normalize_paths(config: Mapping[str, object], *, base_dir: Path) -> dict[str, Any]:
    """Copy of ``config`` with relative path settings anchored at ``base_dir``."""
    normalized = merge_config({}, config)
    for path in PATH_FIELDS:
        section = normalized.get(path[0])
        if not isinstance(section, dict):
            continue
        raw = section.get(path[1])
        if isinstance(raw, str):
            section[path[1]] = _anchor(raw, base_dir)
    return normalized


def dump_effective_config(config: Mapping[str, object]) -> str:
    return json.dumps(config, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _config_file(config_path: str | Path | None) -> Path:
    if config_path is None:
        return (Path.cwd() / DEFAULT_CONFIG_FILE).resolve()
    return Path(config_path).expanduser().resolve()


def _read_toml(path: Path, *, required: bool) -> dict[str, Any]:
    if not path.is_file():
        if required:
            raise ConfigLoadError(f"config file not found: {path}")
        return {}
    try:
        return tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigLoadError(f"invalid TOML in {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigLoadError(f"unable to read config file {path}: {exc}") from exc


def _overridable_settings() -> Iterator[tuple[ConfigPath, object]]:
    """Every scalar setting an env var may target, with its default value."""

    def walk(
        node: Mapping[str, object], prefix: ConfigPath
    ) -> Iterator[tuple[ConfigPath, object]]:
        for key, value in node.items():
            if isinstance(value, Mapping):
                yield from walk(value, (*prefix, key))
            else:
                yield (*prefix, key), value

    yield from walk(default_config(), ())
    # Command tables are empty by default but every role and stage may be set.
    for role in RoleId:
        yield ("workers", "commands", role.value), ""
    for stage in STAGE_NAMES:
        yield ("verification", "commands", stage), ""


def _coercer_for(default: object) -> Callable[[str], object]:
    if isinstance(default, bool):
        return _as_bool
    if isinstance(default, int):
        return _as_int
    if isinstance(default, float):
        return _as_float
    return str


def _as_bool(raw: str) -> bool:
    lowered = raw.lower()
    if lowered in _TRUTHY:
        return True
    if lowered in _FALSY:
        return False
    raise ValueError(f"expected a boolean (true/false/1/0/yes/no/on/off), got {raw!r}")


def _as_int(raw: str) -> int:
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"expected an integer, got {raw!r}") from None


def _as_float(raw: str) -> float:
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"expected a number, got {raw!r}") from None


def _dotted_overrides(overrides: Mapping[str, object]) -> dict[str, Any]:
    nested: dict[str, Any] = {}
    for key, value in sorted(overrides.items()):
        if value is None:
            continue
        path = tuple(part for part in key.split(".") if part)
        if not path:
            raise ConfigLoadError(f"invalid CLI override key {key!r}")
        _assign(nested, path, value)
    return nested


def _assign(target: dict[str, Any], path: ConfigPath, value: object) -> None:
    *parents, leaf = path
    node = target
    for part in parents:
        child = node.get(part)
        if not isinstance(child, dict):
            child = node[part] = {}
        node = child
    node[leaf] = value


def _anchor(raw: str, base_dir: Path) -> str:
    candidate = Path(os.path.expandvars(raw)).expanduser()
    if not candidate.is_absolute():
        candidate = base_dir / candidate
    return Path(os.path.normpath(candidate)).as_posix()


__all__ = [
    "ConfigLoadError",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "dump_effective_config",
    "env_overrides",
    "load_config",
    "normalize_paths",
]

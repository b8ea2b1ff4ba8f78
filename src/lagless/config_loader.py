"""Load LaglessConfig from lagless.yaml if present.

Merges file config with keyword overrides. Overrides take precedence.
"""

from __future__ import annotations

import tomllib
from dataclasses import fields
from pathlib import Path

import yaml

from lagless._errors import ConfigError
from lagless.config import LaglessConfig

_KNOWN_KEYS = frozenset(f.name for f in fields(LaglessConfig))


def load_config(root: Path | None = None, **overrides: object) -> LaglessConfig:
    """Load LaglessConfig from root, optionally merging lagless.yaml.

    Looks for lagless.yaml, lagless.yml, or lagless.toml in root. If found,
    loads and merges with overrides. Overrides take precedence.
    """
    file_config = _read_lagless_config(root) if root is not None else {}
    merged = {**file_config, **overrides}
    unknown = set(overrides) - _KNOWN_KEYS
    if unknown:
        msg = f"Unknown config option(s): {', '.join(sorted(unknown))}"
        raise ConfigError(msg)
    return LaglessConfig(**merged)  # type: ignore[arg-type]


def _read_lagless_config(root: Path) -> dict[str, object]:
    """Read lagless config from yaml/toml if present. Returns empty dict otherwise."""
    for name in ("lagless.yaml", "lagless.yml"):
        path = root / name
        if path.is_file():
            return _parse_yaml(path)
    toml_path = root / "lagless.toml"
    if toml_path.is_file():
        return _parse_toml(toml_path)
    return {}


def _parse_yaml(path: Path) -> dict[str, object]:
    try:
        data = yaml.safe_load(path.read_text()) or {}
    except (OSError, yaml.YAMLError) as exc:
        msg = f"Failed to read {path.name}: {exc}"
        raise ConfigError(msg) from exc
    if not isinstance(data, dict):
        msg = f"{path.name} must contain a mapping, got {type(data).__name__}"
        raise ConfigError(msg)
    return _flatten_lagless_section(data)


def _parse_toml(path: Path) -> dict[str, object]:
    try:
        data = tomllib.loads(path.read_text())
    except (OSError, tomllib.TOMLDecodeError) as exc:
        msg = f"Failed to read {path.name}: {exc}"
        raise ConfigError(msg) from exc
    return _flatten_lagless_section(data)


def _flatten_lagless_section(data: dict[str, object]) -> dict[str, object]:
    """Extract lagless.* keys into top-level config, dropping unknown keys."""
    result: dict[str, object] = {}
    for k, v in data.items():
        if k != "lagless" and k in _KNOWN_KEYS:
            result[k] = v
    section = data.get("lagless")
    if isinstance(section, dict):
        for k, v in section.items():
            if k in _KNOWN_KEYS:
                result[k] = v
    return result

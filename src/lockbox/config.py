"""
Configuration for lockbox.

Two TOML tiers are merged, later ones winning:
1. defaults.toml, shipped inside the package
2. <root>/config.toml, the site file (root is $LOCKBOX_ROOT or /var/lib/lockbox)

Tables merge key by key and arrays are extended; name a key `<key>_replace`
to swap the whole value instead. `$VAR` and `${VAR}` in strings are expanded
from the environment after merging.

Applications and the inactivity timeout are only templates here: they are
copied into a container's sidecar when it is created and read from there.
"""

import os
import re
import tomllib
from importlib.resources import files
from pathlib import Path
from typing import Any

DEFAULT_ROOT = "/var/lib/lockbox"
REPLACE_SUFFIX = "_replace"

_VAR = re.compile(r"\$(?:\{([A-Za-z_][A-Za-z0-9_]*)\}|([A-Za-z_][A-Za-z0-9_]*))")


def expand_vars(value: Any, env: dict[str, str] | None = None) -> Any:
    """Expand $VAR / ${VAR} in every string of a nested value. Unknown names are kept."""
    env = dict(os.environ) if env is None else env

    def substitute(match: re.Match) -> str:
        name = match.group(1) or match.group(2)
        return env.get(name, match.group(0))

    if isinstance(value, str):
        return _VAR.sub(substitute, value)
    if isinstance(value, dict):
        return {key: expand_vars(item, env) for key, item in value.items()}
    if isinstance(value, list):
        return [expand_vars(item, env) for item in value]
    return value


def deep_merge(base: dict, override: dict) -> dict:
    """Merge `override` into a copy of `base` (see module docstring for rules)."""
    merged = dict(base)
    for key, value in override.items():
        if key.endswith(REPLACE_SUFFIX):
            merged[key[:-len(REPLACE_SUFFIX)]] = value
            continue

        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = deep_merge(current, value)
        elif isinstance(current, list) and isinstance(value, list):
            merged[key] = current + value
        else:
            merged[key] = value
    return merged


def load_toml(path: Path) -> dict:
    """Parse a TOML file; a missing file is an empty table."""
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except FileNotFoundError:
        return {}


class Config:
    """Merged lockbox settings plus the filesystem layout derived from them."""

    def __init__(self, root: Path | str | None = None):
        self.root = Path(root or os.environ.get("LOCKBOX_ROOT", DEFAULT_ROOT))
        self._settings = self._load()

    def _load(self) -> dict:
        with files("lockbox").joinpath("defaults.toml").open("rb") as f:
            shipped = tomllib.load(f)
        site = load_toml(self.root / "config.toml")
        return expand_vars(deep_merge(shipped, site))

    def get(self, key: str, default: Any = None) -> Any:
        """
        Look up a dotted key, e.g. config.get("monitor.check_interval_seconds").
        """
        node: Any = self._settings
        for part in key.split("."):
            if not isinstance(node, dict) or part not in node:
                return default
            node = node[part]
        return node

    def _section(self, name: str) -> dict:
        return self._settings.get(name, {})

    def _path(self, key: str) -> Path:
        """Resolve a [paths] entry; relative entries live under the root."""
        path = Path(self.get(f"paths.{key}"))
        return path if path.is_absolute() else self.root / path

    @property
    def containers_dir(self) -> Path:
        """Directory holding encrypted backing files."""
        return self._path("containers")

    @property
    def data_dir(self) -> Path:
        """Directory holding sidecar configs and lock files."""
        return self._path("data")

    @property
    def mount_root(self) -> Path:
        """Parent directory of per-container mount points."""
        return self._path("mount_root")

    @property
    def primary_name(self) -> str:
        return self.get("volume.name", "primary")

    @property
    def volume(self) -> dict:
        """The [volume] table."""
        return self._section("volume")

    @property
    def monitor(self) -> dict:
        """Inactivity monitor settings."""
        return self._section("monitor")

    @property
    def supervisor(self) -> dict:
        """Application supervisor settings."""
        return self._section("supervisor")

    @property
    def applications(self) -> list[dict]:
        """Application templates for newly created containers."""
        return self._settings.get("applications", [])

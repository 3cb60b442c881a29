"""
Volume store: where containers and their sidecar configuration live on disk.
"""

import json
import logging
import os
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .config import Config
from .errors import PartialFailure

logger = logging.getLogger(__name__)

CONTAINER_SUFFIX = ".vc"
CONFIG_SUFFIX = ".json"


@dataclass(frozen=True)
class ApplicationSpec:
    """A supervised application living inside a container."""

    name: str
    startup_command: str = ""
    shutdown_command: str = ""
    log_path: str = ""
    enabled: bool = True
    process_pattern: str = ""
    probe_url: str = ""
    install_dir: str = ""
    setup_commands: tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ApplicationSpec":
        return cls(
            name=data["name"],
            startup_command=data.get("startup_command", ""),
            shutdown_command=data.get("shutdown_command", ""),
            log_path=data.get("log_path", ""),
            enabled=bool(data.get("enabled", True)),
            process_pattern=data.get("process_pattern", ""),
            probe_url=data.get("probe_url", ""),
            install_dir=data.get("install_dir", ""),
            setup_commands=tuple(data.get("setup_commands", ())),
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["setup_commands"] = list(self.setup_commands)
        return data


@dataclass
class ContainerConfig:
    """Persisted sidecar record of a container."""

    name: str
    created: str
    applications: list[ApplicationSpec] = field(default_factory=list)
    auto_unmount_timeout_minutes: int = 15

    def __post_init__(self):
        if self.auto_unmount_timeout_minutes <= 0:
            raise ValueError("auto_unmount_timeout_minutes must be > 0")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ContainerConfig":
        return cls(
            name=data["name"],
            created=data.get("created", ""),
            applications=[ApplicationSpec.from_dict(a) for a in data.get("applications", [])],
            auto_unmount_timeout_minutes=int(data.get("auto_unmount_timeout_minutes", 15)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "created": self.created,
            "applications": [a.to_dict() for a in self.applications],
            "auto_unmount_timeout_minutes": self.auto_unmount_timeout_minutes,
        }

    def primary_application(self) -> ApplicationSpec | None:
        """First enabled application with a liveness endpoint."""
        for app in self.applications:
            if app.enabled and app.probe_url:
                return app
        return None


def _format_app(template: dict[str, Any], values: dict[str, str]) -> dict[str, Any]:
    """Fill {mount_point}/{name} placeholders in an application template."""
    result = {}
    for key, value in template.items():
        if isinstance(value, str):
            result[key] = value.format(**values)
        elif isinstance(value, list):
            result[key] = [v.format(**values) if isinstance(v, str) else v for v in value]
        else:
            result[key] = value
    return result


class VolumeStore:
    """Locates container files and their sidecar configuration."""

    def __init__(self, config: Config):
        self.config = config

    def ensure_dirs(self) -> None:
        """Create the containers, data and mount root directories."""
        for path in (self.config.containers_dir, self.config.data_dir, self.config.mount_root):
            path.mkdir(parents=True, exist_ok=True)

    def container_file(self, name: str) -> Path:
        return self.config.containers_dir / f"{name}{CONTAINER_SUFFIX}"

    def config_file(self, name: str) -> Path:
        return self.config.data_dir / f"{name}{CONFIG_SUFFIX}"

    def lock_file(self, name: str) -> Path:
        return self.config.data_dir / f"{name}.lock"

    def mount_point(self, name: str) -> Path:
        return self.config.mount_root / name

    def exists(self, name: str) -> bool:
        """Check if the encrypted backing file exists."""
        return self.container_file(name).is_file()

    def load_config(self, name: str) -> ContainerConfig | None:
        """Read the sidecar; None when missing or unreadable."""
        path = self.config_file(name)
        try:
            with open(path, encoding="utf-8") as f:
                return ContainerConfig.from_dict(json.load(f))
        except FileNotFoundError:
            return None
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning("Unreadable configuration %s: %s", path, e)
            return None

    def save_config(self, config: ContainerConfig) -> Path:
        """Write the sidecar atomically."""
        path = self.config_file(config.name)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + ".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(config.to_dict(), f, indent=2)
        os.replace(tmp, path)
        return path

    def default_config(self, name: str) -> ContainerConfig:
        """Build a new container's configuration from the configured defaults."""
        values = {"name": name, "mount_point": str(self.mount_point(name))}
        applications = [
            ApplicationSpec.from_dict(_format_app(template, values))
            for template in self.config.applications
        ]
        return ContainerConfig(
            name=name,
            created=datetime.now(timezone.utc).isoformat(),
            applications=applications,
            auto_unmount_timeout_minutes=int(self.config.get("monitor.default_timeout_minutes", 15)),
        )

    def list_names(self) -> list[str]:
        """Names of all containers, including orphaned configs left by failed creates."""
        names = set()
        for directory, suffix in (
            (self.config.containers_dir, CONTAINER_SUFFIX),
            (self.config.data_dir, CONFIG_SUFFIX),
        ):
            if not directory.is_dir():
                continue
            for item in directory.iterdir():
                if item.is_file() and item.name.endswith(suffix):
                    names.add(item.name[:-len(suffix)])
        return sorted(names)

    def remove(self, name: str) -> list[str]:
        """Delete the backing file and the sidecar.

        Both removals are always attempted; if either fails, PartialFailure is
        raised carrying the details of both.
        """
        details = []
        failures = []
        for label, path in (
            ("Container file", self.container_file(name)),
            ("Configuration", self.config_file(name)),
        ):
            try:
                path.unlink()
                logger.info("%s deleted: %s", label, path)
                details.append(f"{label} deleted")
            except FileNotFoundError:
                details.append(f"{label} not found (already deleted)")
            except OSError as e:
                logger.error("Failed to delete %s: %s", path, e)
                failures.append(f"{label}: {e}")
                details.append(f"{label} could not be deleted")
        if failures:
            raise PartialFailure("; ".join(failures), details)
        return details

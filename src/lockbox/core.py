"""
Core lockbox operations: the lifecycle of an encrypted container and the
applications running inside it.

State machine of a container:

    Nonexistent --create--> Closed --mount--> Mounted --start--> Running
    Running --stop--> Mounted --unmount--> Closed --delete--> Nonexistent
    Running --(inactivity)--> Closed

Every lifecycle operation holds the container's exclusive lock. Mount state
is always read back from the OS, never remembered between calls.
"""

import logging
import subprocess
import threading
import time
from datetime import datetime, timezone

import httpx

from .activity import ActivityMonitor, DismountHooks
from .apps import Supervisor
from .config import Config
from .crypt import CryptDriver, MappingHandle
from .errors import (
    AlreadyExists,
    AlreadyMounted,
    AlreadyOpen,
    InvalidPassword,
    LockboxError,
    NoConfig,
    NotFound,
    NotMounted,
    PartialFailure,
    ToolFailure,
)
from .mounts import MountController
from .system import ContainerLock, Runner, run_cmd, run_privileged, safe_rmtree, validate_name
from .store import VolumeStore

logger = logging.getLogger(__name__)

MiB = 1024 * 1024
GiB = 1024 * MiB


def _iso(timestamp: float | None) -> str | None:
    if timestamp is None:
        return None
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


class Lockbox:
    """Lifecycle manager for encrypted containers.

    Args:
        config: Configuration; loaded from $LOCKBOX_ROOT when omitted.
        runner: Runs privileged tools (cryptsetup, losetup, mount, ...).
        app_runner: Runs application shutdown/setup commands and pgrep/pkill.
        probe_client: httpx client used for liveness probes.
        clock, sleep, popen: Injected for tests.
    """

    def __init__(
        self,
        config: Config | None = None,
        *,
        runner: Runner = run_privileged,
        app_runner: Runner = run_cmd,
        probe_client: httpx.Client | None = None,
        clock=time.time,
        sleep=time.sleep,
        popen=subprocess.Popen,
    ):
        self.config = config or Config()
        self.store = VolumeStore(self.config)
        self._runner = runner
        volume = self.config.volume
        self._lock_timeout = float(volume.get("lock_timeout", 120))
        self._min_size_mb = int(volume.get("min_size_mb", 32))
        self.crypt = CryptDriver(
            runner,
            luks_type=volume.get("luks_type", "luks2"),
            filesystem=volume.get("filesystem", "ext4"),
        )
        self.mounts = MountController(runner)

        monitor = self.config.monitor
        self.monitor = ActivityMonitor(
            DismountHooks(
                guard=self._guard,
                stop_applications=lambda name: self._stop_applications(name, stop_monitoring=False),
                is_reachable=self.is_application_reachable,
                unmount=lambda name: self._unmount(name, stop_applications=False),
                timeout_minutes=self._timeout_minutes,
            ),
            interval=float(monitor.get("check_interval_seconds", 30)),
            default_timeout_minutes=int(monitor.get("default_timeout_minutes", 15)),
            dismount_attempts=int(monitor.get("dismount_attempts", 10)),
            dismount_delay=float(monitor.get("dismount_delay_seconds", 1.0)),
            clock=clock,
            sleep=sleep,
        )

        supervisor = self.config.supervisor
        self.supervisor = Supervisor(
            app_runner,
            self.monitor.notify,
            stop_attempts=int(supervisor.get("stop_attempts", 10)),
            stop_interval=float(supervisor.get("stop_interval_seconds", 0.5)),
            kill_settle=float(supervisor.get("kill_settle_seconds", 1.0)),
            probe_timeout=float(supervisor.get("probe_timeout_seconds", 2.0)),
            ready_poll=float(supervisor.get("ready_poll_seconds", 2.0)),
            client=probe_client,
            popen=popen,
            sleep=sleep,
        )

    def __enter__(self) -> "Lockbox":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()

    # --------------- Helpers ---------------
    def _guard(self, name: str):
        """Exclusive lifecycle lock of a container."""
        return ContainerLock(self.store.lock_file(name), timeout=self._lock_timeout).exclusive()

    def _handle(self, name: str) -> MappingHandle:
        return MappingHandle(name=name, container_file=self.store.container_file(name))

    def _is_mounted(self, name: str) -> bool:
        return self.mounts.is_mounted(self._handle(name), self.store.mount_point(name))

    def _timeout_minutes(self, name: str) -> int | None:
        config = self.store.load_config(name)
        return config.auto_unmount_timeout_minutes if config else None

    def _size_bytes(self, size_gb: float) -> int:
        """Convert a size in GB to bytes, rounded down to whole MiB."""
        size_bytes = int(float(size_gb) * GiB) // MiB * MiB
        minimum = self._min_size_mb * MiB
        if size_bytes < minimum:
            raise ValueError(f"Container size must be at least {minimum // MiB} MB")
        return size_bytes

    def _stop_applications(self, name: str, stop_monitoring: bool = True) -> list[dict]:
        """Stop applications of a container. Caller holds the lock."""
        config = self.store.load_config(name)
        results = self.supervisor.stop_all(config, self.store.mount_point(name))
        if stop_monitoring:
            self.monitor.stop_monitoring(name)
        return results

    def _unmount(self, name: str, stop_applications: bool = True) -> None:
        """Stop applications, unmount, close the mapping. Caller holds the lock."""
        if stop_applications:
            self._stop_applications(name)

        mount_point = self.store.mount_point(name)
        self.mounts.unmount(mount_point)

        handle = self.crypt.handle_for(self.store.container_file(name), name)
        self.crypt.close(handle)

    # --------------- Lifecycle ---------------
    def create_container(self, name: str, password: str, size_gb: float) -> dict:
        """Create a new encrypted container with the default configuration."""
        validate_name(name)
        if not password:
            raise ValueError("Password required")
        size_bytes = self._size_bytes(size_gb)
        self.store.ensure_dirs()

        with self._guard(name):
            container_file = self.store.container_file(name)
            if container_file.exists():
                raise AlreadyExists(f"Container {name} already exists")
            if self.store.config_file(name).exists():
                logger.warning("Replacing orphaned configuration of %s", name)

            logger.info("Creating encrypted container: %s (%sGB)", name, size_gb)
            self.crypt.create(container_file, name, password, size_bytes)

            try:
                self.store.save_config(self.store.default_config(name))
            except OSError as e:
                logger.error("Failed to write configuration of %s, removing the new container: %s", name, e)
                container_file.unlink(missing_ok=True)
                raise ToolFailure(f"Failed to write configuration of container {name}: {e}") from e
            logger.info("Configuration created for %s", name)

        return {
            "success": True,
            "message": f"Container {name} created successfully",
            "container": name,
        }

    def mount_container(self, name: str, password: str) -> dict:
        """Unlock and mount a container, provisioning applications on first mount."""
        validate_name(name)
        with self._guard(name):
            if not self.store.exists(name):
                raise NotFound(f"Container {name} does not exist")

            mount_point = self.store.mount_point(name)
            logger.info("Mounting encrypted container: %s", name)
            if self._is_mounted(name):
                raise AlreadyMounted(f"Container {name} is already mounted at {mount_point}")

            try:
                handle = self.crypt.open(self.store.container_file(name), name, password)
            except AlreadyOpen as e:
                raise ToolFailure(str(e)) from e

            try:
                self.mounts.mount(handle, mount_point)
            except LockboxError:
                try:
                    self.crypt.close(handle)
                except ToolFailure as e:
                    logger.error("Failed to close %s after mount failure: %s", handle.mapping, e)
                raise

            logger.info("Container %s mounted successfully at %s", name, mount_point)

            warnings = []
            config = self.store.load_config(name)
            if config is not None:
                try:
                    self.supervisor.provision(config, mount_point)
                except ToolFailure as e:
                    logger.error("Error setting up applications in %s: %s", name, e)
                    warnings.append(str(e))

        return {
            "success": True,
            "message": f"Container {name} mounted successfully",
            "mount_point": str(mount_point),
            "warnings": warnings,
        }

    def unmount_container(self, name: str) -> dict:
        """Stop applications and unmount. Unmounting a closed container succeeds."""
        validate_name(name)
        logger.info("Unmounting container: %s", name)
        with self._guard(name):
            self._unmount(name)
        logger.info("Container %s unmounted successfully", name)
        return {
            "success": True,
            "message": f"Container {name} unmounted successfully",
        }

    def start_applications(self, name: str) -> dict:
        """Launch the container's applications and start inactivity monitoring."""
        validate_name(name)
        with self._guard(name):
            if not self._is_mounted(name):
                raise NotMounted(f"Container {name} is not mounted")

            config = self.store.load_config(name)
            if config is None:
                raise NoConfig(f"No configuration found for container {name}")

            results = self.supervisor.start_all(config, self.store.mount_point(name))
            if any(r["success"] for r in results):
                self.monitor.start_monitoring(name)

        return {"results": results}

    def stop_applications(self, name: str) -> dict:
        """Stop the container's applications and stop monitoring."""
        validate_name(name)
        with self._guard(name):
            results = self._stop_applications(name)
        return {"results": results}

    def verify_password(self, name: str, password: str) -> bool:
        """Check a password without mounting. Never raises."""
        try:
            validate_name(name)
        except LockboxError:
            return False
        if not self.store.exists(name):
            logger.info("Password check for missing container %s", name)
            return False
        return self.crypt.verify_password(self.store.container_file(name), password)

    def delete_container(self, name: str, password: str) -> dict:
        """Remove a container and everything belonging to it.

        The password is checked first when the backing file exists; a
        container reduced to an orphaned configuration needs no password.
        Every cleanup step is attempted even if an earlier one fails.
        """
        validate_name(name)
        logger.info("Deleting container: %s", name)

        with self._guard(name):
            if self.store.exists(name):
                if not self.crypt.verify_password(self.store.container_file(name), password):
                    raise InvalidPassword("Invalid password")
            else:
                logger.info("No backing file for %s, cleaning up leftovers", name)

            details = []
            problems = []
            mount_point = self.store.mount_point(name)

            try:
                if self._is_mounted(name) or self.crypt.is_open(name):
                    self._unmount(name)
                    details.append("Container unmounted")
                else:
                    self._stop_applications(name)
                    details.append("Unmount skipped (not mounted)")
            except (LockboxError, OSError, subprocess.CalledProcessError) as e:
                logger.error("Unmount failed during deletion of %s: %s", name, e)
                details.append("Unmount failed")
                problems.append(f"unmount: {e}")

            try:
                details.extend(self.store.remove(name))
            except PartialFailure as e:
                details.extend(e.details)
                problems.append(str(e))

            try:
                if not mount_point.exists():
                    details.append("Mount point not found (already removed)")
                elif self.mounts.mounted_source(mount_point) is not None:
                    details.append("Mount point kept (still mounted)")
                    problems.append(f"{mount_point} is still mounted")
                else:
                    safe_rmtree(mount_point, self.config.mount_root, self._runner)
                    details.append("Mount point removed")
            except (LockboxError, OSError, subprocess.CalledProcessError) as e:
                logger.error("Failed to remove mount point %s: %s", mount_point, e)
                details.append("Mount point could not be removed")
                problems.append(f"mount point: {e}")

            self.monitor.stop_monitoring(name)

        result = {
            "success": True,
            "message": f"Container {name} deleted successfully",
            "details": details,
        }
        if problems:
            result["message"] = f"Container {name} cleanup completed (with issues)"
            result["warning"] = "; ".join(problems)
            logger.warning("Deletion of %s incomplete: %s", name, result["warning"])
        return result

    # --------------- Status ---------------
    def is_application_reachable(self, name: str) -> bool:
        """Probe the container's primary application."""
        config = self.store.load_config(name)
        app = config.primary_application() if config else None
        if app is None:
            return False
        return self.supervisor.is_reachable(app.probe_url)

    def wait_until_ready(self, name: str, *, timeout: float | None = None,
                         cancel: threading.Event | None = None) -> bool:
        """Block until the primary application answers (unbounded by default)."""
        config = self.store.load_config(name)
        app = config.primary_application() if config else None
        if app is None:
            raise NoConfig(f"No application with a liveness endpoint in {name}")
        return self.supervisor.wait_until_ready(app.probe_url, timeout=timeout, cancel=cancel)

    def get_status(self, name: str) -> dict:
        """Snapshot of a container. Never raises; a missing container reads as not existing."""
        status = {
            "name": name,
            "file": f"{name}.vc",
            "exists": False,
            "mounted": False,
            "mount_point": None,
            "config": None,
            "applications": [],
            "reachable": False,
            "last_activity": None,
            "minutes_inactive": None,
            "monitoring_active": False,
        }
        try:
            validate_name(name)
        except LockboxError:
            return status

        status["exists"] = self.store.exists(name)
        if status["exists"]:
            try:
                status["mounted"] = self._is_mounted(name)
            except (OSError, subprocess.SubprocessError) as e:
                logger.warning("Could not read mount state of %s: %s", name, e)
            config = self.store.load_config(name)
            if config is not None:
                status["config"] = config.to_dict()
                status["applications"] = status["config"]["applications"]

        if status["mounted"]:
            status["mount_point"] = str(self.store.mount_point(name))
        if status["config"] is not None:
            status["reachable"] = self.is_application_reachable(name)

        status["last_activity"] = _iso(self.monitor.last_activity(name))
        status["minutes_inactive"] = self.monitor.minutes_inactive(name)
        status["monitoring_active"] = self.monitor.is_monitoring(name)
        return status

    def list_containers(self) -> list[dict]:
        """Status of every container, including orphaned configurations."""
        return [self.get_status(name) for name in self.store.list_names()]

    def shutdown(self) -> None:
        """Cancel all monitoring and release resources. Applications keep running."""
        self.monitor.shutdown()
        self.supervisor.shutdown()

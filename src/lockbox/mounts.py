"""
Mount controller: mounts the decrypted device and reads the live mount table.
"""

import logging
import subprocess
from pathlib import Path

from .crypt import MappingHandle
from .errors import AlreadyMounted, MountToolFailure
from .system import Runner, run_privileged, tool_failure

logger = logging.getLogger(__name__)


class MountController:
    """Mount state is always read from the OS, never remembered."""

    def __init__(self, runner: Runner = run_privileged):
        self._run = runner

    def mounted_source(self, mount_point: Path) -> str | None:
        """Source device mounted at mount_point, or None."""
        result = self._run(["findmnt", "-rn", "-o", "SOURCE", "--mountpoint", str(mount_point)],
                           check=False, capture=True)
        if result.returncode != 0:
            return None
        lines = (result.stdout or "").strip().splitlines()
        return lines[-1].strip() if lines else None

    def is_mounted(self, handle: MappingHandle, mount_point: Path) -> bool:
        """Check if the container's mapping is mounted at mount_point."""
        return self.mounted_source(mount_point) == str(handle.device)

    def mount(self, handle: MappingHandle, mount_point: Path) -> None:
        """Mount the decrypted device at mount_point."""
        mount_point = Path(mount_point)
        mount_point.mkdir(parents=True, exist_ok=True)

        source = self.mounted_source(mount_point)
        if source is not None:
            raise AlreadyMounted(f"{mount_point} is already mounted ({source})")

        try:
            self._run(["mount", str(handle.device), str(mount_point)], capture=True)
        except (subprocess.CalledProcessError, OSError) as e:
            raise tool_failure(e, f"Failed to mount {handle.device}", MountToolFailure) from e
        logger.info("Mounted %s at %s", handle.device, mount_point)

    def unmount(self, mount_point: Path) -> None:
        """Unmount mount_point. Unmounting something not mounted is a no-op."""
        if self.mounted_source(mount_point) is None:
            logger.info("%s is not mounted", mount_point)
            return

        try:
            self._run(["umount", str(mount_point)], capture=True)
        except (subprocess.CalledProcessError, OSError) as e:
            raise tool_failure(e, f"Failed to unmount {mount_point}", MountToolFailure) from e
        logger.info("Unmounted %s", mount_point)

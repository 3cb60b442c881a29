"""
Encryption driver: LUKS volumes on loop devices via cryptsetup and losetup.

Passwords are always passed on stdin (--key-file=-), never on a command line.
"""

import logging
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path

from .errors import AlreadyExists, AlreadyOpen, WrongPassword
from .system import Runner, run_privileged, tool_failure

logger = logging.getLogger(__name__)

MAPPER_DIR = Path("/dev/mapper")

# cryptsetup exit code for "no permission (bad passphrase)"
CRYPTSETUP_EPERM = 2

_LOOP_LINE = re.compile(r"^(/dev/loop\d+):", re.MULTILINE)


def mapping_name(name: str) -> str:
    """Device-mapper name for a container."""
    return f"{name}_crypt"


@dataclass
class MappingHandle:
    """An unlocked (or to-be-closed) mapping of a container."""

    name: str
    container_file: Path
    loop_device: str | None = None

    @property
    def mapping(self) -> str:
        return mapping_name(self.name)

    @property
    def device(self) -> Path:
        return MAPPER_DIR / self.mapping


class CryptDriver:
    """Wraps cryptsetup/losetup and translates their failures into typed errors."""

    def __init__(self, runner: Runner = run_privileged, luks_type: str = "luks2",
                 filesystem: str = "ext4"):
        self._run = runner
        self.luks_type = luks_type
        self.filesystem = filesystem

    # --------------- Queries ---------------
    def is_open(self, name: str) -> bool:
        """Check if the mapping for a container is active."""
        result = self._run(["cryptsetup", "status", mapping_name(name)],
                           check=False, capture=True)
        return result.returncode == 0

    def loop_devices(self, container_file: Path) -> list[str]:
        """Loop devices currently backed by a container file."""
        result = self._run(["losetup", "-j", str(container_file)], check=False, capture=True)
        if result.returncode != 0:
            return []
        return _LOOP_LINE.findall(result.stdout or "")

    def handle_for(self, container_file: Path, name: str) -> MappingHandle:
        """Rebuild a handle for an existing mapping (e.g. after a restart)."""
        loops = self.loop_devices(container_file)
        return MappingHandle(name=name, container_file=container_file,
                             loop_device=loops[0] if loops else None)

    # --------------- Best-effort cleanup ---------------
    def _best_effort(self, what: str, func, *args) -> Exception | None:
        """Run a cleanup step; log and return its error instead of raising."""
        try:
            func(*args)
            return None
        except (subprocess.CalledProcessError, OSError) as e:
            logger.debug("Cleanup step '%s' failed: %s", what, e)
            return e

    def _close_mapping(self, name: str) -> None:
        if self.is_open(name):
            self._run(["cryptsetup", "close", mapping_name(name)], capture=True)
            logger.info("Closed mapping %s", mapping_name(name))

    def _detach(self, loop_device: str) -> None:
        self._run(["losetup", "-d", loop_device], capture=True)
        logger.info("Detached loop device %s", loop_device)

    def _detach_all(self, container_file: Path) -> None:
        for loop in self.loop_devices(container_file):
            self._best_effort(f"detach {loop}", self._detach, loop)

    def _attach(self, container_file: Path) -> str:
        result = self._run(["losetup", "-f", "--show", str(container_file)], capture=True)
        return result.stdout.strip()

    # --------------- Operations ---------------
    def create(self, container_file: Path, name: str, password: str, size_bytes: int) -> None:
        """Create a closed, formatted container of exactly size_bytes."""
        container_file = Path(container_file)
        if container_file.exists():
            raise AlreadyExists(f"Container {name} already exists")

        self._best_effort("close stale mapping", self._close_mapping, name)
        container_file.parent.mkdir(parents=True, exist_ok=True)

        step = "allocate container file"
        try:
            logger.info("Creating container file %s (%d bytes)", container_file, size_bytes)
            self._run(["dd", "if=/dev/zero", f"of={container_file}", "bs=1M",
                       f"count={size_bytes}", "iflag=count_bytes", "status=none"],
                      capture=True)

            step = "attach loop device"
            loop = self._attach(container_file)

            step = "format encrypted volume"
            logger.info("Formatting %s as %s", loop, self.luks_type)
            self._run(["cryptsetup", "luksFormat", "--type", self.luks_type,
                       "--batch-mode", "--key-file=-", loop],
                      input=password, capture=True)

            step = "open encrypted volume"
            self._run(["cryptsetup", "open", "--key-file=-", loop, mapping_name(name)],
                      input=password, capture=True)

            step = "create filesystem"
            logger.info("Creating %s filesystem", self.filesystem)
            self._run([f"mkfs.{self.filesystem}", "-q", str(MAPPER_DIR / mapping_name(name))],
                      capture=True)

            step = "close encrypted volume"
            self._run(["cryptsetup", "close", mapping_name(name)], capture=True)

            step = "detach loop device"
            self._detach(loop)
        except (subprocess.CalledProcessError, OSError) as e:
            error = tool_failure(e, f"Failed to create container ({step})")
            logger.error("%s", error)
            self._cleanup_failed_create(container_file, name)
            raise error from e

        logger.info("Encrypted container %s created", name)

    def _cleanup_failed_create(self, container_file: Path, name: str) -> None:
        """Undo a partial create: mapping, loop devices, partial file."""
        self._best_effort("close mapping", self._close_mapping, name)
        if container_file.exists():
            self._detach_all(container_file)
            error = self._best_effort("remove partial file", container_file.unlink)
            if error is None:
                logger.info("Removed partial container file %s", container_file)
            else:
                logger.error("Failed to remove partial container file %s: %s", container_file, error)

    def open(self, container_file: Path, name: str, password: str) -> MappingHandle:
        """Attach and unlock a container."""
        container_file = Path(container_file)
        self._best_effort("close stale mapping", self._close_mapping, name)
        if self.is_open(name):
            raise AlreadyOpen(f"Mapping {mapping_name(name)} is still active")

        try:
            loop = self._attach(container_file)
        except (subprocess.CalledProcessError, OSError) as e:
            raise tool_failure(e, "Failed to attach loop device") from e

        handle = MappingHandle(name=name, container_file=container_file, loop_device=loop)
        try:
            self._run(["cryptsetup", "open", "--key-file=-", loop, handle.mapping],
                      input=password, capture=True)
        except OSError as e:
            self._best_effort(f"detach {loop}", self._detach, loop)
            raise tool_failure(e, "Failed to open encrypted volume") from e
        except subprocess.CalledProcessError as e:
            self._best_effort(f"detach {loop}", self._detach, loop)
            if e.returncode == CRYPTSETUP_EPERM or "No key available" in (e.stderr or ""):
                raise WrongPassword(f"Wrong password for container {name}") from e
            raise tool_failure(e, "Failed to open encrypted volume") from e

        logger.info("Opened %s on %s", handle.mapping, loop)
        return handle

    def close(self, handle: MappingHandle) -> None:
        """Lock the volume and detach its loop devices. Closing twice is fine."""
        try:
            self._close_mapping(handle.name)
        except subprocess.CalledProcessError as e:
            raise tool_failure(e, "Failed to close encrypted volume") from e
        self._detach_all(handle.container_file)

    def verify_password(self, container_file: Path, password: str) -> bool:
        """Test a password without creating a mapping."""
        try:
            result = self._run(["cryptsetup", "open", "--test-passphrase", "--key-file=-",
                                str(container_file)],
                               check=False, capture=True, input=password)
        except OSError as e:
            logger.warning("Password check could not run: %s", e)
            return False
        return result.returncode == 0

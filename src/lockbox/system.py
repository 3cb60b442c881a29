"""
System helpers: running tools, per-container locking, name and path checks.
"""

import fcntl
import os
import re
import shutil
import subprocess
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Callable

from .errors import LockboxError, LockTimeout, ToolFailure

# Signature shared by run_cmd, run_privileged and test fakes
Runner = Callable[..., subprocess.CompletedProcess]

REQUIRED_TOOLS = [
    "cryptsetup", "losetup", "mount", "umount", "findmnt",
    "mkfs.ext4", "dd", "pgrep", "pkill", "bash",
]

_NAME = re.compile(r"^[A-Za-z0-9_-]+$")


class ContainerLock:
    """Exclusive flock() on a container's lock file.

    Each acquisition opens its own descriptor. flock() locks belong to the
    open file description, so two threads of one process exclude each other
    just like two processes do.
    """

    poll_interval = 0.1

    def __init__(self, lock_file: Path, timeout: float = 120.0):
        self.lock_file = Path(lock_file)
        self.timeout = timeout

    def _acquire(self):
        self.lock_file.parent.mkdir(parents=True, exist_ok=True)
        fd = open(self.lock_file, "w")
        deadline = time.monotonic() + self.timeout
        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                return fd
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    fd.close()
                    raise LockTimeout(
                        f"Timed out after {self.timeout:.0f}s waiting for {self.lock_file.name}: "
                        f"another operation on this container is in progress"
                    )
                time.sleep(self.poll_interval)

    @contextmanager
    def exclusive(self):
        fd = self._acquire()
        try:
            yield self
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
            fd.close()


def run_cmd(cmd: list[str], check: bool = True, capture: bool = False, **kwargs) -> subprocess.CompletedProcess:
    """Run a command. Text mode whenever output is captured or input is fed."""
    if capture:
        kwargs.setdefault("stdout", subprocess.PIPE)
        kwargs.setdefault("stderr", subprocess.PIPE)
    if capture or "input" in kwargs:
        kwargs.setdefault("text", True)
    return subprocess.run(cmd, check=check, **kwargs)


def run_privileged(cmd: list[str], **kwargs) -> subprocess.CompletedProcess:
    """Run a command as root: directly when already root, through sudo otherwise."""
    if os.geteuid() != 0:
        cmd = ["sudo"] + cmd
    return run_cmd(cmd, **kwargs)


def tool_failure(exc: Exception, what: str, error_cls=ToolFailure) -> ToolFailure:
    """Build a ToolFailure from a failed (or unstartable) command."""
    if not isinstance(exc, subprocess.CalledProcessError):
        return error_cls(f"{what}: {exc}")
    stderr = exc.stderr or ""
    if isinstance(stderr, bytes):
        stderr = stderr.decode(errors="replace")
    detail = stderr.strip() or f"exit code {exc.returncode}"
    return error_cls(f"{what}: {detail}", cmd=list(exc.cmd), stderr=stderr)


def validate_name(name: str) -> None:
    """Container names end up in paths and device-mapper names."""
    if not _NAME.match(name or ""):
        raise LockboxError(
            f"Invalid container name '{name}': use letters, digits, dashes and underscores only."
        )


def check_dependencies() -> list[str]:
    """Names of required tools missing from PATH."""
    return [tool for tool in REQUIRED_TOOLS if shutil.which(tool) is None]


# Never removed, whatever the configuration says
_PROTECTED = frozenset({
    "/", "/bin", "/boot", "/dev", "/etc", "/home", "/lib", "/lib32", "/lib64",
    "/media", "/mnt", "/opt", "/proc", "/root", "/sbin", "/srv", "/sys", "/tmp",
    "/usr", "/var",
})


def safe_rmtree(path: Path, parent: Path, runner: Runner = run_privileged) -> None:
    """Remove a leftover mount point directory.

    The resolved path must be a direct child of `parent`, at least three
    components deep, and not a protected system directory.
    """
    target = Path(path).resolve()

    if target.parent != Path(parent).resolve():
        raise LockboxError(f"Refusing to delete {target}: not a mount point under {parent}")
    if len(target.parts) < 3 or str(target) in _PROTECTED:
        raise LockboxError(f"Refusing to delete protected path {target}")

    runner(["rm", "-rf", str(target)], capture=True)

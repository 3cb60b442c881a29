from __future__ import annotations

import io
import os
import shutil
import subprocess
import sys
import threading
from pathlib import Path
from typing import Callable, Dict, List, Optional

import httpx
import pytest


def pytest_configure():
    # Make `src/` importable when the package is not installed
    root = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    src_path = os.path.join(root, "src")
    if src_path not in sys.path:
        sys.path.insert(0, src_path)


class FakeClock:
    def __init__(self, t: float = 1_700_000_000.0) -> None:
        self.t = t

    def __call__(self) -> float:  # acts like time.time
        return self.t

    def advance(self, dt: float) -> None:
        self.t += dt


class FakeProcess:
    """Stands in for subprocess.Popen of a launched application."""

    def __init__(self, system: "FakeSystem", args, cwd: Optional[str], lines: List[bytes],
                 encoding: Optional[str] = None, errors: Optional[str] = None):
        self.args = args
        self.cwd = cwd
        self.pid = 40000 + len(system.processes)
        # Decoded the way Popen(text=True, encoding=..., errors=...) decodes a pipe
        raw = b"".join(line if isinstance(line, bytes) else line.encode() for line in lines)
        self.stdout = io.TextIOWrapper(io.BytesIO(raw), encoding=encoding or "utf-8", errors=errors)
        self.stderr = io.StringIO("")
        self.returncode: Optional[int] = None
        self._exited = threading.Event()

    def poll(self) -> Optional[int]:
        return self.returncode

    def wait(self, timeout: Optional[float] = None) -> Optional[int]:
        self._exited.wait(timeout)
        return self.returncode

    def terminate(self, code: int = 0) -> None:
        self.returncode = code
        self._exited.set()


class FakeSystem:
    """
    In-memory model of the tools lockbox drives: loop devices, LUKS headers and
    mappings, the mount table, and process signatures. Callable like run_cmd.
    """

    def __init__(self) -> None:
        self.calls: List[List[str]] = []
        self.loops: Dict[str, str] = {}        # /dev/loopN -> backing file
        self.headers: Dict[str, str] = {}      # backing file -> password
        self.mappings: Dict[str, str] = {}     # mapping name -> backing file
        self.mounts: Dict[str, str] = {}       # mount point -> source device
        self.running: set[str] = set()         # process signatures
        self.processes: List[FakeProcess] = []
        self.failures: Dict[str, int] = {}     # tool or subcommand -> exit code
        self.busy: set[str] = set()            # mount points umount refuses
        self.reachable = False
        self.sleeps: List[float] = []
        self.shell: Dict[str, Callable[[Optional[str]], int]] = {}
        self.launches: Dict[str, str] = {}     # startup command -> signature
        self.output: Dict[str, list] = {}     # startup command -> stdout lines (str or bytes)
        self._next_loop = 0
        self._lock = threading.Lock()

    # --------------- helpers for tests ---------------
    def kill(self, signature: str) -> bool:
        existed = signature in self.running
        self.running.discard(signature)
        for proc in self.processes:
            if proc.returncode is None and self.launches.get(proc.args[-1]) == signature:
                proc.terminate(-9)
        return existed

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)

    def http_handler(self, request: httpx.Request) -> httpx.Response:
        if not self.reachable:
            raise httpx.ConnectError("Connection refused", request=request)
        return httpx.Response(200, text="ok")

    def popen(self, args, cwd=None, encoding=None, errors=None, **kwargs) -> FakeProcess:
        command = args[-1]
        if "popen" in self.failures:
            raise FileNotFoundError(command)
        with self._lock:
            proc = FakeProcess(self, args, cwd, self.output.get(command, []), encoding, errors)
            self.processes.append(proc)
            signature = self.launches.get(command)
            if signature:
                self.running.add(signature)
        return proc

    def tools_called(self, tool: str) -> List[List[str]]:
        return [c for c in self.calls if c and c[0] == tool]

    # --------------- runner ---------------
    def __call__(self, cmd: List[str], check: bool = True, capture: bool = False,
                 input: Optional[str] = None, cwd: Optional[str] = None, **kwargs):
        with self._lock:
            if cmd and cmd[0] == "sudo":
                cmd = cmd[1:]
            self.calls.append(list(cmd))
            code, out, err = self._dispatch(cmd, input, cwd)
        if check and code != 0:
            raise subprocess.CalledProcessError(code, cmd, output=out, stderr=err)
        return subprocess.CompletedProcess(cmd, code, out, err)

    def _dispatch(self, cmd: List[str], input: Optional[str], cwd: Optional[str]):
        tool = cmd[0]
        key = f"{tool} {cmd[1]}" if len(cmd) > 1 else tool
        for name in (key, tool):
            if name in self.failures:
                return self.failures[name], "", f"{name} failed"

        handler = getattr(self, "_" + tool.replace(".", "_").replace("-", "_"), None)
        if handler is None:
            return 127, "", f"{tool}: command not found"
        return handler(cmd[1:], input, cwd)

    def _dd(self, args, input, cwd):
        opts = dict(a.split("=", 1) for a in args if "=" in a)
        path = Path(opts["of"])
        with open(path, "wb") as f:
            f.truncate(int(opts["count"]))
        return 0, "", ""

    def _losetup(self, args, input, cwd):
        if args[0] == "-f":
            loop = f"/dev/loop{self._next_loop}"
            self._next_loop += 1
            self.loops[loop] = args[-1]
            return 0, loop + "\n", ""
        if args[0] == "-j":
            lines = [f"{loop}: []: ({f})" for loop, f in self.loops.items() if f == args[1]]
            return 0, "\n".join(lines), ""
        if args[0] == "-d":
            if self.loops.pop(args[1], None) is None:
                return 1, "", "No such device"
            return 0, "", ""
        return 1, "", "bad args"

    def _cryptsetup(self, args, input, cwd):
        action = args[0]
        if action == "luksFormat":
            self.headers[self.loops[args[-1]]] = input
            return 0, "", ""
        if action == "open" and "--test-passphrase" in args:
            path = args[-1]
            if path not in self.headers:
                return 1, "", "not a LUKS device"
            return (0, "", "") if self.headers[path] == input else (2, "", "No key available with this passphrase.")
        if action == "open":
            loop, mapping = args[-2], args[-1]
            if mapping in self.mappings:
                return 5, "", f"Device {mapping} already exists."
            if self.headers.get(self.loops.get(loop)) != input:
                return 2, "", "No key available with this passphrase."
            self.mappings[mapping] = self.loops[loop]
            return 0, "", ""
        if action == "status":
            return (0, "active", "") if args[1] in self.mappings else (4, "inactive", "")
        if action == "close":
            mapping = args[1]
            if mapping not in self.mappings:
                return 4, "", f"Device {mapping} is not active."
            if f"/dev/mapper/{mapping}" in self.mounts.values():
                return 5, "", f"Device {mapping} is still in use."
            del self.mappings[mapping]
            return 0, "", ""
        return 1, "", "bad args"

    def _mkfs_ext4(self, args, input, cwd):
        mapping = args[-1].rsplit("/", 1)[-1]
        return (0, "", "") if mapping in self.mappings else (1, "", "no such device")

    def _mount(self, args, input, cwd):
        device, mount_point = args
        mapping = device.rsplit("/", 1)[-1]
        if mapping not in self.mappings or mount_point in self.mounts:
            return 32, "", "mount failed"
        self.mounts[mount_point] = device
        return 0, "", ""

    def _umount(self, args, input, cwd):
        mount_point = args[0]
        if mount_point not in self.mounts:
            return 32, "", "not mounted"
        if mount_point in self.busy:
            return 32, "", "target is busy"
        del self.mounts[mount_point]
        return 0, "", ""

    def _findmnt(self, args, input, cwd):
        mount_point = args[-1]
        if mount_point in self.mounts:
            return 0, self.mounts[mount_point] + "\n", ""
        return 1, "", ""

    def _rm(self, args, input, cwd):
        shutil.rmtree(args[-1], ignore_errors=True)
        return 0, "", ""

    def _pgrep(self, args, input, cwd):
        return (0, "4242\n", "") if args[-1] in self.running else (1, "", "")

    def _pkill(self, args, input, cwd):
        return (0, "", "") if self.kill(args[-1]) else (1, "", "")

    def _bash(self, args, input, cwd):
        command = args[-1]
        handler = self.shell.get(command)
        if handler is None:
            return 0, "", ""
        return handler(cwd), "", ""


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_system() -> FakeSystem:
    system = FakeSystem()
    system.launches["./serve"] = "webapp-server"

    def stop(cwd):
        system.kill("webapp-server")
        return 0

    def setup(cwd):
        (Path(cwd) / "webapp").mkdir()
        return 0

    system.shell["./stop"] = stop
    system.shell["mkdir webapp"] = setup
    return system


CONFIG_TOML = """
[paths]
mount_root = "{mount_root}"

[monitor]
dismount_attempts = 3

[[applications_replace]]
name = "webapp"
startup_command = "./serve"
shutdown_command = "./stop"
process_pattern = "webapp-server"
log_path = "{{mount_point}}/webapp/access.log"
probe_url = "http://localhost:8000"
install_dir = "webapp"
setup_commands = ["mkdir webapp"]
enabled = true
"""


@pytest.fixture
def config(tmp_path):
    from lockbox.config import Config

    root = tmp_path / "root"
    root.mkdir()
    (root / "config.toml").write_text(CONFIG_TOML.format(mount_root=tmp_path / "mnt"))
    return Config(root)


@pytest.fixture
def lockbox(config, fake_system, clock):
    from lockbox.core import Lockbox

    client = httpx.Client(transport=httpx.MockTransport(fake_system.http_handler))
    box = Lockbox(
        config,
        runner=fake_system,
        app_runner=fake_system,
        probe_client=client,
        clock=clock,
        sleep=fake_system.sleep,
        popen=fake_system.popen,
    )
    yield box
    box.shutdown()
    client.close()

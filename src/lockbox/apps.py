"""
Application supervisor: starts, stops, probes and provisions the applications
that live inside a mounted container.

Applications are independent OS processes. The supervisor never waits for them
to exit; it only drains their output streams in background threads, turning
every stdout line into an activity notification.
"""

import logging
import subprocess
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

import httpx

from .store import ApplicationSpec, ContainerConfig
from .system import Runner, run_cmd, tool_failure

logger = logging.getLogger(__name__)


def app_result(app: ApplicationSpec, success: bool, message: str) -> dict:
    return {"application": app.name, "success": success, "message": message}


@dataclass
class RunningProcessHandle:
    """A launched application instance and the threads draining its output."""

    container: str
    app_name: str
    process: subprocess.Popen
    threads: list[threading.Thread] = field(default_factory=list)

    def alive(self) -> bool:
        return self.process.poll() is None


class Supervisor:
    """
    Starts and stops the configured applications of a container.

    - `on_activity(container_name)` is called for every line an application
      writes to stdout.
    - Stopping runs the shutdown command, then polls for the process
      signature (`pgrep -f`) with a bounded number of attempts before
      forcing termination (`pkill -9 -f`).
    - Liveness is an HTTP probe: any response counts as reachable.
    """

    def __init__(
        self,
        runner: Runner = run_cmd,
        on_activity: Optional[Callable[[str], None]] = None,
        *,
        stop_attempts: int = 10,
        stop_interval: float = 0.5,
        kill_settle: float = 1.0,
        probe_timeout: float = 2.0,
        ready_poll: float = 2.0,
        client: Optional[httpx.Client] = None,
        popen=subprocess.Popen,
        sleep=time.sleep,
    ) -> None:
        self._run = runner
        self._on_activity = on_activity
        self.stop_attempts = stop_attempts
        self.stop_interval = stop_interval
        self.kill_settle = kill_settle
        self.ready_poll = ready_poll
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=probe_timeout)
        self._popen = popen
        self._sleep = sleep
        self._handles: list[RunningProcessHandle] = []
        self._handles_lock = threading.Lock()

    # --------------- Output pumping ---------------
    def _pump(self, stream, container: str, app_name: str, is_stdout: bool) -> None:
        """Forward an output stream to the log until it closes."""
        with stream:
            for line in stream:
                line = line.rstrip()
                if is_stdout:
                    logger.info("%s stdout: %s", app_name, line)
                    if self._on_activity is not None:
                        self._on_activity(container)
                else:
                    logger.info("%s stderr: %s", app_name, line)

    def _watch(self, handle: RunningProcessHandle) -> None:
        code = handle.process.wait()
        logger.info("%s exited with code %s", handle.app_name, code)

    def _launch(self, container: str, app: ApplicationSpec, mount_point: Path) -> RunningProcessHandle:
        process = self._popen(
            ["bash", "-c", app.startup_command],
            cwd=str(mount_point),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            errors="replace",
            start_new_session=True,
        )
        handle = RunningProcessHandle(container=container, app_name=app.name, process=process)
        handle.threads = [
            threading.Thread(target=self._pump, args=(process.stdout, container, app.name, True),
                             name=f"{app.name}-stdout", daemon=True),
            threading.Thread(target=self._pump, args=(process.stderr, container, app.name, False),
                             name=f"{app.name}-stderr", daemon=True),
            threading.Thread(target=self._watch, args=(handle,),
                             name=f"{app.name}-watch", daemon=True),
        ]
        for thread in handle.threads:
            thread.start()
        return handle

    # --------------- Public API ---------------
    def start_all(self, config: ContainerConfig, mount_point: Path) -> list[dict]:
        """Launch every enabled application. One failure does not stop the others."""
        results = []
        for app in config.applications:
            if not (app.enabled and app.startup_command):
                continue
            logger.info("Starting %s in container %s", app.name, config.name)
            logger.debug("Running command: %s (cwd %s)", app.startup_command, mount_point)
            try:
                handle = self._launch(config.name, app, mount_point)
            except (OSError, ValueError) as e:
                logger.error("Failed to start %s: %s", app.name, e)
                results.append(app_result(app, False, f"Failed to start {app.name}: {e}"))
                continue

            with self._handles_lock:
                self._handles.append(handle)
            results.append(app_result(app, True, f"{app.name} started successfully"))
        return results

    def _signature_present(self, pattern: str) -> bool:
        result = self._run(["pgrep", "-f", pattern], check=False, capture=True)
        return result.returncode == 0

    def _wait_for_exit(self, app: ApplicationSpec) -> bool:
        """Poll for the process signature to disappear. True when gone."""
        for attempt in range(self.stop_attempts):
            if not self._signature_present(app.process_pattern):
                logger.info("%s terminated", app.name)
                return True
            logger.debug("%s still running (attempt %d/%d)", app.name,
                         attempt + 1, self.stop_attempts)
            self._sleep(self.stop_interval)
        return not self._signature_present(app.process_pattern)

    def stop_app(self, app: ApplicationSpec, mount_point: Path) -> dict:
        """Run an application's shutdown command and wait for it to terminate."""
        logger.info("Stopping %s", app.name)
        cwd = str(mount_point) if Path(mount_point).is_dir() else None
        try:
            result = self._run(["bash", "-c", app.shutdown_command], check=False,
                               capture=True, cwd=cwd)
        except OSError as e:
            return app_result(app, False, f"Failed to stop {app.name}: {e}")

        if not app.process_pattern:
            if result.returncode != 0:
                detail = (result.stderr or "").strip() or f"exit code {result.returncode}"
                return app_result(app, False, f"Failed to stop {app.name}: {detail}")
            return app_result(app, True, f"{app.name} stopped successfully")

        if result.returncode != 0:
            logger.debug("Shutdown command for %s exited with %d", app.name, result.returncode)

        if not self._wait_for_exit(app):
            logger.warning("%s didn't terminate cleanly, forcing...", app.name)
            self._run(["pkill", "-9", "-f", app.process_pattern], check=False, capture=True)
            self._sleep(self.kill_settle)
            if self._signature_present(app.process_pattern):
                return app_result(app, False, f"{app.name} is still running after forced termination")

        return app_result(app, True, f"{app.name} stopped successfully")

    def stop_all(self, config: Optional[ContainerConfig], mount_point: Path) -> list[dict]:
        """Stop every application with a shutdown command. No config means nothing to stop."""
        if config is None:
            return []

        results = [
            self.stop_app(app, mount_point)
            for app in config.applications
            if app.shutdown_command
        ]
        self._forget(config.name)
        return results

    def _forget(self, container: str) -> None:
        """Drop handles of exited processes belonging to a container."""
        with self._handles_lock:
            self._handles = [
                h for h in self._handles
                if h.container != container or h.alive()
            ]

    def running(self, container: str) -> list[RunningProcessHandle]:
        """Handles of launched processes that have not exited."""
        with self._handles_lock:
            return [h for h in self._handles if h.container == container and h.alive()]

    def provision(self, config: ContainerConfig, mount_point: Path) -> list[str]:
        """Install application assets that are missing from a freshly mounted volume.

        Returns the names of the applications that were set up.
        """
        provisioned = []
        for app in config.applications:
            if not (app.install_dir and app.setup_commands):
                continue
            if (Path(mount_point) / app.install_dir).exists():
                logger.info("%s already exists in container %s", app.name, config.name)
                continue

            logger.info("Setting up %s in container %s", app.name, config.name)
            for command in app.setup_commands:
                logger.debug("Setup: %s", command)
                try:
                    self._run(["bash", "-c", command], cwd=str(mount_point), capture=True)
                except (subprocess.CalledProcessError, OSError) as e:
                    raise tool_failure(e, f"Failed to set up {app.name}") from e
            provisioned.append(app.name)
            logger.info("%s setup completed in container %s", app.name, config.name)
        return provisioned

    def is_reachable(self, probe_url: str) -> bool:
        """Any HTTP response within the timeout means the application is up."""
        if not probe_url:
            return False
        try:
            self._client.get(probe_url)
            return True
        except (httpx.HTTPError, httpx.InvalidURL):
            return False

    def wait_until_ready(
        self,
        probe_url: str,
        *,
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
        clock=time.monotonic,
    ) -> bool:
        """Block until the application answers.

        First-time setup can take arbitrarily long, so there is no bound unless
        the caller passes a timeout or a cancel event. Returns False when
        cancelled or timed out.
        """
        start = clock()
        while True:
            if self.is_reachable(probe_url):
                return True
            if timeout is not None and clock() - start >= timeout:
                return False
            if cancel is not None:
                if cancel.wait(self.ready_poll):
                    return False
            else:
                self._sleep(self.ready_poll)

    def shutdown(self) -> None:
        """Release the probe client. Launched applications keep running."""
        with self._handles_lock:
            self._handles.clear()
        if self._owns_client:
            self._client.close()

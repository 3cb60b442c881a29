"""
Activity monitor: inactivity tracking and the auto-dismount sequence.

Per container the monitor is either idle (no record) or monitoring (a
repeating check is scheduled and a last-activity timestamp is kept). State
lives in memory only and is lost on restart.
"""

import logging
import queue
import threading
import time
from contextlib import AbstractContextManager
from dataclasses import dataclass
from typing import Callable, Optional

logger = logging.getLogger(__name__)


@dataclass
class DismountHooks:
    """Operations the auto-dismount sequence needs from the lifecycle manager.

    `guard` returns the container's lifecycle lock; the other hooks run while
    it is held and must not take it again.
    """

    guard: Callable[[str], AbstractContextManager]
    stop_applications: Callable[[str], list]
    is_reachable: Callable[[str], bool]
    unmount: Callable[[str], None]
    timeout_minutes: Callable[[str], Optional[int]]


class _RepeatingCheck(threading.Thread):
    """Calls `callback` every `interval` seconds until cancelled."""

    def __init__(self, interval: float, callback: Callable[[], None], name: str):
        super().__init__(name=name, daemon=True)
        self.interval = interval
        self._callback = callback
        self._stopped = threading.Event()

    def run(self) -> None:
        while not self._stopped.wait(self.interval):
            try:
                self._callback()
            except Exception:
                logger.exception("Inactivity check failed")

    def cancel(self) -> None:
        # No join: the check may be waiting on the lock held by our caller
        self._stopped.set()

    @property
    def cancelled(self) -> bool:
        return self._stopped.is_set()


class ActivityMonitor:
    """
    Tracks the last observed activity per container and dismounts containers
    that stay silent for longer than their configured timeout.

    Activity arrives either directly (`record_activity`) or through
    `channel`, a queue fed by `notify()` from output reader threads. The
    queue is drained under the monitor lock before every read.
    """

    def __init__(
        self,
        hooks: Optional[DismountHooks] = None,
        *,
        interval: float = 30.0,
        default_timeout_minutes: int = 15,
        dismount_attempts: int = 10,
        dismount_delay: float = 1.0,
        clock=time.time,
        sleep=time.sleep,
    ) -> None:
        self.hooks = hooks
        self.interval = interval
        self.default_timeout_minutes = default_timeout_minutes
        self.dismount_attempts = dismount_attempts
        self.dismount_delay = dismount_delay
        self._clock = clock
        self._sleep = sleep
        self.channel: "queue.Queue[tuple[str, float]]" = queue.Queue()
        self._lock = threading.Lock()
        self._last: dict[str, float] = {}
        self._schedules: dict[str, _RepeatingCheck] = {}

    # --------------- Recording ---------------
    def notify(self, name: str) -> None:
        """Queue an activity event; safe to call from any thread.

        Events for containers that are not monitored are dropped.
        """
        with self._lock:
            if name not in self._schedules:
                return
        self.channel.put((name, self._clock()))

    def _drain(self) -> None:
        """Apply queued events. Caller holds self._lock."""
        while True:
            try:
                name, at = self.channel.get_nowait()
            except queue.Empty:
                return
            # Late output from an application that is being stopped must not
            # resurrect a deleted record
            if name in self._schedules:
                self._last[name] = max(at, self._last.get(name, at))

    def record_activity(self, name: str) -> None:
        """Reset the inactivity clock of a monitored container to now."""
        with self._lock:
            self._drain()
            if name not in self._schedules:
                logger.debug("Ignoring activity for unmonitored %s", name)
                return
            self._last[name] = self._clock()
        logger.debug("Activity recorded for %s", name)

    # --------------- Scheduling ---------------
    def start_monitoring(self, name: str) -> None:
        """(Re)schedule the repeating inactivity check and record initial activity."""
        check = _RepeatingCheck(self.interval, lambda: self.check_inactivity(name),
                                name=f"inactivity-{name}")
        with self._lock:
            previous = self._schedules.pop(name, None)
            if previous is not None:
                previous.cancel()
            self._drain()
            self._schedules[name] = check
            self._last[name] = self._clock()
        check.start()
        logger.info("Started activity monitoring for %s (check every %ss)", name, self.interval)

    def stop_monitoring(self, name: str) -> None:
        """Cancel the check and forget the container's activity record."""
        with self._lock:
            self._drain()
            check = self._schedules.pop(name, None)
            self._last.pop(name, None)
        if check is not None:
            check.cancel()
            logger.info("Stopped activity monitoring for %s", name)

    def shutdown(self) -> None:
        """Cancel every schedule and clear all records."""
        with self._lock:
            checks = list(self._schedules.values())
            self._schedules.clear()
            self._last.clear()
        for check in checks:
            check.cancel()
        if checks:
            logger.info("Activity monitoring shut down (%d cancelled)", len(checks))

    # --------------- Queries ---------------
    def is_monitoring(self, name: str) -> bool:
        with self._lock:
            return name in self._schedules

    def last_activity(self, name: str) -> Optional[float]:
        with self._lock:
            self._drain()
            return self._last.get(name)

    def minutes_inactive(self, name: str) -> Optional[int]:
        last = self.last_activity(name)
        if last is None:
            return None
        return int((self._clock() - last) // 60)

    def _timeout_for(self, name: str) -> float:
        """Configured timeout in minutes, falling back to the default."""
        timeout = None
        if self.hooks is not None:
            try:
                timeout = self.hooks.timeout_minutes(name)
            except Exception as e:
                logger.warning("Could not read configuration of %s, using default timeout: %s", name, e)
        return timeout or self.default_timeout_minutes

    def _stale(self, name: str, timeout_minutes: float) -> bool:
        last = self.last_activity(name)
        if last is None:
            return False
        return (self._clock() - last) / 60 >= timeout_minutes

    # --------------- Inactivity check ---------------
    def check_inactivity(self, name: str) -> bool:
        """Dismount the container if it has been inactive for too long.

        Returns True when an auto-dismount completed. Failures are logged and
        retried at the next scheduled check.
        """
        last = self.last_activity(name)
        if last is None:
            logger.debug("No activity recorded for %s", name)
            return False

        timeout = self._timeout_for(name)
        inactive = (self._clock() - last) / 60
        logger.debug("Container %s inactive for %d minutes (timeout: %s minutes)",
                     name, inactive, timeout)
        if inactive < timeout:
            return False

        if self.hooks is None:
            logger.warning("Container %s is inactive but no dismount hooks are attached", name)
            return False

        logger.info("Auto-dismounting %s due to inactivity (%dmin >= %smin)", name, inactive, timeout)
        try:
            with self.hooks.guard(name):
                # Activity or a manual stop may have happened while we waited for the lock
                if not self._stale(name, timeout):
                    logger.info("Auto-dismount of %s cancelled: activity resumed", name)
                    return False
                self._dismount(name)
        except Exception:
            logger.exception("Error during auto-dismount of %s", name)
            return False

        logger.info("Successfully auto-dismounted %s", name)
        return True

    def _dismount(self, name: str) -> None:
        """stop applications -> confirm they are gone -> unmount -> stop monitoring."""
        logger.info("Auto-dismount: stopping applications of %s", name)
        self.hooks.stop_applications(name)

        logger.info("Auto-dismount: waiting for applications to terminate")
        for attempt in range(1, self.dismount_attempts + 1):
            self._sleep(self.dismount_delay)
            try:
                running = self.hooks.is_reachable(name)
            except Exception as e:
                logger.info("Auto-dismount: status check failed, assuming stopped: %s", e)
                break
            logger.debug("Auto-dismount: attempt %d/%d, running: %s",
                         attempt, self.dismount_attempts, running)
            if not running:
                logger.info("Auto-dismount: applications confirmed stopped")
                break
        else:
            logger.warning("Auto-dismount: applications may still be running, unmounting anyway")

        logger.info("Auto-dismount: unmounting %s", name)
        self.hooks.unmount(name)
        self.stop_monitoring(name)

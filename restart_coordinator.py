"""
Safe restart coordination.

    idle ──request()──▶ requested ──safe cycle──▶ committed (terminal)
      ▲                    │
      └─────cancel()───────┘

``request``/``cancel`` arrive from the HTTP control thread; ``maybe_commit``
runs on the evaluation loop. The flags are only touched under ``_lock``.
"""

import logging
import sys
import threading
from typing import Callable, Iterable, List, Optional

log = logging.getLogger("round_monitor.restart")

DEFAULT_RESTART_TIME_BUFFER = 180


def default_processes(token: str) -> List[str]:
    return [f"{token}-forger", f"{token}-relay", f"{token}-core"]


def is_safe(
    monitoring_any: bool,
    forging: Iterable,
    forge_time_remaining: float,
    round_time_remaining: float,
    buffer: float,
) -> bool:
    """Restart-safety predicate.

    Monitoring nothing is always safe. Otherwise no monitored delegate may
    forge within *buffer* seconds and the round may not end within *buffer*
    seconds. *forge_time_remaining* is the earliest monitored forging time,
    capped at the round time remaining.
    """
    if not monitoring_any:
        return True
    forging = list(forging)
    return ((not forging or forge_time_remaining >= buffer)
            and round_time_remaining >= buffer)


def _exit_process() -> None:
    sys.exit(0)


class RestartCoordinator:
    def __init__(
        self,
        process_control,
        restart_time_buffer: float = DEFAULT_RESTART_TIME_BUFFER,
        processes: Optional[List[str]] = None,
        command: Optional[str] = None,
        terminate: Callable[[], None] = _exit_process,
    ):
        self.process_control = process_control
        self.restart_time_buffer = restart_time_buffer
        self.processes = list(processes) if processes is not None else default_processes("ark")
        self.command = command
        self._terminate = terminate
        self._lock = threading.Lock()
        self._requested = False
        self._active = False

    @property
    def requested(self) -> bool:
        with self._lock:
            return self._requested

    @property
    def active(self) -> bool:
        with self._lock:
            return self._active

    @property
    def state(self) -> str:
        with self._lock:
            if self._active:
                return "committed"
            return "requested" if self._requested else "idle"

    def request(self) -> bool:
        """Return False when a restart is already requested."""
        with self._lock:
            if self._requested or self._active:
                return False
            self._requested = True
        log.info("Safe restart requested")
        return True

    def cancel(self) -> bool:
        """Return False when there is nothing pending to cancel."""
        with self._lock:
            if not self._requested or self._active:
                return False
            self._requested = False
        log.info("Safe restart cancelled")
        return True

    def maybe_commit(
        self,
        monitoring_any: bool,
        forging: Iterable,
        forge_time_remaining: float,
        round_time_remaining: float,
    ) -> bool:
        """Commit and restart if requested and safe. Returns True on commit
        (only observable when ``terminate`` returns)."""
        with self._lock:
            if not self._requested or self._active:
                return False
            if not is_safe(monitoring_any, forging, forge_time_remaining,
                           round_time_remaining, self.restart_time_buffer):
                return False
            self._active = True
        self._restart()
        return True

    def _restart(self) -> None:
        log.info("Round Monitor is safely restarting the node now")
        if self.command:
            self.process_control.run_command(self.command)
        else:
            for name in self.processes:
                if not self.process_control.is_running(name):
                    log.debug("%s is not running, not restarting it", name)
                    continue
                if not self.process_control.restart(name):
                    log.warning("restart of %s abandoned", name)
        self._terminate()

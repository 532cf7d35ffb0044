"""
Process control backends used to restart the node.

Each backend answers ``is_running(name)`` and ``restart(name)``; every backend
can also run a single user-supplied restart command. Calls never raise: the
outcome is reported as a bool and logged.
"""

import json
import logging
import re
import subprocess
import time
from datetime import datetime

log = logging.getLogger("round_monitor.process_control")


# ── Command runner ────────────────────────────────────────────────────────────

def _strip_ansi(s: str) -> str:
    """Remove ANSI/VT100 escape sequences from command output."""
    return re.sub("\x1b[^a-zA-Z]*[a-zA-Z]|\r", "", s)


def run_cmd(cmd: str, timeout: int = 60) -> dict:
    """Run a shell command, return {ok, stdout, stderr, returncode, duration_ms}."""
    t0 = time.time()
    try:
        result = subprocess.run(
            cmd, shell=True, capture_output=True, text=True, timeout=timeout
        )
        return {
            "ok":           result.returncode == 0,
            "stdout":       _strip_ansi(result.stdout).strip(),
            "stderr":       _strip_ansi(result.stderr).strip(),
            "returncode":   result.returncode,
            "duration_ms":  int((time.time() - t0) * 1000),
            "cmd":          cmd,
            "ts":           datetime.now().isoformat(),
        }
    except subprocess.TimeoutExpired:
        return {
            "ok": False, "stdout": "", "returncode": -1,
            "stderr": f"timeout after {timeout}s", "duration_ms": timeout * 1000,
            "cmd": cmd, "ts": datetime.now().isoformat(),
        }
    except OSError as exc:
        return {
            "ok": False, "stdout": "", "returncode": -1,
            "stderr": str(exc), "duration_ms": 0,
            "cmd": cmd, "ts": datetime.now().isoformat(),
        }


# ── Backends ──────────────────────────────────────────────────────────────────

class ProcessControl:
    """Base backend: only knows how to run a command."""

    def __init__(self, timeout: int = 60):
        self.timeout = timeout

    def is_running(self, name: str) -> bool:
        raise NotImplementedError

    def restart(self, name: str) -> bool:
        raise NotImplementedError

    def run_command(self, command: str) -> bool:
        result = run_cmd(command, timeout=self.timeout)
        if not result["ok"]:
            log.warning("restart command failed (%s): %s", result["returncode"], result["stderr"])
        return result["ok"]


class Pm2ProcessControl(ProcessControl):
    """Processes managed by pm2; status is read from ``pm2 jlist``."""

    def _list(self) -> list:
        result = run_cmd("pm2 jlist", timeout=self.timeout)
        if not result["ok"] or not result["stdout"]:
            return []
        # pm2 may print banner lines before the JSON document.
        try:
            processes = json.loads(result["stdout"].splitlines()[-1])
        except ValueError:
            log.debug("pm2 jlist returned non-JSON output")
            return []
        return processes if isinstance(processes, list) else []

    def is_running(self, name: str) -> bool:
        for proc in self._list():
            if isinstance(proc, dict) and proc.get("name") == name:
                return (proc.get("pm2_env") or {}).get("status") == "online"
        return False

    def restart(self, name: str) -> bool:
        result = run_cmd(f"pm2 restart {name} --update-env", timeout=self.timeout)
        if not result["ok"]:
            log.warning("pm2 restart %s failed: %s", name, result["stderr"])
        return result["ok"]


class SystemdProcessControl(ProcessControl):
    """Processes run as systemd units."""

    def is_running(self, name: str) -> bool:
        return run_cmd(f"systemctl is-active --quiet {name}", timeout=self.timeout)["ok"]

    def restart(self, name: str) -> bool:
        result = run_cmd(f"systemctl restart {name}", timeout=self.timeout)
        if not result["ok"]:
            log.warning("systemctl restart %s failed: %s", name, result["stderr"])
        return result["ok"]


_BACKENDS = {
    "pm2":     Pm2ProcessControl,
    "systemd": SystemdProcessControl,
}


def create_process_control(backend: str, timeout: int = 60) -> ProcessControl:
    try:
        return _BACKENDS[backend](timeout=timeout)
    except KeyError:
        raise ValueError(f"unknown process control backend {backend!r} "
                         f"(expected one of {', '.join(sorted(_BACKENDS))})") from None

#!/usr/bin/env python3
"""
Round Monitor – control server and entry point.

Watches the forging rounds of a node, logs one status line per slot and
restarts the node on request once no monitored delegate is about to forge.

Run: round-monitor [--config PATH]

Control API (loopback by default):
    POST /restart   request a safe restart   202 | 403 already requested
    POST /cancel    cancel it                200 | 403 nothing pending
    GET  /status    round, slot, delegates, restart state
"""

import argparse
import logging
import re
import signal
import sys
import threading
from typing import Callable, Optional

from flask import Flask, current_app, jsonify
from werkzeug.serving import make_server

from block_events import create_event_source
from monitor_config import collect_secrets, load_config, log_level
from node_client import NodeApi, NodeChainState, NodeDirectory
from process_control import create_process_control
from restart_coordinator import RestartCoordinator, default_processes
from round_monitor import RoundMonitor
from status_reporter import StatusReporter

log = logging.getLogger("round_monitor.server")


# ── Logging / output setup ───────────────────────────────────────────────────

class _CompactFormatter(logging.Formatter):
    """Strip the redundant [DD/Mon/YYYY HH:MM:SS] date Werkzeug embeds in its messages."""
    _DATE_PAT = re.compile(r' - - \[[\d/A-Za-z: ]+\]')

    def format(self, record):
        msg = super().format(record)
        return self._DATE_PAT.sub("", msg)


def setup_logging(level: int = logging.INFO) -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(fmt="%(asctime)s  %(message)s", datefmt="%H:%M:%S"))
    root = logging.getLogger("round_monitor")
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)
    root.propagate = False

    wz_logger = logging.getLogger("werkzeug")
    wz_logger.handlers.clear()
    wz_handler = logging.StreamHandler()
    wz_handler.setFormatter(_CompactFormatter(fmt="%(asctime)s  %(message)s", datefmt="%H:%M:%S"))
    wz_logger.addHandler(wz_handler)
    wz_logger.propagate = False


# ── Routes ────────────────────────────────────────────────────────────────────

def _forbidden(message: str):
    return jsonify({"statusCode": 403, "error": "Forbidden", "message": message}), 403


def restart():
    if current_app.config["ROUND_MONITOR"].coordinator.request():
        return jsonify({"success": True, "message": "Safe restart requested successfully"}), 202
    return _forbidden("Safe restart already requested")


def cancel():
    if current_app.config["ROUND_MONITOR"].coordinator.cancel():
        return jsonify({"success": True, "message": "Safe restart cancelled successfully"}), 200
    return _forbidden("No safe restart was requested")


def status():
    return jsonify(current_app.config["ROUND_MONITOR"].snapshot())


ROUTES = {
    "/restart": (restart, ["POST"]),
    "/cancel":  (cancel,  ["POST"]),
    "/status":  (status,  ["GET"]),
}


def create_app(monitor: RoundMonitor) -> Flask:
    app = Flask("round_monitor")
    app.config["ROUND_MONITOR"] = monitor
    for path, (handler, methods) in ROUTES.items():
        app.add_url_rule(path, handler.__name__, handler, methods=methods)
    return app


# ── Server ────────────────────────────────────────────────────────────────────

def _fatal(message: str) -> None:
    log.error(message)
    sys.exit(1)


class ControlServer:
    """Threaded WSGI server for the control API. Failing to start or stop is fatal."""

    def __init__(self, name: str, host: str, port: int, app: Flask,
                 terminate: Callable[[str], None] = _fatal):
        self.name = name
        self.host = host
        self.port = int(port)
        self.app = app
        self._terminate = terminate
        self._server = None
        self._thread: Optional[threading.Thread] = None

    @property
    def uri(self) -> str:
        return f"http://{self.host}:{self.port}"

    def boot(self) -> None:
        try:
            # werkzeug exits on bind errors instead of raising
            self._server = make_server(self.host, self.port, self.app, threaded=True)
        except (OSError, SystemExit):
            self._terminate(f"Failed to start {self.name}!")
            return
        self._thread = threading.Thread(target=self._server.serve_forever, daemon=True, name="control-server")
        self._thread.start()
        log.info("%s started at %s", self.name, self.uri)

    def dispose(self) -> None:
        if self._server is None:
            return
        try:
            self._server.shutdown()
            self._server.server_close()
        except OSError:
            self._terminate(f"Failed to stop {self.name}!")
            return
        self._server = None
        log.info("%s stopped at %s", self.name, self.uri)


# ── Main ──────────────────────────────────────────────────────────────────────

def build_monitor(cfg: dict, api: NodeApi) -> RoundMonitor:
    """Assemble the monitor and its collaborators from a loaded config."""
    chain = NodeChainState(api)
    directory = NodeDirectory(api)

    restart_cfg = cfg["restart"]
    coordinator = RestartCoordinator(
        create_process_control(restart_cfg["backend"], timeout=int(restart_cfg["timeout"])),
        restart_time_buffer=float(cfg["restartTimeBuffer"]),
        processes=restart_cfg["processes"] or default_processes(restart_cfg["token"]),
        command=restart_cfg["command"] or None,
    )
    reporter = StatusReporter(
        ansi=bool(cfg["ansi"]),
        show_next_forgers=cfg["showNextForgers"],
        show_round_time=bool(cfg["showRoundTime"]),
    )
    monitor = RoundMonitor(
        chain, directory, coordinator, reporter,
        show_forging_order=bool(cfg["showForgingOrder"]),
        log_level=log_level(cfg),
    )
    monitor.register(cfg.get("delegate"), collect_secrets(cfg))
    return monitor


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(prog="round-monitor",
                                     description="Forging round monitor with safe node restarts")
    parser.add_argument("--config", help="path to the JSON config file")
    args = parser.parse_args(argv)

    setup_logging()
    cfg = load_config(args.config)
    logging.getLogger("round_monitor").setLevel(min(logging.INFO, log_level(cfg)))
    if not cfg.get("enabled"):
        log.info("Round Monitor is disabled")
        return 0

    api = NodeApi(cfg["node"]["apiUrl"], timeout=float(cfg["node"]["timeout"]))
    monitor = build_monitor(cfg, api)
    events = create_event_source(cfg["events"], monitor.chain)
    server = ControlServer("Round Monitor server", cfg["server"]["host"], cfg["server"]["port"],
                           create_app(monitor))

    signal.signal(signal.SIGTERM, lambda signum, frame: monitor.stop())

    server.boot()
    try:
        monitor.boot()
        events.start(monitor.on_block_applied)
        monitor.run()
    except KeyboardInterrupt:
        log.info("Round Monitor shutting down (KeyboardInterrupt)")
    finally:
        events.stop()
        monitor.dispose()
        server.dispose()
        api.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())

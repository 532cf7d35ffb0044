"""
Round Monitor configuration.

Stored as JSON (default ~/.round_monitor_config.json, overridable with
ROUND_MONITOR_CONFIG). Stored values win over the defaults; nested sections
are merged key by key so a partial section keeps the remaining defaults.
"""

import json
import logging
import os
from pathlib import Path
from typing import List, Optional

from identities import load_encrypted_secrets

log = logging.getLogger("round_monitor.config")

CONFIG_PATH = os.path.expanduser("~/.round_monitor_config.json")
SECRETS_PASSWORD_ENV = "ROUND_MONITOR_SECRETS_PASSWORD"

_LOG_LEVELS = {
    "error": logging.ERROR,
    "warn":  logging.WARNING,
    "info":  logging.INFO,
    "debug": logging.DEBUG,
}


def _default_port() -> int:
    try:
        return int(os.environ.get("CORE_P2P_PORT", "")) + 1000
    except ValueError:
        return 4001 + 1000


def config_defaults() -> dict:
    return {
        "enabled":           True,
        "server": {
            "host":          "127.0.0.1",
            "port":          _default_port(),
        },
        "restartTimeBuffer": 180,
        "showForgingOrder":  True,
        "showNextForgers":   3,
        "showRoundTime":     True,
        "ansi":              True,
        "logLevel":          "info",
        "delegate":          [],
        "secrets":           [],
        "delegatesFile":     "",     # JSON file with {"secrets": [...]}
        "secretsFile":       "",     # Fernet-encrypted JSON list of secrets
        "node": {
            "apiUrl":        "http://127.0.0.1:4003",
            "timeout":       10,
        },
        "events": {
            "source":        "poll",   # poll | websocket
            "pollInterval":  1.0,
            "wsUrl":         "",
            "subscribeUrl":  "",
            "sessionHeader": "",       # required with subscribeUrl
        },
        "restart": {
            "backend":       "pm2",    # pm2 | systemd
            "token":         os.environ.get("CORE_TOKEN", "ark"),
            "processes":     [],       # empty: <token>-forger, <token>-relay, <token>-core
            "command":       "",       # when set, run this instead of restarting processes
            "timeout":       60,
        },
    }


def _merge(defaults: dict, stored: dict) -> dict:
    merged = dict(defaults)
    for key, value in stored.items():
        if isinstance(defaults.get(key), dict) and isinstance(value, dict):
            merged[key] = _merge(defaults[key], value)
        else:
            merged[key] = value
    return merged


def load_config(path: Optional[str] = None) -> dict:
    """Load and merge the config file; a missing or unreadable file yields the defaults."""
    path = path or os.environ.get("ROUND_MONITOR_CONFIG") or CONFIG_PATH
    stored = {}
    if os.path.exists(path):
        try:
            with open(path) as f:
                stored = json.load(f)
        except (OSError, ValueError) as e:
            log.warning("[config] could not read %s: %s — using defaults", path, e)
            stored = {}
    if not isinstance(stored, dict):
        log.warning("[config] %s is not a JSON object — using defaults", path)
        stored = {}
    return _merge(config_defaults(), stored)


def save_config(data: dict, path: Optional[str] = None) -> None:
    path = path or os.environ.get("ROUND_MONITOR_CONFIG") or CONFIG_PATH
    with open(path, "w") as f:
        json.dump(_merge(config_defaults(), data), f, indent=2)
    os.chmod(path, 0o600)


def log_level(cfg: dict) -> int:
    """Level for the status line; anything unknown falls back to info."""
    return _LOG_LEVELS.get(str(cfg.get("logLevel", "info")).lower(), logging.INFO)


def _as_list(value) -> list:
    if isinstance(value, str):
        return [value] if value else []
    return list(value) if isinstance(value, (list, tuple)) else []


def collect_secrets(cfg: dict) -> List[str]:
    """Forging secrets from the config itself, a delegates file and an encrypted secrets file."""
    secrets = [s for s in _as_list(cfg.get("secrets")) if isinstance(s, str)]

    delegates_file = cfg.get("delegatesFile")
    if delegates_file:
        try:
            with open(os.path.expanduser(delegates_file)) as f:
                data = json.load(f)
            secrets.extend(s for s in _as_list(data.get("secrets")) if isinstance(s, str))
        except (OSError, ValueError, AttributeError) as e:
            log.warning("[config] could not read delegates file %s: %s", delegates_file, e)

    secrets_file = cfg.get("secretsFile")
    if secrets_file:
        password = os.environ.get(SECRETS_PASSWORD_ENV, "")
        if not password:
            log.warning("[config] %s is not set — skipping %s", SECRETS_PASSWORD_ENV, secrets_file)
        else:
            decrypted = load_encrypted_secrets(Path(os.path.expanduser(secrets_file)), password)
            if decrypted is None:
                log.warning("[config] could not decrypt %s (wrong password?)", secrets_file)
            else:
                secrets.extend(decrypted)
    return secrets

"""Configuration management for bibremote.

Loads remote preferences from ~/.config/bibremote/config.cfg, falling back to
a legacy .env file next to it.
Provides RemotePreferences (port, enabled flag, timeout, identifier).
"""

import configparser
from dataclasses import dataclass
import os
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import dotenv_values

from bibremote.remote.connection import DEFAULT_TIMEOUT, LOOPBACK_HOST
from bibremote.remote.protocol import APP_IDENTIFIER

CONFIG_PATH = Path.home() / ".config" / "bibremote" / "config.cfg"
ENV_PATH = CONFIG_PATH.parent / ".env"

DEFAULT_PORT = 6050


@dataclass(frozen=True)
class RemotePreferences:
    port: int = DEFAULT_PORT
    use_remote_server: bool = True
    timeout: float = DEFAULT_TIMEOUT
    identifier: str = APP_IDENTIFIER
    # Never configurable: the protocol trusts only same-machine peers.
    host: str = LOOPBACK_HOST


def load_raw_config(path: Path = CONFIG_PATH, env_path: Path = ENV_PATH) -> Dict[str, str]:
    """
    Load configuration values from the standard config path.
    Values are returned with lowercase keys for convenience.
    """
    data: Dict[str, str] = {}

    if path.exists():
        cfg = configparser.ConfigParser(interpolation=None)
        cfg.read(path)
        if "DEFAULT" in cfg:
            data.update({k.lower(): v for k, v in cfg["DEFAULT"].items()})
        return data

    if env_path.exists():
        data.update(
            {k.lower(): v for k, v in dotenv_values(env_path).items() if v is not None}
        )

    return data


def _get_bool(raw: Dict[str, Any], key: str, default: bool = False) -> bool:
    value = raw.get(key)
    if isinstance(value, bool):
        return value
    if value is None or str(value).strip() == "":
        return default
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


def parse_port(value: Any) -> int:
    """
    Parse a TCP port number.

    Raises:
        ValueError: If value is not an integer in 1..65535
    """
    try:
        port = int(str(value).strip())
    except ValueError:
        raise ValueError(f"Remote port must be a number, got {value!r}") from None
    if not 1 <= port <= 65535:
        raise ValueError(f"Remote port must be between 1 and 65535, got {port}")
    return port


def _parse_timeout(value: Any) -> float:
    try:
        timeout = float(str(value).strip())
    except ValueError:
        raise ValueError(f"Remote timeout must be a number, got {value!r}") from None
    if timeout <= 0:
        raise ValueError(f"Remote timeout must be positive, got {timeout}")
    return timeout


def get_remote_preferences(raw: Optional[Dict[str, str]] = None) -> RemotePreferences:
    """
    Build RemotePreferences from raw configuration values.

    BIBREMOTE_PORT and BIBREMOTE_TIMEOUT_S environment variables win over
    file values. Raises ValueError on invalid values.
    """
    if raw is None:
        raw = load_raw_config()

    port_env = os.environ.get("BIBREMOTE_PORT")
    if port_env is not None and port_env.strip() != "":
        port = parse_port(port_env)
    else:
        port = parse_port(raw.get("remote_port", DEFAULT_PORT) or DEFAULT_PORT)

    timeout_env = os.environ.get("BIBREMOTE_TIMEOUT_S")
    if timeout_env is not None and timeout_env.strip() != "":
        timeout = _parse_timeout(timeout_env)
    else:
        timeout = _parse_timeout(raw.get("remote_timeout", DEFAULT_TIMEOUT) or DEFAULT_TIMEOUT)

    identifier = (raw.get("remote_identifier") or APP_IDENTIFIER).strip()
    if not identifier:
        raise ValueError("Remote identifier must not be empty.")

    return RemotePreferences(
        port=port,
        use_remote_server=_get_bool(raw, "use_remote_server", True),
        timeout=timeout,
        identifier=identifier,
    )


def save_remote_preferences(
    preferences: RemotePreferences, path: Path = CONFIG_PATH
) -> None:
    """Write preferences to the config file, keeping unrelated keys."""
    cfg = configparser.ConfigParser(interpolation=None)
    if path.exists():
        cfg.read(path)

    cfg["DEFAULT"]["REMOTE_PORT"] = str(preferences.port)
    cfg["DEFAULT"]["USE_REMOTE_SERVER"] = "true" if preferences.use_remote_server else "false"
    cfg["DEFAULT"]["REMOTE_TIMEOUT"] = f"{preferences.timeout:g}"
    cfg["DEFAULT"]["REMOTE_IDENTIFIER"] = preferences.identifier

    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as handle:
        cfg.write(handle)

"""
Configuration constants for fync
"""
import os
from pathlib import Path
from typing import Optional

# ══════════════════════════════════════════════════════════════════════════════
#  DEFAULTS  ── overridden by YAML config or apply_profile()
# ══════════════════════════════════════════════════════════════════════════════

PROTOCOL_VERSION = 1

# Where PersistedState records and root locks live; FYNC_STATE_DIR wins.
STATE_DIR: Optional[Path] = None

# Bytes per FileDataChunk message
CHUNK_SIZE = 256 * 1024

# Frames larger than this are treated as a malformed stream
MAX_FRAME_SIZE = 64 * 1024 * 1024

# Hashing worker pool; None → os.cpu_count()
WORKERS: Optional[int] = None

# Seconds to wait for the next frame before declaring the transport dead
RECEIVE_TIMEOUT = 300.0

# Remote transport
SSH_BACKEND = "openssh"          # "openssh" (spawned client) or "paramiko"
SSH_COMMAND = ["ssh"]
REMOTE_COMMAND = "fync"          # how the far end invokes us
SSH_PORT: Optional[int] = None
SSH_USER: Optional[str] = None
SSH_KEY_PATH: Optional[str] = None
SSH_PASSWORD: Optional[str] = None  # paramiko backend only

# Retry settings (connection setup only)
RETRY_MAX = 5
RETRY_BASE_DELAY = 2.0  # seconds; doubles each attempt

# Watch mode
WATCH_INTERVAL = 30.0   # full-rescan timer fallback
DEBOUNCE = 0.5          # quiet period after the last notification


# ══════════════════════════════════════════════════════════════════════════════
#  DYNAMIC PATHS  ── computed at call time
# ══════════════════════════════════════════════════════════════════════════════

def get_state_dir() -> Path:
    """Return the PersistedState directory, creating it if needed."""
    env = os.environ.get("FYNC_STATE_DIR", "")
    if env:
        d = Path(env)
    elif STATE_DIR is not None:
        d = Path(STATE_DIR)
    else:
        xdg = os.environ.get("XDG_STATE_HOME", "")
        d = (Path(xdg) if xdg else Path.home() / ".local" / "state") / "fync"
    d = d.expanduser()
    d.mkdir(parents=True, exist_ok=True)
    return d


# ══════════════════════════════════════════════════════════════════════════════
#  GLOBAL CONFIG FILE  ── $XDG_CONFIG_HOME/fync/config.yaml
# ══════════════════════════════════════════════════════════════════════════════

def get_global_config_dir() -> Path:
    """Return the global config directory for fync."""
    xdg = os.environ.get("XDG_CONFIG_HOME", "")
    if xdg:
        return Path(xdg) / "fync"
    if os.name == "nt":
        appdata = os.environ.get("APPDATA", "")
        if appdata:
            return Path(appdata) / "fync"
    return Path.home() / ".config" / "fync"


def load_config_file(path: Path) -> dict:
    """Parse a fync YAML config file and return its contents as a dict."""
    import yaml

    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: expected a mapping at the top level")
    return data


def load_global_config() -> dict:
    """Load global config; an absent file is an empty config."""
    cfg_path = get_global_config_dir() / "config.yaml"
    if not cfg_path.is_file():
        return {}
    return load_config_file(cfg_path)


def get_profile(data: dict, profile_name: Optional[str] = None) -> dict:
    """
    Extract a named profile (usually a remote host) from a config dict.
    Returns the top-level defaults merged with the profile, or the defaults
    alone when no profile has that name.
    """
    defaults = data.get("defaults", {}) or {}
    merged = dict(defaults)
    if profile_name:
        profiles = data.get("profiles", []) or []
        profile = next((p for p in profiles if p.get("name") == profile_name), None)
        if profile is not None:
            merged.update(profile)
    return merged


# ══════════════════════════════════════════════════════════════════════════════
#  APPLY PROFILE  ── mutates module-level variables
# ══════════════════════════════════════════════════════════════════════════════

def apply_profile(profile: dict):
    """
    Apply a profile dict to the module-level config variables.
    Supports keys: state_dir, chunk_size, workers, receive_timeout,
                   ssh_backend, ssh_command, remote_command, port, user,
                   ssh_key, ssh_password, retry_max, retry_base_delay,
                   watch_interval, debounce.
    """
    global STATE_DIR, CHUNK_SIZE, WORKERS, RECEIVE_TIMEOUT
    global SSH_BACKEND, SSH_COMMAND, REMOTE_COMMAND, SSH_PORT, SSH_USER, SSH_KEY_PATH, SSH_PASSWORD
    global RETRY_MAX, RETRY_BASE_DELAY, WATCH_INTERVAL, DEBOUNCE

    if "state_dir" in profile:
        STATE_DIR = Path(profile["state_dir"]).expanduser() if profile["state_dir"] else None
    if "chunk_size" in profile:
        CHUNK_SIZE = int(profile["chunk_size"])
        if CHUNK_SIZE <= 0:
            raise ValueError("chunk_size must be positive")
    if "workers" in profile:
        WORKERS = int(profile["workers"]) if profile["workers"] else None
    if "receive_timeout" in profile:
        RECEIVE_TIMEOUT = float(profile["receive_timeout"])
    if "ssh_backend" in profile:
        backend = str(profile["ssh_backend"])
        if backend not in ("openssh", "paramiko"):
            raise ValueError(f"unknown ssh_backend: {backend!r}")
        SSH_BACKEND = backend
    if "ssh_command" in profile:
        cmd = profile["ssh_command"]
        SSH_COMMAND = [str(c) for c in cmd] if isinstance(cmd, list) else str(cmd).split()
    if "remote_command" in profile:
        REMOTE_COMMAND = str(profile["remote_command"])
    if "port" in profile:
        SSH_PORT = int(profile["port"]) if profile["port"] else None
    if "user" in profile:
        SSH_USER = str(profile["user"]) if profile["user"] else None
    elif "username" in profile:
        SSH_USER = str(profile["username"]) if profile["username"] else None
    if "ssh_key" in profile:
        SSH_KEY_PATH = str(profile["ssh_key"]) if profile["ssh_key"] else None
    if "ssh_password" in profile:
        SSH_PASSWORD = str(profile["ssh_password"]) if profile["ssh_password"] else None
    if "retry_max" in profile:
        RETRY_MAX = max(1, int(profile["retry_max"]))
    if "retry_base_delay" in profile:
        RETRY_BASE_DELAY = float(profile["retry_base_delay"])
    if "watch_interval" in profile:
        WATCH_INTERVAL = float(profile["watch_interval"])
    if "debounce" in profile:
        DEBOUNCE = float(profile["debounce"])

"""
Logging utilities for fync
"""
import sys
import threading
from datetime import datetime

_verbose = False
_stream = None
_lock = threading.Lock()


def set_verbose(verbose: bool):
    """Set the verbose flag"""
    global _verbose
    _verbose = verbose


def set_stream(stream):
    """
    Redirect log output (default: stdout).
    run-stdio sends everything to stderr because stdout carries protocol frames.
    """
    global _stream
    _stream = stream


def log(msg: str):
    """Log a message with timestamp"""
    ts = datetime.now().strftime("%H:%M:%S")
    # the two sessions of a local sync log from separate threads
    with _lock:
        print(f"[{ts}] {msg}", file=_stream or sys.stdout, flush=True)


def vlog(msg: str):
    """Log a verbose message (only if verbose mode is enabled)"""
    if _verbose:
        log(msg)


def warn(msg: str):
    """Log a warning message"""
    log(f"⚠  {msg}")

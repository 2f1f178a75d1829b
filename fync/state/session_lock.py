"""
One session per root: an exclusive PID lock file in the state directory
"""
import hashlib
import os
from pathlib import Path
from .. import config as _cfg
from ..core.errors import SessionBusyError
from ..utils.logging import vlog, warn


def get_lock_file(root: str) -> Path:
    key = hashlib.sha256(root.encode("utf-8", "surrogateescape")).hexdigest()[:24]
    return _cfg.get_state_dir() / f"{key}.lock"


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class RootLock:
    """
    with RootLock(root): ...

    The lock file holds the owner's PID. A lock whose owner no longer
    exists is broken; anything else raises SessionBusyError.
    """

    def __init__(self, root: str):
        self.root = root
        self.path = get_lock_file(root)
        self.held = False

    def acquire(self):
        for _ in range(2):
            try:
                fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                if self._break_stale():
                    continue
                raise SessionBusyError(f"another sync of {self.root} is in progress")
            with os.fdopen(fd, "w") as f:
                f.write(f"{os.getpid()}\n")
            self.held = True
            vlog(f"[lock] acquired {self.path.name}")
            return
        raise SessionBusyError(f"could not lock {self.root}")

    def _break_stale(self) -> bool:
        try:
            text = self.path.read_text("utf-8").strip()
        except FileNotFoundError:
            return True  # released meanwhile
        except OSError:
            text = ""
        if not text:
            return False  # owner has not written its PID yet
        try:
            pid = int(text)
        except ValueError:
            pid = 0
        if pid > 0 and _pid_alive(pid):
            return False
        warn(f"[lock] breaking stale lock of {self.root} (pid {pid or '?'})")
        self.path.unlink(missing_ok=True)
        return True

    def release(self):
        if self.held:
            self.path.unlink(missing_ok=True)
            self.held = False

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, *exc):
        self.release()

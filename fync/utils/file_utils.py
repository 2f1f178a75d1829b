"""
File utilities (content hashing, change detection, path helpers)
"""
import hashlib
import os
import uuid
from pathlib import Path, PurePosixPath
from typing import Optional
from .ignore_patterns import STAGING_DIR, TMP_SUFFIX

BLOCK_SIZE = 65536


def new_hasher():
    """Content digest used everywhere a hash is compared across peers."""
    return hashlib.blake2b(digest_size=32)


def hash_file(path: Path) -> str:
    """Compute the content hash of a local file"""
    h = new_hasher()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(BLOCK_SIZE), b""):
            h.update(chunk)
    return h.hexdigest()


def _file_changed(new_mtime_ns: int, new_size: int,
                  old_mtime_ns: Optional[int], old_size: Optional[int]) -> bool:
    """True if the file is different from what we last recorded."""
    if old_mtime_ns is None:
        return True
    return new_mtime_ns != old_mtime_ns or new_size != old_size


def rel_to_path(root: Path, rel: str) -> Path:
    """Join a slash-normalized relative path onto a root."""
    parts = PurePosixPath(rel).parts
    if not parts or rel.startswith("/") or ".." in parts:
        raise ValueError(f"refusing unsafe relative path: {rel!r}")
    return root.joinpath(*parts)


def parent_of(rel: str) -> str:
    """Parent of a relative path, '' for top-level entries."""
    parent = PurePosixPath(rel).parent.as_posix()
    return "" if parent == "." else parent


def depth(rel: str) -> int:
    return rel.count("/")


def fsync_dir(path: Path):
    """Flush a directory entry after a rename (no-op where unsupported)."""
    try:
        fd = os.open(str(path), os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        pass
    finally:
        os.close(fd)


def temp_sibling(full: Path) -> Path:
    """Hidden temporary name next to `full`, matched by the exclusion policy."""
    return full.with_name(f".{full.name}.{uuid.uuid4().hex[:12]}{TMP_SUFFIX}")


def staging_path(root: Path) -> Path:
    """Fresh temporary name inside the root's staging directory."""
    area = root / STAGING_DIR
    area.mkdir(exist_ok=True)
    return area / f"{uuid.uuid4().hex}{TMP_SUFFIX}"


def clear_staging(root: Path):
    """Remove the staging directory once nothing is left in it."""
    try:
        (root / STAGING_DIR).rmdir()
    except OSError:
        pass

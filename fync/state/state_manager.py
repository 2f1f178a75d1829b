"""
PersistedState management: the last snapshot both peers agreed on
"""
import hashlib
import json
import os
from pathlib import Path
from typing import List, Optional
from .. import config as _cfg
from ..core.models import ConflictRecord, FileEntry, Snapshot, empty_snapshot
from ..utils.logging import vlog, warn

STATE_VERSION = 1


def record_key(root: str, peer: str) -> str:
    """File stem of the record for one (local root, peer) pair."""
    return hashlib.sha256(f"{root}\0{peer}".encode("utf-8", "surrogateescape")).hexdigest()[:24]


def get_state_file(root: str, peer: str) -> Path:
    return _cfg.get_state_dir() / f"{record_key(root, peer)}.json"


def get_conflicts_file(root: str, peer: str) -> Path:
    return _cfg.get_state_dir() / f"{record_key(root, peer)}.conflicts.json"


def _write_atomic(path: Path, text: str):
    """Temp file + fsync + rename: readers see the old or the new file, never half."""
    tmp = path.with_name(f".{path.name}.{os.getpid()}.tmp")
    with open(tmp, "w", encoding="utf-8", errors="surrogateescape") as f:
        f.write(text)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp, path)


def _read_json(path: Path) -> dict:
    with open(path, "r", encoding="utf-8", errors="surrogateescape") as f:
        return json.load(f)


def snapshot_from_record(data: dict) -> Snapshot:
    entries = {p: FileEntry.from_dict(p, e) for p, e in data.get("entries", {}).items()}
    return Snapshot(root=data.get("root", ""), generation=int(data.get("generation", 0)),
                    entries=entries)


def load_state(root: str, peer: str) -> Snapshot:
    """
    The stored ancestor for (root, peer); an empty generation-0 snapshot
    when there is none. An unreadable record counts as absent, which only
    makes the next session more conservative.
    """
    path = get_state_file(root, peer)
    if not path.exists():
        vlog(f"[state] no record for peer {peer}")
        return empty_snapshot(root)
    try:
        data = _read_json(path)
        if data.get("version") != STATE_VERSION:
            raise ValueError(f"unsupported record version {data.get('version')!r}")
        snap = snapshot_from_record(data)
    except (OSError, ValueError, KeyError, TypeError) as exc:
        warn(f"[state] ignoring unreadable record {path.name}: {exc}")
        return empty_snapshot(root)
    vlog(f"[state] loaded generation {snap.generation} ({len(snap)} entries)")
    return snap


def save_state(root: str, peer: str, snapshot: Snapshot):
    """Replace the record for (root, peer) atomically."""
    data = {
        "version": STATE_VERSION,
        "root": root,
        "peer": peer,
        "generation": snapshot.generation,
        "digest": snapshot.digest(),
        "entries": {p: e.to_dict() for p, e in snapshot.entries.items()},
    }
    _write_atomic(get_state_file(root, peer), json.dumps(data, indent=1, sort_keys=True))
    vlog(f"[state] saved generation {snapshot.generation} ({len(snapshot)} entries)")


def save_conflicts(root: str, peer: str, conflicts: List[ConflictRecord]):
    """Keep the last session's conflicts for `fync status`; none → no file."""
    path = get_conflicts_file(root, peer)
    if not conflicts:
        path.unlink(missing_ok=True)
        return
    _write_atomic(path, json.dumps({"conflicts": [c.to_dict() for c in conflicts]}, indent=1))


def load_conflicts(root: str, peer: str) -> list:
    path = get_conflicts_file(root, peer)
    if not path.exists():
        return []
    try:
        return list(_read_json(path).get("conflicts", []))
    except (OSError, ValueError) as exc:
        warn(f"[state] ignoring unreadable conflict report {path.name}: {exc}")
        return []


def list_records(root: Optional[str] = None) -> List[dict]:
    """Raw records in the state directory, optionally only those for `root`."""
    records = []
    for path in sorted(_cfg.get_state_dir().glob("*.json")):
        if path.name.endswith(".conflicts.json"):
            continue
        try:
            data = _read_json(path)
        except (OSError, ValueError):
            continue
        if not isinstance(data, dict) or (root is not None and data.get("root") != root):
            continue
        records.append(data)
    return records

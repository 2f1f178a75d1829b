"""
Session messages and their wire encoding.

The message set is closed: every frame decodes to exactly one of the
dataclasses below or fails with ProtocolError. Payloads are UTF-8 JSON with
file data carried as base64.
"""
import base64
import binascii
import json
from dataclasses import dataclass, field
from typing import Optional, Tuple, Union
from .errors import ProtocolError
from .models import ChangeSet, FileChange


@dataclass(frozen=True)
class Hello:
    version: int
    role: str           # "alpha" (initiator) or "beta"
    peer: str           # identifies the sender's root; keys PersistedState
    read_only: bool = False


@dataclass(frozen=True)
class SnapshotSummary:
    generation: int
    digest: str
    count: int


@dataclass(frozen=True)
class ChangeSetMsg:
    changes: ChangeSet


@dataclass(frozen=True)
class FileDataChunk:
    path: str
    offset: int
    data: bytes


@dataclass(frozen=True)
class Ack:
    path: str
    ok: bool = True
    detail: str = ""


@dataclass(frozen=True)
class Error:
    kind: str           # "io" (per path, non-fatal), "protocol", "transport", "busy", "internal"
    detail: str
    path: Optional[str] = None


@dataclass(frozen=True)
class Done:
    phase: str          # "transfer" or "commit"
    failed: Tuple[str, ...] = field(default_factory=tuple)


SessionMessage = Union[Hello, SnapshotSummary, ChangeSetMsg, FileDataChunk, Ack, Error, Done]


def encode(msg: SessionMessage) -> bytes:
    """Serialize one message into a frame payload."""
    if isinstance(msg, Hello):
        body = {"t": "hello", "version": msg.version, "role": msg.role,
                "peer": msg.peer, "read_only": msg.read_only}
    elif isinstance(msg, SnapshotSummary):
        body = {"t": "summary", "generation": msg.generation,
                "digest": msg.digest, "count": msg.count}
    elif isinstance(msg, ChangeSetMsg):
        body = {"t": "changes", "changes": [c.to_dict() for c in msg.changes]}
    elif isinstance(msg, FileDataChunk):
        body = {"t": "chunk", "path": msg.path, "offset": msg.offset,
                "data": base64.b64encode(msg.data).decode("ascii")}
    elif isinstance(msg, Ack):
        body = {"t": "ack", "path": msg.path, "ok": msg.ok, "detail": msg.detail}
    elif isinstance(msg, Error):
        body = {"t": "error", "kind": msg.kind, "detail": msg.detail, "path": msg.path}
    elif isinstance(msg, Done):
        body = {"t": "done", "phase": msg.phase, "failed": list(msg.failed)}
    else:
        raise TypeError(f"not a session message: {msg!r}")
    return json.dumps(body, separators=(",", ":")).encode("utf-8", "surrogateescape")


def decode(payload: bytes) -> SessionMessage:
    """Parse a frame payload; anything unexpected is a ProtocolError."""
    try:
        body = json.loads(payload.decode("utf-8", "surrogateescape"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise ProtocolError(f"malformed frame: {exc}") from exc
    if not isinstance(body, dict):
        raise ProtocolError("malformed frame: payload is not an object")

    tag = body.get("t")
    try:
        if tag == "hello":
            return Hello(version=int(body["version"]), role=str(body["role"]),
                         peer=str(body["peer"]), read_only=bool(body.get("read_only", False)))
        if tag == "summary":
            return SnapshotSummary(generation=int(body["generation"]),
                                   digest=str(body["digest"]), count=int(body["count"]))
        if tag == "changes":
            return ChangeSetMsg(changes=tuple(FileChange.from_dict(c) for c in body["changes"]))
        if tag == "chunk":
            return FileDataChunk(path=str(body["path"]), offset=int(body["offset"]),
                                 data=base64.b64decode(body["data"], validate=True))
        if tag == "ack":
            return Ack(path=str(body["path"]), ok=bool(body.get("ok", True)),
                       detail=str(body.get("detail", "")))
        if tag == "error":
            return Error(kind=str(body["kind"]), detail=str(body.get("detail", "")),
                         path=body.get("path"))
        if tag == "done":
            return Done(phase=str(body["phase"]), failed=tuple(str(p) for p in body.get("failed", [])))
    except (KeyError, TypeError, ValueError, binascii.Error) as exc:
        raise ProtocolError(f"malformed {tag} message: {exc}") from exc
    raise ProtocolError(f"unknown message type: {tag!r}")

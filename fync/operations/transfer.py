"""
File content transfer: chunked sending and verified staging on receipt
"""
import os
from pathlib import Path
from typing import Callable, Dict, Iterable, Optional
from .. import config as _cfg
from ..core.errors import ProtocolError, SyncIOError
from ..core.messages import Ack, Error, FileDataChunk
from ..core.models import ApplyInstruction, EntryKind, FileEntry
from ..utils.logging import log, vlog, warn
from ..utils.file_utils import new_hasher, rel_to_path, staging_path, temp_sibling


def send_file(send: Callable, root: Path, entry: FileEntry,
              between_chunks: Optional[Callable] = None) -> bool:
    """
    Stream one file as FileDataChunk messages, back-to-back.
    `between_chunks` runs after every chunk so the caller can drain
    incoming traffic. A file that cannot be read, or no longer has the
    scanned size, is reported to the peer as a per-path Error and the
    function returns False.
    """
    full = rel_to_path(root, entry.path)
    offset = 0
    remaining = entry.size
    try:
        with open(full, "rb") as f:
            while True:
                want = min(_cfg.CHUNK_SIZE, remaining)
                data = f.read(want)
                if len(data) < want or (remaining == len(data) and f.read(1)):
                    raise SyncIOError(entry.path, "size changed while sending")
                send(FileDataChunk(path=entry.path, offset=offset, data=data))
                offset += len(data)
                remaining -= len(data)
                if between_chunks is not None:
                    between_chunks()
                if remaining == 0:
                    break
    except OSError as exc:
        detail = exc.strerror or str(exc)
    except SyncIOError as exc:
        detail = exc.detail
    else:
        vlog(f"  [push] {entry.path} ({offset} bytes)")
        return True
    warn(f"[push] cannot send {entry.path}: {detail}")
    send(Error(kind="io", detail=detail, path=entry.path))
    return False


class _Incoming:
    """Staging state of one file being received."""

    def __init__(self, entry: FileEntry, temp: Path):
        self.entry = entry
        self.temp = temp
        self.received = 0
        self.hasher = new_hasher()
        self.handle = open(temp, "wb")

    def close(self):
        if not self.handle.closed:
            self.handle.close()


class ChunkReceiver:
    """
    Collects FileDataChunks for the WRITE instructions this side expects.
    Each file lands under a temporary name; once its last byte arrives the
    size and hash are checked and an Ack is produced. Verified files wait
    in `staged` until the apply step promotes them.
    """

    def __init__(self, root: Path, expected: Iterable[ApplyInstruction]):
        self.root = Path(root)
        self.expected: Dict[str, FileEntry] = {i.path: i.entry for i in expected}
        self.staged: Dict[str, Path] = {}
        self.failed: Dict[str, str] = {}
        self._open: Dict[str, _Incoming] = {}

    @property
    def pending(self) -> set:
        """Paths neither staged nor failed yet."""
        return set(self.expected) - set(self.staged) - set(self.failed)

    def _temp_for(self, rel: str) -> Path:
        full = rel_to_path(self.root, rel)
        if full.parent.is_dir() and not full.parent.is_symlink():
            return temp_sibling(full)
        # parent is created (or replaces a file) during apply
        return staging_path(self.root)

    def _fail(self, rel: str, detail: str) -> Ack:
        inc = self._open.pop(rel, None)
        if inc is not None:
            inc.close()
            inc.temp.unlink(missing_ok=True)
        self.failed[rel] = detail
        warn(f"[pull] {rel}: {detail}")
        return Ack(path=rel, ok=False, detail=detail)

    def on_chunk(self, chunk: FileDataChunk) -> Optional[Ack]:
        """Consume one chunk; returns the Ack once the file is complete."""
        entry = self.expected.get(chunk.path)
        if entry is None or entry.kind != EntryKind.FILE:
            raise ProtocolError(f"unexpected file data for {chunk.path!r}")
        if chunk.path in self.failed:
            return None  # rest of a file we already gave up on
        if chunk.path in self.staged:
            raise ProtocolError(f"file data for {chunk.path!r} after it was complete")

        inc = self._open.get(chunk.path)
        if inc is None:
            if chunk.offset != 0:
                raise ProtocolError(f"{chunk.path!r}: first chunk at offset {chunk.offset}")
            try:
                inc = _Incoming(entry, self._temp_for(chunk.path))
            except OSError as exc:
                return self._fail(chunk.path, f"cannot stage: {exc.strerror or exc}")
            self._open[chunk.path] = inc
        elif chunk.offset != inc.received:
            raise ProtocolError(f"{chunk.path!r}: chunk at offset {chunk.offset}, "
                                f"expected {inc.received}")

        if inc.received + len(chunk.data) > entry.size:
            raise ProtocolError(f"{chunk.path!r}: more data than announced")
        try:
            inc.handle.write(chunk.data)
        except OSError as exc:
            return self._fail(chunk.path, f"write failed: {exc.strerror or exc}")
        inc.hasher.update(chunk.data)
        inc.received += len(chunk.data)
        if inc.received < entry.size:
            return None
        return self._finish(chunk.path, inc)

    def _finish(self, rel: str, inc: _Incoming) -> Ack:
        try:
            inc.handle.flush()
            os.fsync(inc.handle.fileno())
        except OSError as exc:
            return self._fail(rel, f"flush failed: {exc.strerror or exc}")
        inc.close()
        if inc.hasher.hexdigest() != inc.entry.content_hash:
            return self._fail(rel, "content hash mismatch (file changed while sending?)")
        del self._open[rel]
        self.staged[rel] = inc.temp
        vlog(f"  [pull] {rel} staged ({inc.received} bytes)")
        return Ack(path=rel)

    def on_error(self, err: Error):
        """The sender could not read this path."""
        if err.path in self.expected and err.path not in self.failed:
            self._fail(err.path, f"peer could not read it: {err.detail}")

    def discard(self):
        """Remove every temporary this receiver created."""
        for inc in self._open.values():
            inc.close()
            inc.temp.unlink(missing_ok=True)
        self._open.clear()
        for temp in self.staged.values():
            temp.unlink(missing_ok=True)
        if self.staged:
            log(f"  [pull] discarded {len(self.staged)} staged file(s)")
        self.staged.clear()

"""
Transports: duplex, ordered, reliable payload delivery between two peers.

Every transport offers the same capability set:

    send(payload: bytes)        deliver one payload or raise TransportError
    receive() -> bytes          next payload; TransportError on EOF/timeout
    poll() -> Optional[bytes]   next payload if one is already waiting
    close()                     end our direction; the peer sees EOF

Byte-stream backends frame each payload as a 4-byte big-endian length
followed by the payload, so short reads or writes never desynchronize the
stream.
"""
import abc
import queue
import shlex
import struct
import subprocess
import threading
from typing import Callable, List, Optional
from .. import config as _cfg
from ..utils.logging import log, vlog
from .errors import ProtocolError, TransportError

HEADER = struct.Struct(">I")

_FRAME = "frame"
_EOF = "eof"
_FAIL = "fail"


class Transport(abc.ABC):
    """Capability interface; implementations share no state."""

    @abc.abstractmethod
    def send(self, payload: bytes):
        ...

    @abc.abstractmethod
    def receive(self) -> bytes:
        ...

    @abc.abstractmethod
    def poll(self) -> Optional[bytes]:
        ...

    @abc.abstractmethod
    def close(self):
        ...

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


# ── framing ──────────────────────────────────────────────────────────────────

def write_frame(writer, payload: bytes):
    if len(payload) > _cfg.MAX_FRAME_SIZE:
        raise ProtocolError(f"frame of {len(payload)} bytes exceeds limit {_cfg.MAX_FRAME_SIZE}")
    data = HEADER.pack(len(payload)) + payload
    # unbuffered pipes may take only part of a write
    while data:
        written = writer.write(data)
        if written is None or written >= len(data):
            break
        data = data[written:]
    writer.flush()


def _read_exact(reader, n: int) -> bytes:
    buf = bytearray()
    while len(buf) < n:
        chunk = reader.read(n - len(buf))
        if not chunk:
            break
        buf += chunk
    return bytes(buf)


def read_frame(reader) -> Optional[bytes]:
    """One payload, or None on a clean EOF between frames."""
    header = _read_exact(reader, HEADER.size)
    if not header:
        return None
    if len(header) < HEADER.size:
        raise TransportError("stream ended in the middle of a frame header")
    (length,) = HEADER.unpack(header)
    if length > _cfg.MAX_FRAME_SIZE:
        raise ProtocolError(f"frame length {length} exceeds limit {_cfg.MAX_FRAME_SIZE}")
    payload = _read_exact(reader, length)
    if len(payload) < length:
        raise TransportError(f"stream ended in the middle of a frame ({len(payload)}/{length} bytes)")
    return payload


def _take(inbox: "queue.Queue", block: bool, describe_eof: Callable[[], str]) -> Optional[bytes]:
    """Pop the next event from an inbox; EOF and failures stay queued."""
    try:
        if block:
            timeout = _cfg.RECEIVE_TIMEOUT if _cfg.RECEIVE_TIMEOUT and _cfg.RECEIVE_TIMEOUT > 0 else None
            kind, value = inbox.get(timeout=timeout)
        else:
            kind, value = inbox.get_nowait()
    except queue.Empty:
        if block:
            raise TransportError(f"no data from peer within {_cfg.RECEIVE_TIMEOUT:.0f}s")
        return None
    if kind == _FRAME:
        return value
    inbox.put((kind, value))  # every later receive fails the same way
    if kind == _EOF:
        raise TransportError(describe_eof())
    raise value


# ── in-process pair ──────────────────────────────────────────────────────────

class LocalTransport(Transport):
    """
    One end of an in-process channel pair. Payloads are still serialized
    messages, so local and remote syncs run the very same protocol code.
    """

    def __init__(self, inbox: "queue.Queue", outbox: "queue.Queue", name: str):
        self._inbox = inbox
        self._outbox = outbox
        self._name = name
        self._closed = False

    @classmethod
    def pair(cls):
        a_to_b: queue.Queue = queue.Queue()
        b_to_a: queue.Queue = queue.Queue()
        return cls(b_to_a, a_to_b, "alpha"), cls(a_to_b, b_to_a, "beta")

    def send(self, payload: bytes):
        if self._closed:
            raise TransportError(f"{self._name}: transport already closed")
        if len(payload) > _cfg.MAX_FRAME_SIZE:
            raise ProtocolError(f"frame of {len(payload)} bytes exceeds limit {_cfg.MAX_FRAME_SIZE}")
        self._outbox.put((_FRAME, bytes(payload)))

    def receive(self) -> bytes:
        return _take(self._inbox, True, lambda: "peer closed the channel")

    def poll(self) -> Optional[bytes]:
        return _take(self._inbox, False, lambda: "peer closed the channel")

    def close(self):
        if not self._closed:
            self._closed = True
            self._outbox.put((_EOF, None))


# ── framed byte stream ───────────────────────────────────────────────────────

class StreamTransport(Transport):
    """
    Framing over a pair of binary file objects (stdin/stdout, pipes, SSH
    channels). A reader thread drains incoming frames into a queue so both
    peers may write at the same time without filling each other's pipe.
    """

    def __init__(self, reader, writer, name: str = "peer",
                 describe_eof: Optional[Callable[[], str]] = None):
        self._reader = reader
        self._writer = writer
        self._name = name
        self._describe_eof = describe_eof or (lambda: f"{name} closed the stream")
        self._inbox: queue.Queue = queue.Queue()
        self._send_lock = threading.Lock()
        self._closed = False
        self._thread = threading.Thread(target=self._pump, name=f"fync-recv-{name}", daemon=True)
        self._thread.start()

    def _pump(self):
        try:
            while True:
                payload = read_frame(self._reader)
                if payload is None:
                    self._inbox.put((_EOF, None))
                    return
                self._inbox.put((_FRAME, payload))
        except (TransportError, ProtocolError) as exc:
            self._inbox.put((_FAIL, exc))
        except (OSError, ValueError) as exc:
            self._inbox.put((_FAIL, TransportError(f"read from {self._name} failed: {exc}")))

    def send(self, payload: bytes):
        with self._send_lock:
            if self._closed:
                raise TransportError(f"{self._name}: transport already closed")
            try:
                write_frame(self._writer, payload)
            except (OSError, ValueError) as exc:
                raise TransportError(f"write to {self._name} failed: {exc}") from exc

    def receive(self) -> bytes:
        return _take(self._inbox, True, self._describe_eof)

    def poll(self) -> Optional[bytes]:
        return _take(self._inbox, False, self._describe_eof)

    def close(self):
        with self._send_lock:
            if self._closed:
                return
            self._closed = True
            try:
                self._writer.close()
            except (OSError, ValueError):
                pass


# ── spawned process (ssh … fync run-stdio) ───────────────────────────────────

def ssh_command(host: str, remote_root: str, read_only: bool = False) -> List[str]:
    """argv for the external secure-shell client running our peer remotely."""
    argv = list(_cfg.SSH_COMMAND)
    if _cfg.SSH_PORT:
        argv += ["-p", str(_cfg.SSH_PORT)]
    if _cfg.SSH_USER:
        argv += ["-l", _cfg.SSH_USER]
    if _cfg.SSH_KEY_PATH:
        argv += ["-i", _cfg.SSH_KEY_PATH]
    argv.append(host)
    argv.append(remote_command(remote_root, read_only))
    return argv


def remote_command(remote_root: str, read_only: bool = False) -> str:
    cmd = f"{_cfg.REMOTE_COMMAND} run-stdio {shlex.quote(remote_root)}"
    return cmd + " -o" if read_only else cmd


class ProcessTransport(Transport):
    """
    Frames over a child process's stdin/stdout; its stderr is diagnostic
    text and goes to the log, never into the protocol.
    """

    def __init__(self, argv: List[str], env: Optional[dict] = None, name: str = "remote"):
        self._name = name
        vlog(f"[transport] spawning: {' '.join(shlex.quote(a) for a in argv)}")
        try:
            self._proc = subprocess.Popen(argv, stdin=subprocess.PIPE, stdout=subprocess.PIPE,
                                          stderr=subprocess.PIPE, bufsize=0, env=env)
        except OSError as exc:
            raise TransportError(f"cannot start {argv[0]}: {exc}") from exc
        self._stderr_thread = threading.Thread(target=self._pump_stderr,
                                               name=f"fync-stderr-{name}", daemon=True)
        self._stderr_thread.start()
        self._stream = StreamTransport(self._proc.stdout, self._proc.stdin, name,
                                       describe_eof=self._exit_detail)

    def _pump_stderr(self):
        for raw in iter(self._proc.stderr.readline, b""):
            line = raw.decode("utf-8", errors="replace").rstrip()
            if line:
                log(f"[{self._name}] {line}")

    def _exit_detail(self) -> str:
        try:
            rc = self._proc.wait(timeout=5)
        except subprocess.TimeoutExpired:
            return f"{self._name} closed its output"
        return f"{self._name} process exited with status {rc}"

    @property
    def returncode(self) -> Optional[int]:
        return self._proc.poll()

    def send(self, payload: bytes):
        self._stream.send(payload)

    def receive(self) -> bytes:
        return self._stream.receive()

    def poll(self) -> Optional[bytes]:
        return self._stream.poll()

    def close(self):
        self._stream.close()
        try:
            self._proc.wait(timeout=30)
        except subprocess.TimeoutExpired:
            self._proc.kill()
            self._proc.wait()
        self._stderr_thread.join(timeout=5)
        for f in (self._proc.stdout, self._proc.stderr):
            try:
                f.close()
            except OSError:
                pass

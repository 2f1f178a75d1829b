"""
SSH connection manager (paramiko backend) with retried connect and keep-alive
"""
import threading
from typing import Optional
import paramiko
from .. import config as _cfg
from ..utils.logging import log, vlog
from ..utils.retry import retried
from .errors import TransportError
from .transport import StreamTransport, Transport, remote_command


class SSHManager:
    """
    Wraps a paramiko SSHClient for one remote host.
    Connection setup is retried with back-off; an established session is
    never retried, a broken channel fails the sync.
    """

    def __init__(self, host: str):
        self.host = host
        self._ssh: Optional[paramiko.SSHClient] = None

    # ── connection ─────────────────────────────────────────────────────────

    @retried(transient=(OSError, paramiko.SSHException),
             permanent=(paramiko.AuthenticationException,))
    def connect(self):
        if self._ssh:
            try:
                self._ssh.get_transport().send_ignore()  # test if alive
                return
            except (paramiko.SSHException, EOFError, OSError, AttributeError):
                self._close_quietly()

        target = f"{_cfg.SSH_USER}@{self.host}" if _cfg.SSH_USER else self.host
        log(f"[SSH] connecting to {target}:{_cfg.SSH_PORT or 22} …")
        client = paramiko.SSHClient()
        client.load_system_host_keys()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        kw: dict = dict(hostname=self.host, port=_cfg.SSH_PORT or 22,
                        timeout=20, banner_timeout=30, auth_timeout=30)
        if _cfg.SSH_USER:
            kw["username"] = _cfg.SSH_USER
        if _cfg.SSH_KEY_PATH:
            kw["key_filename"] = _cfg.SSH_KEY_PATH
        if _cfg.SSH_PASSWORD:
            kw["password"] = _cfg.SSH_PASSWORD

        client.connect(**kw)

        # Keep-alive: send a NOP every 30s
        client.get_transport().set_keepalive(30)

        self._ssh = client
        log("[SSH] connected ✓")

    def _close_quietly(self):
        try:
            if self._ssh:
                self._ssh.close()
        except (paramiko.SSHException, OSError):
            pass
        self._ssh = None

    def disconnect(self):
        self._close_quietly()
        vlog("[SSH] disconnected.")

    # ── exec channel ─────────────────────────────────────────────────────────

    def open_channel(self, cmd: str) -> paramiko.Channel:
        """Start `cmd` remotely and return its raw channel."""
        self.connect()
        chan = self._ssh.get_transport().open_session()
        chan.exec_command(cmd)
        return chan


class _ChannelWriter:
    """Binary writer for a channel's stdin; close() sends EOF to the remote."""

    def __init__(self, chan: paramiko.Channel):
        self._chan = chan

    def write(self, data: bytes) -> int:
        self._chan.sendall(data)
        return len(data)

    def flush(self):
        pass

    def close(self):
        self._chan.shutdown_write()


class ParamikoTransport(Transport):
    """Framed session over `fync run-stdio` started through paramiko."""

    def __init__(self, host: str, remote_root: str, read_only: bool = False):
        self._mgr = SSHManager(host)
        cmd = remote_command(remote_root, read_only)
        vlog(f"[SSH] exec: {cmd}")
        try:
            self._chan = self._mgr.open_channel(cmd)
        except (paramiko.SSHException, OSError) as exc:
            self._mgr.disconnect()
            raise TransportError(f"cannot reach {host}: {exc}") from exc
        self._stderr_thread = threading.Thread(target=self._pump_stderr,
                                               name="fync-stderr-ssh", daemon=True)
        self._stderr_thread.start()
        self._stream = StreamTransport(self._chan.makefile("rb"), _ChannelWriter(self._chan),
                                       host, describe_eof=self._exit_detail)

    def _pump_stderr(self):
        stderr = self._chan.makefile_stderr("rb")
        for raw in iter(stderr.readline, b""):
            line = raw.decode("utf-8", errors="replace").rstrip()
            if line:
                log(f"[remote] {line}")

    def _exit_detail(self) -> str:
        if self._chan.exit_status_ready():
            return f"remote process exited with status {self._chan.recv_exit_status()}"
        return "remote closed the channel"

    def send(self, payload: bytes):
        self._stream.send(payload)

    def receive(self) -> bytes:
        return self._stream.receive()

    def poll(self) -> Optional[bytes]:
        return self._stream.poll()

    def close(self):
        self._stream.close()
        try:
            self._chan.recv_exit_status()
        finally:
            self._chan.close()
            self._stderr_thread.join(timeout=5)
            self._mgr.disconnect()

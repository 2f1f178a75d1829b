"""
Tests for the paramiko transport backend (no network: paramiko is mocked).
"""
import io
import unittest
from unittest import mock

import fync.config as _cfg
from fync.core import ssh_manager
from fync.core.errors import TransportError
from fync.core.ssh_manager import ParamikoTransport, SSHManager


class FakeChannel:
    """Just enough of paramiko.Channel for a framed session."""

    def __init__(self, incoming: bytes):
        self._out = io.BytesIO(incoming)
        self.sent = bytearray()
        self.eof_sent = False
        self.command = None

    def makefile(self, mode):
        return self._out

    def makefile_stderr(self, mode):
        return io.BytesIO(b"remote diagnostics\n")

    def sendall(self, data):
        self.sent += data

    def shutdown_write(self):
        self.eof_sent = True

    def exit_status_ready(self):
        return True

    def recv_exit_status(self):
        return 0

    def close(self):
        pass


class TestSSHManager(unittest.TestCase):

    def setUp(self):
        patcher = mock.patch.multiple(_cfg, SSH_PORT=2222, SSH_USER="deploy", SSH_KEY_PATH=None,
                                      SSH_PASSWORD=None, RETRY_MAX=3, RETRY_BASE_DELAY=0)
        patcher.start()
        self.addCleanup(patcher.stop)

    def test_connect_arguments(self):
        with mock.patch.object(ssh_manager.paramiko, "SSHClient") as client_cls:
            SSHManager("build.example.com").connect()
        client = client_cls.return_value
        client.connect.assert_called_once_with(hostname="build.example.com", port=2222,
                                               timeout=20, banner_timeout=30, auth_timeout=30,
                                               username="deploy")
        client.get_transport.return_value.set_keepalive.assert_called_once_with(30)

    def test_connect_is_retried(self):
        with mock.patch.object(ssh_manager.paramiko, "SSHClient") as client_cls:
            client_cls.return_value.connect.side_effect = [OSError("refused"), None]
            SSHManager("h").connect()
        self.assertEqual(client_cls.return_value.connect.call_count, 2)

    def test_rejected_credentials_are_not_retried(self):
        with mock.patch.object(ssh_manager.paramiko, "SSHClient") as client_cls:
            client_cls.return_value.connect.side_effect = \
                ssh_manager.paramiko.AuthenticationException("denied")
            with self.assertRaises(TransportError):
                ParamikoTransport("h", "/srv/data")
        self.assertEqual(client_cls.return_value.connect.call_count, 1)

    def test_unreachable_host_is_transport_error(self):
        with mock.patch.object(ssh_manager.paramiko, "SSHClient") as client_cls:
            client_cls.return_value.connect.side_effect = OSError("no route to host")
            with self.assertRaises(TransportError):
                ParamikoTransport("h", "/srv/data")
        self.assertEqual(client_cls.return_value.connect.call_count, 3)


class TestParamikoTransport(unittest.TestCase):

    def test_frames_over_channel(self):
        chan = FakeChannel(b"\x00\x00\x00\x02hi")
        with mock.patch.object(SSHManager, "open_channel", return_value=chan) as opened:
            t = ParamikoTransport("h", "/srv/my data", read_only=True)
        opened.assert_called_once_with("fync run-stdio '/srv/my data' -o")
        self.assertEqual(t.receive(), b"hi")
        with self.assertRaises(TransportError) as cm:
            t.receive()
        self.assertIn("status 0", str(cm.exception))
        t.send(b"abc")
        self.assertEqual(bytes(chan.sent), b"\x00\x00\x00\x03abc")
        t.close()
        self.assertTrue(chan.eof_sent)


if __name__ == "__main__":
    unittest.main()

"""
Error taxonomy and exit codes
"""

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2
EXIT_CONFLICTS = 3
EXIT_TRANSPORT = 4
EXIT_PROTOCOL = 5
EXIT_BUSY = 6


class FyncError(Exception):
    """Base exception for all fync errors."""
    exit_code = EXIT_FAILURE


class SyncIOError(FyncError):
    """
    A filesystem operation failed for one path.

    Raised when:
    - a file cannot be read, written, moved or removed
    - a target changed on disk while the session was running

    Never fatal: the path is reported and left for the next run.
    """

    def __init__(self, path: str, detail: str):
        super().__init__(f"{path}: {detail}")
        self.path = path
        self.detail = detail


class ProtocolError(FyncError):
    """
    The peer violated the session protocol.

    Raised when:
    - protocol versions differ
    - a frame cannot be decoded or carries an unknown message
    - a message arrives in a state that does not expect it
    """
    exit_code = EXIT_PROTOCOL


class TransportError(FyncError):
    """
    The byte stream to the peer broke.

    Raised when:
    - the pipe closed or the spawned process exited
    - EOF arrived in the middle of a frame
    - no frame arrived within the receive timeout
    """
    exit_code = EXIT_TRANSPORT


class SessionBusyError(FyncError):
    """Another session holds the lock for this root."""
    exit_code = EXIT_BUSY


class PeerError(FyncError):
    """The peer reported a fatal error and aborted the session."""

    def __init__(self, kind: str, detail: str):
        super().__init__(f"peer failed ({kind}): {detail}")
        self.kind = kind
        self.detail = detail
        self.exit_code = {
            "protocol": EXIT_PROTOCOL,
            "transport": EXIT_TRANSPORT,
            "busy": EXIT_BUSY,
        }.get(kind, EXIT_FAILURE)

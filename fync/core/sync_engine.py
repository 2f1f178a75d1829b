"""
Sync orchestration: wire sessions to transports and report the outcome
"""
import sys
import threading
from pathlib import Path
from typing import Optional
from .. import config as _cfg
from ..utils.logging import log, set_stream, warn
from .errors import EXIT_FAILURE, EXIT_USAGE, FyncError, TransportError
from .models import Side
from .session import SessionResult, SyncSession
from .transport import LocalTransport, ProcessTransport, StreamTransport, ssh_command


def _banner(left: str, right: str):
    print(f"\n{'=' * 64}")
    print(f"  Sync  {left}")
    print(f"   ↔   {right}")
    print(f"{'=' * 64}")
    print()


def _summary(result: SessionResult):
    print()
    print(f"{'─' * 64}")
    print(" SUMMARY")
    print(f"  Sent       : {result.sent}")
    print(f"  Received   : {result.received}")
    print(f"  Applied    : {result.applied}")
    print(f"  Failed     : {len(result.failed)}")
    print(f"  Conflicts  : {len(result.conflicts)}")
    if result.generation is not None:
        print(f"  Generation : {result.generation}")
    print(f"{'─' * 64}")

    if result.error is not None:
        print()
        warn(f"Sync failed: {result.error}")
        print("   Nothing was committed; run the sync again.")
    elif result.failed:
        print()
        warn("Some paths could not be synced; they are retried on the next run:")
        for path, detail in sorted(result.failed.items()):
            print(f"    {path}: {detail}")
    if result.conflicts:
        print()
        print("⚠  CONFLICTS — both copies were left as they are.")
        print("   Make the two sides agree by hand, then run sync again.")
    elif result.error is None and not result.failed:
        log("[sync] in sync ✓")


def _check_root(root: Path):
    if not root.is_dir():
        raise FyncError(f"{root} is not a directory")


def run_local_sync(source: Path, destination: Path) -> int:
    """Sync two local trees: both sessions run in this process over an in-process pair."""
    source, destination = Path(source).resolve(), Path(destination).resolve()
    _check_root(source)
    _check_root(destination)
    if source == destination:
        warn("source and destination are the same directory")
        return EXIT_USAGE

    _banner(str(source), str(destination))
    left, right = LocalTransport.pair()
    alpha = SyncSession(source, left, Side.ALPHA)
    beta = SyncSession(destination, right, Side.BETA)
    beta_result: list = []

    def run_beta():
        try:
            beta_result.append(beta.run())
        finally:
            right.close()

    worker = threading.Thread(target=run_beta, name="fync-beta", daemon=True)
    worker.start()
    try:
        result = alpha.run()
    except KeyboardInterrupt:
        print()
        warn("Interrupted by user. Nothing was committed.")
        left.close()
        return EXIT_FAILURE
    finally:
        left.close()
    worker.join()

    if result.error is None and beta_result and beta_result[0].error is not None:
        result.error = beta_result[0].error
    _summary(result)
    return result.exit_code


def open_remote(host: str, remote_root: str, read_only: bool = False,
                backend: Optional[str] = None):
    """Transport to `fync run-stdio` on `host` via the configured backend."""
    backend = backend or _cfg.SSH_BACKEND
    if backend == "paramiko":
        from .ssh_manager import ParamikoTransport
        return ParamikoTransport(host, remote_root, read_only)
    return ProcessTransport(ssh_command(host, remote_root, read_only), name=host)


def run_ssh_sync(local_root: Path, host: str, remote_root: str,
                 backend: Optional[str] = None, read_only: bool = False) -> int:
    """Sync a local tree with a tree on `host` (initiator side)."""
    local_root = Path(local_root).resolve()
    _check_root(local_root)
    _banner(str(local_root), f"{host}:{remote_root}")
    try:
        transport = open_remote(host, remote_root, read_only, backend)
    except TransportError as exc:
        warn(f"Sync failed: {exc}")
        return exc.exit_code

    try:
        result = SyncSession(local_root, transport, Side.ALPHA).run()
    except KeyboardInterrupt:
        print()
        warn("Interrupted by user. Nothing was committed.")
        return EXIT_FAILURE
    finally:
        transport.close()
    _summary(result)
    return result.exit_code


def run_stdio(root: Path, read_only: bool = False) -> int:
    """
    Serve one session on stdin/stdout as the `beta` peer.
    Stdout carries frames only; every diagnostic goes to stderr.
    """
    reader = sys.stdin.buffer
    writer = sys.stdout.buffer
    sys.stdout = sys.stderr
    set_stream(sys.stderr)

    transport = StreamTransport(reader, writer, "stdio")
    try:
        result = SyncSession(root, transport, Side.BETA, read_only=read_only).run()
    finally:
        transport.close()
    if result.error is None:
        log(f"[run-stdio] done: {result.applied} applied, {len(result.failed)} failed, "
            f"{len(result.conflicts)} conflict(s)")
    return result.exit_code

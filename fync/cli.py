#!/usr/bin/env python3
"""
fync  —  Bidirectional directory-tree synchronization
=====================================================

Subcommands:
  sync       Sync two local directory trees.
  ssh-sync   Sync a local tree with a tree on a remote host.
  run-stdio  Serve one sync session on stdin/stdout (the remote end of ssh-sync).
  watch      Print changes in a directory as they happen.
  status     Show persisted sync records for a directory.

Exit codes: 0 ok, 1 failure, 2 usage, 3 unresolved conflicts,
            4 transport failure, 5 protocol failure, 6 sync already running.

Run 'fync <subcommand> --help' for more details.
"""
import sys
import argparse
import traceback
from pathlib import Path


def _load_config(args, profile_name=None):
    """Apply the global config (or --config FILE) and the selected profile."""
    import yaml
    import fync.config as _cfg

    try:
        if args.config:
            data = _cfg.load_config_file(Path(args.config).expanduser())
        else:
            data = _cfg.load_global_config()
        _cfg.apply_profile(_cfg.get_profile(data, args.profile or profile_name))
    except (OSError, ValueError) as exc:
        print(f"error: bad configuration: {exc}", file=sys.stderr)
        sys.exit(2)
    except yaml.YAMLError as exc:
        print(f"error: cannot parse configuration: {exc}", file=sys.stderr)
        sys.exit(2)


# ── sync ─────────────────────────────────────────────────────────────────────

def cmd_sync(args) -> int:
    """Sync two local trees."""
    from fync.core.sync_engine import run_local_sync

    _load_config(args)
    return run_local_sync(Path(args.source).expanduser(), Path(args.destination).expanduser())


# ── ssh-sync ─────────────────────────────────────────────────────────────────

def cmd_ssh_sync(args) -> int:
    """Sync with a remote tree over ssh (profiles are looked up by host name)."""
    from fync.core.sync_engine import run_ssh_sync

    _load_config(args, profile_name=args.remote_host)
    return run_ssh_sync(Path(args.local_root).expanduser(), args.remote_host, args.remote_root,
                        backend=args.backend, read_only=args.output_only)


# ── run-stdio ────────────────────────────────────────────────────────────────

def cmd_run_stdio(args) -> int:
    """Serve the far end of a session; stdout is reserved for protocol frames."""
    from fync.utils.logging import set_stream
    from fync.core.sync_engine import run_stdio

    set_stream(sys.stderr)
    _load_config(args)
    return run_stdio(Path(args.root).expanduser(), read_only=args.output_only)


# ── watch ────────────────────────────────────────────────────────────────────

def cmd_watch(args) -> int:
    """Report changes in a directory until interrupted."""
    from fync.operations.watch import Watcher

    _load_config(args)
    root = Path(args.directory).expanduser()
    if not root.is_dir():
        print(f"error: {root} is not a directory", file=sys.stderr)
        return 2
    Watcher(root, interval=args.interval, debounce=args.debounce).run()
    return 0


# ── status ───────────────────────────────────────────────────────────────────

def cmd_status(args) -> int:
    """Show persisted records (one per peer) for a root."""
    import fync.config as _cfg
    from fync.state.state_manager import list_records, load_conflicts

    _load_config(args)
    root = str(Path(args.root).expanduser().resolve())
    records = list_records(root)

    print(f"\nRoot    : {root}")
    print(f"State   : {_cfg.get_state_dir()}")
    if not records:
        print("\nNo sync records yet.")
        return 0
    for rec in records:
        peer = rec.get("peer", "?")
        print(f"\nPeer       : {peer}")
        print(f"Generation : {rec.get('generation', 0)}")
        print(f"Tracked    : {len(rec.get('entries', {}))} entries")
        conflicts = load_conflicts(root, peer)
        if conflicts:
            print(f"\n⚠  {len(conflicts)} unresolved conflict(s) from the last sync:")
            for c in conflicts:
                print(f"    {c.get('path')}  ({c.get('reason')})")
        else:
            print("Conflicts  : none")
    return 0


def _common(p):
    p.add_argument("-v", "--verbose", action="store_true",
                   help="Show extra output (and tracebacks on failure)")
    p.add_argument("--profile", metavar="NAME", default=None,
                   help="Config profile to apply (default: defaults only)")
    p.add_argument("--config", metavar="FILE", default=None,
                   help="YAML config file (default: $XDG_CONFIG_HOME/fync/config.yaml)")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="fync",
        description="Bidirectional directory-tree synchronization",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")

    # ── sync ──────────────────────────────────────────────────────────────────
    sync_p = subparsers.add_parser("sync", help="Sync two local directories")
    sync_p.add_argument("source", help="First directory (session initiator)")
    sync_p.add_argument("destination", help="Second directory")
    _common(sync_p)

    # ── ssh-sync ──────────────────────────────────────────────────────────────
    ssh_p = subparsers.add_parser("ssh-sync", help="Sync with a directory on a remote host")
    ssh_p.add_argument("local_root", help="Local directory")
    ssh_p.add_argument("remote_host", help="Host to reach over ssh ([user@]host)")
    ssh_p.add_argument("remote_root", help="Directory on the remote host")
    ssh_p.add_argument("--backend", choices=("openssh", "paramiko"), default=None,
                       help="Spawn the ssh client (default) or connect in-process with paramiko")
    ssh_p.add_argument("-o", "--output-only", action="store_true",
                       help="Remote side never applies changes (one-directional pull)")
    _common(ssh_p)

    # ── run-stdio ─────────────────────────────────────────────────────────────
    stdio_p = subparsers.add_parser("run-stdio",
                                    help="Serve one session on stdin/stdout (used by ssh-sync)")
    stdio_p.add_argument("root", help="Directory to serve")
    stdio_p.add_argument("-o", "--output-only", action="store_true",
                         help="Never apply incoming changes (one-directional push)")
    _common(stdio_p)

    # ── watch ─────────────────────────────────────────────────────────────────
    watch_p = subparsers.add_parser("watch", help="Print changes in a directory as they happen")
    watch_p.add_argument("directory", help="Directory to watch")
    watch_p.add_argument("--interval", type=float, default=None, metavar="SECONDS",
                         help="Full rescan period (default from config: 30)")
    watch_p.add_argument("--debounce", type=float, default=None, metavar="SECONDS",
                         help="Quiet period before reporting (default from config: 0.5)")
    _common(watch_p)

    # ── status ────────────────────────────────────────────────────────────────
    status_p = subparsers.add_parser("status", help="Show sync records for a directory")
    status_p.add_argument("root", help="Synced directory")
    _common(status_p)

    return parser


COMMANDS = {
    "sync": cmd_sync,
    "ssh-sync": cmd_ssh_sync,
    "run-stdio": cmd_run_stdio,
    "watch": cmd_watch,
    "status": cmd_status,
}


def main(argv=None):
    """CLI entry point for fync"""
    from fync.core.errors import EXIT_USAGE, FyncError
    from fync.utils.logging import set_verbose, warn

    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command not in COMMANDS:
        parser.print_help()
        sys.exit(EXIT_USAGE)

    set_verbose(args.verbose)
    try:
        code = COMMANDS[args.command](args)
    except FyncError as exc:
        warn(str(exc))
        if args.verbose:
            traceback.print_exc()
        code = exc.exit_code
    sys.exit(code)


if __name__ == "__main__":
    main()

"""
End-to-end tests for sync sessions over an in-process transport pair.

Tests:
  - one-sided additions, edits, deletions propagate; a second run is a no-op
  - divergent edits are left alone on both sides and reported
  - renames are replayed without moving file content
  - directory resurrection, symlinks, executable bits
  - read-only peers, a busy root, a protocol version mismatch
  - an interrupted transfer leaves no partial file and no new state
  - disagreeing ancestor records never delete anything
  - seeded random one-sided edits converge round after round
"""
import itertools
import os
import random
import shutil
import tempfile
import threading
import unittest
from pathlib import Path
from unittest import mock

import fync.config as _cfg
from fync.core.errors import EXIT_BUSY, EXIT_CONFLICTS, EXIT_FAILURE, EXIT_PROTOCOL, TransportError
from fync.core.messages import FileDataChunk, Hello, decode, encode
from fync.core.models import Side
from fync.core.session import SessionState, SyncSession, identity
from fync.core.transport import LocalTransport, Transport
from fync.operations import scanner
from fync.state.session_lock import RootLock
from fync.state.state_manager import get_state_file, list_records, load_conflicts


class Recording(Transport):
    """Passes everything through and remembers what was sent."""

    def __init__(self, inner):
        self.inner = inner
        self.sent = []

    def send(self, payload):
        self.sent.append(decode(payload))
        self.inner.send(payload)

    def receive(self):
        return self.inner.receive()

    def poll(self):
        return self.inner.poll()

    def close(self):
        self.inner.close()

    def count(self, cls):
        return sum(1 for m in self.sent if isinstance(m, cls))


class DropsAfterChunks(Recording):
    """Breaks the connection after `limit` file data chunks."""

    def __init__(self, inner, limit):
        super().__init__(inner)
        self.limit = limit

    def send(self, payload):
        if isinstance(decode(payload), FileDataChunk) and self.count(FileDataChunk) >= self.limit:
            raise TransportError("connection reset")
        super().send(payload)


def run_pair(a, b, alpha_ro=False, beta_ro=False, wrap_alpha=Recording, wrap_beta=Recording):
    left, right = LocalTransport.pair()
    left, right = wrap_alpha(left), wrap_beta(right)
    alpha = SyncSession(a, left, Side.ALPHA, read_only=alpha_ro)
    beta = SyncSession(b, right, Side.BETA, read_only=beta_ro)
    out = {}

    def run_beta():
        try:
            out["beta"] = beta.run()
        finally:
            right.close()

    worker = threading.Thread(target=run_beta, daemon=True)
    worker.start()
    try:
        ra = alpha.run()
    finally:
        left.close()
    worker.join(30)
    return ra, out["beta"], left, right


def tree(root: Path):
    """{relative path: content} with directories as None and symlinks as '-> target'."""
    out = {}
    for p in sorted(root.rglob("*")):
        rel = p.relative_to(root).as_posix()
        if p.is_symlink():
            out[rel] = f"-> {os.readlink(p)}"
        elif p.is_dir():
            out[rel] = None
        else:
            out[rel] = p.read_bytes()
    return out


class _SessionCase(unittest.TestCase):

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        base = Path(self._tmp.name).resolve()
        self.a = base / "alpha"
        self.b = base / "beta"
        self.a.mkdir()
        self.b.mkdir()
        state = base / "state"
        for patcher in (mock.patch.dict(os.environ, {"FYNC_STATE_DIR": str(state)}),
                        mock.patch.object(_cfg, "RECEIVE_TIMEOUT", 20.0)):
            patcher.start()
            self.addCleanup(patcher.stop)

    def tearDown(self):
        self._tmp.cleanup()

    def put(self, root, rel, data=b"data"):
        p = root / rel
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_bytes(data)
        return p

    def sync(self, **kw):
        return run_pair(self.a, self.b, **kw)

    def assertInSync(self):
        self.assertEqual(tree(self.a), tree(self.b))


class TestPropagation(_SessionCase):

    def test_first_sync_copies_new_file(self):
        self.put(self.a, "f.txt", b"hello")
        ra, rb, left, _ = self.sync()
        self.assertEqual((ra.exit_code, rb.exit_code), (0, 0))
        self.assertEqual((ra.state, rb.state), (SessionState.DONE, SessionState.DONE))
        self.assertEqual((self.b / "f.txt").read_bytes(), b"hello")
        self.assertEqual((ra.sent, rb.received), (1, 1))
        self.assertEqual(ra.generation, 1)

    def test_both_directions_at_once(self):
        self.put(self.a, "mine/a.txt", b"from alpha")
        self.put(self.b, "theirs/b.txt", b"from beta")
        ra, rb, _, _ = self.sync()
        self.assertEqual(ra.exit_code, 0)
        self.assertInSync()
        self.assertEqual(len(tree(self.a)), 4)

    def test_identical_trees_need_no_transfer(self):
        for root in (self.a, self.b):
            self.put(root, "same.txt", b"identical")
        ra, _, left, right = self.sync()
        self.assertEqual(ra.exit_code, 0)
        self.assertEqual(left.count(FileDataChunk) + right.count(FileDataChunk), 0)

    def test_second_run_is_a_no_op(self):
        self.put(self.a, "a.txt", b"1")
        self.put(self.b, "d/b.txt", b"22")
        self.sync()
        ra, rb, left, right = self.sync()
        self.assertEqual((ra.exit_code, rb.exit_code), (0, 0))
        self.assertEqual(left.count(FileDataChunk) + right.count(FileDataChunk), 0)
        self.assertEqual((ra.applied, rb.applied), (0, 0))
        self.assertEqual(ra.generation, 2)

    def test_edit_and_delete_replayed(self):
        self.put(self.a, "edit.txt", b"v1")
        self.put(self.a, "drop.txt", b"bye")
        self.sync()
        self.put(self.a, "edit.txt", b"version two")
        (self.b / "drop.txt").unlink()
        ra, _, _, _ = self.sync()
        self.assertEqual(ra.exit_code, 0)
        self.assertEqual((self.b / "edit.txt").read_bytes(), b"version two")
        self.assertFalse((self.a / "drop.txt").exists())
        self.assertInSync()

    def test_directory_removed_on_one_side(self):
        self.put(self.a, "old/deep/f", b"x")
        self.sync()
        shutil.rmtree(self.b / "old")
        ra, _, _, _ = self.sync()
        self.assertEqual(ra.exit_code, 0)
        self.assertFalse((self.a / "old").exists())

    def test_symlink_and_exec_bit(self):
        self.put(self.a, "bin/run.sh", b"#!/bin/sh\necho hi\n")
        os.chmod(self.a / "bin" / "run.sh", 0o755)
        os.symlink("bin/run.sh", self.a / "run")
        ra, _, _, _ = self.sync()
        self.assertEqual(ra.exit_code, 0)
        self.assertEqual(os.readlink(self.b / "run"), "bin/run.sh")
        self.assertEqual((self.b / "bin" / "run.sh").stat().st_mode & 0o777, 0o755)

    def test_empty_file(self):
        self.put(self.b, "empty", b"")
        ra, _, _, _ = self.sync()
        self.assertEqual(ra.exit_code, 0)
        self.assertEqual((self.a / "empty").read_bytes(), b"")

    def test_leftover_temporaries_are_removed(self):
        self.put(self.b, ".x.0123456789ab.fync-tmp", b"junk")
        self.put(self.b, ".fync-staging/abc.fync-tmp", b"junk")
        self.sync()
        self.assertEqual(tree(self.b), {})


class TestRenames(_SessionCase):

    def test_rename_moves_no_content(self):
        self.put(self.a, "docs/report.pdf", b"%PDF" + b"\x00" * 5000)
        self.sync()
        (self.a / "docs" / "report.pdf").rename(self.a / "report-final.pdf")
        ra, rb, left, right = self.sync()
        self.assertEqual(ra.exit_code, 0)
        self.assertEqual(left.count(FileDataChunk) + right.count(FileDataChunk), 0)
        self.assertTrue((self.b / "report-final.pdf").exists())
        self.assertFalse((self.b / "docs" / "report.pdf").exists())
        self.assertEqual(rb.applied, 1)

    def test_rename_on_beta(self):
        self.put(self.a, "a.bin", b"abcdefgh")
        self.sync()
        (self.b / "a.bin").rename(self.b / "b.bin")
        ra, _, left, right = self.sync()
        self.assertEqual(ra.exit_code, 0)
        self.assertEqual(right.count(FileDataChunk), 0)
        self.assertInSync()


class TestConflicts(_SessionCase):

    def test_divergent_edits_are_left_alone(self):
        self.put(self.a, "shared.txt", b"base")
        self.sync()
        self.put(self.a, "shared.txt", b"alpha version")
        self.put(self.b, "shared.txt", b"beta edit!")
        self.put(self.a, "other.txt", b"unrelated")
        ra, rb, _, _ = self.sync()
        self.assertEqual((ra.exit_code, rb.exit_code), (EXIT_CONFLICTS, EXIT_CONFLICTS))
        self.assertEqual((self.a / "shared.txt").read_bytes(), b"alpha version")
        self.assertEqual((self.b / "shared.txt").read_bytes(), b"beta edit!")
        self.assertEqual((self.b / "other.txt").read_bytes(), b"unrelated")
        self.assertEqual([c.path for c in ra.conflicts], ["shared.txt"])

        recorded = load_conflicts(str(self.a), identity(self.b))
        self.assertEqual([c["path"] for c in recorded], ["shared.txt"])

        # nothing was settled, so the next run reports the same conflict
        ra, _, _, _ = self.sync()
        self.assertEqual(ra.exit_code, EXIT_CONFLICTS)

    def test_conflict_clears_once_sides_agree(self):
        self.put(self.a, "f", b"base")
        self.sync()
        self.put(self.a, "f", b"one")
        self.put(self.b, "f", b"two!!")
        self.sync()
        self.put(self.b, "f", b"one")
        ra, _, _, _ = self.sync()
        self.assertEqual(ra.exit_code, 0)
        self.assertEqual(load_conflicts(str(self.a), identity(self.b)), [])

    def test_deleted_directory_comes_back_for_new_child(self):
        self.put(self.a, "D/x", b"x")
        self.sync()
        shutil.rmtree(self.a / "D")
        self.put(self.b, "D/y", b"new child")
        ra, _, _, _ = self.sync()
        self.assertEqual(ra.exit_code, 0)
        self.assertEqual(tree(self.a), {"D": None, "D/y": b"new child"})
        self.assertInSync()


class TestConvergence(_SessionCase):
    """Seeded random edits, each path touched on one side only, synced round after round."""

    DIRS = ("", "d1", "d1/d2", "e")

    def _edit(self, rng, root, pool, model, sizes):
        path = pool.pop()
        target = root / path
        if not target.exists():
            model[path] = b"n" * next(sizes)
            target.write_bytes(model[path])
            return
        action = rng.choice(("modify", "delete", "rename"))
        dest = next((p for p in pool if not (root / p).exists()), None)
        if action == "modify":
            model[path] = b"m" * next(sizes)
            target.write_bytes(model[path])
        elif action == "rename" and dest is not None:
            pool.remove(dest)
            target.rename(root / dest)
            model[dest] = model.pop(path)
        else:
            target.unlink()
            del model[path]

    def _converge(self, seed):
        rng = random.Random(seed)
        a, b = self.a / f"seed{seed}", self.b / f"seed{seed}"
        for root in (a, b):
            for d in self.DIRS:
                (root / d).mkdir(parents=True, exist_ok=True)
        names = [f"{d}/f{i}" if d else f"f{i}" for d in self.DIRS for i in range(5)]
        sizes = itertools.count(1)
        model = {}

        for _ in range(6):
            pool = list(names)
            rng.shuffle(pool)
            for _ in range(rng.randint(1, 8)):
                if len(pool) < 2:
                    break
                self._edit(rng, rng.choice((a, b)), pool, model, sizes)

            ra, rb, _, _ = run_pair(a, b)
            self.assertEqual((ra.exit_code, rb.exit_code), (0, 0))
            self.assertEqual(tree(a), tree(b))
            files = {p: data for p, data in tree(a).items() if data is not None}
            self.assertEqual(files, model)

        ra, rb, left, right = run_pair(a, b)
        self.assertEqual((ra.applied, rb.applied), (0, 0))
        self.assertEqual(left.count(FileDataChunk) + right.count(FileDataChunk), 0)

    def test_random_edits_converge(self):
        for seed in (3, 17, 2024):
            with self.subTest(seed=seed):
                self._converge(seed)


class TestReadOnly(_SessionCase):

    def test_read_only_beta_is_never_written(self):
        self.put(self.a, "a", b"alpha only")
        self.put(self.b, "b", b"beta only")
        ra, rb, _, _ = self.sync(beta_ro=True)
        self.assertEqual((ra.exit_code, rb.exit_code), (0, 0))
        self.assertEqual((self.a / "b").read_bytes(), b"beta only")
        self.assertFalse((self.b / "a").exists())

        # still unsettled next time, still not pushed
        self.sync(beta_ro=True)
        self.assertFalse((self.b / "a").exists())

    def test_read_only_alpha(self):
        self.put(self.b, "b", b"beta only")
        self.sync(alpha_ro=True)
        self.assertFalse((self.a / "b").exists())


class TestFailures(_SessionCase):

    def test_busy_root(self):
        with RootLock(str(self.b)):
            ra, rb, _, _ = self.sync()
        self.assertEqual((ra.exit_code, rb.exit_code), (EXIT_BUSY, EXIT_BUSY))
        self.assertEqual(list_records(), [])

    def test_version_mismatch_sends_nothing_after_hello(self):
        left, right = LocalTransport.pair()
        received = []

        def fake_peer():
            decode(right.receive())
            right.send(encode(Hello(version=99, role="beta", peer="fake:/x")))
            try:
                while True:
                    received.append(decode(right.receive()))
            except TransportError:
                pass

        worker = threading.Thread(target=fake_peer, daemon=True)
        worker.start()
        result = SyncSession(self.a, left, Side.ALPHA).run()
        left.close()
        worker.join(10)
        self.assertEqual(result.exit_code, EXIT_PROTOCOL)
        self.assertEqual(received, [])

    def test_interrupted_transfer_leaves_nothing_behind(self):
        self.put(self.a, "big.bin", bytes(range(40)))
        with mock.patch.object(_cfg, "CHUNK_SIZE", 4):
            ra, rb, _, _ = self.sync(wrap_alpha=lambda t: DropsAfterChunks(t, 3))
        self.assertEqual(ra.state, SessionState.FAILED)
        self.assertEqual(rb.state, SessionState.FAILED)
        self.assertNotEqual(rb.exit_code, 0)
        self.assertEqual(tree(self.b), {})
        self.assertEqual(list_records(), [])

        ra, _, _, _ = self.sync()
        self.assertEqual(ra.exit_code, 0)
        self.assertEqual((self.b / "big.bin").read_bytes(), bytes(range(40)))

    @unittest.skipIf(hasattr(os, "geteuid") and os.geteuid() == 0, "root reads everything")
    def test_unreadable_file_is_retried_next_time(self):
        secret = self.put(self.a, "secret", b"top secret")
        self.put(self.a, "public", b"fine")
        os.chmod(secret, 0)
        try:
            ra, rb, _, _ = self.sync()
        finally:
            os.chmod(secret, 0o644)
        self.assertEqual((ra.exit_code, rb.exit_code), (EXIT_FAILURE, EXIT_FAILURE))
        self.assertIn("secret", ra.failed)
        self.assertTrue((self.b / "public").exists())
        self.assertFalse((self.b / "secret").exists())

        ra, _, _, _ = self.sync()
        self.assertEqual(ra.exit_code, 0)
        self.assertEqual((self.b / "secret").read_bytes(), b"top secret")

    def test_unscannable_file_is_reported_and_retried(self):
        self.put(self.a, "secret", b"top secret")
        self.put(self.a, "public", b"fine")
        real_hash = scanner.hash_file

        def refuse_secret(path):
            if Path(path).name == "secret":
                raise PermissionError(13, "Permission denied", str(path))
            return real_hash(path)

        with mock.patch.object(scanner, "hash_file", refuse_secret):
            ra, rb, _, _ = self.sync()
        self.assertEqual((ra.exit_code, rb.exit_code), (EXIT_FAILURE, EXIT_FAILURE))
        self.assertIn("Permission denied", ra.failed["secret"])
        self.assertIn("secret", rb.failed)
        self.assertTrue((self.b / "public").exists())
        self.assertFalse((self.b / "secret").exists())

        ra, rb, _, _ = self.sync()
        self.assertEqual((ra.exit_code, rb.exit_code), (0, 0))
        self.assertEqual(ra.failed, {})
        self.assertEqual((self.b / "secret").read_bytes(), b"top secret")

    def test_disagreeing_records_never_delete(self):
        self.put(self.a, "keep", b"k")
        self.put(self.a, "drop", b"d")
        self.sync()
        get_state_file(str(self.b), identity(self.a)).unlink()
        (self.a / "drop").unlink()
        self.put(self.a, "new", b"n")
        ra, _, _, _ = self.sync()
        self.assertEqual(ra.exit_code, 0)
        self.assertTrue((self.a / "drop").exists())
        self.assertEqual((self.b / "new").read_bytes(), b"n")
        self.assertInSync()

    def test_missing_root_fails(self):
        shutil.rmtree(self.b)
        ra, rb, _, _ = self.sync()
        self.assertEqual(rb.state, SessionState.FAILED)
        self.assertNotEqual(ra.exit_code, 0)


if __name__ == "__main__":
    unittest.main()

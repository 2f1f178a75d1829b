"""
Tests for the scanner.

Tests:
  - files, directories and symlinks are recorded; symlinks are not followed
  - the fixed exclusion policy (VCS metadata, fync temporaries)
  - hashes are reused for files whose (size, mtime) did not change
  - refresh_paths re-examines only the given paths
  - leftover temporaries are found
"""
import os
import tempfile
import unittest
from pathlib import Path

from fync.core.models import EntryKind, FileEntry, Snapshot
from fync.operations.scanner import find_orphans, refresh_paths, scan
from fync.utils.file_utils import new_hasher


def hash_bytes(data: bytes) -> str:
    h = new_hasher()
    h.update(data)
    return h.hexdigest()


def write(root: Path, rel: str, data: bytes = b"hello"):
    p = root / rel
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_bytes(data)
    return p


class TestScan(unittest.TestCase):

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)

    def tearDown(self):
        self._tmp.cleanup()

    def test_records_files_dirs_and_symlinks(self):
        write(self.root, "src/main.py", b"print(1)\n")
        os.symlink("src/main.py", self.root / "link")
        snap = scan(self.root)

        self.assertEqual(sorted(snap), ["link", "src", "src/main.py"])
        self.assertEqual(snap.get("src").kind, EntryKind.DIR)
        main = snap.get("src/main.py")
        self.assertEqual(main.kind, EntryKind.FILE)
        self.assertEqual(main.size, 9)
        self.assertEqual(main.content_hash, hash_bytes(b"print(1)\n"))
        link = snap.get("link")
        self.assertEqual(link.kind, EntryKind.SYMLINK)
        self.assertEqual(link.target, "src/main.py")
        self.assertIsNone(link.content_hash)

    def test_symlinked_directory_is_not_followed(self):
        write(self.root, "real/a.txt")
        os.symlink("real", self.root / "alias")
        snap = scan(self.root)
        self.assertNotIn("alias/a.txt", snap)
        self.assertEqual(snap.get("alias").kind, EntryKind.SYMLINK)

    def test_exclusions(self):
        write(self.root, ".git/HEAD")
        write(self.root, "sub/.svn/entries")
        write(self.root, ".a.txt.123.fync-tmp")
        write(self.root, ".fync-staging/x.fync-tmp")
        write(self.root, "keep.txt")
        self.assertEqual(sorted(scan(self.root)), ["keep.txt", "sub"])

    @unittest.skipUnless(hasattr(os, "mkfifo"), "needs mkfifo")
    def test_special_files_are_skipped(self):
        os.mkfifo(self.root / "pipe")
        write(self.root, "a")
        self.assertEqual(sorted(scan(self.root)), ["a"])

    def test_mode_bits_recorded(self):
        p = write(self.root, "run.sh", b"#!/bin/sh\n")
        os.chmod(p, 0o755)
        self.assertEqual(scan(self.root).get("run.sh").mode, 0o755)

    def test_prior_hash_reused_when_stat_unchanged(self):
        p = write(self.root, "a.txt")
        st = p.stat()
        prior = Snapshot(root=str(self.root), entries={
            "a.txt": FileEntry(path="a.txt", kind=EntryKind.FILE, size=st.st_size,
                               mtime_ns=st.st_mtime_ns, content_hash="cached"),
        })
        self.assertEqual(scan(self.root, prior=prior).get("a.txt").content_hash, "cached")

    def test_prior_hash_ignored_when_mtime_moved(self):
        p = write(self.root, "a.txt")
        st = p.stat()
        prior = Snapshot(root=str(self.root), entries={
            "a.txt": FileEntry(path="a.txt", kind=EntryKind.FILE, size=st.st_size,
                               mtime_ns=st.st_mtime_ns - 10 ** 9, content_hash="cached"),
        })
        self.assertEqual(scan(self.root, prior=prior).get("a.txt").content_hash,
                         hash_bytes(b"hello"))

    def test_generation_is_carried(self):
        self.assertEqual(scan(self.root, generation=7).generation, 7)

    def test_single_worker_gives_same_result(self):
        for i in range(20):
            write(self.root, f"d/{i}.txt", str(i).encode())
        self.assertEqual(dict(scan(self.root, workers=1).entries),
                         dict(scan(self.root, workers=8).entries))


class TestRefresh(unittest.TestCase):

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)

    def tearDown(self):
        self._tmp.cleanup()

    def test_new_file_and_its_parents(self):
        before = scan(self.root)
        write(self.root, "x/y/z.txt", b"zzz")
        after = refresh_paths(before, ["x/y/z.txt"])
        self.assertEqual(sorted(after), ["x", "x/y", "x/y/z.txt"])
        self.assertEqual(after.get("x/y/z.txt").content_hash, hash_bytes(b"zzz"))

    def test_new_directory_is_walked(self):
        before = scan(self.root)
        write(self.root, "pkg/a.py")
        write(self.root, "pkg/b.py")
        self.assertEqual(sorted(refresh_paths(before, ["pkg"])), ["pkg", "pkg/a.py", "pkg/b.py"])

    def test_vanished_directory_drops_subtree(self):
        write(self.root, "gone/a")
        write(self.root, "stay")
        before = scan(self.root)
        (self.root / "gone" / "a").unlink()
        (self.root / "gone").rmdir()
        self.assertEqual(sorted(refresh_paths(before, ["gone"])), ["stay"])

    def test_unlisted_paths_keep_their_entries(self):
        write(self.root, "a", b"1")
        before = scan(self.root)
        write(self.root, "a", b"22")
        self.assertEqual(refresh_paths(before, []).get("a").size, 1)
        self.assertEqual(refresh_paths(before, ["a"]).get("a").size, 2)


class TestOrphans(unittest.TestCase):

    def test_finds_temporaries_and_staging_dir(self):
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            write(root, "d/.f.abc.fync-tmp")
            write(root, ".fync-staging/1.fync-tmp")
            write(root, ".git/x.fync-tmp")
            write(root, "d/real.txt")
            found = {p.relative_to(root).as_posix() for p in find_orphans(root)}
            self.assertEqual(found, {"d/.f.abc.fync-tmp", ".fync-staging"})


if __name__ == "__main__":
    unittest.main()

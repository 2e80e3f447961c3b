import os
import tempfile
import time
import unittest
from pathlib import Path
from unittest.mock import patch

from mediapi_agent import CancelToken, SyncCancelled, cleanup_temp_files, collect_garbage


class GarbageCollectorTests(unittest.TestCase):
    def test_removes_unexpected_files_recursively(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            root = Path(tmpdir)
            keep = root / "keep.mp4"
            stale = root / "stale.mp4"
            nested_dir = root / "old"
            nested_dir.mkdir()
            nested = nested_dir / "nested.mp4"
            in_flight = root / "incoming.mp4.tmp"
            for path in (keep, stale, nested, in_flight):
                path.write_bytes(b"x")

            removed, errors = collect_garbage(str(root), {str(keep)})

            self.assertEqual(errors, [])
            self.assertEqual(set(removed), {os.path.abspath(stale), os.path.abspath(nested)})
            self.assertTrue(keep.exists())
            self.assertTrue(in_flight.exists())
            self.assertTrue(nested_dir.is_dir())

    def test_empty_expected_set_clears_cache(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            root = Path(tmpdir)
            (root / "a.mp4").write_bytes(b"a")
            (root / ".hidden").write_bytes(b"b")

            removed, errors = collect_garbage(str(root), set())

            self.assertEqual(len(removed), 2)
            self.assertEqual(errors, [])
            self.assertEqual(list(root.iterdir()), [])

    def test_deletion_errors_are_collected_and_walk_continues(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            root = Path(tmpdir)
            (root / "locked.mp4").write_bytes(b"a")
            (root / "other.mp4").write_bytes(b"b")
            real_remove = os.remove

            def flaky_remove(path: str) -> None:
                if path.endswith("locked.mp4"):
                    raise PermissionError(13, "Permission denied", path)
                real_remove(path)

            with patch("mediapi_agent.os.remove", side_effect=flaky_remove):
                removed, errors = collect_garbage(str(root), set())

            self.assertEqual(len(errors), 1)
            self.assertIsInstance(errors[0], PermissionError)
            self.assertEqual([os.path.basename(path) for path in removed], ["other.mp4"])
            self.assertTrue((root / "locked.mp4").exists())

    def test_missing_root_is_noop(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            self.assertEqual(collect_garbage(os.path.join(tmpdir, "absent"), set()), ([], []))

    def test_cancelled_token_stops_walk(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            root = Path(tmpdir)
            (root / "a.mp4").write_bytes(b"a")
            token = CancelToken()
            token.cancel()

            with self.assertRaises(SyncCancelled):
                collect_garbage(str(root), set(), token)

            self.assertTrue((root / "a.mp4").exists())


class TempCleanupTests(unittest.TestCase):
    def test_removes_orphaned_temp_files_only(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            root = Path(tmpdir)
            (root / "a.mp4.tmp").write_bytes(b"partial")
            (root / "sub").mkdir()
            (root / "sub" / "b.mp4.tmp").write_bytes(b"partial")
            (root / "a.mp4").write_bytes(b"full")

            self.assertEqual(cleanup_temp_files(str(root)), 2)
            self.assertEqual(sorted(p.name for p in root.rglob("*") if p.is_file()), ["a.mp4"])

    def test_max_age_keeps_recent_temp_files(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            root = Path(tmpdir)
            fresh = root / "fresh.mp4.tmp"
            old = root / "old.mp4.tmp"
            fresh.write_bytes(b"x")
            old.write_bytes(b"x")
            past = time.time() - 7200
            os.utime(old, (past, past))

            self.assertEqual(cleanup_temp_files(str(root), max_age_sec=3600), 1)
            self.assertTrue(fresh.exists())
            self.assertFalse(old.exists())


if __name__ == "__main__":
    unittest.main()

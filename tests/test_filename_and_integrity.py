import hashlib
import os
import tempfile
import unittest
from pathlib import Path

from mediapi_agent import InvalidFilename, ManifestItem, plan_sync_items, sha256_file, validate_filename, verify_local


def manifest_item(filename: str, payload: bytes, item_id: str = "1") -> ManifestItem:
    return ManifestItem(
        id=item_id,
        filename=filename,
        file_size_bytes=len(payload),
        sha256=hashlib.sha256(payload).hexdigest(),
    )


class FilenameValidatorTests(unittest.TestCase):
    def test_rejects_traversal_absolute_and_nested_names(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            for name in ("../etc/passwd", "/etc/passwd", "a/b.mp4", "..", ".", "", "dir\\file.mp4", "bad\x00.mp4"):
                with self.subTest(name=name):
                    with self.assertRaises(InvalidFilename):
                        validate_filename(name, tmpdir)

    def test_accepts_plain_and_hidden_names(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            self.assertEqual(validate_filename("video.mp4", tmpdir), "video.mp4")
            self.assertEqual(validate_filename(".hidden", tmpdir), ".hidden")

    def test_rejects_non_string(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            with self.assertRaises(InvalidFilename):
                validate_filename(None, tmpdir)

    def test_rejects_symlink_pointing_outside_root(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            root = Path(tmpdir) / "media"
            outside = Path(tmpdir) / "outside.mp4"
            root.mkdir()
            outside.write_bytes(b"x")
            try:
                os.symlink(outside, root / "link.mp4")
            except (OSError, NotImplementedError):
                self.skipTest("symlinks unavailable")

            with self.assertRaises(InvalidFilename):
                validate_filename("link.mp4", str(root))

    def test_plan_skips_invalid_and_duplicate_entries(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            manifest = [
                manifest_item("a.mp4", b"a", "1"),
                manifest_item("../escape.mp4", b"b", "2"),
                manifest_item("a.mp4", b"c", "3"),
                manifest_item("b.mp4", b"d", "4"),
            ]

            planned = plan_sync_items(manifest, tmpdir)

            self.assertEqual([item.id for item, _dest in planned], ["1", "4"])
            self.assertEqual(planned[0][1], os.path.join(tmpdir, "a.mp4"))


class IntegrityTests(unittest.TestCase):
    def test_sha256_file_matches_hashlib(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "clip.mp4"
            payload = os.urandom(3 * 1024 * 1024 + 17)
            path.write_bytes(payload)

            self.assertEqual(sha256_file(str(path)), hashlib.sha256(payload).hexdigest())

    def test_verify_local_checks_existence_size_and_hash(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "clip.mp4"
            item = manifest_item("clip.mp4", b"payload")

            self.assertFalse(verify_local(str(path), item))

            path.write_bytes(b"payload!")
            self.assertFalse(verify_local(str(path), item))

            path.write_bytes(b"PAYLOAD")
            self.assertFalse(verify_local(str(path), item))

            path.write_bytes(b"payload")
            self.assertTrue(verify_local(str(path), item))

    def test_verify_local_is_case_insensitive_and_idempotent(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "clip.mp4"
            path.write_bytes(b"payload")
            item = manifest_item("clip.mp4", b"payload")
            upper = ManifestItem(item.id, item.filename, item.file_size_bytes, item.sha256.upper())
            mtime = os.path.getmtime(path)

            self.assertTrue(verify_local(str(path), upper))
            self.assertTrue(verify_local(str(path), upper))
            self.assertEqual(os.path.getmtime(path), mtime)

    def test_verify_local_directory_is_invalid(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            item = manifest_item("clip.mp4", b"")
            self.assertFalse(verify_local(tmpdir, item))


if __name__ == "__main__":
    unittest.main()

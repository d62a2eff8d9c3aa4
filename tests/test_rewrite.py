#!/usr/bin/env python3
"""
Tests for committing normalized output back over the original file.
"""

import logging
import os
import shutil
import stat
import sys
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

# Add parent directory to path to import fixle module
sys.path.insert(0, str(Path(__file__).parent.parent))
import fixle  # pylint: disable=wrong-import-position

# Disable logging for tests
fixle.logger.setLevel(logging.CRITICAL)


class TestRewrite(unittest.TestCase):
    def setUp(self) -> None:
        # Create a temporary directory
        self.test_dir = tempfile.mkdtemp()

        self.test_file = os.path.join(self.test_dir, "test.txt")
        with open(self.test_file, "wb") as f:
            f.write(b"stale content that is longer than the new one\r\n")

        self.scratch = tempfile.TemporaryFile()
        self.scratch.write(b"fresh\n")

    def tearDown(self) -> None:
        self.scratch.close()
        # Clean up the temporary directory
        shutil.rmtree(self.test_dir)

    def read_test_file(self) -> bytes:
        with open(self.test_file, "rb") as f:
            return f.read()

    def test_replace_contents(self) -> None:
        """The whole scratch file replaces the old content, from the start."""
        fixle.replace_contents(self.scratch, self.test_file)
        self.assertEqual(self.read_test_file(), b"fresh\n")

    def test_replace_contents_keeps_inode(self) -> None:
        before = os.stat(self.test_file).st_ino
        fixle.replace_contents(self.scratch, self.test_file)
        self.assertEqual(os.stat(self.test_file).st_ino, before)

    def test_atomic_replace(self) -> None:
        fixle.atomic_replace(self.scratch, self.test_file)
        self.assertEqual(self.read_test_file(), b"fresh\n")
        # No staging file is left behind
        self.assertEqual(os.listdir(self.test_dir), ["test.txt"])

    @unittest.skipIf(os.name == "nt", "POSIX permission bits")
    def test_atomic_replace_keeps_mode(self) -> None:
        os.chmod(self.test_file, 0o640)
        fixle.atomic_replace(self.scratch, self.test_file)
        self.assertEqual(stat.S_IMODE(os.stat(self.test_file).st_mode), 0o640)

    def test_atomic_replace_failure_keeps_original(self) -> None:
        """A failed rename leaves the original and no staging file."""
        with patch("fixle.os.replace", side_effect=OSError("rename failed")):
            with self.assertRaises(OSError):
                fixle.atomic_replace(self.scratch, self.test_file)

        self.assertEqual(
            self.read_test_file(), b"stale content that is longer than the new one\r\n"
        )
        self.assertEqual(os.listdir(self.test_dir), ["test.txt"])

    def test_atomic_replace_copy_failure_cleans_up(self) -> None:
        with patch("fixle.shutil.copyfileobj", side_effect=OSError("copy failed")):
            with self.assertRaises(OSError):
                fixle.atomic_replace(self.scratch, self.test_file)

        self.assertEqual(os.listdir(self.test_dir), ["test.txt"])

    def test_commit_dispatch(self) -> None:
        with patch("fixle.atomic_replace") as atomic, patch(
            "fixle.replace_contents"
        ) as in_place:
            fixle.commit(self.scratch, self.test_file)
            in_place.assert_called_once_with(self.scratch, self.test_file)
            atomic.assert_not_called()

            fixle.commit(self.scratch, self.test_file, atomic=True)
            atomic.assert_called_once_with(self.scratch, self.test_file)

    def test_process_file_atomic(self) -> None:
        config = fixle.Config(line_ending=fixle.LineEnding.DOS, atomic=True)
        result = fixle.process_file(self.test_file, config)
        self.assertEqual(result, fixle.EolStats(dos_count=1))
        self.assertEqual(
            self.read_test_file(), b"stale content that is longer than the new one\r\n"
        )
        self.assertEqual(os.listdir(self.test_dir), ["test.txt"])

    @unittest.skipIf(os.name == "nt", "symlinks need privileges on Windows")
    def test_process_file_atomic_through_symlink(self) -> None:
        """The atomic commit rewrites the link's target and keeps the link."""
        link = os.path.join(self.test_dir, "link.txt")
        os.symlink(self.test_file, link)

        result = fixle.process_file(link, fixle.Config(atomic=True))
        self.assertEqual(result, fixle.EolStats(dos_count=1))
        self.assertTrue(os.path.islink(link))
        self.assertEqual(os.readlink(link), self.test_file)
        self.assertEqual(
            self.read_test_file(), b"stale content that is longer than the new one\n"
        )
        self.assertEqual(sorted(os.listdir(self.test_dir)), ["link.txt", "test.txt"])

    def test_scratch_file_is_unnamed(self) -> None:
        """Normalization never leaves a named temporary file behind."""
        created = []
        real_temporary_file = tempfile.TemporaryFile

        def spy(*args, **kwargs):
            handle = real_temporary_file(*args, **kwargs)
            created.append(handle)
            return handle

        with patch("fixle.tempfile.TemporaryFile", side_effect=spy):
            fixle.process_file(self.test_file, fixle.Config())

        self.assertEqual(len(created), 1)
        self.assertTrue(created[0].closed)
        self.assertEqual(os.listdir(self.test_dir), ["test.txt"])
        self.assertEqual(
            self.read_test_file(), b"stale content that is longer than the new one\n"
        )


if __name__ == "__main__":
    unittest.main()

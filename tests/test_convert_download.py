import subprocess
import tempfile
import threading
import unittest
from pathlib import Path
from unittest.mock import MagicMock, patch

import requests

from imtools.convert import Convert, build_convert_plan, convert_file, run_convert
from imtools.download import (
    build_download_plan,
    content_length,
    filename_from_url,
    read_sources,
    run_download,
)
from imtools.errors import ConversionError, DownloadError


def fake_ffmpeg(failing=()):
    """subprocess.run replacement that writes the output file like ffmpeg would."""
    def run(cmd, **kwargs):
        src, dst = Path(cmd[cmd.index("-i") + 1]), Path(cmd[-1])
        if src.name in failing:
            return subprocess.CompletedProcess(cmd, 1, "", "Invalid data found when processing input\n")
        dst.write_bytes(b"PNG")
        return subprocess.CompletedProcess(cmd, 0, "", "")
    return run


class TestConvert(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name).resolve()
        for rel in ["a.jpg", "a.png", "b.png", "sub/c.gif"]:
            path = self.root / rel
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(rel)

    def tearDown(self):
        self._tmp.cleanup()

    def test_plan_skips_pngs_and_avoids_existing_names(self):
        plan = build_convert_plan(self.root)
        ops = [op for op in plan if isinstance(op, Convert)]

        self.assertEqual(
            [(op.source.name, op.destination.name) for op in ops],
            [("a.jpg", "a-1.png"), ("c.gif", "c.png")],
        )
        self.assertEqual(ops[1].destination.parent, self.root / "sub")

    @patch("imtools.convert.shutil.which", return_value=None)
    def test_dry_run_does_not_need_ffmpeg(self, _):
        plan, report = run_convert(self.root, dry_run=True)
        self.assertEqual(report.applied, 2)
        self.assertFalse((self.root / "a-1.png").exists())

    @patch("imtools.convert.shutil.which", return_value=None)
    def test_apply_without_ffmpeg(self, _):
        with self.assertRaises(ConversionError):
            run_convert(self.root, dry_run=False)

    @patch("imtools.convert.shutil.which", return_value="/usr/bin/ffmpeg")
    def test_failures_are_isolated(self, _):
        with patch("imtools.convert.subprocess.run", side_effect=fake_ffmpeg(failing={"a.jpg"})):
            plan, report = run_convert(self.root, dry_run=False, delete_originals=True, show_progress=False)

        self.assertEqual((report.applied, report.failed), (1, 1))
        self.assertIn("Invalid data", report.failures[0][1])
        self.assertTrue((self.root / "sub" / "c.png").exists())
        self.assertFalse((self.root / "sub" / "c.gif").exists())
        # failed conversion keeps its original
        self.assertTrue((self.root / "a.jpg").exists())

    @patch("imtools.convert.subprocess.run", side_effect=subprocess.TimeoutExpired("ffmpeg", 300))
    def test_convert_file_timeout(self, _):
        with self.assertRaises(ConversionError):
            convert_file("ffmpeg", self.root / "a.jpg", self.root / "out.png")

    def test_failed_conversion_removes_partial_output(self):
        def half_written(cmd, **kwargs):
            Path(cmd[-1]).write_bytes(b"\x89PN")
            return subprocess.CompletedProcess(cmd, 1, "", "Conversion failed!\n")

        with patch("imtools.convert.subprocess.run", side_effect=half_written):
            with self.assertRaises(ConversionError):
                convert_file("ffmpeg", self.root / "a.jpg", self.root / "fresh.png")
        self.assertFalse((self.root / "fresh.png").exists())

    def test_timeout_removes_partial_output(self):
        def hung(cmd, **kwargs):
            Path(cmd[-1]).write_bytes(b"\x89PN")
            raise subprocess.TimeoutExpired(cmd, 300)

        with patch("imtools.convert.subprocess.run", side_effect=hung):
            with self.assertRaises(ConversionError):
                convert_file("ffmpeg", self.root / "a.jpg", self.root / "fresh.png")
        self.assertFalse((self.root / "fresh.png").exists())

    def test_failure_never_removes_a_file_that_was_already_there(self):
        refused = subprocess.CompletedProcess([], 1, "", "File 'a.png' already exists. Exiting.\n")

        with patch("imtools.convert.subprocess.run", return_value=refused):
            with self.assertRaises(ConversionError):
                convert_file("ffmpeg", self.root / "a.jpg", self.root / "a.png")
        self.assertEqual((self.root / "a.png").read_text(), "a.png")

    @patch("imtools.convert.shutil.which", return_value="/usr/bin/ffmpeg")
    def test_cancelled_conversions_are_skipped(self, _):
        event = threading.Event()
        event.set()

        with patch("imtools.convert.subprocess.run") as mock_run:
            plan, report = run_convert(self.root, dry_run=False, cancel_event=event, show_progress=False)

        mock_run.assert_not_called()
        self.assertTrue(report.cancelled)
        self.assertEqual(report.skipped, 2)
        self.assertEqual({s.reason for s in report.skips}, {"cancelled"})


def image_response(chunks, status_error=None):
    resp = MagicMock()
    resp.__enter__.return_value = resp
    resp.headers = {"Content-Type": "image/jpeg", "Content-Length": str(sum(len(c) for c in chunks))}
    resp.iter_content.return_value = iter(chunks)
    if status_error:
        resp.raise_for_status.side_effect = status_error
    return resp


class TestDownload(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name).resolve()

    def tearDown(self):
        self._tmp.cleanup()

    def test_filename_from_url(self):
        self.assertEqual(filename_from_url("https://example.com/a/cat%20pic.jpg?size=2"), "cat pic.jpg")
        self.assertEqual(filename_from_url("https://example.com/"), "download")
        self.assertEqual(filename_from_url("https://example.com/a%2F..%2Fb.png"), "a_.._b.png")

    def test_read_sources(self):
        listing = self.root / "urls.txt"
        listing.write_text("# cats\nhttps://example.com/1.jpg\n\nhttps://example.com/2.jpg\n")

        self.assertEqual(read_sources(str(listing)), ["https://example.com/1.jpg", "https://example.com/2.jpg"])
        self.assertEqual(read_sources("https://example.com/x.png"), ["https://example.com/x.png"])
        with self.assertRaises(DownloadError):
            read_sources(str(self.root / "missing.txt"))

    def test_plan_names_go_through_resolver(self):
        (self.root / "cat.jpg").write_text("already here")
        plan = build_download_plan(
            ["https://a.com/cat.jpg", "https://b.com/cat.jpg", "ftp://c.com/cat.jpg"], self.root
        )

        self.assertEqual([op.destination.name for op in plan.operations if op.kind == "DOWNLOAD"],
                         ["cat-1.jpg", "cat-2.jpg"])
        self.assertEqual(plan.skipped, 1)

    def test_download_isolates_failures(self):
        listing = self.root / "urls.txt"
        listing.write_text("https://a.com/ok.jpg\nhttps://a.com/missing.jpg\n")
        out = self.root / "out"
        session = MagicMock()
        session.get.side_effect = [
            image_response([b"ab", b"cd"]),
            image_response([], status_error=requests.exceptions.HTTPError("404 Not Found")),
        ]

        plan, report = run_download(str(listing), output_dir=out, dry_run=False,
                                    session=session, show_progress=False)

        self.assertEqual((report.applied, report.failed), (1, 1))
        self.assertEqual((out / "ok.jpg").read_bytes(), b"abcd")
        self.assertFalse((out / "missing.jpg").exists())

    def test_partial_download_is_removed(self):
        def broken():
            yield b"ab"
            raise requests.exceptions.ConnectionError("reset by peer")

        resp = image_response([])
        resp.iter_content.return_value = broken()
        session = MagicMock()
        session.get.return_value = resp

        plan, report = run_download("https://a.com/x.jpg", output_dir=self.root, dry_run=False,
                                    session=session, show_progress=False)

        self.assertEqual(report.failed, 1)
        self.assertFalse((self.root / "x.jpg").exists())

    def test_dry_run_creates_nothing(self):
        out = self.root / "out"
        session = MagicMock()

        plan, report = run_download("https://a.com/x.jpg", output_dir=out, dry_run=True, session=session)

        self.assertEqual(report.applied, 1)
        self.assertFalse(out.exists())
        session.get.assert_not_called()

    def test_unreadable_url_list(self):
        listing = self.root / "urls.txt"
        listing.write_bytes(b"https://a.com/1.jpg\n\xff\xfe\n")

        with self.assertRaises(DownloadError):
            read_sources(str(listing))

    def test_bad_content_length_is_ignored(self):
        resp = image_response([b"abcd"])
        resp.headers = {"Content-Type": "image/png", "Content-Length": "abc"}
        session = MagicMock()
        session.get.return_value = resp

        plan, report = run_download("https://a.com/x.png", output_dir=self.root, dry_run=False,
                                    session=session, show_progress=False)

        self.assertEqual((report.applied, report.failed), (1, 0))
        self.assertEqual((self.root / "x.png").read_bytes(), b"abcd")

    def test_content_length(self):
        self.assertEqual(content_length({"Content-Length": "12"}), 12)
        self.assertIsNone(content_length({"Content-Length": "abc"}))
        self.assertIsNone(content_length({}))

    def test_output_directory_failure_fails_each_download(self):
        blocker = self.root / "out"
        blocker.write_text("a file, not a folder")
        session = MagicMock()

        plan, report = run_download("https://a.com/x.png", output_dir=blocker, dry_run=False,
                                    session=session, show_progress=False)

        self.assertEqual(report.failed, 2)  # the folder and the download into it
        reasons = [reason for _, reason in report.failures]
        self.assertIn("parent directory could not be created", reasons)
        session.get.assert_not_called()


if __name__ == '__main__':
    unittest.main()

import tempfile
import threading
import time
import unittest
from pathlib import Path
from unittest.mock import MagicMock, patch

import requests
from PIL import Image

from imtools.errors import ClassificationError, PipelineCancelled, ScanError, ServiceUnavailableError
from imtools.llm import OllamaClient
from imtools.llm.classifier import OllamaClassifier, apply_threshold
from imtools.pipeline import classify_entries, run_flatten, run_sort
from imtools.scanner import scan_directory


def snapshot(root: Path) -> dict:
    return {
        p.relative_to(root).as_posix(): (p.read_bytes() if p.is_file() else None)
        for p in sorted(root.rglob("*"))
    }


class StubClassifier:
    """Answers from a name -> (label, confidence) table, or raises a given error."""

    def __init__(self, answers, categories=("cat", "dog", "food")):
        self.answers = answers
        self.categories = categories
        self.calls = 0
        self._lock = threading.Lock()

    def classify(self, entry):
        with self._lock:
            self.calls += 1
        answer = self.answers.get(entry.name, ("cat", 0.9))
        if isinstance(answer, Exception):
            raise answer
        label, confidence = answer
        return apply_threshold(entry, label, confidence, 0.5, self.categories)


class PipelineTestCase(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name).resolve()

    def tearDown(self):
        self._tmp.cleanup()

    def _touch(self, rel: str) -> Path:
        path = self.root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(rel)
        return path


class TestFlatten(PipelineTestCase):
    def test_end_to_end(self):
        for rel in ["a.jpg", "b.jpg", "x/c.jpg"]:
            self._touch(rel)

        result = run_flatten(self.root, dry_run=False, show_progress=False)

        self.assertEqual(sorted(p.name for p in self.root.iterdir()), ["a.jpg", "b.jpg", "c.jpg"])
        self.assertEqual((self.root / "c.jpg").read_text(), "x/c.jpg")
        self.assertEqual(result.report.skipped, 0)
        self.assertEqual(result.report.failed, 0)
        self.assertEqual(result.report.applied, 1)
        self.assertEqual(result.report.removed_dirs, ("x",))

    def test_dry_run_leaves_tree_identical(self):
        for rel in ["a.jpg", "one/img.png", "two/img.png", "deep/er/c.gif", "notes.txt"]:
            self._touch(rel)
        before = snapshot(self.root)

        result = run_flatten(self.root, dry_run=True)

        self.assertEqual(snapshot(self.root), before)
        self.assertTrue(result.report.dry_run)
        self.assertEqual(result.report.applied, 3)

    def test_idempotent(self):
        for rel in ["a.jpg", "one/img.png", "two/img.png", "deep/er/c.gif"]:
            self._touch(rel)

        run_flatten(self.root, dry_run=False, show_progress=False)
        after_first = snapshot(self.root)
        second = run_flatten(self.root, dry_run=False, show_progress=False)

        self.assertEqual(snapshot(self.root), after_first)
        self.assertEqual(second.plan.moves, [])
        self.assertEqual(second.report.applied, 0)
        self.assertIn("img-1.png", after_first)

    def test_missing_root(self):
        with self.assertRaises(ScanError):
            run_flatten(self.root / "missing", dry_run=True)

    def test_cancelled_before_apply(self):
        self._touch("x/c.jpg")
        before = snapshot(self.root)
        event = threading.Event()
        event.set()

        with self.assertRaises(PipelineCancelled) as ctx:
            run_flatten(self.root, dry_run=False, cancel_event=event, show_progress=False)

        self.assertEqual(snapshot(self.root), before)
        self.assertEqual(len(ctx.exception.plan.moves), 1)


class TestSort(PipelineTestCase):
    def test_sort_with_stub_classifier(self):
        for rel in ["a.jpg", "b.jpg", "c.jpg", "sub/d.jpg"]:
            self._touch(rel)
        classifier = StubClassifier({
            "a.jpg": ("cat", 0.9),
            "b.jpg": ("dog", 0.3),
            "c.jpg": ClassificationError("timeout"),
            "d.jpg": ("food", 0.8),
        })

        result = run_sort(self.root, classifier, dry_run=False, workers=2, show_progress=False)

        self.assertEqual((result.report.applied, result.report.skipped, result.report.failed), (3, 1, 0))
        self.assertTrue((self.root / "cat" / "a.jpg").exists())
        self.assertTrue((self.root / "unsorted" / "b.jpg").exists())
        self.assertTrue((self.root / "c.jpg").exists())
        self.assertTrue((self.root / "food" / "d.jpg").exists())
        # sort never removes source folders
        self.assertTrue((self.root / "sub").is_dir())

    def test_sort_dry_run(self):
        self._touch("a.jpg")
        before = snapshot(self.root)

        result = run_sort(self.root, StubClassifier({}), dry_run=True, show_progress=False)

        self.assertEqual(snapshot(self.root), before)
        self.assertEqual(result.report.applied, 1)

    def test_failed_category_directory_is_isolated(self):
        self._touch("a.jpg")
        self._touch("b.jpg")
        # Regular file (not scanned) blocking the "dog" directory
        (self.root / "dog").write_text("in the way")
        classifier = StubClassifier({"a.jpg": ("cat", 0.9), "b.jpg": ("dog", 0.9)})

        result = run_sort(self.root, classifier, dry_run=False, workers=1, show_progress=False)

        self.assertEqual(result.report.applied, 1)
        self.assertEqual(result.report.failed, 2)
        self.assertTrue((self.root / "cat" / "a.jpg").exists())
        self.assertTrue((self.root / "b.jpg").exists())

    def test_service_unavailable_stops_dispatch(self):
        for name in ["a.jpg", "b.jpg", "c.jpg", "d.jpg"]:
            self._touch(name)
        before = snapshot(self.root)
        down = ServiceUnavailableError("connection refused")
        classifier = StubClassifier({name: down for name in ["a.jpg", "b.jpg", "c.jpg", "d.jpg"]})

        with self.assertRaises(ServiceUnavailableError):
            run_sort(self.root, classifier, dry_run=False, workers=1, show_progress=False)

        self.assertEqual(classifier.calls, 1)
        self.assertEqual(snapshot(self.root), before)

    def test_service_probe_runs_first(self):
        self._touch("a.jpg")
        classifier = StubClassifier({})

        def check_service():
            raise ServiceUnavailableError("down")

        classifier.check_service = check_service

        with self.assertRaises(ServiceUnavailableError):
            run_sort(self.root, classifier, dry_run=False, show_progress=False)
        self.assertEqual(classifier.calls, 0)

    def test_cancellation_prevents_apply(self):
        for name in ["a.jpg", "b.jpg", "c.jpg"]:
            self._touch(name)
        before = snapshot(self.root)
        event = threading.Event()

        class CancellingClassifier(StubClassifier):
            def classify(self, entry):
                result = super().classify(entry)
                event.set()
                return result

        classifier = CancellingClassifier({})

        with self.assertRaises(PipelineCancelled) as ctx:
            run_sort(self.root, classifier, dry_run=False, workers=1,
                     cancel_event=event, show_progress=False)

        self.assertEqual(snapshot(self.root), before)
        self.assertEqual(classifier.calls, 1)
        self.assertEqual(len(ctx.exception.plan.moves), 1)


class TestSortWithOllama(PipelineTestCase):
    """Per-image failures from the real classifier stay per-image."""

    def setUp(self):
        super().setUp()
        self.session = MagicMock()
        tags = MagicMock()
        tags.json.return_value = {"models": [{"name": "moondream:1.8b"}]}
        self.session.get.return_value = tags
        client = OllamaClient(host="localhost:11434", model="moondream:1.8b",
                              session=self.session, sleep=lambda _: None)
        self.classifier = OllamaClassifier(client, categories=["cat", "dog"])

    def _image(self, name: str, size=(4, 4)) -> Path:
        path = self.root / name
        Image.new("RGB", size, "red").save(path)
        return path

    def test_broken_response_body_becomes_skip(self):
        self._image("a.png")
        self.session.post.side_effect = requests.exceptions.ChunkedEncodingError("connection broken mid-body")

        result = run_sort(self.root, self.classifier, dry_run=True, workers=1, show_progress=False)

        self.assertEqual((result.report.applied, result.report.skipped), (0, 1))
        self.assertIn("classification failed", result.plan.skips[0].reason)

    def test_oversized_image_becomes_skip(self):
        self._image("big.png", size=(400, 400))
        self._image("small.png")
        ok = MagicMock(status_code=200)
        ok.json.return_value = {"response": '{"category": "cat", "confidence": 0.9}'}
        self.session.post.return_value = ok

        with patch.object(Image, "MAX_IMAGE_PIXELS", 1000):
            result = run_sort(self.root, self.classifier, dry_run=True, workers=2, show_progress=False)

        self.assertEqual((result.report.applied, result.report.skipped), (1, 1))
        self.assertEqual(result.plan.skips[0].source, self.root / "big.png")


class TestClassifyEntries(PipelineTestCase):
    def test_results_keep_scan_order(self):
        for name in ["a.jpg", "b.jpg", "c.jpg", "d.jpg", "e.jpg"]:
            self._touch(name)
        entries = list(scan_directory(self.root))

        outcomes = classify_entries(entries, StubClassifier({}), workers=3, show_progress=False)

        self.assertEqual([e.name for e, _ in outcomes], ["a.jpg", "b.jpg", "c.jpg", "d.jpg", "e.jpg"])

    def test_in_flight_calls_are_bounded(self):
        for i in range(12):
            self._touch(f"{i:02d}.jpg")
        entries = list(scan_directory(self.root))
        lock = threading.Lock()
        state = {"current": 0, "peak": 0}

        class SlowClassifier(StubClassifier):
            def classify(self, entry):
                with lock:
                    state["current"] += 1
                    state["peak"] = max(state["peak"], state["current"])
                time.sleep(0.02)
                with lock:
                    state["current"] -= 1
                return super().classify(entry)

        outcomes = classify_entries(entries, SlowClassifier({}), workers=3, show_progress=False)

        self.assertEqual(len(outcomes), 12)
        self.assertLessEqual(state["peak"], 3)
        self.assertGreaterEqual(state["peak"], 1)


if __name__ == '__main__':
    unittest.main()

import io
import json
import os
import sys
import unittest
from unittest import mock


SCRIPTS_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "scripts"))
if SCRIPTS_DIR not in sys.path:
    sys.path.insert(0, SCRIPTS_DIR)

from narration.config import LoggingConfig  # noqa: E402
from narration.logging_utils import Logger  # noqa: E402


def _logger(level: str = "INFO", debug_events: bool = False) -> Logger:
    return Logger.create(
        LoggingConfig(level=level, heartbeat_seconds=1, debug_events=debug_events, include_event_ids=False)
    )


class LoggingUtilsTests(unittest.TestCase):
    def _capture(self, fn) -> list:
        with mock.patch("sys.stderr", new_callable=io.StringIO) as stderr:
            fn()
        return [line for line in stderr.getvalue().splitlines() if line]

    def test_line_carries_render_tag_and_fields(self) -> None:
        logger = _logger().for_run("r-123")
        lines = self._capture(lambda: logger.info("render_submitted", chunks=3))
        self.assertEqual(len(lines), 1)
        self.assertIn("[INFO]", lines[0])
        self.assertIn("[render:r-123]", lines[0])
        self.assertIn("render_submitted", lines[0])
        payload = json.loads(lines[0].split("render_submitted ", 1)[1])
        self.assertEqual(payload, {"chunks": 3})

    def test_bind_merges_context_into_every_line(self) -> None:
        logger = _logger().bind(index=2).bind(hash="abc")
        lines = self._capture(lambda: logger.warn("chunk_cache_store_failed", error="boom"))
        payload = json.loads(lines[0].split("chunk_cache_store_failed ", 1)[1])
        self.assertEqual(payload, {"index": 2, "hash": "abc", "error": "boom"})

    def test_level_threshold_filters_lines(self) -> None:
        logger = _logger(level="ERROR")
        lines = self._capture(lambda: (logger.info("quiet"), logger.warn("quiet"), logger.error("loud")))
        self.assertEqual(len(lines), 1)
        self.assertIn("loud", lines[0])

    def test_debug_requires_debug_events(self) -> None:
        self.assertEqual(self._capture(lambda: _logger(level="DEBUG").debug("hidden")), [])
        lines = self._capture(lambda: _logger(level="DEBUG", debug_events=True).debug("shown"))
        self.assertEqual(len(lines), 1)

    def test_timed_records_failure_outcome(self) -> None:
        logger = _logger()

        def run() -> None:
            with self.assertRaises(ValueError):
                with logger.timed("render_process", render_id="r1"):
                    raise ValueError("bad")

        lines = self._capture(run)
        self.assertIn("render_process_started", lines[0])
        finished = json.loads(lines[1].split("render_process_finished ", 1)[1])
        self.assertFalse(finished["ok"])
        self.assertEqual(finished["render_id"], "r1")
        self.assertIn("elapsed_ms", finished)

    def test_for_run_keeps_session(self) -> None:
        base = _logger()
        child = base.for_run("r9")
        self.assertEqual(child.session_id, base.session_id)
        self.assertEqual(base.render_id, "-")
        self.assertEqual(child.for_run("").render_id, "r9")


if __name__ == "__main__":
    unittest.main()

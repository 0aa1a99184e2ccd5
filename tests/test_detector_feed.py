"""
Tests for the detector events feed.

Covers:
- Parsing event lines
- Incremental polling with partial lines
- Truncated files and bad input
"""

import json
import pytest
from unittest.mock import Mock
from pathlib import Path

# Add parent directory to path for imports
import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from examshield.detector_feed import DetectorFeed
from examshield.models import ViolationCategory


def event_line(category, **extra):
    return json.dumps(dict(category=category, **extra)) + "\n"


@pytest.fixture
def events_file(tmp_path):
    path = tmp_path / "events.jsonl"
    path.write_text("", encoding="utf-8")
    return path


class TestParseEvent:
    """Test event parsing."""

    def test_category_only(self, events_file):
        """Test an event without screenshot."""
        feed = DetectorFeed(events_file, Mock())

        assert feed.parse_event('{"category": "noFace"}') == (ViolationCategory.NO_FACE, None)

    def test_with_screenshot(self, events_file):
        """Test screenshot evidence is attached."""
        feed = DetectorFeed(events_file, Mock())
        line = json.dumps({
            "category": "cellPhone",
            "screenshot": {"url": "https://cdn/shot.png", "detectedAt": "2026-03-01T12:00:00Z"}
        })

        category, screenshot = feed.parse_event(line)

        assert category == ViolationCategory.CELL_PHONE
        assert screenshot.url == "https://cdn/shot.png"
        assert screenshot.category == ViolationCategory.CELL_PHONE
        assert screenshot.detected_at.year == 2026

    @pytest.mark.parametrize("line", ["not json", '{"category": "yawning"}', '{"other": 1}', "[1, 2]"])
    def test_bad_lines(self, events_file, line):
        """Test invalid lines are logged and skipped."""
        logger = Mock()
        feed = DetectorFeed(events_file, Mock(), session_logger=logger)

        assert feed.parse_event(line) is None
        assert logger.call_args.args[0] == "DETECTOR_BAD_EVENT"


class TestPolling:
    """Test incremental polling."""

    def test_forwards_new_events(self, events_file):
        """Test each appended event is forwarded once."""
        handler = Mock()
        feed = DetectorFeed(events_file, handler)

        with open(events_file, "a", encoding="utf-8") as f:
            f.write(event_line("noFace"))
            f.write(event_line("multipleFace"))

        assert feed.poll_once() == 2
        assert feed.poll_once() == 0
        assert [c.args[0] for c in handler.call_args_list] == [
            ViolationCategory.NO_FACE, ViolationCategory.MULTIPLE_FACE
        ]

    def test_partial_line_waits(self, events_file):
        """Test an unterminated line is held until it is completed."""
        handler = Mock()
        feed = DetectorFeed(events_file, handler)

        with open(events_file, "a", encoding="utf-8") as f:
            f.write('{"category": "cell')
        assert feed.poll_once() == 0

        with open(events_file, "a", encoding="utf-8") as f:
            f.write('Phone"}\n')
        assert feed.poll_once() == 1
        handler.assert_called_once_with(ViolationCategory.CELL_PHONE, None)

    def test_skip_existing(self, events_file):
        """Test events written before the session are ignored."""
        events_file.write_text(event_line("noFace"), encoding="utf-8")
        handler = Mock()
        feed = DetectorFeed(events_file, handler)
        feed.skip_existing()

        assert feed.poll_once() == 0
        handler.assert_not_called()

    def test_truncated_file(self, events_file):
        """Test a truncated file is read again from the start."""
        handler = Mock()
        feed = DetectorFeed(events_file, handler)
        events_file.write_text(event_line("noFace") * 3, encoding="utf-8")
        feed.poll_once()

        events_file.write_text(event_line("prohibitedObject"), encoding="utf-8")

        assert feed.poll_once() == 1
        assert handler.call_args.args[0] == ViolationCategory.PROHIBITED_OBJECT

    def test_bad_line_does_not_stop_feed(self, events_file):
        """Test valid events after a bad line are still forwarded."""
        handler = Mock()
        feed = DetectorFeed(events_file, handler)
        events_file.write_text("garbage\n" + event_line("noFace"), encoding="utf-8")

        assert feed.poll_once() == 1

    def test_missing_file(self, tmp_path):
        """Test polling a file that doesn't exist yet."""
        feed = DetectorFeed(tmp_path / "missing.jsonl", Mock())

        assert feed.poll_once() == 0


class TestMonitoring:
    """Test the background thread."""

    def test_start_stop(self, events_file):
        """Test monitoring starts once and stops cleanly."""
        logger = Mock()
        feed = DetectorFeed(events_file, Mock(), session_logger=logger, poll_interval=0.01)

        feed.start_monitoring()
        feed.start_monitoring()
        assert feed.monitoring_active is True
        feed.stop_monitoring()

        events = [c.args[0] for c in logger.call_args_list]
        assert events.count("DETECTOR_MONITORING_STARTED") == 1
        assert "DETECTOR_MONITORING_STOPPED" in events
        assert not feed.detection_thread.is_alive()

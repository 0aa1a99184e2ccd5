"""
Detector feed.

An external proctoring detector appends one JSON object per line to an
events file:

    {"category": "cellPhone", "screenshot": {"url": "...", "detectedAt": "..."}}

DetectorFeed tails that file and forwards every event to a handler
(normally SessionController.record_violation).
"""

import json
import threading
import time
from pathlib import Path
from typing import Callable, Optional

from .models import Screenshot, ViolationCategory, parse_timestamp


class DetectorFeed:
    """Tails a detector events file in a background thread."""

    def __init__(
        self,
        events_path: Path,
        handler: Callable[[ViolationCategory, Optional[Screenshot]], object],
        session_logger=None,
        poll_interval: float = 1.0
    ):
        self.events_path = Path(events_path)
        self.handler = handler
        self.session_logger = session_logger
        self.poll_interval = poll_interval
        self.monitoring_active = False
        self.detection_thread = None
        self._offset = 0
        self._partial = b""

    def _log(self, event: str, details: str = ""):
        if self.session_logger:
            self.session_logger(event, details)

    def skip_existing(self):
        """Ignore events written before the session started."""
        if self.events_path.exists():
            self._offset = self.events_path.stat().st_size

    def parse_event(self, line: str):
        """
        Parse one events-file line.

        Returns:
            Tuple of (category, screenshot or None), or None if the line is not a valid event
        """
        try:
            data = json.loads(line)
            category = ViolationCategory(data["category"])
        except (json.JSONDecodeError, KeyError, TypeError, ValueError):
            self._log("DETECTOR_BAD_EVENT", line[:200])
            return None

        screenshot = None
        shot = data.get("screenshot")
        if isinstance(shot, dict) and shot.get("url"):
            screenshot = Screenshot(
                url=shot["url"],
                category=category,
                detected_at=parse_timestamp(shot.get("detectedAt"))
            )
        return category, screenshot

    def poll_once(self) -> int:
        """
        Forward events appended since the last poll.

        Returns:
            Number of events forwarded
        """
        if not self.events_path.exists():
            return 0

        size = self.events_path.stat().st_size
        if size < self._offset:
            # File was truncated or replaced
            self._offset = 0
            self._partial = b""

        with open(self.events_path, 'rb') as f:
            f.seek(self._offset)
            chunk = f.read()
            self._offset = f.tell()

        lines = (self._partial + chunk).split(b"\n")
        # Last element is an unterminated line (or empty)
        self._partial = lines.pop()

        forwarded = 0
        for raw in lines:
            line = raw.decode('utf-8', errors='replace').strip()
            if not line:
                continue
            event = self.parse_event(line)
            if event is None:
                continue
            self.handler(*event)
            forwarded += 1
        return forwarded

    def start_monitoring(self):
        """Start tailing the events file."""
        if self.monitoring_active:
            return

        self.monitoring_active = True
        self.detection_thread = threading.Thread(
            target=self._monitor_background,
            daemon=True
        )
        self.detection_thread.start()
        self._log("DETECTOR_MONITORING_STARTED", f"Watching {self.events_path}")

    def stop_monitoring(self):
        """Stop tailing the events file."""
        self.monitoring_active = False
        if self.detection_thread and self.detection_thread.is_alive():
            self.detection_thread.join(timeout=2.0)
        self._log("DETECTOR_MONITORING_STOPPED", "Detector feed stopped")

    def _monitor_background(self):
        """Background monitoring loop."""
        while self.monitoring_active:
            try:
                self.poll_once()
                time.sleep(self.poll_interval)
            except OSError as e:
                self._log("DETECTOR_MONITORING_ERROR", f"Monitoring error: {e}")
                time.sleep(self.poll_interval * 5)

"""
Append-only session log.

Every line reads "[YYYY-mm-dd HH:MM:SS] - EVENT - details". A SessionLog's
log() method is the session_logger callable handed to the controller, the
submission service, the detector feed and the CLI.
"""

import threading
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Tuple


class SessionLog:
    """Writes session events to a file and keeps them in memory."""

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path is not None else None
        self.entries: List[Tuple[str, str]] = []
        self._lock = threading.Lock()

    def log(self, event: str, details: str = ""):
        """Append an entry to the session log."""
        timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        log_entry = f"[{timestamp}] - {event}"
        if details:
            log_entry += f" - {details}"
        log_entry += "\n"

        with self._lock:
            self.entries.append((event, details))
            if self.path is not None:
                with open(self.path, 'a', encoding='utf-8') as f:
                    f.write(log_entry)

    __call__ = log

    def events(self) -> List[str]:
        """Event names logged so far, in order."""
        with self._lock:
            return [event for event, _ in self.entries]

"""
Per-question countdown timers for coding questions.

Each coding question owns an independent countdown that pauses when the
candidate navigates away and resumes from the saved value when they return.
Ticks come from an explicit TickScheduler driven by an injectable clock, so
timer behavior can be replayed deterministically in tests.
"""

import threading
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Dict, Optional


class TimerState(str, Enum):
    NOT_STARTED = "not_started"
    RUNNING = "running"
    PAUSED = "paused"
    EXPIRED = "expired"
    COMPLETED = "completed"


@dataclass
class CodingTimerState:
    """Countdown state of one coding question."""
    remaining_seconds: int
    state: TimerState = TimerState.NOT_STARTED

    @property
    def is_running(self) -> bool:
        return self.state == TimerState.RUNNING

    @property
    def is_completed(self) -> bool:
        return self.state == TimerState.COMPLETED

    @property
    def is_expired(self) -> bool:
        return self.state == TimerState.EXPIRED


def format_seconds(seconds: Optional[int]) -> str:
    """Format a countdown as MM:SS."""
    if seconds is None:
        return "00:00"
    minutes = seconds // 60
    return f"{minutes:02d}:{seconds % 60:02d}"


class QuestionTimerBank:
    """
    Holds one countdown per coding question index.

    At most one timer is RUNNING at any time. start() pauses whichever timer
    is running before resuming the requested one, under a single lock, so a
    question switch never leaves two countdowns active.
    """

    def __init__(self):
        self._timers: Dict[int, CodingTimerState] = {}
        self._running_index: Optional[int] = None
        self._lock = threading.RLock()

    @property
    def running_index(self) -> Optional[int]:
        return self._running_index

    def get(self, index: int) -> Optional[CodingTimerState]:
        """Return a copy of the timer state for a question, or None if never visited."""
        with self._lock:
            timer = self._timers.get(index)
            return replace(timer) if timer else None

    def start(self, index: int, duration_minutes: int) -> CodingTimerState:
        """
        Start or resume the countdown of a question.

        A saved remaining time is always reused; the duration only seeds a
        question visited for the first time. Completed questions never
        resume and expired ones stay at zero.
        """
        with self._lock:
            if self._running_index is not None and self._running_index != index:
                self.pause(self._running_index)

            timer = self._timers.get(index)
            if timer is None:
                timer = CodingTimerState(remaining_seconds=int(duration_minutes * 60))
                self._timers[index] = timer

            if timer.state in (TimerState.COMPLETED, TimerState.EXPIRED):
                return replace(timer)

            if timer.remaining_seconds <= 0:
                timer.remaining_seconds = 0
                timer.state = TimerState.EXPIRED
                return replace(timer)

            timer.state = TimerState.RUNNING
            self._running_index = index
            return replace(timer)

    def tick(self, index: int) -> bool:
        """
        Count down one second.

        Returns:
            True if this tick expired the timer
        """
        with self._lock:
            timer = self._timers.get(index)
            if timer is None or timer.state != TimerState.RUNNING:
                return False

            timer.remaining_seconds = max(0, timer.remaining_seconds - 1)
            if timer.remaining_seconds == 0:
                timer.state = TimerState.EXPIRED
                self._running_index = None
                return True
            return False

    def pause(self, index: int) -> None:
        """Pause a running countdown, keeping its remaining time."""
        with self._lock:
            timer = self._timers.get(index)
            if timer is None or timer.state != TimerState.RUNNING:
                return
            timer.state = TimerState.PAUSED
            if self._running_index == index:
                self._running_index = None

    def mark_completed(self, index: int) -> None:
        """Stop a question's countdown for good after a successful run."""
        with self._lock:
            timer = self._timers.get(index)
            if timer is None:
                raise ValueError(f"Coding question {index + 1} was never opened")
            timer.state = TimerState.COMPLETED
            if self._running_index == index:
                self._running_index = None

    def to_dict(self) -> dict:
        with self._lock:
            return {
                str(index): {
                    "remaining_seconds": timer.remaining_seconds,
                    "state": timer.state.value,
                }
                for index, timer in self._timers.items()
            }

    @staticmethod
    def from_dict(data: dict) -> 'QuestionTimerBank':
        """
        Rebuild a bank from saved state.

        Timers that were running when saved come back paused; the controller
        resumes the current question explicitly.
        """
        bank = QuestionTimerBank()
        for key, value in data.items():
            state = TimerState(value.get("state", TimerState.PAUSED.value))
            if state == TimerState.RUNNING:
                state = TimerState.PAUSED
            bank._timers[int(key)] = CodingTimerState(
                remaining_seconds=int(value.get("remaining_seconds", 0)),
                state=state
            )
        return bank


class ManualClock:
    """A clock that only moves when told to. Used to drive ticks deterministically."""

    def __init__(self, start: float = 0.0):
        self._now = start

    def __call__(self) -> float:
        return self._now

    def advance(self, seconds: float) -> None:
        self._now += seconds


class TickScheduler:
    """
    Single-threaded interval scheduler.

    Jobs run when run_pending() is called, once per elapsed interval, so
    ticks missed between two calls are caught up rather than dropped.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic, interval: float = 1.0):
        if interval <= 0:
            raise ValueError("Tick interval must be positive")
        self.clock = clock
        self.interval = interval
        self._jobs: Dict[str, Callable[[], None]] = {}
        self._last = clock()

    def add_job(self, name: str, callback: Callable[[], None]) -> None:
        self._jobs[name] = callback

    def remove_job(self, name: str) -> None:
        self._jobs.pop(name, None)

    def reset(self) -> None:
        """Drop any partially elapsed interval."""
        self._last = self.clock()

    def run_pending(self) -> int:
        """
        Run every job once per interval elapsed since the last call.

        Returns:
            Number of intervals that elapsed
        """
        elapsed = self.clock() - self._last
        ticks = int(elapsed // self.interval)
        if ticks <= 0:
            return 0

        self._last += ticks * self.interval
        for _ in range(ticks):
            for job in list(self._jobs.values()):
                job()
        return ticks

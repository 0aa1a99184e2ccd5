"""
Violation counting and escalation policy.

The policy is a pure function of the flags already fired and the new total,
so every escalation path can be tested without a session or a UI.
"""

import threading
from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional, Tuple

from .models import Screenshot, ViolationCategory, ViolationTally


DEFAULT_WARN_THRESHOLD = 5
DEFAULT_AUTO_SUBMIT_THRESHOLD = 10


class Transition(str, Enum):
    WARN = "warn"
    FINAL_WARN = "final_warn"
    AUTO_SUBMIT = "auto_submit"


@dataclass(frozen=True)
class EscalationFlags:
    """Which one-shot transitions already fired in this session."""
    warned: bool = False
    final_warned: bool = False
    auto_submitted: bool = False


def escalate(
    flags: EscalationFlags,
    new_total: int,
    warn_threshold: int = DEFAULT_WARN_THRESHOLD,
    auto_submit_threshold: int = DEFAULT_AUTO_SUBMIT_THRESHOLD
) -> Tuple[EscalationFlags, Tuple[Transition, ...]]:
    """
    Decide which transition, if any, a new violation total triggers.

    Bands:
        0 < total <= warn_threshold               -> WARN
        warn_threshold < total < auto_threshold   -> FINAL_WARN
        total >= auto_threshold                   -> AUTO_SUBMIT

    Each transition fires at most once. Once AUTO_SUBMIT has fired nothing
    else does.

    Returns:
        Tuple of (new flags, transitions to emit)
    """
    if flags.auto_submitted or new_total <= 0:
        return flags, ()

    if new_total >= auto_submit_threshold:
        return replace(flags, auto_submitted=True), (Transition.AUTO_SUBMIT,)

    if new_total > warn_threshold:
        if flags.final_warned:
            return flags, ()
        return replace(flags, final_warned=True), (Transition.FINAL_WARN,)

    if flags.warned:
        return flags, ()
    return replace(flags, warned=True), (Transition.WARN,)


class ViolationCounter:
    """Owns the violation tally and escalation flags of the active session."""

    def __init__(
        self,
        warn_threshold: int = DEFAULT_WARN_THRESHOLD,
        auto_submit_threshold: int = DEFAULT_AUTO_SUBMIT_THRESHOLD
    ):
        self.warn_threshold = warn_threshold
        self.auto_submit_threshold = auto_submit_threshold
        self._tally = ViolationTally()
        self._flags = EscalationFlags()
        self._lock = threading.Lock()

    @property
    def tally(self) -> ViolationTally:
        return self._tally

    @property
    def flags(self) -> EscalationFlags:
        return self._flags

    def total(self) -> int:
        return self._tally.total()

    def restore(self, tally: ViolationTally, flags: EscalationFlags) -> None:
        """Reload a saved tally and its fired transitions (session resume)."""
        with self._lock:
            self._tally = tally
            self._flags = flags

    def record(
        self,
        category: ViolationCategory,
        screenshot: Optional[Screenshot] = None
    ) -> Tuple[Transition, ...]:
        """
        Count one detector event.

        Returns:
            Transitions the new total triggers (usually empty)
        """
        with self._lock:
            self._tally = self._tally.with_increment(category, screenshot)
            self._flags, transitions = escalate(
                self._flags,
                self._tally.total(),
                self.warn_threshold,
                self.auto_submit_threshold
            )
            return transitions

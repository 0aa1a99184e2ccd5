"""
Attempt gate: decides whether a student may start or submit an attempt.

The gate never trusts a cached count. Callers pass the attempt records they
just loaded, and the count is recomputed from them on every decision.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Sequence

from .errors import AttemptsExhausted, ExamExpired, ExamNotLive
from .models import AttemptRecord, ExamConfig


NOT_LIVE = "ExamNotLive"
EXPIRED = "ExamExpired"
EXHAUSTED = "AttemptsExhausted"


@dataclass(frozen=True)
class AttemptDecision:
    """Outcome of an admission check."""
    allowed: bool
    remaining: int
    current_count: int
    max_attempts: int
    reason: Optional[str] = None


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


def window_status(exam: ExamConfig, now: datetime) -> Optional[str]:
    """
    Check the live/dead window.

    A bound that could not be parsed is stored as None and skipped.

    Returns:
        None when inside the window, otherwise NOT_LIVE or EXPIRED
    """
    now = _as_utc(now)
    if exam.live_at is not None and now < exam.live_at:
        return NOT_LIVE
    if exam.dead_at is not None and now > exam.dead_at:
        return EXPIRED
    return None


def can_start_attempt(
    exam: ExamConfig,
    prior_attempts: Sequence[AttemptRecord],
    now: datetime
) -> AttemptDecision:
    """
    Decide whether a new attempt may start.

    Args:
        exam: Exam being attempted
        prior_attempts: Every stored attempt of this student at this exam
        now: Current time

    Returns:
        AttemptDecision with the remaining attempt count and, when refused,
        the failure kind in `reason`
    """
    max_attempts = exam.max_attempts or 1
    current_count = len(prior_attempts)
    remaining = max(0, max_attempts - current_count)

    reason = window_status(exam, now)
    if reason is None and current_count >= max_attempts:
        reason = EXHAUSTED

    return AttemptDecision(
        allowed=reason is None,
        remaining=remaining,
        current_count=current_count,
        max_attempts=max_attempts,
        reason=reason
    )


def check_submission(
    exam: ExamConfig,
    prior_attempts: Sequence[AttemptRecord],
    now: datetime
) -> int:
    """
    Re-run the gate at submission time.

    This check is authoritative: an attempt started before the limit was
    reached is still rejected if another attempt completed in between.

    Returns:
        The attempt number the new record must use

    Raises:
        ExamNotLive, ExamExpired, AttemptsExhausted
    """
    decision = can_start_attempt(exam, prior_attempts, now)
    raise_for_decision(decision)
    return decision.current_count + 1


def raise_for_decision(decision: AttemptDecision) -> None:
    """Turn a refused admission decision into the matching exception."""
    if decision.allowed:
        return
    if decision.reason == NOT_LIVE:
        raise ExamNotLive("Exam has not started yet")
    if decision.reason == EXPIRED:
        raise ExamExpired("Exam has expired")
    raise AttemptsExhausted(
        f"You have already used all {decision.max_attempts} attempt(s) for this exam"
    )

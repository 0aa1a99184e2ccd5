"""
Tests for the attempt gate.

Covers:
- Attempt counting against maxAttempts
- The live/dead exam window, including unparseable bounds
- Submission-time re-checks
"""

import pytest
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Add parent directory to path for imports
import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from examshield.attempt_gate import (
    EXHAUSTED, EXPIRED, NOT_LIVE, can_start_attempt, check_submission
)
from examshield.errors import AttemptsExhausted, ExamExpired, ExamNotLive
from examshield.models import AttemptRecord, ExamConfig


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def make_exam(max_attempts=1, live_at=NOW - timedelta(days=1), dead_at=NOW + timedelta(days=1)):
    return ExamConfig(exam_id="exam1", max_attempts=max_attempts, live_at=live_at, dead_at=dead_at)


def attempts(n):
    return [AttemptRecord("exam1", "s1", i + 1) for i in range(n)]


class TestAttemptCount:
    """Test attempt counting."""

    def test_first_attempt_allowed(self):
        """Test a fresh candidate is admitted."""
        decision = can_start_attempt(make_exam(), [], NOW)

        assert decision.allowed is True
        assert decision.remaining == 1
        assert decision.current_count == 0
        assert decision.reason is None

    @pytest.mark.parametrize("max_attempts", [1, 3, 10])
    def test_exactly_n_attempts(self, max_attempts):
        """Test max_attempts = n admits exactly n attempts."""
        exam = make_exam(max_attempts=max_attempts)

        for used in range(max_attempts):
            assert can_start_attempt(exam, attempts(used), NOW).allowed

        decision = can_start_attempt(exam, attempts(max_attempts), NOW)
        assert decision.allowed is False
        assert decision.reason == EXHAUSTED
        assert decision.remaining == 0

    def test_count_recomputed_from_records(self):
        """Test the count comes from the records passed in."""
        exam = make_exam(max_attempts=3)

        assert can_start_attempt(exam, attempts(2), NOW).remaining == 1
        assert can_start_attempt(exam, attempts(1), NOW).remaining == 2


class TestExamWindow:
    """Test the live/dead window."""

    def test_before_live(self):
        """Test an exam that has not opened yet."""
        exam = make_exam(live_at=NOW + timedelta(hours=1))
        decision = can_start_attempt(exam, [], NOW)

        assert decision.allowed is False
        assert decision.reason == NOT_LIVE

    def test_after_dead(self):
        """Test an exam whose window has closed."""
        exam = make_exam(dead_at=NOW - timedelta(hours=1))

        assert can_start_attempt(exam, [], NOW).reason == EXPIRED

    def test_window_takes_precedence_over_exhaustion(self):
        """Test a closed window is reported even when attempts are used up."""
        exam = make_exam(dead_at=NOW - timedelta(hours=1))

        assert can_start_attempt(exam, attempts(1), NOW).reason == EXPIRED

    def test_missing_bounds_are_open(self):
        """Test an unparseable (None) bound leaves that side of the window open."""
        exam = make_exam(live_at=None, dead_at=None)

        assert can_start_attempt(exam, [], NOW).allowed is True

    def test_naive_now_treated_as_utc(self):
        """Test a naive datetime is compared as UTC."""
        naive = NOW.replace(tzinfo=None)

        assert can_start_attempt(make_exam(), [], naive).allowed is True


class TestCheckSubmission:
    """Test the submission-time re-check."""

    def test_returns_next_attempt_number(self):
        """Test the next attempt number is prior count + 1."""
        assert check_submission(make_exam(max_attempts=3), attempts(2), NOW) == 3

    def test_exhausted_at_submission(self):
        """Test an attempt completed in between blocks the submission."""
        with pytest.raises(AttemptsExhausted):
            check_submission(make_exam(max_attempts=1), attempts(1), NOW)

    def test_not_live_at_submission(self):
        """Test ExamNotLive is raised before the window opens."""
        with pytest.raises(ExamNotLive):
            check_submission(make_exam(live_at=NOW + timedelta(minutes=5)), [], NOW)

    def test_expired_at_submission(self):
        """Test ExamExpired is raised after the window closes."""
        with pytest.raises(ExamExpired):
            check_submission(make_exam(dead_at=NOW - timedelta(seconds=1)), [], NOW)

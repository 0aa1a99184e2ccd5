"""
Tests for the session controller.

Covers:
- Admission and the MCQ phase
- Coding navigation with independent per-question timers
- Violation escalation and auto-submit (including concurrent triggers)
- Normal finish, persistence failures and session resume
"""

import threading
import time
import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock, patch
from pathlib import Path

# Add parent directory to path for imports
import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from examshield.config_loader import SessionSettings
from examshield.errors import (
    AlreadyFinalized, AttemptsExhausted, ExamNotLive, PersistenceFailure, SessionStateError
)
from examshield.models import (
    AUTO_SUBMIT_REASON, CodingQuestionSpec, ExamConfig, McqQuestion, Option, ViolationCategory
)
from examshield.sandbox import ExecutionResult
from examshield.session import Phase, SessionController, starter_code
from examshield.session_log import SessionLog
from examshield.store import InMemoryRecordStore, JsonRecordStore
from examshield.submissions import SubmissionService
from examshield.timers import ManualClock, TimerState
from examshield.violations import Transition


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def make_exam(max_attempts=1, coding_durations=(30, 30), live_at=None):
    questions = tuple(
        McqQuestion(
            question_id=f"q{i}",
            text=f"Question {i}",
            options=(Option("a", "A", True), Option("b", "B", False)),
            points_if_positive=10
        )
        for i in range(1, 6)
    )
    coding = tuple(
        CodingQuestionSpec(prompt=f"Task {i + 1}", description=f"Solve task {i + 1}", duration_minutes=d)
        for i, d in enumerate(coding_durations)
    )
    return ExamConfig(
        exam_id="exam1",
        name="Exam One",
        questions=questions,
        coding_questions=coding,
        max_attempts=max_attempts,
        live_at=live_at or NOW - timedelta(days=1),
        dead_at=NOW + timedelta(days=1)
    )


class Harness:
    """A controller wired to an in-memory store and a manual clock."""

    def __init__(self, exam=None, store=None, code_runner=None, settings=None):
        self.store = store or InMemoryRecordStore([exam or make_exam()], now_fn=lambda: NOW)
        self.service = SubmissionService(self.store, now_fn=lambda: NOW)
        self.clock = ManualClock()
        self.log = SessionLog()
        self.notify = Mock()
        self.code_runner = code_runner or Mock(return_value=ExecutionResult("success", "ok\n"))
        self.controller = self.new_controller(settings)

    def new_controller(self, settings=None, exam_ref="exam1"):
        return SessionController(
            exam_ref,
            "s1",
            self.service,
            settings=settings or SessionSettings(retry_backoff_seconds=0),
            clock=self.clock,
            now_fn=lambda: NOW,
            session_logger=self.log.log,
            notify=self.notify,
            code_runner=self.code_runner,
            sleep=Mock()
        )

    def notified(self):
        return [c.args[0] for c in self.notify.call_args_list]

    def to_coding(self):
        self.controller.start()
        for i in range(1, 6):
            self.controller.answer(f"q{i}", "a")
        self.controller.finalize_mcq()
        self.controller.open_coding()
        return self.controller


class SlowStore(InMemoryRecordStore):
    """Store whose attempt writes take a while."""

    def create_attempt(self, *args, **kwargs):
        time.sleep(0.2)
        return super().create_attempt(*args, **kwargs)


class StallingStore(InMemoryRecordStore):
    """Store whose first attempt write outlasts the persistence timeout."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.create_calls = 0

    def create_attempt(self, *args, **kwargs):
        self.create_calls += 1
        if self.create_calls == 1:
            time.sleep(0.3)
        return super().create_attempt(*args, **kwargs)


class FlakyJsonStore(JsonRecordStore):
    """JSON store whose first file write fails."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.failures_left = 1

    def _write_json(self, path, payload):
        if self.failures_left:
            self.failures_left -= 1
            raise OSError("disk full")
        super()._write_json(path, payload)


class TestAdmission:
    """Test admission."""

    def test_start(self):
        """Test an admitted session enters the MCQ phase."""
        h = Harness()
        decision = h.controller.start()

        assert decision.allowed is True
        assert h.controller.phase == Phase.MCQ
        assert "SESSION_START" in h.log.events()

    def test_exhausted(self):
        """Test a candidate without attempts left is not shown the exam."""
        h = Harness()
        h.store.create_attempt("exam1", "s1", {})

        with pytest.raises(AttemptsExhausted):
            h.controller.start()
        assert h.controller.phase == Phase.NOT_ADMITTED
        assert "ADMISSION_DENIED" in h.log.events()

    def test_not_live(self):
        """Test an exam that has not opened yet."""
        h = Harness(make_exam(live_at=NOW + timedelta(hours=2)))

        with pytest.raises(ExamNotLive):
            h.controller.start()

    def test_start_twice(self):
        """Test start() is only valid once."""
        h = Harness()
        h.controller.start()

        with pytest.raises(SessionStateError):
            h.controller.start()


class TestMcqPhase:
    """Test the MCQ phase."""

    def test_perfect_score_scenario(self):
        """Test maxAttempts=1 with 5/5 correct gives 50 and blocks a second attempt."""
        h = Harness()
        h.controller.start()
        for i in range(1, 6):
            h.controller.answer(f"q{i}", "a")

        record = h.controller.finalize_mcq()

        assert record.score == 50
        assert record.status == "submitted"
        assert h.controller.current_attempt.attempt_number == 1
        with pytest.raises(AttemptsExhausted):
            h.new_controller().start()

    def test_reanswer_replaces(self):
        """Test answering a question twice keeps only the last answer."""
        h = Harness()
        h.controller.start()
        h.controller.answer("q1", "b")
        h.controller.answer("q1", "a")

        assert len(h.controller.answers) == 1
        assert h.controller.finalize_mcq().score == 10

    def test_finalize_twice(self):
        """Test a second finalize is rejected."""
        h = Harness()
        h.controller.start()
        h.controller.finalize_mcq()

        with pytest.raises(AlreadyFinalized):
            h.controller.finalize_mcq()
        assert len(h.store.list_attempts("exam1", "s1")) == 1

    def test_concurrent_finalize(self):
        """Test a finalize while another is in flight is rejected."""
        exam = make_exam(max_attempts=3)
        h = Harness(store=SlowStore([exam], now_fn=lambda: NOW))
        h.controller.start()
        errors = []

        def worker():
            try:
                h.controller.finalize_mcq()
            except AlreadyFinalized as e:
                errors.append(e)

        threads = [threading.Thread(target=worker) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(errors) == 1
        assert len(h.store.list_attempts("exam1", "s1")) == 1

    def test_answer_after_finalize(self):
        """Test answers can't change once submitted."""
        h = Harness(make_exam(coding_durations=()))
        h.controller.start()
        h.controller.finalize_mcq()

        with pytest.raises(AlreadyFinalized):
            h.controller.answer("q1", "a")

    def test_no_coding_questions(self):
        """Test an MCQ-only exam can be finished right after the MCQ submit."""
        h = Harness(make_exam(coding_durations=()))
        h.controller.start()
        h.controller.answer("q1", "a")
        h.controller.finalize_mcq()

        assert h.controller.phase == Phase.MCQ
        record = h.controller.finish()

        assert record.score == 10
        assert h.controller.phase == Phase.TERMINAL
        assert record.coding_answer is None


class TestRetriedSubmits:
    """Test that retried MCQ submits never consume a second attempt."""

    def test_timed_out_submit_not_duplicated(self):
        """Test a submit that outlives its timeout is stored once."""
        store = StallingStore([make_exam(max_attempts=3)], now_fn=lambda: NOW)
        h = Harness(store=store, settings=SessionSettings(retry_backoff_seconds=0, persistence_timeout_seconds=0.1))
        h.controller.start()
        for i in range(1, 6):
            h.controller.answer(f"q{i}", "a")

        record = h.controller.finalize_mcq()
        time.sleep(0.5)

        attempts = store.list_attempts("exam1", "s1")
        assert store.create_calls == 2
        assert [a.attempt_number for a in attempts] == [1]
        assert record.attempt_number == 1

    def test_failed_write_not_duplicated(self, tmp_path):
        """Test a submit whose file write failed is stored once after the retry."""
        exam = make_exam(max_attempts=3)
        h = Harness(store=FlakyJsonStore(tmp_path, [exam], now_fn=lambda: NOW))
        h.controller.start()

        record = h.controller.finalize_mcq()

        reopened = JsonRecordStore(tmp_path, [exam])
        assert [a.attempt_number for a in reopened.list_attempts("exam1", "s1")] == [1]
        assert record.attempt_number == 1
        assert h.controller.phase == Phase.CODING


class TestCodingTimers:
    """Test per-question timers driven through the controller."""

    def test_round_trip(self):
        """Test A runs 10 s, B runs 5 s, and A resumes at original - 10."""
        h = Harness()
        controller = h.to_coding()

        h.clock.advance(10)
        controller.pump()
        controller.go_to(1)
        h.clock.advance(5)
        controller.pump()
        state = controller.go_to(0)

        assert abs(state.remaining_seconds - (1800 - 10)) <= 1
        assert controller.timers.get(1).remaining_seconds == 1795
        assert controller.timers.get(1).state == TimerState.PAUSED

    def test_navigation_flushes_pending_ticks(self):
        """Test time elapsed before a switch is credited to the question left."""
        h = Harness()
        controller = h.to_coding()

        h.clock.advance(10)
        controller.next_question()

        assert controller.timers.get(0).remaining_seconds == 1790
        assert controller.timers.get(1).remaining_seconds == 1800

    def test_single_running_timer(self):
        """Test only the current question counts down."""
        h = Harness()
        controller = h.to_coding()
        controller.next_question()

        h.clock.advance(3)
        controller.pump()

        assert controller.timers.running_index == 1
        assert controller.timers.get(0).remaining_seconds == 1800

    def test_bounds(self):
        """Test next/prev stop at the ends and go_to validates the index."""
        h = Harness()
        controller = h.to_coding()

        assert controller.previous_question() is None
        controller.next_question()
        assert controller.next_question() is None
        with pytest.raises(ValueError):
            controller.go_to(5)

    def test_time_up(self):
        """Test an expiring question notifies once."""
        h = Harness(make_exam(coding_durations=(1,)))
        controller = h.to_coding()

        h.clock.advance(61)
        controller.pump()

        assert controller.timers.get(0).state == TimerState.EXPIRED
        h.notify.assert_any_call("time_up", "Time's up for Question 1!")
        assert h.notified().count("time_up") == 1
        assert "TIMER_EXPIRED" in h.log.events()

    def test_pump_outside_coding(self):
        """Test pump() is a no-op outside the coding phase."""
        h = Harness()
        h.controller.start()
        h.clock.advance(5)

        assert h.controller.pump() == 0


class TestCodeBuffers:
    """Test code buffers and code runs."""

    def test_starter_code(self):
        """Test a new buffer holds the description and a placeholder."""
        h = Harness()
        controller = h.to_coding()

        code, language = controller.current_code()

        assert language == "python"
        assert code == "# Solve task 1\n\n# Write your code here..."

    def test_buffers_survive_navigation(self):
        """Test each question keeps its own code."""
        h = Harness()
        controller = h.to_coding()
        controller.edit_code("print('a')")
        controller.next_question()
        controller.edit_code("print('b')")
        controller.previous_question()

        assert controller.current_code() == ("print('a')", "python")

    def test_set_language(self):
        """Test switching language rewrites untouched starter code only."""
        h = Harness()
        controller = h.to_coding()
        controller.set_language("javascript")

        assert controller.current_code() == (starter_code("Solve task 1", "javascript"), "javascript")

        controller.edit_code("console.log(1)")
        controller.set_language("python")
        assert controller.current_code() == ("console.log(1)", "python")

    def test_unsupported_language(self):
        """Test unknown languages are refused."""
        h = Harness()
        controller = h.to_coding()

        with pytest.raises(ValueError):
            controller.set_language("cobol")

    def test_successful_run_completes_question(self):
        """Test a successful run stops the question's timer for good."""
        h = Harness()
        controller = h.to_coding()
        controller.edit_code("print(1)")
        h.clock.advance(4)

        result = controller.run_code()

        assert result.ok
        h.code_runner.assert_called_once_with("print(1)", "python", 5.0, 256)
        assert controller.timers.get(0).state == TimerState.COMPLETED
        assert controller.timers.get(0).remaining_seconds == 1796
        h.clock.advance(10)
        controller.pump()
        assert controller.timers.get(0).remaining_seconds == 1796

    def test_failed_run_keeps_timer(self):
        """Test a failing run leaves the question open; runs are unlimited."""
        runner = Mock(return_value=ExecutionResult("runtime_error", "", "Traceback"))
        h = Harness(code_runner=runner)
        controller = h.to_coding()

        controller.run_code()
        controller.run_code()

        assert runner.call_count == 2
        assert controller.timers.get(0).state == TimerState.RUNNING
        assert h.log.events().count("CODE_RUN") == 2


class TestEscalation:
    """Test violation escalation through the controller."""

    def test_warnings_then_auto_submit(self):
        """Test ten events warn once, warn finally once, then auto-submit."""
        h = Harness()
        controller = h.to_coding()

        fired = []
        for _ in range(10):
            fired.extend(controller.record_violation(ViolationCategory.CELL_PHONE))

        assert fired == [Transition.WARN, Transition.FINAL_WARN, Transition.AUTO_SUBMIT]
        assert h.notified() == ["warning", "final_warning", "auto_submitted"]
        h.notify.assert_any_call("warning", "Please focus on your exam.")
        h.notify.assert_any_call(
            "final_warning", "Final warning: If you cross 10 violations, your exam will be auto-submitted."
        )
        assert controller.phase == Phase.TERMINAL

        attempt = h.store.list_attempts("exam1", "s1")[0]
        assert attempt.status == "auto_failed"
        assert attempt.reason == AUTO_SUBMIT_REASON
        assert attempt.coding_answer is not None
        log = h.store.list_violation_logs("exam1", "s1")[0]
        assert log.tally.cell_phone == 10
        assert log.reason == AUTO_SUBMIT_REASON

    def test_events_after_terminal_ignored(self):
        """Test nothing fires after the session ended."""
        h = Harness()
        controller = h.to_coding()
        for _ in range(10):
            controller.record_violation(ViolationCategory.NO_FACE)

        assert controller.record_violation(ViolationCategory.NO_FACE) == ()
        assert controller.violations.total() == 10

    def test_auto_submit_in_mcq_phase(self):
        """Test auto-submit during MCQ stores the collected answers as auto_failed."""
        h = Harness()
        h.controller.start()
        h.controller.answer("q1", "a")
        h.controller.answer("q2", "a")

        assert h.controller.auto_submit() is True

        attempts = h.store.list_attempts("exam1", "s1")
        assert len(attempts) == 1
        assert attempts[0].score == 20
        assert attempts[0].status == "auto_failed"
        assert h.controller.phase == Phase.TERMINAL

    def test_auto_submit_idempotent_under_race(self):
        """Test two concurrent auto-submits persist exactly one auto_failed attempt."""
        exam = make_exam(max_attempts=3)
        h = Harness(store=SlowStore([exam], now_fn=lambda: NOW))
        h.controller.start()
        barrier = threading.Barrier(2)
        results = []

        def worker():
            barrier.wait()
            results.append(h.controller.auto_submit())

        threads = [threading.Thread(target=worker) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(results) == [False, True]
        attempts = h.store.list_attempts("exam1", "s1")
        assert len(attempts) == 1
        assert attempts[0].status == "auto_failed"
        assert h.controller.auto_submit() is False
        assert h.notified().count("auto_submitted") == 1

    def test_auto_submit_survives_store_failure(self):
        """Test the session ends even when every write fails."""
        h = Harness()
        controller = h.to_coding()

        with patch.object(h.store, "append_attempt", side_effect=OSError("down")), \
                patch.object(h.store, "save_violation_log", side_effect=OSError("down")):
            assert controller.auto_submit() is True

        assert controller.phase == Phase.TERMINAL
        assert h.log.events().count("AUTO_SUBMIT_ERROR") == 3
        assert "auto_submitted" in h.notified()

    def test_auto_submit_before_admission(self):
        """Test auto-submit does nothing before the session started."""
        h = Harness()

        assert h.controller.auto_submit() is False
        assert h.controller.phase == Phase.NOT_ADMITTED


class TestFinish:
    """Test normal finish."""

    def test_finish(self):
        """Test the coding answer and violation log are saved and status stays submitted."""
        h = Harness()
        controller = h.to_coding()
        controller.edit_code("print(42)")
        controller.record_violation(ViolationCategory.NO_FACE)

        record = controller.finish()

        assert record.status == "submitted"
        assert record.score == 50
        assert record.coding_answer.code == "print(42)"
        assert h.store.list_violation_logs("exam1", "s1")[0].tally.no_face == 1
        assert controller.phase == Phase.TERMINAL
        assert h.notified()[-1] == "terminal"
        assert "SESSION_FINISH" in h.log.events()

    def test_finish_twice(self):
        """Test a finished session can't be finished again."""
        h = Harness()
        controller = h.to_coding()
        controller.finish()

        with pytest.raises(AlreadyFinalized):
            controller.finish()

    def test_finish_before_mcq(self):
        """Test finish requires the MCQ submit."""
        h = Harness()
        h.controller.start()

        with pytest.raises(SessionStateError):
            h.controller.finish()

    def test_persistence_failure_is_retryable(self):
        """Test a failed save keeps the session open and a retry succeeds."""
        h = Harness()
        controller = h.to_coding()

        with patch.object(h.store, "append_attempt", side_effect=OSError("down")):
            with pytest.raises(PersistenceFailure):
                controller.finish()

        assert controller.phase == Phase.CODING
        assert "toast" in h.notified()

        record = controller.finish()
        assert record.coding_answer is not None
        assert controller.phase == Phase.TERMINAL

    def test_violation_log_failure_still_finishes(self):
        """Test a failed violation log save only shows a toast."""
        h = Harness()
        controller = h.to_coding()

        with patch.object(h.store, "save_violation_log", side_effect=OSError("down")):
            controller.finish()

        assert controller.phase == Phase.TERMINAL
        h.notify.assert_any_call("toast", "Test submitted but failed to save monitoring logs")

    def test_auto_submit_during_failed_finish(self):
        """Test a finish whose save fails after an auto-submit reports the auto-submit."""
        h = Harness(settings=SessionSettings(retry_backoff_seconds=0, persistence_retries=1))
        controller = h.to_coding()
        for _ in range(9):
            controller.record_violation(ViolationCategory.NO_FACE)
        original = h.store.append_attempt
        calls = []

        def save_then_fail(*args, **kwargs):
            if not calls:
                calls.append(args)
                controller.record_violation(ViolationCategory.NO_FACE)
                raise OSError("down")
            return original(*args, **kwargs)

        with patch.object(h.store, "append_attempt", side_effect=save_then_fail):
            with pytest.raises(AlreadyFinalized):
                controller.finish()

        assert controller.phase == Phase.TERMINAL
        assert h.store.list_attempts("exam1", "s1")[0].status == "auto_failed"
        assert "auto_submitted" in h.notified()
        assert "toast" not in h.notified()


class TestResume:
    """Test resuming an interrupted session."""

    def test_resume_coding(self):
        """Test timers, buffers and violations come back without a new attempt."""
        h = Harness()
        controller = h.to_coding()
        controller.edit_code("partial")
        for _ in range(5):
            controller.record_violation(ViolationCategory.NO_FACE)
        h.clock.advance(20)
        state = controller.snapshot()

        resumed = h.new_controller()
        resumed.resume(state)
        timer = resumed.open_coding()

        assert resumed.phase == Phase.CODING
        assert resumed.current_attempt.attempt_number == 1
        assert timer.remaining_seconds == 1780
        assert resumed.current_code() == ("partial", "python")
        assert resumed.violations.total() == 5
        assert resumed.violations.flags.warned is True
        assert resumed.violations.flags.final_warned is False
        assert len(h.store.list_attempts("exam1", "s1")) == 1

    def test_resume_before_mcq_submit(self):
        """Test a session interrupted in the MCQ phase goes through admission again."""
        h = Harness()
        h.controller.start()
        h.controller.answer("q1", "a")
        state = h.controller.snapshot()

        resumed = h.new_controller()
        resumed.resume(state)

        assert resumed.phase == Phase.MCQ
        assert [a.question_id for a in resumed.answers] == ["q1"]

    def test_resume_auto_failed(self):
        """Test an auto-submitted attempt can't be resumed."""
        h = Harness()
        controller = h.to_coding()
        state = controller.snapshot()
        controller.auto_submit()

        with pytest.raises(SessionStateError):
            h.new_controller().resume(state)

    def test_resume_other_exam_rejected(self):
        """Test a snapshot from another exam is not applied."""
        other = ExamConfig(exam_id="exam2", name="Exam Two", questions=make_exam().questions)
        h = Harness(store=InMemoryRecordStore([make_exam(), other], now_fn=lambda: NOW))
        controller = h.to_coding()
        for _ in range(7):
            controller.record_violation(ViolationCategory.NO_FACE)
        state = controller.snapshot()

        resumed = h.new_controller(exam_ref="exam2")
        with pytest.raises(SessionStateError):
            resumed.resume(state)

        assert resumed.phase == Phase.NOT_ADMITTED
        assert resumed.violations.total() == 0

    def test_resume_after_unacknowledged_submit(self):
        """Test a session saved just before its MCQ submit was confirmed reattaches."""
        h = Harness()
        h.controller.start()
        for i in range(1, 6):
            h.controller.answer(f"q{i}", "a")
        state = h.controller.snapshot()
        h.controller.finalize_mcq()

        resumed = h.new_controller()
        resumed.resume(state)

        assert resumed.phase == Phase.CODING
        assert resumed.current_attempt.attempt_number == 1
        assert len(h.store.list_attempts("exam1", "s1")) == 1

"""
Session controller: one candidate taking one exam.

Drives the phases NOT_ADMITTED -> MCQ -> CODING -> TERMINAL, owns the
per-question timers, the violation counter and the explicit current attempt,
and funnels every record store call through call_with_retry(). State is
mutated under one re-entrant lock; store calls run outside of it.
"""

import threading
import time
import uuid
from collections import OrderedDict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from .attempt_gate import AttemptDecision, raise_for_decision
from .config_loader import SessionSettings
from .errors import (
    AlreadyFinalized, ExamError, PersistenceFailure, SessionStateError, SubmissionNotFound
)
from .messages import msg
from .models import (
    AUTO_SUBMIT_REASON, AnswerRecord, AttemptRecord, ExamConfig, Screenshot,
    SessionStatus, ViolationCategory, ViolationTally
)
from .persistence import call_with_retry
from .sandbox import ExecutionResult, run_code
from .submissions import SubmissionService
from .timers import CodingTimerState, QuestionTimerBank, TickScheduler
from .violations import EscalationFlags, Transition, ViolationCounter


SUPPORTED_LANGUAGES = ("python", "javascript")

_COMMENT_PREFIX = {"python": "#", "javascript": "//"}

TIMER_JOB = "question_timer"


class Phase(str, Enum):
    NOT_ADMITTED = "not_admitted"
    MCQ = "mcq"
    CODING = "coding"
    TERMINAL = "terminal"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def starter_code(description: str, language: str) -> str:
    """Initial editor contents of a coding question."""
    prefix = _COMMENT_PREFIX.get(language, "//")
    if description:
        return f"{prefix} {description}\n\n{prefix} Write your code here..."
    return f"{prefix} Write your code here..."


class SessionController:
    """
    Runs one exam session.

    Args:
        exam_ref: Exam id or exam code
        student_id: Candidate identifier
        service: Submission service backed by the record store
        settings: Session settings (thresholds, timeouts, limits)
        clock: Monotonic clock driving the coding timers
        now_fn: Wall clock used for admission checks
        session_logger: Optional callable(event, details)
        notify: Optional callable(kind, message) for UI effects
        code_runner: Callable(code, language, timeout_sec, memory_limit_mb)
                     returning an ExecutionResult
        sleep: Sleep used between persistence retries
    """

    def __init__(
        self,
        exam_ref: str,
        student_id: str,
        service: SubmissionService,
        settings: Optional[SessionSettings] = None,
        clock: Callable[[], float] = time.monotonic,
        now_fn: Callable[[], datetime] = _utcnow,
        session_logger: Optional[Callable[[str, str], None]] = None,
        notify: Optional[Callable[[str, str], None]] = None,
        code_runner: Callable[..., ExecutionResult] = run_code,
        sleep: Callable[[float], None] = time.sleep
    ):
        self.exam_ref = exam_ref
        self.student_id = student_id
        self.service = service
        self.settings = settings or SessionSettings()
        self.now_fn = now_fn
        self.session_logger = session_logger
        self.notify_fn = notify
        self.code_runner = code_runner
        self.sleep = sleep

        self.phase = Phase.NOT_ADMITTED
        self.exam: Optional[ExamConfig] = None
        self.decision: Optional[AttemptDecision] = None
        self.current_attempt: Optional[AttemptRecord] = None
        self.current_index = 0

        self.violations = ViolationCounter(
            self.settings.warn_threshold,
            self.settings.auto_submit_threshold
        )
        self.timers = QuestionTimerBank()
        self.scheduler = TickScheduler(clock, self.settings.tick_interval_seconds)
        self.scheduler.add_job(TIMER_JOB, self._tick)

        self._answers: "OrderedDict[str, AnswerRecord]" = OrderedDict()
        self._codes: Dict[int, str] = {}
        self._languages: Dict[int, str] = {}

        self._lock = threading.RLock()
        self._claim_lock = threading.Lock()
        self._mcq_lock = threading.Lock()
        self._submitting: Optional[str] = None
        self._auto_submit_pending = False
        # Sent with every MCQ submit of this session; retries reuse it
        self._submission_id = uuid.uuid4().hex

    # ===== INTERNALS =====

    def _log(self, event: str, details: str = "") -> None:
        if self.session_logger:
            self.session_logger(event, details)

    def _notify(self, kind: str, message: str) -> None:
        if self.notify_fn:
            self.notify_fn(kind, message)

    def _persist(self, fn: Callable[..., Any], *args, auto: bool = False, label: str = "", **kwargs) -> Any:
        retries = self.settings.auto_submit_retries if auto else self.settings.persistence_retries
        return call_with_retry(
            fn,
            *args,
            attempts=retries,
            timeout=self.settings.persistence_timeout_seconds,
            backoff=self.settings.retry_backoff_seconds,
            label=label,
            session_logger=self.session_logger,
            sleep=self.sleep,
            **kwargs
        )

    def _require(self, *phases: Phase) -> None:
        if self.phase not in phases:
            expected = ", ".join(p.value for p in phases)
            raise SessionStateError(f"Not allowed in phase '{self.phase.value}' (expected {expected})")

    def _claim(self, kind: str) -> bool:
        """Atomically take the right to finalize; kind is "finish" or "auto"."""
        with self._claim_lock:
            if self.phase == Phase.TERMINAL:
                return False
            if self._submitting is not None:
                if kind == "auto" and self._submitting == "finish":
                    # Runs once the normal finish gives up
                    self._auto_submit_pending = True
                return False
            self._submitting = kind
            return True

    def _release_claim(self) -> bool:
        """Give up the claim; returns True if a held-back auto-submit ran."""
        with self._claim_lock:
            self._submitting = None
            pending = self._auto_submit_pending
            self._auto_submit_pending = False
        if pending:
            return self.auto_submit()
        return False

    def _enter_terminal(self) -> None:
        with self._lock:
            running = self.timers.running_index
            if running is not None:
                self.timers.pause(running)
            self.phase = Phase.TERMINAL

    @property
    def is_finished(self) -> bool:
        return self.phase == Phase.TERMINAL

    @property
    def answers(self) -> List[AnswerRecord]:
        with self._lock:
            return list(self._answers.values())

    # ===== ADMISSION =====

    def start(self) -> AttemptDecision:
        """
        Ask the gate whether this candidate may start.

        Raises:
            ExamNotFound, AttemptsExhausted, ExamNotLive, ExamExpired
        """
        with self._lock:
            self._require(Phase.NOT_ADMITTED)

        exam = self._persist(self.service.store.find_exam, self.exam_ref, label="find_exam")
        decision = self._persist(
            self.service.check_attempts, exam.exam_id, self.student_id, self.now_fn(),
            label="check_attempts"
        )
        if not decision.allowed:
            self._log(
                "ADMISSION_DENIED",
                f"Exam: {exam.exam_id}, Student: {self.student_id}, Reason: {decision.reason}"
            )
            raise_for_decision(decision)

        with self._lock:
            self.exam = exam
            self.decision = decision
            self.phase = Phase.MCQ

        self._log(
            "SESSION_START",
            f"Exam: {exam.exam_id}, Student: {self.student_id}, "
            f"Attempt: {decision.current_count + 1}/{decision.max_attempts}"
        )
        return decision

    # ===== MCQ PHASE =====

    def answer(self, question_id: str, option_id: str) -> AnswerRecord:
        """Buffer an answer; answering the same question again replaces it."""
        with self._lock:
            self._require(Phase.MCQ)
            if self.current_attempt is not None:
                raise AlreadyFinalized("MCQ section was already submitted")
            record = AnswerRecord(question_id=str(question_id), selected_option_id=str(option_id))
            self._answers[record.question_id] = record
            return record

    def finalize_mcq(self) -> AttemptRecord:
        """
        Submit the buffered MCQ answers and open the coding phase.

        The returned record becomes current_attempt; every later coding
        write targets it.

        Raises:
            AlreadyFinalized: A finalize is in flight or already done
            PersistenceFailure: The store could not be reached
            AttemptsExhausted, ExamNotLive, ExamExpired: Gate re-check failed
        """
        if not self._mcq_lock.acquire(blocking=False):
            raise AlreadyFinalized("MCQ answers are already being submitted")
        try:
            with self._lock:
                if self.current_attempt is not None:
                    raise AlreadyFinalized("MCQ section was already submitted")
                self._require(Phase.MCQ)
                if self._submitting is not None:
                    raise SessionStateError("Exam is being submitted")
                answers = list(self._answers.values())

            try:
                record = self._persist(
                    self.service.submit_mcq, self.exam.exam_id, self.student_id, answers,
                    submission_id=self._submission_id, label="submit_mcq"
                )
            except PersistenceFailure as e:
                self._notify("toast", msg("save_failed", error=e))
                raise

            with self._lock:
                self.current_attempt = record
                if self.exam.coding_questions:
                    self.phase = Phase.CODING
            return record
        finally:
            self._mcq_lock.release()

    # ===== CODING PHASE =====

    def _coding_count(self) -> int:
        return len(self.exam.coding_questions) if self.exam else 0

    def _ensure_buffer(self, index: int) -> None:
        if index not in self._languages:
            self._languages[index] = self.settings.default_language
        if index not in self._codes:
            description = self.exam.coding_questions[index].description
            self._codes[index] = starter_code(description, self._languages[index])

    def _activate(self, index: int) -> CodingTimerState:
        self._ensure_buffer(index)
        duration = self.exam.coding_questions[index].duration_minutes
        return self.timers.start(index, duration)

    def _tick(self) -> None:
        index = self.timers.running_index
        if index is None:
            return
        if self.timers.tick(index):
            self._log("TIMER_EXPIRED", f"Coding question {index + 1}")
            self._notify("time_up", msg("time_up", number=index + 1))

    def open_coding(self) -> CodingTimerState:
        """Show the current coding question and start (or resume) its timer."""
        with self._lock:
            self._require(Phase.CODING)
            self.scheduler.reset()
            return self._activate(self.current_index)

    def go_to(self, index: int) -> CodingTimerState:
        """
        Switch to another coding question.

        Pending ticks are credited to the question being left before its
        timer is paused; the target resumes from its saved remaining time.
        """
        with self._lock:
            self._require(Phase.CODING)
            if index < 0 or index >= self._coding_count():
                raise ValueError(f"No coding question {index + 1}")

            self.scheduler.run_pending()
            if index != self.current_index:
                self.timers.pause(self.current_index)
                self.current_index = index
            return self._activate(index)

    def next_question(self) -> Optional[CodingTimerState]:
        with self._lock:
            if self.current_index >= self._coding_count() - 1:
                return None
            return self.go_to(self.current_index + 1)

    def previous_question(self) -> Optional[CodingTimerState]:
        with self._lock:
            if self.current_index <= 0:
                return None
            return self.go_to(self.current_index - 1)

    def current_code(self) -> Tuple[str, str]:
        """Code and language of the current question."""
        with self._lock:
            self._require(Phase.CODING)
            self._ensure_buffer(self.current_index)
            return self._codes[self.current_index], self._languages[self.current_index]

    def edit_code(self, code: str) -> None:
        with self._lock:
            self._require(Phase.CODING)
            self._codes[self.current_index] = code

    def set_language(self, language: str) -> None:
        """Change the language of the current question."""
        language = language.lower()
        if language not in SUPPORTED_LANGUAGES:
            raise ValueError(f"Unsupported language: {language}")

        with self._lock:
            self._require(Phase.CODING)
            index = self.current_index
            self._ensure_buffer(index)
            description = self.exam.coding_questions[index].description
            # Untouched starter code follows the language's comment style
            if self._codes[index] == starter_code(description, self._languages[index]):
                self._codes[index] = starter_code(description, language)
            self._languages[index] = language

    def run_code(self) -> ExecutionResult:
        """
        Run the current question's code.

        Runs are unlimited. The first run without an execution error marks
        the question completed and stops its timer for good.
        """
        with self._lock:
            self._require(Phase.CODING)
            index = self.current_index
            self._ensure_buffer(index)
            code = self._codes[index]
            language = self._languages[index]

        result = self.code_runner(
            code,
            language,
            self.settings.run_timeout_seconds,
            self.settings.run_memory_limit_mb
        )
        self._log("CODE_RUN", f"Question: {index + 1}, Language: {language}, Status: {result.status}")

        if result.ok:
            with self._lock:
                if self.phase == Phase.CODING:
                    self.scheduler.run_pending()
                    self.timers.mark_completed(index)
        return result

    def time_remaining(self) -> Optional[CodingTimerState]:
        with self._lock:
            return self.timers.get(self.current_index)

    def pump(self) -> int:
        """Run the coding timer for every tick interval elapsed since the last pump."""
        with self._lock:
            if self.phase != Phase.CODING:
                return 0
            return self.scheduler.run_pending()

    # ===== PROCTORING =====

    def record_violation(
        self,
        category: ViolationCategory,
        screenshot: Optional[Screenshot] = None
    ) -> Tuple[Transition, ...]:
        """
        Count one detector event and apply the escalation it triggers.

        Events arriving before admission or after the session ended are
        ignored.
        """
        category = ViolationCategory(category)
        with self._lock:
            if self.phase in (Phase.NOT_ADMITTED, Phase.TERMINAL):
                return ()
            transitions = self.violations.record(category, screenshot)
            total = self.violations.total()

        self._log("VIOLATION", f"Category: {category.value}, Total: {total}")

        for transition in transitions:
            if transition == Transition.WARN:
                self._log("WARNING_SHOWN", f"Total: {total}")
                self._notify("warning", msg("warning"))
            elif transition == Transition.FINAL_WARN:
                self._log("FINAL_WARNING_SHOWN", f"Total: {total}")
                self._notify("final_warning", msg("final_warning"))
            elif transition == Transition.AUTO_SUBMIT:
                self.auto_submit()
        return transitions

    # ===== FINALIZATION =====

    def auto_submit(self) -> bool:
        """
        Finalize the session because of too many violations.

        Best effort: each store call is tried on its own and failures are
        logged, but the session always ends up TERMINAL.

        Returns:
            False if another finalize already claimed the session
        """
        with self._lock:
            if self.phase == Phase.NOT_ADMITTED:
                return False

        if not self._claim("auto"):
            return False

        self._log("AUTO_SUBMIT", f"Violations: {self.violations.total()}")
        try:
            # Waits for an in-flight MCQ finalize to settle
            with self._mcq_lock:
                self._auto_submit_records()
        finally:
            self._enter_terminal()
            self._notify("auto_submitted", msg("auto_submitted"))
        return True

    def _auto_submit_records(self) -> None:
        with self._lock:
            attempt = self.current_attempt
            answers = list(self._answers.values())
            tally = self.violations.tally
            code = language = None
            if attempt is not None and self._coding_count():
                self._ensure_buffer(self.current_index)
                code = self._codes[self.current_index]
                language = self._languages[self.current_index]

        exam_id = self.exam.exam_id
        mcq_auto_failed = False
        if attempt is None:
            try:
                attempt = self._persist(
                    self.service.submit_mcq, exam_id, self.student_id, answers,
                    status=SessionStatus.AUTO_FAILED, reason=AUTO_SUBMIT_REASON,
                    submission_id=self._submission_id,
                    auto=True, label="submit_mcq"
                )
                # An earlier finalize may already have stored this submission
                mcq_auto_failed = attempt.status == SessionStatus.AUTO_FAILED.value
                with self._lock:
                    self.current_attempt = attempt
            except (ExamError, ValueError) as e:
                self._log("AUTO_SUBMIT_ERROR", f"MCQ submission failed: {e}")
        elif code:
            try:
                self._persist(
                    self.service.submit_coding, exam_id, self.student_id, code, language,
                    attempt_number=attempt.attempt_number, auto=True, label="submit_coding"
                )
            except (ExamError, ValueError) as e:
                self._log("AUTO_SUBMIT_ERROR", f"Coding submission failed: {e}")

        attempt_number = attempt.attempt_number if attempt is not None else None
        try:
            self._persist(
                self.service.save_violation_log, exam_id, self.student_id, tally,
                reason=AUTO_SUBMIT_REASON, attempt_number=attempt_number,
                auto=True, label="save_violation_log"
            )
        except (ExamError, ValueError) as e:
            self._log("AUTO_SUBMIT_ERROR", f"Violation log failed: {e}")

        if attempt is not None and not mcq_auto_failed:
            try:
                updated = self._persist(
                    self.service.update_status, exam_id, self.student_id, attempt_number,
                    SessionStatus.AUTO_FAILED, AUTO_SUBMIT_REASON,
                    auto=True, label="update_status"
                )
                with self._lock:
                    self.current_attempt = updated
            except (ExamError, ValueError) as e:
                self._log("AUTO_SUBMIT_ERROR", f"Status update failed: {e}")

    def finish(self) -> AttemptRecord:
        """
        Finish the exam normally.

        Persists the current coding answer and the violation log; the
        attempt keeps status 'submitted'. If the coding answer can't be
        saved the session stays open so the candidate can retry.

        Raises:
            AlreadyFinalized: The session already ended, is ending, or was
                              auto-submitted while the answer was being saved
            SessionStateError: The MCQ section was not submitted yet
            PersistenceFailure: The coding answer could not be saved
        """
        with self._lock:
            if self.phase == Phase.TERMINAL:
                raise AlreadyFinalized("Exam was already submitted")
            if self.current_attempt is None:
                raise SessionStateError("Submit the MCQ section first")

        if not self._claim("finish"):
            raise AlreadyFinalized("Exam is already being submitted")

        with self._lock:
            attempt = self.current_attempt
            tally = self.violations.tally
            code = language = None
            if self._coding_count():
                self._ensure_buffer(self.current_index)
                code = self._codes[self.current_index]
                language = self._languages[self.current_index]

        exam_id = self.exam.exam_id
        if code:
            try:
                attempt = self._persist(
                    self.service.submit_coding, exam_id, self.student_id, code, language,
                    attempt_number=attempt.attempt_number, label="submit_coding"
                )
            except ExamError as e:
                self._log("SUBMIT_ERROR", f"Coding submission failed: {e}")
                if self._release_claim():
                    raise AlreadyFinalized("Exam was auto-submitted") from e
                self._notify("toast", msg("save_failed", error=e))
                raise

        try:
            self._persist(
                self.service.save_violation_log, exam_id, self.student_id, tally,
                attempt_number=attempt.attempt_number, label="save_violation_log"
            )
        except ExamError as e:
            self._log("SUBMIT_ERROR", f"Violation log failed: {e}")
            self._notify("toast", msg("log_save_failed"))

        with self._lock:
            self.current_attempt = attempt
        self._enter_terminal()
        self._log(
            "SESSION_FINISH",
            f"Attempt: {attempt.attempt_number}, Score: {attempt.score}, Violations: {tally.total()}"
        )
        self._notify("terminal", msg("terminal"))
        return attempt

    # ===== RESUME =====

    def snapshot(self) -> dict:
        """Serializable session state, used to resume an interrupted session."""
        with self._lock:
            if self.phase == Phase.CODING:
                self.scheduler.run_pending()
            flags = self.violations.flags
            return {
                "examRef": self.exam_ref,
                "studentId": self.student_id,
                "submissionId": self._submission_id,
                "attemptNumber": self.current_attempt.attempt_number if self.current_attempt else None,
                "answers": [a.to_dict() for a in self._answers.values()],
                "currentIndex": self.current_index,
                "timers": self.timers.to_dict(),
                "codes": {str(i): code for i, code in self._codes.items()},
                "languages": {str(i): lang for i, lang in self._languages.items()},
                "violations": self.violations.tally.to_dict(),
                "flags": {
                    "warned": flags.warned,
                    "final_warned": flags.final_warned,
                    "auto_submitted": flags.auto_submitted,
                },
            }

    def resume(self, state: dict) -> None:
        """
        Continue a session from a snapshot.

        A session interrupted before the MCQ submit goes through admission
        again; one interrupted in the coding phase reattaches to its attempt
        without consuming another one.

        Raises:
            SubmissionNotFound: The saved attempt no longer exists
            SessionStateError: The snapshot belongs to another exam or
                               student, or its attempt was auto-submitted
        """
        if state.get("examRef") != self.exam_ref or state.get("studentId") != self.student_id:
            raise SessionStateError(
                f"Saved session is for exam '{state.get('examRef')}', "
                f"student '{state.get('studentId')}'"
            )

        submission_id = state.get("submissionId")
        if submission_id:
            self._submission_id = submission_id

        attempt_number = state.get("attemptNumber")
        if attempt_number is None and submission_id:
            # The MCQ submit may have been stored without the answer reaching us
            exam = self._persist(self.service.store.find_exam, self.exam_ref, label="find_exam")
            attempts = self._persist(
                self.service.store.list_attempts, exam.exam_id, self.student_id,
                label="list_attempts"
            )
            for attempt in attempts:
                if attempt.submission_id == submission_id:
                    attempt_number = attempt.attempt_number

        if attempt_number is None:
            self.start()
        else:
            with self._lock:
                self._require(Phase.NOT_ADMITTED)
            exam = self._persist(self.service.store.find_exam, self.exam_ref, label="find_exam")
            attempts = self._persist(
                self.service.store.list_attempts, exam.exam_id, self.student_id,
                label="list_attempts"
            )
            matching = [a for a in attempts if a.attempt_number == attempt_number]
            if not matching:
                raise SubmissionNotFound(f"Attempt {attempt_number} not found")
            attempt = matching[0]
            if attempt.status == SessionStatus.AUTO_FAILED.value:
                raise SessionStateError("This attempt was auto-submitted and cannot be resumed")

            with self._lock:
                self.exam = exam
                self.current_attempt = attempt
                self.phase = Phase.CODING if exam.coding_questions else Phase.MCQ

        with self._lock:
            for data in state.get("answers", []):
                record = AnswerRecord.from_dict(data)
                self._answers[record.question_id] = record
            self.timers = QuestionTimerBank.from_dict(state.get("timers", {}))
            self._codes = {int(k): v for k, v in state.get("codes", {}).items()}
            self._languages = {int(k): v for k, v in state.get("languages", {}).items()}
            count = self._coding_count()
            index = int(state.get("currentIndex", 0))
            self.current_index = index if 0 <= index < count else 0
            flags = state.get("flags", {})
            self.violations.restore(
                ViolationTally.from_dict(state.get("violations", {})),
                EscalationFlags(
                    warned=bool(flags.get("warned")),
                    final_warned=bool(flags.get("final_warned")),
                    auto_submitted=bool(flags.get("auto_submitted"))
                )
            )

        self._log(
            "SESSION_RESUME",
            f"Exam: {self.exam.exam_id}, Student: {self.student_id}, Attempt: {attempt_number}"
        )

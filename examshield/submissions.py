"""
Submission service: the server side of an exam session.

Re-runs the attempt gate at submission time, scores MCQ answers, attaches
coding answers and violation logs to the student's attempt, and provides the
teacher-facing status/score/approval operations.
"""

import numbers
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from .attempt_gate import AttemptDecision, can_start_attempt, check_submission
from .errors import ExamNotFound, SessionStateError, SubmissionNotFound
from .models import (
    AnswerRecord, AttemptRecord, CodingAnswer, RECORD_STATUSES, SessionStatus,
    ViolationLog, ViolationTally
)
from .scoring import score
from .store import RecordStore


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_status(status: Union[SessionStatus, str, None]) -> str:
    """Map an incoming status to a stored one; anything unknown becomes 'submitted'."""
    allowed = {s.value for s in RECORD_STATUSES}
    value = status.value if isinstance(status, SessionStatus) else status
    if value in allowed:
        return value
    return SessionStatus.SUBMITTED.value


class SubmissionService:
    """Finalizes attempts against a record store."""

    def __init__(
        self,
        store: RecordStore,
        now_fn: Callable[[], datetime] = _utcnow,
        session_logger: Optional[Callable[[str, str], None]] = None
    ):
        self.store = store
        self.now_fn = now_fn
        self.session_logger = session_logger

    def _log(self, event: str, details: str = "") -> None:
        if self.session_logger:
            self.session_logger(event, details)

    # ===== STUDENT OPERATIONS =====

    def check_attempts(
        self,
        exam_ref: str,
        student_id: str,
        now: Optional[datetime] = None
    ) -> AttemptDecision:
        """Admission decision for a new attempt."""
        exam = self.store.find_exam(exam_ref)
        prior = self.store.list_attempts(exam.exam_id, student_id)
        return can_start_attempt(exam, prior, now or self.now_fn())

    def submit_mcq(
        self,
        exam_ref: str,
        student_id: str,
        answers: Iterable[AnswerRecord],
        now: Optional[datetime] = None,
        status: Union[SessionStatus, str, None] = None,
        reason: Optional[str] = None,
        submission_id: Optional[str] = None
    ) -> AttemptRecord:
        """
        Score MCQ answers and create the student's next attempt.

        Calls repeated with the same submission_id return the attempt the
        first call created, so a retried submission never uses up another
        attempt.

        Raises:
            ExamNotLive, ExamExpired, AttemptsExhausted: gate re-check failed
        """
        exam = self.store.find_exam(exam_ref)
        prior = self.store.list_attempts(exam.exam_id, student_id)
        if submission_id:
            for existing in prior:
                if existing.submission_id == submission_id:
                    return existing
        check_submission(exam, prior, now or self.now_fn())

        questions = self.store.list_questions(exam.exam_id)
        result = score(questions, answers)

        patch: Dict[str, Any] = {
            "score": result.total_score,
            "answers": list(result.graded_answers),
            "status": normalize_status(status),
            "reason": reason,
            "submission_id": submission_id,
        }
        record = self.store.create_attempt(
            exam.exam_id, student_id, patch, max_attempts=exam.max_attempts
        )
        self._log(
            "MCQ_SUBMITTED",
            f"Exam: {exam.exam_id}, Student: {student_id}, Attempt: {record.attempt_number}, "
            f"Score: {record.score}, Status: {record.status}"
        )
        return record

    def submit_coding(
        self,
        exam_ref: str,
        student_id: str,
        code: str,
        language: str,
        attempt_number: Optional[int] = None
    ) -> AttemptRecord:
        """
        Attach a coding answer to an existing attempt.

        Raises:
            SubmissionNotFound: No MCQ attempt exists yet
        """
        if not code or not language:
            raise ValueError("Please provide both code and language")

        exam = self.store.find_exam(exam_ref)
        return self.store.append_attempt(
            exam.exam_id,
            student_id,
            {"coding_answer": CodingAnswer(code=code, language=language)},
            attempt_number
        )

    def save_violation_log(
        self,
        exam_ref: str,
        student_id: str,
        tally: ViolationTally,
        reason: Optional[str] = None,
        attempt_number: Optional[int] = None,
        status: Union[SessionStatus, str, None] = None
    ) -> ViolationLog:
        """
        Persist a violation tally for a student's attempt.

        When a status is given the attempt is reclassified as well (the
        auto-submit path passes auto_failed here).
        """
        exam = self.store.find_exam(exam_ref)
        log = ViolationLog(
            exam_id=exam.exam_id,
            student_id=student_id,
            tally=tally,
            attempt_number=attempt_number,
            reason=reason
        )
        saved = self.store.save_violation_log(log)
        self._log(
            "VIOLATION_LOG_SAVED",
            f"Exam: {exam.exam_id}, Student: {student_id}, Total: {tally.total()}"
        )
        if status is not None:
            self.update_status(exam.exam_id, student_id, attempt_number, status, reason)
        return saved

    # ===== TEACHER / SYSTEM OPERATIONS =====

    def update_status(
        self,
        exam_ref: str,
        student_id: str,
        attempt_number: Optional[int],
        status: Union[SessionStatus, str],
        reason: Optional[str] = None
    ) -> AttemptRecord:
        """
        Reclassify an attempt.

        auto_failed is terminal: such an attempt can be marked auto_failed
        again but never moved back to another status.
        """
        value = status.value if isinstance(status, SessionStatus) else status
        if value not in {s.value for s in RECORD_STATUSES}:
            raise ValueError(f"Invalid status: {value}")

        exam = self.store.find_exam(exam_ref)
        current = self._find_attempt(exam.exam_id, student_id, attempt_number)
        if current.status == SessionStatus.AUTO_FAILED.value and value != current.status:
            raise SessionStateError("Attempt was auto-failed and cannot be reclassified")

        patch: Dict[str, Any] = {"status": value}
        if reason is not None:
            patch["reason"] = reason
        return self.store.append_attempt(exam.exam_id, student_id, patch, current.attempt_number)

    def update_score(
        self,
        exam_ref: str,
        student_id: str,
        attempt_number: Optional[int],
        new_score: float
    ) -> AttemptRecord:
        if not isinstance(new_score, numbers.Real) or isinstance(new_score, bool) or new_score < 0:
            raise ValueError("Invalid score")
        exam = self.store.find_exam(exam_ref)
        return self.store.append_attempt(
            exam.exam_id, student_id, {"score": new_score}, attempt_number
        )

    def approve_cheating_logs(
        self,
        exam_ref: str,
        student_id: str,
        attempt_number: Optional[int],
        approve: bool,
        approver_id: str,
        now: Optional[datetime] = None
    ) -> AttemptRecord:
        """Let the student see their violation logs (or revoke that)."""
        exam = self.store.find_exam(exam_ref)
        if approve:
            patch = {
                "cheating_logs_approved": True,
                "cheating_logs_approved_by": approver_id,
                "cheating_logs_approved_at": now or self.now_fn(),
            }
        else:
            patch = {
                "cheating_logs_approved": False,
                "cheating_logs_approved_by": None,
                "cheating_logs_approved_at": None,
            }
        return self.store.append_attempt(exam.exam_id, student_id, patch, attempt_number)

    def student_stats(self, student_id: str, recent: int = 5) -> Dict[str, Any]:
        """Completed exams, total and average score of a student."""
        attempts = self.store.list_student_attempts(student_id)
        completed = len(attempts)
        total_score = sum(a.score for a in attempts)
        avg_score = round(total_score / completed, 1) if completed else 0

        return {
            "completedExams": completed,
            "totalScore": total_score,
            "avgScore": avg_score,
            "recentSubmissions": [self._summary(a) for a in attempts[:recent]],
        }

    # ===== HELPERS =====

    def _find_attempt(
        self,
        exam_id: str,
        student_id: str,
        attempt_number: Optional[int]
    ) -> AttemptRecord:
        attempts: List[AttemptRecord] = self.store.list_attempts(exam_id, student_id)
        if attempt_number is not None:
            attempts = [a for a in attempts if a.attempt_number == attempt_number]
        if not attempts:
            raise SubmissionNotFound("Submission not found for this student and exam")
        return attempts[-1]

    def _summary(self, attempt: AttemptRecord) -> Dict[str, Any]:
        try:
            exam_name = self.store.find_exam(attempt.exam_id).name
        except ExamNotFound:
            # Exam was removed from the bank after the attempt
            exam_name = None
        return {
            "examId": attempt.exam_id,
            "examName": exam_name,
            "attemptNumber": attempt.attempt_number,
            "score": attempt.score,
            "submittedAt": attempt.created_at.isoformat() if attempt.created_at else None,
            "codingSubmitted": bool(attempt.coding_answer and attempt.coding_answer.code),
            "codingLanguage": attempt.coding_answer.language if attempt.coding_answer else None,
            "status": attempt.status or SessionStatus.SUBMITTED.value,
            "reason": attempt.reason,
        }

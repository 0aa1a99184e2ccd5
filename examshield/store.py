"""
Record store for exams, attempts and violation logs.

RecordStore is the interface the session core talks to. Two implementations
are provided: an in-memory store (tests, single-process use) and a JSON file
store that keeps attempts and violation logs on disk next to the exam bank.
"""

import copy
import json
import os
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

from .errors import AttemptsExhausted, ExamNotFound, SubmissionNotFound
from .models import (
    AttemptRecord, ExamConfig, McqQuestion, SessionStatus, ViolationLog
)


# Attempt fields a patch may change
PATCH_FIELDS = {
    "score",
    "answers",
    "status",
    "reason",
    "coding_answer",
    "cheating_logs_approved",
    "cheating_logs_approved_by",
    "cheating_logs_approved_at",
    "submission_id",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _check_patch(patch: Dict[str, Any]) -> None:
    unknown = set(patch) - PATCH_FIELDS
    if unknown:
        raise ValueError(f"Unknown attempt fields in patch: {', '.join(sorted(unknown))}")


class RecordStore(ABC):
    """Interface of the persistent record store."""

    @abstractmethod
    def find_exam(self, exam_ref: str) -> ExamConfig:
        """Find an exam by id or exam code. Raises ExamNotFound."""

    @abstractmethod
    def list_questions(self, exam_id: str) -> List[McqQuestion]:
        """Return the current MCQ question bank of an exam."""

    @abstractmethod
    def list_attempts(self, exam_id: str, student_id: str) -> List[AttemptRecord]:
        """Return every attempt of a student at an exam, oldest first."""

    @abstractmethod
    def list_student_attempts(self, student_id: str) -> List[AttemptRecord]:
        """Return every attempt of a student across exams, newest first."""

    @abstractmethod
    def create_attempt(
        self,
        exam_id: str,
        student_id: str,
        patch: Dict[str, Any],
        max_attempts: Optional[int] = None
    ) -> AttemptRecord:
        """
        Create the next attempt (attempt_number = prior count + 1).

        When max_attempts is given the count is re-checked under the store's
        own lock and AttemptsExhausted is raised if it was reached.
        A patch carrying a submission_id already stored for this student and
        exam returns that attempt instead of creating another one.
        """

    @abstractmethod
    def append_attempt(
        self,
        exam_id: str,
        student_id: str,
        patch: Dict[str, Any],
        attempt_number: Optional[int] = None
    ) -> AttemptRecord:
        """
        Update an existing attempt: the given one, or the most recent.

        Raises SubmissionNotFound when there is nothing to update.
        """

    @abstractmethod
    def save_violation_log(self, log: ViolationLog) -> ViolationLog:
        """Persist a violation tally."""

    @abstractmethod
    def list_violation_logs(self, exam_id: str, student_id: str) -> List[ViolationLog]:
        """Return saved violation logs of a student at an exam, oldest first."""

    def create_or_append_attempt(
        self,
        exam_id: str,
        student_id: str,
        patch: Dict[str, Any],
        append: bool = False
    ) -> AttemptRecord:
        """Append to the most recent attempt, or start a new one."""
        if append:
            return self.append_attempt(exam_id, student_id, patch)
        return self.create_attempt(exam_id, student_id, patch)


class InMemoryRecordStore(RecordStore):
    """Thread-safe in-process record store."""

    def __init__(
        self,
        exams: Iterable[ExamConfig] = (),
        now_fn: Callable[[], datetime] = _utcnow
    ):
        self.now_fn = now_fn
        self._exams: Dict[str, ExamConfig] = {}
        self._attempts: List[AttemptRecord] = []
        self._violation_logs: List[ViolationLog] = []
        self._lock = threading.RLock()
        for exam in exams:
            self.add_exam(exam)

    def add_exam(self, exam: ExamConfig) -> None:
        is_valid, error = exam.validate()
        if not is_valid:
            raise ValueError(f"Invalid exam '{exam.exam_id}': {error}")
        with self._lock:
            self._exams[exam.exam_id] = exam

    def find_exam(self, exam_ref: str) -> ExamConfig:
        with self._lock:
            exam = self._exams.get(exam_ref)
            if exam is None:
                for candidate in self._exams.values():
                    if candidate.exam_code and candidate.exam_code == exam_ref:
                        exam = candidate
                        break
        if exam is None:
            raise ExamNotFound(f"No exam found with ID: {exam_ref}")
        return exam

    def list_questions(self, exam_id: str) -> List[McqQuestion]:
        return list(self.find_exam(exam_id).questions)

    def _matching(self, exam_id: str, student_id: str) -> List[AttemptRecord]:
        found = [
            a for a in self._attempts
            if a.exam_id == exam_id and a.student_id == student_id
        ]
        return sorted(found, key=lambda a: a.attempt_number)

    def list_attempts(self, exam_id: str, student_id: str) -> List[AttemptRecord]:
        with self._lock:
            return copy.deepcopy(self._matching(exam_id, student_id))

    def list_student_attempts(self, student_id: str) -> List[AttemptRecord]:
        with self._lock:
            found = [a for a in self._attempts if a.student_id == student_id]
            found.sort(key=lambda a: a.created_at or datetime.min.replace(tzinfo=timezone.utc), reverse=True)
            return copy.deepcopy(found)

    def create_attempt(
        self,
        exam_id: str,
        student_id: str,
        patch: Dict[str, Any],
        max_attempts: Optional[int] = None
    ) -> AttemptRecord:
        _check_patch(patch)
        with self._lock:
            prior = self._matching(exam_id, student_id)
            submission_id = patch.get("submission_id")
            if submission_id:
                for existing in prior:
                    if existing.submission_id == submission_id:
                        return copy.deepcopy(existing)

            prior_count = len(prior)
            if max_attempts is not None and prior_count >= max_attempts:
                raise AttemptsExhausted(
                    f"You have already used all {max_attempts} attempt(s) for this exam"
                )

            record = AttemptRecord(
                exam_id=exam_id,
                student_id=student_id,
                attempt_number=prior_count + 1,
                status=SessionStatus.SUBMITTED.value,
                created_at=self.now_fn()
            )
            for key, value in patch.items():
                setattr(record, key, copy.deepcopy(value))

            self._attempts.append(record)
            try:
                self._persist()
            except Exception:
                self._attempts.pop()
                raise
            return copy.deepcopy(record)

    def append_attempt(
        self,
        exam_id: str,
        student_id: str,
        patch: Dict[str, Any],
        attempt_number: Optional[int] = None
    ) -> AttemptRecord:
        _check_patch(patch)
        with self._lock:
            attempts = self._matching(exam_id, student_id)
            if attempt_number is not None:
                attempts = [a for a in attempts if a.attempt_number == attempt_number]
            if not attempts:
                raise SubmissionNotFound(
                    "No MCQ submission found to attach to. Please complete the MCQ section first."
                )

            record = attempts[-1]
            before = copy.deepcopy(record)
            for key, value in patch.items():
                setattr(record, key, copy.deepcopy(value))
            try:
                self._persist()
            except Exception:
                record.__dict__.update(before.__dict__)
                raise
            return copy.deepcopy(record)

    def save_violation_log(self, log: ViolationLog) -> ViolationLog:
        with self._lock:
            stored = copy.deepcopy(log)
            if stored.created_at is None:
                stored.created_at = self.now_fn()
            self._violation_logs.append(stored)
            try:
                self._persist()
            except Exception:
                self._violation_logs.pop()
                raise
            return copy.deepcopy(stored)

    def list_violation_logs(self, exam_id: str, student_id: str) -> List[ViolationLog]:
        with self._lock:
            return copy.deepcopy([
                log for log in self._violation_logs
                if log.exam_id == exam_id and log.student_id == student_id
            ])

    def _persist(self) -> None:
        """Hook for subclasses that write through to disk."""


class JsonRecordStore(InMemoryRecordStore):
    """
    Record store backed by JSON files in a data directory.

    Exams come from the (possibly encrypted) bank; attempts and violation
    logs are written to attempts.json and violation_logs.json after every
    change.
    """

    def __init__(
        self,
        data_dir: Path,
        exams: Iterable[ExamConfig] = (),
        now_fn: Callable[[], datetime] = _utcnow
    ):
        super().__init__(exams, now_fn)
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.attempts_path = self.data_dir / "attempts.json"
        self.violation_logs_path = self.data_dir / "violation_logs.json"
        self._load()

    def _load(self) -> None:
        if self.attempts_path.exists():
            with open(self.attempts_path, 'r', encoding='utf-8') as f:
                self._attempts = [AttemptRecord.from_dict(d) for d in json.load(f)]
        if self.violation_logs_path.exists():
            with open(self.violation_logs_path, 'r', encoding='utf-8') as f:
                self._violation_logs = [ViolationLog.from_dict(d) for d in json.load(f)]

    def _write_json(self, path: Path, payload: list) -> None:
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        with open(tmp_path, 'w', encoding='utf-8') as f:
            json.dump(payload, f, indent=2)
        os.replace(tmp_path, path)

    def _persist(self) -> None:
        self._write_json(self.attempts_path, [a.to_dict() for a in self._attempts])
        self._write_json(self.violation_logs_path, [v.to_dict() for v in self._violation_logs])

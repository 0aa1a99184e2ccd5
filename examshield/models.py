"""
Data models for exams, attempts and proctoring records.

Provides type-safe structures for ExamConfig, McqQuestion, AttemptRecord,
ViolationTally and related objects, with dict conversion matching the
camelCase wire format used by the record store and bank files.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List, Dict, Any, Tuple


DEFAULT_POINTS = 10
DEFAULT_CODING_DURATION = 30
AUTO_SUBMIT_REASON = "Auto-submitted due to 10+ violations of exam rules."


class SessionStatus(str, Enum):
    """Status of a session / attempt record."""
    IN_PROGRESS = "in_progress"
    SUBMITTED = "submitted"
    PASSED = "passed"
    FAILED = "failed"
    AUTO_FAILED = "auto_failed"


# Statuses a stored attempt may carry
RECORD_STATUSES = (
    SessionStatus.SUBMITTED,
    SessionStatus.PASSED,
    SessionStatus.FAILED,
    SessionStatus.AUTO_FAILED,
)


class ViolationCategory(str, Enum):
    """Violation categories reported by the detector."""
    NO_FACE = "noFace"
    MULTIPLE_FACE = "multipleFace"
    CELL_PHONE = "cellPhone"
    PROHIBITED_OBJECT = "prohibitedObject"

    @property
    def count_key(self) -> str:
        """Key under which this category's counter is persisted."""
        return f"{self.value}Count"


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse a timestamp from a bank file or record.

    Accepts datetime objects and ISO-8601 strings (a trailing 'Z' is allowed).
    Naive values are taken as UTC. Anything unparseable yields None.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat()


@dataclass(frozen=True)
class Option:
    """One answer option of a multiple-choice question."""
    option_id: str
    text: str = ""
    is_correct: bool = False

    @staticmethod
    def from_dict(data: dict) -> 'Option':
        return Option(
            option_id=str(data.get('id', data.get('_id', ''))),
            text=data.get('text', data.get('optionText', '')),
            is_correct=bool(data.get('isCorrect', False))
        )

    def to_dict(self) -> dict:
        return {"id": self.option_id, "text": self.text, "isCorrect": self.is_correct}


@dataclass(frozen=True)
class McqQuestion:
    """A multiple-choice question of an exam."""
    question_id: str
    text: str
    options: Tuple[Option, ...]
    points_if_positive: Optional[float] = None

    @property
    def correct_option(self) -> Optional[Option]:
        """The option marked correct, if any."""
        for option in self.options:
            if option.is_correct:
                return option
        return None

    @staticmethod
    def from_dict(data: dict) -> 'McqQuestion':
        points = data.get('pointsIfPositive', data.get('ansmarks'))
        return McqQuestion(
            question_id=str(data.get('id', data.get('_id', ''))),
            text=data.get('question', ''),
            options=tuple(Option.from_dict(o) for o in data.get('options', [])),
            points_if_positive=points
        )

    def to_dict(self) -> dict:
        return {
            "id": self.question_id,
            "question": self.text,
            "options": [o.to_dict() for o in self.options],
            "pointsIfPositive": self.points_if_positive,
        }


@dataclass(frozen=True)
class CodingQuestionSpec:
    """A timed coding question."""
    prompt: str
    description: str = ""
    duration_minutes: int = DEFAULT_CODING_DURATION

    @staticmethod
    def from_dict(data: dict) -> 'CodingQuestionSpec':
        return CodingQuestionSpec(
            prompt=data.get('question', ''),
            description=data.get('description', ''),
            duration_minutes=int(data.get('duration') or DEFAULT_CODING_DURATION)
        )

    def to_dict(self) -> dict:
        return {
            "question": self.prompt,
            "description": self.description,
            "duration": self.duration_minutes,
        }


@dataclass(frozen=True)
class ExamConfig:
    """
    Configuration of one exam as defined by the teacher.

    Attributes:
        exam_id: Unique exam identifier
        exam_code: Optional secondary lookup key
        name: Display name
        questions: Ordered MCQ questions
        coding_questions: Coding questions, each with its own countdown
        live_at: Start of the exam window (None means open)
        dead_at: End of the exam window (None means open)
        max_attempts: Allowed attempts per student (1-10)
        duration_minutes: Duration of the MCQ part
    """
    exam_id: str
    name: str = ""
    exam_code: Optional[str] = None
    questions: Tuple[McqQuestion, ...] = ()
    coding_questions: Tuple[CodingQuestionSpec, ...] = ()
    live_at: Optional[datetime] = None
    dead_at: Optional[datetime] = None
    max_attempts: int = 1
    duration_minutes: int = 0

    @staticmethod
    def from_dict(data: dict) -> 'ExamConfig':
        """Create an ExamConfig from a bank entry."""
        coding = data.get('codingQuestions') or []
        if not coding and data.get('codingQuestion'):
            legacy = data['codingQuestion']
            if legacy.get('question') or legacy.get('description'):
                coding = [legacy]

        return ExamConfig(
            exam_id=str(data['examId']),
            name=data.get('examName', ''),
            exam_code=data.get('examCode'),
            questions=tuple(McqQuestion.from_dict(q) for q in data.get('questions', [])),
            coding_questions=tuple(CodingQuestionSpec.from_dict(c) for c in coding),
            live_at=parse_timestamp(data.get('liveDate')),
            dead_at=parse_timestamp(data.get('deadDate')),
            max_attempts=int(data.get('maxAttempts') or 1),
            duration_minutes=int(data.get('duration') or 0)
        )

    def to_dict(self) -> dict:
        return {
            "examId": self.exam_id,
            "examName": self.name,
            "examCode": self.exam_code,
            "questions": [q.to_dict() for q in self.questions],
            "codingQuestions": [c.to_dict() for c in self.coding_questions],
            "liveDate": format_timestamp(self.live_at),
            "deadDate": format_timestamp(self.dead_at),
            "maxAttempts": self.max_attempts,
            "duration": self.duration_minutes,
        }

    def validate(self) -> Tuple[bool, str]:
        """
        Validate exam consistency.

        Returns:
            Tuple of (is_valid, error_message)
        """
        if not self.exam_id:
            return False, "Exam id must not be empty"

        if self.max_attempts < 1 or self.max_attempts > 10:
            return False, f"maxAttempts must be between 1 and 10 (got {self.max_attempts})"

        for i, coding in enumerate(self.coding_questions, start=1):
            if coding.duration_minutes < 1 or coding.duration_minutes > 180:
                return False, f"Coding question {i} duration must be between 1 and 180 minutes"

        if self.live_at and self.dead_at and self.live_at > self.dead_at:
            return False, "liveDate must not be after deadDate"

        return True, ""


@dataclass(frozen=True)
class AnswerRecord:
    """
    A submitted MCQ answer.

    is_correct is a snapshot taken at submission time and is never recomputed.
    """
    question_id: str
    selected_option_id: str
    is_correct: bool = False

    @staticmethod
    def from_dict(data: dict) -> 'AnswerRecord':
        return AnswerRecord(
            question_id=str(data['questionId']),
            selected_option_id=str(data.get('selectedOption', '')),
            is_correct=bool(data.get('isCorrect', False))
        )

    def to_dict(self) -> dict:
        return {
            "questionId": self.question_id,
            "selectedOption": self.selected_option_id,
            "isCorrect": self.is_correct,
        }


@dataclass(frozen=True)
class CodingAnswer:
    code: str
    language: str

    @staticmethod
    def from_dict(data: dict) -> 'CodingAnswer':
        return CodingAnswer(code=data.get('code', ''), language=data.get('language', ''))

    def to_dict(self) -> dict:
        return {"code": self.code, "language": self.language}


@dataclass
class AttemptRecord:
    """One attempt of one student at one exam."""
    exam_id: str
    student_id: str
    attempt_number: int
    score: float = 0
    answers: List[AnswerRecord] = field(default_factory=list)
    status: str = SessionStatus.SUBMITTED.value
    reason: Optional[str] = None
    created_at: Optional[datetime] = None
    coding_answer: Optional[CodingAnswer] = None
    cheating_logs_approved: bool = False
    cheating_logs_approved_by: Optional[str] = None
    cheating_logs_approved_at: Optional[datetime] = None
    submission_id: Optional[str] = None

    @staticmethod
    def from_dict(data: dict) -> 'AttemptRecord':
        coding = data.get('codingAnswer')
        return AttemptRecord(
            exam_id=str(data['examId']),
            student_id=str(data['studentId']),
            attempt_number=int(data['attemptNumber']),
            score=data.get('score', 0),
            answers=[AnswerRecord.from_dict(a) for a in data.get('answers', [])],
            status=data.get('status') or SessionStatus.SUBMITTED.value,
            reason=data.get('reason'),
            created_at=parse_timestamp(data.get('createdAt')),
            coding_answer=CodingAnswer.from_dict(coding) if coding else None,
            cheating_logs_approved=bool(data.get('cheatingLogsApproved', False)),
            cheating_logs_approved_by=data.get('cheatingLogsApprovedBy'),
            cheating_logs_approved_at=parse_timestamp(data.get('cheatingLogsApprovedAt')),
            submission_id=data.get('submissionId')
        )

    def to_dict(self) -> dict:
        return {
            "examId": self.exam_id,
            "studentId": self.student_id,
            "attemptNumber": self.attempt_number,
            "score": self.score,
            "answers": [a.to_dict() for a in self.answers],
            "status": self.status,
            "reason": self.reason,
            "createdAt": format_timestamp(self.created_at),
            "codingAnswer": self.coding_answer.to_dict() if self.coding_answer else None,
            "cheatingLogsApproved": self.cheating_logs_approved,
            "cheatingLogsApprovedBy": self.cheating_logs_approved_by,
            "cheatingLogsApprovedAt": format_timestamp(self.cheating_logs_approved_at),
            "submissionId": self.submission_id,
        }


@dataclass(frozen=True)
class Screenshot:
    """Evidence captured by the detector for one violation."""
    url: str
    category: ViolationCategory
    detected_at: Optional[datetime] = None

    @staticmethod
    def from_dict(data: dict) -> 'Screenshot':
        return Screenshot(
            url=data.get('url', ''),
            category=ViolationCategory(data['category']),
            detected_at=parse_timestamp(data.get('detectedAt'))
        )

    def to_dict(self) -> dict:
        return {
            "url": self.url,
            "category": self.category.value,
            "detectedAt": format_timestamp(self.detected_at),
        }


@dataclass(frozen=True)
class ViolationTally:
    """
    Per-category violation counts for one session.

    Immutable: every detector event produces a new tally via with_increment().
    """
    no_face: int = 0
    multiple_face: int = 0
    cell_phone: int = 0
    prohibited_object: int = 0
    screenshots: Tuple[Screenshot, ...] = ()

    _FIELDS = {
        ViolationCategory.NO_FACE: "no_face",
        ViolationCategory.MULTIPLE_FACE: "multiple_face",
        ViolationCategory.CELL_PHONE: "cell_phone",
        ViolationCategory.PROHIBITED_OBJECT: "prohibited_object",
    }

    def count(self, category: ViolationCategory) -> int:
        return getattr(self, self._FIELDS[ViolationCategory(category)])

    def total(self) -> int:
        return self.no_face + self.multiple_face + self.cell_phone + self.prohibited_object

    def with_increment(
        self,
        category: ViolationCategory,
        screenshot: Optional[Screenshot] = None
    ) -> 'ViolationTally':
        """Return a new tally with one more violation of the given category."""
        category = ViolationCategory(category)
        name = self._FIELDS[category]
        changes: Dict[str, Any] = {name: getattr(self, name) + 1}
        if screenshot is not None:
            changes["screenshots"] = self.screenshots + (screenshot,)
        return replace(self, **changes)

    @staticmethod
    def from_dict(data: dict) -> 'ViolationTally':
        def _count(category: ViolationCategory) -> int:
            try:
                return max(0, int(data.get(category.count_key) or 0))
            except (TypeError, ValueError):
                return 0

        return ViolationTally(
            no_face=_count(ViolationCategory.NO_FACE),
            multiple_face=_count(ViolationCategory.MULTIPLE_FACE),
            cell_phone=_count(ViolationCategory.CELL_PHONE),
            prohibited_object=_count(ViolationCategory.PROHIBITED_OBJECT),
            screenshots=tuple(Screenshot.from_dict(s) for s in data.get('screenshots', []))
        )

    def to_dict(self) -> dict:
        data: Dict[str, Any] = {
            category.count_key: self.count(category) for category in ViolationCategory
        }
        data["screenshots"] = [s.to_dict() for s in self.screenshots]
        return data


@dataclass
class ViolationLog:
    """A persisted violation tally, kept apart from the attempt it belongs to."""
    exam_id: str
    student_id: str
    tally: ViolationTally
    attempt_number: Optional[int] = None
    reason: Optional[str] = None
    created_at: Optional[datetime] = None

    @staticmethod
    def from_dict(data: dict) -> 'ViolationLog':
        return ViolationLog(
            exam_id=str(data['examId']),
            student_id=str(data['studentId']),
            tally=ViolationTally.from_dict(data.get('tally', {})),
            attempt_number=data.get('attemptNumber'),
            reason=data.get('reason'),
            created_at=parse_timestamp(data.get('createdAt'))
        )

    def to_dict(self) -> dict:
        return {
            "examId": self.exam_id,
            "studentId": self.student_id,
            "tally": self.tally.to_dict(),
            "attemptNumber": self.attempt_number,
            "reason": self.reason,
            "createdAt": format_timestamp(self.created_at),
        }

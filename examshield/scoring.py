"""
Scoring engine for multiple-choice answers.

Pure functions only: no storage access, no clock, no global state. The same
question bank and answers always produce the same ScoreResult.
"""

import numbers
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Tuple, Union

from .models import AnswerRecord, DEFAULT_POINTS, McqQuestion


QuestionBank = Union[Mapping[str, McqQuestion], Iterable[McqQuestion]]


@dataclass(frozen=True)
class ScoreResult:
    total_score: float
    graded_answers: Tuple[AnswerRecord, ...]

    @property
    def correct_count(self) -> int:
        return sum(1 for a in self.graded_answers if a.is_correct)


def _index_bank(question_bank: QuestionBank) -> Dict[str, McqQuestion]:
    if isinstance(question_bank, Mapping):
        return dict(question_bank)
    return {q.question_id: q for q in question_bank}


def question_points(question: McqQuestion) -> float:
    """
    Points awarded for a correct answer to a question.

    Uses the question's own value when it is a positive number, otherwise
    the default of 10 points. Wrong answers never cost points.
    """
    points = question.points_if_positive
    if isinstance(points, numbers.Real) and not isinstance(points, bool) and points > 0:
        return points
    return DEFAULT_POINTS


def grade_answer(question_map: Mapping[str, McqQuestion], answer: AnswerRecord) -> Tuple[AnswerRecord, float]:
    """
    Grade a single answer.

    An answer pointing at a question that no longer exists is kept as
    incorrect and earns nothing.

    Returns:
        Tuple of (graded answer, points earned)
    """
    question = question_map.get(answer.question_id)
    is_correct = False
    earned = 0

    if question is not None:
        correct_option = question.correct_option
        if correct_option is not None and correct_option.option_id == answer.selected_option_id:
            is_correct = True
            earned = question_points(question)

    graded = AnswerRecord(
        question_id=answer.question_id,
        selected_option_id=answer.selected_option_id,
        is_correct=is_correct
    )
    return graded, earned


def score(question_bank: QuestionBank, answers: Iterable[AnswerRecord]) -> ScoreResult:
    """
    Score a list of submitted answers.

    Args:
        question_bank: Questions of the exam, as a list or an id -> question map
        answers: Submitted answers, in submission order

    Returns:
        ScoreResult with the total and one graded answer per submitted answer
    """
    question_map = _index_bank(question_bank)

    total = 0
    graded: List[AnswerRecord] = []
    for answer in answers:
        graded_answer, earned = grade_answer(question_map, answer)
        graded.append(graded_answer)
        total += earned

    return ScoreResult(total_score=total, graded_answers=tuple(graded))

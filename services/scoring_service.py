"""
Scoring engine.

Pure functions: no I/O, callable at submission and at regrade time. Every
question kind has a grader registered in GRADERS (or is listed as manually
graded); the module refuses to import if a kind is missing one.
"""
import math
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from core.config import settings
from core.exceptions import MalformedQuestionError
from core.logger import logger
from schemas.question import (
    QUESTION_TYPES,
    EssayQuestion,
    FillBlankQuestion,
    MatchingQuestion,
    MultiChoiceQuestion,
    OrderingQuestion,
    QuestionBase,
    ShortAnswerQuestion,
    SingleChoiceQuestion,
    TrueFalseQuestion,
)
from schemas.quiz import Quiz
from schemas.result import QuestionOutcome, Result
from utils.clock import utcnow


class ManualGradePolicy(str, Enum):
    # Answered but ungraded essays count as incorrect and stay in the denominator
    COUNT_AS_INCORRECT = "count-as-incorrect"
    # Ungraded essays are reported as pending and left out of the percentage
    PENDING = "pending"


def is_answered(value: Any) -> bool:
    """`None`, blank strings and empty collections are "no answer yet"."""
    if value is None:
        return False
    if isinstance(value, str):
        return value.strip() != ""
    if isinstance(value, (list, tuple, set, frozenset)):
        return any(is_answered(v) for v in value)
    if isinstance(value, dict):
        return any(is_answered(v) for v in value.values())
    return True


def is_index(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _by_position(answer: Any, size: int) -> Optional[List[Any]]:
    """Sequence answers may also arrive as {position: value} mappings keyed by left/blank index."""
    if isinstance(answer, (list, tuple)):
        return list(answer)
    if isinstance(answer, dict):
        try:
            keyed = {int(k): v for k, v in answer.items()}
        except (TypeError, ValueError):
            return None
        return [keyed.get(i) for i in range(max(size, len(keyed)))]
    return None


def _grade_single(question: SingleChoiceQuestion, answer: Any) -> bool:
    (correct,) = question.correct_indices
    return is_index(answer) and answer == correct


def _grade_multi(question: MultiChoiceQuestion, answer: Any) -> bool:
    if not isinstance(answer, (list, tuple, set, frozenset)):
        return False
    if not all(is_index(i) for i in answer):
        return False
    # Exact set equality, no partial credit
    return set(answer) == set(question.correct_indices)


def _grade_fill_blank(question: FillBlankQuestion, answer: Any) -> bool:
    if isinstance(answer, str):
        answer = [answer]
    submitted = _by_position(answer, len(question.blanks))
    if submitted is None or len(submitted) != len(question.blanks):
        return False
    # Case-sensitive, untrimmed
    return all(given == expected for given, expected in zip(submitted, question.blanks))


def _grade_matching(question: MatchingQuestion, answer: Any) -> bool:
    submitted = _by_position(answer, len(question.pairs))
    if submitted is None or len(submitted) != len(question.pairs):
        return False
    return all(given == pair.right for given, pair in zip(submitted, question.pairs))


def _grade_ordering(question: OrderingQuestion, answer: Any) -> bool:
    if not isinstance(answer, (list, tuple)):
        return False
    return list(answer) == list(range(len(question.items))) and all(is_index(i) for i in answer)


GRADERS: Dict[type, Callable[[Any, Any], bool]] = {
    SingleChoiceQuestion: _grade_single,
    TrueFalseQuestion: _grade_single,
    MultiChoiceQuestion: _grade_multi,
    FillBlankQuestion: _grade_fill_blank,
    MatchingQuestion: _grade_matching,
    OrderingQuestion: _grade_ordering,
}
MANUALLY_GRADED = (ShortAnswerQuestion, EssayQuestion)

_unhandled = [t.__name__ for t in QUESTION_TYPES if t not in GRADERS and t not in MANUALLY_GRADED]
if _unhandled:
    raise RuntimeError(f"No grading rule for question types: {', '.join(_unhandled)}")


def _check_payload(question: QuestionBase) -> None:
    problems = question.payload_errors()
    if problems:
        raise MalformedQuestionError(question.id, problems)


def grade_question(
    question: QuestionBase,
    answer: Any,
    manual_grade: Optional[bool] = None,
    policy: ManualGradePolicy = ManualGradePolicy.COUNT_AS_INCORRECT,
) -> QuestionOutcome:
    if isinstance(question, MANUALLY_GRADED):
        if not is_answered(answer):
            return QuestionOutcome.UNANSWERED
        if manual_grade is not None:
            return QuestionOutcome.CORRECT if manual_grade else QuestionOutcome.INCORRECT
        if policy == ManualGradePolicy.PENDING:
            return QuestionOutcome.PENDING_MANUAL_GRADE
        return QuestionOutcome.INCORRECT

    try:
        _check_payload(question)
    except MalformedQuestionError as e:
        # One broken question must not block scoring of the rest
        logger.warning("Malformed question scored as incorrect", question_id=e.question_id, problems=e.problems)
        return QuestionOutcome.INCORRECT

    if not is_answered(answer):
        return QuestionOutcome.UNANSWERED

    grader = GRADERS[type(question)]
    return QuestionOutcome.CORRECT if grader(question, answer) else QuestionOutcome.INCORRECT


def score_questions(
    questions: Sequence[QuestionBase],
    answers: Mapping[str, Any],
    manual_grades: Optional[Mapping[str, bool]] = None,
    policy: Optional[ManualGradePolicy] = None,
    now: Optional[datetime] = None,
) -> Result:
    policy = ManualGradePolicy(policy or settings.MANUAL_GRADE_POLICY)
    manual_grades = manual_grades or {}

    outcomes = [
        grade_question(q, answers.get(q.id), manual_grades.get(q.id), policy)
        for q in questions
    ]
    total = len(questions)
    correct = outcomes.count(QuestionOutcome.CORRECT)
    incorrect = outcomes.count(QuestionOutcome.INCORRECT)
    unanswered = outcomes.count(QuestionOutcome.UNANSWERED)
    pending = outcomes.count(QuestionOutcome.PENDING_MANUAL_GRADE)

    denominator = total - pending
    # Half-up rounding, as the results pages have always displayed it
    percentage = math.floor(100 * correct / denominator + 0.5) if denominator else 0

    return Result(
        score=percentage,
        total_questions=total,
        correct_count=correct,
        incorrect_count=incorrect,
        unanswered_count=unanswered,
        pending_manual_count=pending,
        question_ids=[q.id for q in questions],
        per_question_correctness=[o == QuestionOutcome.CORRECT for o in outcomes],
        per_question_outcome=outcomes,
        graded_at=now or utcnow(),
    )


def score(
    quiz: Quiz,
    answers: Mapping[str, Any],
    manual_grades: Optional[Mapping[str, bool]] = None,
    policy: Optional[ManualGradePolicy] = None,
    now: Optional[datetime] = None,
) -> Result:
    return score_questions(quiz.questions, answers, manual_grades=manual_grades, policy=policy, now=now)

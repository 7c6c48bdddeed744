"""
Regrading of completed attempts.

`regrade` is the scoring engine run against whichever question definitions
the policy selects. With the `current` policy a teacher's later edit to an
answer key changes historical scores; with `pinned` the snapshot stored at
submission is used. Stored answers are never rewritten, only the scoring
fields and `regradedAt`.
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence

from core.config import settings
from core.exceptions import PermissionDeniedError, QuizNotFoundError
from core.logger import logger
from schemas.question import QuestionBase, parse_question
from schemas.result import Result, ResultRecord
from schemas.user import Principal, Role
from services.document_store import RESULTS, DocumentStore
from services.quiz_service import QuizService
from services.result_service import ResultService
from services.scoring_service import MANUALLY_GRADED, ManualGradePolicy, score_questions
from utils.clock import Clock, utcnow


class RegradePolicy(str, Enum):
    CURRENT = "current"
    PINNED = "pinned"


def regrade(
    stored_answers: Mapping[str, Any],
    questions: Sequence[QuestionBase],
    manual_grades: Optional[Mapping[str, bool]] = None,
    manual_policy: Optional[ManualGradePolicy] = None,
    now: Optional[datetime] = None,
) -> Result:
    return score_questions(questions, stored_answers, manual_grades=manual_grades, policy=manual_policy, now=now)


class RegradeService:
    def __init__(self, store: DocumentStore, clock: Clock = utcnow):
        self.store = store
        self.clock = clock
        self.quizzes = QuizService(store, clock=clock)
        self.results = ResultService(store)

    async def regrade_result(self, result_id: str, principal: Principal,
                             policy: Optional[RegradePolicy] = None) -> ResultRecord:
        record = await self.results.require_result(result_id)
        return await self._rescore(result_id, record, principal, policy, dict(record.manual_grades))

    async def record_manual_grade(self, result_id: str, question_id: str, correct: bool,
                                  principal: Principal, policy: Optional[RegradePolicy] = None) -> ResultRecord:
        record = await self.results.require_result(result_id)
        grades = dict(record.manual_grades)
        grades[question_id] = bool(correct)
        return await self._rescore(result_id, record, principal, policy, grades, graded_question=question_id)

    async def _rescore(self, result_id: str, record: ResultRecord, principal: Principal,
                       policy: Optional[RegradePolicy], manual_grades: Dict[str, bool],
                       graded_question: Optional[str] = None) -> ResultRecord:
        policy = RegradePolicy(policy or settings.REGRADE_POLICY)
        quiz = await self.quizzes.get_quiz(record.attempt.quiz_id)
        if quiz is not None:
            QuizService.ensure_owner(quiz, principal)
        elif not (principal.is_admin or (principal.role == Role.TEACHER and principal.user_id == record.teacher_id)):
            raise PermissionDeniedError("Only the quiz owner or an admin can regrade")

        questions = self._select_questions(record, quiz.questions if quiz else None, policy)

        if graded_question is not None:
            target = next((q for q in questions if q.id == graded_question), None)
            if target is None or not isinstance(target, MANUALLY_GRADED):
                raise ValueError(f"Question {graded_question} is not a manually graded question of this attempt")

        now = self.clock()
        rescored = regrade(record.attempt.answers, questions, manual_grades=manual_grades, now=now)
        rescored = rescored.model_copy(update={"graded_at": record.result.graded_at, "regraded_at": now})

        patch = rescored.model_dump(by_alias=True, mode="json")
        patch["manualGrades"] = manual_grades
        await self.store.update_document(RESULTS, result_id, patch)

        logger.info(
            "Quiz result regraded",
            result_id=result_id,
            policy=policy.value,
            old_score=record.result.score,
            new_score=rescored.score,
            by=principal.user_id,
        )
        return record.model_copy(update={"result": rescored, "manual_grades": manual_grades})

    @staticmethod
    def _select_questions(record: ResultRecord, current: Optional[List[QuestionBase]],
                          policy: RegradePolicy) -> List[QuestionBase]:
        if policy == RegradePolicy.PINNED and record.questions:
            return [parse_question(q, position) for position, q in enumerate(record.questions)]
        if policy == RegradePolicy.PINNED:
            logger.warning("No question snapshot stored, regrading against current questions",
                           attempt_id=record.attempt.attempt_id)
        if current is None:
            raise QuizNotFoundError(record.attempt.quiz_id)
        return list(current)

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from core.config import settings
from core.exceptions import INELIGIBILITY_MESSAGES, EligibilityError, IneligibilityReason, StoreError
from core.logger import logger
from schemas.quiz import Quiz
from services.document_store import ENROLLMENTS, RESULTS, DocumentStore, Filter
from utils.clock import Clock, utcnow
from utils.retry import retry_async


@dataclass(frozen=True)
class Eligibility:
    eligible: bool
    reason: Optional[IneligibilityReason] = None

    @property
    def message(self) -> Optional[str]:
        return INELIGIBILITY_MESSAGES[self.reason] if self.reason else None


ELIGIBLE = Eligibility(True)


def ineligible(reason: IneligibilityReason) -> Eligibility:
    return Eligibility(False, reason)


class EligibilityGuard:
    """Read-only preconditions for starting an attempt, checked in a fixed order."""

    def __init__(self, store: DocumentStore, clock: Clock = utcnow,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.store = store
        self.clock = clock
        self.sleep = sleep

    async def check_eligibility(self, quiz: Quiz, student_id: str) -> Eligibility:
        try:
            return await self._evaluate(quiz, student_id)
        except StoreError as e:
            logger.warning("Eligibility check failed", quiz_id=quiz.id, student_id=student_id, error=str(e))
            return ineligible(IneligibilityReason.CHECK_FAILED)

    async def check_with_retry(self, quiz: Quiz, student_id: str) -> Eligibility:
        """Like check_eligibility, but store failures are retried before giving up (1s, then 2s)."""
        try:
            return await retry_async(
                lambda: self._evaluate(quiz, student_id),
                retries=settings.LOAD_RETRY_ATTEMPTS,
                base_delay=settings.LOAD_RETRY_BASE_DELAY_SECONDS,
                retry_on=(StoreError,),
                description="check_eligibility",
                sleep=self.sleep,
            )
        except StoreError:
            return ineligible(IneligibilityReason.CHECK_FAILED)

    async def ensure_eligible(self, quiz: Quiz, student_id: str) -> None:
        decision = await self.check_with_retry(quiz, student_id)
        if not decision.eligible:
            raise EligibilityError(decision.reason)

    async def _evaluate(self, quiz: Quiz, student_id: str) -> Eligibility:
        if not quiz.is_published:
            return ineligible(IneligibilityReason.NOT_PUBLISHED)

        if quiz.due_at is not None and quiz.due_at < self.clock():
            return ineligible(IneligibilityReason.PAST_DUE)

        if not await self._is_enrolled(quiz, student_id):
            return ineligible(IneligibilityReason.NOT_ENROLLED)

        if await self.has_prior_result(quiz.id, student_id):
            return ineligible(IneligibilityReason.ALREADY_COMPLETED)

        return ELIGIBLE

    async def _is_enrolled(self, quiz: Quiz, student_id: str) -> bool:
        if student_id in quiz.enrolled_student_ids:
            return True
        if not quiz.course_id:
            return False
        enrollments = await self.store.query(ENROLLMENTS, [
            Filter("studentId", "==", student_id),
            Filter("courseId", "==", quiz.course_id),
            Filter("status", "==", "approved"),
        ])
        return bool(enrollments)

    async def has_prior_result(self, quiz_id: str, student_id: str) -> bool:
        results = await self.store.query(RESULTS, [
            Filter("quizId", "==", quiz_id),
            Filter("studentId", "==", student_id),
        ])
        return bool(results)

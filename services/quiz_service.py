import asyncio
from typing import Awaitable, Callable, List, Optional

from pydantic import ValidationError

from core.config import settings
from core.exceptions import LoadError, PermissionDeniedError, QuizNotFoundError, StoreError
from core.logger import logger
from schemas.quiz import Quiz
from schemas.user import Principal, Role
from services.document_store import ENROLLMENTS, QUIZZES, DocumentStore, Filter
from utils.clock import Clock, isoformat, utcnow
from utils.retry import retry_async


class QuizService:
    def __init__(self, store: DocumentStore, clock: Clock = utcnow,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.store = store
        self.clock = clock
        self.sleep = sleep

    async def get_quiz(self, quiz_id: str) -> Optional[Quiz]:
        data = await self.store.get_document(QUIZZES, quiz_id)
        if data is None:
            return None
        try:
            return Quiz.from_document(quiz_id, data)
        except ValidationError as e:
            logger.error("Stored quiz is invalid", quiz_id=quiz_id, error=str(e))
            raise LoadError(f"Quiz {quiz_id} could not be read") from e

    async def load_quiz(self, quiz_id: str) -> Quiz:
        """Fetch a quiz for a session, retrying transient store failures (1s, then 2s)."""
        try:
            quiz = await retry_async(
                lambda: self.get_quiz(quiz_id),
                retries=settings.LOAD_RETRY_ATTEMPTS,
                base_delay=settings.LOAD_RETRY_BASE_DELAY_SECONDS,
                retry_on=(StoreError,),
                description="load_quiz",
                sleep=self.sleep,
            )
        except StoreError as e:
            raise LoadError("Failed to load quiz. Please try again later.") from e
        if quiz is None:
            raise QuizNotFoundError(quiz_id)
        return quiz

    async def approved_student_ids(self, course_id: str) -> List[str]:
        docs = await self.store.query(ENROLLMENTS, [
            Filter("courseId", "==", course_id),
            Filter("status", "==", "approved"),
        ])
        return [doc.data["studentId"] for doc in docs if "studentId" in doc.data]

    async def save_quiz(self, quiz: Quiz, principal: Principal) -> Quiz:
        """Create a quiz owned by the calling teacher. Published quizzes must pass integrity checks."""
        if principal.role not in (Role.TEACHER, Role.ADMIN):
            raise PermissionDeniedError("Only teachers can create quizzes")
        if quiz.is_published:
            quiz.ensure_valid()

        enrolled = set(quiz.enrolled_student_ids)
        if quiz.course_id:
            enrolled.update(await self.approved_student_ids(quiz.course_id))

        quiz = quiz.model_copy(update={
            "teacher_id": quiz.teacher_id if principal.is_admin and quiz.teacher_id else principal.user_id,
            "enrolled_student_ids": frozenset(enrolled),
        })
        document = quiz.to_document()
        document["createdAt"] = isoformat(self.clock())
        await self.store.create_document(QUIZZES, document, document_id=quiz.id)
        logger.info("Quiz saved", quiz_id=quiz.id, teacher_id=quiz.teacher_id, questions=len(quiz.questions))
        return quiz

    async def update_quiz(self, quiz: Quiz, principal: Principal) -> Quiz:
        existing = await self.get_quiz(quiz.id)
        if existing is None:
            raise QuizNotFoundError(quiz.id)
        self.ensure_owner(existing, principal)
        if quiz.is_published:
            quiz.ensure_valid()

        quiz = quiz.model_copy(update={"teacher_id": existing.teacher_id})
        document = quiz.to_document()
        document["updatedAt"] = isoformat(self.clock())
        await self.store.update_document(QUIZZES, quiz.id, document)
        logger.info("Quiz updated", quiz_id=quiz.id, user_id=principal.user_id)
        return quiz

    async def publish_quiz(self, quiz_id: str, principal: Principal) -> Quiz:
        quiz = await self.get_quiz(quiz_id)
        if quiz is None:
            raise QuizNotFoundError(quiz_id)
        self.ensure_owner(quiz, principal)
        quiz.ensure_valid()
        await self.store.update_document(QUIZZES, quiz_id, {"isPublished": True, "updatedAt": isoformat(self.clock())})
        logger.info("Quiz published", quiz_id=quiz_id, user_id=principal.user_id)
        return quiz.model_copy(update={"is_published": True})

    async def add_enrolled_student(self, quiz: Quiz, student_id: str) -> None:
        if student_id in quiz.enrolled_student_ids:
            return
        enrolled = sorted(set(quiz.enrolled_student_ids) | {student_id})
        await self.store.update_document(QUIZZES, quiz.id, {"enrolledStudentIds": enrolled})

    @staticmethod
    def ensure_owner(quiz: Quiz, principal: Principal) -> None:
        if principal.is_admin:
            return
        if principal.role == Role.TEACHER and quiz.teacher_id == principal.user_id:
            return
        raise PermissionDeniedError("Only the quiz owner or an admin can change this quiz")

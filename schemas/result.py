from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer
from pydantic.alias_generators import to_camel

from schemas.attempt import Attempt
from utils.clock import isoformat


class QuestionOutcome(str, Enum):
    CORRECT = "correct"
    INCORRECT = "incorrect"
    UNANSWERED = "unanswered"
    PENDING_MANUAL_GRADE = "pending-manual-grade"


class Result(BaseModel):
    """Scoring outcome for one attempt. Immutable once computed."""

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    score: int = Field(..., ge=0, le=100)
    total_questions: int
    correct_count: int
    incorrect_count: int
    unanswered_count: int
    pending_manual_count: int = 0
    question_ids: List[str]
    per_question_correctness: List[bool]
    per_question_outcome: List[QuestionOutcome]
    graded_at: datetime
    regraded_at: Optional[datetime] = None

    @field_serializer("graded_at", "regraded_at")
    def _serialize_moment(self, value: Optional[datetime]) -> Optional[str]:
        return isoformat(value)

    def scoring_fields(self) -> Dict[str, Any]:
        """Everything except timestamps; two results with equal scoring fields graded the same way."""
        return self.model_dump(exclude={"graded_at", "regraded_at"})


SCORING_DOCUMENT_FIELDS = (
    "score",
    "totalQuestions",
    "correctCount",
    "incorrectCount",
    "unansweredCount",
    "pendingManualCount",
    "questionIds",
    "perQuestionCorrectness",
    "perQuestionOutcome",
    "gradedAt",
    "regradedAt",
)


class ResultRecord(BaseModel):
    """The `quizResults` document: the attempt, its result and the context it was graded in."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    attempt: Attempt
    result: Result
    quiz_title: str = ""
    teacher_id: Optional[str] = None
    course_id: Optional[str] = None
    course_name: Optional[str] = None
    student_name: Optional[str] = None
    time_limit_seconds: Optional[int] = None
    # Question definitions at submission time, used by the pinned regrade policy
    questions: List[Dict[str, Any]] = []
    manual_grades: Dict[str, bool] = {}

    def to_document(self) -> Dict[str, Any]:
        document = self.attempt.model_dump(by_alias=True, mode="json")
        document.update(self.result.model_dump(by_alias=True, mode="json"))
        document.update(self.model_dump(by_alias=True, mode="json", exclude={"attempt", "result"}))
        return document

    @classmethod
    def from_document(cls, data: Dict[str, Any]) -> "ResultRecord":
        return cls(
            attempt=Attempt.model_validate(data),
            result=Result.model_validate(data),
            quiz_title=data.get("quizTitle", ""),
            teacher_id=data.get("teacherId"),
            course_id=data.get("courseId"),
            course_name=data.get("courseName"),
            student_name=data.get("studentName"),
            time_limit_seconds=data.get("timeLimitSeconds"),
            questions=data.get("questions") or [],
            manual_grades=data.get("manualGrades") or {},
        )

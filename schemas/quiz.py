from datetime import datetime
from typing import Any, Dict, FrozenSet, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator, model_validator
from pydantic.alias_generators import to_camel

from core.exceptions import QuizValidationError
from schemas.question import Question, QuestionBase, normalize_question_document, ChoiceQuestion
from utils.clock import isoformat, parse_timestamp


class Quiz(BaseModel):
    """A quiz definition: ordered questions plus the attempt policy."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    title: str = ""
    description: Optional[str] = None
    course_id: Optional[str] = None
    course_name: Optional[str] = None
    teacher_id: Optional[str] = None

    questions: List[Question] = Field(..., min_length=1)

    time_limit_seconds: Optional[int] = None
    due_at: Optional[datetime] = None
    is_published: bool = False
    enrolled_student_ids: FrozenSet[str] = frozenset()
    shuffle_questions: bool = False
    shuffle_options: bool = False
    lock_navigation: bool = False

    @model_validator(mode="before")
    @classmethod
    def _accept_stored_document(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        # Documents written by the existing front end
        if "timeLimitSeconds" not in data and "time_limit_seconds" not in data and data.get("timeLimit"):
            data["timeLimitSeconds"] = int(data["timeLimit"]) * 60
        if "dueAt" not in data and "due_at" not in data and "dueDate" in data:
            data["dueAt"] = data["dueDate"]
        if "enrolledStudentIds" not in data and "enrolled_student_ids" not in data and "enrolledStudents" in data:
            data["enrolledStudentIds"] = data["enrolledStudents"] or []
        if "lockNavigation" not in data and "lock_navigation" not in data and "preventNavigation" in data:
            data["lockNavigation"] = bool(data["preventNavigation"])

        questions = data.get("questions")
        if isinstance(questions, list):
            data["questions"] = [
                normalize_question_document(q, position) if isinstance(q, dict) else q
                for position, q in enumerate(questions)
            ]
        return data

    @field_validator("due_at", mode="before")
    @classmethod
    def _parse_due_at(cls, value: Any) -> Optional[datetime]:
        return parse_timestamp(value)

    @field_validator("time_limit_seconds", mode="before")
    @classmethod
    def _no_zero_time_limit(cls, value: Any) -> Optional[int]:
        # A blank or zero limit on the authoring form means "untimed"
        if value in (None, "", 0):
            return None
        return int(value)

    @model_validator(mode="after")
    def _unique_question_ids(self) -> "Quiz":
        seen = set()
        for question in self.questions:
            if question.id in seen:
                raise ValueError(f"duplicate question id {question.id!r}")
            seen.add(question.id)
        return self

    @field_serializer("enrolled_student_ids")
    def _serialize_enrolled(self, value: FrozenSet[str]) -> List[str]:
        return sorted(value)

    @field_serializer("due_at")
    def _serialize_due_at(self, value: Optional[datetime]) -> Optional[str]:
        return isoformat(value)

    @classmethod
    def from_document(cls, document_id: str, data: Dict[str, Any]) -> "Quiz":
        return cls.model_validate({**data, "id": document_id})

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json", exclude={"id"})

    def question_ids(self) -> List[str]:
        return [q.id for q in self.questions]

    def get_question(self, question_id: str) -> Optional[QuestionBase]:
        return next((q for q in self.questions if q.id == question_id), None)

    def integrity_errors(self) -> List[str]:
        """Problems that block publishing: payload inconsistencies plus empty authored text."""
        problems = []
        for position, question in enumerate(self.questions, start=1):
            issues = list(question.payload_errors())
            if not question.text.strip():
                issues.append("empty question text")
            if isinstance(question, ChoiceQuestion) and any(not option.strip() for option in question.options):
                issues.append("empty option text")
            problems.extend(f"question {position} ({question.id}): {issue}" for issue in issues)
        if self.time_limit_seconds is not None and self.time_limit_seconds < 0:
            problems.append("time limit must be positive")
        return problems

    def ensure_valid(self) -> None:
        problems = self.integrity_errors()
        if problems:
            raise QuizValidationError(problems)

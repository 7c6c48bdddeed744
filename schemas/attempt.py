from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, field_serializer
from pydantic.alias_generators import to_camel

from utils.clock import isoformat


class AttemptStatus(str, Enum):
    IN_PROGRESS = "in-progress"
    SUBMITTED = "submitted"
    EXPIRED = "expired"


class Attempt(BaseModel):
    """One student's run at a quiz. Answers are keyed by question id, in authored index space."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    attempt_id: str
    quiz_id: str
    student_id: str
    answers: Dict[str, Any]
    flagged: List[str] = []
    started_at: datetime
    submitted_at: Optional[datetime] = None
    time_spent_seconds: int = 0
    status: AttemptStatus = AttemptStatus.IN_PROGRESS

    @field_serializer("started_at", "submitted_at")
    def _serialize_moment(self, value: Optional[datetime]) -> Optional[str]:
        return isoformat(value)

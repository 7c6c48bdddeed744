from datetime import datetime, timedelta
from typing import Any, Dict, List

from pydantic import BaseModel, ConfigDict, field_serializer
from pydantic.alias_generators import to_camel

from utils.clock import isoformat


class AutosaveSnapshot(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    quiz_id: str
    student_id: str
    answers: Dict[str, Any]
    flagged: List[str] = []
    saved_at: datetime

    @field_serializer("saved_at")
    def _serialize_saved_at(self, value: datetime) -> str:
        return isoformat(value)

    def is_fresh(self, now: datetime, max_age_seconds: int) -> bool:
        return now - self.saved_at < timedelta(seconds=max_age_seconds)

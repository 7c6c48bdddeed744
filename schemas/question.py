"""
Question variants.

Each question kind is its own frozen model carrying only the payload that kind
needs; `Question` is the discriminated union over `kind`. Payload consistency
(e.g. correct indices inside the option range) is not enforced at parse time so
that a stored quiz with one broken question can still be loaded and scored;
use `payload_errors()` to inspect it.
"""
from enum import Enum
from typing import Annotated, Any, ClassVar, Dict, FrozenSet, List, Literal, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_serializer
from pydantic.alias_generators import to_camel


class QuestionKind(str, Enum):
    SINGLE_CHOICE = "single-choice"
    MULTI_CHOICE = "multi-choice"
    TRUE_FALSE = "true-false"
    SHORT_ANSWER = "short-answer"
    ESSAY = "essay"
    FILL_BLANK = "fill-blank"
    MATCHING = "matching"
    ORDERING = "ordering"


# Type names written by the existing front end
LEGACY_KIND_NAMES = {
    "multiple-choice-single": QuestionKind.SINGLE_CHOICE.value,
    "multiple-choice-multiple": QuestionKind.MULTI_CHOICE.value,
}


class QuestionBase(BaseModel):
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    AUTO_GRADABLE: ClassVar[bool] = True

    id: str
    text: str = ""

    def payload_errors(self) -> List[str]:
        return []

    def student_view(self) -> Dict[str, Any]:
        """Question as shown to a student: no answer keys."""
        return {"id": self.id, "kind": self.kind, "text": self.text}


class ChoiceQuestion(QuestionBase):
    options: Tuple[str, ...] = ()
    correct_indices: FrozenSet[int] = frozenset()

    @field_serializer("correct_indices")
    def _serialize_indices(self, value: FrozenSet[int]) -> List[int]:
        return sorted(value)

    def payload_errors(self) -> List[str]:
        problems = []
        if not self.options:
            problems.append("no options")
        if not self.correct_indices:
            problems.append("no correct option")
        out_of_range = sorted(i for i in self.correct_indices if not 0 <= i < len(self.options))
        if out_of_range:
            problems.append(f"correct indices {out_of_range} outside {len(self.options)} options")
        return problems

    def student_view(self) -> Dict[str, Any]:
        view = super().student_view()
        view["options"] = list(self.options)
        return view


class SingleChoiceQuestion(ChoiceQuestion):
    kind: Literal["single-choice"] = "single-choice"

    def payload_errors(self) -> List[str]:
        problems = super().payload_errors()
        if len(self.correct_indices) > 1:
            problems.append("more than one correct option")
        return problems


class MultiChoiceQuestion(ChoiceQuestion):
    kind: Literal["multi-choice"] = "multi-choice"


class TrueFalseQuestion(ChoiceQuestion):
    kind: Literal["true-false"] = "true-false"
    options: Tuple[str, ...] = ("True", "False")

    def payload_errors(self) -> List[str]:
        problems = super().payload_errors()
        if len(self.options) != 2:
            problems.append("true/false needs exactly two options")
        if len(self.correct_indices) > 1:
            problems.append("more than one correct option")
        return problems


class ShortAnswerQuestion(QuestionBase):
    AUTO_GRADABLE: ClassVar[bool] = False
    kind: Literal["short-answer"] = "short-answer"


class EssayQuestion(QuestionBase):
    AUTO_GRADABLE: ClassVar[bool] = False
    kind: Literal["essay"] = "essay"


class FillBlankQuestion(QuestionBase):
    kind: Literal["fill-blank"] = "fill-blank"
    # One accepted literal per blank slot, compared case-sensitively
    blanks: Tuple[str, ...] = ()

    def payload_errors(self) -> List[str]:
        problems = []
        if not self.blanks:
            problems.append("no blanks")
        if any(blank == "" for blank in self.blanks):
            problems.append("empty accepted answer")
        return problems

    def student_view(self) -> Dict[str, Any]:
        view = super().student_view()
        view["blankCount"] = len(self.blanks)
        return view


class MatchPair(BaseModel):
    model_config = ConfigDict(frozen=True)

    left: str
    right: str


class MatchingQuestion(QuestionBase):
    kind: Literal["matching"] = "matching"
    pairs: Tuple[MatchPair, ...] = ()

    def payload_errors(self) -> List[str]:
        problems = []
        if not self.pairs:
            problems.append("no pairs")
        if any(not pair.left.strip() or not pair.right.strip() for pair in self.pairs):
            problems.append("pair with an empty side")
        return problems

    def student_view(self) -> Dict[str, Any]:
        view = super().student_view()
        view["left"] = [pair.left for pair in self.pairs]
        view["right"] = [pair.right for pair in self.pairs]
        return view


class OrderingQuestion(QuestionBase):
    kind: Literal["ordering"] = "ordering"
    # Authored order is the correct order
    items: Tuple[str, ...] = ()

    def payload_errors(self) -> List[str]:
        return [] if self.items else ["no items"]

    def student_view(self) -> Dict[str, Any]:
        view = super().student_view()
        view["items"] = list(self.items)
        return view


QUESTION_TYPES = (
    SingleChoiceQuestion,
    MultiChoiceQuestion,
    TrueFalseQuestion,
    ShortAnswerQuestion,
    EssayQuestion,
    FillBlankQuestion,
    MatchingQuestion,
    OrderingQuestion,
)

Question = Annotated[
    Union[
        SingleChoiceQuestion,
        MultiChoiceQuestion,
        TrueFalseQuestion,
        ShortAnswerQuestion,
        EssayQuestion,
        FillBlankQuestion,
        MatchingQuestion,
        OrderingQuestion,
    ],
    Field(discriminator="kind"),
]

question_adapter = TypeAdapter(Question)


def normalize_question_document(raw: Dict[str, Any], position: int) -> Dict[str, Any]:
    """Map a stored question document, including the legacy front-end shape, onto the variant fields."""
    data = dict(raw)
    kind = data.get("kind") or data.pop("type", None)
    data["kind"] = LEGACY_KIND_NAMES.get(kind, kind)

    if data.get("id") in (None, ""):
        data["id"] = str(position)
    else:
        data["id"] = str(data["id"])

    if "correctIndices" not in data and "correct_indices" not in data:
        if data.get("correctAnswers"):
            data["correctIndices"] = data["correctAnswers"]
        elif isinstance(data.get("correctAnswer"), int):
            data["correctIndices"] = [data["correctAnswer"]]

    if "pairs" not in data and data.get("matches") is not None:
        data["pairs"] = data["matches"]
    if "items" not in data and isinstance(data.get("ordering"), list):
        data["items"] = data["ordering"]

    # Empty legacy payload arrays are present on every legacy question regardless of type
    for key in ("correctAnswers", "correctAnswer", "matches", "ordering"):
        data.pop(key, None)
    if data["kind"] not in (QuestionKind.SINGLE_CHOICE, QuestionKind.MULTI_CHOICE, QuestionKind.TRUE_FALSE):
        data.pop("options", None)
        data.pop("correctIndices", None)
    return data


def parse_question(raw: Union[Dict[str, Any], QuestionBase], position: int = 0) -> QuestionBase:
    if isinstance(raw, QuestionBase):
        return raw
    return question_adapter.validate_python(normalize_question_document(raw, position))

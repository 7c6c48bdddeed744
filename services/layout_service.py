"""Presentation order for one attempt. Answers are always stored in authored index space."""
import random
from dataclasses import dataclass, field
from typing import Any, Dict, List

from schemas.question import ChoiceQuestion, MatchingQuestion, OrderingQuestion, QuestionBase
from schemas.quiz import Quiz
from services.scoring_service import is_index


@dataclass
class QuizLayout:
    question_order: List[str]
    # question id -> authored index at each displayed position
    permutations: Dict[str, List[int]] = field(default_factory=dict)

    def to_authored_index(self, question_id: str, displayed_index: int) -> int:
        permutation = self.permutations.get(question_id)
        if permutation is None:
            return displayed_index
        if not 0 <= displayed_index < len(permutation):
            raise ValueError(f"Option {displayed_index} out of range for question {question_id}")
        return permutation[displayed_index]

    def to_authored_answer(self, question: QuestionBase, value: Any) -> Any:
        """Translate an answer given against the displayed order back to authored indices."""
        if value is None or question.id not in self.permutations:
            return value
        if isinstance(question, ChoiceQuestion) and question.kind != "multi-choice":
            return self.to_authored_index(question.id, value) if is_index(value) else value
        if isinstance(question, (ChoiceQuestion, OrderingQuestion)) and isinstance(value, (list, tuple)):
            return [self.to_authored_index(question.id, v) if is_index(v) else v for v in value]
        # Matching answers are right-hand strings per left item, nothing to map
        return value

    def to_displayed_answer(self, question: QuestionBase, value: Any) -> Any:
        """Inverse of to_authored_answer, for echoing a student's answer back in the order they see."""
        permutation = self.permutations.get(question.id)
        if value is None or permutation is None or isinstance(question, MatchingQuestion):
            return value
        inverse = {authored: displayed for displayed, authored in enumerate(permutation)}
        if isinstance(value, (list, tuple)):
            return [inverse.get(v, v) if is_index(v) else v for v in value]
        if is_index(value):
            return inverse.get(value, value)
        return value

    def present(self, quiz: Quiz) -> List[Dict[str, Any]]:
        by_id = {q.id: q for q in quiz.questions}
        views = []
        for position, question_id in enumerate(self.question_order):
            question = by_id[question_id]
            view = question.student_view()
            view["position"] = position
            permutation = self.permutations.get(question_id)
            if permutation is not None:
                if isinstance(question, ChoiceQuestion):
                    view["options"] = [question.options[i] for i in permutation]
                elif isinstance(question, OrderingQuestion):
                    view["items"] = [question.items[i] for i in permutation]
                elif isinstance(question, MatchingQuestion):
                    view["right"] = [question.pairs[i].right for i in permutation]
            views.append(view)
        return views


def build_layout(quiz: Quiz, seed: str) -> QuizLayout:
    """Deterministic for a given seed, so reloading the same attempt shows the same order."""
    order = quiz.question_ids()
    if quiz.shuffle_questions:
        random.Random(f"{seed}:order").shuffle(order)

    permutations = {}
    for question in quiz.questions:
        if isinstance(question, ChoiceQuestion):
            if not quiz.shuffle_options:
                continue
            size = len(question.options)
        elif isinstance(question, OrderingQuestion):
            # Authored order is the answer, so it is never shown as-is
            size = len(question.items)
        elif isinstance(question, MatchingQuestion):
            size = len(question.pairs)
        else:
            continue
        permutation = list(range(size))
        random.Random(f"{seed}:{question.id}").shuffle(permutation)
        permutations[question.id] = permutation

    return QuizLayout(question_order=order, permutations=permutations)

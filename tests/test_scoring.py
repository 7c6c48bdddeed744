import pytest

from schemas.question import parse_question
from schemas.quiz import Quiz
from schemas.result import QuestionOutcome
from services.scoring_service import ManualGradePolicy, grade_question, is_answered, score


@pytest.fixture
def quiz(sample_questions):
    return Quiz(id="quiz1", questions=sample_questions)


def single_choice():
    return parse_question({"id": "s", "kind": "single-choice", "options": ["A", "B", "C"], "correctIndices": [1]})


class TestQuestionGrading:
    def test_single_choice(self):
        question = single_choice()
        assert grade_question(question, 1) == QuestionOutcome.CORRECT
        assert grade_question(question, 0) == QuestionOutcome.INCORRECT
        assert grade_question(question, None) == QuestionOutcome.UNANSWERED

    def test_single_choice_rejects_booleans(self):
        assert grade_question(single_choice(), True) == QuestionOutcome.INCORRECT

    def test_multi_choice_requires_exact_set(self):
        question = parse_question({"id": "m", "kind": "multi-choice", "options": ["a", "b", "c"], "correctIndices": [0, 2]})
        assert grade_question(question, [0, 1, 2]) == QuestionOutcome.INCORRECT
        assert grade_question(question, [0]) == QuestionOutcome.INCORRECT
        assert grade_question(question, [2, 0]) == QuestionOutcome.CORRECT
        assert grade_question(question, []) == QuestionOutcome.UNANSWERED

    def test_ordering_requires_authored_order(self):
        question = parse_question({"id": "o", "kind": "ordering", "items": ["a", "b", "c"]})
        assert grade_question(question, [0, 2, 1]) == QuestionOutcome.INCORRECT
        assert grade_question(question, [0, 1, 2]) == QuestionOutcome.CORRECT

    def test_fill_blank_is_case_sensitive_and_untrimmed(self):
        question = parse_question({"id": "f", "kind": "fill-blank", "blanks": ["Paris", "Rome"]})
        assert grade_question(question, ["Paris", "Rome"]) == QuestionOutcome.CORRECT
        assert grade_question(question, {"1": "Rome", "0": "Paris"}) == QuestionOutcome.CORRECT
        assert grade_question(question, ["paris", "Rome"]) == QuestionOutcome.INCORRECT
        assert grade_question(question, ["Paris ", "Rome"]) == QuestionOutcome.INCORRECT
        assert grade_question(question, ["Paris"]) == QuestionOutcome.INCORRECT

    def test_single_blank_accepts_plain_string(self):
        question = parse_question({"id": "f", "kind": "fill-blank", "blanks": ["Paris"]})
        assert grade_question(question, "Paris") == QuestionOutcome.CORRECT

    def test_matching(self):
        question = parse_question({
            "id": "x",
            "kind": "matching",
            "pairs": [{"left": "dog", "right": "bark"}, {"left": "cat", "right": "meow"}],
        })
        assert grade_question(question, ["bark", "meow"]) == QuestionOutcome.CORRECT
        assert grade_question(question, {"1": "meow", "0": "bark"}) == QuestionOutcome.CORRECT
        assert grade_question(question, ["meow", "bark"]) == QuestionOutcome.INCORRECT

    def test_malformed_question_is_incorrect_even_when_unanswered(self):
        question = parse_question({"id": "bad", "kind": "single-choice", "options": ["A", "B"], "correctIndices": []})
        assert grade_question(question, 0) == QuestionOutcome.INCORRECT
        assert grade_question(question, None) == QuestionOutcome.INCORRECT

    def test_essay_policies(self):
        essay = parse_question({"id": "e", "kind": "essay", "text": "Discuss"})
        assert grade_question(essay, "") == QuestionOutcome.UNANSWERED
        assert grade_question(essay, "An answer") == QuestionOutcome.INCORRECT
        assert grade_question(essay, "An answer", policy=ManualGradePolicy.PENDING) == QuestionOutcome.PENDING_MANUAL_GRADE
        assert grade_question(essay, "An answer", manual_grade=True, policy=ManualGradePolicy.PENDING) == QuestionOutcome.CORRECT


class TestIsAnswered:
    @pytest.mark.parametrize("value", [None, "", "   ", [], [None, ""], {}, {"0": None}])
    def test_empty_values(self, value):
        assert not is_answered(value)

    @pytest.mark.parametrize("value", [0, 1, "x", [0], {"0": "a"}, False])
    def test_answered_values(self, value):
        assert is_answered(value)


class TestScore:
    def test_counts_add_up(self, quiz):
        result = score(quiz, {"q1": 0, "q2": [0, 2], "q4": "Lyon"})
        assert result.correct_count + result.incorrect_count + result.unanswered_count == len(quiz.questions)
        assert (result.correct_count, result.incorrect_count, result.unanswered_count) == (1, 2, 2)
        assert result.score == 20

    def test_all_correct_is_100(self, quiz, correct_answers):
        result = score(quiz, correct_answers)
        assert result.score == 100
        assert result.per_question_correctness == [True] * 5
        assert result.question_ids == ["q1", "q2", "q3", "q4", "q5"]

    def test_all_null_is_0(self, quiz):
        result = score(quiz, {q.id: None for q in quiz.questions})
        assert result.unanswered_count == len(quiz.questions)
        assert result.score == 0

    def test_percentage_rounds_half_up(self):
        questions = [
            {"id": str(i), "kind": "true-false", "text": "t", "correctIndices": [0]} for i in range(8)
        ]
        quiz = Quiz(id="q", questions=questions)
        # 5/8 = 62.5%
        result = score(quiz, {str(i): 0 for i in range(5)})
        assert result.score == 63

    def test_one_malformed_question_does_not_block_the_rest(self, sample_questions, correct_answers):
        sample_questions[0] = {**sample_questions[0], "correctIndices": [7]}
        quiz = Quiz(id="quiz1", questions=sample_questions)
        result = score(quiz, correct_answers)
        assert result.correct_count == 4
        assert result.per_question_outcome[0] == QuestionOutcome.INCORRECT
        assert result.score == 80

    def test_pending_policy_excludes_ungraded_essays(self, sample_questions, correct_answers):
        quiz = Quiz(id="quiz1", questions=sample_questions + [{"id": "q6", "kind": "essay", "text": "Why?"}])
        answers = {**correct_answers, "q6": "Because"}

        counted = score(quiz, answers, policy=ManualGradePolicy.COUNT_AS_INCORRECT)
        assert counted.score == 83
        assert counted.incorrect_count == 1

        pending = score(quiz, answers, policy=ManualGradePolicy.PENDING)
        assert pending.score == 100
        assert pending.pending_manual_count == 1
        assert (pending.correct_count + pending.incorrect_count
                + pending.unanswered_count + pending.pending_manual_count) == 6

        graded = score(quiz, answers, manual_grades={"q6": False}, policy=ManualGradePolicy.PENDING)
        assert graded.score == 83

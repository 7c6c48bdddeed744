import pytest

from core.exceptions import DocumentNotFoundError, PermissionDeniedError
from schemas.quiz import Quiz
from schemas.user import Principal, Role
from services.document_store import QUIZZES, RESULTS
from services.regrade_service import RegradePolicy, RegradeService, regrade
from services.scoring_service import score


@pytest.fixture
def service(seeded_store, clock):
    return RegradeService(seeded_store, clock=clock)


async def submit(make_session, answers):
    session = make_session()
    await session.load("quiz1")
    for question_id, value in answers.items():
        session.answer(question_id, value)
    await session.submit()
    return session.attempt_id


def test_regrade_matches_score_for_unchanged_quiz(sample_questions, correct_answers, clock):
    quiz = Quiz(id="quiz1", questions=sample_questions)
    answers = {**correct_answers, "q2": [0], "q5": None}

    assert regrade(answers, quiz.questions, now=clock()) == score(quiz, answers, now=clock())


class TestRegradeResult:
    async def test_current_policy_follows_edited_answer_key(self, service, make_session, seeded_store,
                                                           correct_answers, teacher, clock):
        result_id = await submit(make_session, {**correct_answers, "q1": 0})
        assert seeded_store.collections[RESULTS][result_id]["score"] == 80

        seeded_store.collections[QUIZZES]["quiz1"]["questions"][0]["correctIndices"] = [0]
        clock.advance(3600)
        record = await service.regrade_result(result_id, teacher, policy=RegradePolicy.CURRENT)

        assert record.result.score == 100
        document = seeded_store.collections[RESULTS][result_id]
        assert document["score"] == 100
        assert document["answers"]["q1"] == 0
        assert document["gradedAt"] == "2024-03-01T09:00:00Z"
        assert document["regradedAt"] == "2024-03-01T10:00:00Z"

    async def test_pinned_policy_uses_submitted_questions(self, service, make_session, seeded_store,
                                                         correct_answers, teacher):
        result_id = await submit(make_session, {**correct_answers, "q1": 0})

        seeded_store.collections[QUIZZES]["quiz1"]["questions"][0]["correctIndices"] = [0]
        record = await service.regrade_result(result_id, teacher, policy=RegradePolicy.PINNED)

        assert record.result.score == 80
        assert seeded_store.collections[RESULTS][result_id]["regradedAt"] is not None

    async def test_regrade_is_idempotent(self, service, make_session, correct_answers, teacher):
        result_id = await submit(make_session, {**correct_answers, "q3": 1})

        first = await service.regrade_result(result_id, teacher)
        second = await service.regrade_result(result_id, teacher)

        assert first.result.scoring_fields() == second.result.scoring_fields()

    async def test_only_owner_or_admin(self, service, make_session, correct_answers, student, admin):
        result_id = await submit(make_session, correct_answers)

        with pytest.raises(PermissionDeniedError):
            await service.regrade_result(result_id, student)
        with pytest.raises(PermissionDeniedError):
            await service.regrade_result(result_id, Principal(user_id="t2", role=Role.TEACHER))

        record = await service.regrade_result(result_id, admin)
        assert record.result.score == 100

    async def test_missing_result(self, service, teacher):
        with pytest.raises(DocumentNotFoundError):
            await service.regrade_result("nope", teacher)


class TestManualGrade:
    @pytest.fixture
    def essay_quiz(self, seeded_store):
        seeded_store.collections[QUIZZES]["quiz1"]["questions"].append(
            {"id": "q6", "kind": "essay", "text": "Explain your ordering"}
        )
        return seeded_store

    async def test_manual_grade_rescores(self, essay_quiz, service, make_session, correct_answers, teacher):
        result_id = await submit(make_session, {**correct_answers, "q6": "Because size matters"})
        assert essay_quiz.collections[RESULTS][result_id]["score"] == 83

        record = await service.record_manual_grade(result_id, "q6", True, teacher)

        assert record.result.score == 100
        document = essay_quiz.collections[RESULTS][result_id]
        assert document["manualGrades"] == {"q6": True}
        assert document["correctCount"] == 6
        assert document["answers"]["q6"] == "Because size matters"

    async def test_manual_grade_survives_regrade(self, essay_quiz, service, make_session, correct_answers, teacher):
        result_id = await submit(make_session, {**correct_answers, "q6": "Because"})
        await service.record_manual_grade(result_id, "q6", True, teacher)

        record = await service.regrade_result(result_id, teacher)
        assert record.result.score == 100

    async def test_auto_graded_question_cannot_be_manually_graded(self, essay_quiz, service, make_session,
                                                                  correct_answers, teacher):
        result_id = await submit(make_session, {**correct_answers, "q6": "Because"})

        with pytest.raises(ValueError):
            await service.record_manual_grade(result_id, "q1", True, teacher)

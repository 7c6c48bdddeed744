import pytest
from httpx import ASGITransport, AsyncClient

from api.main import app, get_autosave, get_registry, get_store
from services.session_registry import SessionRegistry

STUDENT = {"X-User-Id": "s1", "X-User-Name": "Student One"}
OTHER_STUDENT = {"X-User-Id": "s2"}
TEACHER = {"X-User-Id": "t1", "X-User-Role": "teacher"}


@pytest.fixture
async def registry(seeded_store, autosave, clock, sleep):
    registry = SessionRegistry(seeded_store, autosave, clock=clock, sleep=sleep, start_timers=False)
    yield registry
    await registry.shutdown()


@pytest.fixture
async def client(seeded_store, autosave, registry):
    app.dependency_overrides[get_store] = lambda: seeded_store
    app.dependency_overrides[get_autosave] = lambda: autosave
    app.dependency_overrides[get_registry] = lambda: registry
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


def displayed_answers(view):
    """Correct answers expressed against the order the student is shown"""
    questions = {q["id"]: q for q in view["questions"]}
    ordering = [questions["q5"]["items"].index(item) for item in ["ant", "cat", "horse"]]
    return {"q1": 1, "q2": [0, 2], "q3": 0, "q4": ["Paris"], "q5": ordering}


async def start(client, headers=STUDENT):
    return await client.post("/api/quizzes/quiz1/session", headers=headers)


async def test_requires_identity(client):
    response = await client.post("/api/quizzes/quiz1/session")
    assert response.status_code == 401


async def test_start_session(client):
    response = await start(client)

    assert response.status_code == 200
    view = response.json()
    assert view["state"] == "active"
    assert view["remainingSeconds"] == 600
    assert len(view["questions"]) == 5
    assert "correctIndices" not in response.text


async def test_start_twice_returns_same_session(client, registry):
    first = (await start(client)).json()
    second = (await start(client)).json()

    assert first["attemptId"] == second["attemptId"]
    assert len(registry) == 1


async def test_ineligible_student(client, registry):
    response = await start(client, OTHER_STUDENT)

    assert response.status_code == 403
    assert response.json()["reason"] == "not-enrolled"
    assert len(registry) == 0


async def test_unknown_quiz(client):
    response = await client.post("/api/quizzes/nope/session", headers=STUDENT)
    assert response.status_code == 404


async def test_no_session_yet(client):
    response = await client.get("/api/quizzes/quiz1/session", headers=STUDENT)
    assert response.status_code == 404


async def test_full_attempt(client, seeded_store):
    view = (await start(client)).json()

    for question_id, value in displayed_answers(view).items():
        response = await client.put(
            f"/api/quizzes/quiz1/session/answers/{question_id}", json={"value": value}, headers=STUDENT
        )
        assert response.status_code == 200

    flag = await client.post("/api/quizzes/quiz1/session/flags/q2", headers=STUDENT)
    assert flag.json() == {"question_id": "q2", "flagged": True}

    response = await client.post("/api/quizzes/quiz1/session/submit", json={"confirm": True}, headers=STUDENT)
    assert response.status_code == 200
    submitted = response.json()
    assert submitted["state"] == "submitted"
    assert submitted["result"]["score"] == 100

    result = await client.get(f"/api/results/{submitted['resultId']}", headers=STUDENT)
    assert result.status_code == 200
    assert result.json()["studentName"] == "Student One"
    assert result.json()["flagged"] == ["q2"]

    forbidden = await client.get(f"/api/results/{submitted['resultId']}", headers=OTHER_STUDENT)
    assert forbidden.status_code == 403

    again = await client.post("/api/quizzes/quiz1/session/submit", json={"confirm": True}, headers=STUDENT)
    assert again.status_code == 404
    health = await client.get("/health")
    assert health.json()["active_sessions"] == 0


async def test_incomplete_submit(client):
    await start(client)
    await client.put("/api/quizzes/quiz1/session/answers/q1", json={"value": 1}, headers=STUDENT)

    response = await client.post("/api/quizzes/quiz1/session/submit", json={"confirm": True}, headers=STUDENT)

    assert response.status_code == 422
    assert response.json()["unanswered"] == ["q2", "q3", "q4", "q5"]


async def test_submit_write_failure(client, seeded_store):
    view = (await start(client)).json()
    for question_id, value in displayed_answers(view).items():
        await client.put(f"/api/quizzes/quiz1/session/answers/{question_id}", json={"value": value}, headers=STUDENT)
    seeded_store.fail_writes = True

    response = await client.post("/api/quizzes/quiz1/session/submit", json={"confirm": True}, headers=STUDENT)

    assert response.status_code == 503
    state = (await client.get("/api/quizzes/quiz1/session", headers=STUDENT)).json()
    assert state["state"] == "active"


async def test_unknown_question(client):
    await start(client)
    response = await client.put("/api/quizzes/quiz1/session/answers/q9", json={"value": 1}, headers=STUDENT)
    assert response.status_code == 422


async def test_regrade_and_manual_grade(client):
    view = (await start(client)).json()
    for question_id, value in displayed_answers(view).items():
        await client.put(f"/api/quizzes/quiz1/session/answers/{question_id}", json={"value": value}, headers=STUDENT)
    result_id = (await client.post(
        "/api/quizzes/quiz1/session/submit", json={"confirm": True}, headers=STUDENT
    )).json()["resultId"]

    denied = await client.post(f"/api/results/{result_id}/regrade", json={}, headers=STUDENT)
    assert denied.status_code == 403

    regraded = await client.post(f"/api/results/{result_id}/regrade", json={"policy": "pinned"}, headers=TEACHER)
    assert regraded.status_code == 200
    assert regraded.json()["score"] == 100
    assert regraded.json()["regradedAt"] is not None

    manual = await client.post(
        f"/api/results/{result_id}/manual-grades", json={"question_id": "q1", "correct": True}, headers=TEACHER
    )
    assert manual.status_code == 422


async def test_create_and_publish_quiz(client, sample_questions):
    draft = {"id": "quiz2", "title": "Draft", "questions": [{**sample_questions[0], "text": ""}]}

    denied = await client.post("/api/quizzes", json=draft, headers=STUDENT)
    assert denied.status_code == 403

    created = await client.post("/api/quizzes", json=draft, headers=TEACHER)
    assert created.status_code == 201
    assert created.json() == {"id": "quiz2", "is_published": False, "questions_count": 1}

    publish = await client.post("/api/quizzes/quiz2/publish", headers=TEACHER)
    assert publish.status_code == 422
    assert publish.json()["problems"] == ["question 1 (q1): empty question text"]


async def test_health(client):
    await start(client)
    response = await client.get("/health")
    assert response.json() == {"status": "ok", "active_sessions": 1}


async def test_update_quiz_is_owner_only(client, seeded_store, quiz_document):
    edited = {**quiz_document, "title": "General knowledge (fixed)"}

    denied = await client.put("/api/quizzes/quiz1", json=edited, headers={"X-User-Id": "t2", "X-User-Role": "teacher"})
    assert denied.status_code == 403

    response = await client.put("/api/quizzes/quiz1", json=edited, headers=TEACHER)
    assert response.status_code == 200
    assert seeded_store.collections["quizzes"]["quiz1"]["title"] == "General knowledge (fixed)"

from fastapi import FastAPI, HTTPException, Depends, Header, Request
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from pydantic import BaseModel, Field
from typing import Any, Dict, Optional

from core.config import settings
from core.exceptions import (
    DocumentNotFoundError,
    EligibilityError,
    IncompleteSubmissionError,
    InvalidTransitionError,
    LoadError,
    NavigationLockedError,
    PermissionDeniedError,
    QuizEngineError,
    QuizNotFoundError,
    QuizValidationError,
    StoreError,
    SubmitWriteError,
)
from core.logger import logger
from db.session import AsyncSessionLocal, create_redis, init_models
from schemas.quiz import Quiz
from schemas.user import Principal, Role
from services.autosave_service import AutosaveService
from services.document_store import DocumentStore, SqlDocumentStore
from services.quiz_service import QuizService
from services.regrade_service import RegradePolicy, RegradeService
from services.result_service import ResultService
from services.session_registry import SessionRegistry
from services.session_service import QuizSession


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_models()
    redis = create_redis()
    store = SqlDocumentStore(AsyncSessionLocal)
    autosave = AutosaveService(redis)
    app.state.store = store
    app.state.autosave = autosave
    app.state.registry = SessionRegistry(store, autosave)
    logger.info("API started", env=settings.ENV)
    try:
        yield
    finally:
        await app.state.registry.shutdown()
        await redis.aclose()
        logger.info("API stopped")


# API Documentation
API_DESCRIPTION = """
## Quiz Session Engine API

Runs timed quiz attempts for students and grading workflows for teachers.

### Authentication

Identity is established upstream. Every request carries:

- `X-User-Id`: the caller's user id (required)
- `X-User-Role`: `student`, `teacher` or `admin` (default `student`)
- `X-User-Name`: display name stored on results (optional)

### Sessions

A session lives in the server process that started it. Answers are
autosaved every 30 seconds; a student reconnecting within 4 hours gets
their progress back. When the time limit runs out the attempt is
submitted automatically with whatever has been answered.
"""

TAGS_METADATA = [
    {"name": "quizzes", "description": "Create and publish quizzes."},
    {"name": "sessions", "description": "Take a quiz: answer, flag, navigate and submit."},
    {"name": "results", "description": "Read, regrade and manually grade submitted attempts."},
    {"name": "info", "description": "Service information."},
]

app = FastAPI(
    title="Quiz Session Engine API",
    description=API_DESCRIPTION,
    version="1.0.0",
    openapi_tags=TAGS_METADATA,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)


# === Pydantic Models with Documentation ===

class AnswerRequest(BaseModel):
    """Request body for answering one question."""
    value: Any = Field(None, description="The answer. Option indices refer to the order shown to the student. null clears it.")


class FlagResponse(BaseModel):
    question_id: str = Field(..., description="Question id")
    flagged: bool = Field(..., description="Whether the question is flagged for review after the toggle")


class SubmitRequest(BaseModel):
    """Request body for a manual submission."""
    confirm: bool = Field(True, description="Must be true; the client has asked the student to confirm")


class RegradeRequest(BaseModel):
    policy: Optional[RegradePolicy] = Field(None, description="current or pinned; defaults to the server policy")


class ManualGradeRequest(BaseModel):
    """Teacher's verdict on a manually graded question."""
    question_id: str = Field(..., description="Id of a short-answer or essay question")
    correct: bool = Field(..., description="Whether the answer is accepted")
    policy: Optional[RegradePolicy] = Field(None, description="Which question definitions to rescore against")


class QuizCreated(BaseModel):
    id: str = Field(..., description="Quiz id")
    is_published: bool = Field(..., description="Whether students can start the quiz")
    questions_count: int = Field(..., description="Number of questions in the quiz")


class HealthResponse(BaseModel):
    status: str = Field(..., description="ok when the process is serving")
    active_sessions: int = Field(..., description="Live sessions in this process")


# === Error mapping ===

def _error_status(error: QuizEngineError) -> int:
    if isinstance(error, (EligibilityError, PermissionDeniedError)):
        return 403
    if isinstance(error, (QuizNotFoundError, DocumentNotFoundError)):
        return 404
    if isinstance(error, (InvalidTransitionError, NavigationLockedError)):
        return 409
    if isinstance(error, (IncompleteSubmissionError, QuizValidationError)):
        return 422
    if isinstance(error, (LoadError, StoreError, SubmitWriteError)):
        return 503
    return 400


@app.exception_handler(QuizEngineError)
async def quiz_engine_error_handler(request: Request, exc: QuizEngineError):
    status_code = _error_status(exc)
    body: Dict[str, Any] = {"detail": str(exc)}
    if isinstance(exc, EligibilityError):
        body["reason"] = exc.reason.value
    if isinstance(exc, IncompleteSubmissionError):
        body["unanswered"] = exc.unanswered
    if isinstance(exc, QuizValidationError):
        body["problems"] = exc.problems
    if status_code >= 500:
        logger.error("Request failed", path=request.url.path, error=str(exc))
    else:
        logger.info("Request rejected", path=request.url.path, status=status_code, error=str(exc))
    return JSONResponse(status_code=status_code, content=body)


# === Dependencies ===

def get_store(request: Request) -> DocumentStore:
    return request.app.state.store


def get_autosave(request: Request) -> AutosaveService:
    return request.app.state.autosave


def get_registry(request: Request) -> SessionRegistry:
    return request.app.state.registry


def get_principal(
    x_user_id: Optional[str] = Header(None),
    x_user_role: str = Header("student"),
    x_user_name: Optional[str] = Header(None),
) -> Principal:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Unauthorized")
    try:
        role = Role(x_user_role.lower())
    except ValueError:
        raise HTTPException(status_code=401, detail=f"Unknown role {x_user_role!r}")
    return Principal(user_id=x_user_id, role=role, display_name=x_user_name)


def _require_session(registry: SessionRegistry, quiz_id: str, principal: Principal) -> QuizSession:
    session = registry.get(quiz_id, principal.user_id)
    if session is None:
        raise HTTPException(status_code=404, detail="No active session for this quiz")
    return session


# === Quizzes ===

@app.post(
    "/api/quizzes",
    response_model=QuizCreated,
    status_code=201,
    tags=["quizzes"],
    summary="Create quiz",
    description="Creates a quiz owned by the calling teacher. Published quizzes must pass integrity checks.",
    responses={
        403: {"description": "Caller is not a teacher"},
        422: {"description": "Quiz document is invalid"},
    },
)
async def create_quiz(
    document: Dict[str, Any],
    principal: Principal = Depends(get_principal),
    store: DocumentStore = Depends(get_store),
):
    try:
        quiz = Quiz.model_validate(document)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    quiz = await QuizService(store).save_quiz(quiz, principal)
    return {"id": quiz.id, "is_published": quiz.is_published, "questions_count": len(quiz.questions)}


@app.post(
    "/api/quizzes/{quiz_id}/publish",
    response_model=QuizCreated,
    tags=["quizzes"],
    summary="Publish quiz",
    responses={
        403: {"description": "Not the quiz owner"},
        404: {"description": "Quiz not found"},
        422: {"description": "Quiz has incomplete questions"},
    },
)
async def publish_quiz(
    quiz_id: str,
    principal: Principal = Depends(get_principal),
    store: DocumentStore = Depends(get_store),
):
    quiz = await QuizService(store).publish_quiz(quiz_id, principal)
    return {"id": quiz.id, "is_published": quiz.is_published, "questions_count": len(quiz.questions)}


@app.put(
    "/api/quizzes/{quiz_id}",
    response_model=QuizCreated,
    tags=["quizzes"],
    summary="Update quiz",
    description="Replaces the quiz definition. Regrading past results against it is a separate, explicit action.",
    responses={
        403: {"description": "Not the quiz owner"},
        404: {"description": "Quiz not found"},
        422: {"description": "Quiz document is invalid"},
    },
)
async def update_quiz(
    quiz_id: str,
    document: Dict[str, Any],
    principal: Principal = Depends(get_principal),
    store: DocumentStore = Depends(get_store),
):
    try:
        quiz = Quiz.model_validate({**document, "id": quiz_id})
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    quiz = await QuizService(store).update_quiz(quiz, principal)
    return {"id": quiz.id, "is_published": quiz.is_published, "questions_count": len(quiz.questions)}

# === Sessions ===

@app.post(
    "/api/quizzes/{quiz_id}/session",
    tags=["sessions"],
    summary="Start or resume a session",
    description="Loads the quiz, checks eligibility, restores recent progress and starts the timer.",
    responses={
        403: {"description": "Student is not eligible; `reason` says why"},
        404: {"description": "Quiz not found"},
        503: {"description": "Quiz could not be loaded"},
    },
)
async def start_session(
    quiz_id: str,
    principal: Principal = Depends(get_principal),
    registry: SessionRegistry = Depends(get_registry),
):
    session = await registry.start(quiz_id, principal)
    return session.view()


@app.get("/api/quizzes/{quiz_id}/session", tags=["sessions"], summary="Get session state")
async def get_session(
    quiz_id: str,
    principal: Principal = Depends(get_principal),
    registry: SessionRegistry = Depends(get_registry),
):
    return _require_session(registry, quiz_id, principal).view()


@app.put(
    "/api/quizzes/{quiz_id}/session/answers/{question_id}",
    tags=["sessions"],
    summary="Answer a question",
    responses={
        409: {"description": "Session is not active or navigation is locked"},
        422: {"description": "Unknown question or option"},
    },
)
async def set_answer(
    quiz_id: str,
    question_id: str,
    body: AnswerRequest,
    principal: Principal = Depends(get_principal),
    registry: SessionRegistry = Depends(get_registry),
):
    session = _require_session(registry, quiz_id, principal)
    try:
        session.answer_displayed(question_id, body.value)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return session.view()


@app.post(
    "/api/quizzes/{quiz_id}/session/flags/{question_id}",
    response_model=FlagResponse,
    tags=["sessions"],
    summary="Toggle review flag",
)
async def toggle_flag(
    quiz_id: str,
    question_id: str,
    principal: Principal = Depends(get_principal),
    registry: SessionRegistry = Depends(get_registry),
):
    session = _require_session(registry, quiz_id, principal)
    try:
        flagged = session.toggle_flag(question_id)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return {"question_id": question_id, "flagged": flagged}


@app.post("/api/quizzes/{quiz_id}/session/advance", tags=["sessions"], summary="Move to the next question")
async def advance(
    quiz_id: str,
    principal: Principal = Depends(get_principal),
    registry: SessionRegistry = Depends(get_registry),
):
    session = _require_session(registry, quiz_id, principal)
    session.advance()
    return session.view()


@app.post(
    "/api/quizzes/{quiz_id}/session/submit",
    tags=["sessions"],
    summary="Submit the attempt",
    description="Scores the attempt and stores the result. Every question must be answered.",
    responses={
        404: {"description": "No live session; submitted sessions are released"},
        409: {"description": "A submission is already in progress"},
        422: {"description": "Some questions are unanswered; `unanswered` lists them"},
        503: {"description": "Result could not be stored; answers are kept, try again"},
    },
)
async def submit(
    quiz_id: str,
    body: SubmitRequest,
    principal: Principal = Depends(get_principal),
    registry: SessionRegistry = Depends(get_registry),
):
    if not body.confirm:
        raise HTTPException(status_code=400, detail="Submission must be confirmed")
    session = _require_session(registry, quiz_id, principal)
    await session.submit()
    return session.view()


@app.delete("/api/quizzes/{quiz_id}/session", status_code=204, tags=["sessions"], summary="Leave the session")
async def leave_session(
    quiz_id: str,
    principal: Principal = Depends(get_principal),
    registry: SessionRegistry = Depends(get_registry),
):
    await registry.discard(quiz_id, principal.user_id)


# === Results ===

@app.get(
    "/api/results/{result_id}",
    tags=["results"],
    summary="Get a result",
    responses={403: {"description": "Not the student, the quiz owner or an admin"}, 404: {"description": "Result not found"}},
)
async def get_result(
    result_id: str,
    principal: Principal = Depends(get_principal),
    store: DocumentStore = Depends(get_store),
):
    record = await ResultService(store).require_result(result_id)
    allowed = (
        principal.is_admin
        or principal.user_id == record.attempt.student_id
        or (principal.role == Role.TEACHER and principal.user_id == record.teacher_id)
    )
    if not allowed:
        raise PermissionDeniedError("You cannot view this result")
    return record.to_document()


@app.post(
    "/api/results/{result_id}/regrade",
    tags=["results"],
    summary="Regrade a result",
    description="Rescores the stored answers. Answers are never changed, only the score fields.",
)
async def regrade_result(
    result_id: str,
    body: RegradeRequest,
    principal: Principal = Depends(get_principal),
    store: DocumentStore = Depends(get_store),
):
    record = await RegradeService(store).regrade_result(result_id, principal, policy=body.policy)
    return record.to_document()


@app.post("/api/results/{result_id}/manual-grades", tags=["results"], summary="Grade an essay or short answer")
async def manual_grade(
    result_id: str,
    body: ManualGradeRequest,
    principal: Principal = Depends(get_principal),
    store: DocumentStore = Depends(get_store),
):
    try:
        record = await RegradeService(store).record_manual_grade(
            result_id, body.question_id, body.correct, principal, policy=body.policy
        )
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return record.to_document()


# === Info ===

@app.get("/health", response_model=HealthResponse, tags=["info"], summary="Health check")
async def health(registry: SessionRegistry = Depends(get_registry)):
    return {"status": "ok", "active_sessions": len(registry)}

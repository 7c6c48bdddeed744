"""
Quiz session state machine.

    IDLE --load--> LOADING --ready--> ACTIVE --submit--> SUBMITTING --> SUBMITTED
                      |                  ^                   |
                      v                  +--- write fails ---+  (manual submit, time left)
                    ERROR                                    |
                                         EXPIRED <-----------+  (expiry submit, retried)

One instance drives one attempt. The countdown and autosave loops are tasks
owned by the instance and are cancelled together on submit or close.
"""
import asyncio
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from redis.exceptions import RedisError

from core.config import settings
from core.exceptions import (
    EligibilityError,
    IncompleteSubmissionError,
    InvalidTransitionError,
    LoadError,
    NavigationLockedError,
    StoreError,
    SubmitWriteError,
)
from core.logger import logger
from schemas.attempt import Attempt, AttemptStatus
from schemas.quiz import Quiz
from schemas.result import Result, ResultRecord
from schemas.user import Principal
from services.autosave_service import AutosaveService
from services.document_store import DocumentStore
from services.eligibility_service import EligibilityGuard
from services.layout_service import QuizLayout, build_layout
from services.quiz_service import QuizService
from services.result_service import ResultService
from services.scoring_service import is_answered, score
from services.task_manager import TaskManager
from utils.clock import Clock, utcnow


class SessionState(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    ACTIVE = "active"
    SUBMITTING = "submitting"
    SUBMITTED = "submitted"
    EXPIRED = "expired"
    ERROR = "error"


class SubmitTrigger(str, Enum):
    MANUAL = "manual"
    EXPIRY = "expiry"


class SessionEvent(str, Enum):
    PROGRESS_RESTORED = "progress-restored"
    TIME_WARNING = "time-warning"
    AUTO_SUBMITTING = "auto-submitting"
    SUBMITTED = "submitted"
    SUBMIT_FAILED = "submit-failed"
    AUTOSAVE_FAILED = "autosave-failed"


EventListener = Callable[[SessionEvent, Dict[str, Any]], None]


def _storable(value: Any) -> Any:
    # Sets are kept as sorted lists so answers stay JSON-serializable
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    if isinstance(value, tuple):
        return list(value)
    return value


class QuizSession:
    def __init__(
        self,
        student: Principal,
        store: DocumentStore,
        autosave: AutosaveService,
        clock: Clock = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        listener: Optional[EventListener] = None,
        start_timers: bool = True,
    ):
        self.student = student
        self.autosave = autosave
        self.clock = clock
        self.sleep = sleep
        self.listener = listener
        self.start_timers = start_timers

        self.quizzes = QuizService(store, clock=clock, sleep=sleep)
        self.guard = EligibilityGuard(store, clock=clock, sleep=sleep)
        self.results = ResultService(store)
        self.tasks = TaskManager(owner=f"session:{student.user_id}")

        self.state = SessionState.IDLE
        self.error: Optional[Exception] = None
        self.quiz: Optional[Quiz] = None
        self.layout: Optional[QuizLayout] = None
        self.attempt_id: Optional[str] = None
        self.answers: Dict[str, Any] = {}
        self.flagged: Set[str] = set()
        self.cursor = 0
        self.started_at: Optional[datetime] = None
        self.remaining_seconds: Optional[int] = None
        self.progress_restored = False
        self.last_saved_at: Optional[datetime] = None
        self.result: Optional[Result] = None
        self.result_id: Optional[str] = None

        self._dirty = False
        self._expiry_pending = False

    @property
    def student_id(self) -> str:
        return self.student.user_id

    # --- Lifecycle ---

    async def load(self, quiz_id: str) -> None:
        """Fetch the quiz, check eligibility, restore fresh progress and start the clock."""
        self._require("load", SessionState.IDLE)
        self.state = SessionState.LOADING
        logger.info("Loading quiz session", quiz_id=quiz_id, student_id=self.student_id)

        try:
            quiz = await self.quizzes.load_quiz(quiz_id)
        except LoadError as e:
            self._fail(e)
            raise

        decision = await self.guard.check_with_retry(quiz, self.student_id)
        if not decision.eligible:
            error = EligibilityError(decision.reason)
            self._fail(error)
            raise error

        self.quiz = quiz
        self.attempt_id = uuid.uuid4().hex
        self.layout = build_layout(quiz, seed=f"{quiz.id}:{self.student_id}")
        self.answers = {question_id: None for question_id in quiz.question_ids()}
        self.flagged = set()
        await self._restore_progress()

        self.started_at = self.clock()
        # The time budget restarts on every load; resumed attempts are not charged for earlier loads
        self.remaining_seconds = quiz.time_limit_seconds
        self.state = SessionState.ACTIVE
        logger.info(
            "Quiz session active",
            quiz_id=quiz.id,
            student_id=self.student_id,
            attempt_id=self.attempt_id,
            time_limit=quiz.time_limit_seconds,
            restored=self.progress_restored,
        )

        if self.start_timers:
            self._start_timers()

    async def close(self) -> None:
        """Tear down timers. An unsubmitted attempt survives only as its last autosave."""
        self.tasks.cancel_all()
        if self.state == SessionState.ACTIVE:
            logger.info("Quiz session abandoned", quiz_id=self.quiz.id, student_id=self.student_id)

    # --- Answers, flags and navigation ---

    def answer(self, question_id: str, value: Any) -> None:
        """Record an answer in authored index space. `None` clears it."""
        self._require("answer", SessionState.ACTIVE)
        self._require_question(question_id)
        self._visit(question_id)
        self.answers[question_id] = _storable(value)
        self._dirty = True

    def answer_displayed(self, question_id: str, value: Any) -> None:
        """Record an answer given against the shuffled presentation order."""
        question = self._require_question(question_id)
        self.answer(question_id, self.layout.to_authored_answer(question, value))

    def set_flag(self, question_id: str, flagged: bool) -> None:
        self._require("flag", SessionState.ACTIVE)
        self._require_question(question_id)
        self._visit(question_id)
        if flagged:
            self.flagged.add(question_id)
        else:
            self.flagged.discard(question_id)
        self._dirty = True

    def toggle_flag(self, question_id: str) -> bool:
        flagged = question_id not in self.flagged
        self.set_flag(question_id, flagged)
        return flagged

    def go_to(self, position: int) -> None:
        self._require("navigate", SessionState.ACTIVE)
        if not 0 <= position < len(self.layout.question_order):
            raise ValueError(f"No question at position {position}")
        if self.quiz.lock_navigation and position < self.cursor:
            raise NavigationLockedError("Navigation is locked: previous questions cannot be revisited")
        self.cursor = position

    def advance(self) -> int:
        self.go_to(min(self.cursor + 1, len(self.layout.question_order) - 1))
        return self.cursor

    def unanswered_question_ids(self) -> List[str]:
        return [qid for qid, value in self.answers.items() if not is_answered(value)]

    def can_submit(self) -> bool:
        return self.state == SessionState.ACTIVE and not self.unanswered_question_ids()

    # --- Timers ---

    async def tick(self, elapsed_seconds: int = 1) -> None:
        """Advance the countdown. Reaching zero submits automatically."""
        if self.remaining_seconds is None or self.state not in (SessionState.ACTIVE, SessionState.SUBMITTING):
            return
        previous = self.remaining_seconds
        self.remaining_seconds = max(0, previous - elapsed_seconds)

        for threshold in settings.TIME_WARNING_THRESHOLDS:
            if previous > threshold >= self.remaining_seconds > 0:
                self._emit(SessionEvent.TIME_WARNING, remaining_seconds=self.remaining_seconds)

        if self.remaining_seconds > 0:
            return
        if self.state == SessionState.SUBMITTING:
            # A manual submit is in flight; if its write fails the expiry path takes over
            self._expiry_pending = True
            return
        await self._expire()

    async def autosave_tick(self) -> bool:
        """Write a snapshot if anything changed since the last one and at least one answer exists."""
        if self.state != SessionState.ACTIVE or not self._dirty:
            return False
        if not any(is_answered(value) for value in self.answers.values()):
            return False
        return await self._write_autosave()

    def _start_timers(self) -> None:
        self.tasks.start("autosave", self._autosave_loop())
        if self.remaining_seconds is not None:
            self.tasks.start("countdown", self._countdown_loop())

    async def _countdown_loop(self) -> None:
        step = settings.TIMER_TICK_SECONDS
        while self.remaining_seconds and self.state in (SessionState.ACTIVE, SessionState.SUBMITTING):
            await self.sleep(step)
            await self.tick(step)

    async def _autosave_loop(self) -> None:
        while self.state in (SessionState.ACTIVE, SessionState.SUBMITTING):
            await self.sleep(settings.AUTOSAVE_INTERVAL_SECONDS)
            await self.autosave_tick()

    async def _expire(self) -> None:
        logger.info("Time is up, submitting quiz", quiz_id=self.quiz.id, student_id=self.student_id)
        self._emit(SessionEvent.AUTO_SUBMITTING)
        try:
            await self.submit(SubmitTrigger.EXPIRY)
        except SubmitWriteError:
            # State is EXPIRED and a retry is scheduled
            pass

    # --- Submission ---

    async def submit(self, trigger: SubmitTrigger = SubmitTrigger.MANUAL) -> Result:
        if self.state == SessionState.EXPIRED:
            # Retrying a failed expiry submission; answers are frozen, completeness is not required
            trigger = SubmitTrigger.EXPIRY
        else:
            self._require("submit", SessionState.ACTIVE)
            if trigger == SubmitTrigger.MANUAL:
                unanswered = self.unanswered_question_ids()
                if unanswered:
                    raise IncompleteSubmissionError(unanswered)

        self.state = SessionState.SUBMITTING
        # Final snapshot first, so a crash mid-submit leaves exactly the submitted answers behind
        await self._write_autosave()

        try:
            now = self.clock()
            result = score(self.quiz, self.answers, now=now)
            record = self._build_record(result, trigger, now)
            result_id = await self.results.save_result(record)
        except Exception as e:
            # Any failure leaves SUBMITTING
            self._handle_failed_write(trigger, e)
            raise SubmitWriteError("Failed to submit quiz. Please try again.") from e

        self.result = result
        self.result_id = result_id
        self.state = SessionState.SUBMITTED
        self.tasks.cancel_all()

        await self._after_submit()
        logger.info(
            "Quiz submitted",
            quiz_id=self.quiz.id,
            student_id=self.student_id,
            attempt_id=self.attempt_id,
            trigger=trigger.value,
            score=result.score,
        )
        self._emit(SessionEvent.SUBMITTED, result_id=result_id, score=result.score)
        return result

    def _handle_failed_write(self, trigger: SubmitTrigger, error: Exception) -> None:
        time_left = self.remaining_seconds is None or self.remaining_seconds > 0
        if trigger == SubmitTrigger.MANUAL and time_left and not self._expiry_pending:
            self.state = SessionState.ACTIVE
        else:
            self.state = SessionState.EXPIRED
            self.tasks.start("submit-retry", self._retry_expired_submit())
        logger.error(
            "Quiz submission failed",
            quiz_id=self.quiz.id,
            student_id=self.student_id,
            trigger=trigger.value,
            state=self.state.value,
            error=str(error),
        )
        self._emit(SessionEvent.SUBMIT_FAILED, state=self.state.value)

    async def _retry_expired_submit(self) -> None:
        await self.sleep(settings.SUBMIT_RETRY_DELAY_SECONDS)
        if self.state != SessionState.EXPIRED:
            return
        try:
            await self.submit(SubmitTrigger.EXPIRY)
        except SubmitWriteError:
            # Another retry has been scheduled
            pass

    async def _after_submit(self) -> None:
        try:
            await self.autosave.clear(self.quiz.id, self.student_id)
        except RedisError as e:
            logger.warning("Failed to clear autosave", quiz_id=self.quiz.id, student_id=self.student_id, error=str(e))
        try:
            await self.quizzes.add_enrolled_student(self.quiz, self.student_id)
        except StoreError as e:
            logger.warning("Failed to record quiz enrollment", quiz_id=self.quiz.id, student_id=self.student_id, error=str(e))

    def _build_record(self, result: Result, trigger: SubmitTrigger, now: datetime) -> ResultRecord:
        attempt = Attempt(
            attempt_id=self.attempt_id,
            quiz_id=self.quiz.id,
            student_id=self.student_id,
            answers=dict(self.answers),
            flagged=sorted(self.flagged),
            started_at=self.started_at,
            submitted_at=now,
            time_spent_seconds=self.time_spent_seconds(now),
            status=AttemptStatus.SUBMITTED if trigger == SubmitTrigger.MANUAL else AttemptStatus.EXPIRED,
        )
        return ResultRecord(
            attempt=attempt,
            result=result,
            quiz_title=self.quiz.title,
            teacher_id=self.quiz.teacher_id,
            course_id=self.quiz.course_id,
            course_name=self.quiz.course_name,
            student_name=self.student.display_name,
            time_limit_seconds=self.quiz.time_limit_seconds,
            questions=[q.model_dump(by_alias=True, mode="json") for q in self.quiz.questions],
        )

    def time_spent_seconds(self, now: Optional[datetime] = None) -> int:
        if self.quiz.time_limit_seconds is not None and self.remaining_seconds is not None:
            return self.quiz.time_limit_seconds - self.remaining_seconds
        now = now or self.clock()
        return max(0, int((now - self.started_at).total_seconds()))

    # --- Views ---

    def view(self) -> Dict[str, Any]:
        """Student-facing snapshot of the session. Never includes answer keys."""
        data: Dict[str, Any] = {
            "state": self.state.value,
            "quizId": self.quiz.id if self.quiz else None,
            "attemptId": self.attempt_id,
            "error": str(self.error) if self.error else None,
        }
        if self.quiz is None:
            return data

        by_id = {q.id: q for q in self.quiz.questions}
        data.update({
            "title": self.quiz.title,
            "description": self.quiz.description,
            "questions": self.layout.present(self.quiz),
            "answers": {
                qid: self.layout.to_displayed_answer(by_id[qid], value) for qid, value in self.answers.items()
            },
            "flagged": sorted(self.flagged),
            "cursor": self.cursor,
            "lockNavigation": self.quiz.lock_navigation,
            "remainingSeconds": self.remaining_seconds,
            "progressRestored": self.progress_restored,
            "canSubmit": self.can_submit(),
            "unanswered": self.unanswered_question_ids(),
        })
        if self.result is not None:
            data["resultId"] = self.result_id
            data["result"] = self.result.model_dump(by_alias=True, mode="json")
        return data

    # --- Internals ---

    async def _restore_progress(self) -> None:
        snapshot = await self.autosave.load(self.quiz.id, self.student_id)
        if snapshot is None:
            return
        known = set(self.answers)
        self.answers.update({qid: value for qid, value in snapshot.answers.items() if qid in known})
        self.flagged = {qid for qid in snapshot.flagged if qid in known}
        self.last_saved_at = snapshot.saved_at
        self.progress_restored = True
        logger.info("Loaded previous progress", quiz_id=self.quiz.id, student_id=self.student_id,
                    saved_at=str(snapshot.saved_at))
        self._emit(SessionEvent.PROGRESS_RESTORED, saved_at=snapshot.saved_at)

    async def _write_autosave(self) -> bool:
        try:
            snapshot = await self.autosave.save(self.quiz.id, self.student_id, self.answers, self.flagged)
        except RedisError as e:
            logger.error("Error saving progress", quiz_id=self.quiz.id, student_id=self.student_id, error=str(e))
            self._emit(SessionEvent.AUTOSAVE_FAILED)
            return False
        self.last_saved_at = snapshot.saved_at
        self._dirty = False
        return True

    def _visit(self, question_id: str) -> None:
        position = self.layout.question_order.index(question_id)
        if self.quiz.lock_navigation:
            if position < self.cursor:
                raise NavigationLockedError("Navigation is locked: previous questions cannot be changed")
            self.cursor = position

    def _require_question(self, question_id: str):
        question = self.quiz.get_question(question_id) if self.quiz else None
        if question is None:
            raise ValueError(f"Unknown question {question_id!r}")
        return question

    def _require(self, action: str, *states: SessionState) -> None:
        if self.state not in states:
            raise InvalidTransitionError(action, self.state.value)

    def _fail(self, error: Exception) -> None:
        self.state = SessionState.ERROR
        self.error = error
        logger.warning("Quiz session failed to start", student_id=self.student_id, error=str(error))

    def _emit(self, event: SessionEvent, **payload: Any) -> None:
        if self.listener is None:
            return
        try:
            self.listener(event, payload)
        except Exception:
            logger.exception("Session event listener failed", session_event=event.value)

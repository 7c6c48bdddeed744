import asyncio
from typing import Awaitable, Callable, Dict, Optional, Tuple

from core.logger import logger
from schemas.user import Principal
from services.autosave_service import AutosaveService
from services.document_store import DocumentStore
from services.session_service import QuizSession, SessionState
from utils.clock import Clock, utcnow

SessionKey = Tuple[str, str]

TERMINAL_STATES = (SessionState.SUBMITTED, SessionState.ERROR)


class SessionRegistry:
    """
    Live sessions of this process, at most one per (quiz, student).

    Starting a quiz a student already has open returns the open session, so
    two tabs on one server share answers and timers. Concurrent starts for the
    same key share one load; starts for other keys never wait on it. Finished
    sessions are dropped the next time the registry is consulted.
    """

    def __init__(self, store: DocumentStore, autosave: AutosaveService, clock: Clock = utcnow,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep, start_timers: bool = True):
        self.store = store
        self.autosave = autosave
        self.clock = clock
        self.sleep = sleep
        self.start_timers = start_timers
        self._sessions: Dict[SessionKey, QuizSession] = {}
        self._loading: Dict[SessionKey, "asyncio.Task[QuizSession]"] = {}

    async def start(self, quiz_id: str, student: Principal) -> QuizSession:
        key = (quiz_id, student.user_id)
        existing = self.get(quiz_id, student.user_id)
        if existing is not None:
            return existing

        pending = self._loading.get(key)
        if pending is None:
            pending = asyncio.ensure_future(self._load(key, quiz_id, student))
            self._loading[key] = pending
            pending.add_done_callback(lambda _: self._loading.pop(key, None))
        return await asyncio.shield(pending)

    async def _load(self, key: SessionKey, quiz_id: str, student: Principal) -> QuizSession:
        session = QuizSession(
            student,
            store=self.store,
            autosave=self.autosave,
            clock=self.clock,
            sleep=self.sleep,
            start_timers=self.start_timers,
        )
        # A failed load leaves nothing registered
        await session.load(quiz_id)
        self._sessions[key] = session
        logger.info("Session registered", quiz_id=quiz_id, student_id=student.user_id, active=len(self))
        return session

    def get(self, quiz_id: str, student_id: str) -> Optional[QuizSession]:
        self._prune()
        return self._sessions.get((quiz_id, student_id))

    async def discard(self, quiz_id: str, student_id: str) -> None:
        session = self._sessions.pop((quiz_id, student_id), None)
        if session is not None:
            await session.close()

    async def shutdown(self) -> None:
        for pending in list(self._loading.values()):
            pending.cancel()
        sessions = list(self._sessions.values())
        self._sessions.clear()
        for session in sessions:
            await session.close()
        logger.info("Session registry shut down", closed=len(sessions))

    def _prune(self) -> None:
        finished = [key for key, session in self._sessions.items() if session.state in TERMINAL_STATES]
        for key in finished:
            session = self._sessions.pop(key)
            session.tasks.cancel_all()
        if finished:
            logger.info("Finished sessions released", count=len(finished), active=len(self._sessions))

    def __len__(self) -> int:
        self._prune()
        return len(self._sessions)

import json
from typing import Any, Dict, Iterable, Optional

from pydantic import ValidationError
from redis.asyncio import Redis
from redis.exceptions import RedisError

from core.config import settings
from core.logger import logger
from schemas.autosave import AutosaveSnapshot
from utils.clock import Clock, utcnow


class AutosaveService:
    """
    Local recovery snapshots of in-progress answers, one per (quiz, student).

    Freshness is decided from `savedAt`, never from the Redis TTL: a stale
    snapshot is ignored on read but left in place until the next save or an
    explicit clear.
    """

    def __init__(self, redis: Redis, clock: Clock = utcnow, max_age_seconds: Optional[int] = None):
        self.redis = redis
        self.clock = clock
        self.max_age_seconds = max_age_seconds if max_age_seconds is not None else settings.AUTOSAVE_FRESHNESS_SECONDS

    @staticmethod
    def key(quiz_id: str, student_id: str) -> str:
        return f"{settings.AUTOSAVE_KEY_PREFIX}:{quiz_id}:{student_id}"

    async def save(self, quiz_id: str, student_id: str, answers: Dict[str, Any], flagged: Iterable[str]) -> AutosaveSnapshot:
        snapshot = AutosaveSnapshot(
            quiz_id=quiz_id,
            student_id=student_id,
            answers=dict(answers),
            flagged=sorted(flagged),
            saved_at=self.clock(),
        )
        payload = json.dumps(snapshot.model_dump(by_alias=True, mode="json"))
        await self.redis.set(self.key(quiz_id, student_id), payload, ex=settings.AUTOSAVE_KEY_TTL_SECONDS)
        logger.debug("Progress autosaved", quiz_id=quiz_id, student_id=student_id)
        return snapshot

    async def load(self, quiz_id: str, student_id: str) -> Optional[AutosaveSnapshot]:
        try:
            raw = await self.redis.get(self.key(quiz_id, student_id))
        except RedisError as e:
            # Recovery is best effort; a session can always start from blank answers
            logger.error("Failed to read autosave", quiz_id=quiz_id, student_id=student_id, error=str(e))
            return None
        if not raw:
            return None

        try:
            snapshot = AutosaveSnapshot.model_validate(json.loads(raw))
        except (ValueError, ValidationError) as e:
            logger.warning("Discarding unreadable autosave", quiz_id=quiz_id, student_id=student_id, error=str(e))
            return None

        if not snapshot.is_fresh(self.clock(), self.max_age_seconds):
            logger.info("Ignoring stale autosave", quiz_id=quiz_id, student_id=student_id, saved_at=str(snapshot.saved_at))
            return None
        return snapshot

    async def clear(self, quiz_id: str, student_id: str) -> None:
        await self.redis.delete(self.key(quiz_id, student_id))
        logger.info("Autosave cleared", quiz_id=quiz_id, student_id=student_id)

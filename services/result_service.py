from typing import Optional

from core.exceptions import DocumentNotFoundError
from core.logger import logger
from schemas.result import ResultRecord
from services.document_store import RESULTS, DocumentStore


class ResultService:
    def __init__(self, store: DocumentStore):
        self.store = store

    async def save_result(self, record: ResultRecord) -> str:
        """
        Persist a submitted attempt. The document id is the attempt id, so a
        retried write of the same attempt never produces a second result.
        """
        result_id = await self.store.create_document(
            RESULTS, record.to_document(), document_id=record.attempt.attempt_id
        )
        logger.info(
            "Quiz result saved",
            result_id=result_id,
            quiz_id=record.attempt.quiz_id,
            student_id=record.attempt.student_id,
            score=record.result.score,
        )
        return result_id

    async def get_result(self, result_id: str) -> Optional[ResultRecord]:
        data = await self.store.get_document(RESULTS, result_id)
        if data is None:
            return None
        return ResultRecord.from_document(data)

    async def require_result(self, result_id: str) -> ResultRecord:
        record = await self.get_result(result_id)
        if record is None:
            raise DocumentNotFoundError(RESULTS, result_id)
        return record

"""
Remote document store.

The engine only needs document-level reads and writes plus simple equality and
range queries. `SqlDocumentStore` keeps every collection in one JSON table.
"""
import asyncio
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, NamedTuple, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.exceptions import DocumentNotFoundError, StoreError
from core.logger import logger
from models.document import Document
from utils.clock import isoformat

QUIZZES = "quizzes"
ENROLLMENTS = "enrollments"
RESULTS = "quizResults"

# asyncpg raises socket and timeout errors on connect without SQLAlchemy wrapping them
STORE_FAILURES = (SQLAlchemyError, OSError, asyncio.TimeoutError)

OPERATORS = ("==", "!=", "<", "<=", ">", ">=", "in")


class Filter(NamedTuple):
    field: str
    op: str
    value: Any


class StoredDocument(NamedTuple):
    id: str
    data: Dict[str, Any]


def _comparable(value: Any) -> Any:
    if isinstance(value, datetime):
        return isoformat(value)
    return value


def filter_matches(data: Dict[str, Any], filters: Sequence[Filter]) -> bool:
    """Evaluate filters against a plain document. Missing fields never match."""
    for f in filters:
        if f.field not in data:
            return False
        actual = data[f.field]
        expected = _comparable(f.value)
        if f.op == "==":
            ok = actual == expected
        elif f.op == "!=":
            ok = actual != expected
        elif f.op == "in":
            ok = actual in [_comparable(v) for v in expected]
        else:
            if actual is None:
                return False
            ok = {
                "<": actual < expected,
                "<=": actual <= expected,
                ">": actual > expected,
                ">=": actual >= expected,
            }[f.op]
        if not ok:
            return False
    return True


class DocumentStore(ABC):
    @abstractmethod
    async def get_document(self, collection: str, document_id: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def query(self, collection: str, filters: Sequence[Filter] = ()) -> List[StoredDocument]:
        ...

    @abstractmethod
    async def create_document(self, collection: str, data: Dict[str, Any], document_id: Optional[str] = None) -> str:
        """Create a document. With an explicit id this is create-if-absent and returns the id either way."""
        ...

    @abstractmethod
    async def update_document(self, collection: str, document_id: str, patch: Dict[str, Any]) -> None:
        ...


class SqlDocumentStore(DocumentStore):
    def __init__(self, sessionmaker: async_sessionmaker):
        self.sessionmaker = sessionmaker

    async def get_document(self, collection: str, document_id: str) -> Optional[Dict[str, Any]]:
        try:
            async with self.sessionmaker() as db:
                row = await self._get_row(db, collection, document_id)
                return dict(row.data) if row else None
        except STORE_FAILURES as e:
            logger.error("Document read failed", collection=collection, document_id=document_id, error=str(e))
            raise StoreError(f"Failed to read {collection}/{document_id}") from e

    async def query(self, collection: str, filters: Sequence[Filter] = ()) -> List[StoredDocument]:
        stmt = select(Document).filter(Document.collection == collection)
        for f in filters:
            stmt = stmt.filter(self._clause(f))
        stmt = stmt.order_by(Document.created_at, Document.id)
        try:
            async with self.sessionmaker() as db:
                result = await db.execute(stmt)
                return [StoredDocument(row.id, dict(row.data)) for row in result.scalars().all()]
        except STORE_FAILURES as e:
            logger.error("Document query failed", collection=collection, error=str(e))
            raise StoreError(f"Failed to query {collection}") from e

    async def create_document(self, collection: str, data: Dict[str, Any], document_id: Optional[str] = None) -> str:
        document_id = document_id or uuid.uuid4().hex
        try:
            async with self.sessionmaker() as db:
                if await self._get_row(db, collection, document_id) is not None:
                    logger.info("Document already exists, create skipped", collection=collection, document_id=document_id)
                    return document_id
                db.add(Document(collection=collection, id=document_id, data=data))
                try:
                    await db.commit()
                except IntegrityError:
                    # Lost a race against an identical create
                    await db.rollback()
                    logger.info("Concurrent create detected", collection=collection, document_id=document_id)
                    return document_id
        except STORE_FAILURES as e:
            logger.error("Document create failed", collection=collection, document_id=document_id, error=str(e))
            raise StoreError(f"Failed to create {collection}/{document_id}") from e
        logger.info("Document created", collection=collection, document_id=document_id)
        return document_id

    async def update_document(self, collection: str, document_id: str, patch: Dict[str, Any]) -> None:
        try:
            async with self.sessionmaker() as db:
                row = await self._get_row(db, collection, document_id, for_update=True)
                if row is None:
                    raise DocumentNotFoundError(collection, document_id)
                row.data = {**row.data, **patch}
                await db.commit()
        except STORE_FAILURES as e:
            logger.error("Document update failed", collection=collection, document_id=document_id, error=str(e))
            raise StoreError(f"Failed to update {collection}/{document_id}") from e
        logger.info("Document updated", collection=collection, document_id=document_id, fields=list(patch.keys()))

    @staticmethod
    async def _get_row(db: AsyncSession, collection: str, document_id: str, for_update: bool = False) -> Optional[Document]:
        stmt = select(Document).filter(Document.collection == collection, Document.id == document_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    def _clause(f: Filter):
        if f.op not in OPERATORS:
            raise ValueError(f"Unsupported operator {f.op!r}")
        sample = f.value[0] if f.op == "in" and f.value else f.value
        element = Document.data[f.field]
        if isinstance(sample, bool):
            column = element.as_boolean()
        elif isinstance(sample, int):
            column = element.as_integer()
        elif isinstance(sample, float):
            column = element.as_float()
        elif isinstance(sample, (str, datetime)):
            column = element.as_string()
        else:
            raise ValueError(f"Unsupported filter value for {f.field!r}: {f.value!r}")

        value = _comparable(f.value) if f.op != "in" else [_comparable(v) for v in f.value]
        if f.op == "==":
            return column == value
        if f.op == "!=":
            return column != value
        if f.op == "<":
            return column < value
        if f.op == "<=":
            return column <= value
        if f.op == ">":
            return column > value
        if f.op == ">=":
            return column >= value
        return column.in_(value)

"""
DocumentStore — per-user JSON document collections on async SQLAlchemy.

Every call runs in its own transaction; a failure rolls back and raises
PersistenceError. Listeners registered with ``listen`` receive the full
collection after every committed write to it (in-process only).
"""
import asyncio
import logging
from collections import defaultdict
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.orm_models import UserDocument
from app.services.errors import PersistenceError
from app.services.formatting import generate_unique_id

logger = logging.getLogger("baogia-store")

# Collection names
MAIN_CATEGORIES = "mainCategories"
CATALOG = "catalog"
QUOTES = "quotes"
QUOTE_TEMPLATES = "quoteTemplates"
COSTING_SHEETS = "costingSheets"
COSTING_TEMPLATES = "costingTemplates"
MATERIALS_LIBRARY = "materialsLibrary"
SETTINGS = "settings"
UX = "ux"

COMPANY_SETTINGS_DOC = "company"
CURRENT_QUOTE_DOC = "currentQuote"

Listener = Callable[[List[Dict[str, Any]]], Any]


def _with_id(doc_id: str, data: Mapping[str, Any]) -> Dict[str, Any]:
    result = dict(data)
    result["id"] = doc_id
    return result


def _payload(data: Mapping[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in data.items() if k != "id"}


class DocumentStore:
    def __init__(self, sessions: async_sessionmaker):
        self._sessions = sessions
        self._listeners: Dict[Tuple[str, str], List[Listener]] = defaultdict(list)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, user_id: str, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        try:
            async with self._sessions() as session:
                row = await session.get(UserDocument, (user_id, collection, doc_id))
                return _with_id(row.doc_id, row.data or {}) if row else None
        except SQLAlchemyError as e:
            self._fail("get", user_id, collection, e)

    async def list(self, user_id: str, collection: str) -> List[Dict[str, Any]]:
        try:
            async with self._sessions() as session:
                return await self._list(session, user_id, collection)
        except SQLAlchemyError as e:
            self._fail("list", user_id, collection, e)

    @staticmethod
    async def _list(session: AsyncSession, user_id: str, collection: str) -> List[Dict[str, Any]]:
        result = await session.execute(
            select(UserDocument)
            .where(UserDocument.user_id == user_id, UserDocument.collection == collection)
            .order_by(UserDocument.doc_id)
        )
        return [_with_id(row.doc_id, row.data or {}) for row in result.scalars()]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def set(
        self,
        user_id: str,
        collection: str,
        doc_id: str,
        data: Mapping[str, Any],
        merge: bool = False,
    ) -> Dict[str, Any]:
        """Replace the document, or shallow-merge into it when *merge* is set."""
        try:
            async with self._sessions() as session:
                async with session.begin():
                    row = await session.get(UserDocument, (user_id, collection, doc_id))
                    if row is None:
                        row = UserDocument(user_id=user_id, collection=collection, doc_id=doc_id, data=_payload(data))
                        session.add(row)
                    elif merge:
                        merged = dict(row.data or {})
                        merged.update(_payload(data))
                        row.data = merged
                    else:
                        row.data = _payload(data)
                    stored = _with_id(doc_id, row.data)
        except SQLAlchemyError as e:
            self._fail("set", user_id, collection, e)
        await self._notify(user_id, collection)
        return stored

    async def add(self, user_id: str, collection: str, data: Mapping[str, Any], prefix: str = "doc") -> Dict[str, Any]:
        """Insert under a generated id."""
        return await self.set(user_id, collection, generate_unique_id(prefix), data)

    async def delete(self, user_id: str, collection: str, doc_id: str) -> bool:
        try:
            async with self._sessions() as session:
                async with session.begin():
                    result = await session.execute(
                        delete(UserDocument).where(
                            UserDocument.user_id == user_id,
                            UserDocument.collection == collection,
                            UserDocument.doc_id == doc_id,
                        )
                    )
                    removed = result.rowcount > 0
        except SQLAlchemyError as e:
            self._fail("delete", user_id, collection, e)
        if removed:
            await self._notify(user_id, collection)
        return removed

    # ------------------------------------------------------------------
    # Change notification
    # ------------------------------------------------------------------

    def listen(self, user_id: str, collection: str, callback: Listener) -> Callable[[], None]:
        """Register *callback*; returns a function that unregisters it."""
        key = (user_id, collection)
        self._listeners[key].append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners.get(key, []):
                self._listeners[key].remove(callback)

        return unsubscribe

    async def _notify(self, user_id: str, collection: str) -> None:
        callbacks = list(self._listeners.get((user_id, collection), []))
        if not callbacks:
            return
        snapshot = await self.list(user_id, collection)
        for callback in callbacks:
            try:
                outcome = callback([dict(d) for d in snapshot])
                if asyncio.iscoroutine(outcome):
                    await outcome
            except Exception as e:
                logger.error(f"listener for {collection} failed: {e}", extra={"user_id": user_id})

    # ------------------------------------------------------------------

    @staticmethod
    def _fail(operation: str, user_id: str, collection: str, error: Exception):
        logger.error(
            f"store {operation} failed on {collection}: {error}",
            extra={"user_id": user_id, "collection": collection},
        )
        raise PersistenceError(f"Không thể truy cập dữ liệu ({operation} {collection}).") from error

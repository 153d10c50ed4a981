import asyncio
import copy
import logging
from collections.abc import Callable
from threading import Lock
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from marketplace.core.errors import StoreUnavailable
from marketplace.db.models.store_node import COLLECTION_VALUE_KEY, StoreNode
from marketplace.store.base import KeyedStore
from marketplace.store.paths import get_in, select_children, set_in

logger = logging.getLogger(__name__)


class SqlKeyedStore(KeyedStore):
    """Keyed store persisted as one row per record.

    ``items/<id>`` lives in row ``(items, <id>)``; deeper paths are read and
    written inside that row's JSON value. A non-mapping value written directly
    at a collection path (``categories``) is kept in the collection's
    ``COLLECTION_VALUE_KEY`` row.
    """

    def __init__(self, session_factory: Callable[[], Session], **kwargs) -> None:
        super().__init__(**kwargs)
        self._session_factory = session_factory
        self._write_lock = Lock()

    # Sessions block: every call runs in a worker thread, writes one at a time.

    async def _read(self, segments: list[str]) -> Any:
        return await asyncio.to_thread(self._read_sync, segments)

    async def _write(self, segments: list[str], value: Any) -> None:
        await asyncio.to_thread(self._write_sync, segments, value)

    async def _merge(self, segments: list[str], fields: dict[str, Any]) -> None:
        await asyncio.to_thread(self._merge_sync, segments, fields)

    async def _select(self, segments: list[str], *, end_at: str | None, limit: int | None) -> list[tuple[str, Any]]:
        return await asyncio.to_thread(self._select_sync, segments, end_at, limit)

    def _read_sync(self, segments: list[str]) -> Any:
        with self._session() as db:
            return self._read_in(db, segments)

    def _write_sync(self, segments: list[str], value: Any) -> None:
        with self._write_lock, self._session() as db:
            self._write_in(db, segments, value)
            self._commit(db, segments)

    def _merge_sync(self, segments: list[str], fields: dict[str, Any]) -> None:
        with self._write_lock, self._session() as db:
            for key, value in fields.items():
                self._write_in(db, [*segments, key], value)
            self._commit(db, segments)

    def _select_sync(self, segments: list[str], end_at: str | None, limit: int | None) -> list[tuple[str, Any]]:
        if len(segments) > 1:
            return select_children(self._read_sync(segments), end_at=end_at, limit=limit)
        with self._session() as db:
            try:
                query = db.query(StoreNode).filter(
                    StoreNode.collection == segments[0],
                    StoreNode.key != COLLECTION_VALUE_KEY,
                )
                if end_at is not None:
                    query = query.filter(StoreNode.key <= end_at)
                query = query.order_by(StoreNode.key.desc())
                if limit is not None:
                    query = query.limit(max(0, limit))
                rows = query.all()
            except SQLAlchemyError as exc:
                raise StoreUnavailable("Store query failed", details=str(exc)) from exc
            return [(row.key, copy.deepcopy(row.value)) for row in reversed(rows)]

    def _session(self) -> Session:
        try:
            return self._session_factory()
        except SQLAlchemyError as exc:
            raise StoreUnavailable("Store connection failed", details=str(exc)) from exc

    @staticmethod
    def _commit(db: Session, segments: list[str]) -> None:
        try:
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.warning("store_write_failed path=%s error=%s", "/".join(segments), exc)
            raise StoreUnavailable("Store write failed", details=str(exc)) from exc

    def _read_in(self, db: Session, segments: list[str]) -> Any:
        collection = segments[0]
        try:
            if len(segments) == 1:
                rows = db.query(StoreNode).filter(StoreNode.collection == collection).all()
                if not rows:
                    return None
                for row in rows:
                    if row.key == COLLECTION_VALUE_KEY:
                        return copy.deepcopy(row.value)
                return {row.key: copy.deepcopy(row.value) for row in rows}
            row = db.get(StoreNode, (collection, segments[1]))
        except SQLAlchemyError as exc:
            raise StoreUnavailable("Store read failed", details=str(exc)) from exc
        if row is None:
            return None
        return copy.deepcopy(get_in(row.value, segments[2:]))

    def _write_in(self, db: Session, segments: list[str], value: Any) -> None:
        collection = segments[0]
        try:
            if len(segments) == 1:
                db.query(StoreNode).filter(StoreNode.collection == collection).delete()
                if value is None:
                    return
                if isinstance(value, dict):
                    for key, child in value.items():
                        if child is not None:
                            db.add(StoreNode(collection=collection, key=key, value=copy.deepcopy(child)))
                else:
                    db.add(StoreNode(collection=collection, key=COLLECTION_VALUE_KEY, value=copy.deepcopy(value)))
                db.flush()
                return

            scalar = db.get(StoreNode, (collection, COLLECTION_VALUE_KEY))
            if scalar is not None:
                db.delete(scalar)

            row = db.get(StoreNode, (collection, segments[1]))
            if len(segments) == 2:
                new_value = copy.deepcopy(value)
            else:
                current = row.value if row is not None and isinstance(row.value, dict) else {}
                new_value = copy.deepcopy(current)
                set_in(new_value, segments[2:], value)
                if not new_value:
                    new_value = None

            if new_value is None:
                if row is not None:
                    db.delete(row)
            elif row is None:
                db.add(StoreNode(collection=collection, key=segments[1], value=new_value))
            else:
                row.value = new_value
            db.flush()
        except SQLAlchemyError as exc:
            db.rollback()
            raise StoreUnavailable("Store write failed", details=str(exc)) from exc

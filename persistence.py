"""Row-oriented persistence over SQLAlchemy.

Every query is scoped by ``user_id``. Rows come back as plain dicts so the
stores never hold live ORM instances.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from database import Base, SessionLocal, session_scope
from errors import PersistenceError


logger = logging.getLogger(__name__)


def _to_row(obj: Base) -> dict[str, Any]:
    return {col.key: getattr(obj, col.key) for col in obj.__table__.columns}


class RowStore:
    def __init__(self, session_factory: sessionmaker = SessionLocal) -> None:
        self.session_factory = session_factory

    def _fail(self, op: str, model: type[Base], exc: Exception) -> PersistenceError:
        logger.error(f"persistence_failed: op={op} table={model.__tablename__} {exc}")
        return PersistenceError(f"Could not {op} {model.__tablename__}")

    def select(
        self,
        model: type[Base],
        owner_id: int,
        *,
        filters: Optional[dict[str, Any]] = None,
        order_by: Iterable[Any] = (),
        limit: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        stmt = select(model).where(model.user_id == owner_id)
        for key, value in (filters or {}).items():
            stmt = stmt.where(getattr(model, key) == value)
        stmt = stmt.order_by(*order_by)
        if limit is not None:
            stmt = stmt.limit(limit)
        try:
            with session_scope(self.session_factory) as session:
                return [_to_row(obj) for obj in session.scalars(stmt).all()]
        except (SQLAlchemyError, OverflowError) as exc:
            raise self._fail("select", model, exc) from exc

    def insert(
        self, model: type[Base], rows: Sequence[dict[str, Any]]
    ) -> list[dict[str, Any]]:
        try:
            with session_scope(self.session_factory) as session:
                objs = [model(**row) for row in rows]
                session.add_all(objs)
                session.flush()
                return [_to_row(obj) for obj in objs]
        except (SQLAlchemyError, OverflowError) as exc:
            raise self._fail("insert", model, exc) from exc

    def update(
        self, model: type[Base], owner_id: int, row_id: int, patch: dict[str, Any]
    ) -> Optional[dict[str, Any]]:
        try:
            with session_scope(self.session_factory) as session:
                obj = session.get(model, row_id)
                if obj is None or obj.user_id != owner_id:
                    return None
                for key, value in patch.items():
                    setattr(obj, key, value)
                session.flush()
                return _to_row(obj)
        except (SQLAlchemyError, OverflowError) as exc:
            raise self._fail("update", model, exc) from exc

    def update_where(
        self,
        model: type[Base],
        owner_id: int,
        filters: dict[str, Any],
        patch: dict[str, Any],
    ) -> list[dict[str, Any]]:
        stmt = select(model).where(model.user_id == owner_id)
        for key, value in filters.items():
            stmt = stmt.where(getattr(model, key) == value)
        try:
            with session_scope(self.session_factory) as session:
                objs = session.scalars(stmt).all()
                for obj in objs:
                    for key, value in patch.items():
                        setattr(obj, key, value)
                session.flush()
                return [_to_row(obj) for obj in objs]
        except (SQLAlchemyError, OverflowError) as exc:
            raise self._fail("update", model, exc) from exc

    def delete(
        self, model: type[Base], owner_id: int, row_id: int
    ) -> list[dict[str, Any]]:
        try:
            with session_scope(self.session_factory) as session:
                obj = session.get(model, row_id)
                if obj is None or obj.user_id != owner_id:
                    return []
                row = _to_row(obj)
                session.delete(obj)
                return [row]
        except (SQLAlchemyError, OverflowError) as exc:
            raise self._fail("delete", model, exc) from exc

    def upsert(
        self,
        model: type[Base],
        row: dict[str, Any],
        conflict_key: Sequence[str],
    ) -> dict[str, Any]:
        stmt = select(model)
        for key in conflict_key:
            stmt = stmt.where(getattr(model, key) == row[key])
        try:
            with session_scope(self.session_factory) as session:
                existing = session.scalar(stmt)
                if existing is not None:
                    for key, value in row.items():
                        if key not in conflict_key:
                            setattr(existing, key, value)
                    obj = existing
                else:
                    obj = model(**row)
                    session.add(obj)
                session.flush()
                return _to_row(obj)
        except (SQLAlchemyError, OverflowError) as exc:
            raise self._fail("upsert", model, exc) from exc

"""SQLAlchemy-backed task store over the ``t_task`` table.

Session work is synchronous; every public coroutine runs it on a worker
thread via :func:`asyncio.to_thread` so the event loop never blocks on
the database.  Timestamps are stored as naive UTC and returned aware.

Example:
    >>> store = SqlAlchemyTaskStore.from_url("sqlite://")
    >>> store.create_all()
    >>> task = await store.create({"type": "export", "target_id": "42", "target_type": "report"})

Tags:
    task-spine, execution, store, sqlalchemy, persistence

Doc-Types:
    api-reference
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Mapping
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.sql.elements import ColumnElement

from taskspine.core.errors import TaskNotFoundError
from taskspine.core.logging import get_logger
from taskspine.core.orm import TaskSpineBase, TaskTable, create_task_engine, task_session_factory

from .models import RECORD_FIELDS, TaskRecord, utcnow
from .store import Between, Gte, In, Like, Lte, Order, Predicate, Where, split_field

logger = get_logger(__name__)


def _bind(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime) and value.tzinfo is not None:
        return value.astimezone(UTC).replace(tzinfo=None)
    return value


def _aware(value: Any) -> Any:
    if isinstance(value, datetime) and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _column(name: str) -> Any:
    base, path = split_field(name)
    column = getattr(TaskTable, base)
    if not path:
        return column
    index = path[0] if len(path) == 1 else path
    return column[index].as_string()


def _clause(name: str, expected: Any) -> ColumnElement[bool]:
    column = _column(name)
    if not isinstance(expected, Predicate):
        if expected is None:
            return column.is_(None)
        return column == _bind(expected)
    if isinstance(expected, In):
        return column.in_([_bind(v) for v in expected.values])
    if isinstance(expected, Lte):
        return column <= _bind(expected.value)
    if isinstance(expected, Gte):
        return column >= _bind(expected.value)
    if isinstance(expected, Between):
        return column.between(_bind(expected.low), _bind(expected.high))
    if isinstance(expected, Like):
        return column.ilike(expected.pattern)
    raise TypeError(f"Unsupported predicate: {expected!r}")


class SqlAlchemyTaskStore:
    """:class:`~taskspine.execution.store.TaskStore` on SQLAlchemy 2.0."""

    def __init__(self, engine: Engine, session_factory: sessionmaker[Session] | None = None) -> None:
        self._engine = engine
        self._session_factory = session_factory or task_session_factory(engine)

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> SqlAlchemyTaskStore:
        return cls(create_task_engine(url, **kwargs))

    @property
    def engine(self) -> Engine:
        return self._engine

    def create_all(self) -> None:
        """Create the ``t_task`` table if it does not exist."""
        TaskSpineBase.metadata.create_all(self._engine)
        logger.debug("store.tables_created", url=str(self._engine.url))

    # -- conversion --------------------------------------------------------------

    @staticmethod
    def _values(fields: Mapping[str, Any]) -> dict[str, Any]:
        unknown = set(fields) - RECORD_FIELDS
        if unknown:
            raise ValueError(f"Unknown task fields: {sorted(unknown)}")
        return {k: _bind(v) for k, v in fields.items()}

    @staticmethod
    def _record_values(row: TaskTable) -> dict[str, Any]:
        return {name: _aware(getattr(row, name)) for name in RECORD_FIELDS}

    def _to_record(self, row: TaskTable) -> TaskRecord:
        return TaskRecord(**self._record_values(row))

    @staticmethod
    def _where(where: Where) -> list[ColumnElement[bool]]:
        return [_clause(name, expected) for name, expected in where.items()]

    @staticmethod
    def _order(order: Order | None) -> list[Any]:
        clauses = []
        for name, direction in order or []:
            column = _column(name)
            clauses.append(column.desc() if direction.lower() == "desc" else column.asc())
        clauses.extend([TaskTable.created_at.asc(), TaskTable.id.asc()])
        return clauses

    # -- sync work ---------------------------------------------------------------

    def _create(self, fields: Mapping[str, Any]) -> TaskRecord:
        now = utcnow()
        self._values(fields)
        record = TaskRecord(**{"created_at": now, "updated_at": now, **dict(fields), "id": uuid.uuid4().hex})
        row = TaskTable(**self._values({name: getattr(record, name) for name in RECORD_FIELDS}))
        with self._session_factory() as session:
            session.add(row)
            session.commit()
            return self._to_record(row)

    def _find_by_pk(self, task_id: str) -> TaskRecord | None:
        with self._session_factory() as session:
            row = session.get(TaskTable, task_id)
            return self._to_record(row) if row is not None else None

    def _find_all(self, where: Where, offset: int, limit: int | None, order: Order | None) -> list[TaskRecord]:
        stmt = select(TaskTable).where(*self._where(where)).order_by(*self._order(order))
        if offset:
            stmt = stmt.offset(offset)
        if limit is not None:
            stmt = stmt.limit(max(limit, 0))
        with self._session_factory() as session:
            return [self._to_record(row) for row in session.scalars(stmt)]

    def _count(self, where: Where) -> int:
        stmt = select(func.count()).select_from(TaskTable).where(*self._where(where))
        with self._session_factory() as session:
            return int(session.execute(stmt).scalar_one())

    def _update(self, task_id: str, fields: Mapping[str, Any]) -> None:
        stmt = update(TaskTable).where(TaskTable.id == task_id).values(**self._values(fields))
        with self._session_factory() as session:
            result = session.execute(stmt)
            if result.rowcount == 0:
                session.rollback()
                raise TaskNotFoundError(task_id)
            session.commit()

    def _update_where(self, where: Where, fields: Mapping[str, Any]) -> int:
        stmt = (
            update(TaskTable)
            .where(*self._where(where))
            .values(**self._values(fields))
            .execution_options(synchronize_session=False)
        )
        with self._session_factory() as session:
            result = session.execute(stmt)
            session.commit()
            return int(result.rowcount)

    def _reload(self, task_id: str) -> dict[str, Any]:
        with self._session_factory() as session:
            row = session.get(TaskTable, task_id)
            if row is None:
                raise TaskNotFoundError(task_id)
            return self._record_values(row)

    # -- TaskStore ---------------------------------------------------------------

    async def create(self, fields: Mapping[str, Any]) -> TaskRecord:
        return await asyncio.to_thread(self._create, fields)

    async def find_by_pk(self, task_id: str) -> TaskRecord | None:
        return await asyncio.to_thread(self._find_by_pk, task_id)

    async def find_all(self, where: Where, limit: int | None = None, order: Order | None = None) -> list[TaskRecord]:
        return await asyncio.to_thread(self._find_all, where, 0, limit, order)

    async def count(self, where: Where) -> int:
        return await asyncio.to_thread(self._count, where)

    async def find_and_count_all(
        self,
        where: Where,
        offset: int,
        limit: int,
        order: Order | None = None,
    ) -> tuple[list[TaskRecord], int]:
        rows = await asyncio.to_thread(self._find_all, where, max(offset, 0), limit, order)
        total = await asyncio.to_thread(self._count, where)
        return rows, total

    async def update(self, task: TaskRecord, fields: Mapping[str, Any]) -> None:
        values = {**dict(fields), "updated_at": utcnow()}
        await asyncio.to_thread(self._update, task.id, values)
        task.apply(values)

    async def update_where(self, where: Where, fields: Mapping[str, Any]) -> int:
        return await asyncio.to_thread(self._update_where, where, {**dict(fields), "updated_at": utcnow()})

    async def reload(self, task: TaskRecord) -> None:
        task.apply(await asyncio.to_thread(self._reload, task.id))


__all__ = ["SqlAlchemyTaskStore"]

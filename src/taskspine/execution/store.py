"""Task persistence contract, where-clause predicates and an in-memory store.

The store is the single source of truth for task state.  Components
read a record, decide, and write back through the store; nothing keeps
records between operations.

ARCHITECTURE
────────────
::

    TaskStore (Protocol)
      ├── create(fields)                         → TaskRecord
      ├── find_by_pk(id)                         → TaskRecord | None
      ├── find_all(where, limit, order)          → list[TaskRecord]
      ├── count(where)                           → int
      ├── find_and_count_all(where, offset, limit, order)
      ├── update(task, fields)                   ─ one record
      ├── update_where(where, fields)            → affected rows
      └── reload(task)                           ─ refresh in place

    Where-clauses:  {"status": TaskStatus.PENDING,
                     "start_time": lte(now),
                     "input.customer": like("%acme%")}

    Implementations:
      MemoryTaskStore       (this module; tests, embedding)
      SqlAlchemyTaskStore   (sql_store.py)

Tags:
    task-spine, execution, store, persistence

Doc-Types:
    api-reference
"""

from __future__ import annotations

import copy
import itertools
import re
import uuid
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from taskspine.core.errors import InvalidTransitionError, TaskNotFoundError

from .models import RECORD_FIELDS, TaskRecord, TaskStatus, utcnow, validate_task_transition

Where = Mapping[str, Any]
Order = Sequence[tuple[str, str]]


# =============================================================================
# Predicates
# =============================================================================


class Predicate:
    """Base class for non-equality where-clause conditions."""

    def matches(self, actual: Any) -> bool:  # pragma: no cover - abstract
        raise NotImplementedError


@dataclass(frozen=True)
class In(Predicate):
    values: tuple[Any, ...]

    def matches(self, actual: Any) -> bool:
        return actual in self.values


@dataclass(frozen=True)
class Lte(Predicate):
    value: Any

    def matches(self, actual: Any) -> bool:
        return actual is not None and actual <= self.value


@dataclass(frozen=True)
class Gte(Predicate):
    value: Any

    def matches(self, actual: Any) -> bool:
        return actual is not None and actual >= self.value


@dataclass(frozen=True)
class Between(Predicate):
    low: Any
    high: Any

    def matches(self, actual: Any) -> bool:
        return actual is not None and self.low <= actual <= self.high


@dataclass(frozen=True)
class Like(Predicate):
    """Case-insensitive SQL ``LIKE`` (``%`` any run, ``_`` one character)."""

    pattern: str

    def matches(self, actual: Any) -> bool:
        if actual is None:
            return False
        return _like_regex(self.pattern).fullmatch(str(actual)) is not None


def _like_regex(pattern: str) -> re.Pattern[str]:
    parts = []
    for ch in pattern:
        if ch == "%":
            parts.append(".*")
        elif ch == "_":
            parts.append(".")
        else:
            parts.append(re.escape(ch))
    return re.compile("".join(parts), re.IGNORECASE | re.DOTALL)


def in_(values: Iterable[Any]) -> In:
    return In(tuple(values))


def lte(value: Any) -> Lte:
    return Lte(value)


def gte(value: Any) -> Gte:
    return Gte(value)


def between(low: Any, high: Any) -> Between:
    return Between(low, high)


def like(pattern: str) -> Like:
    return Like(pattern)


def split_field(name: str) -> tuple[str, tuple[str, ...]]:
    """Split ``"input.customer.name"`` into ``("input", ("customer", "name"))``.

    Raises:
        ValueError: If the top-level name is not a task attribute.
    """
    base, *path = name.split(".")
    if base not in RECORD_FIELDS:
        raise ValueError(f"Unknown task field: {base!r}")
    return base, tuple(path)


# =============================================================================
# Store protocol
# =============================================================================


@runtime_checkable
class TaskStore(Protocol):
    """Persistence contract consumed by the engine."""

    async def create(self, fields: Mapping[str, Any]) -> TaskRecord: ...

    async def find_by_pk(self, task_id: str) -> TaskRecord | None: ...

    async def find_all(
        self,
        where: Where,
        limit: int | None = None,
        order: Order | None = None,
    ) -> list[TaskRecord]: ...

    async def count(self, where: Where) -> int: ...

    async def find_and_count_all(
        self,
        where: Where,
        offset: int,
        limit: int,
        order: Order | None = None,
    ) -> tuple[list[TaskRecord], int]: ...

    async def update(self, task: TaskRecord, fields: Mapping[str, Any]) -> None: ...

    async def update_where(self, where: Where, fields: Mapping[str, Any]) -> int: ...

    async def reload(self, task: TaskRecord) -> None: ...


async def transition(store: TaskStore, task: TaskRecord, target: TaskStatus, **fields: Any) -> None:
    """Move *task* from its current status to *target*, persisting *fields*.

    The write is conditional on the stored status still being
    ``task.status``; *task* is reloaded afterwards either way.

    Raises:
        InvalidTransitionError: Before any write, if the edge is illegal,
            or when the stored status changed since *task* was read.
        TaskNotFoundError: The row no longer exists.
    """
    current = task.status
    validate_task_transition(current, target, task.id)
    changed = await store.update_where(
        {"id": task.id, "status": current},
        {"status": TaskStatus(target), **fields},
    )
    await store.reload(task)
    if not changed:
        raise InvalidTransitionError(task.status.value, TaskStatus(target).value, task.id)


# =============================================================================
# In-memory implementation
# =============================================================================


class MemoryTaskStore:
    """Dictionary-backed :class:`TaskStore`.

    Returned records are deep copies, so mutating one never changes the
    stored row without going through :meth:`update`.
    """

    def __init__(self) -> None:
        self._rows: dict[str, TaskRecord] = {}
        self._seq: dict[str, int] = {}
        self._counter = itertools.count()

    # -- helpers ---------------------------------------------------------------

    @staticmethod
    def _value(record: TaskRecord, name: str) -> Any:
        base, path = split_field(name)
        value = getattr(record, base)
        for key in path:
            if not isinstance(value, Mapping):
                return None
            value = value.get(key)
        return value

    def _matches(self, record: TaskRecord, where: Where) -> bool:
        for name, expected in where.items():
            actual = self._value(record, name)
            if isinstance(expected, Predicate):
                if not expected.matches(actual):
                    return False
            elif actual != expected:
                return False
        return True

    def _select(self, where: Where, order: Order | None) -> list[TaskRecord]:
        rows = [r for r in self._rows.values() if self._matches(r, where)]
        rows.sort(key=lambda r: self._seq[r.id])
        for name, direction in reversed(list(order or [])):
            rows.sort(
                key=lambda r, n=name: _sort_key(self._value(r, n)),
                reverse=direction.lower() == "desc",
            )
        return rows

    def _stored(self, task_id: str) -> TaskRecord:
        try:
            return self._rows[task_id]
        except KeyError:
            raise TaskNotFoundError(task_id) from None

    @staticmethod
    def _check_fields(fields: Mapping[str, Any]) -> None:
        unknown = set(fields) - RECORD_FIELDS
        if unknown:
            raise ValueError(f"Unknown task fields: {sorted(unknown)}")

    # -- TaskStore ---------------------------------------------------------------

    async def create(self, fields: Mapping[str, Any]) -> TaskRecord:
        self._check_fields(fields)
        now = utcnow()
        values = {"created_at": now, "updated_at": now, **copy.deepcopy(dict(fields))}
        values["id"] = uuid.uuid4().hex
        record = TaskRecord(**values)
        self._rows[record.id] = record
        self._seq[record.id] = next(self._counter)
        return copy.deepcopy(record)

    async def find_by_pk(self, task_id: str) -> TaskRecord | None:
        record = self._rows.get(task_id)
        return copy.deepcopy(record) if record is not None else None

    async def find_all(self, where: Where, limit: int | None = None, order: Order | None = None) -> list[TaskRecord]:
        rows = self._select(where, order)
        if limit is not None:
            rows = rows[: max(limit, 0)]
        return [copy.deepcopy(r) for r in rows]

    async def count(self, where: Where) -> int:
        return sum(1 for r in self._rows.values() if self._matches(r, where))

    async def find_and_count_all(
        self,
        where: Where,
        offset: int,
        limit: int,
        order: Order | None = None,
    ) -> tuple[list[TaskRecord], int]:
        rows = self._select(where, order)
        page = rows[max(offset, 0): max(offset, 0) + max(limit, 0)]
        return [copy.deepcopy(r) for r in page], len(rows)

    async def update(self, task: TaskRecord, fields: Mapping[str, Any]) -> None:
        self._check_fields(fields)
        stored = self._stored(task.id)
        values = {**dict(fields), "updated_at": utcnow()}
        stored.apply(copy.deepcopy(values))
        task.apply(copy.deepcopy(values))

    async def update_where(self, where: Where, fields: Mapping[str, Any]) -> int:
        self._check_fields(fields)
        matched = [r for r in self._rows.values() if self._matches(r, where)]
        now = utcnow()
        for record in matched:
            record.apply({**copy.deepcopy(dict(fields)), "updated_at": now})
        return len(matched)

    async def reload(self, task: TaskRecord) -> None:
        stored = self._stored(task.id)
        task.apply({name: copy.deepcopy(getattr(stored, name)) for name in RECORD_FIELDS})


def _sort_key(value: Any) -> tuple[bool, Any]:
    # None sorts first in ascending order.
    return (value is not None, value if value is not None else 0)


__all__ = [
    "Between",
    "Gte",
    "In",
    "Like",
    "Lte",
    "MemoryTaskStore",
    "Order",
    "Predicate",
    "TaskStore",
    "Where",
    "between",
    "gte",
    "in_",
    "like",
    "lte",
    "split_field",
    "transition",
]

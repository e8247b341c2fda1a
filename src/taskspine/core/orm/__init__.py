"""SQLAlchemy ORM layer for task-spine."""

from taskspine.core.orm.base import TaskSpineBase
from taskspine.core.orm.session import TaskSession, create_task_engine, task_session_factory
from taskspine.core.orm.tables import TaskTable

__all__ = [
    "TaskSession",
    "TaskSpineBase",
    "TaskTable",
    "create_task_engine",
    "task_session_factory",
]

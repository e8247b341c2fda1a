"""Task table definition.

Tags:
    task-spine, orm, sqlalchemy, tables

Doc-Types:
    api-reference, data-model
"""

from __future__ import annotations

import datetime

from sqlalchemy import JSON, DateTime, Index, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column

from taskspine.core.orm.base import TaskSpineBase


class TaskTable(TaskSpineBase):
    __tablename__ = "t_task"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    type: Mapped[str] = mapped_column(Text, nullable=False)
    script_name: Mapped[str | None] = mapped_column(Text)
    target_id: Mapped[str] = mapped_column(Text, nullable=False)
    target_type: Mapped[str] = mapped_column(Text, nullable=False)
    runner_type: Mapped[str] = mapped_column(Text, default="manual", nullable=False)
    start_time: Mapped[datetime.datetime] = mapped_column(DateTime, nullable=False)
    completed_at: Mapped[datetime.datetime | None] = mapped_column(DateTime)
    resumed_at: Mapped[datetime.datetime | None] = mapped_column(DateTime)
    input: Mapped[dict | None] = mapped_column(JSON)
    output: Mapped[dict | None] = mapped_column(JSON)
    error: Mapped[dict | None] = mapped_column(JSON)
    status: Mapped[str] = mapped_column(Text, default="pending", nullable=False)
    context: Mapped[dict | None] = mapped_column(JSON)
    poll_results: Mapped[list | None] = mapped_column(JSON)
    poll_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    progress: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    msg: Mapped[str | None] = mapped_column(Text)
    options: Mapped[dict | None] = mapped_column(JSON)
    user_id: Mapped[str | None] = mapped_column(Text)
    completed_user_id: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime, nullable=False)
    updated_at: Mapped[datetime.datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        Index("idx_t_task_dispatch", "runner_type", "status", "start_time"),
        Index("idx_t_task_target", "target_id", "target_type", "type"),
        Index("idx_t_task_created", "created_at"),
    )

"""Engine settings loaded from the environment.

``TaskSpineSettings`` holds every tunable of the execution engine: the
running-task cap, the default handler variant, polling defaults, the
retry-eligible source states and the store URL.  Values come from
``TASKSPINE_*`` environment variables or a ``.env`` file.

Examples:
    >>> from taskspine.core.settings import TaskSpineSettings
    >>> TaskSpineSettings(limit=2).limit
    2

    $ TASKSPINE_LIMIT=25 TASKSPINE_POLL_INTERVAL_SECONDS=1.5 python -m app

Tags:
    settings, configuration, pydantic, environment, task-spine

Doc-Types:
    api-reference
"""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class TaskSpineSettings(BaseSettings):
    """Settings shared by the scheduler, dispatcher and lifecycle service.

    Fields
    ──────
    limit                  : max concurrently running ``system`` tasks
    script_name            : handler variant used when a task has none
    max_poll_times         : default ``max_attempts`` of a poll loop
    poll_interval_seconds  : default delay between poll attempts
    tick_interval_seconds  : cadence of :meth:`TaskEngine.serve`
    retry_from             : statuses a task may be retried from
    handler_package        : dotted package searched for handler modules
    database_url           : SQLAlchemy URL for :class:`SqlAlchemyTaskStore`
    """

    model_config = SettingsConfigDict(
        env_prefix="TASKSPINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Scheduling ───────────────────────────────────────────────
    limit: int = Field(default=10, ge=0)
    tick_interval_seconds: float = Field(default=600.0, gt=0)

    # ── Handlers ─────────────────────────────────────────────────
    script_name: str = "index"
    handler_package: str | None = None

    # ── Polling ──────────────────────────────────────────────────
    max_poll_times: int = Field(default=100, gt=0)
    poll_interval_seconds: float = Field(default=5.0, gt=0)

    # ── Lifecycle ────────────────────────────────────────────────
    retry_from: tuple[str, ...] = ("failed", "canceled")

    # ── Storage ──────────────────────────────────────────────────
    database_url: str = "sqlite:///taskspine.db"

    # ── Observability ────────────────────────────────────────────
    log_level: str = "INFO"
    log_json: bool | None = None
    service_name: str = "task-spine"


__all__ = ["TaskSpineSettings"]

"""Continuation Resolver — apply a signed external callback to a waiting task.

The external system posts ``{id, signature, result}`` where ``result``
is the raw JSON payload::

    {"code": 0, "data": {...}}       code 0 (or absent) → success
    {"code": 7, "message": "..."}    non-zero code      → failed

When the task's stored context carries a ``secret``, the signature must
equal ``HMAC-SHA256(secret, "<id>|<result>")`` (hex).  Lookup, state and
signature checks all run before any write.  The task is then claimed by
setting ``resumed_at`` on the condition that it is still ``waiting`` and
unclaimed, so a redelivered callback cannot run the completion callback
a second time.

Tags:
    task-spine, execution, continuation, hmac

Doc-Types:
    api-reference
"""

from __future__ import annotations

import json
from typing import Any

from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as PydanticValidationError

from taskspine.core.errors import (
    ContinuationPayloadError,
    InvalidTransitionError,
    SignatureMismatchError,
    TaskNotFoundError,
    error_payload,
)
from taskspine.core.hashing import verify_continuation
from taskspine.core.logging import get_logger, task_log_context

from ._helpers import call_maybe_async
from .models import TaskRecord, TaskStatus, utcnow
from .registry import HandlerRegistry
from .store import TaskStore, transition

logger = get_logger(__name__)


class ContinuationPayload(BaseModel):
    """Decoded continuation ``result``."""

    model_config = ConfigDict(extra="allow")

    code: int = 0
    data: Any = None
    message: str | None = None


class ContinuationResolver:
    """Verifies and applies continuation callbacks."""

    def __init__(self, store: TaskStore, registry: HandlerRegistry) -> None:
        self._store = store
        self._registry = registry

    async def resume(self, task_id: str, signature: str | None, result: str) -> TaskRecord:
        """Resume a ``waiting`` task with an external *result*.

        Returns:
            The settled task record.

        Raises:
            TaskNotFoundError: Unknown *task_id*.
            InvalidTransitionError: The task is not ``waiting``, or another
                resume already claimed it.
            SignatureMismatchError: A secret is set and *signature* does not match.
            ContinuationPayloadError: *result* is not a JSON object.
        """
        task = await self._store.find_by_pk(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        if task.status != TaskStatus.WAITING:
            raise InvalidTransitionError(task.status.value, TaskStatus.SUCCESS.value, task.id)

        secret = (task.context or {}).get("secret")
        if secret and not verify_continuation(str(secret), task.id, result, signature):
            logger.warning("continuation.signature_mismatch", task_id=task.id)
            raise SignatureMismatchError(task.id)

        try:
            payload = ContinuationPayload.model_validate_json(result)
        except PydanticValidationError as exc:
            raise ContinuationPayloadError(
                f"Invalid continuation payload: {exc.errors()[0]['msg']}",
                context={"task_id": task.id},
                cause=exc,
            ) from exc
        body = json.loads(result)

        claimed = await self._store.update_where(
            {"id": task.id, "status": TaskStatus.WAITING, "resumed_at": None},
            {"resumed_at": utcnow()},
        )
        await self._store.reload(task)
        if not claimed:
            logger.info("continuation.already_claimed", task_id=task.id, status=task.status.value)
            raise InvalidTransitionError(task.status.value, TaskStatus.SUCCESS.value, task.id)

        with task_log_context(task.id, task.type):
            if payload.code != 0:
                await transition(self._store, task, TaskStatus.FAILED, error=body, completed_at=utcnow())
                logger.info("continuation.failed", code=payload.code)
                return task

            try:
                callback = self._registry.completion_for(task.type)
                await call_maybe_async(callback, task, payload.data, task.context)
            except Exception as exc:
                logger.warning("continuation.callback_failed", error=str(exc))
                await transition(
                    self._store,
                    task,
                    TaskStatus.FAILED,
                    error=error_payload(exc),
                    completed_at=utcnow(),
                )
                raise

            await transition(
                self._store,
                task,
                TaskStatus.SUCCESS,
                output=body,
                progress=100,
                completed_at=utcnow(),
            )
            logger.info("continuation.succeeded")
        return task


__all__ = ["ContinuationPayload", "ContinuationResolver"]

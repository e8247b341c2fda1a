"""Polling Engine — bounded retry-with-interval wait on an external condition.

A handler that must watch an external system calls ``ctx.poll(probe)``.
The probe is invoked once per interval until it reports a terminal
result or the attempt budget runs out.

ARCHITECTURE
────────────
::

    poll_until(probe, max_attempts, interval_seconds, record)
      loop attempt = 1..max_attempts:
        sleep(interval)
        outcome = probe()                 ─ {result, data?, message?, progress?}
        record(entry)                     ─ BEFORE terminal evaluation
        success  → return data
        failed   → raise PollFailedError(message)
        pending  → continue
      raise PollTimeoutError(max_attempts)

    A probe exception is recorded as ``failed`` and ends the loop.

Tags:
    task-spine, execution, polling, retry

Doc-Types:
    api-reference
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, field_validator

from taskspine.core.errors import PollFailedError, PollTimeoutError
from taskspine.core.logging import get_logger

from ._helpers import call_maybe_async
from .models import utcnow

logger = get_logger(__name__)

Probe = Callable[[], Any]
Recorder = Callable[[dict[str, Any]], Awaitable[None]]


class PollOutcome(BaseModel):
    """What a probe returns on each attempt."""

    model_config = ConfigDict(extra="ignore")

    result: Literal["pending", "success", "failed"]
    data: Any = None
    message: str | None = None
    progress: int | None = None

    @field_validator("progress")
    @classmethod
    def _clamp_progress(cls, value: int | None) -> int | None:
        # Same range as ExecutionContext.report_progress.
        if value is None:
            return None
        return max(0, min(100, value))


def _entry(outcome: PollOutcome, attempt: int) -> dict[str, Any]:
    return {**outcome.model_dump(), "attempt": attempt, "at": utcnow().isoformat()}


async def poll_until(
    probe: Probe,
    *,
    max_attempts: int,
    interval_seconds: float,
    record: Recorder | None = None,
) -> Any:
    """Run *probe* until it succeeds, fails or exhausts *max_attempts*.

    Args:
        probe: Zero-argument callable (sync or async) returning a
            :class:`PollOutcome` or an equivalent mapping.
        max_attempts: Probe invocations before timing out.
        interval_seconds: Delay before each invocation.
        record: Awaited with every attempt's entry before it is evaluated.

    Returns:
        The ``data`` of the first ``success`` outcome.

    Raises:
        PollFailedError: On a ``failed`` outcome or a probe exception.
        PollTimeoutError: When no terminal outcome arrived in time.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    for attempt in range(1, max_attempts + 1):
        await asyncio.sleep(interval_seconds)
        try:
            outcome = PollOutcome.model_validate(await call_maybe_async(probe))
        except Exception as exc:
            if record is not None:
                await record(_entry(PollOutcome(result="failed", message=str(exc)), attempt))
            logger.warning("poll.probe_error", attempt=attempt, error=str(exc))
            raise PollFailedError(f"Poll probe raised: {exc}", cause=exc) from exc

        if record is not None:
            await record(_entry(outcome, attempt))

        if outcome.result == "success":
            logger.debug("poll.success", attempt=attempt)
            return outcome.data
        if outcome.result == "failed":
            logger.info("poll.failed", attempt=attempt, message=outcome.message)
            raise PollFailedError(outcome.message or "Poll reported failure", context={"attempt": attempt})

    logger.info("poll.timeout", max_attempts=max_attempts)
    raise PollTimeoutError(max_attempts)


__all__ = ["PollOutcome", "Probe", "Recorder", "poll_until"]

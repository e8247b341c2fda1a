"""Shared helpers for execution components.

Tags:
    task-spine, execution, helpers

Doc-Types:
    api-reference
"""

from __future__ import annotations

import inspect
from collections.abc import Callable
from typing import Any


async def call_maybe_async(func: Callable[..., Any], *args: Any) -> Any:
    """Call *func* and await the result when it is awaitable.

    Handlers, probes and completion callbacks may be plain functions or
    coroutine functions.
    """
    result = func(*args)
    if inspect.isawaitable(result):
        result = await result
    return result

"""
Shared pytest fixtures for task-spine tests.

This module provides:
- Settings tuned for fast tests (tiny poll interval, small limit)
- An in-memory task store
- A handler registry with a recording completion callback
- Wired dispatcher / scheduler / service instances

Usage:
    @pytest.mark.asyncio
    async def test_something(service, registry, completions):
        ...
"""

from __future__ import annotations

from typing import Any

import pytest

from taskspine.core.settings import TaskSpineSettings
from taskspine.execution import (
    ContinuationResolver,
    Dispatcher,
    HandlerRegistry,
    MemoryTaskStore,
    Scheduler,
    TaskService,
)


class CompletionRecorder:
    """Completion callback that records its calls and can be told to fail."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, Any, Any]] = []
        self.fail_with: Exception | None = None

    async def __call__(self, task: Any, result: Any, context: Any = None) -> None:
        self.calls.append((task.id, result, context))
        if self.fail_with is not None:
            raise self.fail_with


# =============================================================================
# Core fixtures
# =============================================================================


@pytest.fixture
def settings() -> TaskSpineSettings:
    """Settings with a small cap and a near-zero poll interval."""
    return TaskSpineSettings(
        _env_file=None,
        limit=2,
        max_poll_times=5,
        poll_interval_seconds=0.001,
        tick_interval_seconds=0.01,
    )


@pytest.fixture
def store() -> MemoryTaskStore:
    return MemoryTaskStore()


@pytest.fixture
def completions() -> CompletionRecorder:
    return CompletionRecorder()


@pytest.fixture
def registry(completions: CompletionRecorder, settings: TaskSpineSettings) -> HandlerRegistry:
    """Registry knowing the ``export`` and ``sync`` task types."""
    return HandlerRegistry(
        {"export": completions, "sync": completions},
        default_script_name=settings.script_name,
    )


@pytest.fixture
def dispatcher(store, registry, settings) -> Dispatcher:
    return Dispatcher(store, registry, settings)


@pytest.fixture
def scheduler(store, dispatcher, settings) -> Scheduler:
    return Scheduler(store, dispatcher, settings)


@pytest.fixture
def resolver(store, registry) -> ContinuationResolver:
    return ContinuationResolver(store, registry)


@pytest.fixture
def service(store, registry, settings, dispatcher, resolver) -> TaskService:
    return TaskService(store, registry, settings, dispatcher=dispatcher, resolver=resolver)

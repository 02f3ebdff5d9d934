"""Shared fixtures for taskseries tests."""

import os
from collections.abc import AsyncIterator, Callable, Generator
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio

from taskseries.config import PlannerSettings
from taskseries.models import Task, TaskException
from taskseries.planner import TaskPlanner
from taskseries.recurrence.rule import parse_rule
from taskseries.store.database import DatabaseManager


def pytest_configure(config: Any) -> None:
    config.addinivalue_line("markers", "unit: fast tests of pure logic")
    config.addinivalue_line("markers", "integration: tests against a real SQLite file or HTTP app")


def make_task(
    task_id: str = "task-1",
    user_id: str = "user-1",
    dtstart: datetime = datetime(2024, 3, 4, 9, 0, tzinfo=UTC),
    rule: str | None = "FREQ=WEEKLY;INTERVAL=1;COUNT=4",
    timezone: str = "UTC",
    **extra: Any,
) -> Task:
    """Build a Task without touching the store."""
    fields: dict[str, Any] = {
        "id": task_id,
        "user_id": user_id,
        "title": "Water plants",
        "dtstart": dtstart,
        "duration_minutes": 30,
        "rule": parse_rule(rule) if rule else None,
        "timezone": timezone,
    }
    fields.update(extra)
    return Task(**fields)


def make_exception(task_id: str, original: datetime, exc_id: str = "exc-1", **extra: Any) -> TaskException:
    return TaskException(
        id=exc_id, task_id=task_id, user_id="user-1", original_occurrence_time=original, **extra
    )


@pytest.fixture(autouse=True)
def clean_test_environment(monkeypatch: pytest.MonkeyPatch) -> Generator[None, Any, None]:
    """Keep TASKSERIES_* variables from the host out of every test."""
    for key in list(os.environ):
        if key.startswith("TASKSERIES_"):
            monkeypatch.delenv(key, raising=False)
    yield


@pytest.fixture
def settings(tmp_path: Path) -> PlannerSettings:
    """Settings pointing at a throwaway database."""
    return PlannerSettings(database_path=tmp_path / "taskseries.db", busy_timeout_seconds=1.0)


@pytest_asyncio.fixture
async def store(settings: PlannerSettings) -> AsyncIterator[DatabaseManager]:
    manager = DatabaseManager(settings.database_path, busy_timeout=settings.busy_timeout_seconds)
    await manager.initialize()
    yield manager


@pytest_asyncio.fixture
async def planner(settings: PlannerSettings, store: DatabaseManager) -> AsyncIterator[TaskPlanner]:
    yield TaskPlanner(settings, store=store)


@pytest.fixture
def task_factory() -> Callable[..., Task]:
    return make_task


@pytest.fixture
def exception_factory() -> Callable[..., TaskException]:
    return make_exception

"""
Task entity and the task-status interface the autopilot drives.

The core only talks to tasks through :class:`TaskService`.  The in-memory
:class:`InMemoryTaskBoard` implements it for the CLI and tests.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Protocol

import jsonschema
import yaml

from aicore.errors import ConfigurationError

logger = logging.getLogger(__name__)


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    BLOCKED = "blocked"
    FAILED = "failed"


OPEN_STATUSES = frozenset({TaskStatus.PENDING, TaskStatus.BLOCKED})


@dataclass
class Task:
    id: str
    title: str
    description: str = ""
    type: str = "implementation"
    status: TaskStatus = TaskStatus.PENDING
    result: str | None = None

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES


@dataclass
class TaskSession:
    id: str
    tasks: list[Task] = field(default_factory=list)

    def open_tasks(self) -> list[Task]:
        return [t for t in self.tasks if t.is_open]


class TaskService(Protocol):
    """Task-status collaborator.  Each call is an atomic per-task transition."""

    def start_task(self, task_id: str) -> None: ...

    def complete_task(self, task_id: str, result: str | None = None) -> None: ...

    def fail_task(self, task_id: str, reason: str) -> None: ...

    def get_current_session(self) -> TaskSession | None: ...

    def get_next_task(self) -> Task | None: ...


class InMemoryTaskBoard:
    """A single task session held in memory."""

    def __init__(self, tasks: list[Task] | None = None, session_id: str | None = None) -> None:
        self.session = TaskSession(
            id=session_id or f"tasks-{uuid.uuid4().hex[:8]}",
            tasks=list(tasks or []),
        )
        self._by_id = {t.id: t for t in self.session.tasks}
        if len(self._by_id) != len(self.session.tasks):
            raise ValueError("Task ids must be unique")

    def _require(self, task_id: str) -> Task:
        try:
            return self._by_id[task_id]
        except KeyError:
            raise KeyError(f"Unknown task: {task_id}") from None

    def start_task(self, task_id: str) -> None:
        self._require(task_id).status = TaskStatus.IN_PROGRESS

    def complete_task(self, task_id: str, result: str | None = None) -> None:
        task = self._require(task_id)
        task.status = TaskStatus.COMPLETED
        if result is not None:
            task.result = result

    def fail_task(self, task_id: str, reason: str) -> None:
        task = self._require(task_id)
        task.status = TaskStatus.FAILED
        task.result = reason

    def get_current_session(self) -> TaskSession | None:
        return self.session

    def get_next_task(self) -> Task | None:
        for task in self.session.tasks:
            if task.status is TaskStatus.PENDING:
                return task
        return None

    def counts(self) -> dict[TaskStatus, int]:
        out = {s: 0 for s in TaskStatus}
        for task in self.session.tasks:
            out[task.status] += 1
        return out


# ---------------------------------------------------------------------------
# Task files
# ---------------------------------------------------------------------------

TASK_FILE_SCHEMA = {
    "type": "object",
    "properties": {
        "tasks": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "id": {"type": ["string", "integer"]},
                    "title": {"type": "string", "minLength": 1},
                    "description": {"type": "string"},
                    "type": {"type": "string"},
                    "status": {"enum": [s.value for s in TaskStatus]},
                },
                "required": ["title"],
            },
        },
    },
    "required": ["tasks"],
}


def load_tasks(path: str | Path) -> list[Task]:
    """
    Read a task list from a YAML or JSON file.

    The file is either a mapping with a ``tasks`` list or a bare list.
    Missing ids are numbered ``task-1``, ``task-2``... in file order.
    """
    p = Path(path).expanduser()
    try:
        with p.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigurationError(f"Cannot read task file {p}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid task file {p}: {e}") from e

    if isinstance(data, list):
        data = {"tasks": data}
    try:
        jsonschema.validate(instance=data, schema=TASK_FILE_SCHEMA)
    except jsonschema.ValidationError as e:
        raise ConfigurationError(f"Invalid task file {p}: {e.message}") from e

    tasks = []
    for index, raw in enumerate(data["tasks"], start=1):
        tasks.append(
            Task(
                id=str(raw.get("id", f"task-{index}")),
                title=raw["title"],
                description=raw.get("description", ""),
                type=raw.get("type", "implementation"),
                status=TaskStatus(raw.get("status", TaskStatus.PENDING.value)),
            )
        )

    seen: set[str] = set()
    for task in tasks:
        if task.id in seen:
            raise ConfigurationError(f"Invalid task file {p}: duplicate task id '{task.id}'")
        seen.add(task.id)

    logger.info("Loaded %d tasks from %s", len(tasks), p)
    return tasks

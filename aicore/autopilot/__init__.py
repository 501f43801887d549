"""Autopilot: concurrent task execution with retry and a stagnation fuse."""

from aicore.autopilot.executor import TaskExecutor, TaskOutcome
from aicore.autopilot.fuse import AutopilotFuse, FuseVerdict, KeywordNudgeClassifier, NudgeClassifier
from aicore.autopilot.pool import (
    PROVIDER_CONCURRENCY_LIMIT,
    AutopilotWorkerPool,
    BatchProgress,
    TaskFinished,
    TaskRetrying,
    TaskRouted,
    TaskStarted,
)

__all__ = [
    "AutopilotFuse",
    "AutopilotWorkerPool",
    "BatchProgress",
    "FuseVerdict",
    "KeywordNudgeClassifier",
    "NudgeClassifier",
    "PROVIDER_CONCURRENCY_LIMIT",
    "TaskExecutor",
    "TaskFinished",
    "TaskOutcome",
    "TaskRetrying",
    "TaskRouted",
    "TaskStarted",
]

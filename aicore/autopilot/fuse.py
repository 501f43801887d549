"""
Stagnation fuse for autopilot runs.

Per conversation key the fuse counts user nudges ("continue", "keep
going"...) that arrive without any task-list progress in between.  Two
such nudges, a message saying the run is stuck, or an explicit takeover
request force the strongest model for the next batch.

Message classification is pluggable through :class:`NudgeClassifier`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Protocol

from aicore.tasks import Task, TaskStatus

logger = logging.getLogger(__name__)

NUDGE_THRESHOLD = 2


class NudgeClassifier(Protocol):
    def is_nudge(self, message: str) -> bool: ...

    def is_stuck(self, message: str) -> bool: ...

    def is_immediate_takeover(self, message: str) -> bool: ...


class KeywordNudgeClassifier:
    """Case-insensitive substring matching over English and Chinese phrases."""

    NUDGE_PHRASES = (
        "继续", "继续执行", "往下执行", "自动往下", "直接执行", "不要问",
        "continue", "keep going", "go on", "execute all", "auto execute",
        "proceed", "carry on",
    )
    TAKEOVER_PHRASES = (
        "运行", "启动", "报错", "错误", "修复", "卡住", "失败",
        "run", "start", "dev", "npm", "error", "fix", "failed", "broken",
    )
    STUCK_PHRASES = (
        "循环", "卡住", "反复", "拉扯", "愚蠢",
        "stuck", "loop", "repeat", "going in circles",
    )

    def __init__(
        self,
        nudge: Iterable[str] | None = None,
        takeover: Iterable[str] | None = None,
        stuck: Iterable[str] | None = None,
    ) -> None:
        self.nudge = tuple(nudge) if nudge is not None else self.NUDGE_PHRASES
        self.takeover = tuple(takeover) if takeover is not None else self.TAKEOVER_PHRASES
        self.stuck = tuple(stuck) if stuck is not None else self.STUCK_PHRASES

    @staticmethod
    def _matches(message: str, phrases: tuple[str, ...]) -> bool:
        text = message.lower()
        return any(p in text for p in phrases)

    def is_nudge(self, message: str) -> bool:
        return self._matches(message, self.nudge)

    def is_stuck(self, message: str) -> bool:
        return self._matches(message, self.stuck)

    def is_immediate_takeover(self, message: str) -> bool:
        return self._matches(message, self.takeover)


@dataclass(frozen=True)
class FuseVerdict:
    triggered: bool
    nudge_count: int
    force_strong_model: bool


@dataclass
class _FuseState:
    nudge_count: int
    last_pending: int
    last_completed: int


class AutopilotFuse:
    def __init__(
        self,
        classifier: NudgeClassifier | None = None,
        threshold: int = NUDGE_THRESHOLD,
    ) -> None:
        self.classifier = classifier or KeywordNudgeClassifier()
        self.threshold = threshold
        self._state: dict[str, _FuseState] = {}

    def wants_autopilot(self, message: str) -> bool:
        """Whether *message* asks the autopilot to take over at all."""
        return self.classifier.is_nudge(message) or self.classifier.is_immediate_takeover(message)

    def evaluate(self, key: str, message: str, tasks: list[Task]) -> FuseVerdict:
        pending = sum(1 for t in tasks if t.status in (TaskStatus.PENDING, TaskStatus.BLOCKED))
        completed = sum(1 for t in tasks if t.status is TaskStatus.COMPLETED)
        previous = self._state.get(key) or _FuseState(0, pending, completed)

        progressed = completed > previous.last_completed or pending < previous.last_pending
        nudge_count = 0 if progressed else previous.nudge_count
        if self.classifier.is_nudge(message):
            nudge_count += 1

        self._state[key] = _FuseState(nudge_count, pending, completed)

        triggered = nudge_count >= self.threshold
        stuck = self.classifier.is_stuck(message)
        takeover = self.classifier.is_immediate_takeover(message)
        force = triggered or stuck or takeover
        if not force:
            logger.info("Fuse %s: nudge=%d, waiting for next confirmation", key, nudge_count)
        else:
            logger.info(
                "Fuse %s: forcing strongest model (nudges=%d stuck=%s takeover=%s)",
                key,
                nudge_count,
                stuck,
                takeover,
            )
        return FuseVerdict(triggered=triggered, nudge_count=nudge_count, force_strong_model=force)

    def nudge_count(self, key: str) -> int:
        state = self._state.get(key)
        return state.nudge_count if state else 0

    def reset(self, key: str) -> None:
        self._state.pop(key, None)

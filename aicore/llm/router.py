"""
Task router: classifies a request's difficulty and picks a model plan.

The provider's routing model is asked for a strict JSON verdict.  Any
failure along that path (transport, status, no locatable object) falls back
to a deterministic keyword/length heuristic, so :meth:`TaskRouter.route`
always returns a plan.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, replace
from enum import Enum
from typing import TYPE_CHECKING

import httpx

from aicore.config import ProviderConfig, RoutingConfig
from aicore.errors import ProviderError
from aicore.llm.structured import find_json_span, parse_json_object
from aicore.llm.types import ChatContext, Message
from aicore.prompts.system import ROUTER_SYSTEM_PROMPT, build_routing_prompt

if TYPE_CHECKING:
    from aicore.llm.gateway import ChatGateway

logger = logging.getLogger(__name__)


class Complexity(str, Enum):
    SIMPLE = "simple"
    MEDIUM = "medium"
    HARD = "hard"


class Delegate(str, Enum):
    QUICK_RESPONDER = "quick_responder"
    IMPLEMENTATION_AGENT = "implementation_agent"
    PLANNING_AGENT = "planning_agent"


TOKEN_BUDGETS = {
    Complexity.SIMPLE: 8_192,
    Complexity.MEDIUM: 16_384,
    Complexity.HARD: 32_768,
}

DEFAULT_DELEGATES = {
    Complexity.SIMPLE: Delegate.QUICK_RESPONDER,
    Complexity.MEDIUM: Delegate.IMPLEMENTATION_AGENT,
    Complexity.HARD: Delegate.PLANNING_AGENT,
}

STRONGEST_MAX_TOKENS = 32_768


@dataclass(frozen=True)
class RoutingPlan:
    complexity: Complexity
    delegate: Delegate
    model: str
    requires_vision: bool = False
    enable_thinking: bool = True
    enable_web_search: bool = True
    max_tokens: int = 16_384
    reason: str = ""
    confidence: float = 0.0


# ---------------------------------------------------------------------------
# Detection heuristics
# ---------------------------------------------------------------------------

_VISUAL_EXT_RE = re.compile(
    r"\.(png|jpg|jpeg|webp|gif|bmp|svg|mp4|mov|avi|mkv|webm|pdf)$", re.IGNORECASE
)
_VISUAL_CUE_RE = re.compile(
    r"图片|图像|看图|识图|截图|视频|多模态|视觉|文档解析"
    r"|ocr|pdf|image|video|vision|screenshot",
    re.IGNORECASE,
)
_CODE_INTENT_RE = re.compile(
    r"代码|修复|调试|实现|重构|架构|设计|性能"
    r"|bug|error|refactor|implement|debug|fix",
    re.IGNORECASE,
)
_PLANNING_INTENT_RE = re.compile(
    r"方案|架构|设计|规划|需求|任务分解"
    r"|spec|architecture|roadmap|trade-?off|plan the",
    re.IGNORECASE,
)

HARD_LENGTH = 500
MEDIUM_LENGTH = 120


def has_visual_inputs(message: str, context: ChatContext) -> bool:
    """True when an attachment or the wording suggests images, video or PDFs."""
    for f in context.files:
        if _VISUAL_EXT_RE.search(f.path) or f.language == "binary":
            return True
    return bool(_VISUAL_CUE_RE.search(message))


def _coerce_complexity(value) -> Complexity:
    try:
        return Complexity(str(value).lower())
    except ValueError:
        return Complexity.MEDIUM


def _coerce_delegate(value, complexity: Complexity) -> Delegate:
    if value is None:
        return DEFAULT_DELEGATES[complexity]
    try:
        return Delegate(str(value).lower())
    except ValueError:
        return DEFAULT_DELEGATES[complexity]


def _coerce_confidence(value) -> float:
    """Clamp the classifier's confidence to [0, 1]; non-numbers and NaN give 0.7."""
    if isinstance(value, bool) or not isinstance(value, (int, float)) or math.isnan(value):
        return 0.7
    return max(0.0, min(1.0, float(value)))


# ---------------------------------------------------------------------------
# Router
# ---------------------------------------------------------------------------


class TaskRouter:
    """
    Chooses a :class:`RoutingPlan` for a user message.

    Parameters
    ----------
    gateway:
        Used for the non-streaming classifier request.
    routing:
        Routing switches and per-complexity model names.
    provider:
        Supplies the default and routing model names.
    """

    def __init__(
        self,
        gateway: ChatGateway,
        routing: RoutingConfig,
        provider: ProviderConfig,
    ) -> None:
        self.gateway = gateway
        self.routing = routing
        self.provider = provider

    def model_for(self, complexity: Complexity, vision: bool = False) -> str:
        r = self.routing
        if vision:
            return {
                Complexity.SIMPLE: r.vision_model_simple,
                Complexity.MEDIUM: r.vision_model_medium,
                Complexity.HARD: r.vision_model_hard,
            }[complexity]
        return {
            Complexity.SIMPLE: r.model_simple,
            Complexity.MEDIUM: r.model_medium,
            Complexity.HARD: r.model_hard,
        }[complexity]

    def disabled_plan(self) -> RoutingPlan:
        return RoutingPlan(
            complexity=Complexity.MEDIUM,
            delegate=Delegate.IMPLEMENTATION_AGENT,
            model=self.provider.model,
            requires_vision=False,
            enable_thinking=self.provider.enable_thinking,
            enable_web_search=self.provider.enable_web_search,
            max_tokens=TOKEN_BUDGETS[Complexity.MEDIUM],
            reason="Automatic routing is disabled; using the default configuration",
            confidence=1.0,
        )

    def _plan(
        self,
        complexity: Complexity,
        delegate: Delegate,
        vision: bool,
        reason: str,
        confidence: float,
    ) -> RoutingPlan:
        heavy = complexity is not Complexity.SIMPLE
        return RoutingPlan(
            complexity=complexity,
            delegate=delegate,
            model=self.model_for(complexity, vision),
            requires_vision=vision,
            enable_thinking=heavy,
            enable_web_search=heavy,
            max_tokens=TOKEN_BUDGETS[complexity],
            reason=reason,
            confidence=confidence,
        )

    def fallback_plan(self, message: str, vision: bool = False) -> RoutingPlan:
        """Deterministic plan from keywords and message length."""
        length = len(message)
        if _PLANNING_INTENT_RE.search(message) or length > HARD_LENGTH:
            return self._plan(
                Complexity.HARD,
                Delegate.PLANNING_AGENT,
                vision,
                "Local heuristic: complex planning task",
                0.62,
            )
        if _CODE_INTENT_RE.search(message) or length > MEDIUM_LENGTH:
            return self._plan(
                Complexity.MEDIUM,
                Delegate.IMPLEMENTATION_AGENT,
                vision,
                "Local heuristic: medium implementation task",
                0.58,
            )
        return self._plan(
            Complexity.SIMPLE,
            Delegate.QUICK_RESPONDER,
            vision,
            "Local heuristic: simple question",
            0.55,
        )

    async def route(
        self,
        message: str,
        context: ChatContext,
        mode: str = "vibe",
        is_agent_mode: bool = True,
        force: bool = False,
    ) -> RoutingPlan:
        if not self.routing.auto_routing and not force:
            return self.disabled_plan()

        vision = self.routing.vision_routing and has_visual_inputs(message, context)
        prompt = build_routing_prompt(
            message,
            mode=mode,
            is_agent_mode=is_agent_mode,
            attached_files=len(context.files),
            has_vision_inputs=vision,
        )

        try:
            content = await self.gateway.complete(
                [
                    Message(role="system", content=ROUTER_SYSTEM_PROMPT),
                    Message(role="user", content=prompt),
                ],
                model=self.provider.router_model,
                temperature=0.1,
                max_tokens=300,
            )
        except (ProviderError, httpx.HTTPError) as exc:
            logger.warning("Router model failed, falling back to heuristic: %s", exc)
            return self.fallback_plan(message, vision)

        span = find_json_span(content)
        verdict = parse_json_object(span) if span else None
        if verdict is None:
            logger.warning("Router JSON not found, falling back to heuristic")
            return self.fallback_plan(message, vision)

        complexity = _coerce_complexity(verdict.get("complexity", "medium"))
        delegate = _coerce_delegate(
            verdict.get("delegate", verdict.get("subAgent")), complexity
        )
        requires_vision = bool(verdict.get("requiresVision")) or vision
        confidence = _coerce_confidence(verdict.get("confidence"))

        plan = self._plan(
            complexity,
            delegate,
            requires_vision,
            verdict.get("reason") or "Routing model verdict",
            confidence,
        )
        logger.info(
            "Routing plan: complexity=%s delegate=%s vision=%s model=%s confidence=%.2f",
            plan.complexity.value,
            plan.delegate.value,
            plan.requires_vision,
            plan.model,
            plan.confidence,
        )
        return plan

    def strongest_plan(self, plan: RoutingPlan) -> RoutingPlan:
        """The escalated plan used when the fuse trips."""
        return replace(
            plan,
            model=self.routing.model_hard,
            enable_thinking=True,
            enable_web_search=True,
            max_tokens=max(STRONGEST_MAX_TOKENS, plan.max_tokens),
            reason=f"{plan.reason} | fuse triggered: forcing the strongest model",
        )

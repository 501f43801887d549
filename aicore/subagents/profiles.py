"""
Subagent profile files.

A profile is a Markdown file whose YAML front matter names the subagent and
sets its flags; the body is the subagent's prompt::

    ---
    name: planning-agent
    description: Planning subagent for complex requirements.
    model: inherit
    readonly: true
    is_background: false
    ---

    You are the planning-agent subagent...

Profiles live in ``<workspace>/.agents/agents`` (or ``.cursor/agents`` when
only that directory exists).
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path

import yaml

from aicore.errors import WorkspaceError

logger = logging.getLogger(__name__)

INHERIT_MODEL = "inherit"
DEFAULT_DESCRIPTION = "No description provided."

_FRONT_MATTER_RE = re.compile(r"^---\s*\n(.*?)\n---\s*\n?(.*)$", re.DOTALL)


@dataclass
class SubagentProfile:
    name: str
    description: str = DEFAULT_DESCRIPTION
    model: str = INHERIT_MODEL
    readonly: bool = False
    is_background: bool = False
    prompt: str = ""
    path: Path | None = None

    @property
    def inherits_model(self) -> bool:
        return self.model == INHERIT_MODEL


def _as_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() == "true"


def parse_profile(text: str) -> SubagentProfile | None:
    """
    Parse one profile file.

    Returns ``None`` when there is no front matter, it is not a mapping, it
    fails to parse, or it carries no ``name``.
    """
    match = _FRONT_MATTER_RE.match(text.lstrip("\ufeff"))
    if not match:
        return None

    try:
        meta = yaml.safe_load(match.group(1))
    except yaml.YAMLError as exc:
        logger.debug("Invalid profile front matter: %s", exc)
        return None
    if not isinstance(meta, dict):
        return None

    meta = {str(k).strip().lower(): v for k, v in meta.items()}
    name = str(meta.get("name") or "").strip().lower()
    if not name:
        return None

    return SubagentProfile(
        name=name,
        description=str(meta.get("description") or DEFAULT_DESCRIPTION),
        model=str(meta.get("model") or INHERIT_MODEL),
        readonly=_as_bool(meta.get("readonly", False)),
        is_background=_as_bool(meta.get("is_background", False)),
        prompt=match.group(2).strip(),
    )


# ---------------------------------------------------------------------------
# Default profiles
# ---------------------------------------------------------------------------

DEFAULT_PROFILE_FILES: dict[str, str] = {
    "quick-responder.md": """---
name: quick-responder
description: Quick-response subagent for simple questions, short tasks and low-complexity requests. Use proactively.
model: inherit
readonly: true
is_background: false
---

You are the quick-responder subagent.
Goal: finish simple tasks quickly, accurately and concisely.

Rules:
1. Lead with the direct answer and avoid over-elaborating.
2. If information is missing, list the minimum assumptions first, then answer.
3. Structure the reply as conclusion, key evidence, next step.
""",
    "implementation-agent.md": """---
name: implementation-agent
description: Implementation subagent for writing code, refactoring, fixes and engineering changes. Use proactively.
model: inherit
readonly: false
is_background: false
---

You are the implementation-agent subagent.
Goal: complete implementation tasks without compromising quality.

Rules:
1. Start with the change plan and its blast radius.
2. Prefer the smallest change and keep compatibility.
3. Include implementation steps, key changes, how to verify and potential risks.
""",
    "planning-agent.md": """---
name: planning-agent
description: Planning subagent for complex requirement analysis, architecture decisions, task breakdown and milestones. Use proactively.
model: inherit
readonly: true
is_background: false
---

You are the planning-agent subagent.
Goal: produce a high-quality plan that can be executed.

Rules:
1. Define goals, constraints and acceptance criteria first.
2. Offer two or three options with their trade-offs.
3. Deliver a phased plan, a risk list and a rollback strategy.
""",
}


# ---------------------------------------------------------------------------
# Library
# ---------------------------------------------------------------------------


class ProfileLibrary:
    """Loads and bootstraps the profile files of one workspace."""

    def __init__(self, workspace: str | Path | None) -> None:
        self.workspace = Path(workspace).expanduser() if workspace else None

    def root(self) -> Path:
        """The profile directory, preferring ``.agents/agents`` over ``.cursor/agents``."""
        if self.workspace is None:
            raise WorkspaceError("No workspace folder available for subagents")
        neutral = self.workspace / ".agents" / "agents"
        cursor = self.workspace / ".cursor" / "agents"
        if neutral.is_dir():
            return neutral
        if cursor.is_dir():
            return cursor
        return neutral

    def load(self) -> list[SubagentProfile]:
        root = self.root()
        if not root.is_dir():
            return []

        profiles: list[SubagentProfile] = []
        for path in sorted(root.iterdir()):
            if not path.is_file() or path.suffix.lower() != ".md":
                continue
            try:
                profile = parse_profile(path.read_text(encoding="utf-8"))
            except (OSError, UnicodeDecodeError) as exc:
                logger.warning("Failed loading subagent %s: %s", path.name, exc)
                continue
            if profile is None:
                logger.warning("Skipping subagent file without valid front matter: %s", path.name)
                continue
            profile.path = path
            profiles.append(profile)
        return profiles

    def ensure_defaults(self) -> list[SubagentProfile]:
        """Write the default profiles when none load, then return the loaded set."""
        root = self.root()
        root.mkdir(parents=True, exist_ok=True)

        profiles = self.load()
        if profiles:
            return profiles

        for file_name, content in DEFAULT_PROFILE_FILES.items():
            (root / file_name).write_text(content, encoding="utf-8")
        logger.info("Bootstrapped %d default subagents at %s", len(DEFAULT_PROFILE_FILES), root)
        return self.load()

    def get(self, name: str) -> SubagentProfile | None:
        wanted = name.lower()
        for profile in self.ensure_defaults():
            if profile.name == wanted:
                return profile
        return None

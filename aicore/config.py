"""
Typed configuration model with precedence-based loader.

Precedence (lowest to highest):
    defaults < config file (YAML) < env vars < CLI flags < per-session overrides
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields, asdict, is_dataclass
from pathlib import Path
from typing import Any

import yaml


# ---------------------------------------------------------------------------
# Section dataclasses
# ---------------------------------------------------------------------------

@dataclass
class ProviderConfig:
    api_base: str = "https://open.bigmodel.cn/api/paas/v4"
    api_key_env: str = "GLM_API_KEY"
    model: str = "glm-4.7"
    router_model: str = "glm-5"
    temperature: float = 0.7
    max_tokens: int = 32_768
    timeout_seconds: int = 120
    enable_thinking: bool = True
    thinking_budget: int = 4_096
    enable_web_search: bool = True
    search_engine: str = "search_pro"

    @property
    def api_key(self) -> str:
        return os.environ.get(self.api_key_env, "")

    @property
    def chat_url(self) -> str:
        return f"{self.api_base.rstrip('/')}/chat/completions"


@dataclass
class RoutingConfig:
    auto_routing: bool = True
    vision_routing: bool = True
    model_simple: str = "glm-4.7-flash"
    model_medium: str = "glm-4.7"
    model_hard: str = "glm-5"
    vision_model_simple: str = "glm-4.6v-flash"
    vision_model_medium: str = "glm-4.6v-flashx"
    vision_model_hard: str = "glm-4.6v"


@dataclass
class SubagentsConfig:
    enabled: bool = True
    workspace: str = ""


@dataclass
class AutopilotConfig:
    execution_mode: str = "autopilot"  # "autopilot" | "supervised"
    parallel_enabled: bool = True
    max_parallel_workers: int = 3
    max_retries: int = 3
    retry_base_delay: float = 1.0


@dataclass
class SessionConfig:
    max_history_messages: int = 50
    max_history_tokens: int = 100_000
    archive_db: str = ""


# ---------------------------------------------------------------------------
# Root config
# ---------------------------------------------------------------------------

@dataclass
class AICoreConfig:
    provider: ProviderConfig = field(default_factory=ProviderConfig)
    routing: RoutingConfig = field(default_factory=RoutingConfig)
    subagents: SubagentsConfig = field(default_factory=SubagentsConfig)
    autopilot: AutopilotConfig = field(default_factory=AutopilotConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    profiles: dict[str, dict[str, Any]] = field(default_factory=dict)

    # ----- per-session overrides (applied last) ----
    _overrides: dict[str, Any] = field(default_factory=dict, repr=False)

    def set_override(self, dotpath: str, value: Any) -> None:
        """Set a per-session override using dot notation (e.g. 'provider.model')."""
        self._overrides[dotpath] = value
        _apply_dotpath(self, dotpath, value)

    def get_override(self, dotpath: str) -> Any | None:
        return self._overrides.get(dotpath)

    def to_dict(self) -> dict:
        d = asdict(self)
        d.pop("_overrides", None)
        return d


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _apply_dotpath(obj: Any, dotpath: str, value: Any) -> None:
    """Walk obj via dotpath and set the final attribute."""
    parts = dotpath.split(".")
    for part in parts[:-1]:
        obj = getattr(obj, part)
    setattr(obj, parts[-1], value)


def coerce_override(cfg: AICoreConfig, dotpath: str, raw: str) -> Any:
    """Convert *raw* text to the type of the setting at *dotpath*.

    Raises ``ValueError`` for unknown paths, whole sections, or text that
    does not parse as the setting's type.
    """
    current: Any = cfg
    for part in dotpath.split("."):
        if not part or part.startswith("_") or not hasattr(current, part):
            raise ValueError(f"Unknown setting: {dotpath}")
        current = getattr(current, part)
    if is_dataclass(current) or isinstance(current, dict):
        raise ValueError(f"Not a single setting: {dotpath}")
    return _coerce(raw, type(current))


def _deep_merge(base: dict, overlay: dict) -> dict:
    """Recursively merge overlay into base, returning a new dict."""
    merged = dict(base)
    for k, v in overlay.items():
        if k in merged and isinstance(merged[k], dict) and isinstance(v, dict):
            merged[k] = _deep_merge(merged[k], v)
        else:
            merged[k] = v
    return merged


def _coerce(value: str, target_type: type) -> Any:
    """Coerce a string env value to the target type."""
    if target_type is bool:
        return value.lower() in ("1", "true", "yes", "on")
    if target_type is int:
        return int(value)
    if target_type is float:
        return float(value)
    return value


def _build_section(cls: type, raw: dict) -> Any:
    """Build a dataclass section from a raw dict, ignoring unknown keys."""
    valid_fields = {f.name for f in fields(cls)}
    filtered = {k: v for k, v in raw.items() if k in valid_fields}
    return cls(**filtered)


# ---------------------------------------------------------------------------
# ENV var mapping
# ---------------------------------------------------------------------------

_ENV_MAP: dict[str, tuple[str, type]] = {
    "AICORE_API_BASE":             ("provider.api_base", str),
    "AICORE_API_KEY_ENV":          ("provider.api_key_env", str),
    "AICORE_MODEL":                ("provider.model", str),
    "AICORE_ROUTER_MODEL":         ("provider.router_model", str),
    "AICORE_TEMPERATURE":          ("provider.temperature", float),
    "AICORE_MAX_TOKENS":           ("provider.max_tokens", int),
    "AICORE_TIMEOUT":              ("provider.timeout_seconds", int),
    "AICORE_ENABLE_THINKING":      ("provider.enable_thinking", bool),
    "AICORE_ENABLE_WEB_SEARCH":    ("provider.enable_web_search", bool),
    "AICORE_SEARCH_ENGINE":        ("provider.search_engine", str),
    "AICORE_AUTO_ROUTING":         ("routing.auto_routing", bool),
    "AICORE_VISION_ROUTING":       ("routing.vision_routing", bool),
    "AICORE_MODEL_SIMPLE":         ("routing.model_simple", str),
    "AICORE_MODEL_MEDIUM":         ("routing.model_medium", str),
    "AICORE_MODEL_HARD":           ("routing.model_hard", str),
    "AICORE_VISION_MODEL_SIMPLE":  ("routing.vision_model_simple", str),
    "AICORE_VISION_MODEL_MEDIUM":  ("routing.vision_model_medium", str),
    "AICORE_VISION_MODEL_HARD":    ("routing.vision_model_hard", str),
    "AICORE_SUBAGENTS_ENABLED":    ("subagents.enabled", bool),
    "AICORE_WORKSPACE":            ("subagents.workspace", str),
    "AICORE_EXECUTION_MODE":       ("autopilot.execution_mode", str),
    "AICORE_PARALLEL_ENABLED":     ("autopilot.parallel_enabled", bool),
    "AICORE_MAX_PARALLEL_WORKERS": ("autopilot.max_parallel_workers", int),
    "AICORE_MAX_RETRIES":          ("autopilot.max_retries", int),
    "AICORE_SESSION_MAX_MESSAGES": ("session.max_history_messages", int),
    "AICORE_SESSION_MAX_TOKENS":   ("session.max_history_tokens", int),
    "AICORE_SESSION_ARCHIVE_DB":   ("session.archive_db", str),
}


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

def find_config_path() -> Path | None:
    """Find config file in standard locations."""
    candidates = [
        Path.cwd() / "aicore.yaml",
        Path.cwd() / "aicore.yml",
        Path.home() / ".config" / "aicore" / "config.yaml",
        Path.home() / ".aicore" / "config.yaml",
    ]
    for p in candidates:
        if p.is_file():
            return p
    return None


def load_config(
    config_path: str | Path | None = None,
    *,
    profile: str | None = None,
    cli_overrides: dict[str, Any] | None = None,
) -> AICoreConfig:
    """
    Build an AICoreConfig by layering sources in precedence order:

        defaults  <  config file  <  env vars  <  CLI flags  <  per-session overrides

    Parameters
    ----------
    config_path : path to YAML config file (optional)
    profile : name of a profile to apply from the config file
    cli_overrides : dict of dotpath -> value CLI flag overrides
    """
    raw: dict[str, Any] = {}

    # --- 1. Config file ---
    if config_path is not None:
        p = Path(config_path).expanduser()
        if p.is_file():
            with p.open("r", encoding="utf-8") as f:
                file_data = yaml.safe_load(f) or {}
            raw = _deep_merge(raw, file_data)

    # --- 2. Profile overlay ---
    if profile and "profiles" in raw:
        profile_data = raw.get("profiles", {}).get(profile, {})
        if profile_data:
            raw = _deep_merge(raw, profile_data)

    # --- Build sections from raw ---
    cfg = AICoreConfig(
        provider=_build_section(ProviderConfig, raw.get("provider", {})),
        routing=_build_section(RoutingConfig, raw.get("routing", {})),
        subagents=_build_section(SubagentsConfig, raw.get("subagents", {})),
        autopilot=_build_section(AutopilotConfig, raw.get("autopilot", {})),
        session=_build_section(SessionConfig, raw.get("session", {})),
        profiles=raw.get("profiles", {}),
    )

    # --- 3. Env var overrides ---
    for env_var, (dotpath, target_type) in _ENV_MAP.items():
        val = os.environ.get(env_var)
        if val is not None:
            _apply_dotpath(cfg, dotpath, _coerce(val, target_type))

    # --- 4. CLI flag overrides ---
    if cli_overrides:
        for dotpath, value in cli_overrides.items():
            _apply_dotpath(cfg, dotpath, value)

    return cfg

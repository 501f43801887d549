"""Exception hierarchy shared by the orchestration core."""

from __future__ import annotations


class AICoreError(Exception):
    """Base class for every error raised by aicore."""


class ProviderError(AICoreError):
    """
    Transport or HTTP failure talking to the LLM provider.

    Retried by :func:`aicore.llm.retry.with_retry`.
    """

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class StructuredOutputError(AICoreError):
    """The model answered, but no usable structured data could be recovered."""


class ConfigurationError(AICoreError):
    """Fatal to the current operation.  Never retried."""


class UnknownSubagentError(ConfigurationError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Subagent not found: {name}")
        self.name = name


class UnknownRunError(ConfigurationError):
    def __init__(self, run_id: str) -> None:
        super().__init__(f"Unknown agent id: {run_id}")
        self.run_id = run_id


class WorkspaceError(ConfigurationError):
    """No usable workspace folder for project-local files."""

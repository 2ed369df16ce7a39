# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional


class BatchCIError(Exception):
    """Base class for every error raised by the orchestrator."""


class ConfigurationError(BatchCIError):
    """
    Malformed or inconsistent stage / barrier / alias definitions.

    Raised before scheduling begins; nothing has been executed when
    this escapes.
    """

    def __init__(self, message: str, *, stage: Optional[str] = None, details: Optional[Dict[str, str]] = None):
        super().__init__(message)
        self.message = message
        self.stage = stage
        self.details = dict(details or {})

    def __str__(self) -> str:
        lines = [self.message]
        if self.stage:
            lines.append(f"stage={self.stage}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


class PredicateError(ConfigurationError):
    """A gating expression could not be compiled."""


@dataclass
class StageFailure(Exception):
    """
    A stage's commands or artifact contract failed.

    Local to that stage: the executor turns it into a failed outcome
    and sibling stages keep running.
    """
    stage: str
    reason: str
    command: str | None = None
    exit_code: int | None = None
    output: str = ""

    def __str__(self) -> str:
        if self.command is not None:
            return f"[{self.stage}] command failed (exit={self.exit_code}): {self.command}: {self.reason}"
        return f"[{self.stage}] {self.reason}"


@dataclass
class SchedulingStarvation(BatchCIError):
    """No worker in the pool can ever satisfy a stage's selector."""
    stage: str
    selector: List[str]
    available: List[List[str]] = field(default_factory=list)

    def __str__(self) -> str:
        lines = [
            f"no worker can run stage '{self.stage}'",
            f"selector={','.join(self.selector) or '(none)'}",
        ]
        if not self.available:
            lines.append("pool is empty")
        for tags in self.available:
            lines.append(f"worker tags={','.join(tags) or '(none)'}")
        return "\n".join(lines)


@dataclass
class AggregationError(BatchCIError):
    """Two stages produced an artifact with the same key."""
    key: str
    stages: List[str]

    def __str__(self) -> str:
        return f"artifact key collision: {self.key} (stages: {', '.join(self.stages)})"

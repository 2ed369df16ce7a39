# model.py
from __future__ import annotations

import copy
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Dict, FrozenSet, List, Mapping, Optional, Tuple

if TYPE_CHECKING:
    from .predicate import Predicate


class StageState(str, Enum):
    PENDING = "pending"
    ASSIGNED = "assigned"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {StageState.SUCCEEDED, StageState.FAILED, StageState.SKIPPED, StageState.CANCELLED}
)


class Verdict(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class Stage:
    """
    A resolved pipeline stage.

    Created by the resolver from raw definitions and never mutated after
    that. `selector` holds "key=value" tags a worker must carry.
    """
    label: str
    commands: Tuple[str, ...]
    position: int
    selector: FrozenSet[str] = frozenset()
    env: Mapping[str, str] = field(default_factory=dict, hash=False)
    artifact_paths: Tuple[str, ...] = ()
    predicate: Optional["Predicate"] = None
    timeout: Optional[float] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "env", MappingProxyType(dict(self.env)))

    @property
    def condition(self) -> str | None:
        return self.predicate.source if self.predicate is not None else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "label": self.label,
            "position": self.position,
            "commands": list(self.commands),
            "if": self.condition,
            "selector": sorted(self.selector),
            "env": dict(self.env),
            "artifact_paths": list(self.artifact_paths),
            "timeout": self.timeout,
        }


@dataclass(frozen=True)
class Barrier:
    """A `wait` marker placed after `position` stages."""
    position: int
    continue_on_failure: bool = False


@dataclass(frozen=True)
class Worker:
    """An execution resource identified by a set of capability tags."""
    name: str
    tags: FrozenSet[str] = frozenset()

    def matches(self, selector: FrozenSet[str]) -> bool:
        return selector <= self.tags


class RunContext:
    """
    Immutable snapshot of the values predicates may look at.

    Values are nested mappings addressed by dotted path, e.g.
    ``build.pull_request.repository.fork``. Missing paths read as None.
    """

    def __init__(self, values: Optional[Mapping[str, Any]] = None):
        self._values: Dict[str, Any] = copy.deepcopy(dict(values or {}))

    def get(self, path: str) -> Any:
        node: Any = self._values
        for part in path.split("."):
            if not isinstance(node, Mapping) or part not in node:
                return None
            node = node[part]
        return copy.deepcopy(node)

    def to_dict(self) -> Dict[str, Any]:
        return copy.deepcopy(self._values)

    def __repr__(self) -> str:
        return f"RunContext({self._values!r})"


@dataclass(frozen=True)
class Artifact:
    """A file produced by a stage, owned by the run once collected."""
    stage: str
    path: str
    data: bytes = field(repr=False)

    @property
    def key(self) -> str:
        return f"{self.stage}/{self.path}"

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass
class Outcome:
    """Terminal result of one stage."""
    label: str
    state: StageState
    worker: str | None = None
    exit_code: int | None = None
    command: str | None = None
    reason: str | None = None
    output: str = ""
    artifacts: List[Artifact] = field(default_factory=list)
    duration: float = 0.0

    @property
    def failed(self) -> bool:
        return self.state == StageState.FAILED


@dataclass
class RunReport:
    run_id: str
    verdict: Verdict
    outcomes: List[Outcome]
    artifacts: Dict[str, Artifact] = field(default_factory=dict)
    started_at: float | None = None
    finished_at: float | None = None

    @property
    def succeeded(self) -> bool:
        return self.verdict == Verdict.SUCCEEDED

    def outcome(self, label: str) -> Outcome:
        for o in self.outcomes:
            if o.label == label:
                return o
        raise KeyError(label)

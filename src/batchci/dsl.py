# dsl.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from .errors import ConfigurationError
from .resolver import RawStage, RawWait, SharedBlock, parse_shared, parse_step

Step = Union[RawStage, RawWait]


@dataclass
class Pipeline:
    """An already-structured pipeline: ordered steps plus named shared blocks."""
    steps: List[Step]
    shared: Dict[str, SharedBlock] = field(default_factory=dict)

    @property
    def stage_count(self) -> int:
        return sum(1 for s in self.steps if isinstance(s, RawStage))

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Pipeline":
        """Build from the JSON shape: {"steps": [...], "shared": {...}}."""
        raw_steps = data.get("steps")
        if not isinstance(raw_steps, list):
            raise ConfigurationError("pipeline document must contain a 'steps' list")

        steps = [parse_step(raw, idx) for idx, raw in enumerate(raw_steps)]
        return cls(steps=steps, shared=parse_shared(data.get("shared")))


# ---------------------------------------------------------------------
# Functional helpers
# ---------------------------------------------------------------------

def stage(
    label: str,
    *commands: str,
    commands_list: Optional[List[str]] = None,
    if_: Union[str, bool, None] = None,
    extends: Union[str, Sequence[str], None] = None,
    agents: Optional[Dict[str, Any]] = None,
    env: Optional[Dict[str, Any]] = None,
    artifact_paths: Optional[List[str]] = None,
    timeout: Optional[float] = None,
) -> RawStage:
    """
    Declare a stage.

        stage("Docs", ".buildkite/env", "ci/docs",
              if_=NOT_A_FORK, extends="build", artifact_paths=["Cargo.lock"])
    """
    cmds: List[str] = []
    if commands_list:
        cmds.extend(commands_list)
    cmds.extend(commands)

    if isinstance(extends, str):
        extends = [extends]

    step = parse_step(
        {
            "label": label,
            "commands": cmds,
            "if": if_,
            "extends": list(extends or []),
            "agents": agents or {},
            "env": env or {},
            "artifact_paths": artifact_paths or [],
            "timeout": timeout,
        }
    )
    assert isinstance(step, RawStage)
    return step


def wait(*, continue_on_failure: bool = False) -> RawWait:
    return RawWait(continue_on_failure=continue_on_failure)


def shared(*, agents: Optional[Dict[str, Any]] = None, env: Optional[Dict[str, Any]] = None) -> SharedBlock:
    return SharedBlock(agents=agents or {}, env=env or {})


def pipeline(*steps: Step, shared: Optional[Mapping[str, SharedBlock]] = None) -> Pipeline:
    """
    Workflow definition helper.

        from batchci import pipeline, stage, wait, shared

        def workflow():
            return pipeline(
                stage("build", "make"),
                wait(),
                stage("test", "make test"),
                shared={"linux": shared(agents={"platform": "linux"})},
            )
    """
    return Pipeline(steps=list(steps), shared=dict(shared or {}))


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class StageBuilder:
    def __init__(self, label: str):
        self.label = label
        self._commands: list[str] = []
        self._condition: Union[str, bool, None] = None
        self._extends: list[str] = []
        self._agents: dict[str, str] = {}
        self._env: dict[str, str] = {}
        self._artifacts: list[str] = []
        self._timeout: Optional[float] = None

    def command(self, *cmds: str):
        self._commands.extend(cmds)
        return self

    def only_if(self, expression: Union[str, bool]):
        self._condition = expression
        return self

    def extends(self, *names: str):
        self._extends.extend(names)
        return self

    def on_agents(self, **tags):
        self._agents.update({k: str(v).lower() if isinstance(v, bool) else str(v) for k, v in tags.items()})
        return self

    def with_env(self, **env):
        # force values to str for stable resolution
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def artifacts(self, *patterns: str):
        self._artifacts.extend(patterns)
        return self

    def timeout(self, seconds: float):
        self._timeout = seconds
        return self

    def build(self) -> RawStage:
        return stage(
            self.label,
            *self._commands,
            if_=self._condition,
            extends=self._extends,
            agents=self._agents,
            env=self._env,
            artifact_paths=self._artifacts,
            timeout=self._timeout,
        )


def build(label: str) -> StageBuilder:
    """Convenience: build('test').command(...).build()"""
    return StageBuilder(label)

# resolver.py
from __future__ import annotations

import json
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import ConfigurationError
from .model import Barrier, Stage
from .predicate import compile_predicate

# ---------------------------------------------------------------------
# Raw (already structured) input
# ---------------------------------------------------------------------
# The configuration parser is an external collaborator. What it hands us
# is a list of steps (stage dicts and wait markers) plus named shared
# blocks. These pydantic models validate that shape; all semantic checks
# happen in resolve().


def _as_str_map(value: Any) -> Dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ValueError("expected a mapping")
    out: Dict[str, str] = {}
    for k, v in value.items():
        if isinstance(v, bool):
            out[str(k)] = "true" if v else "false"
        else:
            out[str(k)] = str(v)
    return out


class SharedBlock(BaseModel):
    """Named bundle of worker-selector and environment values."""
    model_config = ConfigDict(extra="forbid", frozen=True)

    agents: Dict[str, str] = Field(default_factory=dict)
    env: Dict[str, str] = Field(default_factory=dict)

    @field_validator("agents", "env", mode="before")
    @classmethod
    def _stringify(cls, v: Any) -> Dict[str, str]:
        return _as_str_map(v)


class RawStage(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    label: str
    commands: List[str] = Field(default_factory=list)
    condition: Optional[Union[str, bool]] = Field(default=None, alias="if")
    extends: List[str] = Field(default_factory=list)
    agents: Dict[str, str] = Field(default_factory=dict)
    env: Dict[str, str] = Field(default_factory=dict)
    artifact_paths: List[str] = Field(default_factory=list)
    timeout: Optional[float] = Field(default=None, gt=0)

    @field_validator("commands", "extends", "artifact_paths", mode="before")
    @classmethod
    def _listify(cls, v: Any) -> Any:
        if isinstance(v, str):
            return [v]
        return v

    @field_validator("agents", "env", mode="before")
    @classmethod
    def _stringify(cls, v: Any) -> Dict[str, str]:
        return _as_str_map(v)


class RawWait(BaseModel):
    model_config = ConfigDict(extra="forbid")

    continue_on_failure: bool = False


def _stage_label_hint(raw: Any) -> str | None:
    if isinstance(raw, Mapping):
        label = raw.get("label")
        return str(label) if label is not None else None
    return None


def _parse_wait(raw: Any) -> Optional[RawWait]:
    if raw == "wait":
        return RawWait()
    if isinstance(raw, Mapping) and "wait" in raw:
        extra = {k: v for k, v in raw.items() if k != "wait"}
        body = raw["wait"] or {}
        if not isinstance(body, Mapping):
            raise ConfigurationError(f"invalid wait marker: {raw!r}")
        try:
            return RawWait.model_validate({**body, **extra})
        except ValidationError as e:
            raise ConfigurationError(f"invalid wait marker: {e}") from e
    return None


def parse_step(raw: Any, index: int = 0) -> Union[RawStage, RawWait]:
    """
    Validate one entry of the step list.

    A wait marker is the string "wait", {"wait": None},
    {"wait": {"continue_on_failure": true}} or a RawWait; any other mapping
    must be a stage.
    """
    if isinstance(raw, (RawStage, RawWait)):
        return raw
    wait = _parse_wait(raw)
    if wait is not None:
        return wait
    if not isinstance(raw, Mapping):
        raise ConfigurationError(f"step #{index + 1} is neither a stage nor a wait marker: {raw!r}")
    try:
        return RawStage.model_validate(raw)
    except ValidationError as e:
        raise ConfigurationError(
            f"step #{index + 1} is not a valid stage",
            stage=_stage_label_hint(raw),
            details={"errors": "; ".join(_format_errors(e))},
        ) from e


def split_steps(steps: Sequence[Any]) -> Tuple[List[RawStage], List[Barrier]]:
    """
    Separate stage entries from wait markers. A wait's position is the
    number of stages declared before it.
    """
    stages: List[RawStage] = []
    waits: List[Barrier] = []

    for idx, raw in enumerate(steps):
        step = parse_step(raw, idx)
        if isinstance(step, RawWait):
            waits.append(Barrier(position=len(stages), continue_on_failure=step.continue_on_failure))
        else:
            stages.append(step)

    return stages, waits


def parse_shared(shared: Optional[Mapping[str, Any]]) -> Dict[str, SharedBlock]:
    blocks: Dict[str, SharedBlock] = {}
    for name, body in (shared or {}).items():
        if isinstance(body, SharedBlock):
            blocks[name] = body
            continue
        try:
            blocks[name] = SharedBlock.model_validate(body or {})
        except ValidationError as e:
            raise ConfigurationError(
                f"shared block '{name}' is invalid",
                details={"errors": "; ".join(_format_errors(e))},
            ) from e
    return blocks


def _format_errors(e: ValidationError) -> List[str]:
    return [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]


# ---------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------

def _selector(agents: Mapping[str, str]) -> frozenset:
    return frozenset(f"{k}={v}" for k, v in agents.items())


def resolve(raw_stages: Sequence[RawStage], shared_blocks: Mapping[str, SharedBlock]) -> List[Stage]:
    """
    Merge shared blocks into each stage and compile predicates.

    Blocks named in `extends` are applied in order, then stage-local
    `agents` / `env` on top; later values win on key collision. Every
    merge copies by value so no two stages share a mutable mapping.

    Raises:
        ConfigurationError: undefined alias, a stage without commands,
            duplicate labels, or a malformed predicate.
    """
    resolved: List[Stage] = []
    seen: set = set()

    for position, raw in enumerate(raw_stages):
        if raw.label in seen:
            raise ConfigurationError(f"duplicate stage label '{raw.label}'", stage=raw.label)
        seen.add(raw.label)

        commands = tuple(c for c in raw.commands if c.strip())
        if not commands:
            raise ConfigurationError(f"stage '{raw.label}' declares no commands", stage=raw.label)

        agents: Dict[str, str] = {}
        env: Dict[str, str] = {}
        for alias in raw.extends:
            block = shared_blocks.get(alias)
            if block is None:
                raise ConfigurationError(
                    f"stage '{raw.label}' references undefined shared block '{alias}'",
                    stage=raw.label,
                    details={"known": ", ".join(sorted(shared_blocks)) or "(none)"},
                )
            agents.update(block.agents)
            env.update(block.env)
        agents.update(raw.agents)
        env.update(raw.env)

        predicate = None
        if raw.condition is not None:
            try:
                predicate = compile_predicate(raw.condition)
            except ConfigurationError as e:
                e.stage = raw.label
                raise

        resolved.append(
            Stage(
                label=raw.label,
                commands=commands,
                position=position,
                selector=_selector(agents),
                env=env,
                artifact_paths=tuple(raw.artifact_paths),
                predicate=predicate,
                timeout=raw.timeout,
            )
        )

    return resolved


def resolve_pipeline(
    steps: Sequence[Any],
    shared: Optional[Mapping[str, Any]] = None,
) -> Tuple[List[Stage], List[Barrier]]:
    """split_steps + parse_shared + resolve in one go."""
    raw_stages, waits = split_steps(steps)
    return resolve(raw_stages, parse_shared(shared)), waits


def canonical_json(stages: Sequence[Stage]) -> str:
    """Stable text form of a resolved stage list (used for golden tests and run ids)."""
    return json.dumps([s.to_dict() for s in stages], sort_keys=True, separators=(",", ":"), ensure_ascii=False)

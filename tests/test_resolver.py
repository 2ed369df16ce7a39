from __future__ import annotations

import pytest

from batchci.errors import ConfigurationError, PredicateError
from batchci.model import Barrier
from batchci.resolver import (
    RawStage,
    RawWait,
    canonical_json,
    parse_shared,
    parse_step,
    resolve,
    resolve_pipeline,
    split_steps,
)

from conftest import RADICLE_SHARED, radicle_steps


def test_radicle_pipeline_resolves() -> None:
    stages, waits = resolve_pipeline(radicle_steps(), RADICLE_SHARED)

    assert [s.label for s in stages] == ["Build container", "Build + Test", "fmt + clip", "Deny", "Docs"]
    assert [s.position for s in stages] == [0, 1, 2, 3, 4]
    assert waits == [Barrier(position=1)]
    for s in stages:
        assert s.selector == frozenset({"production=true", "platform=linux"})
        assert s.env["DOCKER_FILE"] == "Dockerfile"
        assert s.predicate is not None
    assert stages[0].artifact_paths == ()
    assert stages[1].artifact_paths == ("Cargo.lock",)
    assert stages[3].commands == (".buildkite/env", "ci/advisory")


def test_merge_order_later_blocks_and_local_values_win() -> None:
    shared = parse_shared({
        "base": {"agents": {"queue": "default", "os": "linux"}, "env": {"A": "1", "B": "1"}},
        "gpu": {"agents": {"queue": "gpu"}, "env": {"B": "2"}},
    })
    raw = RawStage(label="train", commands=["make"], extends=["base", "gpu"], env={"A": "local"})

    [stage] = resolve([raw], shared)

    assert stage.selector == frozenset({"queue=gpu", "os=linux"})
    assert dict(stage.env) == {"A": "local", "B": "2"}


def test_merged_mappings_are_not_shared_between_stages() -> None:
    shared = parse_shared({"base": {"env": {"A": "1"}}})
    a, b = resolve(
        [RawStage(label="a", commands=["x"], extends=["base"]), RawStage(label="b", commands=["y"], extends=["base"])],
        shared,
    )
    assert a.env == b.env
    assert a.env is not b.env
    assert a.env is not shared["base"].env


def test_resolved_stages_are_read_only() -> None:
    [stage] = resolve([RawStage(label="a", commands=["x"], env={"A": "1"})], {})

    with pytest.raises(TypeError):
        stage.env["A"] = "2"
    assert stage.env == {"A": "1"}
    assert hash(stage) == hash(resolve([RawStage(label="a", commands=["x"], env={"A": "1"})], {})[0])


def test_undefined_alias() -> None:
    raw = RawStage(label="lint", commands=["ruff"], extends=["nope"])
    with pytest.raises(ConfigurationError) as exc:
        resolve([raw], parse_shared({"base": {}}))
    assert exc.value.stage == "lint"
    assert "undefined shared block 'nope'" in str(exc.value)
    assert exc.value.details["known"] == "base"


def test_stage_without_commands() -> None:
    with pytest.raises(ConfigurationError) as exc:
        resolve([RawStage(label="empty", commands=["  "])], {})
    assert exc.value.stage == "empty"


def test_duplicate_labels() -> None:
    with pytest.raises(ConfigurationError, match="duplicate stage label 'x'"):
        resolve([RawStage(label="x", commands=["a"]), RawStage(label="x", commands=["b"])], {})


def test_bad_predicate_names_its_stage() -> None:
    raw = RawStage.model_validate({"label": "docs", "commands": ["make docs"], "if": "build.branch =="})
    with pytest.raises(PredicateError) as exc:
        resolve([raw], {})
    assert exc.value.stage == "docs"


def test_resolution_is_deterministic() -> None:
    first, _ = resolve_pipeline(radicle_steps(), RADICLE_SHARED)
    second, _ = resolve_pipeline(radicle_steps(), RADICLE_SHARED)
    assert canonical_json(first) == canonical_json(second)
    assert first == second


def test_scalar_values_are_stringified() -> None:
    step = parse_step({"label": "t", "commands": "pytest", "agents": {"gpu": True, "cores": 8}})
    assert isinstance(step, RawStage)
    assert step.commands == ["pytest"]
    assert step.agents == {"gpu": "true", "cores": "8"}


@pytest.mark.parametrize("raw", ["wait", {"wait": None}, {"wait": {}}])
def test_wait_markers(raw) -> None:
    step = parse_step(raw)
    assert isinstance(step, RawWait)
    assert step.continue_on_failure is False


def test_wait_with_continue_on_failure() -> None:
    assert parse_step({"wait": {"continue_on_failure": True}}).continue_on_failure is True
    assert parse_step({"wait": None, "continue_on_failure": True}).continue_on_failure is True


def test_split_steps_positions() -> None:
    stages, waits = split_steps(["wait", {"label": "a", "commands": ["x"]}, "wait", {"wait": {"continue_on_failure": True}}])
    assert [s.label for s in stages] == ["a"]
    assert waits == [Barrier(0), Barrier(1), Barrier(1, continue_on_failure=True)]


@pytest.mark.parametrize(
    "raw",
    [
        42,
        {"commands": ["no label"]},
        {"label": "a", "commands": ["x"], "unknown": 1},
        {"label": "a", "commands": ["x"], "timeout": 0},
        {"wait": "soon"},
    ],
)
def test_invalid_steps(raw) -> None:
    with pytest.raises(ConfigurationError):
        parse_step(raw)


def test_invalid_shared_block() -> None:
    with pytest.raises(ConfigurationError, match="shared block 'bad'"):
        parse_shared({"bad": {"agents": ["not", "a", "map"]}})

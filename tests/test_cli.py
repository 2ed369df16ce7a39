from __future__ import annotations

import json
from pathlib import Path

import pytest
from click.testing import CliRunner

from batchci.cli import cli

GATED = "build.pull_request.repository.fork == null || build.pull_request.repository.fork == false"


def write_workflow(path: Path, steps, shared=None) -> Path:
    path.write_text(json.dumps({"steps": steps, "shared": shared or {}}), encoding="utf-8")
    return path


@pytest.fixture
def workspace(tmp_path: Path, monkeypatch) -> Path:
    monkeypatch.chdir(tmp_path)
    for name in ("BATCHCI_WORKERS", "BATCHCI_FAIL_FAST", "BATCHCI_REPORT_API", "BATCHCI_PULL_REQUEST_REPO_FORK"):
        monkeypatch.delenv(name, raising=False)
    return tmp_path


@pytest.fixture
def workflow(workspace: Path) -> Path:
    return write_workflow(
        workspace / "batchci.json",
        [
            {"label": "build", "commands": ["echo lock > Cargo.lock"], "if": GATED, "extends": ["linux"]},
            "wait",
            {"label": "test", "commands": ["test -f Cargo.lock"], "if": GATED, "artifact_paths": ["Cargo.lock"], "extends": ["linux"]},
            {"label": "docs", "commands": ["true"], "if": GATED, "extends": ["linux"]},
        ],
        {"linux": {"agents": {"platform": "linux"}}},
    )


def invoke(*args: str):
    return CliRunner().invoke(cli, list(args), obj={})


def test_plan_shows_batches(workflow: Path) -> None:
    result = invoke("plan", "--branch", "main", "--commit", "abc")
    assert result.exit_code == 0, result.output
    assert "BATCH 1" in result.output
    assert "BATCH 2 (after wait)" in result.output
    assert "waits for: build" in result.output
    assert "test [platform=linux]" in result.output


def test_plan_for_a_fork_marks_everything_skipped(workflow: Path) -> None:
    result = invoke("plan", "--branch", "main", "--commit", "abc", "--pull-request", "9", "--fork")
    assert result.exit_code == 0, result.output
    assert result.output.count("(skipped:") == 3


def test_run_succeeds_and_writes_report(workflow: Path, workspace: Path) -> None:
    result = invoke("run", "--branch", "main", "--commit", "abc", "--workers", "2", "--report-json", "report.json")

    assert result.exit_code == 0, result.output
    assert "STAGE SUCCEEDED: build" in result.output
    assert "VERDICT: SUCCEEDED" in result.output
    assert "test/Cargo.lock" in result.output

    report = json.loads((workspace / "report.json").read_text())
    assert report["verdict"] == "succeeded"
    assert report["pipeline"] == "batchci.json"
    assert [s["label"] for s in report["stages"]] == ["build", "test", "docs"]
    assert [a["key"] for a in report["artifacts"]] == ["test/Cargo.lock"]


def test_run_for_a_fork_skips_everything(workflow: Path) -> None:
    result = invoke("run", "--branch", "main", "--commit", "abc", "--pull-request", "9", "--fork")
    assert result.exit_code == 0, result.output
    assert result.output.count("STAGE SKIPPED") == 3


def test_failing_stage_exits_1(workspace: Path) -> None:
    write_workflow(
        workspace / "batchci.json",
        [{"label": "broken", "commands": ["echo boom", "exit 4"]}, "wait", {"label": "after", "commands": ["true"]}],
    )
    result = invoke("run", "--branch", "main", "--commit", "abc", "--show-output")

    assert result.exit_code == 1
    assert "STAGE FAILED: broken" in result.output
    assert "Exit code: 4" in result.output
    assert "boom" in result.output
    # continue policy: the stage behind the wait still ran
    assert "STAGE SUCCEEDED: after" in result.output
    assert "VERDICT: FAILED" in result.output


def test_fail_fast_cancels_behind_the_wait(workspace: Path) -> None:
    write_workflow(
        workspace / "batchci.json",
        [{"label": "broken", "commands": ["false"]}, "wait", {"label": "after", "commands": ["true"]}],
    )
    result = invoke("run", "--branch", "main", "--commit", "abc", "--fail-fast")
    assert result.exit_code == 1
    assert "STAGE CANCELLED: after" in result.output


def test_no_matching_worker(workflow: Path) -> None:
    result = invoke("run", "--branch", "main", "--commit", "abc", "--workers", "mac:platform=macos")
    assert result.exit_code == 1
    assert "No matching worker" in result.output
    assert "STAGE STARTED" not in result.output


def test_invalid_pipeline(workspace: Path) -> None:
    write_workflow(workspace / "batchci.json", [{"label": "a", "commands": ["true"], "extends": ["missing"]}])
    result = invoke("run", "--branch", "main", "--commit", "abc")
    assert result.exit_code == 1
    assert "Invalid pipeline" in result.output
    assert "STAGE STARTED" not in result.output


def test_unreadable_workflow(workspace: Path) -> None:
    (workspace / "batchci.json").write_text("{")
    result = invoke("plan")
    assert result.exit_code == 1
    assert "Failed to load workflow" in result.output


def test_missing_workflow(workspace: Path) -> None:
    result = invoke("run")
    assert result.exit_code == 1
    assert "No workflow file found" in result.output


def test_explicit_missing_workflow(workspace: Path) -> None:
    result = invoke("plan", "--workflow", "nope")
    assert result.exit_code == 1
    assert "Workflow file not found" in result.output


def test_bad_context_assignment(workflow: Path) -> None:
    result = invoke("run", "--branch", "main", "--commit", "abc", "--context", "not-an-assignment")
    assert result.exit_code == 2


def test_context_assignment_feeds_predicates(workspace: Path) -> None:
    write_workflow(
        workspace / "batchci.json",
        [{"label": "nightly", "commands": ["true"], "if": "build.source == 'schedule'"}],
    )
    skipped = invoke("run", "--branch", "main", "--commit", "abc")
    ran = invoke("run", "--branch", "main", "--commit", "abc", "--context", "build.source=schedule")
    assert "STAGE SKIPPED: nightly" in skipped.output
    assert "STAGE SUCCEEDED: nightly" in ran.output


@pytest.mark.parametrize("option", ["--max-parallel", "--timeout"])
def test_zero_limits_are_rejected(workflow: Path, option: str) -> None:
    result = invoke("run", "--branch", "main", "--commit", "abc", option, "0")
    assert result.exit_code == 2
    assert "STAGE STARTED" not in result.output
